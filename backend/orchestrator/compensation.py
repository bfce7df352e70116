"""
Compensation stack for abort-safe cleanup.

Every side effect that must be undone if a run does not finish cleanly
pushes a compensating action. Actions are discarded once the effect is
resolved normally. unwind() runs what is left in reverse order, best
effort: one failing compensation never stops the others.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from observability.logger import log_event


Compensation = Callable[[], Awaitable[Any]]


@dataclass
class UnwindReport:
    attempted: int = 0
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "succeeded": list(self.succeeded),
            "failed": dict(self.failed),
        }


class CompensationStack:
    """Keyed LIFO of compensating actions."""

    def __init__(self, *, run_id: str | None = None) -> None:
        self._run_id = run_id
        # dicts keep insertion order; reversed() gives LIFO
        self._actions: dict[str, tuple[str, Compensation]] = {}

    def push(self, key: str, action: Compensation, *, label: str = "") -> None:
        self._actions[key] = (label or key, action)

    def discard(self, key: str) -> bool:
        return self._actions.pop(key, None) is not None

    def pending(self) -> list[str]:
        return list(self._actions)

    def __len__(self) -> int:
        return len(self._actions)

    async def unwind(self) -> UnwindReport:
        """
        Run every pending compensation, newest first.

        Never raises for a failed compensation; failures are logged and
        reported. Actions pushed while unwinding are picked up too.
        """
        report = UnwindReport()

        while self._actions:
            key = next(reversed(self._actions))
            label, action = self._actions.pop(key)
            report.attempted += 1
            try:
                await action()
            except Exception as exc:  # pylint: disable=broad-exception-caught
                report.failed[key] = f"{type(exc).__name__}: {exc}"
                log_event({
                    "event_type": "COMPENSATION_FAILED",
                    "run_id": self._run_id,
                    "key": key,
                    "label": label,
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })
            else:
                report.succeeded.append(key)

        if report.attempted:
            log_event({
                "event_type": "COMPENSATION_UNWOUND",
                "run_id": self._run_id,
                **report.to_dict(),
            })

        return report
