"""
Obligation bookkeeping.

ObligationTracker is the advisory shadow set of obligation ids believed to
be locked. It is pure bookkeeping (no I/O) and may be stale relative to the
ledger, which owns true obligation state.

Invariant: an id is in the snapshot iff its lock was confirmed and its
resolution (settle or refund) has not been confirmed yet.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Iterator

from orchestrator.compensation import CompensationStack


class ObligationTracker:

    def __init__(self) -> None:
        self._open: set[str] = set()

    def register(self, obligation_id: str) -> None:
        self._open.add(obligation_id)

    def resolve(self, obligation_id: str) -> None:
        # Unknown ids are a no-op
        self._open.discard(obligation_id)

    def snapshot(self) -> frozenset[str]:
        return frozenset(self._open)

    def clear(self) -> None:
        self._open.clear()

    def __len__(self) -> int:
        return len(self._open)

    def __contains__(self, obligation_id: object) -> bool:
        return obligation_id in self._open

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._open))


RefundFn = Callable[[str], Awaitable[Any]]


class ObligationGuard:
    """
    Couples the tracker with a run's compensation stack.

    A confirmed lock registers the id and pushes a compensating refund;
    confirmed resolution removes both. Whatever is still guarded when the
    run exits gets refunded by CompensationStack.unwind().
    """

    def __init__(
        self,
        tracker: ObligationTracker,
        compensations: CompensationStack,
        refund: RefundFn,
    ) -> None:
        self.tracker = tracker
        self.compensations = compensations
        self._refund = refund

    def locked(self, obligation_id: str, *, owner: str = "") -> None:
        self.tracker.register(obligation_id)

        async def _compensate() -> None:
            await self._refund(obligation_id)

        self.compensations.push(
            obligation_id, _compensate, label=f"refund {owner}".strip()
        )

    def resolved(self, obligation_id: str) -> None:
        self.tracker.resolve(obligation_id)
        self.compensations.discard(obligation_id)
