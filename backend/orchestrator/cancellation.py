"""
Cooperative cancellation scopes.

Responsibilities:
- Provide a cancellable scope shared by everything working for one run
- Propagate cancellation from a parent scope to its children
- Offer checkpoints (raise_if_cancelled) and cancellable sleeps

Non-responsibilities:
- NO task management (owners cancel their own tasks)
- NO decisions about what happens after cancellation

Scope tree:
    root
    ├── run-<id>       (CycleEngine + BidScheduler)
    └── recovery-<n>   (RecoveryCoordinator)

Cancelling a run never touches a sibling recovery scope.
"""

from __future__ import annotations

import asyncio

from orchestrator.errors import RunCancelled


class CancelScope:
    """
    Cancellation token with parent/child propagation.

    Cancellation is sticky: once cancelled, a scope stays cancelled.
    """

    def __init__(self, name: str, *, parent: CancelScope | None = None) -> None:
        self.name = name
        self._parent = parent
        self._children: set[CancelScope] = set()
        self._event = asyncio.Event()
        self._reason: str | None = None

        if parent is not None:
            parent._children.add(self)
            if parent.cancelled:
                self.cancel(parent.reason or "parent cancelled")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """
        Cancel this scope and every descendant.

        Idempotent: returns False if the scope was already cancelled.
        """
        if self._event.is_set():
            return False

        self._reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)
        return True

    def child(self, name: str) -> CancelScope:
        return CancelScope(name, parent=self)

    def close(self) -> None:
        """Detach from the parent once the owning work is finished."""
        if self._parent is not None:
            self._parent._children.discard(self)
            self._parent = None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self._reason or "cancelled")

    async def sleep(self, delay_s: float) -> None:
        """
        Sleep for delay_s unless cancelled first.

        Raises:
            RunCancelled if the scope is cancelled before or during the sleep.
        """
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(delay_s, 0.0))
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

    async def wait(self) -> None:
        await self._event.wait()
