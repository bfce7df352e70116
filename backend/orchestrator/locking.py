"""
Lock and refund primitives shared by the cycle engine, the bid scheduler,
compensation unwind and recovery.

Every lock is signed by the custodian on behalf of a participant and, once
confirmed, registered through the run's ObligationGuard so an abort always
refunds it.
"""

from __future__ import annotations

from dataclasses import dataclass

from ledger.base import (
    Identity,
    LedgerClient,
    LedgerError,
    ObligationNotLockedError,
    Operation,
    Receipt,
)
from events.publisher import EventSink, publish_log
from observability.logger import log_event
from orchestrator.cancellation import CancelScope
from orchestrator.errors import SubmissionExhausted
from orchestrator.obligations import ObligationGuard, ObligationTracker
from orchestrator.retry import EscalatingRetrySender


@dataclass(frozen=True)
class PlacedLock:
    address: str
    amount: int
    obligation_id: str
    fee: int
    ref: str
    source: str = "engine"


@dataclass(frozen=True)
class RunContext:
    """What every component working for one run shares."""
    run_id: str
    scope: CancelScope
    guard: ObligationGuard


class LockPlacer:

    def __init__(
        self,
        ledger: LedgerClient,
        sender: EscalatingRetrySender,
        custodian: Identity,
        tracker: ObligationTracker,
        publisher: EventSink | None = None,
    ) -> None:
        self._ledger = ledger
        self._sender = sender
        self._custodian = custodian
        self._tracker = tracker
        self._publisher = publisher

    async def free_balance(self, address: str) -> int:
        balance = await self._ledger.balance_of(address)
        locked = await self._ledger.locked_balance_of(address)
        return balance - locked

    async def place(
        self,
        participant: Identity,
        amount: int,
        work_item_id: str,
        ctx: RunContext,
        *,
        source: str = "engine",
    ) -> PlacedLock | None:
        """
        Lock `amount` of participant's free balance for a work item.

        Returns None (participant skipped) when under-funded or when the
        ledger rejects the lock. RunCancelled propagates.
        """
        ctx.scope.raise_if_cancelled()

        free = await self.free_balance(participant.address)
        if free < amount:
            self._log_skip(ctx.run_id, participant, work_item_id, "underfunded",
                           free=free, amount=amount, source=source)
            return None

        try:
            receipt = await self._sender.send(
                self._custodian,
                Operation.lock(participant.address, amount, work_item_id),
                scope=ctx.scope,
                run_id=ctx.run_id,
            )
        except (SubmissionExhausted, LedgerError) as exc:
            self._log_skip(ctx.run_id, participant, work_item_id, "lock_rejected",
                           amount=amount, source=source,
                           exception=type(exc).__name__, message=str(exc))
            return None

        if receipt.obligation_id is None:
            self._log_skip(ctx.run_id, participant, work_item_id, "no_obligation_id",
                           amount=amount, source=source, ref=receipt.ref)
            return None

        ctx.guard.locked(receipt.obligation_id, owner=participant.address)

        log_event({
            "event_type": "OBLIGATION_LOCKED",
            "run_id": ctx.run_id,
            "participant": participant.label(),
            "work_item_id": work_item_id,
            "obligation_id": receipt.obligation_id,
            "amount": amount,
            "fee": receipt.fee,
            "source": source,
        })

        return PlacedLock(
            address=participant.address,
            amount=amount,
            obligation_id=receipt.obligation_id,
            fee=receipt.fee,
            ref=receipt.ref,
            source=source,
        )

    async def refund(
        self,
        obligation_id: str,
        *,
        scope: CancelScope | None = None,
        run_id: str | None = None,
    ) -> Receipt | None:
        """
        Refund an obligation and drop it from the tracker.

        Returns None when the ledger reports it already resolved.
        Other failures propagate and the id stays tracked.
        """
        try:
            receipt = await self._sender.send(
                self._custodian,
                Operation.refund(obligation_id),
                scope=scope,
                run_id=run_id,
            )
        except ObligationNotLockedError:
            self._tracker.resolve(obligation_id)
            log_event({
                "event_type": "OBLIGATION_ALREADY_RESOLVED",
                "run_id": run_id,
                "obligation_id": obligation_id,
            })
            return None

        self._tracker.resolve(obligation_id)
        return receipt

    def _log_skip(
        self,
        run_id: str,
        participant: Identity,
        work_item_id: str,
        reason: str,
        **details: object,
    ) -> None:
        publish_log(self._publisher, {
            "event_type": "PARTICIPANT_SKIPPED",
            "run_id": run_id,
            "participant": participant.label(),
            "work_item_id": work_item_id,
            "reason": reason,
            **details,
        })
