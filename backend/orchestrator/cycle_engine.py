"""
Cycle engine: the foreground auction loop of one run.

Per cycle:
1. publish a work item and schedule participant bid timers
2. pick a rotating subset of participants and derive their bids
3. lock every funded bid (custodian-signed, guarded for abort refunds)
4. keep the item open until its bid timers have run, at most until it closes
5. settle the first lock to the payee
6. refund every other lock of the cycle, scheduler locks included
7. report a CycleRecord

After the last cycle one batched solvency verification runs; the caller
back-fills its result onto every record.

Cancellation is checked before every lock, settlement, refund and cycle.
Under-funded or rejected participants are skipped, never raised.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from constants import (
    BID_MINIMUM,
    BID_VARIANCE_FRACTION,
    PARTICIPANTS_PER_CYCLE,
    PLATFORM_FEE_FRACTION,
    PLATFORM_LOCK_FEE,
    TIEBREAK_PROBABILITY,
)
from events.publisher import EventSink, publish_log
from ledger.base import Identity, LedgerClient, LedgerError, Operation
from observability.logger import log_event
from observability.metrics import timed
from orchestrator.bid_scheduler import BidScheduler
from orchestrator.errors import SubmissionExhausted
from orchestrator.locking import LockPlacer, PlacedLock, RunContext
from orchestrator.retry import EscalatingRetrySender
from orchestrator.state_dataclass import BidEntry, CycleRecord
from workload.work_items import WorkItem, WorkItemBoard, WorkItemGenerator


CycleCallback = Callable[[CycleRecord], None]
ProgressCallback = Callable[[int], None]
Clock = Callable[[], float]


@dataclass(frozen=True)
class SolvencyOutcome:
    solvent: bool
    margin: int
    ref: str | None


class CycleEngine:

    def __init__(
        self,
        *,
        ledger: LedgerClient,
        sender: EscalatingRetrySender,
        placer: LockPlacer,
        custodian: Identity,
        payee: Identity,
        participants: Sequence[Identity],
        board: WorkItemBoard,
        generator: WorkItemGenerator,
        publisher: EventSink,
        scheduler: BidScheduler | None = None,
        rng: random.Random | None = None,
        participants_per_cycle: tuple[int, int] = PARTICIPANTS_PER_CYCLE,
        cycle_hold_s: float | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._ledger = ledger
        self._sender = sender
        self._placer = placer
        self._custodian = custodian
        self._payee = payee
        self._participants = list(participants)
        self._board = board
        self._generator = generator
        self._publisher = publisher
        self._scheduler = scheduler
        self._rng = rng or random.Random()
        self._per_cycle = participants_per_cycle
        self._cycle_hold_s = cycle_hold_s
        self._clock = clock

        # Round-robin cursor survives across runs so load rotates
        self._offset = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        ctx: RunContext,
        cycles: int,
        *,
        on_cycle: CycleCallback,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        for index in range(cycles):
            ctx.scope.raise_if_cancelled()
            if on_progress is not None:
                on_progress(index + 1)

            with timed("cycle_duration", run_id=ctx.run_id, details={"cycle": index + 1}):
                record = await self.run_cycle(ctx, index + 1)

            on_cycle(record)

    async def run_cycle(self, ctx: RunContext, index: int) -> CycleRecord:
        item = self._board.publish(self._generator.next())
        try:
            return await self._run_item(ctx, index, item)
        finally:
            # Late timers read a discarded item as closed
            self._board.discard(item.item_id)

    async def _run_item(self, ctx: RunContext, index: int, item: WorkItem) -> CycleRecord:
        if self._scheduler is not None:
            self._scheduler.schedule(item, ctx)

        self._publisher.publish("cycle.started", {
            "run_id": ctx.run_id,
            "cycle": index,
            "work_item_id": item.item_id,
            "topic": item.topic,
            "reserve_price": item.reserve_price,
        })

        bids = self._derive_bids(self._next_subset(), item.reserve_price)
        ready = await self._funded(ctx, item.item_id, bids)

        had_tiebreak = False
        if len(ready) >= 2 and self._rng.random() < TIEBREAK_PROBABILITY:
            ready, had_tiebreak = await self._force_tie(ready)

        locks: list[PlacedLock] = []
        for participant, amount in ready:
            placed = await self._placer.place(participant, amount, item.item_id, ctx)
            if placed is not None:
                locks.append(placed)

        await self._hold(ctx, item)

        self._board.close(item.item_id)
        if self._scheduler is not None:
            locks.extend(await self._scheduler.close(item.item_id))

        if not locks:
            return self._skipped(ctx, index, item.item_id)

        return await self._resolve(ctx, index, item.item_id, locks, had_tiebreak)

    async def verify_solvency(self, ctx: RunContext) -> SolvencyOutcome | None:
        """
        One batched solvency verification for the whole run.

        Failures are logged and return None; they never fail the run.
        """
        ctx.scope.raise_if_cancelled()
        try:
            receipt = await self._sender.send(
                self._custodian,
                Operation.verify_solvency(),
                scope=ctx.scope,
                run_id=ctx.run_id,
            )
            report = await self._ledger.solvency()
        except (SubmissionExhausted, LedgerError) as exc:
            publish_log(self._publisher, {
                "event_type": "SOLVENCY_CHECK_FAILED",
                "run_id": ctx.run_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            return None

        if report is None:
            log_event({"event_type": "SOLVENCY_REPORT_MISSING", "run_id": ctx.run_id})
            return None

        outcome = SolvencyOutcome(report.solvent, report.margin, receipt.ref)
        self._publisher.publish("run.solvency", {
            "run_id": ctx.run_id,
            "solvent": report.solvent,
            "margin": report.margin,
            "held": report.held,
            "claimed": report.claimed,
            "ref": receipt.ref,
        })
        return outcome

    # ------------------------------------------------------------------
    # Bid derivation
    # ------------------------------------------------------------------

    def _next_subset(self) -> list[Identity]:
        total = len(self._participants)
        if total == 0:
            return []

        low, high = self._per_cycle
        size = min(self._rng.randint(low, high), total)
        subset = [self._participants[(self._offset + i) % total] for i in range(size)]
        self._offset = (self._offset + size) % total
        return subset

    def _derive_bids(
        self, subset: Sequence[Identity], base: int
    ) -> list[tuple[Identity, int]]:
        bids: list[tuple[Identity, int]] = []
        for position, participant in enumerate(subset):
            if position == 0:
                amount = base
            else:
                variance = self._rng.uniform(-BID_VARIANCE_FRACTION, BID_VARIANCE_FRACTION)
                amount = max(BID_MINIMUM, round(base * (1 + variance)))
            bids.append((participant, amount))
        return bids

    async def _funded(
        self, ctx: RunContext, item_id: str, bids: Sequence[tuple[Identity, int]]
    ) -> list[tuple[Identity, int]]:
        ready: list[tuple[Identity, int]] = []
        for participant, amount in bids:
            free = await self._placer.free_balance(participant.address)
            if free >= amount:
                ready.append((participant, amount))
            else:
                publish_log(self._publisher, {
                    "event_type": "PARTICIPANT_SKIPPED",
                    "run_id": ctx.run_id,
                    "participant": participant.label(),
                    "work_item_id": item_id,
                    "reason": "underfunded",
                    "free": free,
                    "amount": amount,
                })
        return ready

    async def _force_tie(
        self, ready: list[tuple[Identity, int]]
    ) -> tuple[list[tuple[Identity, int]], bool]:
        """Raise the second bid to the current maximum if it can afford it."""
        top = max(amount for _, amount in ready)
        participant, amount = ready[1]
        if amount == top:
            return ready, True

        free = await self._placer.free_balance(participant.address)
        if free < top:
            return ready, False

        tied = list(ready)
        tied[1] = (participant, top)
        return tied, True

    async def _hold(self, ctx: RunContext, item: WorkItem) -> None:
        """
        Keep the item open while its scheduled bid timers are pending.

        Bounded by the item's closing time and, when set, cycle_hold_s.
        """
        if self._scheduler is None:
            return
        limit_s = item.closes_at - self._clock()
        if self._cycle_hold_s is not None:
            limit_s = min(limit_s, self._cycle_hold_s)
        await self._scheduler.settle(item.item_id, limit_s, ctx.scope)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def _resolve(
        self,
        ctx: RunContext,
        index: int,
        item_id: str,
        locks: list[PlacedLock],
        had_tiebreak: bool,
    ) -> CycleRecord:
        winner, losers = locks[0], locks[1:]
        fee_spent = sum(lock.fee for lock in locks)
        error: str | None = None
        settlement_ref: str | None = None

        ctx.scope.raise_if_cancelled()
        try:
            receipt = await self._sender.send(
                self._custodian,
                Operation.settle(winner.obligation_id, self._payee.address),
                scope=ctx.scope,
                run_id=ctx.run_id,
            )
        except (SubmissionExhausted, LedgerError) as exc:
            error = f"settlement failed: {type(exc).__name__}: {exc}"
            publish_log(self._publisher, {
                "event_type": "SETTLEMENT_FAILED",
                "run_id": ctx.run_id,
                "cycle": index,
                "obligation_id": winner.obligation_id,
                "message": str(exc),
            }, level="error")
            losers = locks
        else:
            ctx.guard.resolved(winner.obligation_id)
            settlement_ref = receipt.ref
            fee_spent += receipt.fee

        refund_refs: list[str] = []
        for lock in losers:
            ctx.scope.raise_if_cancelled()
            try:
                refund = await self._placer.refund(
                    lock.obligation_id, scope=ctx.scope, run_id=ctx.run_id
                )
            except (SubmissionExhausted, LedgerError) as exc:
                # Stays guarded; the run's compensation unwind retries it
                publish_log(self._publisher, {
                    "event_type": "REFUND_FAILED",
                    "run_id": ctx.run_id,
                    "cycle": index,
                    "obligation_id": lock.obligation_id,
                    "message": str(exc),
                })
                continue

            ctx.guard.resolved(lock.obligation_id)
            if refund is not None:
                refund_refs.append(refund.ref)
                fee_spent += refund.fee

        settled_amount = winner.amount if settlement_ref else 0
        platform_income = 0.0
        if settlement_ref:
            platform_income = round(
                settled_amount * PLATFORM_FEE_FRACTION + PLATFORM_LOCK_FEE * len(locks), 2
            )

        record = CycleRecord(
            index=index,
            work_item_id=item_id,
            participants_bid=tuple(
                BidEntry(lock.address, lock.amount, lock.obligation_id, lock.source)
                for lock in locks
            ),
            obligation_ids=tuple(lock.obligation_id for lock in locks),
            winner_obligation_id=winner.obligation_id if settlement_ref else None,
            winner_address=winner.address if settlement_ref else None,
            settled_amount=settled_amount,
            settlement_ref=settlement_ref,
            refund_refs=tuple(refund_refs),
            fee_spent=fee_spent,
            had_tiebreak=had_tiebreak,
            platform_income=platform_income,
            error=error,
        )

        self._publisher.publish("cycle.finished", {
            "run_id": ctx.run_id,
            "cycle": index,
            "work_item_id": item_id,
            "locks": len(locks),
            "winner": record.winner_address,
            "settled_amount": settled_amount,
            "refunds": len(refund_refs),
            "tiebreak": had_tiebreak,
            "error": error,
        })
        return record

    def _skipped(self, ctx: RunContext, index: int, item_id: str) -> CycleRecord:
        self._publisher.publish("cycle.skipped", {
            "run_id": ctx.run_id,
            "cycle": index,
            "work_item_id": item_id,
            "reason": "no_funded_bidders",
        })
        return CycleRecord(index=index, work_item_id=item_id, skipped=True)
