"""
Cycle engine tests against the simulated ledger.

Guarantees:
- Exactly one settlement and n-1 refunds per cycle with n locks
- Under-funded participants are skipped; a cycle with no locks is skipped
- A failed settlement refunds every lock of the cycle
- Whatever is still locked on cancellation stays guarded for unwind
- Scheduler locks that land during the hold are refunded as losers
- Skips are published as warn-level log events
"""

import asyncio
import random

import pytest

from conftest import RecordingSink, make_identities
from constants import AFFINITY_WILDCARD
from ledger.base import InsufficientFundsError, OperationKind
from ledger.factory import IdentitySet
from ledger.simulated import SimulatedLedger
from orchestrator.bid_scheduler import BidScheduler
from orchestrator.cancellation import CancelScope
from orchestrator.compensation import CompensationStack
from orchestrator.cycle_engine import CycleEngine
from orchestrator.errors import RunCancelled
from orchestrator.locking import LockPlacer, RunContext
from orchestrator.obligations import ObligationGuard, ObligationTracker
from orchestrator.retry import EscalatingRetrySender, RetryPolicy
from orchestrator.sequencing import SequencedSubmitter
from workload.profiles import ParticipantProfile
from workload.work_items import WorkItemBoard, WorkItemGenerator


class FixedRandom(random.Random):

    def __init__(self, value: float) -> None:
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


class World:
    """One engine wired to a simulated ledger."""

    def __init__(
        self,
        ledger: SimulatedLedger,
        ids: IdentitySet,
        sink: RecordingSink,
        *,
        price: int = 50,
        per_cycle: tuple[int, int] = (3, 3),
        profiles: tuple[ParticipantProfile, ...] = (),
        cycle_hold_s: float | None = None,
    ) -> None:
        self.ledger = ledger
        self.ids = ids
        self.sink = sink
        self.tracker = ObligationTracker()
        sender = EscalatingRetrySender(
            ledger,
            SequencedSubmitter(ledger),
            policy=RetryPolicy(backoff_step_s=0),
            publisher=sink,
        )
        self.placer = LockPlacer(ledger, sender, ids.custodian, self.tracker, sink)
        self.board = WorkItemBoard()
        self.scheduler = None
        if profiles:
            # random() of 0.5 is never cold and never skips a bid
            self.scheduler = BidScheduler(
                self.placer,
                ids.participants,
                self.board,
                profiles=profiles,
                rng=FixedRandom(0.5),
                delay_scale=0.001,
                publisher=sink,
            )
        self.engine = CycleEngine(
            ledger=ledger,
            sender=sender,
            placer=self.placer,
            custodian=ids.custodian,
            payee=ids.payee,
            participants=ids.participants,
            board=self.board,
            generator=WorkItemGenerator(rng=random.Random(1), price_range=(price, price)),
            publisher=sink,
            rng=random.Random(2),
            participants_per_cycle=per_cycle,
            scheduler=self.scheduler,
            cycle_hold_s=cycle_hold_s,
        )
        self.compensations = CompensationStack(run_id="r1")

    def context(self) -> RunContext:
        async def refund(obligation_id: str) -> None:
            await self.placer.refund(obligation_id, run_id="r1")

        return RunContext(
            run_id="r1",
            scope=CancelScope("run-r1"),
            guard=ObligationGuard(self.tracker, self.compensations, refund),
        )


def funded_ledger(ids: IdentitySet, *balances: int) -> SimulatedLedger:
    ledger = SimulatedLedger(base_fee=10)
    for participant, balance in zip(ids.participants, balances):
        ledger.seed_deposit(participant.address, balance)
    return ledger


# ---------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------

def test_one_settlement_and_n_minus_one_refunds(identities, sink):
    ledger = funded_ledger(identities, 200, 200, 200)
    world = World(ledger, identities, sink)

    async def scenario():
        return await world.engine.run_cycle(world.context(), 1)

    record = asyncio.run(scenario())

    assert len(record.obligation_ids) == 3
    assert record.winner_address == "participant-0"
    assert record.settled_amount == 50
    assert len(record.refund_refs) == 2
    assert len(ledger.receipts_of(OperationKind.SETTLE)) == 1
    assert len(ledger.receipts_of(OperationKind.REFUND)) == 2

    # Ledger and bookkeeping agree
    assert asyncio.run(ledger.balance_of("payee")) == 50
    assert ledger.obligations(state="locked") == []
    assert len(world.tracker) == 0
    assert len(world.compensations) == 0

    # 3 locks + 1 settle + 2 refunds, all accepted at the first fee
    assert record.fee_spent == ledger.fees_paid["custodian"] == 6 * 13
    assert record.platform_income == pytest.approx(50 * 0.05 + 3)
    assert sink.topics() == ["cycle.started", "cycle.finished"]


def test_all_underfunded_cycle_is_skipped(identities, sink):
    ledger = funded_ledger(identities, 0, 0, 0)
    world = World(ledger, identities, sink)

    record = asyncio.run(world.engine.run_cycle(world.context(), 1))

    assert record.skipped is True
    assert record.obligation_ids == ()
    assert ledger.receipts == []
    assert sink.topics() == ["cycle.started", "log", "log", "log", "cycle.skipped"]
    skips = sink.payloads("log")
    assert {s["event_type"] for s in skips} == {"PARTICIPANT_SKIPPED"}
    assert {s["level"] for s in skips} == {"warn"}
    assert {s["reason"] for s in skips} == {"underfunded"}
    assert [s["participant"] for s in skips] == [
        "participant[0]", "participant[1]", "participant[2]",
    ]


def test_underfunded_participant_is_skipped_not_raised(identities, sink, logs):
    ledger = funded_ledger(identities, 200, 5, 200)
    world = World(ledger, identities, sink)

    record = asyncio.run(world.engine.run_cycle(world.context(), 1))

    bidders = [bid.address for bid in record.participants_bid]
    assert "participant-1" not in bidders
    assert len(bidders) == 2
    assert len(record.refund_refs) == 1
    assert any(e["participant"] == "participant[1]" for e in logs.of_type("PARTICIPANT_SKIPPED"))


def test_failed_settlement_refunds_every_lock(identities, sink):
    ledger = funded_ledger(identities, 200, 200, 200)
    ledger.fail_next(InsufficientFundsError("insufficient escrow"), kind=OperationKind.SETTLE)
    world = World(ledger, identities, sink)

    record = asyncio.run(world.engine.run_cycle(world.context(), 1))

    assert record.settlement_ref is None
    assert record.settled_amount == 0
    assert record.platform_income == 0
    assert record.error is not None and record.error.startswith("settlement failed")
    assert len(record.refund_refs) == 3
    assert ledger.obligations(state="locked") == []
    assert asyncio.run(ledger.balance_of("payee")) == 0


def test_failed_refund_stays_guarded_until_unwind(identities, sink, logs):
    ledger = funded_ledger(identities, 200, 200, 200)
    ledger.fail_next(InsufficientFundsError("refund rejected"), kind=OperationKind.REFUND)
    world = World(ledger, identities, sink)

    async def scenario():
        record = await world.engine.run_cycle(world.context(), 1)
        guarded = world.tracker.snapshot()
        report = await world.compensations.unwind()
        return record, guarded, report

    record, guarded, report = asyncio.run(scenario())

    assert len(record.refund_refs) == 1
    assert len(guarded) == 1
    assert len(logs.of_type("REFUND_FAILED")) == 1
    assert report.succeeded == list(guarded)
    assert ledger.obligations(state="locked") == []


def test_cancel_mid_cycle_leaves_locks_guarded(identities, sink):
    ledger = funded_ledger(identities, 200, 200, 200)
    world = World(ledger, identities, sink)

    async def scenario():
        ctx = world.context()

        def stop_after_first_lock(receipt):
            if receipt.kind is OperationKind.LOCK:
                ctx.scope.cancel("operator stop")

        ledger.add_observer(stop_after_first_lock)

        with pytest.raises(RunCancelled):
            await world.engine.run_cycle(ctx, 1)

        guarded = world.tracker.snapshot()
        await world.compensations.unwind()
        return guarded

    guarded = asyncio.run(scenario())

    assert len(guarded) == 1
    assert ledger.receipts_of(OperationKind.SETTLE) == []
    assert ledger.obligations(state="locked") == []
    assert len(world.tracker) == 0


# ---------------------------------------------------------------------
# Run loop
# ---------------------------------------------------------------------

def test_run_rotates_participants_across_cycles():
    ids = make_identities(3)
    sink = RecordingSink()
    ledger = funded_ledger(ids, 200, 200, 200)
    world = World(ledger, ids, sink, per_cycle=(2, 2))
    records = []
    progress: list[int] = []

    async def scenario():
        await world.engine.run(
            world.context(), 2, on_cycle=records.append, on_progress=progress.append
        )

    asyncio.run(scenario())

    assert progress == [1, 2]
    assert [r.winner_address for r in records] == ["participant-0", "participant-2"]
    assert len(ledger.receipts_of(OperationKind.SETTLE)) == 2


def test_cycles_leave_no_items_on_the_board(identities, sink):
    ledger = funded_ledger(identities, 200, 200, 200)
    world = World(ledger, identities, sink)

    async def scenario():
        await world.engine.run(world.context(), 3, on_cycle=lambda record: None)

    asyncio.run(scenario())

    assert len(world.board) == 0


# ---------------------------------------------------------------------
# Scheduler bids
# ---------------------------------------------------------------------

def scheduler_profile(index: int) -> ParticipantProfile:
    return ParticipantProfile(
        index=index,
        name=f"P{index}",
        tag="test",
        affinities=(AFFINITY_WILDCARD,),
        min_quality=0,
        max_price=1000,
        timing_bias_s=30.0,
    )


def test_scheduler_lock_is_refunded_and_engine_lock_wins(sink):
    ids = make_identities(4)
    ledger = funded_ledger(ids, 200, 200, 200, 200)
    world = World(ledger, ids, sink, per_cycle=(1, 1), profiles=(scheduler_profile(3),))

    record = asyncio.run(world.engine.run_cycle(world.context(), 1))

    sources = {bid.address: bid.source for bid in record.participants_bid}
    assert sources == {"participant-0": "engine", "participant-3": "scheduler"}
    assert record.winner_address == "participant-0"
    assert record.settled_amount == 50
    assert len(record.refund_refs) == 1

    refunded = ledger.receipts_of(OperationKind.REFUND)[0].obligation_id
    scheduler_bid = next(b for b in record.participants_bid if b.source == "scheduler")
    assert refunded == scheduler_bid.obligation_id
    # 50 reserve plus half the 20% premium
    assert scheduler_bid.amount == 55

    assert ledger.obligations(state="locked") == []
    assert len(world.tracker) == 0
    assert len(world.board) == 0


def test_hold_cap_closes_the_item_before_timers_fire(sink, logs):
    ids = make_identities(4)
    ledger = funded_ledger(ids, 200, 200, 200, 200)
    world = World(
        ledger, ids, sink,
        per_cycle=(1, 1), profiles=(scheduler_profile(3),), cycle_hold_s=0.0,
    )

    record = asyncio.run(world.engine.run_cycle(world.context(), 1))

    assert [bid.source for bid in record.participants_bid] == ["engine"]
    assert record.refund_refs == ()
    assert len(ledger.receipts_of(OperationKind.LOCK)) == 1
    assert logs.of_type("BIDS_SCHEDULED")[0]["timers"] == 1


# ---------------------------------------------------------------------
# Solvency
# ---------------------------------------------------------------------

def test_verify_solvency_reports_margin(identities, sink):
    ledger = funded_ledger(identities, 200, 200, 200)
    world = World(ledger, identities, sink)

    outcome = asyncio.run(world.engine.verify_solvency(world.context()))

    assert outcome is not None
    assert outcome.solvent is True
    assert outcome.margin == 0
    assert sink.payloads("run.solvency")[0]["held"] == 600


def test_verify_solvency_detects_shortfall(identities, sink):
    ledger = funded_ledger(identities, 200, 200, 200)
    ledger.inject_shortfall(5)
    world = World(ledger, identities, sink)

    outcome = asyncio.run(world.engine.verify_solvency(world.context()))

    assert outcome is not None
    assert outcome.solvent is False
    assert outcome.margin == -5


def test_verify_solvency_failure_returns_none(identities, sink, logs):
    ledger = funded_ledger(identities, 200, 200, 200)
    ledger.fail_next(InsufficientFundsError("nope"), kind=OperationKind.VERIFY_SOLVENCY)
    world = World(ledger, identities, sink)

    assert asyncio.run(world.engine.verify_solvency(world.context())) is None
    assert len(logs.of_type("SOLVENCY_CHECK_FAILED")) == 1
