"""
Bid scheduler tests.

Guarantees:
- Eligibility follows topic affinity, quality floor and price ceiling
- Timer delays are clamped and scaled
- Landed locks are handed to close(); nothing fires after cancel_all()
- settle() waits for pending timers, bounded by a timeout and the run scope
"""

import asyncio
import random
import time

import pytest

from conftest import make_identities
from constants import AFFINITY_WILDCARD
from ledger.base import OperationKind
from ledger.simulated import SimulatedLedger
from orchestrator.bid_scheduler import BidScheduler, ineligibility
from orchestrator.cancellation import CancelScope
from orchestrator.compensation import CompensationStack
from orchestrator.errors import RunCancelled
from orchestrator.locking import LockPlacer, RunContext
from orchestrator.obligations import ObligationGuard, ObligationTracker
from orchestrator.retry import EscalatingRetrySender
from orchestrator.sequencing import SequencedSubmitter
from workload.profiles import ParticipantProfile
from workload.work_items import WorkItem, WorkItemBoard


class FixedRandom(random.Random):
    """random() always returns value; uniform() lands at the same fraction."""

    def __init__(self, value: float) -> None:
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


def profile(index: int, *, affinities=(AFFINITY_WILDCARD,), min_quality=0,
            max_price=1000, timing_bias_s=30.0) -> ParticipantProfile:
    return ParticipantProfile(
        index=index,
        name=f"P{index}",
        tag="test",
        affinities=affinities,
        min_quality=min_quality,
        max_price=max_price,
        timing_bias_s=timing_bias_s,
    )


def item(*, topic="solar", quality=60, reserve_price=50, window_s=60.0) -> WorkItem:
    now = time.monotonic()
    return WorkItem(
        item_id="item-1",
        topic=topic,
        quality=quality,
        reserve_price=reserve_price,
        opened_at=now,
        closes_at=now + window_s,
    )


def make_scheduler(profiles, *, rng, delay_scale=1.0, balance=200, publisher=None):
    ids = make_identities(3)
    ledger = SimulatedLedger()
    for participant in ids.participants:
        ledger.seed_deposit(participant.address, balance)

    tracker = ObligationTracker()
    sender = EscalatingRetrySender(ledger, SequencedSubmitter(ledger))
    placer = LockPlacer(ledger, sender, ids.custodian, tracker)
    board = WorkItemBoard()
    scheduler = BidScheduler(
        placer,
        ids.participants,
        board,
        profiles=profiles,
        rng=rng,
        delay_scale=delay_scale,
        publisher=publisher,
    )
    return scheduler, board, ledger, tracker, placer


def make_ctx(tracker, placer) -> RunContext:
    async def refund(obligation_id: str) -> None:
        await placer.refund(obligation_id)

    return RunContext("r1", CancelScope("run-r1"), ObligationGuard(tracker, CompensationStack(), refund))


# ---------------------------------------------------------------------
# Eligibility / planning
# ---------------------------------------------------------------------

def test_ineligibility_reasons():
    work = item(topic="solar", quality=60, reserve_price=50)

    assert ineligibility(profile(0, affinities=("legal",)), work) == "topic"
    assert ineligibility(profile(0, min_quality=70), work) == "quality"
    assert ineligibility(profile(0, max_price=40), work) == "price"
    assert ineligibility(profile(0, affinities=("solar",)), work) is None
    assert ineligibility(profile(0), work) is None


def test_plan_applies_premium_and_clamps_delays():
    scheduler, *_ = make_scheduler(
        [
            profile(0, timing_bias_s=30),
            profile(1, timing_bias_s=2),
            profile(2, timing_bias_s=90, max_price=52),
        ],
        rng=FixedRandom(0.5),
        delay_scale=0.5,
    )

    planned = scheduler.plan(item(reserve_price=50))

    # uniform(0, 0.2) -> 0.1 premium; uniform(-j, j) -> no jitter
    assert [p.amount for p in planned] == [55, 55, 52]
    assert [p.delay_s for p in planned] == pytest.approx([15.0, 5.0, 27.5])


def test_plan_ignores_profiles_without_participant():
    scheduler, *_ = make_scheduler([profile(0), profile(7)], rng=FixedRandom(0.5))

    assert [p.profile.index for p in scheduler.plan(item())] == [0]


def test_cold_item_schedules_nothing(logs):
    async def scenario():
        scheduler, _, _, tracker, placer = make_scheduler([profile(0)], rng=FixedRandom(0.01))
        return scheduler.schedule(item(), make_ctx(tracker, placer))

    assert asyncio.run(scenario()) is None
    assert len(logs.of_type("WORK_ITEM_COLD")) == 1


# ---------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------

def test_fired_timers_land_locks_returned_by_close():
    async def scenario():
        scheduler, board, ledger, tracker, placer = make_scheduler(
            [profile(0), profile(1)], rng=FixedRandom(0.5), delay_scale=0.001
        )
        work = board.publish(item())
        scheduler.schedule(work, make_ctx(tracker, placer))

        await asyncio.sleep(0.2)
        landed = await scheduler.close(work.item_id)
        return landed, ledger, tracker

    landed, ledger, tracker = asyncio.run(scenario())

    assert sorted(lock.address for lock in landed) == ["participant-0", "participant-1"]
    assert all(lock.source == "scheduler" for lock in landed)
    assert len(ledger.receipts_of(OperationKind.LOCK)) == 2
    assert tracker.snapshot() == frozenset(lock.obligation_id for lock in landed)


def test_cancel_all_prevents_any_fire():
    async def scenario():
        scheduler, board, ledger, tracker, placer = make_scheduler(
            [profile(0), profile(1)], rng=FixedRandom(0.5), delay_scale=0.001
        )
        work = board.publish(item())
        timers = scheduler.schedule(work, make_ctx(tracker, placer))

        cancelled = scheduler.cancel_all()
        await asyncio.sleep(0.2)
        landed = await scheduler.drain()
        return cancelled, timers, landed, ledger

    cancelled, timers, landed, ledger = asyncio.run(scenario())

    assert cancelled == 2
    assert timers is not None and timers.closed
    assert landed == []
    assert ledger.receipts == []


def test_closed_item_is_rechecked_before_locking(logs):
    async def scenario():
        scheduler, board, ledger, tracker, placer = make_scheduler(
            [profile(0)], rng=FixedRandom(0.5), delay_scale=0.001
        )
        work = board.publish(item())
        scheduler.schedule(work, make_ctx(tracker, placer))

        board.close(work.item_id)
        await asyncio.sleep(0.2)
        return ledger

    ledger = asyncio.run(scenario())

    assert ledger.receipts == []
    assert logs.of_type("BID_TIMER_SKIPPED")[0]["reason"] == "closed"


def test_discarded_item_reads_closed_and_skip_is_published(sink):
    async def scenario():
        scheduler, board, ledger, tracker, placer = make_scheduler(
            [profile(0)], rng=FixedRandom(0.5), delay_scale=0.001, publisher=sink
        )
        work = board.publish(item())
        scheduler.schedule(work, make_ctx(tracker, placer))

        board.discard(work.item_id)
        await asyncio.sleep(0.2)
        return board, ledger

    board, ledger = asyncio.run(scenario())

    assert len(board) == 0
    assert ledger.receipts == []
    skipped = sink.payloads("log")
    assert [(s["event_type"], s["reason"], s["level"]) for s in skipped] == [
        ("BID_TIMER_SKIPPED", "closed", "warn"),
    ]


# ---------------------------------------------------------------------
# Settle
# ---------------------------------------------------------------------

def test_settle_waits_until_timers_have_run():
    async def scenario():
        scheduler, board, _, tracker, placer = make_scheduler(
            [profile(0), profile(1)], rng=FixedRandom(0.5), delay_scale=0.001
        )
        work = board.publish(item())
        ctx = make_ctx(tracker, placer)
        scheduler.schedule(work, ctx)

        await scheduler.settle(work.item_id, 5.0, ctx.scope)
        # Nothing left to cancel; close() only collects
        return await scheduler.close(work.item_id)

    landed = asyncio.run(scenario())

    assert sorted(lock.address for lock in landed) == ["participant-0", "participant-1"]


def test_settle_timeout_leaves_timers_to_close():
    async def scenario():
        scheduler, board, ledger, tracker, placer = make_scheduler(
            [profile(0)], rng=FixedRandom(0.5)
        )
        work = board.publish(item())
        ctx = make_ctx(tracker, placer)
        timers = scheduler.schedule(work, ctx)

        await scheduler.settle(work.item_id, 0.01, ctx.scope)
        waiting = timers.snapshot()["waiting"]
        landed = await scheduler.close(work.item_id)
        return waiting, landed, ledger

    waiting, landed, ledger = asyncio.run(scenario())

    assert waiting == 1
    assert landed == []
    assert ledger.receipts == []


def test_settle_raises_when_scope_is_cancelled():
    async def scenario():
        scheduler, board, _, tracker, placer = make_scheduler(
            [profile(0)], rng=FixedRandom(0.5)
        )
        work = board.publish(item())
        ctx = make_ctx(tracker, placer)
        scheduler.schedule(work, ctx)

        asyncio.get_running_loop().call_later(0.01, ctx.scope.cancel, "operator stop")
        with pytest.raises(RunCancelled):
            await asyncio.wait_for(scheduler.settle(work.item_id, 60.0, ctx.scope), 5.0)

        return await scheduler.drain()

    assert asyncio.run(scenario()) == []


def test_cancelled_scope_stops_timer_submission():
    async def scenario():
        scheduler, board, ledger, tracker, placer = make_scheduler(
            [profile(0)], rng=FixedRandom(0.5), delay_scale=0.001
        )
        work = board.publish(item())
        ctx = make_ctx(tracker, placer)
        scheduler.schedule(work, ctx)

        ctx.scope.cancel("operator stop")
        await asyncio.sleep(0.2)
        return ledger

    assert asyncio.run(scenario()).receipts == []


def test_underfunded_participant_timer_places_nothing(logs):
    async def scenario():
        scheduler, board, ledger, tracker, placer = make_scheduler(
            [profile(0)], rng=FixedRandom(0.5), delay_scale=0.001, balance=10
        )
        work = board.publish(item())
        scheduler.schedule(work, make_ctx(tracker, placer))

        await asyncio.sleep(0.2)
        return await scheduler.close(work.item_id), ledger

    landed, ledger = asyncio.run(scenario())

    assert landed == []
    assert ledger.receipts == []
    assert logs.of_type("PARTICIPANT_SKIPPED")[0]["reason"] == "underfunded"
