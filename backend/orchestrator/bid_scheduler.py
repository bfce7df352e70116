"""
Staggered, profile-driven bid timers.

Responsibilities:
- Decide which participants bid on a work item, how much, and when
- Own every pending timer behind a per-item BidTimerSet handle
- Re-check the work item and the participant's balance when a timer fires
- Guarantee no timer fires after cancel_all()

Non-responsibilities:
- NO settlement or refunds (the cycle engine resolves what lands here)
- NO sequencing or fee logic (locks go through LockPlacer)

Timer lifecycle:
    waiting ──fire──> submitting ──> done
       └──cancel_all()──> cancelled (never fires)

Submitting timers are never interrupted; close() and drain() wait for them
so every lock that landed is accounted for.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from constants import (
    BID_PREMIUM_MAX_FRACTION,
    BID_TIMER_JITTER_S,
    BID_TIMER_MAX_S,
    BID_TIMER_MIN_S,
    PARTICIPANT_SKIP_PROBABILITY,
    ZERO_INTEREST_PROBABILITY,
)
from events.publisher import EventSink, publish_log
from ledger.base import Identity
from observability.logger import log_event
from orchestrator.cancellation import CancelScope
from orchestrator.errors import RunCancelled
from orchestrator.locking import LockPlacer, PlacedLock, RunContext
from workload.profiles import ParticipantProfile
from workload.work_items import WorkItem, WorkItemSource


Clock = Callable[[], float]


@dataclass(frozen=True)
class PlannedBid:
    profile: ParticipantProfile
    amount: int
    delay_s: float


def ineligibility(profile: ParticipantProfile, item: WorkItem) -> str | None:
    """Reason a profile will not bid on item, or None if eligible."""
    if not profile.wants(item.topic):
        return "topic"
    if item.quality < profile.min_quality:
        return "quality"
    if item.reserve_price > profile.max_price:
        return "price"
    return None


# ---------------------------------------------------------------------
# Timer handle
# ---------------------------------------------------------------------

class BidTimerSet:
    """All timers scheduled for one work item."""

    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        self.landed: list[PlacedLock] = []
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._submitting: set[int] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def add(self, key: int, task: asyncio.Task[None]) -> None:
        self._tasks[key] = task

    def begin_submit(self, key: int) -> bool:
        """Called synchronously when a timer fires. False if already closed."""
        if self._closed:
            return False
        self._submitting.add(key)
        return True

    def end_submit(self, key: int) -> None:
        self._submitting.discard(key)
        self._tasks.pop(key, None)

    def pending(self) -> set[asyncio.Task[None]]:
        """Timers that have not finished (waiting or submitting)."""
        return {task for task in self._tasks.values() if not task.done()}

    def cancel_all(self) -> int:
        """
        Cancel every waiting timer. Idempotent.

        Returns the number of timers cancelled.
        """
        self._closed = True
        cancelled = 0
        for key, task in list(self._tasks.items()):
            if key in self._submitting or task.done():
                continue
            task.cancel()
            self._tasks.pop(key, None)
            cancelled += 1
        return cancelled

    async def drain(self) -> None:
        """Wait until every in-flight submission finished."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def snapshot(self) -> dict[str, object]:
        return {
            "item_id": self.item_id,
            "waiting": len(self._tasks) - len(self._submitting),
            "submitting": len(self._submitting),
            "landed": len(self.landed),
            "closed": self._closed,
        }


# ---------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------

class BidScheduler:
    """
    Schedules one-shot bid timers per work item.

    delay_scale shrinks the 10-55s window (tests and fast local runs).
    """

    def __init__(
        self,
        placer: LockPlacer,
        participants: Sequence[Identity],
        source: WorkItemSource,
        *,
        profiles: Sequence[ParticipantProfile],
        rng: random.Random | None = None,
        delay_scale: float = 1.0,
        clock: Clock = time.monotonic,
        publisher: EventSink | None = None,
    ) -> None:
        self._placer = placer
        self._participants = list(participants)
        self._source = source
        self._profiles = list(profiles)
        self._rng = rng or random.Random()
        self._delay_scale = delay_scale
        self._clock = clock
        self._publisher = publisher

        self._sets: dict[str, BidTimerSet] = {}

    # ------------------------------------------------------------------
    # Planning (pure apart from rng)
    # ------------------------------------------------------------------

    def plan(self, item: WorkItem) -> list[PlannedBid]:
        planned: list[PlannedBid] = []

        for profile in self._profiles:
            if profile.index >= len(self._participants):
                continue

            reason = ineligibility(profile, item)
            if reason is not None:
                log_event({
                    "event_type": "BID_NOT_ELIGIBLE",
                    "work_item_id": item.item_id,
                    "profile": profile.name,
                    "reason": reason,
                })
                continue

            if self._rng.random() < PARTICIPANT_SKIP_PROBABILITY:
                continue

            premium = round(item.reserve_price * self._rng.uniform(0, BID_PREMIUM_MAX_FRACTION))
            amount = min(item.reserve_price + premium, profile.max_price)

            jitter = self._rng.uniform(-BID_TIMER_JITTER_S, BID_TIMER_JITTER_S)
            delay_s = max(BID_TIMER_MIN_S, min(BID_TIMER_MAX_S, profile.timing_bias_s + jitter))

            planned.append(PlannedBid(profile, amount, delay_s * self._delay_scale))

        return planned

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def schedule(self, item: WorkItem, ctx: RunContext) -> BidTimerSet | None:
        """
        Schedule timers for item. Returns None for a cold auction.
        """
        if self._rng.random() < ZERO_INTEREST_PROBABILITY:
            publish_log(self._publisher, {
                "event_type": "WORK_ITEM_COLD",
                "run_id": ctx.run_id,
                "work_item_id": item.item_id,
            }, level="info")
            return None

        timers = BidTimerSet(item.item_id)
        self._sets[item.item_id] = timers

        for bid in self.plan(item):
            participant = self._participants[bid.profile.index]
            task = asyncio.create_task(
                self._fire(timers, bid, participant, item, ctx),
                name=f"bid-{item.item_id}-{bid.profile.index}",
            )
            timers.add(bid.profile.index, task)

        log_event({
            "event_type": "BIDS_SCHEDULED",
            "run_id": ctx.run_id,
            "work_item_id": item.item_id,
            "timers": timers.snapshot()["waiting"],
        })
        return timers

    async def settle(self, item_id: str, timeout_s: float, scope: CancelScope) -> None:
        """
        Wait until every timer of item_id has run, at most timeout_s.

        Returns at once when nothing is pending. Timers are left untouched;
        close() decides what happens to the ones still waiting.

        Raises:
            RunCancelled if scope is cancelled while waiting.
        """
        timers = self._sets.get(item_id)
        if timers is None or timeout_s <= 0:
            return
        pending = timers.pending()
        if not pending:
            return

        every_timer = asyncio.ensure_future(asyncio.wait(pending))
        cancelled = asyncio.ensure_future(scope.wait())
        try:
            await asyncio.wait(
                {every_timer, cancelled},
                timeout=timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            # Cancelling the waiters never cancels the timers themselves
            every_timer.cancel()
            cancelled.cancel()
            await asyncio.gather(every_timer, cancelled, return_exceptions=True)

        scope.raise_if_cancelled()

    async def close(self, item_id: str) -> list[PlacedLock]:
        """
        Stop bidding on item_id and return the locks that landed on it.
        """
        timers = self._sets.pop(item_id, None)
        if timers is None:
            return []
        timers.cancel_all()
        await timers.drain()
        return list(timers.landed)

    def cancel_all(self) -> int:
        """Cancel every waiting timer of every item."""
        return sum(timers.cancel_all() for timers in self._sets.values())

    async def drain(self) -> list[PlacedLock]:
        """
        Wait for in-flight submissions and forget every timer set.

        Returns locks that landed and were never collected by close().
        """
        sets = list(self._sets.values())
        self._sets.clear()
        landed: list[PlacedLock] = []
        for timers in sets:
            timers.cancel_all()
            await timers.drain()
            landed.extend(timers.landed)
        return landed

    def snapshot(self) -> list[dict[str, object]]:
        return [timers.snapshot() for timers in self._sets.values()]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _fire(
        self,
        timers: BidTimerSet,
        bid: PlannedBid,
        participant: Identity,
        item: WorkItem,
        ctx: RunContext,
    ) -> None:
        try:
            await asyncio.sleep(bid.delay_s)
        except asyncio.CancelledError:
            return

        key = bid.profile.index
        if ctx.scope.cancelled or not timers.begin_submit(key):
            return

        try:
            if self._clock() >= item.closes_at:
                self._log_skip(ctx, bid, item, "window_elapsed")
                return

            if not await self._source.is_open(item.item_id):
                self._log_skip(ctx, bid, item, "closed")
                return

            placed = await self._placer.place(
                participant, bid.amount, item.item_id, ctx, source="scheduler"
            )
            if placed is not None:
                timers.landed.append(placed)

        except RunCancelled:
            return
        except Exception as exc:  # pylint: disable=broad-exception-caught
            publish_log(self._publisher, {
                "event_type": "BID_TIMER_FAILED",
                "run_id": ctx.run_id,
                "work_item_id": item.item_id,
                "profile": bid.profile.name,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
        finally:
            timers.end_submit(key)

    def _log_skip(self, ctx: RunContext, bid: PlannedBid, item: WorkItem, reason: str) -> None:
        publish_log(self._publisher, {
            "event_type": "BID_TIMER_SKIPPED",
            "run_id": ctx.run_id,
            "work_item_id": item.item_id,
            "profile": bid.profile.name,
            "reason": reason,
        })
