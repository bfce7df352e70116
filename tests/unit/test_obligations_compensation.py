# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

from orchestrator.compensation import CompensationStack
from orchestrator.obligations import ObligationGuard, ObligationTracker


# ---------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------

def test_tracker_register_resolve_snapshot():
    tracker = ObligationTracker()
    tracker.register("obl-1")
    tracker.register("obl-2")
    tracker.register("obl-1")

    snapshot = tracker.snapshot()
    tracker.resolve("obl-1")

    assert snapshot == frozenset({"obl-1", "obl-2"})
    assert tracker.snapshot() == frozenset({"obl-2"})
    assert "obl-2" in tracker
    assert len(tracker) == 1


def test_tracker_resolve_unknown_is_noop():
    tracker = ObligationTracker()
    tracker.resolve("obl-404")
    assert len(tracker) == 0


def test_tracker_iterates_sorted():
    tracker = ObligationTracker()
    for obligation_id in ("obl-3", "obl-1", "obl-2"):
        tracker.register(obligation_id)

    assert list(tracker) == ["obl-1", "obl-2", "obl-3"]


# ---------------------------------------------------------------------
# Compensation stack
# ---------------------------------------------------------------------

def test_unwind_runs_newest_first_and_empties_stack():
    calls: list[str] = []

    def action(name):
        async def _run():
            calls.append(name)
        return _run

    stack = CompensationStack(run_id="r1")
    stack.push("a", action("a"))
    stack.push("b", action("b"))
    stack.push("c", action("c"))
    stack.discard("b")

    report = asyncio.run(stack.unwind())

    assert calls == ["c", "a"]
    assert report.succeeded == ["c", "a"]
    assert report.attempted == 2
    assert len(stack) == 0


def test_unwind_continues_past_failures(logs):
    calls: list[str] = []

    async def ok():
        calls.append("ok")

    async def broken():
        raise RuntimeError("ledger down")

    stack = CompensationStack(run_id="r1")
    stack.push("first", ok)
    stack.push("second", broken)

    report = asyncio.run(stack.unwind())

    assert calls == ["ok"]
    assert report.failed == {"second": "RuntimeError: ledger down"}
    assert logs.of_type("COMPENSATION_FAILED")[0]["key"] == "second"
    assert logs.of_type("COMPENSATION_UNWOUND")[0]["attempted"] == 2


def test_empty_unwind_logs_nothing(logs):
    report = asyncio.run(CompensationStack().unwind())

    assert report.attempted == 0
    assert logs.of_type("COMPENSATION_UNWOUND") == []


# ---------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------

def test_guard_refunds_only_unresolved_obligations():
    refunded: list[str] = []

    async def refund(obligation_id: str) -> None:
        refunded.append(obligation_id)

    tracker = ObligationTracker()
    stack = CompensationStack()
    guard = ObligationGuard(tracker, stack, refund)

    guard.locked("obl-1", owner="participant-0")
    guard.locked("obl-2", owner="participant-1")
    guard.locked("obl-3", owner="participant-2")
    guard.resolved("obl-1")

    assert tracker.snapshot() == frozenset({"obl-2", "obl-3"})
    assert stack.pending() == ["obl-2", "obl-3"]

    asyncio.run(stack.unwind())

    assert refunded == ["obl-3", "obl-2"]
