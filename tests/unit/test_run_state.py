"""
RunState transition tests.

Rules:
- Terminal statuses are recorded exactly once
- Totals are derived from cycle records
- Solvency is back-filled onto every record
"""

import pytest

from orchestrator.enums.run_status import RunStatus
from orchestrator.errors import TerminalStateError
from orchestrator.state_dataclass import (
    BidEntry,
    CycleRecord,
    RunState,
    finish,
    with_cycle,
    with_progress,
    with_solvency,
)


def make_state() -> RunState:
    return RunState(run_id="r1", started_at_ms=1000, requested_cycles=3)


def settled(index: int, amount: int) -> CycleRecord:
    return CycleRecord(
        index=index,
        work_item_id=f"item-{index}",
        participants_bid=(
            BidEntry("participant-0", amount, f"obl-{index}a"),
            BidEntry("participant-1", amount + 5, f"obl-{index}b"),
        ),
        obligation_ids=(f"obl-{index}a", f"obl-{index}b"),
        winner_obligation_id=f"obl-{index}a",
        winner_address="participant-0",
        settled_amount=amount,
        settlement_ref=f"ref-{index}",
        refund_refs=(f"refund-{index}",),
        fee_spent=52,
        platform_income=round(amount * 0.05 + 2, 2),
    )


def test_totals_accumulate_per_cycle():
    state = make_state()
    state = with_cycle(state, settled(1, 50))
    state = with_cycle(state, CycleRecord(index=2, work_item_id="item-2", skipped=True))
    state = with_cycle(state, settled(3, 40))

    assert state.totals.settled_amount == 90
    assert state.totals.cycles_settled == 2
    assert state.totals.cycles_skipped == 1
    assert state.totals.refunds == 2
    assert state.totals.fee_spent == 104
    assert state.totals.platform_income == pytest.approx(8.5)


def test_progress_and_solvency_backfill():
    state = with_cycle(with_cycle(make_state(), settled(1, 50)), settled(2, 60))
    state = with_progress(state, 2)
    state = with_solvency(state, solvent=True, margin=0, ref="ref-solvency")

    assert state.current_cycle == 2
    assert all(c.solvent is True for c in state.cycles)
    assert all(c.solvency_ref == "ref-solvency" for c in state.cycles)


def test_finish_is_terminal_exactly_once():
    state = finish(make_state(), RunStatus.ABORTED, completed_at_ms=2000, error="cancelled")

    assert state.status is RunStatus.ABORTED
    assert state.completed_at_ms == 2000

    with pytest.raises(TerminalStateError):
        finish(state, RunStatus.COMPLETED, completed_at_ms=3000)

    with pytest.raises(TerminalStateError):
        with_cycle(state, settled(1, 50))


def test_finish_rejects_non_terminal_status():
    with pytest.raises(ValueError):
        finish(make_state(), RunStatus.RUNNING, completed_at_ms=2000)


def test_to_dict_uses_status_value():
    data = finish(make_state(), RunStatus.COMPLETED, completed_at_ms=2000).to_dict()

    assert data["status"] == "completed"
    assert data["totals"]["settled_amount"] == 0
