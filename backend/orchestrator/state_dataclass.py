"""
Authoritative run state container.

Rules:
- These dataclasses are pure data models, frozen.
- The owning controller task swaps in new instances via the helpers below.
- A terminal RunState never transitions again.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any

from orchestrator.enums.run_status import RunStatus
from orchestrator.errors import TerminalStateError


# =============================================================================
# Cycles
# =============================================================================

@dataclass(frozen=True)
class BidEntry:
    """One participant's lock within a cycle."""
    address: str
    amount: int
    obligation_id: str
    source: str = "engine"


@dataclass(frozen=True)
class CycleRecord:
    """
    Statistics of one finished cycle.

    Solvency fields stay None until the run's single batched solvency
    check is back-filled onto every record.
    """
    index: int
    work_item_id: str
    participants_bid: tuple[BidEntry, ...] = ()
    obligation_ids: tuple[str, ...] = ()
    winner_obligation_id: str | None = None
    winner_address: str | None = None
    settled_amount: int = 0
    settlement_ref: str | None = None
    refund_refs: tuple[str, ...] = ()
    fee_spent: int = 0
    skipped: bool = False
    had_tiebreak: bool = False
    platform_income: float = 0.0
    error: str | None = None
    solvent: bool | None = None
    solvency_margin: int | None = None
    solvency_ref: str | None = None


# =============================================================================
# Totals
# =============================================================================

@dataclass(frozen=True)
class RunTotals:
    settled_amount: int = 0
    fee_spent: int = 0
    cycles_settled: int = 0
    cycles_skipped: int = 0
    refunds: int = 0
    tiebreaks: int = 0
    platform_income: float = 0.0

    def add(self, record: CycleRecord) -> RunTotals:
        return RunTotals(
            settled_amount=self.settled_amount + record.settled_amount,
            fee_spent=self.fee_spent + record.fee_spent,
            cycles_settled=self.cycles_settled + (1 if record.settlement_ref else 0),
            cycles_skipped=self.cycles_skipped + (1 if record.skipped else 0),
            refunds=self.refunds + len(record.refund_refs),
            tiebreaks=self.tiebreaks + (1 if record.had_tiebreak else 0),
            platform_income=round(self.platform_income + record.platform_income, 2),
        )


# =============================================================================
# Run
# =============================================================================

@dataclass(frozen=True)
class RunState:
    """Immutable snapshot of one run."""
    run_id: str
    started_at_ms: int
    requested_cycles: int
    status: RunStatus = RunStatus.RUNNING
    completed_at_ms: int | None = None
    cycles: tuple[CycleRecord, ...] = ()
    totals: RunTotals = field(default_factory=RunTotals)
    current_cycle: int = 0
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def with_cycle(state: RunState, record: CycleRecord) -> RunState:
    _ensure_open(state)
    return replace(
        state,
        cycles=state.cycles + (record,),
        totals=state.totals.add(record),
    )


def with_progress(state: RunState, current_cycle: int) -> RunState:
    _ensure_open(state)
    return replace(state, current_cycle=current_cycle)


def with_solvency(
    state: RunState,
    *,
    solvent: bool,
    margin: int,
    ref: str | None,
) -> RunState:
    """Back-fill the batched solvency result onto every cycle record."""
    _ensure_open(state)
    cycles = tuple(
        replace(c, solvent=solvent, solvency_margin=margin, solvency_ref=ref)
        for c in state.cycles
    )
    return replace(state, cycles=cycles)


def finish(
    state: RunState,
    status: RunStatus,
    *,
    completed_at_ms: int,
    error: str | None = None,
    details: dict[str, Any] | None = None,
) -> RunState:
    """
    Terminal transition.

    Raises:
        TerminalStateError if state is already terminal.
        ValueError if status is not terminal.
    """
    _ensure_open(state)
    if not status.terminal:
        raise ValueError(f"{status.value} is not a terminal status")
    return replace(
        state,
        status=status,
        completed_at_ms=completed_at_ms,
        error=error,
        details={**state.details, **(details or {})},
    )


def _ensure_open(state: RunState) -> None:
    if state.status.terminal:
        raise TerminalStateError(
            f"run {state.run_id} already {state.status.value}"
        )
