"""
Orphaned obligation reconciliation.

Finds obligations left locked by earlier runs (crash, timeout, lost
process) and refunds them. Runs before every run and as the first step of
recovery. Per-participant failures are logged and skipped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from constants import LOCK_EVENT_LOOKBACK
from ledger.base import Identity, LedgerClient, LedgerError
from observability.logger import log_event
from orchestrator.cancellation import CancelScope
from orchestrator.errors import SubmissionExhausted
from orchestrator.locking import LockPlacer


@dataclass
class ReconcileReport:
    scanned: int = 0
    refunded: list[str] = field(default_factory=list)
    already_resolved: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "refunded": list(self.refunded),
            "already_resolved": list(self.already_resolved),
            "failed": dict(self.failed),
        }


async def refund_all(
    placer: LockPlacer,
    obligation_ids: Iterable[str],
    report: ReconcileReport,
    *,
    scope: CancelScope | None = None,
    run_id: str | None = None,
) -> None:
    for obligation_id in obligation_ids:
        if scope is not None:
            scope.raise_if_cancelled()
        try:
            receipt = await placer.refund(obligation_id, scope=scope, run_id=run_id)
        except (SubmissionExhausted, LedgerError) as exc:
            report.failed[obligation_id] = f"{type(exc).__name__}: {exc}"
            continue

        if receipt is None:
            report.already_resolved.append(obligation_id)
        else:
            report.refunded.append(obligation_id)


async def reconcile_orphans(
    ledger: LedgerClient,
    placer: LockPlacer,
    participants: Sequence[Identity],
    *,
    scope: CancelScope | None = None,
    run_id: str | None = None,
    lookback: int = LOCK_EVENT_LOOKBACK,
) -> ReconcileReport:
    """
    Refund every historical lock still open for participants with a
    non-zero locked balance.
    """
    report = ReconcileReport()
    height = await ledger.current_height()
    since = max(0, height - lookback)

    for participant in participants:
        if scope is not None:
            scope.raise_if_cancelled()
        try:
            locked = await ledger.locked_balance_of(participant.address)
            if locked <= 0:
                continue
            events = await ledger.find_lock_events(participant.address, since)
        except LedgerError as exc:
            report.failed[participant.address] = f"{type(exc).__name__}: {exc}"
            continue

        report.scanned += len(events)
        await refund_all(
            placer,
            (event.obligation_id for event in events),
            report,
            scope=scope,
            run_id=run_id,
        )

    if report.scanned or report.failed:
        log_event({
            "event_type": "RECONCILIATION_COMPLETE",
            "run_id": run_id,
            **report.to_dict(),
        })

    return report
