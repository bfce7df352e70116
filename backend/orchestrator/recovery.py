"""
Background recovery coordinator.

Responsibilities:
- Return funds to the custodian and reset participant balances after a run
- Refund obligations orphaned by aborted or crashed runs
- Stay time-bounded: a hard timeout always clears the recovering flag
- Block new runs while active; never be cancelled by a new run

Non-responsibilities:
- NO effect on any run's recorded status
- NO retries beyond per-step attempts (fee escalation lives in the sender)

Steps:
    R0  refund orphaned obligations (tracker snapshot + lock-event scan)
    R1  custodian withdraws its free ledger balance
    R2  payee withdraws and sweeps to the custodian
    R3  participants withdraw and sweep to the custodian
    R4  final sweep over payee + participants
    R5  replenish participants: transfer -> approve -> deposit
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from constants import (
    RECOVERY_STEP_ATTEMPTS,
    RECOVERY_STEP_BACKOFF_S,
    RECOVERY_TIMEOUT_S,
    REPLENISH_TARGET_DEFAULT,
)
from events.publisher import EventSink, publish_log
from ledger.base import Identity, LedgerClient, Operation
from ledger.factory import IdentitySet
from observability.metrics import timed
from orchestrator.cancellation import CancelScope
from orchestrator.enums.recovery_phase import RecoveryPhase
from orchestrator.errors import RunCancelled
from orchestrator.locking import LockPlacer
from orchestrator.obligations import ObligationTracker
from orchestrator.reconciliation import ReconcileReport, reconcile_orphans, refund_all
from orchestrator.retry import EscalatingRetrySender


Step = Callable[[], Awaitable[Any]]


@dataclass
class RecoveryReport:
    reason: str
    custodian_before: int | None = None
    custodian_after: int | None = None
    orphans: ReconcileReport = field(default_factory=ReconcileReport)
    completed_steps: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def recovered(self) -> int | None:
        if self.custodian_before is None or self.custodian_after is None:
            return None
        return self.custodian_after - self.custodian_before

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "custodian_before": self.custodian_before,
            "custodian_after": self.custodian_after,
            "recovered": self.recovered,
            "orphans": self.orphans.to_dict(),
            "completed_steps": list(self.completed_steps),
            "skipped": list(self.skipped),
        }


class RecoveryCoordinator:
    """
    idle -> recovering -> idle

    schedule() flips the flag synchronously so a start() racing with it
    already sees `recovering`.
    """

    def __init__(
        self,
        *,
        ledger: LedgerClient,
        sender: EscalatingRetrySender,
        placer: LockPlacer,
        identities: IdentitySet,
        tracker: ObligationTracker,
        publisher: EventSink,
        root_scope: CancelScope,
        replenish_target: int = REPLENISH_TARGET_DEFAULT,
        timeout_s: float = RECOVERY_TIMEOUT_S,
        step_attempts: int = RECOVERY_STEP_ATTEMPTS,
        step_backoff_s: float = RECOVERY_STEP_BACKOFF_S,
    ) -> None:
        self._ledger = ledger
        self._sender = sender
        self._placer = placer
        self._ids = identities
        self._tracker = tracker
        self._publisher = publisher
        self._root = root_scope
        self._replenish_target = replenish_target
        self._timeout_s = timeout_s
        self._step_attempts = step_attempts
        self._step_backoff_s = step_backoff_s

        self._phase = RecoveryPhase.IDLE
        self._scope: CancelScope | None = None
        self._task: asyncio.Task[None] | None = None
        self._counter = itertools.count(1)
        self.last_report: RecoveryReport | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def phase(self) -> RecoveryPhase:
        return self._phase

    @property
    def recovering(self) -> bool:
        return self._phase is RecoveryPhase.RECOVERING

    def schedule(self, reason: str) -> bool:
        """
        Start a background recovery. False if one is already running.
        """
        if self.recovering:
            return False

        self._phase = RecoveryPhase.RECOVERING
        scope = self._root.child(f"recovery-{next(self._counter)}")
        self._scope = scope
        self._task = asyncio.create_task(self._run(reason, scope), name=scope.name)
        return True

    def cancel(self, reason: str = "operator stop") -> bool:
        if self._scope is None:
            return False
        return self._scope.cancel(reason)

    async def wait(self) -> None:
        """Wait for the current recovery (if any) to finish."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _run(self, reason: str, scope: CancelScope) -> None:
        report = RecoveryReport(reason=reason)
        self.last_report = report
        self._publisher.publish("recovery.started", {"reason": reason})

        try:
            with timed("recovery_duration", phase=self._phase.value, details={"reason": reason}):
                await asyncio.wait_for(self._steps(scope, report), timeout=self._timeout_s)

        except asyncio.TimeoutError:
            scope.cancel("recovery timeout")
            self._publisher.publish("recovery.degraded", {
                "level": "warning",
                "message": f"recovery exceeded {self._timeout_s}s and was abandoned; "
                           "balances may need manual reconciliation",
                **report.to_dict(),
            })

        except RunCancelled as exc:
            self._publisher.publish("recovery.cancelled", {
                "reason": exc.reason,
                **report.to_dict(),
            })

        except Exception as exc:  # pylint: disable=broad-exception-caught
            publish_log(self._publisher, {
                "event_type": "RECOVERY_FAILED",
                "exception": type(exc).__name__,
                "message": str(exc),
                **report.to_dict(),
            }, level="error")

        else:
            self._publisher.publish("recovery.complete", report.to_dict())

        finally:
            self._phase = RecoveryPhase.IDLE
            scope.close()
            if self._scope is scope:
                self._scope = None

    async def _steps(self, scope: CancelScope, report: RecoveryReport) -> None:
        custodian = self._ids.custodian
        report.custodian_before = await self._ledger.external_balance_of(custodian.address)

        await self._attempt("R0 orphan refunds", scope, report,
                            lambda: self._orphans(scope, report))

        await self._attempt("R1 custodian withdraw", scope, report,
                            lambda: self._withdraw_free(custodian, scope))

        sweepers = (self._ids.payee, *self._ids.participants)
        for identity in sweepers:
            await self._attempt(f"R2/R3 withdraw {identity.label()}", scope, report,
                                lambda identity=identity: self._withdraw_free(identity, scope))
            await self._attempt(f"R2/R3 sweep {identity.label()}", scope, report,
                                lambda identity=identity: self._sweep(identity, scope))

        for identity in sweepers:
            await self._attempt(f"R4 final sweep {identity.label()}", scope, report,
                                lambda identity=identity: self._sweep(identity, scope))

        for participant in self._ids.participants:
            await self._replenish(participant, scope, report)

        report.custodian_after = await self._ledger.external_balance_of(custodian.address)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _orphans(self, scope: CancelScope, report: RecoveryReport) -> None:
        tracked = sorted(self._tracker.snapshot())
        if tracked:
            await refund_all(self._placer, tracked, report.orphans, scope=scope)

        scanned = await reconcile_orphans(
            self._ledger, self._placer, self._ids.participants, scope=scope
        )
        report.orphans.scanned += scanned.scanned
        report.orphans.refunded.extend(scanned.refunded)
        report.orphans.already_resolved.extend(scanned.already_resolved)
        report.orphans.failed.update(scanned.failed)

    async def _withdraw_free(self, identity: Identity, scope: CancelScope) -> None:
        balance = await self._ledger.balance_of(identity.address)
        locked = await self._ledger.locked_balance_of(identity.address)
        free = balance - locked
        if free > 0:
            await self._sender.send(identity, Operation.withdraw(free), scope=scope)

    async def _sweep(self, identity: Identity, scope: CancelScope) -> None:
        external = await self._ledger.external_balance_of(identity.address)
        if external > 0:
            await self._sender.send(
                identity,
                Operation.transfer(self._ids.custodian.address, external),
                scope=scope,
            )

    async def _replenish(
        self, participant: Identity, scope: CancelScope, report: RecoveryReport
    ) -> None:
        balance = await self._ledger.balance_of(participant.address)
        deficit = self._replenish_target - balance
        if deficit <= 0:
            return

        label = participant.label()
        escrow = self._ledger.escrow_address

        async def approve() -> None:
            if await self._ledger.allowance(participant.address, escrow) >= deficit:
                return
            await self._sender.send(participant, Operation.approve(escrow, deficit), scope=scope)

        steps: tuple[tuple[str, Step], ...] = (
            (f"R5 top-up {label}", lambda: self._sender.send(
                self._ids.custodian,
                Operation.transfer(participant.address, deficit),
                scope=scope,
            )),
            (f"R5 approve {label}", approve),
            (f"R5 deposit {label}", lambda: self._sender.send(
                participant, Operation.deposit(deficit), scope=scope
            )),
        )

        for name, step in steps:
            if not await self._attempt(name, scope, report, step):
                # Later sub-steps depend on this one
                return

    async def _attempt(
        self,
        name: str,
        scope: CancelScope,
        report: RecoveryReport,
        step: Step,
    ) -> bool:
        for attempt in range(1, self._step_attempts + 1):
            scope.raise_if_cancelled()
            try:
                await step()
            except RunCancelled:
                raise
            except Exception as exc:  # pylint: disable=broad-exception-caught
                publish_log(self._publisher, {
                    "event_type": "RECOVERY_STEP_FAILED",
                    "step": name,
                    "attempt": attempt,
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })
                if attempt < self._step_attempts:
                    await scope.sleep(self._step_backoff_s * attempt)
                continue

            report.completed_steps.append(name)
            return True

        report.skipped.append(name)
        return False
