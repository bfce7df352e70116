"""
Run controller: the single owner of run lifecycle state.

Responsibilities:
- Admit at most one run at a time (idle -> starting -> running -> idle)
- Refuse starts while background recovery is active
- Run pre-run checks before any RunState exists
- Drive reconciliation, the cycle engine and solvency verification
- Guarantee the exit sequence on every path:
    1. stop bid timers and drain in-flight ones
    2. unwind compensations (refund every still-guarded obligation)
    3. persist the terminal RunState
    4. return to idle
    5. hand off to background recovery

Non-responsibilities:
- NO ledger semantics (see ledger/)
- NO HTTP concerns (see server/)
"""

from __future__ import annotations

import asyncio
import random
import uuid
from typing import Any, Sequence

from config import AppConfig
from constants import (
    MAX_CYCLES_PER_RUN,
    MIN_CYCLES_PER_RUN,
    RECOVERY_RETRY_AFTER_S,
    RECOVERY_TIMEOUT_S,
    REPLENISH_TARGET_DEFAULT,
    RESERVE_REQUIRED_DEFAULT,
    RUN_HISTORY_DEFAULT_LIMIT,
)
from events.publisher import EventSink
from ledger.base import LedgerClient, LedgerError
from ledger.factory import IdentitySet
from observability.logger import log_event, now_ms
from observability.metrics import timed
from orchestrator.bid_scheduler import BidScheduler
from orchestrator.cancellation import CancelScope
from orchestrator.compensation import CompensationStack
from orchestrator.cycle_engine import CycleEngine
from orchestrator.enums.run_phase import RunPhase
from orchestrator.enums.run_status import RunStatus
from orchestrator.errors import (
    PreconditionFailed,
    RecoveryInProgress,
    RunBusyError,
    RunCancelled,
)
from orchestrator.locking import LockPlacer, RunContext
from orchestrator.obligations import ObligationGuard, ObligationTracker
from orchestrator.reconciliation import reconcile_orphans
from orchestrator.recovery import RecoveryCoordinator
from orchestrator.retry import EscalatingRetrySender, RetryPolicy
from orchestrator.sequencing import SequencedSubmitter
from orchestrator.state_dataclass import (
    CycleRecord,
    RunState,
    finish,
    with_cycle,
    with_progress,
    with_solvency,
)
from store.run_store import RunStore
from workload.profiles import DEFAULT_PROFILES, ParticipantProfile
from workload.work_items import WorkItemBoard, WorkItemGenerator


class RunController:
    """
    Owns one process's run lock, run state and recovery hand-off.

    All state lives on the instance; nothing is module-global.
    """

    def __init__(
        self,
        *,
        ledger: LedgerClient,
        identities: IdentitySet,
        store: RunStore,
        publisher: EventSink,
        network_id: str,
        reserve_required: int = RESERVE_REQUIRED_DEFAULT,
        replenish_target: int = REPLENISH_TARGET_DEFAULT,
        recovery_timeout_s: float = RECOVERY_TIMEOUT_S,
        recover_after_stop: bool = False,
        policy: RetryPolicy | None = None,
        profiles: Sequence[ParticipantProfile] = DEFAULT_PROFILES,
        bid_delay_scale: float = 1.0,
        cycle_hold_s: float | None = None,
        recovery_step_backoff_s: float | None = None,
        generator: WorkItemGenerator | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._ledger = ledger
        self._ids = identities
        self._store = store
        self._publisher = publisher
        self._network_id = network_id
        self._reserve_required = reserve_required
        self._recover_after_stop = recover_after_stop

        rng = rng or random.Random()

        self.tracker = ObligationTracker()
        self.submitter = SequencedSubmitter(ledger)
        self.sender = EscalatingRetrySender(
            ledger, self.submitter, policy=policy, publisher=publisher
        )
        self.placer = LockPlacer(
            ledger, self.sender, identities.custodian, self.tracker, publisher
        )
        self.board = WorkItemBoard()

        self.scheduler = BidScheduler(
            self.placer,
            identities.participants,
            self.board,
            profiles=profiles,
            rng=rng,
            delay_scale=bid_delay_scale,
            publisher=publisher,
        )
        self.engine = CycleEngine(
            ledger=ledger,
            sender=self.sender,
            placer=self.placer,
            custodian=identities.custodian,
            payee=identities.payee,
            participants=identities.participants,
            board=self.board,
            generator=generator or WorkItemGenerator(rng=rng),
            publisher=publisher,
            scheduler=self.scheduler,
            rng=rng,
            cycle_hold_s=cycle_hold_s,
        )

        self._root = CancelScope("root")
        recovery_options: dict[str, Any] = {}
        if recovery_step_backoff_s is not None:
            recovery_options["step_backoff_s"] = recovery_step_backoff_s
        self.recovery = RecoveryCoordinator(
            ledger=ledger,
            sender=self.sender,
            placer=self.placer,
            identities=identities,
            tracker=self.tracker,
            publisher=publisher,
            root_scope=self._root,
            replenish_target=replenish_target,
            timeout_s=recovery_timeout_s,
            **recovery_options,
        )

        self._phase = RunPhase.IDLE
        self._run: RunState | None = None
        self._run_scope: CancelScope | None = None
        self._task: asyncio.Task[RunState] | None = None
        self._stop_requested = False

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        ledger: LedgerClient,
        identities: IdentitySet,
        store: RunStore,
        publisher: EventSink,
    ) -> RunController:
        return cls(
            ledger=ledger,
            identities=identities,
            store=store,
            publisher=publisher,
            network_id=config.ledger_network_id,
            reserve_required=config.reserve_required,
            replenish_target=config.replenish_target,
            recovery_timeout_s=config.recovery_timeout_s,
            recover_after_stop=config.recover_after_stop,
            bid_delay_scale=config.bid_delay_scale,
            cycle_hold_s=config.cycle_hold_s,
        )

    # ------------------------------------------------------------------
    # Operator API
    # ------------------------------------------------------------------

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def current_run(self) -> RunState | None:
        return self._run

    async def start(self, cycles: int, *, wait: bool = True) -> RunState:
        """
        Start a run of `cycles` cycles (clamped to [1, 20]).

        Raises:
            RunBusyError if a run is starting or running.
            RecoveryInProgress if background recovery is active.
            PreconditionFailed if reserve or network checks fail.

        With wait=False the RUNNING snapshot is returned immediately.
        """
        self._admit()
        # Read-only checks; the run lock is not held while they run
        await self._preflight()
        # Another start may have won while preflight awaited
        self._admit()

        self._phase = RunPhase.STARTING

        cycles = max(MIN_CYCLES_PER_RUN, min(MAX_CYCLES_PER_RUN, int(cycles)))
        run_id = uuid.uuid4().hex[:16]
        state = RunState(run_id=run_id, started_at_ms=now_ms(), requested_cycles=cycles)

        self._run = state
        self._stop_requested = False
        self._run_scope = self._root.child(f"run-{run_id}")
        self._phase = RunPhase.RUNNING

        self._publisher.publish("run.started", {
            "run_id": run_id,
            "cycles": cycles,
        })

        self._task = asyncio.create_task(
            self._execute(self._run_scope, cycles), name=f"run-{run_id}"
        )
        if not wait:
            return state
        return await asyncio.shield(self._task)

    def stop(self, *, include_recovery: bool = False) -> bool:
        """
        Cooperatively cancel the active run (and optionally recovery).

        Returns True if anything was signalled.
        """
        stopped = False
        scope = self._run_scope
        if scope is not None and not scope.cancelled:
            self._stop_requested = True
            stopped = scope.cancel("operator stop")

        if include_recovery:
            stopped = self.recovery.cancel("operator stop") or stopped

        if stopped:
            log_event({
                "event_type": "STOP_REQUESTED",
                "run_id": self._run.run_id if self._run else None,
                "include_recovery": include_recovery,
            })
        return stopped

    async def wait(self) -> RunState | None:
        """Wait for the active run (if any) to finish."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)
        return self._run

    def status(self) -> dict[str, Any]:
        run = self._run
        return {
            "phase": self._phase.value,
            "recovering": self.recovery.recovering,
            "run_id": run.run_id if run else None,
            "run_status": run.status.value if run else None,
            "current_cycle": run.current_cycle if run else 0,
            "requested_cycles": run.requested_cycles if run else 0,
            "open_obligations": len(self.tracker),
            "bid_timers": self.scheduler.snapshot(),
        }

    def latest_result(self) -> dict[str, Any] | None:
        """The most recent terminal run, newest first from the store."""
        try:
            recent = self._store.load_recent(1)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            _log_store_error("load", exc)
            recent = []
        if recent:
            return recent[0]
        if self._run is not None and self._run.status.terminal:
            return self._run.to_dict()
        return None

    def recent_results(self, limit: int = RUN_HISTORY_DEFAULT_LIMIT) -> list[dict[str, Any]]:
        try:
            return self._store.load_recent(limit)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            _log_store_error("load", exc)
            return []

    async def shutdown(self) -> None:
        """Cancel everything at process exit and wait for cleanup."""
        self._root.cancel("shutdown")
        await self.wait()
        await self.recovery.wait()

    # ------------------------------------------------------------------
    # Pre-run checks
    # ------------------------------------------------------------------

    def _admit(self) -> None:
        if self._phase is not RunPhase.IDLE:
            raise RunBusyError(f"run already {self._phase.value}")
        if self.recovery.recovering:
            raise RecoveryInProgress(RECOVERY_RETRY_AFTER_S)

    async def _preflight(self) -> None:
        try:
            network = await self._ledger.network_id()
            reserve = await self._ledger.external_balance_of(self._ids.custodian.address)
        except LedgerError as exc:
            raise PreconditionFailed("ledger", f"ledger unreachable: {exc}") from exc

        if network != self._network_id:
            self._reject("network", f"ledger network {network} != expected {self._network_id}")

        if reserve < self._reserve_required:
            self._reject(
                "reserve",
                f"custodian reserve {reserve} below required {self._reserve_required}",
            )

    def _reject(self, check: str, message: str) -> None:
        log_event({"event_type": "RUN_REJECTED", "check": check, "message": message})
        self._publisher.publish("run.rejected", {"check": check, "message": message})
        raise PreconditionFailed(check, message)

    # ------------------------------------------------------------------
    # Run body
    # ------------------------------------------------------------------

    async def _execute(self, scope: CancelScope, cycles: int) -> RunState:
        assert self._run is not None
        run_id = self._run.run_id

        compensations = CompensationStack(run_id=run_id)

        async def refund(obligation_id: str) -> None:
            await self.placer.refund(obligation_id, run_id=run_id)

        ctx = RunContext(
            run_id=run_id,
            scope=scope,
            guard=ObligationGuard(self.tracker, compensations, refund),
        )

        status = RunStatus.COMPLETED
        error: str | None = None
        interrupted = False

        try:
            with timed("run_duration", run_id=run_id, details={"cycles": cycles}):
                await reconcile_orphans(
                    self._ledger, self.placer, self._ids.participants,
                    scope=scope, run_id=run_id,
                )
                await self.engine.run(
                    ctx,
                    cycles,
                    on_cycle=self._record_cycle,
                    on_progress=self._record_progress,
                )
                outcome = await self.engine.verify_solvency(ctx)
                if outcome is not None:
                    self._run = with_solvency(
                        self._run, solvent=outcome.solvent, margin=outcome.margin, ref=outcome.ref
                    )

        except RunCancelled as exc:
            status = RunStatus.ABORTED
            error = f"cancelled: {exc.reason}"

        except asyncio.CancelledError:
            status = RunStatus.ABORTED
            error = "cancelled: task cancelled"
            interrupted = True

        except Exception as exc:  # pylint: disable=broad-exception-caught
            status = RunStatus.FAILED
            error = f"{type(exc).__name__}: {exc}"
            log_event({
                "event_type": "RUN_FAILED",
                "run_id": run_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })

        try:
            final = await self._cleanup(scope, compensations, status, error)
        finally:
            self._phase = RunPhase.IDLE
            self._run_scope = None
            scope.close()

        self._hand_off(final)

        if interrupted:
            raise asyncio.CancelledError()
        return final

    async def _cleanup(
        self,
        scope: CancelScope,
        compensations: CompensationStack,
        status: RunStatus,
        error: str | None,
    ) -> RunState:
        assert self._run is not None

        # No timer may fire once the run is over
        scope.cancel("run finished")
        self.scheduler.cancel_all()
        await self.scheduler.drain()

        unwind = await compensations.unwind()

        final = finish(
            self._run,
            status,
            completed_at_ms=now_ms(),
            error=error,
            details={"compensation": unwind.to_dict()} if unwind.attempted else None,
        )
        self._run = final

        try:
            await asyncio.to_thread(self._store.save, final)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            _log_store_error("save", exc, run_id=final.run_id)

        self._publisher.publish("run.finished", {
            "run_id": final.run_id,
            "status": final.status,
            "error": final.error,
            "cycles": len(final.cycles),
            "totals": final.totals,
        })
        return final

    def _hand_off(self, final: RunState) -> None:
        if self._root.cancelled:
            return
        if self._stop_requested and not self._recover_after_stop:
            log_event({
                "event_type": "RECOVERY_SKIPPED",
                "run_id": final.run_id,
                "reason": "operator stop",
            })
            return
        self.recovery.schedule(f"run {final.run_id} {final.status.value}")

    # ------------------------------------------------------------------
    # Engine callbacks
    # ------------------------------------------------------------------

    def _record_cycle(self, record: CycleRecord) -> None:
        assert self._run is not None
        self._run = with_cycle(self._run, record)

    def _record_progress(self, cycle: int) -> None:
        assert self._run is not None
        self._run = with_progress(self._run, cycle)


def _log_store_error(action: str, exc: Exception, *, run_id: str | None = None) -> None:
    log_event({
        "event_type": "RUN_STORE_ERROR",
        "action": action,
        "run_id": run_id,
        "exception": type(exc).__name__,
        "message": str(exc),
    })
