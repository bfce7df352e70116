"""
Orchestrator error taxonomy.

Ledger-level failures live in ledger/base.py. These errors describe what
the orchestrator decided to do about them, plus run admission signals.
"""

from __future__ import annotations

from ledger.base import LedgerError, OperationKind


class OrchestratorError(Exception):
    """Base class for orchestrator failures."""


# ---------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------

class SubmissionExhausted(OrchestratorError):
    """Retriable failures persisted through every allowed attempt."""

    def __init__(
        self,
        kind: OperationKind,
        attempts: int,
        last_error: LedgerError,
    ) -> None:
        super().__init__(
            f"{kind.value} not accepted after {attempts} attempts: {last_error}"
        )
        self.kind = kind
        self.attempts = attempts
        self.last_error = last_error


# ---------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------

class RunCancelled(OrchestratorError):
    """Cooperative cancellation. Not a failure."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


# ---------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------

class RunBusyError(OrchestratorError):
    """A run is already starting or running."""


class RecoveryInProgress(OrchestratorError):
    """Background recovery is active; the caller should try again shortly."""

    def __init__(self, retry_after_s: int) -> None:
        super().__init__(f"recovery in progress, retry in {retry_after_s}s")
        self.retry_after_s = retry_after_s


class PreconditionFailed(OrchestratorError):
    """A pre-run check failed; nothing was mutated."""

    def __init__(self, check: str, message: str) -> None:
        super().__init__(message)
        self.check = check


# ---------------------------------------------------------------------
# State
# ---------------------------------------------------------------------

class TerminalStateError(OrchestratorError):
    """Attempted transition out of a terminal run status."""
