"""
Submission retry policy and fee-escalating sender.

Purpose:
- Centralize retry rules for every ledger write
- Escalate fees under fee-market contention until accepted or exhausted
- Keep the policy itself pure (RetryPolicy has no I/O)

EscalatingRetrySender is the only component that calls LedgerClient.submit.
"""
from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from constants import (
    FEE_BASE_MULTIPLIER,
    FEE_ESCALATION_FACTOR,
    FEE_PRIORITY_PREMIUM,
    SUBMIT_BACKOFF_STEP_S,
    SUBMIT_MAX_ATTEMPTS,
)
from ledger.base import (
    ConflictingPendingError,
    FeeTooLowError,
    Identity,
    LedgerClient,
    LedgerError,
    Operation,
    Receipt,
    StaleSequenceError,
)
from events.publisher import EventSink, publish_log
from orchestrator.cancellation import CancelScope
from orchestrator.errors import SubmissionExhausted
from orchestrator.sequencing import SequencedSubmitter


# =============================================================================
# Failure Types
# =============================================================================

class FailureType(str, Enum):
    """
    Failure classification used by the retry policy.

    FEE_TOO_LOW:
        Fee under the current minimum, or replacement underpriced.
        Retried at an escalated fee.

    CONFLICTING_PENDING:
        Another operation already occupies the sequence.
        Retried with a fresh sequence and a higher fee.

    STALE_SEQUENCE:
        The sequence was consumed elsewhere. Retried with a fresh sequence.

    TERMINAL:
        Everything else. Never retried; the original error propagates.

    Notes:
    - Cancellation is NOT a failure type and never triggers retries.
    """

    FEE_TOO_LOW = "fee_too_low"
    CONFLICTING_PENDING = "conflicting_pending"
    STALE_SEQUENCE = "stale_sequence"
    TERMINAL = "terminal"


def classify_failure(exc: BaseException) -> FailureType:
    if isinstance(exc, FeeTooLowError):
        return FailureType.FEE_TOO_LOW
    if isinstance(exc, ConflictingPendingError):
        return FailureType.CONFLICTING_PENDING
    if isinstance(exc, StaleSequenceError):
        return FailureType.STALE_SEQUENCE
    return FailureType.TERMINAL


# =============================================================================
# Retry State
# =============================================================================

@dataclass(frozen=True)
class RetryAttempt:
    """
    Immutable retry attempt counter.

    attempt == 0 is the initial submission; attempt >= 1 is the Nth retry.
    """
    attempt: int


def next_attempt(current: RetryAttempt) -> RetryAttempt:
    return RetryAttempt(attempt=current.attempt + 1)


def reset_attempt() -> RetryAttempt:
    """Returns a fresh retry attempt counter."""
    return RetryAttempt(attempt=0)


# =============================================================================
# Policy
# =============================================================================

@dataclass(frozen=True)
class RetryPolicy:
    """
    Parameters shared by every submission call site.

    max_attempts counts the initial submission: 3 means one try plus
    two retries.
    """
    max_attempts: int = SUBMIT_MAX_ATTEMPTS
    base_multiplier: float = FEE_BASE_MULTIPLIER
    escalation: float = FEE_ESCALATION_FACTOR
    priority_premium: int = FEE_PRIORITY_PREMIUM
    backoff_step_s: float = SUBMIT_BACKOFF_STEP_S
    classify: Callable[[BaseException], FailureType] = classify_failure

    def should_retry(self, failure: FailureType, attempt: RetryAttempt) -> bool:
        """
        attempt = number of retries already performed
        """
        if failure is FailureType.TERMINAL:
            return False
        return attempt.attempt + 1 < self.max_attempts

    def backoff_s(self, attempt: RetryAttempt) -> float:
        """Linear backoff before retry N."""
        return self.backoff_step_s * attempt.attempt

    def fee_for(
        self,
        *,
        baseline: int,
        attempt: RetryAttempt,
        previous_fee: int | None,
        fee_floor: int = 0,
    ) -> int:
        """
        Fee for the given attempt.

        The multiplier compounds by `escalation` per retry, and a retry never
        pays less than previous_fee * escalation even if the baseline dropped.
        """
        multiplier = self.base_multiplier * (self.escalation ** attempt.attempt)
        # Float products like 10 * 1.1 carry noise above the integer
        fee = math.ceil(round(baseline * multiplier, 9)) + self.priority_premium
        if previous_fee is not None:
            fee = max(fee, math.ceil(round(previous_fee * self.escalation, 9)))
        return max(fee, fee_floor)


# =============================================================================
# Sender
# =============================================================================

Sleep = Callable[[float], Awaitable[None]]


class EscalatingRetrySender:
    """
    Submit an operation with sequencing, fee escalation and bounded retries.

    Each attempt:
    1. reads the fee baseline
    2. leases a sequence number for the signer
    3. submits at the policy fee

    Terminal failures propagate unchanged. Retriable failures consume an
    attempt; once exhausted, SubmissionExhausted is raised.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        submitter: SequencedSubmitter,
        *,
        policy: RetryPolicy | None = None,
        sleep: Sleep | None = None,
        publisher: EventSink | None = None,
    ) -> None:
        self._ledger = ledger
        self._submitter = submitter
        self._policy = policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep
        self._publisher = publisher

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def send(
        self,
        identity: Identity,
        operation: Operation,
        *,
        fee_floor: int = 0,
        scope: CancelScope | None = None,
        run_id: str | None = None,
    ) -> Receipt:
        """
        Raises:
            SubmissionExhausted after max_attempts retriable failures.
            LedgerError (terminal) immediately.
            RunCancelled if scope is cancelled between attempts.
        """
        attempt = reset_attempt()
        previous_fee: int | None = None

        while True:
            if scope is not None:
                scope.raise_if_cancelled()

            baseline = await self._ledger.fee_baseline()
            fee = self._policy.fee_for(
                baseline=baseline,
                attempt=attempt,
                previous_fee=previous_fee,
                fee_floor=fee_floor,
            )

            try:
                async with self._submitter.lease(identity) as sequence:
                    return await self._ledger.submit(
                        identity, operation, sequence=sequence, fee=fee
                    )
            except LedgerError as exc:
                failure = self._policy.classify(exc)

                if not self._policy.should_retry(failure, attempt):
                    if failure is FailureType.TERMINAL:
                        raise
                    publish_log(self._publisher, {
                        "event_type": "SUBMIT_EXHAUSTED",
                        "run_id": run_id,
                        "signer": identity.label(),
                        "operation": operation.kind.value,
                        "attempts": attempt.attempt + 1,
                        "last_fee": fee,
                        "failure": failure.value,
                        "message": str(exc),
                    }, level="error")
                    raise SubmissionExhausted(
                        operation.kind, attempt.attempt + 1, exc
                    ) from exc

                attempt = next_attempt(attempt)
                previous_fee = fee
                delay_s = self._policy.backoff_s(attempt)

                publish_log(self._publisher, {
                    "event_type": "SUBMIT_RETRY",
                    "run_id": run_id,
                    "signer": identity.label(),
                    "operation": operation.kind.value,
                    "attempt": attempt.attempt,
                    "failure": failure.value,
                    "previous_fee": fee,
                    "delay_s": delay_s,
                    "message": str(exc),
                })

            if scope is not None:
                await scope.sleep(delay_s)
            else:
                await self._sleep(delay_s)
