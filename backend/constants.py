"""
BEHAVIOR-AS-CONSTANTS
---------------------
Single source of truth for all behavioral constants of the orchestrator.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Deployment-specific values (addresses, URLs, seed balances) live in config.py.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Run Admission
# =============================================================================

MAX_CYCLES_PER_RUN: Final[int] = 20
MIN_CYCLES_PER_RUN: Final[int] = 1

# Custodian external balance that must be available before a run may start
RESERVE_REQUIRED_DEFAULT: Final[int] = 2_500

# Returned with the "recovering" admission signal
RECOVERY_RETRY_AFTER_S: Final[int] = 15

# =============================================================================
# Submission Retry / Fee Escalation
# =============================================================================

SUBMIT_MAX_ATTEMPTS: Final[int] = 3

# First attempt pays baseline * 1.1 + premium; each retry multiplies by 1.5
FEE_BASE_MULTIPLIER: Final[float] = 1.1
FEE_ESCALATION_FACTOR: Final[float] = 1.5
FEE_PRIORITY_PREMIUM: Final[int] = 2

# Linear backoff: attempt N sleeps N * 0.4s
SUBMIT_BACKOFF_STEP_S: Final[float] = 0.4

# =============================================================================
# Cycle Engine
# =============================================================================

PARTICIPANTS_PER_CYCLE: Final[Tuple[int, int]] = (3, 6)

BID_VARIANCE_FRACTION: Final[float] = 0.20
BID_MINIMUM: Final[int] = 10

# Fraction of cycles (with >= 2 ready bidders) forced into an equal-max bid
TIEBREAK_PROBABILITY: Final[float] = 0.20

# Platform income accounting per settled cycle
PLATFORM_FEE_FRACTION: Final[float] = 0.05
PLATFORM_LOCK_FEE: Final[int] = 1

# =============================================================================
# Bid Scheduler
# =============================================================================

# Probability a work item is left cold (no scheduled bidders at all)
ZERO_INTEREST_PROBABILITY: Final[float] = 0.15

# Probability an eligible participant sits out a given work item
PARTICIPANT_SKIP_PROBABILITY: Final[float] = 0.10

BID_PREMIUM_MAX_FRACTION: Final[float] = 0.20

BID_TIMER_JITTER_S: Final[float] = 12.0
BID_TIMER_MIN_S: Final[float] = 10.0
BID_TIMER_MAX_S: Final[float] = 55.0

# Wildcard affinity matches every topic
AFFINITY_WILDCARD: Final[str] = "*"

# =============================================================================
# Work Items
# =============================================================================

WORK_ITEM_WINDOW_S: Final[float] = 60.0
WORK_ITEM_PRICE_RANGE: Final[Tuple[int, int]] = (40, 120)
WORK_ITEM_QUALITY_RANGE: Final[Tuple[int, int]] = (40, 95)

# =============================================================================
# Reconciliation / Recovery
# =============================================================================

# Historical lock-event scan depth (in ledger heights)
LOCK_EVENT_LOOKBACK: Final[int] = 10_000

RECOVERY_TIMEOUT_S: Final[float] = 240.0
RECOVERY_STEP_ATTEMPTS: Final[int] = 3
RECOVERY_STEP_BACKOFF_S: Final[float] = 1.5

REPLENISH_TARGET_DEFAULT: Final[int] = 200

# =============================================================================
# Event Publishing
# =============================================================================

EVENT_SUBSCRIBER_QUEUE_MAX: Final[int] = 256

# Integers beyond this magnitude are published as strings
JSON_SAFE_INT_MAX: Final[int] = 2**53 - 1

# =============================================================================
# Run Store
# =============================================================================

RUN_STORE_MAX_RECORDS: Final[int] = 200
RUN_HISTORY_DEFAULT_LIMIT: Final[int] = 10
