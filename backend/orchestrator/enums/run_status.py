"""
Run status enumeration.

Rules:
- RUNNING is the only non-terminal status.
- Terminal statuses are recorded exactly once per run.
"""

from __future__ import annotations

from enum import Enum


class RunStatus(str, Enum):
    """
    Lifecycle status of one run.

    RUNNING:
        Cycles are executing.

    COMPLETED:
        Every requested cycle finished (skipped cycles included).

    ABORTED:
        Cooperatively cancelled by an operator stop or shutdown.

    FAILED:
        Precondition failure or unclassified exception in the foreground run.
    """

    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not RunStatus.RUNNING
