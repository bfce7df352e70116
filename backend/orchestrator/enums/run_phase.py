"""
Controller phase enumeration.

Phases answer "can a new run be admitted?"; they are orthogonal to the
status of the most recent run and to background recovery.
"""

from __future__ import annotations

from enum import Enum


class RunPhase(str, Enum):
    """
    IDLE:
        No run in flight. A start may be admitted (unless recovering).

    STARTING:
        Admission accepted, pre-run checks executing.

    RUNNING:
        Run lock held, cycles executing or cleanup in progress.
    """

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
