"""
Recovery coordinator phase enumeration.
"""

from __future__ import annotations

from enum import Enum


class RecoveryPhase(str, Enum):
    IDLE = "idle"
    RECOVERING = "recovering"
