"""
Participant bidding personas.

Each profile is bound by index to one participant identity. Quality
thresholds use the same 0-100 scale as WorkItem.quality.
"""

from __future__ import annotations

from dataclasses import dataclass

from constants import AFFINITY_WILDCARD


@dataclass(frozen=True)
class ParticipantProfile:
    """
    Bidding behaviour of one participant.

    timing_bias_s is the preferred delay after a work item opens; the
    scheduler jitters and clamps it.
    """
    index: int
    name: str
    tag: str
    affinities: tuple[str, ...]
    min_quality: int
    max_price: int
    timing_bias_s: float

    def wants(self, topic: str) -> bool:
        return AFFINITY_WILDCARD in self.affinities or topic in self.affinities


DEFAULT_PROFILES: tuple[ParticipantProfile, ...] = (
    ParticipantProfile(0, "MortgageMaven", "mortgage-sniper", ("mortgage", "real_estate"), 60, 90, 48),
    ParticipantProfile(1, "SolarSpecialist", "solar-only", ("solar",), 70, 75, 38),
    ParticipantProfile(2, "RoofingPro", "home-services", ("roofing", "hvac", "solar"), 40, 55, 18),
    ParticipantProfile(3, "InsuranceAce", "insurance", ("insurance",), 50, 60, 30),
    ParticipantProfile(4, "LegalEagle", "legal-premium", ("legal",), 40, 120, 52),
    ParticipantProfile(5, "FinancePilot", "fin-services", ("financial_services", "insurance"), 40, 100, 42),
    ParticipantProfile(6, "GeneralistA", "bargain-hunter", (AFFINITY_WILDCARD,), 30, 45, 12),
    ParticipantProfile(7, "GeneralistB", "mid-market", (AFFINITY_WILDCARD,), 50, 65, 28),
    ParticipantProfile(8, "HomeServices", "hvac-solar-roof", ("roofing", "hvac", "solar", "real_estate"), 45, 70, 22),
    ParticipantProfile(9, "HighRoller", "premium-all", (AFFINITY_WILDCARD,), 65, 130, 50),
)

TOPICS: tuple[str, ...] = (
    "mortgage",
    "real_estate",
    "solar",
    "roofing",
    "hvac",
    "insurance",
    "legal",
    "financial_services",
)
