# pylint: disable=missing-module-docstring,missing-function-docstring

import json
from typing import Any, Mapping

import pytest

from ledger.base import Identity, IdentityRole
from ledger.factory import IdentitySet
from observability import logger


class RecordingSink:
    """EventSink that keeps every published event in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, topic: str, payload: Mapping[str, Any]) -> None:
        self.events.append((topic, dict(payload)))

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.events]

    def payloads(self, topic: str) -> list[dict[str, Any]]:
        return [payload for t, payload in self.events if t == topic]


class LogCapture(list[dict[str, Any]]):

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self if e.get("event_type") == event_type]


def make_identities(participants: int = 3) -> IdentitySet:
    return IdentitySet(
        custodian=Identity(IdentityRole.CUSTODIAN, "custodian"),
        payee=Identity(IdentityRole.PAYEE, "payee"),
        participants=tuple(
            Identity(IdentityRole.PARTICIPANT, f"participant-{i}", index=i)
            for i in range(participants)
        ),
    )


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------

@pytest.fixture(autouse=True)
def logs(monkeypatch: pytest.MonkeyPatch) -> LogCapture:
    """Route the JSONL sink into memory for every test."""
    captured = LogCapture()

    def fake_print(line: str) -> None:
        captured.append(json.loads(line))

    monkeypatch.setattr(logger, "_print", fake_print)
    return captured


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def identities() -> IdentitySet:
    return make_identities(3)
