"""
Run persistence.

A deliberately small contract: upsert a run by id, read the most recent
runs back as plain dicts. Callers treat store failures as non-fatal.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from constants import RUN_STORE_MAX_RECORDS
from events.publisher import json_safe
from orchestrator.state_dataclass import RunState


RunRecord = dict[str, Any]


@runtime_checkable
class RunStore(Protocol):
    """Adapter interface: persistence layer for RunState snapshots."""

    def save(self, state: RunState) -> None:
        ...

    def load_recent(self, limit: int) -> list[RunRecord]:
        """Newest first."""
        ...


def _serialize(state: RunState) -> RunRecord:
    return json_safe(state.to_dict())


def _upsert(records: list[RunRecord], record: RunRecord) -> list[RunRecord]:
    kept = [r for r in records if r.get("run_id") != record["run_id"]]
    kept.append(record)
    kept.sort(key=lambda r: int(r.get("started_at_ms") or 0))
    return kept[-RUN_STORE_MAX_RECORDS:]


class InMemoryRunStore:

    def __init__(self) -> None:
        self._records: list[RunRecord] = []

    def save(self, state: RunState) -> None:
        self._records = _upsert(self._records, _serialize(state))

    def load_recent(self, limit: int) -> list[RunRecord]:
        return list(reversed(self._records))[:max(limit, 0)]


class JsonFileRunStore:
    """
    Single JSON file holding the newest runs.

    Writes go to a temporary file in the same directory followed by
    os.replace, so readers never see a half-written file.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def save(self, state: RunState) -> None:
        records = _upsert(self._read(), _serialize(state))
        self._path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"runs": records}, fh, ensure_ascii=False)
            os.replace(tmp_name, self._path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def load_recent(self, limit: int) -> list[RunRecord]:
        return list(reversed(self._read()))[:max(limit, 0)]

    def _read(self) -> list[RunRecord]:
        if not self._path.exists():
            return []
        with self._path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        return list(data.get("runs", []))
