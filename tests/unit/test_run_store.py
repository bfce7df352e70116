# pylint: disable=missing-module-docstring,missing-function-docstring

import json

import pytest

from orchestrator.enums.run_status import RunStatus
from orchestrator.state_dataclass import RunState, finish
from store.run_store import InMemoryRunStore, JsonFileRunStore


def finished(run_id: str, started_at_ms: int, **details) -> RunState:
    state = RunState(run_id=run_id, started_at_ms=started_at_ms, requested_cycles=3)
    return finish(state, RunStatus.COMPLETED, completed_at_ms=started_at_ms + 10, details=details)


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryRunStore()
    return JsonFileRunStore(tmp_path / "runs" / "history.json")


def test_load_recent_is_newest_first(store):
    store.save(finished("a", 1000))
    store.save(finished("b", 2000))
    store.save(finished("c", 3000))

    assert [r["run_id"] for r in store.load_recent(2)] == ["c", "b"]
    assert store.load_recent(0) == []


def test_save_upserts_by_run_id(store):
    store.save(finished("a", 1000, note="first"))
    store.save(finished("a", 1000, note="second"))

    records = store.load_recent(10)
    assert len(records) == 1
    assert records[0]["details"]["note"] == "second"
    assert records[0]["status"] == "completed"


def test_file_store_writes_json_atomically(tmp_path):
    path = tmp_path / "history.json"
    store = JsonFileRunStore(path)

    store.save(finished("a", 1000, amount=2**60))

    data = json.loads(path.read_text(encoding="utf-8"))
    assert [r["run_id"] for r in data["runs"]] == ["a"]
    assert data["runs"][0]["details"]["amount"] == str(2**60)

    # No temp files left behind
    assert [p.name for p in tmp_path.iterdir()] == ["history.json"]


def test_file_store_survives_reopen(tmp_path):
    path = tmp_path / "history.json"
    JsonFileRunStore(path).save(finished("a", 1000))

    assert JsonFileRunStore(path).load_recent(5)[0]["run_id"] == "a"


def test_missing_file_reads_empty(tmp_path):
    assert JsonFileRunStore(tmp_path / "none.json").load_recent(5) == []
