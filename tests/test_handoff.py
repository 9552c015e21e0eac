import json
import os
from pathlib import Path

import pytest

from stepflow.errors import HandoffMismatch
from stepflow.session import RunSession
from stepflow.state import (
    HandoffPayload,
    HandoffStore,
    JsonEnvelopeStore,
    StateStoreError,
    restore_from_handoff,
    serialize_handoff,
)


def _session(session_id: str = "s1", step: str = "review") -> RunSession:
    session = RunSession(session_id=session_id, agent_name="iterator", current_step_id=step)
    session.iteration_count = 4
    return session


def test_serialize_and_restore_continue_the_lineage() -> None:
    payload = serialize_handoff(
        _session(),
        last_step_id="work",
        summary="parser half done",
        artifacts=["src/parser.py"],
        worktree={"path": "/tmp/wt", "branch": "stepflow/iterator/s1"},
    )

    assert payload.lineage_session_id == "s1"
    assert payload.resume_step_id == "review"
    assert HandoffPayload.from_dict(json.loads(json.dumps(payload.to_dict()))) == payload

    resumed = restore_from_handoff(payload, agent_name="iterator", expected_lineage="s1")

    assert resumed.session_id != "s1"
    assert resumed.resumed_from_session_id == "s1"
    assert resumed.lineage_id == "s1"
    assert resumed.current_step_id == "review"
    assert resumed.iteration_count == 4


def test_restore_rejects_mismatched_lineage_or_agent() -> None:
    payload = serialize_handoff(_session(), last_step_id="work")

    with pytest.raises(HandoffMismatch, match="does not match requested lineage"):
        restore_from_handoff(payload, agent_name="iterator", expected_lineage="other")
    with pytest.raises(HandoffMismatch, match="belongs to agent 'iterator'"):
        restore_from_handoff(payload, agent_name="reviewer")


def test_malformed_payload_is_handoff_mismatch() -> None:
    with pytest.raises(HandoffMismatch, match="Malformed"):
        HandoffPayload.from_dict({"session_id": "s1"})


def test_store_save_load_and_delete(tmp_path: Path) -> None:
    store = HandoffStore(tmp_path)
    payload = serialize_handoff(_session(), last_step_id="work", summary="keep going")

    path = store.save(payload)

    assert path == tmp_path / ".stepflow" / "handoffs" / "s1.json"
    envelope = json.loads(path.read_text(encoding="utf-8"))
    assert envelope["revision"] == 1
    assert envelope["data"]["summary"] == "keep going"
    assert store.load("s1") == payload

    assert store.delete("s1") is True
    assert store.delete("s1") is False
    with pytest.raises(HandoffMismatch, match="No hand-off found"):
        store.load("s1")


def test_store_load_rejects_payload_filed_under_wrong_lineage(tmp_path: Path) -> None:
    store = HandoffStore(tmp_path)
    payload = serialize_handoff(_session("s1"), last_step_id="work")
    store.store.write("s2", payload.to_dict())

    with pytest.raises(HandoffMismatch, match="carries lineage s1"):
        store.load("s2")


def test_latest_orders_by_creation_time_and_filters_agent(tmp_path: Path) -> None:
    store = HandoffStore(tmp_path)
    older = serialize_handoff(_session("a1"), last_step_id="work")
    older.created_at = "2026-01-01T00:00:00+00:00"
    newer = serialize_handoff(_session("b2"), last_step_id="work")
    newer.created_at = "2026-01-02T00:00:00+00:00"
    other = serialize_handoff(
        RunSession(session_id="c3", agent_name="reviewer", current_step_id="work"),
        last_step_id="work",
    )
    for payload in (newer, older, other):
        store.save(payload)

    assert [item.session_id for item in store.list_handoffs("iterator")] == ["a1", "b2"]
    assert len(store.list_handoffs()) == 3
    latest = store.latest("iterator")
    assert latest is not None and latest.session_id == "b2"
    assert store.latest("nobody") is None


def test_envelope_store_increments_revision_and_rejects_corruption(tmp_path: Path) -> None:
    store = JsonEnvelopeStore(tmp_path)

    store.write("doc", {"a": 1})
    envelope = store.write("doc", {"a": 2})

    assert envelope["revision"] == 2
    assert store.read("doc") == {"a": 2}
    assert store.keys() == ["doc"]
    assert not store.lock_file.exists()

    store.path("bad").write_text("{not json", encoding="utf-8")
    with pytest.raises(StateStoreError, match="Corrupt"):
        store.read("bad")


def test_envelope_store_times_out_on_held_lock(tmp_path: Path) -> None:
    store = JsonEnvelopeStore(tmp_path)
    fd = os.open(store.lock_file, os.O_CREAT | os.O_WRONLY)
    os.close(fd)

    with pytest.raises(StateStoreError, match="Timed out"):
        with store._lock(timeout_seconds=0.05):
            pass
