"""Unit tests for session persistence."""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from phased_agent_orchestrator.orchestrator.state.sessions import (
    SCHEMA_VERSION,
    CleanupOptions,
    SessionStore,
    new_session_id,
)
from phased_agent_orchestrator.orchestrator.workflow.models import (
    AgentResult,
    WorkflowError,
    WorkflowState,
)
from phased_agent_orchestrator.orchestrator.workflow.state_machine import WorkflowStatus

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _state(session_id: str, status: WorkflowStatus = WorkflowStatus.RUNNING) -> WorkflowState:
    return WorkflowState(
        session_id=session_id,
        workflow="new-feature",
        description=f"session {session_id}",
        status=status,
        started_at=T0,
    )


def _store(path: Path, now: datetime = T0) -> tuple[SessionStore, _Clock]:
    clock = _Clock(now)
    return SessionStore(path, clock=clock), clock


def test_new_session_id_format() -> None:
    ids = {new_session_id() for _ in range(20)}

    assert len(ids) == 20
    assert all(re.fullmatch(r"[0-9a-z]+-[0-9a-f]{8}", i) for i in ids)


def test_save_load_roundtrip(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    state = _state("abc-0000000a")
    state.record(
        "Design Review",
        AgentResult(
            role="architect",
            success=True,
            output={"approved": True, "designNotes": "ok"},
            files_created=["src/app.py"],
            cost_usd=0.12,
            turns_used=3,
        ),
    )
    state.total_cost_usd = 0.12
    state.additional_context = "Use OAuth"

    store.save(state)
    loaded = store.load("abc-0000000a")

    assert loaded is not None
    assert loaded.state.model_dump() == state.model_dump()
    assert loaded.state.current_phase_index == 1
    assert loaded.metadata.session_id == "abc-0000000a"
    assert loaded.metadata.created_at == T0
    assert loaded.metadata.working_directory == str(tmp_path)
    assert loaded.metadata.version == SCHEMA_VERSION


def test_session_document_layout(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    store.save(_state("abc-0000000b"))

    path = tmp_path / ".orchestrator" / "sessions" / "abc-0000000b.json"
    text = path.read_text(encoding="utf-8")
    document = json.loads(text)

    assert text.endswith("}\n")
    assert document["metadata"]["version"] == "1.0.0"
    assert document["metadata"]["created_at"].startswith("2026-03-01T09:00:00")
    assert document["state"]["status"] == "running"
    assert store.directory == path.parent


def test_load_missing_or_invalid_ids(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)

    assert store.load("abc-0000000c") is None
    assert store.load("../../etc/passwd") is None


def test_save_rejects_invalid_session_id(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)

    with pytest.raises(ValueError, match="Invalid session id"):
        store.save(_state("../escape"))


def test_corrupt_documents_are_treated_as_absent(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    store.save(_state("abc-0000000d"))
    store.directory.joinpath("abc-0000000e.json").write_text("{not json", encoding="utf-8")
    store.directory.joinpath("abc-0000000f.json").write_text('{"metadata": {}}', encoding="utf-8")

    assert store.load("abc-0000000e") is None
    assert store.load("abc-0000000f") is None
    assert [s.session_id for s in store.list()] == ["abc-0000000d"]


def test_list_is_most_recently_updated_first(tmp_path: Path) -> None:
    store, clock = _store(tmp_path)
    for offset, session_id in [(1, "a-00000001"), (3, "b-00000002"), (2, "c-00000003")]:
        clock.now = T0 + timedelta(hours=offset)
        store.save(_state(session_id))

    summaries = store.list()

    assert [s.session_id for s in summaries] == ["b-00000002", "c-00000003", "a-00000001"]
    assert summaries[0].last_updated_at == T0 + timedelta(hours=3)
    assert summaries[0].workflow == "new-feature"
    assert summaries[0].current_phase == 0


def test_list_without_directory(tmp_path: Path) -> None:
    store, _ = _store(tmp_path / "nowhere")

    assert store.list() == []
    assert store.get_resumable() is None


def test_delete(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    store.save(_state("abc-00000010"))

    assert store.delete("abc-00000010") is True
    assert store.delete("abc-00000010") is False
    assert store.delete("not an id") is False
    assert store.load("abc-00000010") is None


def _populate_for_cleanup(tmp_path: Path) -> tuple[SessionStore, _Clock]:
    store, clock = _store(tmp_path, T0 - timedelta(days=10))
    for session_id, status in [
        ("old-00000001", WorkflowStatus.COMPLETED),
        ("old-00000002", WorkflowStatus.FAILED),
        ("old-00000003", WorkflowStatus.CANCELLED),
        ("old-00000004", WorkflowStatus.RUNNING),
        ("old-00000005", WorkflowStatus.AWAITING_APPROVAL),
    ]:
        store.save(_state(session_id, status))
    clock.now = T0 - timedelta(days=1)
    store.save(_state("new-00000006", WorkflowStatus.COMPLETED))
    clock.now = T0
    return store, clock


def test_cleanup_default_policy(tmp_path: Path) -> None:
    store, _ = _populate_for_cleanup(tmp_path)

    deleted = store.cleanup()

    assert deleted == 2
    remaining = {s.session_id for s in store.list()}
    assert remaining == {"old-00000002", "old-00000004", "old-00000005", "new-00000006"}


def test_cleanup_never_deletes_resumable_sessions(tmp_path: Path) -> None:
    store, _ = _populate_for_cleanup(tmp_path)

    deleted = store.cleanup(CleanupOptions(older_than_days=0, include_failed=True))

    assert deleted == 4
    assert {s.session_id for s in store.list()} == {"old-00000004", "old-00000005"}


def test_cleanup_options_select_statuses() -> None:
    options = CleanupOptions(include_completed=False, include_failed=True, include_cancelled=False)

    assert options.selects(WorkflowStatus.COMPLETED) is False
    assert options.selects(WorkflowStatus.FAILED) is True
    assert options.selects(WorkflowStatus.CANCELLED) is False
    assert options.selects(WorkflowStatus.RUNNING) is False
    assert options.selects(WorkflowStatus.AWAITING_APPROVAL) is False


def test_get_resumable_returns_most_recent_open_session(tmp_path: Path) -> None:
    store, clock = _store(tmp_path)
    for offset, session_id, status in [
        (1, "a-00000001", WorkflowStatus.RUNNING),
        (2, "b-00000002", WorkflowStatus.AWAITING_APPROVAL),
        (3, "c-00000003", WorkflowStatus.COMPLETED),
    ]:
        clock.now = T0 + timedelta(hours=offset)
        store.save(_state(session_id, status))

    resumable = store.get_resumable()

    assert resumable is not None
    assert resumable.state.session_id == "b-00000002"


def test_get_resumable_none_when_all_finished(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    store.save(_state("a-00000001", WorkflowStatus.COMPLETED))
    store.save(_state("b-00000002", WorkflowStatus.FAILED))

    assert store.get_resumable() is None


def test_record_is_write_once_and_advances_on_success() -> None:
    state = _state("abc-00000011")

    state.record("Design", AgentResult(role="architect", success=True))
    assert state.current_phase_index == 1

    with pytest.raises(WorkflowError):
        state.record("Design", AgentResult(role="architect", success=True))

    state.record("Spec", AgentResult(role="spec", success=False, error="no"))
    assert state.current_phase_index == 1
    assert state.current_phase_index <= len(state.phase_results)
