"""Tests for the durable session store."""

import json
import pytest
from pathlib import Path
from unittest.mock import patch

import yaml

from prism_workflow.errors import InvalidTransition, SessionCorrupt, SessionNotFound, StepFailure
from prism_workflow.models import SessionStatus
from prism_workflow.session_store import SessionStore, atomic_write, new_session_id
from prism_workflow.workspace import WorkspaceManager


STEPS = ["prd-analysis", "figma-analysis", "validation"]


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(WorkspaceManager(tmp_path))


class TestCreateAndLoad:
    """Tests for creating, saving and reloading sessions."""

    def test_create_persists_pending_session(self, store: SessionStore):
        state = store.create({"prd_path": "/docs/prd.md"}, STEPS, config_snapshot={"a": 1})

        assert state.status == SessionStatus.PENDING
        assert state.current_step_id == "prd-analysis"
        assert store.exists(state.session_id)

        loaded = store.load(state.session_id)
        assert loaded.inputs == {"prd_path": "/docs/prd.md"}
        assert [p.step_id for p in loaded.step_progress] == STEPS
        assert loaded.config == {"a": 1}

    def test_create_requires_steps(self, store: SessionStore):
        with pytest.raises(ValueError):
            store.create({}, [])

    def test_session_ids_are_unique(self, store: SessionStore):
        with patch("prism_workflow.session_store.time.time", return_value=1_700_000_000.0):
            first = store.create({}, STEPS)
            second = store.create({}, STEPS)
        assert first.session_id == "sess-1700000000000"
        assert second.session_id == "sess-1700000000001"

    def test_new_session_id_format(self):
        assert new_session_id(42) == "sess-0000000000042"

    def test_record_is_yaml_in_declaration_order(self, store: SessionStore):
        state = store.create({}, STEPS)
        text = store.workspace.session_state_path(state.session_id).read_text()
        data = yaml.safe_load(text)
        assert list(data)[:3] == ["version", "session_id", "created_at"]

    def test_save_then_reload_round_trips_progress(self, store: SessionStore):
        state = store.create({}, STEPS)
        store.start(state)
        store.mark_step_started(state, "prd-analysis")
        store.mark_step_completed(state, "prd-analysis", {"requirements_path": "/r.yaml"})

        loaded = store.load(state.session_id)
        assert loaded.completed_step_ids() == ["prd-analysis"]
        assert loaded.current_step_id == "figma-analysis"
        assert loaded.outputs["requirements_path"] == "/r.yaml"
        assert loaded.get_step("prd-analysis").attempts == 1


class TestLoadErrors:
    """Tests for missing and corrupt records."""

    def test_unknown_id(self, store: SessionStore):
        with pytest.raises(SessionNotFound):
            store.load("sess-1111111111111")

    def test_malformed_id(self, store: SessionStore):
        with pytest.raises(SessionNotFound):
            store.load("../../etc/passwd")

    def test_invalid_yaml(self, store: SessionStore):
        state = store.create({}, STEPS)
        store.workspace.session_state_path(state.session_id).write_text("key: [unclosed")
        with pytest.raises(SessionCorrupt):
            store.load(state.session_id)

    def test_schema_violation(self, store: SessionStore):
        state = store.create({}, STEPS)
        path = store.workspace.session_state_path(state.session_id)
        data = yaml.safe_load(path.read_text())
        data["status"] = "exploded"
        path.write_text(yaml.safe_dump(data))
        with pytest.raises(SessionCorrupt):
            store.load(state.session_id)

    def test_record_for_other_session(self, store: SessionStore):
        state = store.create({}, STEPS)
        other = store.workspace.session_dir("sess-1999999999999")
        other.mkdir()
        (other / "session_state.yaml").write_text(
            store.workspace.session_state_path(state.session_id).read_text()
        )
        with pytest.raises(SessionCorrupt):
            store.load("sess-1999999999999")


class TestAtomicWrite:
    """Tests for crash-safe checkpointing."""

    def test_failed_replace_keeps_previous_snapshot(self, tmp_path: Path):
        target = tmp_path / "state.yaml"
        atomic_write(target, b"old")

        with patch("prism_workflow.session_store.os.replace", side_effect=OSError("disk gone")):
            with pytest.raises(OSError):
                atomic_write(target, b"new")

        assert target.read_bytes() == b"old"
        assert [p.name for p in tmp_path.iterdir()] == ["state.yaml"]

    def test_interrupted_save_leaves_loadable_record(self, store: SessionStore):
        state = store.create({}, STEPS)
        store.start(state)
        state.mark_step_completed("prd-analysis")

        with patch("prism_workflow.session_store.os.replace", side_effect=OSError("killed")):
            with pytest.raises(OSError):
                store.save(state)

        loaded = store.load(state.session_id)
        assert loaded.status == SessionStatus.RUNNING
        assert loaded.completed_step_ids() == []


class TestLifecycle:
    """Tests for start, complete, fail, interrupt and resume."""

    def test_start_writes_active_marker(self, store: SessionStore):
        state = store.create({}, STEPS)
        store.start(state)
        assert store.is_active(state.session_id)
        assert store.load(state.session_id).status == SessionStatus.RUNNING

    def test_complete_clears_marker(self, store: SessionStore):
        state = store.create({}, STEPS)
        store.start(state)
        store.complete(state, {"tdd_path": "/TDD.md"})
        assert not store.is_active(state.session_id)
        loaded = store.load(state.session_id)
        assert loaded.status == SessionStatus.COMPLETED
        assert loaded.outputs["tdd_path"] == "/TDD.md"

    def test_fail_records_error_detail(self, store: SessionStore):
        state = store.create({}, STEPS)
        store.start(state)
        store.fail(state, StepFailure("validation", "boom"))

        loaded = store.load(state.session_id)
        assert loaded.status == SessionStatus.FAILED
        assert loaded.last_error.code == "STEP_FAILURE"
        assert loaded.last_error.step_id == "validation"
        assert store.read_error(state.session_id)["error_type"] == "StepFailure"
        assert not store.is_active(state.session_id)

    def test_interrupt_records_reason(self, store: SessionStore):
        state = store.create({}, STEPS)
        store.start(state)
        store.interrupt(state, "Interrupted by SIGINT")
        loaded = store.load(state.session_id)
        assert loaded.status == SessionStatus.INTERRUPTED
        assert loaded.interrupt_reason == "Interrupted by SIGINT"

    def test_resume_continues_at_first_incomplete_step(self, store: SessionStore):
        state = store.create({}, STEPS)
        store.start(state)
        store.mark_step_completed(state, "prd-analysis")
        store.mark_step_completed(state, "figma-analysis")
        store.fail(state, RuntimeError("crash"))

        resumed = store.resume(state.session_id)

        assert resumed.status == SessionStatus.RUNNING
        assert resumed.current_step_id == "validation"
        assert resumed.last_error is None
        assert resumed.completed_step_ids() == ["prd-analysis", "figma-analysis"]
        assert store.is_active(state.session_id)

    def test_completed_session_cannot_resume(self, store: SessionStore):
        state = store.create({}, STEPS)
        store.start(state)
        store.complete(state)
        with pytest.raises(InvalidTransition):
            store.resume(state.session_id)

    def test_running_session_cannot_resume(self, store: SessionStore):
        state = store.create({}, STEPS)
        store.start(state)
        with pytest.raises(InvalidTransition):
            store.resume(state.session_id)

    def test_recover_orphans(self, store: SessionStore):
        """Test that running sessions with no live owner become interrupted."""
        orphan = store.create({}, STEPS)
        store.start(orphan)
        finished = store.create({}, STEPS)
        store.start(finished)
        store.complete(finished)

        recovered = store.recover_orphans()

        assert recovered == [orphan.session_id]
        loaded = store.load(orphan.session_id)
        assert loaded.status == SessionStatus.INTERRUPTED
        assert not store.is_active(orphan.session_id)
        assert store.load(finished.session_id).status == SessionStatus.COMPLETED

    def test_recover_orphans_includes_never_started(self, store: SessionStore):
        """Test that a session created but never started is made resumable."""
        stranded = store.create({"prd_path": "prd.md"}, STEPS)

        assert store.recover_orphans() == [stranded.session_id]

        loaded = store.load(stranded.session_id)
        assert loaded.status == SessionStatus.INTERRUPTED
        assert loaded.interrupt_reason == "Process exited before the session started"

        resumed = store.resume(stranded.session_id)
        assert resumed.status == SessionStatus.RUNNING
        assert store.next_step(resumed) == STEPS[0]

    def test_next_step(self, store: SessionStore):
        state = store.create({}, ["only"])
        assert store.next_step(state) == "only"
        store.mark_step_completed(state, "only")
        assert store.next_step(state) is None


class TestListSessions:
    """Tests for listing and summaries."""

    def test_newest_first_with_filter(self, store: SessionStore):
        with patch("prism_workflow.session_store.time.time", side_effect=[1_700_000_000.0, 1_700_000_001.0]):
            older = store.create({}, STEPS)
            newer = store.create({}, STEPS)
        store.start(newer)
        store.interrupt(newer, "stop")

        everything = store.list_sessions()
        assert [s.session_id for s in everything] == [newer.session_id, older.session_id]

        interrupted = store.list_sessions(status=SessionStatus.INTERRUPTED)
        assert [s.session_id for s in interrupted] == [newer.session_id]
        assert interrupted[0].total_steps == 3

    def test_corrupt_records_are_listed(self, store: SessionStore):
        state = store.create({}, STEPS)
        store.workspace.session_state_path(state.session_id).write_text("- just\n- a list\n")

        summaries = store.list_sessions()
        assert len(summaries) == 1
        assert summaries[0].corrupt
        assert summaries[0].status is None
        assert store.list_sessions(status=SessionStatus.PENDING) == []

    def test_error_json_is_plain_json(self, store: SessionStore):
        state = store.create({}, STEPS)
        store.start(state)
        store.fail(state, ValueError("bad input"))
        raw = json.loads(store.workspace.session_error_path(state.session_id).read_text())
        assert raw["message"] == "bad input"
