"""Tests for the command-line interface."""

import json
import pytest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from click.testing import CliRunner

from prism_workflow.cli import main
from prism_workflow.errors import StepFailure
from prism_workflow.models import SessionStatus, WorkflowResult
from prism_workflow.orchestration import WorkflowRecoveryManager
from prism_workflow.session_logger import SessionLogger
from prism_workflow.session_store import SessionStore
from prism_workflow.workspace import WorkspaceManager


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(WorkspaceManager(tmp_path))


def failed_session(store: SessionStore):
    state = store.create({"prd_path": "prd.md"}, ["prd-analysis", "validation"])
    store.start(state)
    store.mark_step_completed(state, "prd-analysis", {"requirements_path": "/tmp/r.yaml"})
    store.fail(state, StepFailure("validation", "model refused"))
    return state


def invoke(runner: CliRunner, tmp_path: Path, *args):
    return runner.invoke(main, ["--workspace", str(tmp_path), *args])


class TestRunCommands:
    """Tests for run and resume wiring."""

    def test_run_passes_inputs_and_exit_code(self, runner: CliRunner, tmp_path: Path):
        prd = tmp_path / "prd.md"
        prd.write_text("# PRD")
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(return_value=WorkflowResult(exit_code=4, message="Workspace is locked"))

        with patch("prism_workflow.cli.WorkflowOrchestrator", return_value=orchestrator) as cls:
            result = invoke(runner, tmp_path, "run", "--prd", str(prd), "--project", "Checkout",
                            "--timeout", "10", "--no-wait", "--no-cleanup")

        assert result.exit_code == 4
        assert "Workspace is locked" in result.output

        kwargs = cls.call_args.kwargs
        assert kwargs["handle_signals"] is True
        assert kwargs["auto_cleanup"] is False
        assert kwargs["config"].workflow_timeout_minutes == 10

        inputs = orchestrator.run.call_args.args[0]
        assert inputs["prd_path"] == str(prd.resolve())
        assert inputs["project_name"] == "Checkout"
        assert inputs["figma_source"] is None
        assert orchestrator.run.call_args.kwargs["wait_for_lock"] is False

    def test_run_updates_gitignore_in_repo(self, runner: CliRunner, tmp_path: Path):
        (tmp_path / ".git").mkdir()
        prd = tmp_path / "prd.md"
        prd.write_text("# PRD")
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(return_value=WorkflowResult(exit_code=0))

        with patch("prism_workflow.cli.WorkflowOrchestrator", return_value=orchestrator):
            invoke(runner, tmp_path, "run", "--prd", str(prd))

        assert ".prism/sessions/" in (tmp_path / ".gitignore").read_text()

    def test_run_requires_existing_prd(self, runner: CliRunner, tmp_path: Path):
        result = invoke(runner, tmp_path, "run", "--prd", str(tmp_path / "missing.md"))
        assert result.exit_code == 2

    def test_resume_passes_session_id(self, runner: CliRunner, tmp_path: Path):
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(return_value=WorkflowResult(
            session_id="sess-1700000000000", status=SessionStatus.COMPLETED, exit_code=0,
        ))

        with patch("prism_workflow.cli.WorkflowOrchestrator", return_value=orchestrator):
            result = invoke(runner, tmp_path, "resume", "sess-1700000000000")

        assert result.exit_code == 0
        assert orchestrator.run.call_args.kwargs["resume_session_id"] == "sess-1700000000000"


class TestSessionCommands:
    """Tests for list-sessions, show and logs."""

    def test_list_without_workspace(self, runner: CliRunner, tmp_path: Path):
        result = invoke(runner, tmp_path, "list-sessions")
        assert result.exit_code == 0
        assert "No .prism/ workspace" in result.output

    def test_list_shows_resume_hint(self, runner: CliRunner, tmp_path: Path, store: SessionStore):
        state = failed_session(store)
        result = invoke(runner, tmp_path, "list-sessions")
        assert result.exit_code == 0
        assert state.session_id in result.output
        assert f"prism resume {state.session_id}" in result.output

    def test_list_json(self, runner: CliRunner, tmp_path: Path, store: SessionStore):
        state = failed_session(store)
        result = invoke(runner, tmp_path, "list-sessions", "--status", "failed", "--format", "json")
        lines = [json.loads(line) for line in result.output.splitlines() if line.strip()]
        assert [entry["session_id"] for entry in lines] == [state.session_id]

    def test_show(self, runner: CliRunner, tmp_path: Path, store: SessionStore):
        state = failed_session(store)
        result = invoke(runner, tmp_path, "show", state.session_id)
        assert result.exit_code == 0
        assert "validation" in result.output
        assert "model refused" in result.output
        assert "requirements_path" in result.output

    def test_show_unknown(self, runner: CliRunner, tmp_path: Path):
        result = invoke(runner, tmp_path, "show", "sess-1234567890123")
        assert result.exit_code == 5

    def test_logs(self, runner: CliRunner, tmp_path: Path, store: SessionStore):
        state = failed_session(store)
        with SessionLogger(store.workspace, state.session_id) as logger:
            logger.log_step_start("validation", 1)
            logger.log_error("model refused", "STEP_FAILURE", "validation")

        pretty = invoke(runner, tmp_path, "logs", state.session_id)
        assert pretty.exit_code == 0
        assert "STEP_FAILURE" in pretty.output

        raw = invoke(runner, tmp_path, "logs", state.session_id, "--format", "json")
        types = [json.loads(line)["type"] for line in raw.output.splitlines() if line.strip()]
        assert types == ["step_start", "error"]

    def test_logs_missing(self, runner: CliRunner, tmp_path: Path):
        result = invoke(runner, tmp_path, "logs", "sess-1234567890123")
        assert result.exit_code == 5


class TestMaintenanceCommands:
    """Tests for cleanup, stop, env and config."""

    def test_cleanup_dry_run(self, runner: CliRunner, tmp_path: Path, store: SessionStore):
        failed_session(store)
        result = invoke(runner, tmp_path, "cleanup", "--dry-run", "--retention-days", "1")
        assert result.exit_code == 0
        assert "Would remove" in result.output
        assert not store.workspace.cleanup_marker.exists()

    def test_cleanup_records_run(self, runner: CliRunner, tmp_path: Path, store: SessionStore):
        failed_session(store)
        result = invoke(runner, tmp_path, "cleanup")
        assert result.exit_code == 0
        assert store.workspace.cleanup_marker.exists()
        assert len(store.list_sessions()) == 1

    def test_cleanup_rejects_bad_retention(self, runner: CliRunner, tmp_path: Path, store: SessionStore):
        store.workspace.ensure_structure()
        result = invoke(runner, tmp_path, "cleanup", "--retention-days", "0")
        assert result.exit_code == 2

    def test_stop(self, runner: CliRunner, tmp_path: Path):
        result = invoke(runner, tmp_path, "stop", "--reason", "lunch")
        assert result.exit_code == 0
        recovery = WorkflowRecoveryManager(WorkspaceManager(tmp_path))
        assert recovery.read_stop_request()["reason"] == "lunch"

    def test_env(self, runner: CliRunner, tmp_path: Path):
        result = invoke(runner, tmp_path, "env")
        assert result.exit_code == 0
        assert "Credentials" in result.output
        assert "free" in result.output

    def test_config_set_get(self, runner: CliRunner, tmp_path: Path):
        assert invoke(runner, tmp_path, "config", "set", "retention.session_days", "7").exit_code == 0
        result = invoke(runner, tmp_path, "config", "get", "retention.session_days")
        assert result.output.strip() == "7"

    def test_config_invalid(self, runner: CliRunner, tmp_path: Path):
        assert invoke(runner, tmp_path, "config", "set", "nope", "1").exit_code == 2
        assert invoke(runner, tmp_path, "config", "set", "retention.session_days", "0").exit_code == 2

    def test_config_show_and_reset(self, runner: CliRunner, tmp_path: Path):
        invoke(runner, tmp_path, "config", "set", "workflow_timeout_minutes", "5")
        assert invoke(runner, tmp_path, "config", "reset", "--yes").exit_code == 0
        result = invoke(runner, tmp_path, "config", "show")
        assert "workflow_timeout_minutes: 30.0" in result.output
