"""Durable, checkpointed session state.

Each session lives in .prism/sessions/{session_id}/ with a YAML record
(session_state.yaml). Writes go to a temp file in the same directory, are
fsynced, then renamed over the previous snapshot, so a crash mid-write
leaves the prior checkpoint intact. Every read is validated against the
SessionState schema.

The .running marker is written when a session starts or resumes and
removed when it reaches a terminal status; the cleanup sweep never touches
a directory that carries it.
"""

import json
import os
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError
from rich.console import Console

from .errors import InvalidTransition, PrismError, SessionCorrupt, SessionNotFound
from .models import (
    SESSION_ID_PATTERN,
    ErrorDetail,
    SessionState,
    SessionStatus,
    SessionSummary,
    StepProgress,
)
from .workspace import WorkspaceManager


console = Console()


def new_session_id(now_ms: Optional[int] = None) -> str:
    """Build a session id from an epoch-millisecond timestamp."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"sess-{now_ms:013d}"


def atomic_write(path: Path, data: bytes) -> None:
    """Write-temp-then-rename so readers only ever see a complete file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "wb", delete=False, dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
    ) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    try:
        os.replace(tmp_name, path)
    except OSError:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def dump_state(state: SessionState) -> str:
    """Serialize a session to diff-friendly YAML (fields in declaration order)."""
    return yaml.safe_dump(
        state.model_dump(mode="json"),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )


def parse_state(text: str, session_id: str) -> SessionState:
    """Parse and validate a session record.

    Raises:
        SessionCorrupt: The record is not valid YAML or fails the schema
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise SessionCorrupt(f"record is not valid YAML ({e.__class__.__name__})", session_id) from e
    if not isinstance(data, dict):
        raise SessionCorrupt("record is empty or not a mapping", session_id)
    try:
        state = SessionState.model_validate(data)
    except ValidationError as e:
        raise SessionCorrupt(f"record fails validation ({e.error_count()} errors)", session_id) from e
    if state.session_id != session_id:
        raise SessionCorrupt(f"record belongs to {state.session_id}", session_id)
    return state


class SessionStore:
    """Creates, checkpoints and reloads workflow sessions in a workspace."""

    def __init__(self, workspace: WorkspaceManager):
        self.workspace = workspace

    # =========================================================================
    # Paths
    # =========================================================================

    def session_dir(self, session_id: str) -> Path:
        return self.workspace.session_dir(session_id)

    def exists(self, session_id: str) -> bool:
        return self.workspace.session_state_path(session_id).exists()

    def is_active(self, session_id: str) -> bool:
        """True while a run owns the session (the .running marker is present)."""
        return self.workspace.active_marker_path(session_id).exists()

    # =========================================================================
    # Create / save / load
    # =========================================================================

    def create(
        self,
        inputs: dict[str, Any],
        step_ids: list[str],
        config_snapshot: Optional[dict[str, Any]] = None,
    ) -> SessionState:
        """Create and persist a new pending session.

        Args:
            inputs: Workflow inputs recorded with the session
            step_ids: Declared steps, in execution order
            config_snapshot: Configuration in effect for this session

        Returns:
            The saved SessionState
        """
        if not step_ids:
            raise ValueError("A session needs at least one step")

        self.workspace.ensure_structure()
        session_id = self._reserve_session_dir()

        state = SessionState(
            session_id=session_id,
            status=SessionStatus.PENDING,
            current_step_id=step_ids[0],
            step_progress=[StepProgress(step_id=s) for s in step_ids],
            inputs=dict(inputs),
            config=dict(config_snapshot or {}),
        )
        self.save(state)
        return state

    def _reserve_session_dir(self) -> str:
        # mkdir is atomic; bump the timestamp on collision so ids stay unique
        now_ms = int(time.time() * 1000)
        while True:
            session_id = new_session_id(now_ms)
            try:
                self.session_dir(session_id).mkdir(parents=True, exist_ok=False)
                return session_id
            except FileExistsError:
                now_ms += 1

    def save(self, state: SessionState) -> None:
        """Atomically checkpoint a session. Safe to call repeatedly."""
        state.updated_at = datetime.now()
        path = self.workspace.session_state_path(state.session_id)
        atomic_write(path, dump_state(state).encode("utf-8"))

    def load(self, session_id: str) -> SessionState:
        """Load and validate a session.

        Raises:
            SessionNotFound: No record for this id
            SessionCorrupt: The record exists but is unreadable or invalid
        """
        if not SESSION_ID_PATTERN.match(session_id):
            raise SessionNotFound("not a valid session id", session_id)
        path = self.workspace.session_state_path(session_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise SessionNotFound("no such session", session_id) from e
        except (OSError, UnicodeDecodeError) as e:
            raise SessionCorrupt(f"record could not be read ({e})", session_id) from e
        return parse_state(text, session_id)

    def list_sessions(self, status: Optional[SessionStatus] = None) -> list[SessionSummary]:
        """List sessions, newest first. Corrupt records are listed as corrupt."""
        summaries = []
        for session_dir in self.workspace.iter_session_dirs():
            session_id = session_dir.name
            try:
                state = self.load(session_id)
            except SessionNotFound:
                continue
            except SessionCorrupt as e:
                if status is None:
                    summaries.append(SessionSummary(
                        session_id=session_id,
                        active=self.is_active(session_id),
                        corrupt=True,
                        error=e.message,
                    ))
                continue

            if status is not None and state.status != status:
                continue
            summaries.append(self.summarize(state))

        summaries.sort(key=lambda s: s.session_id, reverse=True)
        return summaries

    def summarize(self, state: SessionState) -> SessionSummary:
        return SessionSummary(
            session_id=state.session_id,
            status=state.status,
            current_step_id=state.current_step_id,
            created_at=state.created_at,
            updated_at=state.updated_at,
            completed_steps=len(state.completed_step_ids()),
            total_steps=len(state.step_progress),
            active=self.is_active(state.session_id),
            error=state.last_error.message if state.last_error else None,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, state: SessionState) -> SessionState:
        """Move a new session to running and mark it active."""
        state.transition_to(SessionStatus.RUNNING)
        self._write_active_marker(state.session_id)
        self.save(state)
        return state

    def resume(self, session_id: str) -> SessionState:
        """Reopen a failed or interrupted session for another run.

        Raises:
            SessionNotFound, SessionCorrupt: The record cannot be loaded
            InvalidTransition: The session is completed, or still running
                (a crashed run must go through recover_orphans() first)
        """
        state = self.load(session_id)
        if not state.is_resumable():
            raise InvalidTransition(session_id, state.status.value, SessionStatus.RUNNING.value)

        state.transition_to(SessionStatus.RUNNING, via_resume=True)
        state.last_error = None
        state.interrupt_reason = None
        following = state.next_step()
        if following is not None:
            state.current_step_id = following.step_id
        self._write_active_marker(session_id)
        self.save(state)
        return state

    def mark_step_started(self, state: SessionState, step_id: str) -> None:
        state.mark_step_started(step_id)
        self.save(state)

    def mark_step_completed(
        self,
        state: SessionState,
        step_id: str,
        outputs: Optional[dict[str, Any]] = None,
        skipped: bool = False,
    ) -> None:
        state.mark_step_completed(step_id, outputs=outputs, skipped=skipped)
        self.save(state)

    def complete(self, state: SessionState, outputs: Optional[dict[str, Any]] = None) -> None:
        """Record a successful end of the workflow."""
        if outputs:
            state.outputs.update(outputs)
        state.transition_to(SessionStatus.COMPLETED)
        self.save(state)
        self._clear_active_marker(state.session_id)

    def fail(
        self,
        state: SessionState,
        error: BaseException,
        step_id: Optional[str] = None,
    ) -> None:
        """Record a failure; the session stays resumable.

        Also writes error.json beside the record for quick inspection.
        """
        detail = ErrorDetail(
            message=getattr(error, "message", None) or str(error) or error.__class__.__name__,
            error_type=error.__class__.__name__,
            code=error.code if isinstance(error, PrismError) else None,
            step_id=step_id or getattr(error, "step_id", None) or state.current_step_id,
        )
        state.last_error = detail
        state.transition_to(SessionStatus.FAILED)
        self.save(state)
        try:
            atomic_write(
                self.workspace.session_error_path(state.session_id),
                detail.model_dump_json(indent=2).encode("utf-8"),
            )
        except OSError as e:
            console.print(f"[yellow]Could not write error detail: {e}[/yellow]")
        self._clear_active_marker(state.session_id)

    def interrupt(self, state: SessionState, reason: str) -> None:
        """Record a cancellation (timeout, signal, stop request); resumable."""
        state.interrupt_reason = reason
        state.transition_to(SessionStatus.INTERRUPTED)
        self.save(state)
        self._clear_active_marker(state.session_id)

    def recover_orphans(self) -> list[str]:
        """Turn sessions left running or pending by a dead process into interrupted ones.

        Only call this while holding the workspace lock: then no live run can
        own a running or pending session, so every one found is an orphan. A
        pending orphan was created but never started.

        Returns:
            Ids of the recovered sessions
        """
        recovered = []
        for session_dir in self.workspace.iter_session_dirs():
            session_id = session_dir.name
            try:
                state = self.load(session_id)
            except (SessionNotFound, SessionCorrupt):
                continue
            if state.status not in (SessionStatus.RUNNING, SessionStatus.PENDING):
                continue
            if state.status == SessionStatus.PENDING:
                self.interrupt(state, "Process exited before the session started")
            else:
                self.interrupt(state, "Process exited while the session was running")
            recovered.append(session_id)
        if recovered:
            console.print(
                f"[yellow]Recovered {len(recovered)} orphaned session(s) as interrupted[/yellow]"
            )
        return recovered

    def next_step(self, state: SessionState) -> Optional[str]:
        """Id of the first step not yet completed, or None when all are done."""
        following = state.next_step()
        return following.step_id if following else None

    def read_error(self, session_id: str) -> Optional[dict]:
        """The error.json detail for a session, if any."""
        path = self.workspace.session_error_path(session_id)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

    # =========================================================================
    # Active marker
    # =========================================================================

    def _write_active_marker(self, session_id: str) -> None:
        payload = {"pid": os.getpid(), "started_at": datetime.now().isoformat()}
        atomic_write(
            self.workspace.active_marker_path(session_id),
            json.dumps(payload).encode("utf-8"),
        )

    def _clear_active_marker(self, session_id: str) -> None:
        try:
            self.workspace.active_marker_path(session_id).unlink()
        except FileNotFoundError:
            pass
