"""Session event logging (JSONL).

Every session keeps an append-only events.jsonl beside its state record:
- Session start/resume/end
- Step start, completion and skips
- Auth pause and restore
- Cancellation and errors

Each write is flushed and fsynced so the log can be followed live.
Secrets never reach this log; credential events carry only the source tier
and provider ids.
"""

import json
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from .models import LogEntryType
from .workspace import WorkspaceManager


class SessionLogger:
    """JSONL event logger for one session.

    Example output:
        {"type": "session_start", "timestamp": "...", "session_id": "...", "steps": [...]}
        {"type": "step_start", "timestamp": "...", "step_id": "prd-analysis", "attempt": 1}
        {"type": "step_complete", "timestamp": "...", "step_id": "prd-analysis", "duration_seconds": 12.4}
        {"type": "session_end", "timestamp": "...", "status": "completed", ...}
    """

    def __init__(self, workspace: WorkspaceManager, session_id: str):
        """Initialize session logger.

        Args:
            workspace: WorkspaceManager instance
            session_id: Session the events belong to
        """
        self.workspace = workspace
        self.session_id = session_id
        self.log_file = workspace.session_log_path(session_id)
        self._started_at = datetime.now()
        self._step_started: dict[str, datetime] = {}
        self._file_handle: Optional[Any] = None

    def _write_entry(self, entry: dict) -> None:
        """Write a log entry with immediate flush.

        Args:
            entry: Dict to write as JSON line
        """
        if "timestamp" not in entry:
            entry["timestamp"] = datetime.now().isoformat()

        if self._file_handle is None:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            self._file_handle = open(self.log_file, "a", encoding="utf-8")

        self._file_handle.write(json.dumps(entry, default=str) + "\n")
        self._file_handle.flush()

        try:
            os.fsync(self._file_handle.fileno())
        except (OSError, AttributeError):
            pass  # Some systems don't support fsync

    def log_session_start(self, steps: list[str], inputs: Optional[dict] = None) -> None:
        self._write_entry({
            "type": LogEntryType.SESSION_START.value,
            "session_id": self.session_id,
            "pid": os.getpid(),
            "steps": steps,
            "inputs": inputs or {},
        })

    def log_session_resume(self, completed_steps: list[str], next_step: Optional[str]) -> None:
        self._write_entry({
            "type": LogEntryType.SESSION_RESUME.value,
            "session_id": self.session_id,
            "pid": os.getpid(),
            "completed_steps": completed_steps,
            "next_step": next_step,
        })

    def log_step_start(self, step_id: str, attempt: int) -> None:
        self._step_started[step_id] = datetime.now()
        self._write_entry({
            "type": LogEntryType.STEP_START.value,
            "step_id": step_id,
            "attempt": attempt,
        })

    def log_step_complete(self, step_id: str, output_keys: Optional[list[str]] = None) -> None:
        started = self._step_started.pop(step_id, None)
        duration = (datetime.now() - started).total_seconds() if started else None
        self._write_entry({
            "type": LogEntryType.STEP_COMPLETE.value,
            "step_id": step_id,
            "duration_seconds": round(duration, 2) if duration is not None else None,
            "output_keys": output_keys or [],
        })

    def log_step_skipped(self, step_id: str, reason: str) -> None:
        self._write_entry({
            "type": LogEntryType.STEP_SKIPPED.value,
            "step_id": step_id,
            "reason": reason,
        })

    def log_auth_paused(self, step_id: str, provider: str, source: str) -> None:
        self._write_entry({
            "type": LogEntryType.AUTH_PAUSED.value,
            "step_id": step_id,
            "provider": provider,
            "source": source,
        })

    def log_auth_restored(self, step_id: str, source: str, attempts: int) -> None:
        self._write_entry({
            "type": LogEntryType.AUTH_RESTORED.value,
            "step_id": step_id,
            "source": source,
            "attempts": attempts,
        })

    def log_cancelled(self, reason: str, timed_out: bool, step_id: Optional[str] = None) -> None:
        self._write_entry({
            "type": LogEntryType.CANCELLED.value,
            "reason": reason,
            "timed_out": timed_out,
            "step_id": step_id,
        })

    def log_error(
        self,
        message: str,
        code: Optional[str] = None,
        step_id: Optional[str] = None,
        recoverable: bool = True
    ) -> None:
        """Log an error event.

        Args:
            message: Error message
            code: Stable error code (e.g. STEP_FAILURE)
            step_id: Step that raised it, if any
            recoverable: Whether a resume can continue past it
        """
        self._write_entry({
            "type": LogEntryType.ERROR.value,
            "message": message,
            "code": code,
            "step_id": step_id,
            "recoverable": recoverable,
        })

    def log_session_end(self, status: str, completed_steps: list[str], reason: Optional[str] = None) -> None:
        duration_seconds = (datetime.now() - self._started_at).total_seconds()
        self._write_entry({
            "type": LogEntryType.SESSION_END.value,
            "session_id": self.session_id,
            "status": status,
            "reason": reason,
            "completed_steps": completed_steps,
            "duration_seconds": round(duration_seconds, 2),
        })
        self.close()

    def close(self) -> None:
        """Close the log file handle."""
        if self._file_handle:
            try:
                self._file_handle.close()
            except OSError:
                pass
            self._file_handle = None

    def __enter__(self) -> "SessionLogger":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def read_session_log(log_path: Path) -> list[dict]:
    """Read all entries from a session log file.

    A torn trailing line (crash mid-write) is skipped.

    Args:
        log_path: Path to the JSONL log file

    Returns:
        List of log entry dicts
    """
    entries = []
    if not log_path.exists():
        return entries

    with open(log_path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue

    return entries


def stream_session_log(log_path: Path, follow: bool = False) -> Iterator[dict]:
    """Stream entries from a session log file.

    Args:
        log_path: Path to the JSONL log file
        follow: If True, continue reading as new entries are added

    Yields:
        Log entry dicts
    """
    if not log_path.exists():
        return

    with open(log_path, "r", encoding="utf-8") as f:
        while True:
            line = f.readline()

            if line:
                line = line.strip()
                if line:
                    try:
                        yield json.loads(line)
                    except json.JSONDecodeError:
                        pass
            elif follow:
                time.sleep(0.1)
            else:
                break
