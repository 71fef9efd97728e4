"""Retention sweep for expired session directories.

A session directory is removed when its record was last written before
the retention cutoff. Directories carrying the .running marker are always
skipped, whatever their age. Failures on one directory are collected and
the sweep carries on with the next.
"""

import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console

from .models import CleanupRecord, CleanupResult
from .session_store import atomic_write
from .timeout import CancellationToken
from .workspace import WorkspaceManager


console = Console()

DEFAULT_RETENTION_DAYS = 30
DEFAULT_THROTTLE_DAYS = 7.0
DAY_SECONDS = 24 * 60 * 60


def format_bytes(num_bytes: int) -> str:
    """Human-readable size (1024-based), e.g. 1.5 MB."""
    if num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


def directory_size(path: Path) -> int:
    total = 0
    for entry in path.rglob("*"):
        try:
            if entry.is_file() and not entry.is_symlink():
                total += entry.stat().st_size
        except OSError:
            continue
    return total


class CleanupService:
    """Reclaims session directories older than the retention period."""

    def __init__(self, workspace: WorkspaceManager):
        self.workspace = workspace

    def session_age_seconds(self, session_dir: Path, now: Optional[float] = None) -> float:
        """Age of a session, judged by its record's mtime (directory mtime if absent)."""
        now = time.time() if now is None else now
        record = session_dir / WorkspaceManager.STATE_FILENAME
        try:
            mtime = record.stat().st_mtime
        except OSError:
            mtime = session_dir.stat().st_mtime
        return now - mtime

    def run(
        self,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        dry_run: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> CleanupResult:
        """Sweep the sessions directory once.

        Args:
            retention_days: Sessions last written longer ago than this are removed
            dry_run: Report what would be removed without deleting anything
            token: Cancellation token checked between directories

        Returns:
            CleanupResult with counts, reclaimed bytes and per-item errors
        """
        if retention_days <= 0:
            raise ValueError("retention_days must be positive")

        result = CleanupResult(dry_run=dry_run)
        cutoff_seconds = retention_days * DAY_SECONDS
        now = time.time()

        for session_dir in self.workspace.iter_session_dirs():
            if token is not None:
                token.raise_if_cancelled()

            session_id = session_dir.name
            marker = session_dir / WorkspaceManager.ACTIVE_MARKER
            try:
                if marker.exists():
                    result.skipped_active.append(session_id)
                    continue

                if self.session_age_seconds(session_dir, now) <= cutoff_seconds:
                    continue

                size = directory_size(session_dir)
                if not dry_run:
                    # A resume may have claimed it since the first check
                    if marker.exists():
                        result.skipped_active.append(session_id)
                        continue
                    shutil.rmtree(session_dir)

                result.removed_count += 1
                result.reclaimed_bytes += size
                result.removed_sessions.append(session_id)
            except OSError as e:
                result.errors.append(f"{session_id}: {e}")
                console.print(f"[yellow]Could not clean up {session_id}: {e}[/yellow]")

        return result

    # =========================================================================
    # Throttled sweep
    # =========================================================================

    def read_record(self) -> Optional[CleanupRecord]:
        try:
            raw = self.workspace.cleanup_marker.read_text(encoding="utf-8").strip()
            return CleanupRecord(last_run_at=int(raw))
        except (OSError, ValueError):
            return None

    def last_run_at(self) -> Optional[datetime]:
        record = self.read_record()
        if record is None:
            return None
        return datetime.fromtimestamp(record.last_run_at / 1000)

    def write_record(self, when_ms: Optional[int] = None) -> None:
        when_ms = int(time.time() * 1000) if when_ms is None else when_ms
        self.workspace.ensure_structure()
        atomic_write(self.workspace.cleanup_marker, str(when_ms).encode("utf-8"))

    def is_due(self, throttle_days: float = DEFAULT_THROTTLE_DAYS) -> bool:
        record = self.read_record()
        if record is None:
            return True
        elapsed_ms = time.time() * 1000 - record.last_run_at
        return elapsed_ms >= throttle_days * DAY_SECONDS * 1000

    def maybe_run(
        self,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        throttle_days: float = DEFAULT_THROTTLE_DAYS,
        token: Optional[CancellationToken] = None,
    ) -> Optional[CleanupResult]:
        """Run a sweep unless one ran within the throttle interval.

        Returns:
            The sweep result, or None when throttled
        """
        if not self.is_due(throttle_days):
            return None

        result = self.run(retention_days=retention_days, token=token)
        self.write_record()
        if result.removed_count:
            console.print(
                f"[dim]Cleaned up {result.removed_count} old session(s), "
                f"freed {format_bytes(result.reclaimed_bytes)}[/dim]"
            )
        return result
