"""Formatting utilities for CLI display.

Provides pretty formatting for:
- Session list tables
- Single session detail views (state plus event log)
- Real-time event streaming
- Cleanup reports
"""

import sys
from datetime import datetime
from pathlib import Path
from typing import Generator, Optional

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .cleanup import format_bytes
from .models import CleanupResult, LogEntryType, SessionState, SessionStatus, SessionSummary
from .session_logger import read_session_log, stream_session_log


# Windows-compatible symbols
if sys.platform == "win32":
    SYM_OK = "[OK]"
    SYM_FAIL = "[X]"
    SYM_SKIP = "[-]"
    SYM_ARROW = "->"
else:
    SYM_OK = "\u2713"
    SYM_FAIL = "\u2717"
    SYM_SKIP = "\u2212"
    SYM_ARROW = "\u2192"

STATUS_COLORS = {
    SessionStatus.PENDING: "white",
    SessionStatus.RUNNING: "cyan",
    SessionStatus.COMPLETED: "green",
    SessionStatus.FAILED: "red",
    SessionStatus.INTERRUPTED: "yellow",
}


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "5m 30s", "2h 15m")
    """
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        mins = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{mins}m {secs}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m"


def format_status(status: Optional[SessionStatus]) -> str:
    if status is None:
        return "[red]corrupt[/red]"
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status.value}[/{color}]"


def _short_time(timestamp: str) -> str:
    try:
        return datetime.fromisoformat(timestamp.replace("Z", "+00:00")).strftime("%H:%M:%S")
    except (ValueError, TypeError, AttributeError):
        return timestamp or ""


def format_session_list(sessions: list[SessionSummary]) -> Table:
    """Format a list of sessions as a Rich table."""
    table = Table(title="Sessions", show_header=True, header_style="bold cyan")
    table.add_column("Session ID", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Current Step")
    table.add_column("Updated")

    for session in sessions:
        progress = f"{session.completed_steps}/{session.total_steps}" if session.total_steps else "-"
        status = format_status(session.status)
        if session.active:
            status += " [dim](active)[/dim]"
        updated = session.updated_at.strftime("%Y-%m-%d %H:%M") if session.updated_at else "-"
        table.add_row(
            session.session_id,
            status,
            progress,
            session.current_step_id or "-",
            updated,
        )

    return table


def format_session_state(state: SessionState) -> Panel:
    """Panel with a session's status and per-step progress."""
    lines = [
        f"[bold]Status:[/bold] {format_status(state.status)}",
        f"[bold]Created:[/bold] {state.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"[bold]Updated:[/bold] {state.updated_at.strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        "[bold]Steps:[/bold]",
    ]
    for step in state.step_progress:
        if step.completed and step.skipped:
            marker = f"[dim]{SYM_SKIP}[/dim]"
        elif step.completed:
            marker = f"[green]{SYM_OK}[/green]"
        elif step.step_id == state.current_step_id and state.last_error:
            marker = f"[red]{SYM_FAIL}[/red]"
        else:
            marker = " "
        attempts = f" [dim](attempts: {step.attempts})[/dim]" if step.attempts > 1 else ""
        lines.append(f"  {marker} {step.step_id}{attempts}")

    if state.interrupt_reason:
        lines.append("")
        lines.append(f"[yellow]Interrupted:[/yellow] {state.interrupt_reason}")
    if state.last_error:
        lines.append("")
        lines.append(f"[red]Error:[/red] {state.last_error.message}")

    color = STATUS_COLORS.get(state.status, "white")
    return Panel("\n".join(lines), title=f"[{color}]{state.session_id}[/{color}]", border_style=color)


def format_event(entry: dict) -> Optional[Text]:
    """One event log entry as a single styled line."""
    entry_type = entry.get("type")
    ts = _short_time(entry.get("timestamp", ""))

    if entry_type == LogEntryType.SESSION_START.value:
        steps = ", ".join(entry.get("steps", []))
        return Text(f"[{ts}] Session started ({steps})", style="green")
    if entry_type == LogEntryType.SESSION_RESUME.value:
        return Text(f"[{ts}] Session resumed at {entry.get('next_step') or 'end'}", style="green")
    if entry_type == LogEntryType.STEP_START.value:
        return Text(f"[{ts}] {SYM_ARROW} {entry.get('step_id')} (attempt {entry.get('attempt', 1)})", style="cyan")
    if entry_type == LogEntryType.STEP_COMPLETE.value:
        duration = entry.get("duration_seconds")
        suffix = f" in {format_duration(duration)}" if duration is not None else ""
        return Text(f"[{ts}]   {SYM_OK} {entry.get('step_id')}{suffix}", style="green")
    if entry_type == LogEntryType.STEP_SKIPPED.value:
        return Text(f"[{ts}]   {SYM_SKIP} {entry.get('step_id')} skipped: {entry.get('reason')}", style="dim")
    if entry_type == LogEntryType.AUTH_PAUSED.value:
        return Text(f"[{ts}] Paused for credentials ({entry.get('provider')})", style="yellow")
    if entry_type == LogEntryType.AUTH_RESTORED.value:
        return Text(f"[{ts}] Credentials restored via {entry.get('source')}", style="green")
    if entry_type == LogEntryType.CANCELLED.value:
        return Text(f"[{ts}] Cancelled: {entry.get('reason')}", style="yellow")
    if entry_type == LogEntryType.ERROR.value:
        return Text(f"[{ts}] {SYM_FAIL} {entry.get('code') or 'ERROR'}: {entry.get('message')}", style="red")
    if entry_type == LogEntryType.SESSION_END.value:
        style = "green" if entry.get("status") == SessionStatus.COMPLETED.value else "yellow"
        duration = format_duration(entry.get("duration_seconds") or 0)
        return Text(f"[{ts}] Session ended: {entry.get('status')} after {duration}", style=style)
    return None


def format_session_events(log_path: Path) -> list:
    """All events of a session as Rich renderables."""
    entries = read_session_log(log_path)
    if not entries:
        return [Text("No log entries found", style="yellow")]
    return [line for line in (format_event(e) for e in entries) if line is not None]


def stream_session_pretty(log_path: Path, follow: bool = False) -> Generator[Text, None, None]:
    """Stream a session's events as formatted lines (tail -f style with follow)."""
    for entry in stream_session_log(log_path, follow=follow):
        line = format_event(entry)
        if line is not None:
            yield line


def format_cleanup_result(result: CleanupResult) -> Panel:
    verb = "Would remove" if result.dry_run else "Removed"
    lines = [
        f"[bold]{verb}:[/bold] {result.removed_count} session(s)",
        f"[bold]Space:[/bold] {format_bytes(result.reclaimed_bytes)}",
    ]
    for session_id in result.removed_sessions:
        lines.append(f"  [dim]{session_id}[/dim]")
    if result.skipped_active:
        lines.append(f"[bold]Skipped (active):[/bold] {', '.join(result.skipped_active)}")
    if result.errors:
        lines.append("[red]Errors:[/red]")
        lines.extend(f"  {e}" for e in result.errors)
    title = "Cleanup (dry run)" if result.dry_run else "Cleanup"
    return Panel("\n".join(lines), title=title, border_style="yellow" if result.errors else "green")
