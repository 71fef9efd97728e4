"""Stop requests and resume guidance.

Handles:
- File-based stop signal (.prism/stop-requested), written by `prism stop`
  or the dashboard and polled by a running workflow
- The resume hint printed on every resumable exit
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel

from ..errors import resume_command
from ..models import SessionState
from ..timeout import TimeoutController
from ..workspace import WorkspaceManager


console = Console()


class WorkflowRecoveryManager:
    """Manages cooperative stop requests and resume instructions."""

    def __init__(self, workspace: WorkspaceManager, poll_interval_seconds: float = 1.0):
        """Initialize the recovery manager.

        Args:
            workspace: Workspace whose stop-request file is watched
            poll_interval_seconds: How often watch_stop_requests() checks the file
        """
        self.workspace = workspace
        self.poll_interval_seconds = poll_interval_seconds

    @property
    def stop_file(self) -> Path:
        return self.workspace.stop_file

    def request_stop(self, reason: str = "User requested stop") -> Path:
        """Create stop request file to signal a graceful stop.

        Args:
            reason: Reason for the stop request

        Returns:
            Path to the created stop file
        """
        self.workspace.ensure_structure()
        self.stop_file.write_text(f"{datetime.now().isoformat()}\n{reason}", encoding="utf-8")
        return self.stop_file

    def is_stop_requested(self) -> bool:
        return self.stop_file.exists()

    def read_stop_request(self) -> Optional[dict]:
        """Timestamp and reason of a pending stop request, if any."""
        try:
            text = self.stop_file.read_text(encoding="utf-8")
        except OSError:
            return None
        requested_at, _, reason = text.partition("\n")
        return {"requested_at": requested_at.strip(), "reason": reason.strip() or "User requested stop"}

    def clear_stop_request(self) -> bool:
        """Remove the stop request file.

        Returns:
            True if a request was cleared
        """
        try:
            self.stop_file.unlink()
        except FileNotFoundError:
            return False
        console.print("[dim]Cleared stop request file[/dim]")
        return True

    async def watch_stop_requests(self, controller: TimeoutController) -> None:
        """Poll for the stop file and cancel the run when it appears.

        Runs until the controller's token is cancelled (by this watcher or
        anything else); the orchestrator cancels the task on exit.
        """
        token = controller.get_signal()
        while not token.cancelled:
            if self.is_stop_requested():
                request = self.read_stop_request() or {}
                reason = request.get("reason", "User requested stop")
                console.print(f"[yellow]Stop request detected: {reason}[/yellow]")
                self.clear_stop_request()
                controller.cancel(f"Stop requested: {reason}")
                return
            if await token.sleep(self.poll_interval_seconds):
                return

    def print_resume_hint(self, state: SessionState, reason: Optional[str] = None) -> None:
        """Print the cause and the exact command that continues the session."""
        done = len(state.completed_step_ids())
        total = len(state.step_progress)
        next_step = state.next_step()
        lines = [
            f"[bold]Session:[/bold] {state.session_id}",
            f"[bold]Status:[/bold] {state.status.value}",
            f"[bold]Progress:[/bold] {done}/{total} steps",
        ]
        if next_step is not None:
            lines.append(f"[bold]Next step:[/bold] {next_step.step_id}")
        if reason:
            lines.append(f"[bold]Reason:[/bold] {reason}")
        lines.append("")
        lines.append(f"Resume with: [cyan]{resume_command(state.session_id)}[/cyan]")
        console.print(Panel("\n".join(lines), title="Session saved", border_style="yellow"))


async def cancel_task(task: Optional[asyncio.Task]) -> None:
    """Cancel a helper task and wait for it to finish."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
