"""Wall-clock budget and cooperative cancellation.

Cancellation is cooperative: long-running work polls (or awaits) a
CancellationToken and stops at its next safe point. When the budget runs
out, the pre-abort hook runs to completion first (it persists session
state) and only then is the token marked cancelled, so steps get a clean
drain window instead of a hard kill. OS interrupt signals go through the
same cancel path, differing only in the recorded reason.
"""

import asyncio
import inspect
import signal
import sys
from typing import Any, Awaitable, Callable, Optional, Union

from rich.console import Console

from .errors import WorkflowCancelled, WorkflowTimeout


console = Console()

BudgetHook = Callable[[], Union[None, Awaitable[None]]]


class CancellationToken:
    """Signal that every long-running step must poll and propagate."""

    def __init__(self):
        self._event = asyncio.Event()
        self._cancelled = False
        self.reason: Optional[str] = None
        self.timed_out = False
        self._callbacks: list[Callable[["CancellationToken"], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str, timed_out: bool = False) -> bool:
        """Mark the token cancelled. Only the first reason is kept.

        Returns:
            True if this call cancelled the token
        """
        if self._cancelled:
            return False
        self._cancelled = True
        self.reason = reason
        self.timed_out = timed_out
        self._event.set()
        for callback in list(self._callbacks):
            try:
                callback(self)
            except Exception as e:
                console.print(f"[yellow]Cancellation callback failed: {e}[/yellow]")
        return True

    def add_callback(self, callback: Callable[["CancellationToken"], Any]) -> None:
        """Run callback on cancellation (immediately if already cancelled)."""
        if self._cancelled:
            callback(self)
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if not self._cancelled:
            return
        if self.timed_out:
            raise WorkflowTimeout(self.reason or "Workflow timeout exceeded")
        raise WorkflowCancelled(self.reason or "Workflow cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep, waking early on cancellation.

        Returns:
            True if the token was cancelled before the sleep finished
        """
        if self._cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True


class TimeoutController:
    """Enforces a wall-clock budget over a workflow run."""

    def __init__(self, budget_seconds: Optional[float] = None):
        """Initialize the controller.

        Args:
            budget_seconds: Default budget; can be overridden in start()
        """
        self.budget_seconds = budget_seconds
        self.token = CancellationToken()
        self.expired = False
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._deadline: Optional[float] = None
        self._firing = False
        self._previous_handlers: dict[int, Any] = {}

    def start(
        self,
        budget_seconds: Optional[float] = None,
        on_budget_exceeded: Optional[BudgetHook] = None,
    ) -> None:
        """Arm the deadline. Must be called from inside the running event loop.

        Args:
            budget_seconds: Budget in seconds (defaults to the constructor value)
            on_budget_exceeded: Hook run to completion BEFORE the token is
                cancelled; may be sync or async
        """
        budget = budget_seconds if budget_seconds is not None else self.budget_seconds
        if budget is None or budget <= 0:
            raise ValueError("A positive budget is required")
        if self._task is not None:
            raise RuntimeError("Timeout already started")

        self.budget_seconds = budget
        self._loop = asyncio.get_running_loop()
        self._deadline = self._loop.time() + budget
        self._task = self._loop.create_task(self._expire(budget, on_budget_exceeded))

    async def _expire(self, budget: float, hook: Optional[BudgetHook]) -> None:
        await asyncio.sleep(budget)
        if self.token.cancelled:
            return

        self._firing = True
        self.expired = True
        console.print(f"[yellow]Workflow timeout ({_format_budget(budget)}) reached[/yellow]")
        try:
            if hook is not None:
                result = hook()
                if inspect.isawaitable(result):
                    await result
        except Exception as e:
            console.print(f"[red]Error during timeout save: {e}[/red]")
        finally:
            self._firing = False
            self.token.cancel(
                f"Workflow timeout ({_format_budget(budget)}) exceeded", timed_out=True
            )

    def get_signal(self) -> CancellationToken:
        return self.token

    def cancel(self, reason: str) -> bool:
        """Cancel immediately (user interrupt, stop request, lost lock)."""
        self._disarm()
        return self.token.cancel(reason)

    def cancel_threadsafe(self, reason: str) -> None:
        """Cancel from a signal handler or another thread."""
        if self._loop is not None and self._loop.is_running():
            self._loop.call_soon_threadsafe(self.cancel, reason)
        else:
            self.cancel(reason)

    def stop(self) -> None:
        """Disarm the deadline after the workflow finished."""
        self._disarm()

    def _disarm(self) -> None:
        # Never cut the pre-abort save short
        if self._task is not None and not self._task.done() and not self._firing:
            self._task.cancel()

    def remaining_seconds(self) -> Optional[float]:
        if self._loop is None or self._deadline is None:
            return None
        return max(0.0, self._deadline - self._loop.time())

    # =========================================================================
    # OS signals
    # =========================================================================

    def install_signal_handlers(self) -> None:
        """Route SIGINT (and SIGTERM off Windows) into cancel().

        A second SIGINT while already cancelling raises KeyboardInterrupt.
        """
        signals = [signal.SIGINT]
        if sys.platform != "win32":
            signals.append(signal.SIGTERM)
        for signum in signals:
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _handle_signal(self, signum: int, frame: Any) -> None:
        signal_name = signal.Signals(signum).name
        if self.token.cancelled and signum == signal.SIGINT:
            raise KeyboardInterrupt
        console.print(f"\n[yellow]Received {signal_name} - saving state and stopping...[/yellow]")
        self.cancel_threadsafe(f"Interrupted by {signal_name}")


def _format_budget(seconds: float) -> str:
    if seconds >= 60:
        return f"{seconds / 60:g} minutes"
    return f"{seconds:g}s"
