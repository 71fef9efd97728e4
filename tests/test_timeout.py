"""Tests for the wall-clock budget and cooperative cancellation."""

import asyncio
import signal
import pytest

from prism_workflow.errors import WorkflowCancelled, WorkflowTimeout
from prism_workflow.timeout import CancellationToken, TimeoutController


class TestCancellationToken:
    """Tests for CancellationToken."""

    @pytest.mark.asyncio
    async def test_first_reason_wins(self):
        token = CancellationToken()
        assert token.cancel("first")
        assert not token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    @pytest.mark.asyncio
    async def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()

        token.cancel("stop")
        with pytest.raises(WorkflowCancelled) as exc_info:
            token.raise_if_cancelled()
        assert not isinstance(exc_info.value, WorkflowTimeout)
        assert exc_info.value.reason == "stop"

    @pytest.mark.asyncio
    async def test_timed_out_raises_timeout(self):
        token = CancellationToken()
        token.cancel("late", timed_out=True)
        with pytest.raises(WorkflowTimeout):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_sleep_wakes_on_cancel(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel, "wake")
        assert await token.sleep(5) is True

    @pytest.mark.asyncio
    async def test_sleep_runs_out(self):
        token = CancellationToken()
        assert await token.sleep(0.01) is False

    @pytest.mark.asyncio
    async def test_callbacks(self):
        token = CancellationToken()
        seen = []
        token.add_callback(lambda t: seen.append(t.reason))
        token.cancel("go")
        token.add_callback(lambda t: seen.append("late"))
        assert seen == ["go", "late"]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_block_cancel(self):
        token = CancellationToken()

        def broken(t):
            raise RuntimeError("callback bug")

        token.add_callback(broken)
        assert token.cancel("go")
        assert token.cancelled


class TestTimeoutController:
    """Tests for the budget timer."""

    @pytest.mark.asyncio
    async def test_hook_runs_before_token_fires(self):
        """Test that the pre-abort save completes before cancellation is visible."""
        controller = TimeoutController()
        order = []

        async def save():
            order.append(("hook", controller.token.cancelled))
            await asyncio.sleep(0.05)
            order.append(("hook-done", controller.token.cancelled))

        controller.start(0.05, on_budget_exceeded=save)
        await controller.token.wait()

        assert order == [("hook", False), ("hook-done", False)]
        assert controller.expired
        assert controller.token.timed_out
        with pytest.raises(WorkflowTimeout):
            controller.token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_failing_hook_still_cancels(self):
        controller = TimeoutController(0.02)

        def save():
            raise OSError("disk full")

        controller.start(on_budget_exceeded=save)
        await asyncio.wait_for(controller.token.wait(), timeout=2)
        assert controller.token.timed_out

    @pytest.mark.asyncio
    async def test_stop_disarms(self):
        controller = TimeoutController(0.05)
        controller.start()
        controller.stop()
        await asyncio.sleep(0.1)
        assert not controller.token.cancelled
        assert not controller.expired

    @pytest.mark.asyncio
    async def test_manual_cancel(self):
        controller = TimeoutController(60)
        controller.start()
        assert controller.cancel("User requested stop")
        assert not controller.token.timed_out
        assert controller.token.reason == "User requested stop"
        assert 0 < controller.remaining_seconds() <= 60

    @pytest.mark.asyncio
    async def test_requires_positive_budget(self):
        with pytest.raises(ValueError):
            TimeoutController().start()
        with pytest.raises(ValueError):
            TimeoutController(0).start()

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self):
        controller = TimeoutController(60)
        controller.start()
        try:
            with pytest.raises(RuntimeError):
                controller.start()
        finally:
            controller.stop()

    def test_remaining_before_start(self):
        assert TimeoutController(10).remaining_seconds() is None


class TestSignals:
    """Tests for routing OS signals into cancellation."""

    @pytest.mark.asyncio
    async def test_sigint_cancels_with_reason(self):
        controller = TimeoutController(60)
        controller.start()
        controller.install_signal_handlers()
        try:
            controller._handle_signal(signal.SIGINT, None)
            await asyncio.wait_for(controller.token.wait(), timeout=1)
        finally:
            controller.restore_signal_handlers()
            controller.stop()

        assert controller.token.reason == "Interrupted by SIGINT"
        assert not controller.token.timed_out

    @pytest.mark.asyncio
    async def test_second_sigint_forces_exit(self):
        controller = TimeoutController(60)
        controller.cancel("first")
        with pytest.raises(KeyboardInterrupt):
            controller._handle_signal(signal.SIGINT, None)

    def test_restore_puts_previous_handler_back(self):
        previous = signal.getsignal(signal.SIGINT)
        controller = TimeoutController(60)
        controller.install_signal_handlers()
        assert signal.getsignal(signal.SIGINT) == controller._handle_signal
        controller.restore_signal_handlers()
        assert signal.getsignal(signal.SIGINT) == previous
