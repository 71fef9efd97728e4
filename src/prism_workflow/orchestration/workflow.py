"""Workflow orchestration.

Sequences the control plane for one run:

    detect environment -> resolve and validate credentials
    -> opportunistic cleanup (new runs only) -> acquire workspace lock
    -> recover orphans -> create or resume session -> arm timeout
    -> run pending steps, checkpointing after each
    -> terminal status, release lock

Session-level outcomes (completed, failed, interrupted) and pre-session
refusals (missing credentials, lock contention, unknown session) come back
as a WorkflowResult carrying the exit code; only unexpected errors
propagate, after a best-effort save.
"""

import asyncio
import random
import time
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.panel import Panel

from ..cleanup import CleanupService
from ..config import ConfigManager
from ..credentials import CredentialResolver, describe, is_token_expired
from ..environment import EnvironmentDetector
from ..errors import (
    AuthExpired,
    CredentialError,
    ExitCode,
    LockContention,
    PrerequisiteMissing,
    PrismError,
    SessionError,
    StepFailure,
    WorkflowCancelled,
    format_error,
    resume_command,
)
from ..llm import create_llm_client
from ..lock import LockHandle, WorkspaceLockManager, describe_holder
from ..models import (
    AuthRetryConfig,
    CredentialSource,
    Credentials,
    LLMConfig,
    LockRecord,
    SessionState,
    SessionStatus,
    WorkflowConfig,
    WorkflowResult,
)
from ..session_logger import SessionLogger
from ..session_store import SessionStore
from ..timeout import CancellationToken, TimeoutController
from ..workspace import WorkspaceManager
from .pipeline import default_steps
from .protocols import LLMClient, SkillStep, StepContext
from .recovery import WorkflowRecoveryManager, cancel_task


console = Console()

LLMFactory = Callable[[Credentials, LLMConfig], LLMClient]
ContentionPrompt = Callable[[Optional[LockRecord]], bool]


def calculate_retry_delay(attempt: int, retry_config: AuthRetryConfig) -> float:
    """Calculate delay for exponential backoff with jitter.

    Args:
        attempt: Current retry attempt (0-indexed)
        retry_config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = retry_config.base_delay_seconds * (retry_config.exponential_base ** attempt)
    delay = min(delay, retry_config.max_delay_seconds)

    # Add jitter (+/- jitter_factor)
    jitter = delay * retry_config.jitter_factor
    delay += random.uniform(-jitter, jitter)

    return max(0.0, delay)


class WorkflowOrchestrator:
    """Composition root for a workflow run.

    Every collaborator is injectable; the defaults build the real ones for
    the given project path.
    """

    def __init__(
        self,
        project_path: Path,
        steps: Optional[list[SkillStep]] = None,
        config: Optional[WorkflowConfig] = None,
        detector: Optional[EnvironmentDetector] = None,
        resolver: Optional[CredentialResolver] = None,
        lock_manager: Optional[WorkspaceLockManager] = None,
        store: Optional[SessionStore] = None,
        cleanup: Optional[CleanupService] = None,
        recovery: Optional[WorkflowRecoveryManager] = None,
        llm_factory: Optional[LLMFactory] = None,
        auto_cleanup: bool = True,
        handle_signals: bool = False,
        confirm_wait: Optional[ContentionPrompt] = None,
    ):
        """Initialize the orchestrator.

        Args:
            project_path: Workspace root
            steps: Ordered workflow steps (defaults to the discovery pipeline)
            config: Configuration (defaults to .prism/config.yaml)
            detector: Environment detector
            resolver: Credential resolver
            lock_manager: Workspace lock manager
            store: Session store
            cleanup: Retention sweep service
            recovery: Stop-request watcher and resume hints
            llm_factory: Builds the LLM client from credentials
            auto_cleanup: Run the throttled retention sweep before new runs
            handle_signals: Route SIGINT/SIGTERM into cancellation
            confirm_wait: Asked whether to wait when the lock is contended
                and run() got no explicit choice
        """
        self.workspace = WorkspaceManager(project_path)
        self.project_path = self.workspace.project_path

        self.steps = list(steps) if steps is not None else default_steps()
        self._steps_by_id = {s.step_id: s for s in self.steps}
        if len(self._steps_by_id) != len(self.steps):
            raise ValueError("Step ids must be unique")

        self.config = config or ConfigManager(self.workspace).load()
        self.detector = detector or EnvironmentDetector(cwd=self.project_path)
        self.resolver = resolver or CredentialResolver(
            self.project_path, base_urls={self.config.llm.provider: self.config.llm.base_url}
        )
        self.lock_manager = lock_manager or WorkspaceLockManager(
            stale_after_seconds=self.config.lock.stale_after_seconds,
            renew_interval_seconds=self.config.lock.renew_interval_seconds,
        )
        self.store = store or SessionStore(self.workspace)
        self.cleanup = cleanup or CleanupService(self.workspace)
        self.recovery = recovery or WorkflowRecoveryManager(self.workspace)
        self.llm_factory = llm_factory or create_llm_client
        self.auto_cleanup = auto_cleanup
        self.handle_signals = handle_signals
        self.confirm_wait = confirm_wait

        self._credentials: Optional[Credentials] = None
        self._llm: Optional[LLMClient] = None

    # =========================================================================
    # Entry point
    # =========================================================================

    async def run(
        self,
        inputs: Optional[dict[str, Any]] = None,
        resume_session_id: Optional[str] = None,
        wait_for_lock: Optional[bool] = None,
    ) -> WorkflowResult:
        """Run a new session, or continue an existing one.

        Args:
            inputs: Workflow inputs (ignored on resume; the session's own are used)
            resume_session_id: Session to continue instead of starting fresh
            wait_for_lock: Wait (bounded) when the workspace is locked;
                None asks confirm_wait, else waits

        Returns:
            WorkflowResult with the exit code for the command surface
        """
        started = time.monotonic()
        controller = TimeoutController(self.config.workflow_timeout_minutes * 60)
        if self.handle_signals:
            controller.install_signal_handlers()

        try:
            return await self._run(inputs or {}, resume_session_id, wait_for_lock, controller, started)
        except WorkflowCancelled as e:
            # Cancelled before any session existed
            return self._result(None, ExitCode.INTERRUPTED, started, message=e.reason)
        except PrismError as e:
            return self._result(None, e.exit_code, started, message=format_error(e))
        finally:
            controller.stop()
            if self.handle_signals:
                controller.restore_signal_handlers()

    async def _run(
        self,
        inputs: dict[str, Any],
        resume_session_id: Optional[str],
        wait_for_lock: Optional[bool],
        controller: TimeoutController,
        started: float,
    ) -> WorkflowResult:
        token = controller.get_signal()

        environment = self.detector.detect()
        console.print(
            f"[dim]Environment: {environment.detection_method} "
            f"(confidence: {environment.confidence_level.value})[/dim]"
        )

        await self._resolve_credentials(token)

        if resume_session_id is None and self.auto_cleanup:
            self._maybe_cleanup(token)

        handle = await self._acquire_lock(wait_for_lock, token)
        try:
            self.store.recover_orphans()
            state = self._open_session(inputs, resume_session_id)
            handle.assign_session(state.session_id)
            return await self._run_session(state, handle, controller, started, resumed=resume_session_id is not None)
        finally:
            handle.release()

    # =========================================================================
    # Credentials
    # =========================================================================

    async def _resolve_credentials(self, token: CancellationToken) -> Credentials:
        creds = self.resolver.discover()
        if not creds.has_secrets():
            raise PrerequisiteMissing("No credentials found for the language-model backend")

        summary = describe(creds)
        console.print(
            f"[dim]Credentials: {summary['source']} ({', '.join(summary['providers'])})[/dim]"
        )
        if creds.source == CredentialSource.HOST_OAUTH and is_token_expired(creds):
            console.print("[yellow]Host login token is expired or about to expire[/yellow]")

        retry = self.config.auth_retry
        attempt = 0
        while True:
            try:
                valid = await self.resolver.validate(creds, provider=self.config.llm.provider)
                break
            except CredentialError as e:
                if attempt >= retry.max_attempts:
                    raise
                delay = calculate_retry_delay(attempt, retry)
                attempt += 1
                console.print(
                    f"[yellow]Could not validate credentials ({e.message}); "
                    f"retry {attempt}/{retry.max_attempts} in {delay:.1f}s[/yellow]"
                )
                if await token.sleep(delay):
                    token.raise_if_cancelled()

        if not valid:
            raise CredentialError(f"Credentials from {creds.source.value} were rejected by the backend")

        self._use_credentials(creds)
        return creds

    def _use_credentials(self, creds: Credentials) -> None:
        self._credentials = creds
        self._llm = self.llm_factory(creds, self.config.llm)

    # =========================================================================
    # Cleanup and lock
    # =========================================================================

    def _maybe_cleanup(self, token: CancellationToken) -> None:
        try:
            self.cleanup.maybe_run(
                retention_days=self.config.retention.session_days,
                throttle_days=self.config.retention.cleanup_throttle_days,
                token=token,
            )
        except WorkflowCancelled:
            raise
        except Exception as e:
            # A failed sweep never blocks the run
            console.print(f"[yellow]Cleanup skipped: {e}[/yellow]")

    async def _acquire_lock(self, wait_for_lock: Optional[bool], token: CancellationToken) -> LockHandle:
        handle = self.lock_manager.acquire(self.project_path)
        if handle is not None:
            return handle

        holder = self.lock_manager.read_holder(self.project_path)
        info = describe_holder(holder)
        console.print(
            f"[yellow]Workspace is locked by session {info.get('owner_session_id') or 'unknown'} "
            f"(pid {info.get('owner_process_id', '?')})[/yellow]"
        )

        if wait_for_lock is None:
            wait_for_lock = self.confirm_wait(holder) if self.confirm_wait else True

        lock_config = self.config.lock
        if wait_for_lock and lock_config.wait_timeout_seconds > 0:
            console.print(f"[dim]Waiting up to {lock_config.wait_timeout_seconds:g}s for the lock...[/dim]")
            released = await self.lock_manager.wait_for_release_async(
                self.project_path,
                lock_config.wait_timeout_seconds,
                lock_config.poll_interval_seconds,
                token=token,
            )
            token.raise_if_cancelled()
            if released:
                handle = self.lock_manager.acquire(self.project_path)
                if handle is not None:
                    console.print("[green]Lock acquired[/green]")
                    return handle

        holder = self.lock_manager.read_holder(self.project_path)
        raise LockContention(
            str(self.project_path),
            holder.owner_session_id if holder else None,
            holder.owner_process_id if holder else None,
        )

    # =========================================================================
    # Session
    # =========================================================================

    def _open_session(self, inputs: dict[str, Any], resume_session_id: Optional[str]) -> SessionState:
        if resume_session_id is None:
            state = self.store.create(
                inputs,
                [s.step_id for s in self.steps],
                config_snapshot=self.config.model_dump(mode="json"),
            )
            self.store.start(state)
            console.print(f"[green]Started session {state.session_id}[/green]")
            return state

        state = self.store.resume(resume_session_id)
        unknown = [p.step_id for p in state.step_progress if p.step_id not in self._steps_by_id]
        if unknown:
            self.store.interrupt(state, f"Unknown steps in session: {', '.join(unknown)}")
            raise SessionError(f"declares steps this workflow does not have: {', '.join(unknown)}", state.session_id)
        done = len(state.completed_step_ids())
        console.print(
            f"[green]Resuming session {state.session_id}[/green] "
            f"({done}/{len(state.step_progress)} steps already completed)"
        )
        return state

    async def _run_session(
        self,
        state: SessionState,
        handle: LockHandle,
        controller: TimeoutController,
        started: float,
        resumed: bool,
    ) -> WorkflowResult:
        token = controller.get_signal()
        logger = SessionLogger(self.workspace, state.session_id)
        if resumed:
            logger.log_session_resume(state.completed_step_ids(), self.store.next_step(state))
        else:
            logger.log_session_start([p.step_id for p in state.step_progress], state.inputs)

        def save_before_abort() -> None:
            console.print("[yellow]Saving session state before stopping...[/yellow]")
            self.store.save(state)

        controller.start(on_budget_exceeded=save_before_abort)
        watchers = [
            asyncio.ensure_future(self.recovery.watch_stop_requests(controller)),
            asyncio.ensure_future(self._watch_lock(handle, controller)),
        ]

        try:
            await self._run_steps(state, handle, token, logger)
            self.store.complete(state)
            logger.log_session_end(state.status.value, state.completed_step_ids())
            console.print(f"\n[bold green]Session {state.session_id} completed[/bold green]")
            return self._result(state, ExitCode.SUCCESS, started)

        except WorkflowCancelled as e:
            self.store.interrupt(state, e.reason)
            logger.log_cancelled(e.reason, token.timed_out, state.current_step_id)
            logger.log_session_end(state.status.value, state.completed_step_ids(), e.reason)
            self.recovery.print_resume_hint(state, e.reason)
            return self._result(state, ExitCode.INTERRUPTED, started, message=e.reason)

        except StepFailure as e:
            self.store.fail(state, e, step_id=e.step_id)
            logger.log_error(e.message, e.code, e.step_id)
            logger.log_session_end(state.status.value, state.completed_step_ids(), e.message)
            console.print(f"[red]{format_error(e)}[/red]")
            self.recovery.print_resume_hint(state, e.message)
            return self._result(state, ExitCode.STEP_FAILURE, started, message=e.message)

        except BaseException as e:
            # Unexpected error, task cancellation or a forced second Ctrl+C
            self._save_interrupted(state, f"Aborted: {e.__class__.__name__}: {e}")
            logger.log_session_end(state.status.value, state.completed_step_ids(), str(e))
            console.print(f"[red]Session aborted. Resume with: {resume_command(state.session_id)}[/red]")
            raise

        finally:
            for task in watchers:
                await cancel_task(task)
            logger.close()

    def _save_interrupted(self, state: SessionState, reason: str) -> None:
        try:
            if state.status == SessionStatus.RUNNING:
                self.store.interrupt(state, reason)
            else:
                self.store.save(state)
        except Exception as e:
            console.print(f"[red]Could not save session state: {e}[/red]")

    async def _watch_lock(self, handle: LockHandle, controller: TimeoutController) -> None:
        token = controller.get_signal()
        while not token.cancelled:
            if handle.lost:
                controller.cancel("Workspace lock was lost to another process")
                return
            if await token.sleep(1.0):
                return

    # =========================================================================
    # Steps
    # =========================================================================

    async def _run_steps(
        self,
        state: SessionState,
        handle: LockHandle,
        token: CancellationToken,
        logger: SessionLogger,
    ) -> None:
        total = len(state.step_progress)
        for index, progress in enumerate(state.step_progress):
            if progress.completed:
                continue

            token.raise_if_cancelled()
            if handle.lost:
                raise WorkflowCancelled("Workspace lock was lost to another process")

            step = self._steps_by_id[progress.step_id]
            step_dir = self.store.session_dir(state.session_id) / f"{index + 1:02d}-{step.step_id}"
            console.print(f"\n[cyan]Step {index + 1}/{total}: {step.name}[/cyan]")

            self.store.mark_step_started(state, step.step_id)
            logger.log_step_start(step.step_id, progress.attempts)

            outputs = await self._run_step(step, step_dir, state, token, logger)
            # A cancelled step may still return; its result is not trusted
            token.raise_if_cancelled()

            skip_reason = outputs.pop("skipped", None) if isinstance(outputs, dict) else None
            if skip_reason:
                self.store.mark_step_completed(state, step.step_id, outputs or None, skipped=True)
                logger.log_step_skipped(step.step_id, str(skip_reason))
                console.print(f"[dim]  Skipped: {skip_reason}[/dim]")
            else:
                self.store.mark_step_completed(state, step.step_id, outputs or None)
                logger.log_step_complete(step.step_id, sorted(outputs or {}))
                console.print("[green]  Done[/green]")

    async def _run_step(
        self,
        step: SkillStep,
        step_dir: Path,
        state: SessionState,
        token: CancellationToken,
        logger: SessionLogger,
    ) -> dict[str, Any]:
        while True:
            step_dir.mkdir(parents=True, exist_ok=True)
            ctx = StepContext(
                session_id=state.session_id,
                session_dir=self.store.session_dir(state.session_id),
                step_dir=step_dir,
                inputs=dict(state.inputs),
                prior_outputs=dict(state.outputs),
                token=token,
                llm=self._llm,
                attempt=state.get_step(step.step_id).attempts,
            )
            try:
                return dict(await step.run(ctx) or {})
            except AuthExpired as e:
                if not await self._pause_for_auth(state, step.step_id, e, token, logger):
                    raise StepFailure(step.step_id, f"credentials were not refreshed ({e.message})", cause=e) from e
                self.store.mark_step_started(state, step.step_id)
                logger.log_step_start(step.step_id, state.get_step(step.step_id).attempts)
            except (WorkflowCancelled, StepFailure):
                raise
            except Exception as e:
                if token.cancelled:
                    token.raise_if_cancelled()
                raise StepFailure(step.step_id, str(e) or e.__class__.__name__, cause=e) from e

    async def _pause_for_auth(
        self,
        state: SessionState,
        step_id: str,
        error: AuthExpired,
        token: CancellationToken,
        logger: SessionLogger,
    ) -> bool:
        """Hold the session while the user refreshes credentials.

        The session stays running and is checkpointed; credentials are
        re-discovered and re-validated on the auth retry schedule.

        Returns:
            True once valid credentials are back in use
        """
        source = self._credentials.source.value if self._credentials else CredentialSource.NONE.value
        self.store.save(state)
        logger.log_auth_paused(step_id, error.provider, source)

        retry = self.config.auth_retry
        console.print(Panel(
            f"[yellow]The {error.provider} backend rejected the credentials during '{step_id}'.[/yellow]\n"
            f"Refresh them now: run [cyan]claude login[/cyan], export ANTHROPIC_API_KEY, "
            f"or update {self.workspace.env_file}.\n"
            f"Checking again up to {retry.max_attempts} time(s).",
            title="Paused: credentials expired",
            border_style="yellow",
        ))

        for attempt in range(retry.max_attempts):
            delay = calculate_retry_delay(attempt, retry)
            console.print(f"[dim]Re-checking credentials in {delay:.1f}s ({attempt + 1}/{retry.max_attempts})[/dim]")
            if await token.sleep(delay):
                token.raise_if_cancelled()

            self.resolver.refresh_environment()
            creds = self.resolver.discover()
            if not creds.has_secrets():
                continue
            try:
                valid = await self.resolver.validate(creds, provider=self.config.llm.provider)
            except CredentialError as e:
                console.print(f"[yellow]{e.message}[/yellow]")
                continue
            if valid:
                self._use_credentials(creds)
                logger.log_auth_restored(step_id, creds.source.value, attempt + 1)
                console.print(f"[green]Credentials restored via {creds.source.value}; retrying step[/green]")
                return True

        return False

    # =========================================================================
    # Results
    # =========================================================================

    def _result(
        self,
        state: Optional[SessionState],
        exit_code: ExitCode,
        started: float,
        message: Optional[str] = None,
    ) -> WorkflowResult:
        return WorkflowResult(
            session_id=state.session_id if state else None,
            status=state.status if state else None,
            exit_code=int(exit_code),
            completed_steps=state.completed_step_ids() if state else [],
            outputs=dict(state.outputs) if state else {},
            duration_seconds=round(time.monotonic() - started, 2),
            message=message,
        )
