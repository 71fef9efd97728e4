"""CLI interface for the PRISM discovery workflow."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .cleanup import CleanupService, format_bytes
from .config import ConfigManager
from .credentials import CredentialResolver, describe, is_token_expired
from .environment import EnvironmentDetector
from .errors import CredentialError, ExitCode, SessionCorrupt, SessionNotFound, format_error
from .lock import WorkspaceLockManager, describe_holder
from .log_formatter import (
    format_cleanup_result,
    format_session_events,
    format_session_list,
    format_session_state,
    stream_session_pretty,
)
from .models import LockRecord, SessionStatus, WorkflowConfig, WorkflowResult
from .orchestration import WorkflowOrchestrator, WorkflowRecoveryManager
from .session_logger import read_session_log
from .session_store import SessionStore
from .workspace import WorkspaceManager

console = Console()


def _workspace(ctx: click.Context) -> WorkspaceManager:
    return WorkspaceManager(Path(ctx.obj["workspace"]))


def _load_config(workspace: WorkspaceManager) -> WorkflowConfig:
    return ConfigManager(workspace).load()


def _confirm_wait(timeout_seconds: float):
    def ask(holder: Optional[LockRecord]) -> bool:
        # Non-interactive callers get the bounded wait
        if not sys.stdin.isatty():
            return True
        return click.confirm(
            f"Wait up to {timeout_seconds:g}s for the workspace to be released?",
            default=True,
        )
    return ask


def _finish(result: WorkflowResult) -> None:
    if result.exit_code != ExitCode.SUCCESS and result.session_id is None and result.message:
        console.print(f"[red]{result.message}[/red]")
    sys.exit(result.exit_code)


def _run_workflow(
    workspace: WorkspaceManager,
    config: WorkflowConfig,
    inputs: dict,
    resume_session_id: Optional[str],
    wait: Optional[bool],
    auto_cleanup: bool,
) -> WorkflowResult:
    orchestrator = WorkflowOrchestrator(
        workspace.project_path,
        config=config,
        auto_cleanup=auto_cleanup,
        handle_signals=True,
        confirm_wait=_confirm_wait(config.lock.wait_timeout_seconds),
    )
    return asyncio.run(orchestrator.run(inputs, resume_session_id=resume_session_id, wait_for_lock=wait))


@click.group()
@click.version_option(package_name="prism-workflow")
@click.option('--workspace', '-w', type=click.Path(file_okay=False), default='.',
              help='Project directory (the unit of locking)')
@click.pass_context
def main(ctx: click.Context, workspace: str):
    """PRISM - interruption-tolerant PRD to technical design workflow."""
    ctx.ensure_object(dict)
    ctx.obj["workspace"] = workspace


@main.command()
@click.option('--prd', 'prd_path', required=True, type=click.Path(exists=True, dir_okay=False),
              help='Product requirements document to analyze')
@click.option('--figma', 'figma_source', help='Figma export or design description (optional)')
@click.option('--project', 'project_name', help='Project name used in generated documents')
@click.option('--timeout', 'timeout_minutes', type=float, help='Workflow time budget in minutes')
@click.option('--no-cleanup', is_flag=True, help='Skip the opportunistic retention sweep')
@click.option('--wait/--no-wait', default=None,
              help='Wait for a locked workspace (asked interactively when omitted)')
@click.option('--lock-timeout', type=float, help='Seconds to wait for a locked workspace')
@click.pass_context
def run(
    ctx: click.Context,
    prd_path: str,
    figma_source: Optional[str],
    project_name: Optional[str],
    timeout_minutes: Optional[float],
    no_cleanup: bool,
    wait: Optional[bool],
    lock_timeout: Optional[float],
):
    """Run the discovery workflow on a PRD.

    \b
    Steps:
      1. prd-analysis     requirements.yaml
      2. figma-analysis   components.yaml (skipped without --figma)
      3. validation       validation-report.md
      4. clarification    questions.md
      5. tdd-generation   TDD.md

    Progress is checkpointed after every step; an interrupted or failed
    run can be continued with 'prism resume SESSION_ID'.
    """
    workspace = _workspace(ctx)
    config = _load_config(workspace)
    if timeout_minutes is not None:
        config = config.model_copy(update={"workflow_timeout_minutes": timeout_minutes})
    if lock_timeout is not None:
        config = config.model_copy(
            update={"lock": config.lock.model_copy(update={"wait_timeout_seconds": lock_timeout})}
        )

    inputs = {
        "prd_path": str(Path(prd_path).resolve()),
        "figma_source": figma_source,
        "project_name": project_name,
    }

    console.print(f"[bold]Workspace:[/bold] {workspace.project_path}")
    console.print(f"[bold]Model:[/bold] {config.llm.model}")
    console.print(f"[bold]Budget:[/bold] {config.workflow_timeout_minutes:g} minutes")

    if (workspace.project_path / ".git").exists() and workspace.update_gitignore():
        console.print("[dim]Added .prism/ runtime files to .gitignore[/dim]")

    result = _run_workflow(workspace, config, inputs, None, wait, auto_cleanup=not no_cleanup)
    _finish(result)


@main.command()
@click.argument('session_id')
@click.option('--wait/--no-wait', default=None, help='Wait for a locked workspace')
@click.pass_context
def resume(ctx: click.Context, session_id: str, wait: Optional[bool]):
    """Resume an interrupted or failed session.

    Completed steps are not run again; the workflow continues at the first
    unfinished step.
    """
    workspace = _workspace(ctx)
    config = _load_config(workspace)
    result = _run_workflow(workspace, config, {}, session_id, wait, auto_cleanup=False)
    _finish(result)


@main.command('list-sessions')
@click.option('--status', type=click.Choice([s.value for s in SessionStatus]),
              help='Only show sessions with this status')
@click.option('--format', 'output_format', type=click.Choice(['pretty', 'json']), default='pretty')
@click.pass_context
def list_sessions(ctx: click.Context, status: Optional[str], output_format: str):
    """List sessions, newest first."""
    workspace = _workspace(ctx)
    if not workspace.exists():
        console.print("[yellow]No .prism/ workspace found. Start one with 'prism run'.[/yellow]")
        return

    store = SessionStore(workspace)
    sessions = store.list_sessions(status=SessionStatus(status) if status else None)

    if output_format == "json":
        for s in sessions:
            print(json.dumps(s.model_dump(mode="json"), default=str))
        return

    if not sessions:
        console.print("[yellow]No sessions found.[/yellow]")
        return

    console.print(format_session_list(sessions))
    resumable = [s for s in sessions if s.status in (SessionStatus.FAILED, SessionStatus.INTERRUPTED)]
    if resumable:
        console.print(f"\n[dim]Resume with: prism resume {resumable[0].session_id}[/dim]")


@main.command()
@click.argument('session_id')
@click.option('--events', is_flag=True, help='Also show the session event log')
@click.pass_context
def show(ctx: click.Context, session_id: str, events: bool):
    """Show a session's progress and last error."""
    store = SessionStore(_workspace(ctx))
    try:
        state = store.load(session_id)
    except (SessionNotFound, SessionCorrupt) as e:
        console.print(f"[red]{format_error(e)}[/red]")
        sys.exit(e.exit_code)

    console.print(format_session_state(state))
    if state.outputs:
        table = Table(title="Outputs", show_header=True, header_style="bold cyan")
        table.add_column("Key", style="cyan")
        table.add_column("Value")
        for key, value in state.outputs.items():
            table.add_row(key, str(value))
        console.print(table)
    if state.is_resumable():
        console.print(f"\n[dim]Resume with: prism resume {state.session_id}[/dim]")

    if events:
        for line in format_session_events(store.workspace.session_log_path(session_id)):
            console.print(line)


@main.command()
@click.argument('session_id')
@click.option('--follow', '-f', is_flag=True, help='Follow the log as it grows')
@click.option('--format', 'output_format', type=click.Choice(['pretty', 'json']), default='pretty')
@click.pass_context
def logs(ctx: click.Context, session_id: str, follow: bool, output_format: str):
    """Print a session's event log."""
    workspace = _workspace(ctx)
    log_path = workspace.session_log_path(session_id)
    if not log_path.exists():
        console.print(f"[red]No event log for session {session_id}[/red]")
        sys.exit(ExitCode.SESSION_ERROR)

    if output_format == "json" and not follow:
        for entry in read_session_log(log_path):
            print(json.dumps(entry, default=str))
        return

    try:
        for line in stream_session_pretty(log_path, follow=follow):
            console.print(line)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped following.[/dim]")


@main.command()
@click.option('--dry-run', is_flag=True, help='Show what would be removed without deleting')
@click.option('--retention-days', type=int, help='Remove sessions older than this (default from config)')
@click.pass_context
def cleanup(ctx: click.Context, dry_run: bool, retention_days: Optional[int]):
    """Remove expired session directories.

    Sessions that are currently running are never removed.
    """
    workspace = _workspace(ctx)
    if not workspace.exists():
        console.print("[yellow]No .prism/ workspace found.[/yellow]")
        return

    config = _load_config(workspace)
    days = retention_days if retention_days is not None else config.retention.session_days
    if days <= 0:
        raise click.BadParameter("must be positive", param_hint="--retention-days")

    service = CleanupService(workspace)
    result = service.run(retention_days=days, dry_run=dry_run)
    if not dry_run:
        service.write_record()

    console.print(format_cleanup_result(result))
    if result.errors:
        sys.exit(ExitCode.STEP_FAILURE)


@main.command()
@click.option('--reason', default='User requested stop', help='Reason recorded on the session')
@click.pass_context
def stop(ctx: click.Context, reason: str):
    """Ask a running workflow in this workspace to stop gracefully.

    The workflow saves its session as interrupted within a second or so.
    """
    recovery = WorkflowRecoveryManager(_workspace(ctx))
    stop_file = recovery.request_stop(reason)
    console.print(f"[green]Stop requested[/green] [dim]({stop_file})[/dim]")


@main.command()
@click.option('--validate', is_flag=True, help='Also check the credentials against the backend')
@click.pass_context
def env(ctx: click.Context, validate: bool):
    """Show detected environment, credentials and lock state (no secrets)."""
    workspace = _workspace(ctx)
    config = _load_config(workspace)

    environment = EnvironmentDetector(cwd=workspace.project_path).detect()
    table = Table(title="Environment", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("Hosted", "yes" if environment.is_hosted_environment else "no")
    table.add_row("Confidence", environment.confidence_level.value)
    table.add_row("Detection", environment.detection_method)
    table.add_row("Integrations", ", ".join(environment.available_integrations) or "-")

    resolver = CredentialResolver(
        workspace.project_path, base_urls={config.llm.provider: config.llm.base_url}
    )
    creds = resolver.discover()
    summary = describe(creds)
    table.add_row("Credentials", summary["source"])
    table.add_row("Providers", ", ".join(summary["providers"]) or "-")
    if "expires_in_minutes" in summary:
        expired = " (expired)" if is_token_expired(creds) else ""
        table.add_row("Token expires in", f"{summary['expires_in_minutes']} min{expired}")

    holder = WorkspaceLockManager.read_holder_at(workspace.lock_file)
    info = describe_holder(holder)
    if info["held"]:
        state = "stale" if info["stale"] else "held"
        table.add_row("Lock", f"{state} by {info['owner_session_id'] or 'unknown'} (pid {info['owner_process_id']})")
    else:
        table.add_row("Lock", "free")
    console.print(table)

    if validate:
        try:
            valid = asyncio.run(resolver.validate(creds, provider=config.llm.provider))
        except CredentialError as e:
            console.print(f"[yellow]{format_error(e)}[/yellow]")
            sys.exit(e.exit_code)
        if valid:
            console.print("[green]Credentials accepted by the backend[/green]")
        else:
            console.print("[red]Credentials missing or rejected[/red]")
            sys.exit(ExitCode.CREDENTIAL_FAILURE)


# =============================================================================
# Configuration
# =============================================================================

@main.group()
def config():
    """View or edit .prism/config.yaml."""
    pass


@config.command('show')
@click.pass_context
def config_show(ctx: click.Context):
    """Print the effective configuration."""
    console.print(ConfigManager(_workspace(ctx)).show(), markup=False)


@config.command('get')
@click.argument('key')
@click.pass_context
def config_get(ctx: click.Context, key: str):
    """Print one value, e.g. retention.session_days."""
    try:
        value = ConfigManager(_workspace(ctx)).get(key)
    except KeyError:
        raise click.BadParameter(f"unknown key '{key}'", param_hint="KEY")
    console.print(json.dumps(value) if isinstance(value, (dict, list)) else str(value), markup=False)


@config.command('set')
@click.argument('key')
@click.argument('value')
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str):
    """Set one value, e.g. prism config set retention.session_days 14."""
    try:
        ConfigManager(_workspace(ctx)).set(key, value)
    except KeyError:
        raise click.BadParameter(f"unknown key '{key}'", param_hint="KEY")
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="VALUE")
    console.print(f"[green]Set[/green] {key} = {value}")


@config.command('reset')
@click.confirmation_option(prompt='Reset configuration to defaults?')
@click.pass_context
def config_reset(ctx: click.Context):
    """Restore the default configuration."""
    ConfigManager(_workspace(ctx)).reset()
    console.print("[green]Configuration reset to defaults[/green]")


@main.command()
@click.option('--host', default='127.0.0.1', help='Host to bind to')
@click.option('--port', default=8000, help='Port to listen on')
@click.pass_context
def dashboard(ctx: click.Context, host: str, port: int):
    """Start the dashboard API for this workspace.

    \b
    Endpoints:
      GET    /api/status
      GET    /api/sessions?status=...
      GET    /api/sessions/{session_id}
      POST   /api/control/stop
      GET    /api/control/stop
      DELETE /api/control/stop
    """
    from .api import run_dashboard

    workspace = _workspace(ctx)
    console.print("[bold]Starting PRISM Dashboard[/bold]")
    console.print(f"Workspace: {workspace.project_path}")
    console.print(f"API: http://{host}:{port}/api/")
    console.print(f"Docs: http://{host}:{port}/docs")
    console.print("\nPress Ctrl+C to stop\n")

    try:
        run_dashboard(workspace.project_path, host=host, port=port)
    except KeyboardInterrupt:
        console.print("\n[yellow]Dashboard stopped[/yellow]")


if __name__ == '__main__':
    main()
