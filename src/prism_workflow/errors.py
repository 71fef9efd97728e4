"""Error taxonomy for the workflow control plane.

Every error the control plane raises on purpose derives from PrismError,
which carries a stable code, whether the condition is recoverable, and the
process exit code the CLI should use when the error reaches the top level.
"""

from enum import IntEnum
from typing import Optional


class ExitCode(IntEnum):
    """Process exit codes for the command surface."""
    SUCCESS = 0
    STEP_FAILURE = 1
    PREREQUISITE_MISSING = 2
    CREDENTIAL_FAILURE = 3
    LOCK_CONTENTION = 4
    SESSION_ERROR = 5
    INTERRUPTED = 130


class PrismError(Exception):
    """Base class for all control plane errors."""

    code = "PRISM_ERROR"
    exit_code = ExitCode.STEP_FAILURE

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable


class PrerequisiteMissing(PrismError):
    """No usable credentials could be resolved; no session is created."""

    code = "PREREQUISITE_MISSING"
    exit_code = ExitCode.PREREQUISITE_MISSING


class CredentialError(PrismError):
    """Credential validation failed or could not be determined."""

    code = "CREDENTIAL_ERROR"
    exit_code = ExitCode.CREDENTIAL_FAILURE

    def __init__(self, message: str, indeterminate: bool = False):
        super().__init__(message, recoverable=indeterminate)
        self.indeterminate = indeterminate


class LockContention(PrismError):
    """The workspace is locked by a live holder."""

    code = "LOCK_CONTENTION"
    exit_code = ExitCode.LOCK_CONTENTION

    def __init__(
        self,
        workspace_path: str,
        holder_session_id: Optional[str] = None,
        holder_pid: Optional[int] = None,
    ):
        holder = ""
        if holder_session_id or holder_pid:
            holder = f" (held by session {holder_session_id or 'unknown'}, pid {holder_pid or '?'})"
        super().__init__(f"Workspace {workspace_path} is locked{holder}", recoverable=True)
        self.workspace_path = workspace_path
        self.holder_session_id = holder_session_id
        self.holder_pid = holder_pid


class StaleLock(PrismError):
    """A lock record whose holder stopped renewing it."""

    code = "STALE_LOCK"
    exit_code = ExitCode.LOCK_CONTENTION

    def __init__(self, workspace_path: str, age_seconds: float):
        super().__init__(
            f"Stale lock on {workspace_path} (last renewed {age_seconds:.1f}s ago)",
            recoverable=True,
        )
        self.workspace_path = workspace_path
        self.age_seconds = age_seconds


class SessionError(PrismError):
    """Base class for session record problems."""

    code = "SESSION_ERROR"
    exit_code = ExitCode.SESSION_ERROR

    def __init__(self, message: str, session_id: str):
        super().__init__(f"Session {session_id}: {message}")
        self.session_id = session_id


class SessionNotFound(SessionError):
    """No session record exists for the requested id."""

    code = "SESSION_NOT_FOUND"


class SessionCorrupt(SessionError):
    """The session record exists but fails to parse or validate."""

    code = "SESSION_CORRUPT"


class InvalidTransition(SessionError):
    """A status change that would break the session lifecycle."""

    code = "INVALID_TRANSITION"

    def __init__(self, session_id: str, current: str, requested: str):
        super().__init__(f"cannot move from '{current}' to '{requested}'", session_id)
        self.current = current
        self.requested = requested


class StepFailure(PrismError):
    """A workflow step failed; the session is recorded as failed and resumable."""

    code = "STEP_FAILURE"
    exit_code = ExitCode.STEP_FAILURE

    def __init__(self, step_id: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"Step '{step_id}' failed: {message}", recoverable=True)
        self.step_id = step_id
        self.cause = cause


class AuthExpired(PrismError):
    """The backend rejected the credentials in the middle of a run."""

    code = "AUTH_EXPIRED"
    exit_code = ExitCode.CREDENTIAL_FAILURE

    def __init__(self, provider: str = "anthropic", message: Optional[str] = None):
        super().__init__(message or f"Credentials for {provider} were rejected", recoverable=True)
        self.provider = provider


class BackendError(PrismError):
    """The language-model backend returned an error other than an auth rejection."""

    code = "BACKEND_ERROR"
    exit_code = ExitCode.STEP_FAILURE

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, recoverable=True)
        self.status_code = status_code


class WorkflowCancelled(PrismError):
    """Cooperative cancellation observed by a step or the orchestrator."""

    code = "CANCELLED"
    exit_code = ExitCode.INTERRUPTED

    def __init__(self, reason: str = "Workflow cancelled"):
        super().__init__(reason, recoverable=True)
        self.reason = reason


class WorkflowTimeout(WorkflowCancelled):
    """The wall-clock budget ran out."""

    code = "TIMEOUT"


def classify_http_status(status_code: int) -> str:
    """Classify a backend HTTP status for credential decisions.

    Returns:
        "ok" for 2xx, "auth" for 401/403, "indeterminate" otherwise
    """
    if 200 <= status_code < 300:
        return "ok"
    if status_code in (401, 403):
        return "auth"
    return "indeterminate"


def resume_command(session_id: str) -> str:
    """The exact command that resumes a session."""
    return f"prism resume {session_id}"


def format_error(error: BaseException) -> str:
    """Render an error with recovery hints for the terminal.

    Args:
        error: Any exception

    Returns:
        Multi-line message with cause and next steps
    """
    if not isinstance(error, PrismError):
        return f"Error: {error}"

    lines = [error.message, f"  Code: {error.code}"]

    if isinstance(error, PrerequisiteMissing):
        lines.append("  Set ANTHROPIC_API_KEY, run 'claude login', or add a .env file to the project")
    elif isinstance(error, CredentialError):
        if error.indeterminate:
            lines.append("  The backend could not be reached; check your network and retry")
        else:
            lines.append("  Check the API key or refresh the host login ('claude login')")
    elif isinstance(error, LockContention):
        lines.append("  Another run owns this workspace; wait for it or retry with --wait")
    elif isinstance(error, (SessionNotFound, SessionCorrupt)):
        lines.append("  List available sessions with: prism list-sessions")
    elif isinstance(error, InvalidTransition):
        lines.append("  Completed sessions cannot be resumed; start a new run instead")
    elif isinstance(error, StepFailure):
        if error.cause is not None:
            lines.append(f"  Root cause: {error.cause}")
    elif isinstance(error, AuthExpired):
        lines.append("  Refresh the credentials ('claude login' or update ANTHROPIC_API_KEY)")

    return "\n".join(lines)
