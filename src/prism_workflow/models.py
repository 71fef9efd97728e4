"""Data models for the workflow control plane.

Uses Pydantic for validation. Every record written to disk goes through one
of these models on the way out and is validated again on the way in, so a
torn or hand-edited file is caught at load time instead of mid-run.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from .errors import InvalidTransition


SESSION_ID_PATTERN = re.compile(r"^sess-\d{13}$")
STATE_SCHEMA_VERSION = "1.0"


# =============================================================================
# Environment
# =============================================================================

class ConfidenceLevel(str, Enum):
    """How sure the detector is about the hosting environment."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class EnvironmentDescriptor(BaseModel):
    """Result of environment detection. Computed once per process."""
    model_config = ConfigDict(frozen=True)

    is_hosted_environment: bool = False
    confidence_level: ConfidenceLevel = ConfidenceLevel.NONE
    detection_method: str = "none"
    workspace_path: str
    auth_hint_available: bool = False
    available_integrations: tuple[str, ...] = ()
    detected_at: datetime = Field(default_factory=datetime.now)


# =============================================================================
# Credentials
# =============================================================================

class CredentialSource(str, Enum):
    """Tier the credentials were found at, highest priority first."""
    EXPLICIT_ENV = "explicit-env"
    HOST_OAUTH = "host-oauth"
    LOCAL_FILE = "local-file"
    NONE = "none"


class Credentials(BaseModel):
    """Authentication material for the language-model backends.

    Held in process memory only. Secrets are SecretStr so they never show up
    in reprs, dumps or tracebacks by accident.
    """
    source: CredentialSource = CredentialSource.NONE
    provider_secrets: dict[str, SecretStr] = Field(default_factory=dict)
    expiry_timestamp: Optional[int] = Field(
        default=None,
        description="Expiry in milliseconds since epoch (OAuth tokens only)"
    )
    refresh_material: Optional[SecretStr] = None
    discovered_at: datetime = Field(default_factory=datetime.now)

    @property
    def populated_providers(self) -> list[str]:
        return sorted(self.provider_secrets)

    def has_secrets(self) -> bool:
        return any(s.get_secret_value() for s in self.provider_secrets.values())

    def secret_for(self, provider: str) -> Optional[str]:
        secret = self.provider_secrets.get(provider)
        return secret.get_secret_value() if secret else None


# =============================================================================
# Workspace lock
# =============================================================================

class LockRecord(BaseModel):
    """On-disk lock record, one per workspace.

    Staleness is judged by last_renewed_at only; acquired_at is informational.
    """
    workspace_path: str
    owner_session_id: Optional[str] = None
    owner_process_id: int
    owner_token: str = Field(..., description="Random token identifying the holding handle")
    acquired_at: datetime = Field(default_factory=datetime.now)
    last_renewed_at: datetime = Field(default_factory=datetime.now)
    stale_after_seconds: float = 10.0

    def seconds_since_renewal(self, now: Optional[datetime] = None) -> float:
        return ((now or datetime.now()) - self.last_renewed_at).total_seconds()

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        return self.seconds_since_renewal(now) > self.stale_after_seconds


# =============================================================================
# Session state
# =============================================================================

class SessionStatus(str, Enum):
    """Lifecycle status of a workflow session."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


# Transitions reachable without an explicit resume
_FORWARD_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.PENDING: {SessionStatus.RUNNING, SessionStatus.INTERRUPTED},
    SessionStatus.RUNNING: {
        SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.INTERRUPTED
    },
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
    SessionStatus.INTERRUPTED: set(),
}

# Transitions that only an explicit resume may perform
_RESUME_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.INTERRUPTED: {SessionStatus.RUNNING},
    SessionStatus.FAILED: {SessionStatus.RUNNING},
}


class StepProgress(BaseModel):
    """Progress of a single declared workflow step."""
    step_id: str
    completed: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempts: int = Field(default=0, description="How many times the step was started")
    skipped: bool = Field(default=False, description="Completed without doing work")


class ErrorDetail(BaseModel):
    """Last failure recorded on a session."""
    message: str
    error_type: str = "Exception"
    code: Optional[str] = None
    step_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class SessionState(BaseModel):
    """Durable, checkpointed state of one workflow session.

    Saved to .prism/sessions/{session_id}/session_state.yaml after every
    step boundary and terminal transition.
    """
    version: str = STATE_SCHEMA_VERSION
    session_id: str
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    status: SessionStatus = SessionStatus.PENDING
    current_step_id: Optional[str] = None
    step_progress: list[StepProgress] = Field(default_factory=list)
    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    last_error: Optional[ErrorDetail] = None
    interrupt_reason: Optional[str] = None
    config: dict[str, Any] = Field(
        default_factory=dict,
        description="Configuration snapshot taken when the session was created"
    )

    @field_validator("session_id")
    @classmethod
    def _check_session_id(cls, value: str) -> str:
        if not SESSION_ID_PATTERN.match(value):
            raise ValueError("session id must match sess-{13 digit timestamp}")
        return value

    @model_validator(mode="after")
    def _check_steps(self) -> "SessionState":
        ids = [p.step_id for p in self.step_progress]
        if len(ids) != len(set(ids)):
            raise ValueError("step ids in step_progress must be unique")
        if self.current_step_id is not None and self.current_step_id not in ids:
            raise ValueError(f"current_step_id '{self.current_step_id}' is not a declared step")
        return self

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_step(self, step_id: str) -> StepProgress:
        for p in self.step_progress:
            if p.step_id == step_id:
                return p
        raise ValueError(f"Step {step_id} not found")

    def next_step(self) -> Optional[StepProgress]:
        """First declared step that has not completed, or None when all are done."""
        for p in self.step_progress:
            if not p.completed:
                return p
        return None

    def completed_step_ids(self) -> list[str]:
        return [p.step_id for p in self.step_progress if p.completed]

    def is_terminal(self) -> bool:
        return self.status in (
            SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.INTERRUPTED
        )

    def is_resumable(self) -> bool:
        return self.status in (SessionStatus.FAILED, SessionStatus.INTERRUPTED)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def can_transition(self, target: SessionStatus, via_resume: bool = False) -> bool:
        if target in _FORWARD_TRANSITIONS[self.status]:
            return True
        return via_resume and target in _RESUME_TRANSITIONS.get(self.status, set())

    def transition_to(self, target: SessionStatus, via_resume: bool = False) -> None:
        """Move to a new status, refusing anything outside the lifecycle."""
        if not self.can_transition(target, via_resume=via_resume):
            raise InvalidTransition(self.session_id, self.status.value, target.value)
        self.status = target
        self.updated_at = datetime.now()

    def mark_step_started(self, step_id: str) -> None:
        step = self.get_step(step_id)
        step.started_at = datetime.now()
        step.attempts += 1
        self.current_step_id = step_id
        self.updated_at = datetime.now()

    def mark_step_completed(
        self,
        step_id: str,
        outputs: Optional[dict[str, Any]] = None,
        skipped: bool = False
    ) -> None:
        step = self.get_step(step_id)
        if step.completed:
            # completed flags never regress and completion is recorded once
            return
        step.completed = True
        step.skipped = skipped
        step.completed_at = datetime.now()
        if outputs:
            self.outputs.update(outputs)
        following = self.next_step()
        self.current_step_id = following.step_id if following else step_id
        self.updated_at = datetime.now()


class SessionSummary(BaseModel):
    """Listing entry for a session; corrupt records are listed, not raised."""
    session_id: str
    status: Optional[SessionStatus] = None
    current_step_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_steps: int = 0
    total_steps: int = 0
    active: bool = False
    corrupt: bool = False
    error: Optional[str] = None


# =============================================================================
# Cleanup
# =============================================================================

class CleanupRecord(BaseModel):
    """Throttling marker for the retention sweep."""
    last_run_at: int = Field(..., description="Milliseconds since epoch of the last sweep")


class CleanupResult(BaseModel):
    """Outcome of a retention sweep."""
    removed_count: int = 0
    reclaimed_bytes: int = 0
    errors: list[str] = Field(default_factory=list)
    removed_sessions: list[str] = Field(default_factory=list)
    skipped_active: list[str] = Field(default_factory=list)
    dry_run: bool = False


# =============================================================================
# Session event log
# =============================================================================

class LogEntryType(str, Enum):
    """Types of entries in a session's events.jsonl."""
    SESSION_START = "session_start"
    SESSION_RESUME = "session_resume"
    STEP_START = "step_start"
    STEP_COMPLETE = "step_complete"
    STEP_SKIPPED = "step_skipped"
    AUTH_PAUSED = "auth_paused"
    AUTH_RESTORED = "auth_restored"
    CANCELLED = "cancelled"
    ERROR = "error"
    SESSION_END = "session_end"


# =============================================================================
# Configuration
# =============================================================================

class RetentionConfig(BaseModel):
    """Retention sweep settings."""
    session_days: int = Field(default=30, ge=1, le=365)
    cleanup_throttle_days: float = Field(
        default=7.0,
        ge=0,
        description="Minimum days between opportunistic sweeps"
    )


class LockConfig(BaseModel):
    """Workspace lock timing and the contended-lock wait policy."""
    stale_after_seconds: float = Field(default=10.0, gt=0)
    renew_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Renewal cadence; must be well under stale_after_seconds"
    )
    wait_timeout_seconds: float = Field(default=60.0, ge=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)

    @model_validator(mode="after")
    def _check_cadence(self) -> "LockConfig":
        if self.renew_interval_seconds >= self.stale_after_seconds:
            raise ValueError("renew_interval_seconds must be shorter than stale_after_seconds")
        return self


class AuthRetryConfig(BaseModel):
    """Bounded re-validation schedule used while a session is paused on auth."""
    max_attempts: int = Field(default=3, ge=0)
    base_delay_seconds: float = Field(default=5.0, ge=0)
    max_delay_seconds: float = Field(default=60.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1)
    jitter_factor: float = Field(default=0.1, ge=0, le=1)


class LLMConfig(BaseModel):
    """Language-model backend settings."""
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    base_url: str = "https://api.anthropic.com"
    max_tokens: int = Field(default=4096, ge=1)
    request_timeout_seconds: float = Field(default=120.0, gt=0)


class WorkflowConfig(BaseModel):
    """User configuration, stored in .prism/config.yaml."""
    version: str = "1.0"
    workflow_timeout_minutes: float = Field(default=30.0, gt=0)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    auth_retry: AuthRetryConfig = Field(default_factory=AuthRetryConfig)


# =============================================================================
# Workflow result
# =============================================================================

class WorkflowResult(BaseModel):
    """What a workflow run hands back to the command surface."""
    session_id: Optional[str] = None
    status: Optional[SessionStatus] = None
    exit_code: int = 0
    completed_steps: list[str] = Field(default_factory=list)
    outputs: dict[str, Any] = Field(default_factory=dict)
    duration_seconds: float = 0.0
    message: Optional[str] = None
