"""Status endpoint: environment, lock holder and stop request."""

from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ...environment import EnvironmentDetector
from ...lock import WorkspaceLockManager
from ...models import ConfidenceLevel, SessionStatus
from ...orchestration.recovery import WorkflowRecoveryManager
from ...session_store import SessionStore
from ...workspace import WorkspaceManager

router = APIRouter()


class LockStatus(BaseModel):
    """Current holder of the workspace lock."""
    held: bool = False
    stale: bool = False
    owner_session_id: Optional[str] = None
    owner_process_id: Optional[int] = None
    seconds_since_renewal: Optional[float] = None


class WorkspaceStatus(BaseModel):
    """Current status of the workspace."""
    project_path: Optional[str] = None
    initialized: bool = False
    hosted: bool = False
    confidence_level: ConfidenceLevel = ConfidenceLevel.NONE
    detection_method: str = "none"
    lock: LockStatus = LockStatus()
    running_session_id: Optional[str] = None
    total_sessions: int = 0
    stop_requested: bool = False


def get_project_path(request: Request) -> Optional[Path]:
    """Get project path from app state."""
    return getattr(request.app.state, "project_path", None)


@router.get("/status", response_model=WorkspaceStatus)
async def get_status(request: Request) -> WorkspaceStatus:
    """Get current workspace status from the files under .prism/."""
    project_path = get_project_path(request)

    if not project_path or not project_path.exists():
        return WorkspaceStatus()

    workspace = WorkspaceManager(project_path)
    environment = EnvironmentDetector(cwd=project_path).detect()
    status = WorkspaceStatus(
        project_path=str(workspace.project_path),
        initialized=workspace.exists(),
        hosted=environment.is_hosted_environment,
        confidence_level=environment.confidence_level,
        detection_method=environment.detection_method,
        stop_requested=WorkflowRecoveryManager(workspace).is_stop_requested(),
    )
    if not workspace.exists():
        return status

    holder = WorkspaceLockManager.read_holder_at(workspace.lock_file)
    if holder is not None:
        status.lock = LockStatus(
            held=not holder.is_stale(),
            stale=holder.is_stale(),
            owner_session_id=holder.owner_session_id,
            owner_process_id=holder.owner_process_id,
            seconds_since_renewal=round(holder.seconds_since_renewal(), 1),
        )

    summaries = SessionStore(workspace).list_sessions()
    status.total_sessions = len(summaries)
    running = [s for s in summaries if s.status == SessionStatus.RUNNING and s.active]
    if running:
        status.running_session_id = running[0].session_id

    return status
