"""Control endpoints for stopping a running workflow."""

from pathlib import Path
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from ...orchestration.recovery import WorkflowRecoveryManager
from ...workspace import WorkspaceManager


router = APIRouter()


class StopRequest(BaseModel):
    """Request body for stop endpoint."""
    reason: Optional[str] = "Stop requested via API"


class StopResponse(BaseModel):
    """Response for stop request."""
    success: bool
    message: str
    stop_file: str


class StopStatus(BaseModel):
    """Response for stop status check."""
    stop_requested: bool
    stop_file: Optional[str] = None
    requested_at: Optional[str] = None
    reason: Optional[str] = None


def get_recovery(request: Request) -> WorkflowRecoveryManager:
    project_path: Optional[Path] = getattr(request.app.state, "project_path", None)
    if not project_path:
        raise HTTPException(status_code=400, detail="No project path configured")
    return WorkflowRecoveryManager(WorkspaceManager(project_path))


@router.post("/control/stop", response_model=StopResponse)
async def request_stop(request: Request, body: Optional[StopRequest] = None):
    """Request a graceful stop of the running workflow.

    The workflow notices the stop file within a second, saves its session
    as interrupted and exits; the session can then be resumed.
    """
    recovery = get_recovery(request)
    reason = (body.reason if body else None) or "Stop requested via API"
    stop_file = recovery.request_stop(reason)

    return StopResponse(
        success=True,
        message="Stop request sent. The workflow will stop at its next checkpoint.",
        stop_file=str(stop_file),
    )


@router.get("/control/stop", response_model=StopStatus)
async def get_stop_status(request: Request):
    """Check if a stop has been requested."""
    recovery = get_recovery(request)
    pending = recovery.read_stop_request()

    if pending is None:
        return StopStatus(stop_requested=False)

    return StopStatus(
        stop_requested=True,
        stop_file=str(recovery.stop_file),
        requested_at=pending["requested_at"],
        reason=pending["reason"],
    )


@router.delete("/control/stop")
async def cancel_stop(request: Request):
    """Cancel a pending stop request."""
    recovery = get_recovery(request)

    if recovery.clear_stop_request():
        return {"success": True, "message": "Stop request cancelled"}

    return {"success": False, "message": "No stop request was pending"}
