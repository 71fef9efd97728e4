"""Sessions endpoints: listing and per-session detail."""

from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from ...errors import SessionCorrupt, SessionNotFound
from ...models import SessionState, SessionStatus, SessionSummary
from ...session_logger import read_session_log
from ...session_store import SessionStore
from ...workspace import WorkspaceManager

router = APIRouter()


class SessionListResponse(BaseModel):
    """List of sessions with pagination info."""
    sessions: list[SessionSummary]
    total: int
    page: int
    page_size: int


class SessionDetailResponse(BaseModel):
    """A session's full state plus its event log."""
    state: SessionState
    active: bool = False
    error: Optional[dict[str, Any]] = None
    events: list[dict[str, Any]] = []


def get_project_path(request: Request) -> Optional[Path]:
    """Get project path from app state."""
    return getattr(request.app.state, "project_path", None)


def get_store(request: Request) -> SessionStore:
    project_path = get_project_path(request)
    if not project_path or not project_path.exists():
        raise HTTPException(status_code=404, detail="Project path not configured")
    return SessionStore(WorkspaceManager(project_path))


@router.get("/sessions", response_model=SessionListResponse)
async def get_sessions(
    request: Request,
    status: Optional[SessionStatus] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> SessionListResponse:
    """List sessions, newest first, optionally filtered by status."""
    store = get_store(request)
    summaries = store.list_sessions(status=status)

    start = (page - 1) * page_size
    return SessionListResponse(
        sessions=summaries[start:start + page_size],
        total=len(summaries),
        page=page,
        page_size=page_size,
    )


@router.get("/sessions/{session_id}", response_model=SessionDetailResponse)
async def get_session(
    request: Request,
    session_id: str,
    include_events: bool = True,
) -> SessionDetailResponse:
    """Get a specific session by ID."""
    store = get_store(request)
    try:
        state = store.load(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    except SessionCorrupt as e:
        raise HTTPException(status_code=422, detail=e.message)

    events = []
    if include_events:
        events = read_session_log(store.workspace.session_log_path(session_id))

    return SessionDetailResponse(
        state=state,
        active=store.is_active(session_id),
        error=store.read_error(session_id),
        events=events,
    )
