"""API routes for the dashboard."""

from . import status, sessions, control

__all__ = ["status", "sessions", "control"]
