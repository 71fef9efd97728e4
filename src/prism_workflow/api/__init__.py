"""Dashboard API for the PRISM workflow.

Read-only REST endpoints over a workspace's sessions and lock, plus the
file-based stop request.
"""

from .main import create_app, run_dashboard

__all__ = ["create_app", "run_dashboard"]
