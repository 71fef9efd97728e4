"""FastAPI application for the dashboard backend.

Exposes workspace status, session listings and details, and the stop
request control for a single project.
"""

from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routes import control, sessions, status


API_VERSION = "0.1.0"


def create_app(project_path: Optional[Path] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        project_path: Path to the project being monitored

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="PRISM Dashboard API",
        description="Session monitoring for the PRISM discovery workflow",
        version=API_VERSION,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.project_path = Path(project_path).resolve() if project_path else None

    app.include_router(status.router, prefix="/api", tags=["status"])
    app.include_router(sessions.router, prefix="/api", tags=["sessions"])
    app.include_router(control.router, prefix="/api", tags=["control"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "PRISM Dashboard API",
            "version": API_VERSION,
            "docs": "/docs",
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


def run_dashboard(
    project_path: Path,
    host: str = "127.0.0.1",
    port: int = 8000,
) -> None:
    """Run the dashboard server.

    Args:
        project_path: Path to the project being monitored
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(project_path)
    uvicorn.run(app, host=host, port=port)
