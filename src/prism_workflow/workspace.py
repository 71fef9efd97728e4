"""Workspace management for the .prism/ directory structure.

Handles:
- Directory structure creation
- Paths of every file the control plane owns inside a workspace
- Session directory enumeration
- .gitignore maintenance
"""

from pathlib import Path
from typing import Iterator


class WorkspaceManager:
    """Manages the .prism/ workspace directory structure.

    Directory structure:
        .prism/
        ├── config.yaml             # User configuration
        ├── .workspace.lock         # Lock record (one per workspace)
        ├── .workspace.lock.guard   # Short-lived mutex around lock record changes
        ├── .last-cleanup           # Epoch ms of the last retention sweep
        ├── stop-requested          # File-based stop signal
        └── sessions/
            └── {session_id}/
                ├── session_state.yaml  # Checkpointed session state
                ├── .running            # Active marker while a run owns it
                ├── events.jsonl        # Session event log
                ├── error.json          # Last failure detail
                └── 01-prd-analysis/    # Per-step output directories
    """

    DIR_NAME = ".prism"
    STATE_FILENAME = "session_state.yaml"
    ACTIVE_MARKER = ".running"
    EVENTS_FILENAME = "events.jsonl"
    ERROR_FILENAME = "error.json"

    def __init__(self, project_path: Path):
        """Initialize workspace manager.

        Args:
            project_path: Path to the project directory (the unit of mutual exclusion)
        """
        self.project_path = Path(project_path).resolve()
        self.prism_dir = self.project_path / self.DIR_NAME
        self.sessions_dir = self.prism_dir / "sessions"

        # File paths
        self.config_file = self.prism_dir / "config.yaml"
        self.lock_file = self.prism_dir / ".workspace.lock"
        self.cleanup_marker = self.prism_dir / ".last-cleanup"
        self.stop_file = self.prism_dir / "stop-requested"
        self.env_file = self.project_path / ".env"

    def ensure_structure(self) -> None:
        """Create the .prism/ directory structure if it doesn't exist."""
        self.prism_dir.mkdir(parents=True, exist_ok=True)
        self.sessions_dir.mkdir(exist_ok=True)

    def exists(self) -> bool:
        """Check if the workspace exists."""
        return self.prism_dir.exists()

    # =========================================================================
    # Session paths
    # =========================================================================

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / session_id

    def session_state_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / self.STATE_FILENAME

    def active_marker_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / self.ACTIVE_MARKER

    def session_log_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / self.EVENTS_FILENAME

    def session_error_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / self.ERROR_FILENAME

    def iter_session_dirs(self) -> Iterator[Path]:
        """Yield session directories, oldest id first.

        Session ids embed their creation time, so name order is age order.
        """
        if not self.sessions_dir.exists():
            return
        for entry in sorted(self.sessions_dir.iterdir()):
            if entry.is_dir() and entry.name.startswith("sess-"):
                yield entry

    # =========================================================================
    # Housekeeping
    # =========================================================================

    def update_gitignore(self) -> bool:
        """Add the .prism/ runtime files to .gitignore.

        Returns:
            True if .gitignore was updated
        """
        gitignore = self.project_path / ".gitignore"

        patterns = [
            "# PRISM workspace (session state may contain document excerpts)",
            ".prism/sessions/",
            ".prism/.workspace.lock",
            ".prism/.workspace.lock.guard",
            ".prism/.last-cleanup",
            ".prism/stop-requested",
        ]

        existing = ""
        if gitignore.exists():
            existing = gitignore.read_text(encoding="utf-8")

        if ".prism/sessions/" in existing:
            return False

        new_content = existing
        if existing and not existing.endswith("\n"):
            new_content += "\n"
        if existing:
            new_content += "\n"
        new_content += "\n".join(patterns) + "\n"

        gitignore.write_text(new_content, encoding="utf-8")
        return True
