"""User configuration stored in .prism/config.yaml.

The file is created with defaults on first load. Invalid content never
blocks a run: a warning is printed and defaults are used instead.
A handful of environment variables override the file for one process.
"""

import os
from typing import Any, Mapping, Optional

import yaml
from pydantic import ValidationError
from rich.console import Console

from .models import WorkflowConfig
from .session_store import atomic_write
from .workspace import WorkspaceManager


console = Console()

# environment variable -> dotted config key
ENV_OVERRIDES = {
    "PRISM_WORKFLOW_TIMEOUT_MINUTES": "workflow_timeout_minutes",
    "PRISM_RETENTION_DAYS": "retention.session_days",
    "PRISM_LLM_PROVIDER": "llm.provider",
    "PRISM_LLM_MODEL": "llm.model",
}


def _get_path(data: dict, key: str) -> Any:
    current: Any = data
    for part in key.split("."):
        if not isinstance(current, dict) or part not in current:
            raise KeyError(key)
        current = current[part]
    return current


def _set_path(data: dict, key: str, value: Any) -> None:
    parts = key.split(".")
    current = data
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            raise KeyError(key)
        current = current[part]
    if parts[-1] not in current:
        raise KeyError(key)
    current[parts[-1]] = value


def parse_value(raw: str) -> Any:
    """Interpret a command-line value the way YAML would (numbers, booleans)."""
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


class ConfigManager:
    """Loads, edits and persists the workspace configuration."""

    def __init__(self, workspace: WorkspaceManager, environ: Optional[Mapping[str, str]] = None):
        """Initialize the config manager.

        Args:
            workspace: Workspace whose .prism/config.yaml is managed
            environ: Environment used for overrides (defaults to os.environ)
        """
        self.workspace = workspace
        self.environ = dict(os.environ if environ is None else environ)

    @property
    def path(self):
        return self.workspace.config_file

    def load(self, apply_env: bool = True) -> WorkflowConfig:
        """Load the configuration, creating the default file if missing.

        Args:
            apply_env: Apply PRISM_* environment overrides on top of the file

        Returns:
            Validated WorkflowConfig
        """
        config = self._load_file()
        if apply_env:
            config = self._apply_env(config)
        return config

    def _load_file(self) -> WorkflowConfig:
        if not self.path.exists():
            config = WorkflowConfig()
            try:
                self.save(config)
            except OSError as e:
                console.print(f"[yellow]Could not write default config: {e}[/yellow]")
            return config

        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
            return WorkflowConfig.model_validate(data)
        except (OSError, yaml.YAMLError, ValidationError) as e:
            console.print(f"[yellow]Invalid {self.path.name}, using defaults: {e}[/yellow]")
            return WorkflowConfig()

    def _apply_env(self, config: WorkflowConfig) -> WorkflowConfig:
        data = config.model_dump(mode="json")
        changed = False
        for var, key in ENV_OVERRIDES.items():
            raw = self.environ.get(var)
            if raw is None or raw == "":
                continue
            _set_path(data, key, parse_value(raw))
            changed = True
        if not changed:
            return config
        try:
            return WorkflowConfig.model_validate(data)
        except ValidationError as e:
            console.print(f"[yellow]Ignoring invalid PRISM_* environment overrides: {e}[/yellow]")
            return config

    def save(self, config: WorkflowConfig) -> None:
        self.workspace.ensure_structure()
        text = yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False, default_flow_style=False)
        atomic_write(self.path, text.encode("utf-8"))

    def get(self, key: str) -> Any:
        """Value at a dotted key, e.g. retention.session_days.

        Raises:
            KeyError: Unknown key
        """
        return _get_path(self.load().model_dump(mode="json"), key)

    def set(self, key: str, value: Any) -> WorkflowConfig:
        """Set a dotted key and persist the validated result.

        Raises:
            KeyError: Unknown key
            ValueError: The new value does not validate
        """
        data = self.load(apply_env=False).model_dump(mode="json")
        _set_path(data, key, parse_value(value) if isinstance(value, str) else value)
        try:
            config = WorkflowConfig.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Invalid value for {key}: {e.errors()[0]['msg']}") from e
        self.save(config)
        return config

    def reset(self) -> WorkflowConfig:
        config = WorkflowConfig()
        self.save(config)
        return config

    def show(self) -> str:
        """The effective configuration as YAML."""
        return yaml.safe_dump(self.load().model_dump(mode="json"), sort_keys=False, default_flow_style=False)
