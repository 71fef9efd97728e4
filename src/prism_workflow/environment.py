"""Environment detection.

Determines whether the workflow is running inside a hosting agent
environment, and how sure we are, using an ordered waterfall of probes:

1. Explicit marker set by the host (CLAUDECODE=1)      -> high
2. Parent process name contains the host's name       -> medium
3. Host configuration directory in the home directory -> low
4. Nothing matched                                    -> none

A probe that fails abstains; detection itself never raises.
"""

import os
from pathlib import Path
from typing import Callable, Mapping, Optional

import psutil

from .models import ConfidenceLevel, EnvironmentDescriptor


HOST_MARKER_VAR = "CLAUDECODE"
HOST_PROCESS_NAMES = ("claude", "node")
HOST_CONFIG_DIR = ".claude"

# Integration tokens -> integration name
INTEGRATION_VARS = {
    "ATLASSIAN_API_TOKEN": "confluence",
    "FIGMA_API_KEY": "figma",
    "JIRA_API_TOKEN": "jira",
    "SLACK_BOT_TOKEN": "slack",
}


def parent_process_name() -> str:
    """Name of the parent process, via psutil."""
    return psutil.Process(os.getppid()).name()


class EnvironmentDetector:
    """Detects the hosting context once and caches the answer.

    Ambient state (environment variables, working directory, home directory)
    is captured at construction so nothing downstream reads it ad hoc.
    """

    def __init__(
        self,
        environ: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
        home: Optional[Path] = None,
        parent_name_probe: Optional[Callable[[], str]] = None,
    ):
        """Initialize the detector.

        Args:
            environ: Environment variables (defaults to a copy of os.environ)
            cwd: Workspace path (defaults to the current directory)
            home: Home directory (defaults to Path.home())
            parent_name_probe: Callable returning the parent process name
        """
        self.environ = dict(os.environ if environ is None else environ)
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()
        self.home = Path(home) if home is not None else Path.home()
        self.parent_name_probe = parent_name_probe or parent_process_name
        self._cached: Optional[EnvironmentDescriptor] = None

    def detect(self) -> EnvironmentDescriptor:
        """Run the probe waterfall (first positive signal wins)."""
        if self._cached is not None:
            return self._cached

        probes = (
            self._probe_explicit_marker,
            self._probe_parent_process,
            self._probe_config_directory,
        )
        descriptor: Optional[EnvironmentDescriptor] = None
        for probe in probes:
            try:
                descriptor = probe()
            except Exception:
                # A failing probe abstains
                descriptor = None
            if descriptor is not None:
                break

        if descriptor is None:
            descriptor = self._descriptor(False, ConfidenceLevel.NONE, "none", integrations=False)

        self._cached = descriptor
        return descriptor

    def _descriptor(
        self,
        hosted: bool,
        confidence: ConfidenceLevel,
        method: str,
        integrations: bool = True,
    ) -> EnvironmentDescriptor:
        return EnvironmentDescriptor(
            is_hosted_environment=hosted,
            confidence_level=confidence,
            detection_method=method,
            workspace_path=str(self.cwd),
            auth_hint_available=bool(self.environ.get("ANTHROPIC_API_KEY")),
            available_integrations=self._integrations() if integrations else (),
        )

    def _integrations(self) -> tuple[str, ...]:
        return tuple(
            name for var, name in INTEGRATION_VARS.items() if self.environ.get(var)
        )

    def _probe_explicit_marker(self) -> Optional[EnvironmentDescriptor]:
        if self.environ.get(HOST_MARKER_VAR) == "1":
            return self._descriptor(True, ConfidenceLevel.HIGH, "env-marker-explicit")
        return None

    def _probe_parent_process(self) -> Optional[EnvironmentDescriptor]:
        name = (self.parent_name_probe() or "").lower()
        if any(host in name for host in HOST_PROCESS_NAMES):
            return self._descriptor(True, ConfidenceLevel.MEDIUM, "parent-process-name")
        return None

    def _probe_config_directory(self) -> Optional[EnvironmentDescriptor]:
        if (self.home / HOST_CONFIG_DIR).is_dir():
            # Informational only: the host is installed, not necessarily our parent
            return self._descriptor(False, ConfidenceLevel.LOW, "config-directory", integrations=False)
        return None


def is_hosted(descriptor: EnvironmentDescriptor) -> bool:
    """True when detection is confident enough to treat the run as hosted."""
    return descriptor.is_hosted_environment and descriptor.confidence_level in (
        ConfidenceLevel.HIGH, ConfidenceLevel.MEDIUM
    )
