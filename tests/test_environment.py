"""Tests for environment detection."""

from pathlib import Path

from prism_workflow.environment import EnvironmentDetector, is_hosted
from prism_workflow.models import ConfidenceLevel


def detector(tmp_path: Path, environ=None, parent="bash", home=None) -> EnvironmentDetector:
    return EnvironmentDetector(
        environ=environ or {},
        cwd=tmp_path,
        home=home or (tmp_path / "home"),
        parent_name_probe=lambda: parent,
    )


class TestEnvironmentDetector:
    """Tests for the probe waterfall."""

    def test_explicit_marker_is_high_confidence(self, tmp_path: Path):
        result = detector(tmp_path, environ={"CLAUDECODE": "1"}).detect()
        assert result.is_hosted_environment
        assert result.confidence_level == ConfidenceLevel.HIGH
        assert result.detection_method == "env-marker-explicit"
        assert is_hosted(result)

    def test_parent_process_is_medium_confidence(self, tmp_path: Path):
        result = detector(tmp_path, parent="claude").detect()
        assert result.is_hosted_environment
        assert result.confidence_level == ConfidenceLevel.MEDIUM

    def test_config_directory_is_informational(self, tmp_path: Path):
        home = tmp_path / "home"
        (home / ".claude").mkdir(parents=True)
        result = detector(tmp_path, home=home).detect()
        assert not result.is_hosted_environment
        assert result.confidence_level == ConfidenceLevel.LOW
        assert not is_hosted(result)

    def test_nothing_detected(self, tmp_path: Path):
        result = detector(tmp_path).detect()
        assert not result.is_hosted_environment
        assert result.confidence_level == ConfidenceLevel.NONE
        assert result.detection_method == "none"
        assert result.workspace_path == str(tmp_path)

    def test_failing_probe_abstains(self, tmp_path: Path):
        """Test that a raising probe falls through instead of failing detection."""
        def broken():
            raise PermissionError("no access")

        d = EnvironmentDetector(environ={}, cwd=tmp_path, home=tmp_path, parent_name_probe=broken)
        result = d.detect()
        assert result.confidence_level == ConfidenceLevel.NONE

    def test_result_is_cached(self, tmp_path: Path):
        calls = []

        def probe():
            calls.append(1)
            return "bash"

        d = EnvironmentDetector(environ={}, cwd=tmp_path, home=tmp_path, parent_name_probe=probe)
        first = d.detect()
        second = d.detect()
        assert first is second
        assert len(calls) == 1

    def test_integrations_and_auth_hint(self, tmp_path: Path):
        environ = {"CLAUDECODE": "1", "FIGMA_API_KEY": "f", "ANTHROPIC_API_KEY": "k"}
        result = detector(tmp_path, environ=environ).detect()
        assert result.available_integrations == ("figma",)
        assert result.auth_hint_available
