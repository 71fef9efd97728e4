"""Tests for credential discovery and validation."""

import json
import time
import pytest
from pathlib import Path

import httpx
from pydantic import SecretStr

from prism_workflow.credentials import (
    CredentialResolver,
    auth_headers,
    describe,
    is_token_expired,
)
from prism_workflow.errors import CredentialError
from prism_workflow.models import CredentialSource, Credentials


def write_host_oauth(home: Path, token: str = "oauth-token", expires_at=None) -> None:
    path = home / ".claude" / ".credentials.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    oauth = {"accessToken": token, "refreshToken": "refresh-me"}
    if expires_at is not None:
        oauth["expiresAt"] = expires_at
    path.write_text(json.dumps({"claudeAiOauth": oauth}))


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def project(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


class TestDiscovery:
    """Tests for the tier waterfall."""

    def test_environment_wins(self, project: Path, home: Path):
        write_host_oauth(home)
        (project / ".env").write_text("ANTHROPIC_API_KEY=from-file\n")
        resolver = CredentialResolver(project, environ={"ANTHROPIC_API_KEY": "from-env"}, home=home)

        creds = resolver.discover()

        assert creds.source == CredentialSource.EXPLICIT_ENV
        assert creds.secret_for("anthropic") == "from-env"

    def test_host_oauth_before_local_file(self, project: Path, home: Path):
        expires = int(time.time() * 1000) + 3_600_000
        write_host_oauth(home, expires_at=expires)
        (project / ".env").write_text("ANTHROPIC_API_KEY=from-file\n")
        resolver = CredentialResolver(project, environ={}, home=home)

        creds = resolver.discover()

        assert creds.source == CredentialSource.HOST_OAUTH
        assert creds.secret_for("anthropic") == "oauth-token"
        assert creds.expiry_timestamp == expires
        assert creds.refresh_material.get_secret_value() == "refresh-me"

    def test_local_file(self, project: Path, home: Path):
        (project / ".env").write_text("OPENAI_API_KEY=sk-openai\nGEMINI_API_KEY=g\n")
        resolver = CredentialResolver(project, environ={}, home=home)

        creds = resolver.discover()

        assert creds.source == CredentialSource.LOCAL_FILE
        assert creds.populated_providers == ["google", "openai"]

    def test_unreadable_oauth_record_is_skipped(self, project: Path, home: Path):
        path = home / ".claude" / ".credentials.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        (project / ".env").write_text("ANTHROPIC_API_KEY=from-file\n")

        creds = CredentialResolver(project, environ={}, home=home).discover()

        assert creds.source == CredentialSource.LOCAL_FILE

    def test_blank_values_do_not_count(self, project: Path, home: Path):
        resolver = CredentialResolver(project, environ={"ANTHROPIC_API_KEY": "   "}, home=home)
        creds = resolver.discover()
        assert creds.source == CredentialSource.NONE
        assert not creds.has_secrets()

    def test_refresh_environment_picks_up_new_key(self, project: Path, home: Path):
        environ = {}
        resolver = CredentialResolver(project, environ=environ, home=home)
        assert resolver.discover().source == CredentialSource.NONE

        environ["ANTHROPIC_API_KEY"] = "exported-later"
        resolver.refresh_environment()

        assert resolver.discover().secret_for("anthropic") == "exported-later"


class TestValidate:
    """Tests for the validation round-trip (httpx.MockTransport)."""

    def _resolver(self, project: Path, home: Path, handler) -> CredentialResolver:
        return CredentialResolver(
            project, environ={}, home=home, transport=httpx.MockTransport(handler)
        )

    def _creds(self, source=CredentialSource.EXPLICIT_ENV) -> Credentials:
        return Credentials(source=source, provider_secrets={"anthropic": SecretStr("sk-test")})

    @pytest.mark.asyncio
    async def test_accepted(self, project: Path, home: Path):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("x-api-key")
            return httpx.Response(200, json={"data": []})

        resolver = self._resolver(project, home, handler)
        assert await resolver.validate(self._creds())
        assert seen["url"].startswith("https://api.anthropic.com/v1/models")
        assert seen["key"] == "sk-test"

    @pytest.mark.asyncio
    async def test_oauth_uses_bearer(self, project: Path, home: Path):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={})

        resolver = self._resolver(project, home, handler)
        assert await resolver.validate(self._creds(CredentialSource.HOST_OAUTH))
        assert seen["auth"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_rejected(self, project: Path, home: Path):
        resolver = self._resolver(project, home, lambda request: httpx.Response(401))
        assert await resolver.validate(self._creds()) is False

    @pytest.mark.asyncio
    async def test_server_error_is_indeterminate(self, project: Path, home: Path):
        resolver = self._resolver(project, home, lambda request: httpx.Response(503))
        with pytest.raises(CredentialError) as exc_info:
            await resolver.validate(self._creds())
        assert exc_info.value.indeterminate

    @pytest.mark.asyncio
    async def test_network_error_is_indeterminate(self, project: Path, home: Path):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        resolver = self._resolver(project, home, handler)
        with pytest.raises(CredentialError) as exc_info:
            await resolver.validate(self._creds())
        assert exc_info.value.indeterminate
        assert "sk-test" not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_no_secrets_is_invalid_without_network(self, project: Path, home: Path):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        resolver = self._resolver(project, home, handler)
        assert await resolver.validate(Credentials()) is False


class TestHelpers:

    def test_auth_headers(self):
        assert auth_headers("anthropic", "k")["x-api-key"] == "k"
        assert auth_headers("openai", "k") == {"Authorization": "Bearer k"}
        with pytest.raises(ValueError):
            auth_headers("unknown", "k")

    def test_api_keys_never_expire(self):
        assert not is_token_expired(Credentials(provider_secrets={"anthropic": SecretStr("k")}))

    def test_expiry_buffer(self):
        soon = int(time.time() * 1000) + 60_000
        later = int(time.time() * 1000) + 3_600_000
        assert is_token_expired(Credentials(expiry_timestamp=soon))
        assert not is_token_expired(Credentials(expiry_timestamp=later))

    def test_describe_has_no_secrets(self):
        creds = Credentials(
            source=CredentialSource.HOST_OAUTH,
            provider_secrets={"anthropic": SecretStr("very-secret")},
            expiry_timestamp=int(time.time() * 1000) + 600_000,
        )
        summary = describe(creds)
        assert summary["source"] == "host-oauth"
        assert summary["providers"] == ["anthropic"]
        assert "very-secret" not in json.dumps(summary)
