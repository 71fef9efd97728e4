"""Credential discovery and validation.

Priority order (first match wins):
1. explicit-env: provider keys inherited through the process environment
   (a hosting agent propagates its own session key to children this way)
2. host-oauth: ~/.claude/.credentials.json OAuth record
3. local-file: .env file in the workspace root
4. none

Secret values are never printed, logged or persisted; only the tier, the
populated provider ids and the expiry are ever reported.
"""

import json
import os
import time
from pathlib import Path
from typing import Mapping, Optional

import httpx
from dotenv import dotenv_values
from pydantic import SecretStr

from .errors import CredentialError, classify_http_status
from .models import CredentialSource, Credentials


# provider id -> environment variable names, first non-empty wins
PROVIDER_ENV_VARS: dict[str, tuple[str, ...]] = {
    "anthropic": ("ANTHROPIC_API_KEY",),
    "openai": ("OPENAI_API_KEY",),
    "google": ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
}

HOST_CREDENTIALS_PATH = Path(".claude") / ".credentials.json"

ANTHROPIC_VERSION = "2023-06-01"
OAUTH_BETA_HEADER = "oauth-2025-04-20"

DEFAULT_BASE_URLS = {
    "anthropic": "https://api.anthropic.com",
    "openai": "https://api.openai.com",
    "google": "https://generativelanguage.googleapis.com",
}


def _collect_secrets(values: Mapping[str, Optional[str]]) -> dict[str, SecretStr]:
    secrets: dict[str, SecretStr] = {}
    for provider, names in PROVIDER_ENV_VARS.items():
        for name in names:
            value = (values.get(name) or "").strip()
            if value:
                secrets[provider] = SecretStr(value)
                break
    return secrets


def auth_headers(provider: str, secret: str, oauth: bool = False) -> dict[str, str]:
    """Request headers that authenticate against a provider."""
    if provider == "anthropic":
        headers = {"anthropic-version": ANTHROPIC_VERSION}
        if oauth:
            headers["Authorization"] = f"Bearer {secret}"
            headers["anthropic-beta"] = OAUTH_BETA_HEADER
        else:
            headers["x-api-key"] = secret
        return headers
    if provider == "openai":
        return {"Authorization": f"Bearer {secret}"}
    if provider == "google":
        return {"x-goog-api-key": secret}
    raise ValueError(f"Unknown provider: {provider}")


def probe_url(provider: str, base_url: str) -> str:
    """Cheapest authenticated endpoint for a provider."""
    base = base_url.rstrip("/")
    if provider == "google":
        return f"{base}/v1beta/models?pageSize=1"
    return f"{base}/v1/models?limit=1"


class CredentialResolver:
    """Discovers and validates usable authentication material."""

    def __init__(
        self,
        workspace_path: Path,
        environ: Optional[Mapping[str, str]] = None,
        home: Optional[Path] = None,
        base_urls: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout_seconds: float = 10.0,
    ):
        """Initialize the resolver.

        Args:
            workspace_path: Workspace root (location of the .env file)
            environ: Environment variables (defaults to a copy of os.environ)
            home: Home directory (location of the host OAuth record)
            base_urls: Backend base URL overrides per provider
            transport: Optional httpx transport (tests use httpx.MockTransport)
            timeout_seconds: Timeout for the validation round-trip
        """
        self.workspace_path = Path(workspace_path)
        self._injected_environ = environ
        self.environ = dict(os.environ if environ is None else environ)
        self.home = Path(home) if home is not None else Path.home()
        self.base_urls = {**DEFAULT_BASE_URLS, **dict(base_urls or {})}
        self.transport = transport
        self.timeout_seconds = timeout_seconds

    # =========================================================================
    # Discovery
    # =========================================================================

    def discover(self) -> Credentials:
        """Return credentials from the highest-priority tier that has any."""
        for tier in (self._from_environment, self._from_host_oauth, self._from_local_file):
            creds = tier()
            if creds is not None:
                return creds
        return Credentials(source=CredentialSource.NONE)

    def refresh_environment(self, environ: Optional[Mapping[str, str]] = None) -> None:
        """Re-capture the environment, e.g. after the user exported a new key."""
        if environ is None:
            environ = os.environ if self._injected_environ is None else self._injected_environ
        self.environ = dict(environ)

    def _from_environment(self) -> Optional[Credentials]:
        secrets = _collect_secrets(self.environ)
        if not secrets:
            return None
        return Credentials(source=CredentialSource.EXPLICIT_ENV, provider_secrets=secrets)

    def _from_host_oauth(self) -> Optional[Credentials]:
        path = self.home / HOST_CREDENTIALS_PATH
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

        oauth = data.get("claudeAiOauth") if isinstance(data, dict) else None
        if not isinstance(oauth, dict) or not oauth.get("accessToken"):
            return None

        expires_at = oauth.get("expiresAt")
        refresh = oauth.get("refreshToken")
        return Credentials(
            source=CredentialSource.HOST_OAUTH,
            provider_secrets={"anthropic": SecretStr(str(oauth["accessToken"]))},
            expiry_timestamp=int(expires_at) if isinstance(expires_at, (int, float)) else None,
            refresh_material=SecretStr(str(refresh)) if refresh else None,
        )

    def _from_local_file(self) -> Optional[Credentials]:
        env_path = self.workspace_path / ".env"
        if not env_path.is_file():
            return None
        try:
            values = dotenv_values(env_path)
        except (OSError, UnicodeDecodeError):
            return None
        secrets = _collect_secrets(values)
        if not secrets:
            return None
        return Credentials(source=CredentialSource.LOCAL_FILE, provider_secrets=secrets)

    # =========================================================================
    # Validation
    # =========================================================================

    async def validate(self, creds: Credentials, provider: Optional[str] = None) -> bool:
        """Check the credentials with one minimal backend round-trip.

        Args:
            creds: Discovered credentials
            provider: Provider to check (defaults to anthropic, then the first populated)

        Returns:
            False when there are no secrets or the backend rejects them

        Raises:
            CredentialError: The outcome is indeterminate (network error,
                unexpected status); the orchestrator decides retry vs. fail
        """
        if not creds.has_secrets():
            return False

        provider = self._pick_provider(creds, provider)
        secret = creds.secret_for(provider)
        if not secret:
            return False

        headers = auth_headers(
            provider, secret, oauth=creds.source == CredentialSource.HOST_OAUTH
        )
        url = probe_url(provider, self.base_urls[provider])

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds, transport=self.transport
            ) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise CredentialError(
                f"Could not reach {provider} to validate credentials: {e.__class__.__name__}",
                indeterminate=True,
            ) from e

        outcome = classify_http_status(response.status_code)
        if outcome == "ok":
            return True
        if outcome == "auth":
            return False
        raise CredentialError(
            f"Unexpected status {response.status_code} from {provider} during validation",
            indeterminate=True,
        )

    @staticmethod
    def _pick_provider(creds: Credentials, provider: Optional[str]) -> str:
        if provider and creds.secret_for(provider):
            return provider
        if creds.secret_for("anthropic"):
            return "anthropic"
        return creds.populated_providers[0]


def is_token_expired(creds: Credentials, buffer_minutes: float = 5.0) -> bool:
    """Check if an OAuth token is expired or expires within the buffer.

    API keys carry no expiry and never count as expired.
    """
    if creds.expiry_timestamp is None:
        return False
    now_ms = time.time() * 1000
    return now_ms + buffer_minutes * 60 * 1000 > creds.expiry_timestamp


def describe(creds: Credentials) -> dict:
    """Secret-free summary for display and event logs."""
    summary = {
        "source": creds.source.value,
        "providers": creds.populated_providers,
    }
    if creds.expiry_timestamp is not None:
        summary["expires_in_minutes"] = round(
            (creds.expiry_timestamp - time.time() * 1000) / 60000
        )
    return summary
