"""Language-model client used by the pipeline steps.

Requests race against the cancellation token: when the token fires the
in-flight request is abandoned and WorkflowCancelled (or WorkflowTimeout)
propagates. An auth rejection surfaces as AuthExpired so the orchestrator
can pause the session instead of failing it.
"""

import asyncio
import random
from typing import Optional

import httpx
from rich.console import Console

from .credentials import auth_headers
from .errors import AuthExpired, BackendError, classify_http_status
from .models import CredentialSource, Credentials, LLMConfig
from .timeout import CancellationToken


console = Console()

RETRYABLE_STATUS = {429, 500, 502, 503, 504, 529}


class AnthropicClient:
    """Minimal Messages API client over httpx."""

    def __init__(
        self,
        credentials: Credentials,
        config: Optional[LLMConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = 2,
        base_delay_seconds: float = 2.0,
    ):
        """Initialize the client.

        Args:
            credentials: Resolved credentials (must carry an anthropic secret)
            config: Backend settings
            transport: Optional httpx transport (tests use httpx.MockTransport)
            max_retries: Retries for rate-limit and server errors
            base_delay_seconds: First retry delay, doubled per attempt
        """
        self.config = config or LLMConfig()
        secret = credentials.secret_for("anthropic")
        if not secret:
            raise AuthExpired("anthropic", "No anthropic credentials available")
        self._headers = auth_headers(
            "anthropic", secret, oauth=credentials.source == CredentialSource.HOST_OAUTH
        )
        self._headers["content-type"] = "application/json"
        self.transport = transport
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds

    async def complete(
        self,
        prompt: str,
        token: CancellationToken,
        system: Optional[str] = None,
    ) -> str:
        """Send one user prompt and return the text of the reply.

        Raises:
            AuthExpired: The backend rejected the credentials (401/403)
            BackendError: Any other error after retries
            WorkflowCancelled: The token fired while waiting
        """
        payload = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            payload["system"] = system

        attempt = 0
        while True:
            token.raise_if_cancelled()
            try:
                response = await self._race(self._post(payload), token)
            except httpx.HTTPError as e:
                if attempt >= self.max_retries:
                    raise BackendError(f"Request to {self.config.base_url} failed: {e.__class__.__name__}") from e
                response = None

            if response is not None:
                outcome = classify_http_status(response.status_code)
                if outcome == "ok":
                    return _extract_text(response.json())
                if outcome == "auth":
                    raise AuthExpired("anthropic")
                if response.status_code not in RETRYABLE_STATUS or attempt >= self.max_retries:
                    raise BackendError(
                        f"Backend returned {response.status_code}", status_code=response.status_code
                    )

            delay = self.base_delay_seconds * (2 ** attempt)
            delay += random.uniform(0, delay * 0.1)
            attempt += 1
            console.print(f"[dim]Backend busy, retry {attempt}/{self.max_retries} in {delay:.1f}s[/dim]")
            if await token.sleep(delay):
                token.raise_if_cancelled()

    async def _post(self, payload: dict) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.request_timeout_seconds,
            transport=self.transport,
        ) as client:
            return await client.post("/v1/messages", json=payload, headers=self._headers)

    @staticmethod
    async def _race(coro, token: CancellationToken) -> httpx.Response:
        request = asyncio.ensure_future(coro)
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {request, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancelled.cancel()

        if request not in done:
            request.cancel()
            try:
                await request
            except (asyncio.CancelledError, httpx.HTTPError):
                pass
            token.raise_if_cancelled()
        return request.result()


def _extract_text(body: dict) -> str:
    blocks = body.get("content") or []
    parts = [b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text"]
    return "".join(parts)


def create_llm_client(credentials: Credentials, config: LLMConfig) -> AnthropicClient:
    """Default factory used by the orchestrator; rebuilt after credentials change."""
    if config.provider != "anthropic":
        raise BackendError(f"Unsupported LLM provider: {config.provider}")
    return AnthropicClient(credentials, config)
