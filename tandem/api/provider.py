"""Anthropic Messages API client over httpx.

One shared AsyncClient carries auth headers and timeouts. Non-200
responses, transport failures and in-stream error events all surface as
ProviderError with a retryable/context_overflow classification; the retry
policy itself lives in ``call_with_retries`` so sessions can re-issue a
whole streamed call.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any, TypeVar

import httpx

from tandem.api.abort import AbortSignal, run_abortable
from tandem.api.models import ApiResponse
from tandem.api.stream import StreamEvent, parse_sse_event, stream_error
from tandem.config import Settings
from tandem.errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_API_VERSION = "2023-06-01"
_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504, 529})
_OVERFLOW_MARKERS = ("prompt is too long", "context window", "too many tokens")


def error_from_response(status_code: int, body: bytes, headers: httpx.Headers | dict[str, str]) -> ProviderError:
    """Classify an HTTP error response."""
    try:
        error = json.loads(body).get("error", {})
        error_type = error.get("type", "unknown")
        error_msg = error.get("message", "unknown error")
    except (ValueError, AttributeError):
        error_type = "http_error"
        error_msg = body.decode("utf-8", errors="replace")[:500]

    retry_after: float | None = None
    raw_retry = headers.get("retry-after")
    if raw_retry:
        try:
            retry_after = float(raw_retry)
        except ValueError:
            retry_after = None

    return ProviderError(
        f"Anthropic API error ({status_code}): {error_type} - {error_msg}",
        status_code=status_code,
        error_type=error_type,
        retryable=status_code in _RETRYABLE_STATUS,
        context_overflow=status_code in (400, 413) and any(m in error_msg.lower() for m in _OVERFLOW_MARKERS),
        retry_after=retry_after,
    )


async def call_with_retries(
    call: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    backoff_base: float = 1.0,
    backoff_max: float = 30.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    abort: AbortSignal | None = None,
) -> T:
    """Run ``call``, retrying retryable ProviderErrors with exponential backoff.

    retry-after from the server wins over the computed delay; both are
    capped at ``backoff_max``. Non-retryable errors propagate immediately.
    The backoff wait races ``abort``, raising Aborted when it fires.
    """
    attempt = 0
    while True:
        try:
            return await call()
        except ProviderError as e:
            if not e.retryable or attempt >= max_retries:
                raise
            delay = e.retry_after if e.retry_after is not None else backoff_base * (2**attempt)
            delay = min(delay, backoff_max)
            attempt += 1
            logger.warning(
                "Provider error (attempt %d/%d), retrying in %.1fs: %s",
                attempt,
                max_retries,
                delay,
                e,
            )
            await run_abortable(sleep(delay), abort)


class ProviderClient:
    """Thin async client for POST /v1/messages and GET /v1/models."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        # OAT tokens (sk-ant-oat*) require Bearer auth plus beta headers.
        # Regular API keys use x-api-key.
        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""
        bearer = auth_token or (api_key if "sk-ant-oat" in api_key else "")
        if bearer:
            headers["authorization"] = f"Bearer {bearer}"
            if "sk-ant-oat" in bearer:
                headers["anthropic-beta"] = "oauth-2025-04-20"
                headers["anthropic-dangerous-direct-browser-access"] = "true"
        elif api_key:
            headers["x-api-key"] = api_key
        else:
            logger.warning("Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- API calls will fail")

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=httpx.Timeout(
                connect=settings.api_timeout_connect,
                read=settings.api_timeout_read,
                write=10.0,
                pool=10.0,
            ),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        logger.info("Provider client initialized (auth: %s)", "Bearer token" if bearer else "API key")

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> ProviderClient:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    def _client(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    def build_payload(
        self,
        *,
        model: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
        thinking_budget: int = 0,
        stream: bool = False,
    ) -> dict[str, Any]:
        """Build a Messages API request payload.

        Shared by create() and stream() so they cannot diverge.
        """
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens or self._settings.max_tokens,
            "system": [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": messages,
        }
        if tools:
            payload["tools"] = tools
        if thinking_budget:
            payload["thinking"] = {"type": "enabled", "budget_tokens": thinking_budget}
        if stream:
            payload["stream"] = True
        return payload

    async def create(self, **kwargs: Any) -> ApiResponse:
        """Single non-streaming call. Raises ProviderError."""
        payload = self.build_payload(**kwargs)
        try:
            response = await self._client().post("/v1/messages", json=payload)
        except httpx.TimeoutException as e:
            raise ProviderError(f"API request timed out: {e}", retryable=True) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"HTTP error: {e}", retryable=True) from e

        if response.status_code != 200:
            raise error_from_response(response.status_code, response.content, response.headers)
        data = response.json()
        return ApiResponse(
            content=data.get("content", []),
            stop_reason=data.get("stop_reason") or "",
            usage=data.get("usage"),
        )

    async def stream(self, **kwargs: Any) -> AsyncGenerator[StreamEvent, None]:
        """Streaming call yielding normalized StreamEvents.

        Only ``data:`` lines are processed; ``event:`` lines are redundant.
        HTTP errors raise before the first event; in-stream error events
        raise ProviderError when reached.
        """
        payload = self.build_payload(stream=True, **kwargs)
        try:
            async with self._client().stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise error_from_response(response.status_code, body, response.headers)

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed SSE line: %.200s", line)
                        continue
                    event = parse_sse_event(data)
                    if event is None:
                        continue
                    if event.type == "error":
                        raise stream_error(event)
                    yield event
        except httpx.TimeoutException as e:
            raise ProviderError(f"Stream timed out: {e}", retryable=True) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Stream transport error: {e}", retryable=True) from e

    async def list_models(self) -> list[str]:
        """Model ids the account can use, newest first as the API returns them."""
        try:
            response = await self._client().get("/v1/models", params={"limit": 100})
        except httpx.HTTPError as e:
            raise ProviderError(f"Model listing failed: {e}", retryable=True) from e
        if response.status_code != 200:
            raise error_from_response(response.status_code, response.content, response.headers)
        return [m["id"] for m in response.json().get("data", []) if m.get("id")]
