"""
HTTP-backed adapter — streams from the Anthropic Messages API.

Always eligible, so it is the fallback when the SDK may not run (disabled,
forced off, or running as root). Talks to `{base_url}/v1/messages` with
`stream: true` and reads server-sent events line by line.

Only text-bearing events are forwarded to the decoder:
    content_block_start  (text block with initial text) -> {"text": ...}
    content_block_delta  (text_delta)                   -> {"text": ...}
    error                                               -> passed through
Malformed chunks, `[DONE]`, pings and bookkeeping events are skipped.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional

import httpx

from core.exceptions import BackendError
from core.runtime.adapters.base import BackendAdapter
from core.runtime.types import RunOptions, RuntimeContext

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TIMEOUT = 120.0


class HTTPAdapter(BackendAdapter):
    """
    Direct Messages API backend.

    Args:
        base_url: API root, without the /v1 suffix.
        api_version: Value of the anthropic-version header.
        timeout: Per-request timeout in seconds.
        max_tokens: Used when RunOptions.max_tokens is not set.
        client: Shared AsyncClient. When omitted a client is created and
            closed per run.
    """

    name = "anthropic_http"

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = DEFAULT_TIMEOUT,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self.max_tokens = max_tokens
        self._client = client

    def can_handle(self, context: RuntimeContext) -> bool:
        return True

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/v1/messages"

    def build_payload(
        self,
        prompt: str,
        options: RunOptions,
        context: RuntimeContext,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": options.model or context.model,
            "max_tokens": options.max_tokens or self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
            "stream": True,
        }
        if options.system_prompt:
            payload["system"] = options.system_prompt
        return payload

    def build_headers(self, context: RuntimeContext) -> dict[str, str]:
        return {
            "x-api-key": context.api_key,
            "anthropic-version": self.api_version,
            "content-type": "application/json",
            "accept": "text/event-stream",
        }

    async def open_stream(
        self,
        prompt: str,
        options: RunOptions,
        context: RuntimeContext,
    ) -> AsyncIterator[Any]:
        payload = self.build_payload(prompt, options, context)
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=self.timeout)

        try:
            async with client.stream(
                "POST",
                self.endpoint,
                json=payload,
                headers=self.build_headers(context),
                timeout=self.timeout,
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise BackendError(
                        f"anthropic_http_error_{response.status_code}: {body[:500]}",
                        backend=self.name,
                        status_code=response.status_code,
                        details={"body": body[:2000]},
                    )

                async for line in response.aiter_lines():
                    event = parse_sse_line(line)
                    if event is not None:
                        yield event
        except httpx.TimeoutException as exc:
            raise BackendError(
                f"anthropic_http_timeout: {exc}",
                backend=self.name,
            ) from exc
        except httpx.TransportError as exc:
            raise BackendError(
                f"anthropic_http_transport_error: {exc}",
                backend=self.name,
            ) from exc
        finally:
            if owns_client:
                await client.aclose()


# ---------------------------------------------------------------------------
# SSE parsing
# ---------------------------------------------------------------------------

def parse_sse_line(line: str) -> Optional[dict[str, Any]]:
    """
    Map one SSE line to a decoder-ready message, or None to skip it.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data or data == "[DONE]":
        return None

    try:
        event = json.loads(data)
    except ValueError:
        logger.debug("sse_chunk_malformed", extra={"chunk": data[:200]})
        return None
    if not isinstance(event, dict):
        return None

    event_type = event.get("type")
    if event_type == "error":
        return event

    if event_type == "content_block_delta":
        delta = event.get("delta") or {}
        text = delta.get("text") if isinstance(delta, dict) else None
        if isinstance(text, str) and text:
            return {"type": "text_delta", "text": text}
        return None

    if event_type == "content_block_start":
        block = event.get("content_block") or {}
        if isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text")
            if isinstance(text, str) and text:
                return {"type": "text_block_start", "text": text}
        return None

    return None
