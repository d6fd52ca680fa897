"""
SDK-backed adapter — runs prompts through the Claude Agent SDK.

The SDK spawns the Claude CLI as a subprocess and yields typed message
objects (AssistantMessage with TextBlocks, a terminal ResultMessage, ...).
They are normalized into tagged mappings so the shared decoder can treat
them like every other backend's messages.

The credential is handed to the subprocess through an explicit `env`
option; the parent process environment is never modified.
"""

from __future__ import annotations

import collections
import dataclasses
import logging
import re
from typing import Any, AsyncIterator, Callable, Optional

from core.exceptions import BackendError, RunCancelledError
from core.runtime.adapters.base import BackendAdapter
from core.runtime.types import RunOptions, RuntimeContext

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 50

QueryFn = Callable[..., AsyncIterator[Any]]


def _load_sdk_query() -> QueryFn:
    try:
        from claude_agent_sdk import ClaudeAgentOptions, query
    except ImportError as exc:
        raise BackendError(
            "claude_sdk_import_failed: claude-agent-sdk is not installed",
            backend=SDKAdapter.name,
        ) from exc

    def run_query(*, prompt: str, options: dict[str, Any]) -> AsyncIterator[Any]:
        return query(prompt=prompt, options=ClaudeAgentOptions(**options))

    return run_query


class SDKAdapter(BackendAdapter):
    """
    Preferred backend when the SDK subprocess may be spawned.

    Args:
        query_fn: Replacement for the SDK's query(); called as
            query_fn(prompt=..., options=dict). Defaults to the real SDK,
            imported on first use.
    """

    name = "claude_sdk"

    def __init__(self, query_fn: Optional[QueryFn] = None):
        self._query_fn = query_fn

    def can_handle(self, context: RuntimeContext) -> bool:
        # The CLI refuses to run unattended as root.
        if context.disable_sdk or context.force_http_api:
            return False
        return not context.running_as_root

    def build_env(self, context: RuntimeContext) -> dict[str, str]:
        """Environment map for the SDK subprocess: context env plus the credential."""
        env = dict(context.environment)
        if context.api_key:
            env["ANTHROPIC_API_KEY"] = context.api_key
        return env

    def build_options(
        self,
        options: RunOptions,
        context: RuntimeContext,
        on_stderr: Callable[[str], None],
    ) -> dict[str, Any]:
        sdk_options: dict[str, Any] = {
            "env": self.build_env(context),
            "stderr": on_stderr,
        }
        model = options.model or context.model
        if model:
            sdk_options["model"] = model
        cwd = options.workspace_path or context.workspace_path
        if cwd:
            sdk_options["cwd"] = cwd
        if options.system_prompt:
            sdk_options["system_prompt"] = options.system_prompt
        return sdk_options

    async def open_stream(
        self,
        prompt: str,
        options: RunOptions,
        context: RuntimeContext,
    ) -> AsyncIterator[Any]:
        query_fn = self._query_fn or _load_sdk_query()
        stderr_tail: collections.deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
        sdk_options = self.build_options(options, context, stderr_tail.append)

        logger.debug(
            "sdk_query_started",
            extra={"backend": self.name, "model": sdk_options.get("model")},
        )
        try:
            async for message in query_fn(prompt=prompt, options=sdk_options):
                yield normalize_sdk_message(message)
        except (BackendError, RunCancelledError):
            raise
        except Exception as exc:
            raise BackendError(
                str(exc) or type(exc).__name__,
                backend=self.name,
                stderr_tail="\n".join(stderr_tail),
            ) from exc


# ---------------------------------------------------------------------------
# Message normalization
# ---------------------------------------------------------------------------

_SUFFIX = re.compile(r"(Message|Block)$")
_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")

# AssistantMessage.error values with an equivalent HTTP status.
_ASSISTANT_ERROR_STATUS = {"authentication_failed": 401, "rate_limit": 429}


def _type_tag(obj: Any) -> str:
    name = _SUFFIX.sub("", type(obj).__name__)
    return _CAMEL.sub("_", name).lower()


def normalize_sdk_message(message: Any) -> Any:
    """
    Turn an SDK message object into a tagged mapping.

    TextBlock(text="hi") -> {"type": "text", "text": "hi"}
    AssistantMessage(content=[...]) -> {"type": "assistant", "content": [...]}
    ResultMessage(is_error=True, ...) -> {"type": "error", "error": ..., "status_code": ...}
    AssistantMessage(error="rate_limit", ...) -> {"type": "error", ...}

    Mappings, strings and None pass through unchanged.
    """
    if message is None or isinstance(message, (str, dict)):
        return message
    if isinstance(message, (list, tuple)):
        return [normalize_sdk_message(item) for item in message]
    if not dataclasses.is_dataclass(message) or isinstance(message, type):
        return message

    data: dict[str, Any] = {"type": _type_tag(message)}
    for f in dataclasses.fields(message):
        value = getattr(message, f.name)
        if isinstance(value, (list, tuple)):
            value = [normalize_sdk_message(item) for item in value]
        data[f.name] = value

    if data["type"] == "result" and data.get("is_error"):
        return {
            "type": "error",
            "error": data.get("result") or data.get("subtype") or "sdk_result_error",
            "status_code": data.get("api_error_status"),
        }
    if data["type"] == "assistant" and data.get("error"):
        reason = str(data["error"])
        text = "".join(
            block.get("text") or ""
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        )
        return {
            "type": "error",
            "error": f"{reason}: {text}" if text else reason,
            "status_code": _ASSISTANT_ERROR_STATUS.get(reason),
        }
    return data
