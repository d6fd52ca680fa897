"""
Value types shared by the Runner and every backend adapter.

RuntimeContext and RunOptions are built once per call and never mutated;
when the Runner needs a variant (e.g. a refreshed credential) it derives a
new instance with dataclasses.replace().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Per-run inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RuntimeContext:
    """Everything an adapter needs to know about where it is running."""

    api_key: str = field(repr=False)
    model: str = ""
    environment: Mapping[str, str] = field(default_factory=dict, repr=False)
    disable_sdk: bool = False
    force_http_api: bool = False
    running_as_root: bool = False
    workspace_path: Optional[str] = None
    credential_key: Optional[str] = None  # TokenCache key, if credentials are cached

    def __post_init__(self) -> None:
        # Freeze the environment so adapters cannot leak edits between runs.
        object.__setattr__(
            self, "environment", MappingProxyType(dict(self.environment))
        )


@dataclass(frozen=True)
class RunOptions:
    """Caller-supplied knobs for a single run."""

    model: Optional[str] = None
    workspace_path: Optional[str] = None
    session_id: Optional[str] = None
    operation_id: Optional[str] = None
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StreamDelta:
    """One incremental chunk of generated text."""

    text: str


@dataclass(frozen=True)
class RunResult:
    """Terminal value of a successful run."""

    full_text: str
    backend: str = ""
    chunk_count: int = 0
    attempts: int = 1
    latency_ms: float = 0.0


# ---------------------------------------------------------------------------
# Callbacks
# ---------------------------------------------------------------------------

@dataclass
class RunCallbacks:
    """
    Optional hooks fired during a run.

    on_delta fires once per non-empty chunk, in arrival order. Deltas from
    a failed attempt are not retracted when the Runner retries; on_retry
    fires before the next attempt so the caller can discard partial output.
    """

    on_start: Optional[Callable[[dict[str, Any]], None]] = None
    on_delta: Optional[Callable[[StreamDelta], None]] = None
    on_complete: Optional[Callable[[RunResult], None]] = None
    on_error: Optional[Callable[[BaseException], None]] = None
    on_retry: Optional[Callable[[int, BaseException], None]] = None

    def emit_delta(self, delta: StreamDelta) -> None:
        if self.on_delta is not None:
            self.on_delta(delta)

    def emit_start(self, meta: dict[str, Any]) -> None:
        if self.on_start is not None:
            self.on_start(meta)

    def emit_complete(self, result: RunResult) -> None:
        if self.on_complete is not None:
            self.on_complete(result)

    def emit_error(self, error: BaseException) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception:
            # The run's own failure is what the caller sees.
            logger.exception("on_error_callback_failed")

    def emit_retry(self, attempt: int, error: BaseException) -> None:
        if self.on_retry is not None:
            self.on_retry(attempt, error)
