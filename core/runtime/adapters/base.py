"""
BackendAdapter — the contract every execution backend implements.

An adapter knows two things: whether it may run in a given runtime
context (can_handle) and how to turn a prompt into a stream of backend
messages (open_stream). The shared streaming loop in run() decodes each
message, forwards text to the caller as it arrives, and observes the
cancellation token between messages.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

from core.exceptions import BackendError
from core.runtime.cancellation import CancellationToken
from core.runtime.messages import ErrorMessage, decode_message
from core.runtime.types import (
    RunCallbacks,
    RunOptions,
    RunResult,
    RuntimeContext,
    StreamDelta,
)

logger = logging.getLogger(__name__)

_END = object()


async def _next_message(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class BackendAdapter(ABC):
    """
    Base class for execution backends.

    Subclasses implement can_handle() and open_stream(); run() is shared
    so every backend streams, cancels and reports errors the same way.
    """

    name: str = "base"

    @abstractmethod
    def can_handle(self, context: RuntimeContext) -> bool:
        """Pure eligibility predicate; must not do I/O."""

    @abstractmethod
    def open_stream(
        self,
        prompt: str,
        options: RunOptions,
        context: RuntimeContext,
    ) -> AsyncIterator[Any]:
        """Open a backend session and return its raw message stream."""

    async def run(
        self,
        prompt: str,
        options: RunOptions,
        context: RuntimeContext,
        callbacks: RunCallbacks,
        cancellation: CancellationToken,
    ) -> RunResult:
        """
        Execute `prompt` and stream text to `callbacks.on_delta`.

        Returns the accumulated text on normal completion, even if empty.

        Raises:
            RunCancelledError: the token fired before or while reading.
            BackendError: the backend sent an error message.
        """
        cancellation.raise_if_cancelled()
        start = time.monotonic()
        collected: list[str] = []

        iterator = self.open_stream(prompt, options, context).__aiter__()
        try:
            while True:
                cancellation.raise_if_cancelled()
                raw = await cancellation.guard(_next_message(iterator))
                if raw is _END:
                    break
                cancellation.raise_if_cancelled()

                message = decode_message(raw)
                if isinstance(message, ErrorMessage):
                    raise self._backend_error(message.error_text, message.status_code)

                text = message.text
                if text:
                    collected.append(text)
                    callbacks.emit_delta(StreamDelta(text=text))
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        full_text = "".join(collected)
        elapsed = (time.monotonic() - start) * 1000
        logger.info(
            "backend_stream_completed",
            extra={
                "backend": self.name,
                "chunks": len(collected),
                "text_length": len(full_text),
                "duration_ms": round(elapsed, 1),
            },
        )
        return RunResult(
            full_text=full_text,
            backend=self.name,
            chunk_count=len(collected),
            latency_ms=elapsed,
        )

    def _backend_error(
        self, message: str, status_code: Optional[int] = None
    ) -> BackendError:
        return BackendError(message, backend=self.name, status_code=status_code)

    def describe(self) -> dict[str, Any]:
        return {"name": self.name, "class": type(self).__name__}
