"""
Cooperative cancellation for a single run.

One CancellationToken is threaded through every call a run makes. Each
suspension point (waiting for the next stream message, a backoff sleep, a
credential fetch) goes through the token, so a triggered token stops the
run at the next await instead of after the backend finishes.

Usage:
    token = CancellationToken()
    task = asyncio.create_task(runner.execute(..., cancellation=token))
    ...
    token.cancel("user pressed stop")
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from core.exceptions import RunCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """
    A one-shot, asyncio-aware cancellation flag.

    Once cancelled it stays cancelled. Safe to share between the task
    running the prompt and whoever wants to stop it.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        """Trigger the token. Later calls are no-ops."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.debug("cancellation_requested", extra={"reason": reason})

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise self._error()

    def _error(self) -> RunCancelledError:
        message = f"Run cancelled: {self._reason}" if self._reason else "Run cancelled"
        return RunCancelledError(message, reason=self._reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token fires first.

        If the token fires, the pending awaitable is cancelled (and given
        the chance to unwind) before RunCancelledError is raised.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait(
                {work, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        if work.done():
            waiter.cancel()
            return work.result()

        work.cancel()
        await asyncio.wait({work})
        raise self._error()

    async def sleep(self, delay: float) -> None:
        """Sleep for `delay` seconds, waking early if the token fires."""
        self.raise_if_cancelled()
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()
