"""
Token Cache — Short-lived credentials with deduplicated generation.

Caches one credential per key and hands out copies. A credential is
reused until it gets within BUFFER of its expiry, so callers never receive
a token that is about to lapse mid-request.

Concurrency: the cache is shared by every concurrent run. On a miss the
injected generator is called exactly once per key; any caller that arrives
while that generation is in flight awaits the same task instead of
issuing a second request. Distinct keys never block each other.

Usage:
    from core.runtime.token_cache import TokenCache

    async def mint(key: str) -> dict:
        return {"token": await issue_token(key), "expires_at": expires_ms}

    cache = TokenCache(generator=mint)
    credential = await cache.get_token("installation-42")
    cache.invalidate("installation-42")   # next get_token regenerates
    evicted = cache.refresh_expired()     # periodic maintenance
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional

from core.exceptions import ValidationError

logger = logging.getLogger(__name__)

# Credentials are refreshed this long before they actually expire.
DEFAULT_EXPIRY_BUFFER_MS = 5 * 60 * 1000

TokenGenerator = Callable[[str], Awaitable[Mapping[str, Any]]]


def _now_ms() -> float:
    return time.time() * 1000


# ---------------------------------------------------------------------------
# Credential
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Credential:
    """A short-lived secret scoped to one key. Never mutated; replaced on refresh."""

    token: str = field(repr=False)
    expires_at: float             # epoch milliseconds
    key: str


# ---------------------------------------------------------------------------
# Token Cache
# ---------------------------------------------------------------------------

class TokenCache:
    """
    Per-key credential cache with expiry-aware reuse.

    Construct one instance at startup and pass it to every Runner that
    should share credentials. Tests build their own isolated instances.
    """

    def __init__(
        self,
        generator: TokenGenerator,
        *,
        expiry_buffer_ms: float = DEFAULT_EXPIRY_BUFFER_MS,
        clock: Callable[[], float] = _now_ms,
    ):
        self._generator = generator
        self._buffer = expiry_buffer_ms
        self._clock = clock

        self._entries: dict[str, Credential] = {}
        self._inflight: dict[str, asyncio.Task] = {}

        # Stats
        self._hits: int = 0
        self._misses: int = 0
        self._generations: int = 0
        self._failures: int = 0

    @property
    def size(self) -> int:
        """Number of cached credentials (in-flight generations excluded)."""
        return len(self._entries)

    @property
    def expiry_buffer_ms(self) -> float:
        return self._buffer

    # --- Public API ---

    async def get_token(self, key: str) -> Credential:
        """
        Return a valid credential for `key`, generating one if needed.

        Raises:
            ValidationError: if `key` is empty or blank.
            Whatever the generator raises, verbatim and uncached.
        """
        self._validate_key(key)

        cached = self._entries.get(key)
        if cached is not None and self.is_valid(key, cached.expires_at):
            self._hits += 1
            return cached

        self._misses += 1
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._generate(key))
            task.add_done_callback(_retrieve_exception)
            self._inflight[key] = task
            logger.debug("token_generation_started", extra={"key": key})
        else:
            logger.debug("token_generation_joined", extra={"key": key})

        # Shield: one waiter giving up must not cancel the shared generation.
        return await asyncio.shield(task)

    def invalidate(self, key: str) -> None:
        """Drop the cached credential (and any in-flight handle) for `key`."""
        self._validate_key(key)
        removed = self._entries.pop(key, None)
        pending = self._inflight.pop(key, None)
        logger.info(
            "token_invalidated",
            extra={"key": key, "had_entry": removed is not None, "had_inflight": pending is not None},
        )

    def is_valid(self, key: str, expires_at: float) -> bool:
        """True if a credential expiring at `expires_at` may still be handed out."""
        if not isinstance(key, str) or not key.strip():
            return False
        if not isinstance(expires_at, (int, float)) or expires_at <= 0:
            return False
        return self._clock() + self._buffer < expires_at

    def refresh_expired(self) -> int:
        """
        Evict every credential whose raw expiry (no buffer) has passed.

        Intended for periodic maintenance, not the request path.

        Returns:
            Number of entries evicted.
        """
        now = self._clock()
        expired = [k for k, c in self._entries.items() if c.expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info("tokens_expired_evicted", extra={"count": len(expired)})
        return len(expired)

    def clear(self) -> None:
        """Drop every cached credential and in-flight handle."""
        self._entries.clear()
        self._inflight.clear()

    def get_cache_stats(self) -> dict[str, Any]:
        """Return cache statistics (useful for monitoring)."""
        return {
            "total_cached": len(self._entries),
            "keys": sorted(self._entries),
            "in_flight": len(self._inflight),
            "hits": self._hits,
            "misses": self._misses,
            "generations": self._generations,
            "failures": self._failures,
        }

    # --- Internals ---

    async def _generate(self, key: str) -> Credential:
        task = asyncio.current_task()
        self._generations += 1
        try:
            raw = await self._generator(key)
            credential = _to_credential(key, raw)
        except BaseException as exc:
            if self._inflight.get(key) is task:
                del self._inflight[key]
            if not isinstance(exc, asyncio.CancelledError):
                self._failures += 1
                logger.warning(
                    "token_generation_failed",
                    extra={"key": key, "error": str(exc)[:200]},
                )
            raise

        # An invalidate() during generation detaches this task; its result
        # still reaches the waiters but is not stored.
        if self._inflight.get(key) is task:
            del self._inflight[key]
            self._entries[key] = credential
            logger.info(
                "token_generated",
                extra={"key": key, "expires_at": credential.expires_at},
            )
        return credential

    @staticmethod
    def _validate_key(key: str) -> None:
        if not isinstance(key, str) or not key.strip():
            raise ValidationError("key must be a non-empty string", field="key")


def _to_credential(key: str, raw: Mapping[str, Any]) -> Credential:
    if isinstance(raw, Credential):
        return Credential(token=raw.token, expires_at=raw.expires_at, key=key)
    try:
        token = raw["token"]
        expires_at = raw["expires_at"]
    except (KeyError, TypeError) as exc:
        raise ValidationError(
            "Token generator must return a mapping with 'token' and 'expires_at'",
            field="generator",
        ) from exc
    if not isinstance(token, str) or not token:
        raise ValidationError("Generated token must be a non-empty string", field="token")
    if not isinstance(expires_at, (int, float)) or isinstance(expires_at, bool):
        raise ValidationError("Generated expires_at must be epoch milliseconds", field="expires_at")
    return Credential(token=token, expires_at=float(expires_at), key=key)


def _retrieve_exception(task: asyncio.Task) -> None:
    # Failures are delivered to the awaiting callers; this only keeps
    # asyncio from reporting an orphaned generation as unretrieved.
    if not task.cancelled():
        task.exception()
