"""
Runner — selects a backend and executes a prompt with retries.

Selection:
    Adapters are consulted in priority order; the first whose
    can_handle(context) is true runs the prompt. If none accepts,
    NoEligibleBackendError is raised before any backend call.

Retry loop (per execute() call):
    1. Check cancellation; fetch the credential if the context names one.
    2. adapter.run(...) streams deltas to callbacks.on_delta.
    3. On failure, classify. Then:
       - cancellation triggered / Cancelled   -> surface immediately
       - AuthError with a cached credential   -> invalidate, one immediate retry
       - retryable and attempts remain        -> cancellable backoff, retry
       - otherwise                            -> surface
    Surfaced failures are always a ClassifiedError, chained from the
    original exception.

A retried attempt starts from scratch. Deltas already delivered are not
retracted; on_retry fires first so callers can drop partial output.

Usage:
    runner = Runner(token_cache=cache)
    result = await runner.execute(
        "Summarize this repo",
        RunOptions(session_id="s-1"),
        context,
        RunCallbacks(on_delta=lambda d: print(d.text, end="")),
    )
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
import time
import uuid
from typing import Any, Optional, Sequence

from core.exceptions import ClassifiedError, ErrorCode, NoEligibleBackendError
from core.observability.logging_config import bind_run_id
from core.runtime.adapters import BackendAdapter, default_adapters
from core.runtime.cancellation import CancellationToken
from core.runtime.classifier import ErrorClassifier, default_classifier
from core.runtime.retry import RetryPolicy
from core.runtime.token_cache import TokenCache
from core.runtime.types import RunCallbacks, RunOptions, RunResult, RuntimeContext

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class _InFlight:
    session_id: str
    operation_id: Optional[str]
    token: CancellationToken


class Runner:
    """
    Executes prompts against the first eligible backend.

    One Runner can serve many concurrent runs; the TokenCache passed in
    is the only state shared between them.
    """

    def __init__(
        self,
        adapters: Optional[Sequence[BackendAdapter]] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        token_cache: Optional[TokenCache] = None,
        classifier: Optional[ErrorClassifier] = None,
    ):
        self._adapters: tuple[BackendAdapter, ...] = tuple(
            adapters if adapters is not None else default_adapters()
        )
        self._policy = retry_policy or RetryPolicy()
        self._token_cache = token_cache
        self._classifier = classifier or default_classifier

        self._inflight: dict[int, _InFlight] = {}
        self._ids = itertools.count(1)

        # Usage tracking
        self._total_runs: int = 0
        self._succeeded: int = 0
        self._failed: int = 0
        self._total_attempts: int = 0
        self._retries: int = 0
        self._by_backend: dict[str, int] = {}
        self._by_error_code: dict[str, int] = {}

    @property
    def adapters(self) -> tuple[BackendAdapter, ...]:
        return self._adapters

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    # --- Selection ---

    def plan(self, context: RuntimeContext) -> list[BackendAdapter]:
        """Every eligible adapter, in priority order."""
        return [a for a in self._adapters if a.can_handle(context)]

    def select(self, context: RuntimeContext) -> BackendAdapter:
        for adapter in self._adapters:
            if adapter.can_handle(context):
                return adapter
        raise NoEligibleBackendError(adapters=[a.name for a in self._adapters])

    # --- Execution ---

    async def execute(
        self,
        prompt: str,
        options: Optional[RunOptions],
        context: RuntimeContext,
        callbacks: Optional[RunCallbacks] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> RunResult:
        """
        Run `prompt` to completion.

        Returns:
            RunResult whose full_text is the successful attempt's output.

        Raises:
            NoEligibleBackendError: no adapter accepts `context`.
            ClassifiedError: the run failed and will not be retried.
        """
        options = options or RunOptions()
        callbacks = callbacks or RunCallbacks()
        cancellation = cancellation or CancellationToken()

        run_id = options.operation_id or options.session_id or uuid.uuid4().hex[:12]
        with bind_run_id(run_id):
            adapter = self.select(context)
            handle = self._register(options, cancellation)
            try:
                return await self._execute(
                    adapter, prompt, options, context, callbacks, cancellation, run_id
                )
            finally:
                if handle is not None:
                    self._inflight.pop(handle, None)

    async def _execute(
        self,
        adapter: BackendAdapter,
        prompt: str,
        options: RunOptions,
        context: RuntimeContext,
        callbacks: RunCallbacks,
        cancellation: CancellationToken,
        run_id: str,
    ) -> RunResult:
        self._total_runs += 1
        start = time.monotonic()
        callbacks.emit_start({
            "run_id": run_id,
            "backend": adapter.name,
            "model": options.model or context.model,
        })
        logger.info("run_started", extra={"backend": adapter.name})

        attempt = 0
        delay: Optional[float] = None
        auth_refreshed = False

        while True:
            try:
                if delay:
                    await cancellation.sleep(delay)
                cancellation.raise_if_cancelled()
                attempt += 1
                self._total_attempts += 1
                attempt_context = await self._resolve_credential(context, cancellation)
                result = await adapter.run(
                    prompt, options, attempt_context, callbacks, cancellation
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                classified = self._classifier.classify(exc, cancellation)
                delay = self._retry_delay(
                    classified, attempt, auth_refreshed, context, cancellation
                )
                if delay is None:
                    self._record_failure(classified)
                    logger.error(
                        "run_failed",
                        extra={
                            "backend": adapter.name,
                            "attempt": attempt,
                            "error_code": classified.code.value,
                            "retryable": classified.retryable,
                            "error": classified.original_message[:200],
                        },
                    )
                    callbacks.emit_error(classified)
                    if classified is exc:
                        raise
                    raise classified from exc

                if classified.code is ErrorCode.AUTH_ERROR:
                    auth_refreshed = True
                    self._token_cache.invalidate(context.credential_key)
                self._retries += 1
                logger.warning(
                    "run_retrying",
                    extra={
                        "backend": adapter.name,
                        "attempt": attempt,
                        "error_code": classified.code.value,
                        "delay_s": round(delay, 3),
                    },
                )
                callbacks.emit_retry(attempt, classified)
                continue

            elapsed = (time.monotonic() - start) * 1000
            result = dataclasses.replace(result, attempts=attempt, latency_ms=elapsed)
            self._succeeded += 1
            self._by_backend[adapter.name] = self._by_backend.get(adapter.name, 0) + 1
            logger.info(
                "run_completed",
                extra={
                    "backend": adapter.name,
                    "attempt": attempt,
                    "chunks": result.chunk_count,
                    "duration_ms": round(elapsed, 1),
                },
            )
            callbacks.emit_complete(result)
            return result

    def _retry_delay(
        self,
        classified: ClassifiedError,
        attempt: int,
        auth_refreshed: bool,
        context: RuntimeContext,
        cancellation: CancellationToken,
    ) -> Optional[float]:
        """Seconds to wait before the next attempt, or None to surface."""
        if cancellation.cancelled or classified.code is ErrorCode.CANCELLED:
            return None
        if not self._policy.has_attempts_left(attempt):
            return None
        if classified.code is ErrorCode.AUTH_ERROR:
            can_refresh = (
                not auth_refreshed
                and context.credential_key is not None
                and self._token_cache is not None
            )
            return 0.0 if can_refresh else None
        if classified.retryable:
            return self._policy.delay_for(attempt - 1)
        return None

    async def _resolve_credential(
        self,
        context: RuntimeContext,
        cancellation: CancellationToken,
    ) -> RuntimeContext:
        if context.credential_key is None or self._token_cache is None:
            return context
        credential = await cancellation.guard(
            self._token_cache.get_token(context.credential_key)
        )
        return dataclasses.replace(context, api_key=credential.token)

    # --- In-flight registry ---

    def _register(
        self, options: RunOptions, cancellation: CancellationToken
    ) -> Optional[int]:
        if not options.session_id:
            return None
        handle = next(self._ids)
        self._inflight[handle] = _InFlight(
            session_id=options.session_id,
            operation_id=options.operation_id,
            token=cancellation,
        )
        return handle

    def cancel(self, session_id: str, reason: Optional[str] = None) -> int:
        """Cancel every in-flight run of a session. Returns how many were signalled."""
        count = 0
        for entry in list(self._inflight.values()):
            if entry.session_id == session_id:
                entry.token.cancel(reason or f"session {session_id} cancelled")
                count += 1
        if count:
            logger.info(
                "session_cancelled",
                extra={"session_id": session_id, "runs": count},
            )
        return count

    def cancel_operation(
        self,
        session_id: str,
        operation_id: str,
        reason: Optional[str] = None,
    ) -> bool:
        """Cancel one operation of a session. False if it is not running."""
        for entry in list(self._inflight.values()):
            if entry.session_id == session_id and entry.operation_id == operation_id:
                entry.token.cancel(reason or f"operation {operation_id} cancelled")
                logger.info(
                    "operation_cancelled",
                    extra={"session_id": session_id, "operation_id": operation_id},
                )
                return True
        return False

    # --- Diagnostics & usage ---

    def diagnostics(self, context: Optional[RuntimeContext] = None) -> dict[str, Any]:
        """Snapshot of adapters, policy and shared state, for health checks."""
        adapters = []
        for adapter in self._adapters:
            info = adapter.describe()
            if context is not None:
                info["eligible"] = adapter.can_handle(context)
            adapters.append(info)

        selected = None
        if context is not None:
            eligible = self.plan(context)
            selected = eligible[0].name if eligible else None

        return {
            "adapters": adapters,
            "selected": selected,
            "retry_policy": dataclasses.asdict(self._policy),
            "in_flight": len(self._inflight),
            "token_cache": (
                self._token_cache.get_cache_stats()
                if self._token_cache is not None
                else None
            ),
        }

    def _record_failure(self, classified: ClassifiedError) -> None:
        self._failed += 1
        code = classified.code.value
        self._by_error_code[code] = self._by_error_code.get(code, 0) + 1

    def get_usage_stats(self) -> dict[str, Any]:
        """Return cumulative run statistics."""
        return {
            "total_runs": self._total_runs,
            "succeeded": self._succeeded,
            "failed": self._failed,
            "total_attempts": self._total_attempts,
            "retries": self._retries,
            "by_backend": dict(self._by_backend),
            "by_error_code": dict(self._by_error_code),
        }

    def reset_usage(self) -> None:
        self._total_runs = 0
        self._succeeded = 0
        self._failed = 0
        self._total_attempts = 0
        self._retries = 0
        self._by_backend.clear()
        self._by_error_code.clear()
