"""
Tests for Runner — backend selection, retries, credentials, cancellation.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from core.exceptions import (
    BackendError,
    ClassifiedError,
    ErrorCode,
    NoEligibleBackendError,
)
from core.runtime.adapters.base import BackendAdapter
from core.runtime.cancellation import CancellationToken
from core.runtime.retry import RetryPolicy
from core.runtime.runner import Runner
from core.runtime.token_cache import TokenCache
from core.runtime.types import RunCallbacks, RunOptions, RuntimeContext

FAR_FUTURE = 32_503_680_000_000  # year 3000, epoch ms


# ===========================================================================
# Fakes
# ===========================================================================

class ScriptedAdapter(BackendAdapter):
    """
    Each run consumes the next script entry: an exception to raise after
    streaming nothing, or a list of messages to stream.
    """

    def __init__(self, name: str, scripts: list[Any], *, eligible: bool = True):
        self.name = name
        self.scripts = list(scripts)
        self.eligible = eligible
        self.api_keys: list[str] = []

    def can_handle(self, context: RuntimeContext) -> bool:
        return self.eligible

    async def open_stream(self, prompt, options, context) -> AsyncIterator[Any]:
        self.api_keys.append(context.api_key)
        step = self.scripts.pop(0)
        if isinstance(step, BaseException):
            raise step
        for message in step:
            yield message

    @property
    def runs(self) -> int:
        return len(self.api_keys)


def _context(**overrides) -> RuntimeContext:
    values = {"api_key": "sk-static", "model": "claude-sonnet-4"}
    values.update(overrides)
    return RuntimeContext(**values)


def _text(*chunks: str) -> list[dict]:
    return [{"content": [{"type": "text", "text": c}]} for c in chunks]


@pytest.fixture
def no_sleep():
    """Record backoff delays instead of waiting."""
    with patch.object(CancellationToken, "sleep", new_callable=AsyncMock) as sleep:
        yield sleep


def _token_cache() -> tuple[TokenCache, list[str]]:
    issued: list[str] = []

    async def generate(key: str) -> dict:
        issued.append(key)
        return {"token": f"cred-{len(issued)}", "expires_at": FAR_FUTURE}

    return TokenCache(generate), issued


# ===========================================================================
# Selection
# ===========================================================================

class TestSelection:

    def test_first_eligible_wins(self):
        sdk = ScriptedAdapter("sdk", [], eligible=False)
        http = ScriptedAdapter("http", [])
        other = ScriptedAdapter("other", [])
        runner = Runner([sdk, http, other])

        assert runner.select(_context()) is http
        assert runner.plan(_context()) == [http, other]

    def test_no_eligible_backend(self):
        runner = Runner([ScriptedAdapter("sdk", [], eligible=False)])
        with pytest.raises(NoEligibleBackendError) as exc_info:
            runner.select(_context())
        assert exc_info.value.adapters == ["sdk"]

    @pytest.mark.asyncio
    async def test_execute_without_eligible_backend(self):
        adapter = ScriptedAdapter("sdk", [_text("x")], eligible=False)
        with pytest.raises(NoEligibleBackendError):
            await Runner([adapter]).execute("hi", RunOptions(), _context())
        assert adapter.runs == 0

    def test_default_adapters_follow_context_flags(self):
        runner = Runner()
        assert [a.name for a in runner.adapters] == ["claude_sdk", "anthropic_http"]
        assert runner.select(_context()).name == "claude_sdk"
        assert runner.select(_context(running_as_root=True)).name == "anthropic_http"
        assert runner.select(_context(force_http_api=True)).name == "anthropic_http"


# ===========================================================================
# Execution & retries
# ===========================================================================

class TestExecute:

    @pytest.mark.asyncio
    async def test_success_streams_and_returns(self):
        adapter = ScriptedAdapter("http", [_text("He", "llo")])
        deltas: list[str] = []
        completed = MagicMock()

        result = await Runner([adapter]).execute(
            "hi",
            RunOptions(),
            _context(),
            RunCallbacks(on_delta=lambda d: deltas.append(d.text), on_complete=completed),
        )

        assert deltas == ["He", "llo"]
        assert result.full_text == "Hello"
        assert result.attempts == 1
        assert result.backend == "http"
        completed.assert_called_once_with(result)

    @pytest.mark.asyncio
    async def test_rate_limited_then_success_retries_once(self, no_sleep):
        adapter = ScriptedAdapter("http", [
            BackendError("anthropic_http_error_429: rate_limit_error", status_code=429),
            _text("ok"),
        ])
        retries = MagicMock()
        runner = Runner([adapter], retry_policy=RetryPolicy(max_attempts=3, base_delay=0.5))

        result = await runner.execute(
            "hi", RunOptions(), _context(), RunCallbacks(on_retry=retries)
        )

        assert result.full_text == "ok"
        assert result.attempts == 2
        assert adapter.runs == 2
        no_sleep.assert_awaited_once_with(0.5)
        retries.assert_called_once()
        attempt, error = retries.call_args.args
        assert attempt == 1
        assert error.code is ErrorCode.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_backoff_doubles_and_caps(self, no_sleep):
        adapter = ScriptedAdapter("http", [
            TimeoutError("timed out"),
            TimeoutError("timed out"),
            TimeoutError("timed out"),
            _text("ok"),
        ])
        policy = RetryPolicy(max_attempts=4, base_delay=1.0, max_delay=3.0)

        await Runner([adapter], retry_policy=policy).execute("hi", RunOptions(), _context())

        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_exhausted_budget_surfaces_last_error(self, no_sleep):
        adapter = ScriptedAdapter("http", [
            BackendError(f"429 rate limited #{i}", status_code=429) for i in range(5)
        ])
        errors = MagicMock()
        runner = Runner([adapter], retry_policy=RetryPolicy(max_attempts=3))

        with pytest.raises(ClassifiedError) as exc_info:
            await runner.execute("hi", RunOptions(), _context(), RunCallbacks(on_error=errors))

        err = exc_info.value
        assert err.code is ErrorCode.RATE_LIMITED
        assert err.original_message == "429 rate limited #2"
        assert isinstance(err.__cause__, BackendError)
        assert adapter.runs == 3
        assert no_sleep.await_count == 2
        errors.assert_called_once_with(err)

    @pytest.mark.asyncio
    async def test_non_retryable_surfaces_immediately(self, no_sleep):
        adapter = ScriptedAdapter("http", [RuntimeError("something odd"), _text("never")])

        with pytest.raises(ClassifiedError) as exc_info:
            await Runner([adapter]).execute("hi", RunOptions(), _context())

        assert exc_info.value.code is ErrorCode.UNKNOWN
        assert exc_info.value.original_message == "something odd"
        assert adapter.runs == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backend_error_message_surfaces(self):
        adapter = ScriptedAdapter("http", [[{"type": "error", "error": {"message": "boom"}}]])

        with pytest.raises(ClassifiedError) as exc_info:
            await Runner([adapter]).execute("hi", RunOptions(), _context())
        assert exc_info.value.original_message == "boom"

    @pytest.mark.asyncio
    async def test_retry_replays_deltas(self, no_sleep):
        # Partial output from a failed attempt is not retracted.
        class PartialThenFail(ScriptedAdapter):
            async def open_stream(self, prompt, options, context):
                self.api_keys.append(context.api_key)
                if self.runs == 1:
                    yield {"text": "par"}
                    raise BackendError("request timed out")
                yield {"text": "full"}

        deltas: list[str] = []
        retried: list[int] = []
        result = await Runner([PartialThenFail("http", [])]).execute(
            "hi",
            RunOptions(),
            _context(),
            RunCallbacks(
                on_delta=lambda d: deltas.append(d.text),
                on_retry=lambda attempt, err: retried.append(len(deltas)),
            ),
        )

        assert deltas == ["par", "full"]
        assert retried == [1]
        assert result.full_text == "full"


# ===========================================================================
# Credentials & AuthError
# ===========================================================================

class TestCredentials:

    @pytest.mark.asyncio
    async def test_cached_credential_replaces_api_key(self):
        cache, issued = _token_cache()
        adapter = ScriptedAdapter("http", [_text("a"), _text("b")])
        runner = Runner([adapter], token_cache=cache)
        context = _context(credential_key="inst-1")

        await runner.execute("hi", RunOptions(), context)
        await runner.execute("hi", RunOptions(), context)

        assert adapter.api_keys == ["cred-1", "cred-1"]
        assert issued == ["inst-1"]

    @pytest.mark.asyncio
    async def test_auth_error_invalidates_before_single_retry(self, no_sleep):
        cache, issued = _token_cache()
        adapter = ScriptedAdapter("http", [
            BackendError("anthropic_http_error_401: invalid x-api-key", status_code=401),
            _text("ok"),
        ])
        runner = Runner([adapter], token_cache=cache)

        with patch.object(cache, "invalidate", wraps=cache.invalidate) as invalidate:
            result = await runner.execute(
                "hi", RunOptions(), _context(credential_key="inst-1")
            )

        invalidate.assert_called_once_with("inst-1")
        assert result.full_text == "ok"
        assert adapter.api_keys == ["cred-1", "cred-2"]
        assert issued == ["inst-1", "inst-1"]
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_auth_error_retried_only_once(self, no_sleep):
        cache, _ = _token_cache()
        adapter = ScriptedAdapter("http", [
            BackendError("Invalid API key", status_code=401),
            BackendError("Invalid API key", status_code=401),
            _text("never"),
        ])
        runner = Runner([adapter], token_cache=cache, retry_policy=RetryPolicy(max_attempts=5))

        with pytest.raises(ClassifiedError) as exc_info:
            await runner.execute("hi", RunOptions(), _context(credential_key="inst-1"))

        assert exc_info.value.code is ErrorCode.AUTH_ERROR
        assert exc_info.value.retryable is False
        assert adapter.runs == 2

    @pytest.mark.asyncio
    async def test_auth_error_without_cache_surfaces(self):
        adapter = ScriptedAdapter("http", [BackendError("Invalid API key"), _text("never")])

        with pytest.raises(ClassifiedError) as exc_info:
            await Runner([adapter]).execute("hi", RunOptions(), _context())

        assert exc_info.value.code is ErrorCode.AUTH_ERROR
        assert adapter.runs == 1

    @pytest.mark.asyncio
    async def test_credential_failure_is_classified(self):
        async def broken(key: str) -> dict:
            raise RuntimeError("token service unauthorized")

        adapter = ScriptedAdapter("http", [_text("never")])
        runner = Runner([adapter], token_cache=TokenCache(broken))

        with pytest.raises(ClassifiedError) as exc_info:
            await runner.execute("hi", RunOptions(), _context(credential_key="k"))

        assert exc_info.value.code is ErrorCode.AUTH_ERROR
        assert adapter.runs == 0


# ===========================================================================
# Cancellation
# ===========================================================================

class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        adapter = ScriptedAdapter("http", [_text("x")])
        deltas: list[str] = []
        token = CancellationToken()
        token.cancel()

        with pytest.raises(ClassifiedError) as exc_info:
            await Runner([adapter]).execute(
                "hi", RunOptions(), _context(),
                RunCallbacks(on_delta=lambda d: deltas.append(d.text)), token,
            )

        assert exc_info.value.code is ErrorCode.CANCELLED
        assert deltas == []
        assert adapter.runs == 0

    @pytest.mark.asyncio
    async def test_cancel_short_circuits_retryable_failure(self):
        token = CancellationToken()

        class CancelThenFail(ScriptedAdapter):
            async def open_stream(self, prompt, options, context):
                self.api_keys.append(context.api_key)
                token.cancel("user stop")
                raise BackendError("429 Too Many Requests", status_code=429)
                yield  # pragma: no cover

        adapter = CancelThenFail("http", [])
        with pytest.raises(ClassifiedError) as exc_info:
            await Runner([adapter]).execute("hi", RunOptions(), _context(), cancellation=token)

        assert exc_info.value.code is ErrorCode.CANCELLED
        assert adapter.runs == 1

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self):
        token = CancellationToken()
        adapter = ScriptedAdapter("http", [
            BackendError("rate limit", status_code=429),
            _text("never"),
        ])
        runner = Runner([adapter], retry_policy=RetryPolicy(base_delay=60, max_delay=60))

        run = asyncio.ensure_future(
            runner.execute("hi", RunOptions(), _context(), cancellation=token)
        )
        while adapter.runs == 0:
            await asyncio.sleep(0)
        await asyncio.sleep(0)
        token.cancel()

        with pytest.raises(ClassifiedError) as exc_info:
            await asyncio.wait_for(run, timeout=1)
        assert exc_info.value.code is ErrorCode.CANCELLED
        assert adapter.runs == 1


# ===========================================================================
# In-flight registry
# ===========================================================================

class _BlockingAdapter(BackendAdapter):
    name = "blocking"

    def __init__(self):
        self.started = asyncio.Event()

    def can_handle(self, context):
        return True

    async def open_stream(self, prompt, options, context):
        self.started.set()
        await asyncio.sleep(60)
        yield {"text": "late"}


class TestRegistry:

    @pytest.mark.asyncio
    async def test_cancel_session(self):
        adapter = _BlockingAdapter()
        runner = Runner([adapter])
        run = asyncio.ensure_future(
            runner.execute("hi", RunOptions(session_id="s-1"), _context())
        )
        await asyncio.wait_for(adapter.started.wait(), timeout=1)

        assert runner.in_flight == 1
        assert runner.cancel("other") == 0
        assert runner.cancel("s-1") == 1

        with pytest.raises(ClassifiedError) as exc_info:
            await asyncio.wait_for(run, timeout=1)
        assert exc_info.value.code is ErrorCode.CANCELLED
        assert runner.in_flight == 0

    @pytest.mark.asyncio
    async def test_cancel_operation(self):
        adapter = _BlockingAdapter()
        runner = Runner([adapter])
        run = asyncio.ensure_future(
            runner.execute("hi", RunOptions(session_id="s-1", operation_id="op-7"), _context())
        )
        await asyncio.wait_for(adapter.started.wait(), timeout=1)

        assert runner.cancel_operation("s-1", "op-1") is False
        assert runner.cancel_operation("s-1", "op-7") is True

        with pytest.raises(ClassifiedError):
            await asyncio.wait_for(run, timeout=1)

    @pytest.mark.asyncio
    async def test_runs_without_session_are_not_registered(self):
        adapter = ScriptedAdapter("http", [_text("x")])
        runner = Runner([adapter])
        await runner.execute("hi", RunOptions(), _context())
        assert runner.in_flight == 0


# ===========================================================================
# Diagnostics & usage
# ===========================================================================

class TestDiagnostics:

    def test_diagnostics_snapshot(self):
        cache, _ = _token_cache()
        runner = Runner(
            [ScriptedAdapter("sdk", [], eligible=False), ScriptedAdapter("http", [])],
            token_cache=cache,
            retry_policy=RetryPolicy(max_attempts=2),
        )
        info = runner.diagnostics(_context())

        assert [a["eligible"] for a in info["adapters"]] == [False, True]
        assert info["selected"] == "http"
        assert info["retry_policy"]["max_attempts"] == 2
        assert info["in_flight"] == 0
        assert info["token_cache"]["total_cached"] == 0

    def test_diagnostics_without_context(self):
        info = Runner([ScriptedAdapter("http", [])]).diagnostics()
        assert info["selected"] is None
        assert "eligible" not in info["adapters"][0]
        assert info["token_cache"] is None

    @pytest.mark.asyncio
    async def test_usage_stats(self, no_sleep):
        adapter = ScriptedAdapter("http", [
            BackendError("timed out"),
            _text("ok"),
            RuntimeError("odd"),
        ])
        runner = Runner([adapter])

        await runner.execute("hi", RunOptions(), _context())
        with pytest.raises(ClassifiedError):
            await runner.execute("hi", RunOptions(), _context())

        stats = runner.get_usage_stats()
        assert stats["total_runs"] == 2
        assert stats["succeeded"] == 1
        assert stats["failed"] == 1
        assert stats["total_attempts"] == 3
        assert stats["retries"] == 1
        assert stats["by_backend"] == {"http": 1}
        assert stats["by_error_code"] == {"unknown": 1}

        runner.reset_usage()
        assert runner.get_usage_stats()["total_runs"] == 0


class TestRetryPolicy:

    def test_delay_for(self):
        policy = RetryPolicy(base_delay=0.5, max_delay=3.0)
        assert [policy.delay_for(i) for i in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter=0.5)
        for _ in range(20):
            assert 0.5 <= policy.delay_for(0) <= 1.5

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"base_delay": -1},
        {"jitter": 2.0},
    ])
    def test_rejects_invalid(self, kwargs):
        from core.exceptions import ConfigurationError

        with pytest.raises(ConfigurationError):
            RetryPolicy(**kwargs)
