"""
Error Classifier — Raw failures → closed-set ClassifiedError.

Different backends fail in differently shaped ways for the same logical
condition: the SDK subprocess prints "Invalid API key" on stderr, the
HTTP API answers 401, a missing CLI shows up as ENOENT. Classification is
therefore content-based, not type-based: an ordered rule table is matched
against the failure's message, its captured stderr tail, and any explicit
status code. First match wins.

Rules (in order):
- AuthError      invalid/missing API key, authentication, 401/403
- CliMissing     execution binary or SDK missing
- Cancelled      cancelled/aborted, or the run's token already fired
- RateLimited    429, rate limit          (retryable)
- Timeout        timeout, deadline, 408/504 (retryable)
- Unknown        anything else

Usage:
    from core.runtime.classifier import ErrorClassifier

    classified = ErrorClassifier().classify(exc)
    if classified.retryable:
        ...
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from core.exceptions import ClassifiedError, ErrorCode
from core.runtime.cancellation import CancellationToken

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Rule Table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ErrorRule:
    """One row of the classification table."""

    name: str
    code: ErrorCode
    retryable: bool
    pattern: Optional[re.Pattern] = None
    status_codes: frozenset[int] = frozenset()
    message_only: bool = False  # ignore the stderr tail for this rule

    def matches(self, message: str, combined: str, status: Optional[int]) -> bool:
        if status is not None and status in self.status_codes:
            return True
        if self.pattern is None:
            return False
        return bool(self.pattern.search(message if self.message_only else combined))


def _rx(*alternatives: str) -> re.Pattern:
    return re.compile("|".join(f"(?:{a})" for a in alternatives), re.IGNORECASE)


DEFAULT_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(
        name="auth",
        code=ErrorCode.AUTH_ERROR,
        retryable=False,
        pattern=_rx(
            r"api[\s_-]?key",
            r"authenticat",
            r"unauthori[sz]ed",
            r"invalid[\s_-]token",
            r"(?<!\d)401(?!\d)",
        ),
        status_codes=frozenset({401, 403}),
    ),
    ErrorRule(
        name="cli_missing",
        code=ErrorCode.CLI_MISSING,
        retryable=False,
        pattern=_rx(
            r"command not found",
            r"\benoent\b",
            r"no such file or directory",
            r"claude\b.*\bnot found",
            r"not installed",
            r"sdk_import_failed",
            r"cli_missing",
        ),
    ),
    ErrorRule(
        name="cancelled",
        code=ErrorCode.CANCELLED,
        retryable=False,
        pattern=_rx(r"cancell?ed", r"\baborted?\b"),
        message_only=True,
    ),
    ErrorRule(
        name="rate_limited",
        code=ErrorCode.RATE_LIMITED,
        retryable=True,
        pattern=_rx(
            r"(?<!\d)429(?!\d)",
            r"rate[\s_-]?limit",
            r"too many requests",
        ),
        status_codes=frozenset({429}),
    ),
    ErrorRule(
        name="timeout",
        code=ErrorCode.TIMEOUT,
        retryable=True,
        pattern=_rx(
            r"time[\s_-]?out",
            r"timed out",
            r"deadline exceeded",
            r"etimedout",
        ),
        status_codes=frozenset({408, 504}),
    ),
)


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

class ErrorClassifier:
    """
    Maps any raised failure to a ClassifiedError.

    Pure and total: never raises, never does I/O. Unrecognized failures
    come back as Unknown / non-retryable.
    """

    def __init__(self, rules: Optional[Sequence[ErrorRule]] = None):
        self._rules: tuple[ErrorRule, ...] = tuple(rules) if rules is not None else DEFAULT_RULES

    @property
    def rules(self) -> tuple[ErrorRule, ...]:
        return self._rules

    def classify(
        self,
        error: Any,
        cancellation: Optional[CancellationToken] = None,
    ) -> ClassifiedError:
        if isinstance(error, ClassifiedError):
            return error

        try:
            return self._classify(error, cancellation)
        except Exception as exc:
            logger.warning(
                "error_classification_failed",
                extra={"error": str(exc)[:200]},
            )
            return ClassifiedError(
                ErrorCode.UNKNOWN,
                "Error classification failed",
                retryable=False,
                detail={"matched": "classify_failure"},
                original=error if isinstance(error, BaseException) else None,
            )

    def _classify(
        self,
        error: Any,
        cancellation: Optional[CancellationToken],
    ) -> ClassifiedError:
        message = _message_of(error)
        stderr_tail = str(getattr(error, "stderr_tail", "") or "")
        status = _status_of(error)
        combined = f"{message}\n{stderr_tail}" if stderr_tail else message
        original = error if isinstance(error, BaseException) else None

        detail: dict[str, Any] = {}
        if status is not None:
            detail["status_code"] = status
        if stderr_tail:
            detail["stderr_tail"] = stderr_tail[-500:]

        for rule in self._rules:
            hit = rule.matches(message, combined, status)
            if (
                not hit
                and rule.code is ErrorCode.CANCELLED
                and cancellation is not None
                and cancellation.cancelled
            ):
                hit = True
            if hit:
                detail["matched"] = rule.name
                return ClassifiedError(
                    rule.code,
                    message,
                    retryable=rule.retryable,
                    detail=detail,
                    original=original,
                )

        detail["matched"] = "fallback"
        return ClassifiedError(
            ErrorCode.UNKNOWN,
            message,
            retryable=False,
            detail=detail,
            original=original,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _message_of(error: Any) -> str:
    """Best-effort failure text; falls back to the exception's class name."""
    if error is None:
        return ""
    if isinstance(error, BaseException):
        text = str(error)
        return text if text else type(error).__name__
    return str(error)


def _status_of(error: Any) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(getattr(error, "response", None), "status_code", None)
    if isinstance(status, int):
        return status
    return None


default_classifier = ErrorClassifier()


def classify(
    error: Any,
    cancellation: Optional[CancellationToken] = None,
) -> ClassifiedError:
    """Classify with the default rule table."""
    return default_classifier.classify(error, cancellation)
