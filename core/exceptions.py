"""
Custom exception hierarchy for the Conduit execution layer.

Structured error handling with clear categories:
- Configuration errors (caught at startup)
- Validation errors (malformed input to a public entry point)
- Backend failures (raised by adapters while a prompt runs)
- Cancellation (the run's cancellation token was triggered)
- Classified errors (the normalized shape every failed run surfaces)

Adapters raise whatever their backend gives them; the Runner hands the
failure to the ErrorClassifier and only ever surfaces a ClassifiedError.

Usage:
    from core.exceptions import ClassifiedError, ErrorCode

    try:
        result = await runner.execute(prompt, options, context)
    except ClassifiedError as e:
        if e.code is ErrorCode.AUTH_ERROR:
            ...
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ConduitError(Exception):
    """
    Base exception for all Conduit errors.

    All custom exceptions inherit from this, so you can catch
    `ConduitError` to handle any platform-specific error.
    """

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


# ── Configuration & Validation ────────────────────────────────────


class ConfigurationError(ConduitError):
    """
    Raised when runtime settings or the runtime context cannot be built.

    Examples:
    - Non-numeric CONDUIT_MAX_ATTEMPTS
    - YAML config file that is not a mapping
    - No API key and no credential key available
    """

    def __init__(
        self,
        message: str,
        *,
        setting: Optional[str] = None,
        config_path: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.setting = setting
        self.config_path = config_path


class ValidationError(ConduitError):
    """
    Raised when a public entry point receives malformed input,
    e.g. a blank credential key.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.field = field


# ── Backend Failures ──────────────────────────────────────────────


class BackendError(ConduitError):
    """
    Raised by a backend adapter when the backend reports a failure.

    Carries the structured hints the classifier looks at: an HTTP
    status code and the tail of the backend process's stderr.
    """

    def __init__(
        self,
        message: str,
        *,
        backend: Optional[str] = None,
        status_code: Optional[int] = None,
        stderr_tail: str = "",
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.backend = backend
        self.status_code = status_code
        self.stderr_tail = stderr_tail


class RunCancelledError(ConduitError):
    """Raised when a run observes its cancellation token."""

    def __init__(
        self,
        message: str = "Run cancelled",
        *,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.reason = reason


class NoEligibleBackendError(ConduitError):
    """
    Raised when no registered adapter accepts the runtime context.
    """

    def __init__(
        self,
        message: str = "No eligible backend for this runtime context",
        *,
        adapters: Optional[list[str]] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.adapters = adapters or []


# ── Classified Errors ─────────────────────────────────────────────


class ErrorCode(str, Enum):
    """Closed set of failure categories a run can end with."""

    AUTH_ERROR = "auth_error"
    CLI_MISSING = "cli_missing"
    CANCELLED = "cancelled"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ClassifiedError(ConduitError):
    """
    A normalized failure: closed-set code plus a retry verdict.

    `original_message` is the raw failure text, preserved verbatim for
    diagnostics. `original` is the underlying exception and is never
    meant to be serialized into an external response.
    """

    def __init__(
        self,
        code: ErrorCode,
        original_message: str,
        *,
        retryable: bool = False,
        detail: Optional[dict[str, Any]] = None,
        original: Optional[BaseException] = None,
    ):
        super().__init__(original_message, details=detail)
        self.code = code
        self.retryable = retryable
        self.original_message = original_message
        self.detail = detail
        self.original = original

    def __repr__(self) -> str:
        return (
            f"ClassifiedError(code={self.code.value!r}, "
            f"retryable={self.retryable}, "
            f"message={self.original_message[:80]!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Serializable view (drops the original exception object)."""
        return {
            "code": self.code.value,
            "retryable": self.retryable,
            "message": self.original_message,
            "detail": self.detail,
        }
