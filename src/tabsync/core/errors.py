"""
Structured error types for tabsync.

Every failure the sync engine can raise carries a category, an explicit
retryable flag and a structured context, so the dispatcher can decide
between "retry inside the client", "abort this scope" and "surface to the
operator" without string-matching messages.

Manifesto:
    - **Typed Error Hierarchy:** Transient, terminal, structural and
      contention failures are different types
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry scope, page, URL and status for logging
    - **Error Chaining:** The original exception is preserved as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       TabsyncError                               │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientError       SourceError         ValidationError        │
        │  (retryable=True)     (SOURCE)            (VALIDATION)           │
        │       │                   │                    │                 │
        │  NetworkError         RequestError        RowWidthError          │
        │  RateLimitError       RetryExhausted      CheckpointError        │
        │  ServiceUnavailable   ParseError                                 │
        │                                                                  │
        │  ConfigError          LockBusyError                              │
        │  (CONFIG)             (CONTENTION)                               │
        │       │                                                          │
        │  InvalidConfigError                                              │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = RateLimitError("429 from /games", retry_after=2)
    >>> error.retryable
    True
    >>> RowWidthError(expected=7, actual=6, row_index=3).retryable
    False

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context, tabsync

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Infrastructure errors (usually transient)
    NETWORK = "NETWORK"
    STORAGE = "STORAGE"

    # Source/data errors
    SOURCE = "SOURCE"
    PARSE = "PARSE"
    VALIDATION = "VALIDATION"

    # Configuration errors (never retryable)
    CONFIG = "CONFIG"

    # Concurrency
    CONTENTION = "CONTENTION"

    # Internal errors
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        scope_id: Scope being synchronized when the error occurred
        operation: Dispatcher operation (``continue``, ``refresh``, ...)
        page: 0-indexed page being processed
        url: URL that was being accessed
        http_status: HTTP status code if applicable
        metadata: Additional key-value pairs
    """

    scope_id: str | None = None
    operation: str | None = None
    page: int | None = None
    url: str | None = None
    http_status: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["scope_id", "operation", "page", "url", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class TabsyncError(Exception):
    """
    Base exception for all tabsync errors.

    Subclasses set ``default_category`` and ``default_retryable`` so that
    call sites only pass what differs from the domain default.

    Examples:
        >>> error = TabsyncError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.with_context(scope_id="season-2023", page=4).context.page
        4
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> TabsyncError:
        """
        Add context to this error (fluent API).

        Usage:
            raise RequestError("Failed", status=404, body="").with_context(
                scope_id="season-2023",
                page=3,
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Retryable inside the HTTP client)
# =============================================================================


class TransientError(TabsyncError):
    """
    Temporary error that may succeed on retry.

    Raised for rate limiting, service unavailability and transport
    failures. The HTTP client retries these with exponential backoff and
    only surfaces them wrapped in :class:`RetryExhaustedError`.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Transport-level failure (connect, read, DNS)."""


class RateLimitError(TransientError):
    """Remote API answered 429."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)


class ServiceUnavailableError(TransientError):
    """Remote API answered 503."""


# =============================================================================
# SOURCE ERRORS (Terminal for the current batch)
# =============================================================================


class SourceError(TabsyncError):
    """Error from the remote data source. Not retryable by default."""

    default_category = ErrorCategory.SOURCE
    default_retryable = False


class RequestError(SourceError):
    """Non-retryable, non-2xx response. Carries status and body."""

    def __init__(self, message: str, *, status: int, body: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status = status
        self.body = body
        self.context.http_status = status

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["status"] = self.status
        if self.body:
            result["body"] = self.body[:500]
        return result


class RetryExhaustedError(SourceError):
    """All retries were used up. ``last_error`` is the final failure."""

    def __init__(self, message: str, *, attempts: int, last_error: Exception, **kwargs: Any):
        super().__init__(message, cause=last_error, **kwargs)
        self.attempts = attempts
        self.last_error = last_error


class ParseError(SourceError):
    """Response body could not be interpreted."""

    default_category = ErrorCategory.PARSE


# =============================================================================
# VALIDATION ERRORS (Structural, never retryable)
# =============================================================================


class ValidationError(TabsyncError):
    """
    Data validation error.

    Never retryable - the transform or the data must be fixed.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False


class RowWidthError(ValidationError):
    """A produced row does not match the declared row width."""

    def __init__(self, *, expected: int, actual: int, row_index: int, **kwargs: Any):
        super().__init__(
            f"Row {row_index} has width {actual}, expected {expected}",
            **kwargs,
        )
        self.expected = expected
        self.actual = actual
        self.row_index = row_index


class CheckpointError(ValidationError):
    """A checkpoint transition would break a checkpoint invariant."""

    default_category = ErrorCategory.STORAGE


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(TabsyncError):
    """
    Configuration error.

    Never retryable - configuration must be fixed.
    """

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class InvalidConfigError(ConfigError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        self.key = key
        self.value = value
        super().__init__(message or f"Invalid configuration for {key}: {value!r}")


# =============================================================================
# CONTENTION
# =============================================================================


class LockBusyError(TabsyncError):
    """The scope lock is held by another invocation.

    Only raised for interactive callers; scheduled callers log a SKIP
    instead and let the next cadence tick resume the work.
    """

    default_category = ErrorCategory.CONTENTION
    default_retryable = True

    def __init__(self, lock_name: str, holder: str | None = None):
        self.lock_name = lock_name
        self.holder = holder
        suffix = f" (held by {holder})" if holder else ""
        super().__init__(f"Lock {lock_name} is busy{suffix}")


def is_retryable(error: BaseException) -> bool:
    """Whether *error* should be retried by the HTTP client."""
    return isinstance(error, TabsyncError) and error.retryable and isinstance(error, TransientError)


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "TabsyncError",
    "TransientError",
    "NetworkError",
    "RateLimitError",
    "ServiceUnavailableError",
    "SourceError",
    "RequestError",
    "RetryExhaustedError",
    "ParseError",
    "ValidationError",
    "RowWidthError",
    "CheckpointError",
    "ConfigError",
    "InvalidConfigError",
    "LockBusyError",
    "is_retryable",
]
