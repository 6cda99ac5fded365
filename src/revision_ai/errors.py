"""Error taxonomy for the editing pipeline."""

from __future__ import annotations

from typing import Final, Literal

ErrorCategory = Literal[
    "validation",
    "network",
    "quota",
    "timeout",
    "authentication",
    "model",
    "parse",
    "cancelled",
    "general",
]

NON_RETRYABLE_CATEGORIES: Final[frozenset[str]] = frozenset(
    {"authentication", "validation", "parse", "cancelled"}
)

_KEYWORDS: Final[tuple[tuple[ErrorCategory, tuple[str, ...]], ...]] = (
    ("timeout", ("timeout", "timed out", "deadline")),
    ("authentication", ("401", "403", "unauthorized", "permission", "api key", "forbidden")),
    ("quota", ("quota", "rate limit", "ratelimit", "429", "too many requests", "limit exceeded")),
    ("network", ("network", "connection", "socket", "503", "502", "unavailable", "unreachable")),
    ("model", ("model", "safety", "blocked", "500", "internal")),
)


class RevisionError(Exception):
    """Base class for every error raised by the pipeline."""

    category: ErrorCategory = "general"

    def __init__(self, message: str, *, category: ErrorCategory | None = None) -> None:
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category


class ValidationError(RevisionError):
    """Invalid caller input. Fatal and never retried."""

    category: ErrorCategory = "validation"

    def __init__(self, message: str, *, violations: list[str] | None = None) -> None:
        super().__init__(message)
        self.violations = list(violations or [message])


class ImageValidationError(ValidationError):
    pass


class MarkerValidationError(ValidationError):
    pass


class ContextValidationError(ValidationError):
    pass


class ConfigurationError(RevisionError):
    category: ErrorCategory = "validation"


class ModelCallError(RevisionError):
    """A remote model call failed.

    Attributes:
        stage: Pipeline stage that made the call ("analysis" or "edit").
        retryable: Whether the failure is worth another attempt.
    """

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        category: ErrorCategory = "general",
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message, category=category)
        self.stage = stage
        self.retryable = category not in NON_RETRYABLE_CATEGORIES if retryable is None else retryable


class ResponseParseError(RevisionError):
    category: ErrorCategory = "parse"


class OperationCancelledError(RevisionError):
    category: ErrorCategory = "cancelled"

    def __init__(self, reason: str = "Operation cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


def classify_error(exc: BaseException) -> ErrorCategory:
    """Map an arbitrary exception to an :data:`ErrorCategory`.

    Known pipeline errors keep their own category. Everything else is matched
    against the exception type name, status code and message.
    """
    if isinstance(exc, RevisionError):
        return exc.category
    if isinstance(exc, TimeoutError):
        return "timeout"
    if isinstance(exc, ConnectionError):
        return "network"

    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        if status in (401, 403):
            return "authentication"
        if status == 429:
            return "quota"
        if status in (502, 503, 504):
            return "network"
        if status == 408:
            return "timeout"

    haystack = f"{type(exc).__name__} {exc}".lower()
    for category, keywords in _KEYWORDS:
        if any(k in haystack for k in keywords):
            return category
    return "general"


def as_model_call_error(exc: BaseException, *, stage: str) -> ModelCallError:
    """Wrap a collaborator exception into a classified :class:`ModelCallError`."""
    if isinstance(exc, ModelCallError):
        return exc
    category = classify_error(exc)
    message = f"{stage} call failed: {type(exc).__name__}: {exc}"
    return ModelCallError(message, stage=stage, category=category)
