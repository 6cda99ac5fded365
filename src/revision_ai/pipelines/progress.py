"""Progress reporting and cooperative cancellation."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Final, Literal

from revision_ai.errors import OperationCancelledError

ProcessingStage = Literal[
    "initializing",
    "validating",
    "preprocessing",
    "analyzing",
    "processing",
    "postProcessing",
    "completed",
    "cancelled",
    "error",
]

DEFAULT_CANCEL_REASON: Final[str] = "Operation cancelled"

_DISPLAY_NAMES: Final[dict[str, str]] = {
    "initializing": "Initializing",
    "validating": "Validating input",
    "preprocessing": "Preparing image",
    "analyzing": "Analyzing image",
    "processing": "Applying edits",
    "postProcessing": "Finalizing",
    "completed": "Completed",
    "cancelled": "Cancelled",
    "error": "Error",
}
_TERMINAL: Final[frozenset[str]] = frozenset({"completed", "cancelled", "error"})


def _clamp01(v: float) -> float:
    return max(0.0, min(1.0, v))


@dataclass(frozen=True)
class ProcessingProgress:
    """One progress event.

    ``progress`` is the overall fraction in [0, 1]. Stage factories map a
    stage-local fraction onto that stage's slice of the overall range.
    """

    stage: ProcessingStage
    progress: float
    message: str = ""
    estimated_time_remaining: float | None = None
    can_cancel: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def initializing(cls, message: str = "Starting", **kw: Any) -> ProcessingProgress:
        return cls("initializing", 0.0, message, can_cancel=True, **kw)

    @classmethod
    def validating(cls, message: str = "Validating input", **kw: Any) -> ProcessingProgress:
        return cls("validating", 0.1, message, can_cancel=True, **kw)

    @classmethod
    def preprocessing(cls, sub: float = 0.0, message: str = "Preparing image", **kw: Any) -> ProcessingProgress:
        return cls("preprocessing", 0.2 + _clamp01(sub) * 0.2, message, can_cancel=True, **kw)

    @classmethod
    def analyzing(cls, sub: float = 0.0, message: str = "Analyzing image", **kw: Any) -> ProcessingProgress:
        return cls("analyzing", 0.4 + _clamp01(sub) * 0.3, message, can_cancel=True, **kw)

    @classmethod
    def processing(cls, sub: float = 0.0, message: str = "Applying edits", **kw: Any) -> ProcessingProgress:
        return cls("processing", 0.7 + _clamp01(sub) * 0.2, message, can_cancel=False, **kw)

    @classmethod
    def post_processing(cls, sub: float = 0.0, message: str = "Finalizing", **kw: Any) -> ProcessingProgress:
        return cls("postProcessing", 0.9 + _clamp01(sub) * 0.1, message, can_cancel=False, **kw)

    @classmethod
    def completed(cls, message: str = "Completed", **kw: Any) -> ProcessingProgress:
        return cls("completed", 1.0, message, estimated_time_remaining=0.0, can_cancel=False, **kw)

    @classmethod
    def cancelled(cls, message: str = DEFAULT_CANCEL_REASON, **kw: Any) -> ProcessingProgress:
        return cls("cancelled", 0.0, message, can_cancel=False, **kw)

    @classmethod
    def error(cls, message: str, **kw: Any) -> ProcessingProgress:
        return cls("error", 0.0, message, can_cancel=False, **kw)

    @property
    def percentage(self) -> int:
        return int(round(self.progress * 100))

    @property
    def is_complete(self) -> bool:
        return self.stage == "completed"

    @property
    def is_terminal(self) -> bool:
        return self.stage in _TERMINAL

    @property
    def is_active(self) -> bool:
        return not self.is_terminal

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES.get(self.stage, self.stage)


class CancellationToken:
    """Thread-safe, one-shot cancellation flag.

    ``cancel`` is idempotent: the first reason and timestamp are kept.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None
        self._cancelled_at: datetime | None = None
        self._future: Future[str] = Future()
        self._timer: threading.Timer | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def cancelled_at(self) -> datetime | None:
        return self._cancelled_at

    @property
    def future(self) -> Future[str]:
        """Resolves with the cancellation reason once the token fires."""
        return self._future

    def cancel(self, reason: str | None = None) -> bool:
        """Fire the token. Returns False if it had already fired."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason or DEFAULT_CANCEL_REASON
            self._cancelled_at = datetime.now(timezone.utc)
            self._event.set()
            if self._timer is not None:
                self._timer.cancel()
        self._future.set_result(self._reason)
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` elapses. Returns the cancelled state."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self._reason or DEFAULT_CANCEL_REASON)

    @classmethod
    def with_timeout(cls, seconds: float, reason: str | None = None) -> CancellationToken:
        """A token that cancels itself after ``seconds``."""
        token = cls()
        timer = threading.Timer(
            seconds, token.cancel, kwargs={"reason": reason or f"Operation timed out after {seconds:g}s"}
        )
        timer.daemon = True
        token._timer = timer
        timer.start()
        return token

    @classmethod
    def any(cls, tokens: Iterable[CancellationToken]) -> CancellationToken:
        """A token that fires as soon as any of ``tokens`` fires."""
        combined = cls()
        for t in tokens:
            t.future.add_done_callback(lambda f: combined.cancel(f.result()))
        return combined

    def __repr__(self) -> str:
        state = f"cancelled reason={self._reason!r}" if self.is_cancelled else "active"
        return f"CancellationToken({state})"


class CancellationTokenSource:
    """Owns a token and can swap in a fresh one after cancellation."""

    def __init__(self) -> None:
        self._token = CancellationToken()

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def is_cancelled(self) -> bool:
        return self._token.is_cancelled

    def cancel(self, reason: str | None = None) -> None:
        self._token.cancel(reason)

    def reset(self) -> CancellationToken:
        """Replace the token if it has fired; returns the current token."""
        if self._token.is_cancelled:
            self._token = CancellationToken()
        return self._token

    def cancel_and_reset(self, reason: str | None = None) -> CancellationToken:
        self._token.cancel(reason)
        return self.reset()
