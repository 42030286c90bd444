"""Classification of failed LLM service calls.

Every request to the service ends in a :class:`ServiceOutcome`: either a
decoded value or a :class:`ServiceFailure` tagged with one of the
:class:`ErrorKind` members below.  Callers branch on the kind instead of
catching exception subclasses, which keeps the retry / pause / abort
decisions explicit at each call site.  Errors that fit none of the kinds are
not wrapped: they propagate as :class:`~litreview_pipeline.llm.LLMClientError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")

_AUTH_STATUSES = frozenset({400, 401, 403})
_OVERLOADED_STATUSES = frozenset({500, 502, 503, 504, 529})
_QUOTA_MARKERS = ("quota", "exhausted", "insufficient_quota", "billing")
_OVERLOADED_MARKERS = ("overloaded", "unavailable", "timed out", "timeout", "connection")


class ErrorKind(str, Enum):
    AUTH_ERROR = "auth_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    OVERLOADED = "overloaded"
    PARSE_FAILURE = "parse_failure"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.RATE_LIMITED, ErrorKind.OVERLOADED)

    @property
    def fatal(self) -> bool:
        return self in (ErrorKind.AUTH_ERROR, ErrorKind.QUOTA_EXCEEDED)


@dataclass(frozen=True)
class ServiceFailure:
    kind: ErrorKind
    message: str
    status: Optional[int] = None
    raw: Optional[str] = None


@dataclass(frozen=True)
class ServiceOutcome(Generic[T]):
    """Either ``value`` (success) or ``failure`` (classified error)."""

    value: Optional[T] = None
    failure: Optional[ServiceFailure] = None
    truncated: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: T, *, truncated: bool = False) -> "ServiceOutcome[T]":
        return cls(value=value, truncated=truncated)

    @classmethod
    def error(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        status: Optional[int] = None,
        raw: Optional[str] = None,
    ) -> "ServiceOutcome[T]":
        return cls(failure=ServiceFailure(kind=kind, message=message, status=status, raw=raw))


def classify_error(status: Optional[int], message: str | None) -> Optional[ErrorKind]:
    """Map an HTTP-style ``status`` and error ``message`` onto an :class:`ErrorKind`.

    Returns ``None`` when the failure does not belong to any known kind; such
    errors are meant to abort the current operation unchanged.
    """

    text = (message or "").lower()
    if status in _AUTH_STATUSES:
        return ErrorKind.AUTH_ERROR
    if status == 429:
        if any(marker in text for marker in _QUOTA_MARKERS):
            return ErrorKind.QUOTA_EXCEEDED
        return ErrorKind.RATE_LIMITED
    if status in _OVERLOADED_STATUSES:
        return ErrorKind.OVERLOADED
    if status is None:
        if "rate limit" in text or "too many requests" in text:
            return ErrorKind.RATE_LIMITED
        if any(marker in text for marker in _OVERLOADED_MARKERS):
            return ErrorKind.OVERLOADED
    return None


def classify_exception(exc: BaseException) -> Optional[ErrorKind]:
    """Classify an exception raised by the LLM client."""

    status: Any = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(exc, "status", None)
    try:
        status_code = int(status) if status is not None else None
    except (TypeError, ValueError):
        status_code = None
    return classify_error(status_code, str(exc))


__all__ = [
    "ErrorKind",
    "ServiceFailure",
    "ServiceOutcome",
    "classify_error",
    "classify_exception",
]
