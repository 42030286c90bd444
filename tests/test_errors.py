from __future__ import annotations

import pytest

from litreview_pipeline.errors import ErrorKind, ServiceOutcome, classify_error, classify_exception
from litreview_pipeline.llm import LLMClientError, LLMRateLimitError


@pytest.mark.parametrize(
    "status, message, expected",
    [
        (400, "API key not valid", ErrorKind.AUTH_ERROR),
        (401, "Unauthorized", ErrorKind.AUTH_ERROR),
        (403, "Permission denied", ErrorKind.AUTH_ERROR),
        (429, "You exceeded your current quota", ErrorKind.QUOTA_EXCEEDED),
        (429, "Resource has been exhausted", ErrorKind.QUOTA_EXCEEDED),
        (429, "insufficient_quota", ErrorKind.QUOTA_EXCEEDED),
        (429, "Check your plan and billing details", ErrorKind.QUOTA_EXCEEDED),
        (429, "Rate limit reached for requests", ErrorKind.RATE_LIMITED),
        (500, "Internal error", ErrorKind.OVERLOADED),
        (503, "The model is overloaded", ErrorKind.OVERLOADED),
        (529, "Overloaded", ErrorKind.OVERLOADED),
        (None, "Request timed out.", ErrorKind.OVERLOADED),
        (None, "Connection error.", ErrorKind.OVERLOADED),
        (404, "model not found", None),
        (None, "something unexpected", None),
    ],
)
def test_classify_error(status, message, expected) -> None:
    assert classify_error(status, message) is expected


def test_error_kind_flags() -> None:
    assert ErrorKind.RATE_LIMITED.retryable and ErrorKind.OVERLOADED.retryable
    assert ErrorKind.AUTH_ERROR.fatal and ErrorKind.QUOTA_EXCEEDED.fatal
    assert not ErrorKind.PARSE_FAILURE.retryable
    assert not ErrorKind.PARSE_FAILURE.fatal


def test_classify_exception_reads_status_code() -> None:
    assert classify_exception(LLMRateLimitError("slow down", status_code=429)) is ErrorKind.RATE_LIMITED
    assert classify_exception(LLMClientError("bad key", status_code=401)) is ErrorKind.AUTH_ERROR
    assert classify_exception(LLMClientError("teapot", status_code=418)) is None


def test_service_outcome_constructors() -> None:
    ok = ServiceOutcome.success([1, 2], truncated=True)
    assert ok.ok and ok.value == [1, 2] and ok.truncated
    failed = ServiceOutcome.error(ErrorKind.OVERLOADED, "busy", status=503)
    assert not failed.ok
    assert failed.failure is not None
    assert failed.failure.kind is ErrorKind.OVERLOADED
    assert failed.failure.status == 503
