"""Bounded exponential backoff with jitter for retryable service failures."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import random
import time
from typing import Callable, List, Optional, TypeVar

from .errors import ServiceOutcome

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a retryable failure is re-attempted.

    The delay before retry ``n`` (1-based) is ``backoff_base ** n`` seconds
    plus up to ``jitter`` seconds of random noise.
    """

    max_retries: int = 6
    backoff_base: float = 2.0
    jitter: float = 1.0

    def __post_init__(self) -> None:  # pragma: no cover - dataclass hook
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_base < 1:
            raise ValueError("backoff_base must be >= 1")
        if self.jitter < 0:
            raise ValueError("jitter must be >= 0")

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        return self.backoff_base**attempt + self.jitter * rng()


@dataclass
class RetryResult:
    outcome: ServiceOutcome
    attempts: int = 1
    delays: List[float] = field(default_factory=list)
    exhausted: bool = False


def call_with_retries(
    operation: Callable[[], ServiceOutcome[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
    label: str = "LLM request",
    on_retry: Optional[Callable[[int, float, ServiceOutcome[T]], None]] = None,
) -> RetryResult:
    """Run ``operation`` until it succeeds or fails with a non-retryable kind.

    Only :attr:`~litreview_pipeline.errors.ErrorKind.retryable` failures
    consume the retry budget; everything else is handed back immediately.
    ``exhausted`` is set when the last outcome is still retryable because the
    budget ran out.
    """

    result = RetryResult(outcome=operation())
    while not result.outcome.ok:
        failure = result.outcome.failure
        assert failure is not None
        if not failure.kind.retryable:
            return result
        if len(result.delays) >= policy.max_retries:
            result.exhausted = True
            logger.error(
                "%s still failing after %d retries: %s",
                label,
                policy.max_retries,
                failure.message,
            )
            return result
        attempt = len(result.delays) + 1
        delay = policy.delay(attempt, rng)
        logger.warning(
            "%s failed (%s); retrying in %.1fs (attempt %d/%d)",
            label,
            failure.kind.value,
            delay,
            attempt,
            policy.max_retries,
        )
        if on_retry is not None:
            on_retry(attempt, delay, result.outcome)
        sleep(delay)
        result.delays.append(delay)
        result.attempts += 1
        result.outcome = operation()
    return result


__all__ = ["RetryPolicy", "RetryResult", "call_with_retries"]
