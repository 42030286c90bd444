"""Synonym and grouping normalisation of record metadata."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import random
import time
from typing import Callable, Dict, List

from .corpus import Corpus
from .retry import RetryPolicy, call_with_retries
from .service import ReviewService

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 150


@dataclass
class NormalizationResult:
    changed_ids: List[str] = field(default_factory=list)
    chunks: int = 0
    failed_chunks: int = 0

    @property
    def records_changed(self) -> int:
        return len(self.changed_ids)


class TermNormalizer:
    """Send record summaries in chunks and apply the returned standard terms.

    Updates go through :meth:`Corpus.update_records`, so only fields whose
    value really changes are counted and ids outside the chunk are ignored.
    A chunk whose request fails is left untouched.
    """

    def __init__(
        self,
        service: ReviewService,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self.service = service
        self.chunk_size = chunk_size
        self.policy = policy or RetryPolicy(max_retries=3)
        self._sleep = sleep
        self._rng = rng

    def run(self, corpus: Corpus) -> NormalizationResult:
        result = NormalizationResult()
        with corpus.exclusive("normalization"):
            records = list(corpus.records)
            for start in range(0, len(records), self.chunk_size):
                chunk = records[start : start + self.chunk_size]
                result.chunks += 1
                summaries = [
                    {
                        "id": record.id,
                        "driver": record.driver,
                        "response": record.response,
                        "location": record.location,
                        "species": record.species,
                    }
                    for record in chunk
                ]
                attempt = call_with_retries(
                    lambda: self.service.normalize_terms(summaries, topic=corpus.topic),
                    self.policy,
                    sleep=self._sleep,
                    rng=self._rng,
                    label=f"Normalisation chunk {result.chunks}",
                )
                outcome = attempt.outcome
                if not outcome.ok:
                    assert outcome.failure is not None
                    logger.warning(
                        "Normalisation chunk %d skipped: %s", result.chunks, outcome.failure.message
                    )
                    result.failed_chunks += 1
                    continue
                chunk_ids = {record.id for record in chunk}
                updates: Dict[str, Dict[str, str]] = {}
                for update in outcome.value or []:
                    if update.paper_id in chunk_ids:
                        updates.setdefault(update.paper_id, {}).update(update.changes)
                result.changed_ids.extend(corpus.update_records(updates))

            if records and result.failed_chunks == 0:
                corpus.normalized = True
        logger.info(
            "Normalisation changed %d records (%d/%d chunks failed)",
            result.records_changed,
            result.failed_chunks,
            result.chunks,
        )
        return result


__all__ = ["DEFAULT_CHUNK_SIZE", "NormalizationResult", "TermNormalizer"]
