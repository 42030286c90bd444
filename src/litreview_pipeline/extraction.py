"""Resumable batch extraction of citation records.

:class:`ExtractionPipeline` drives the batches of one input text through the
service strictly in order.  Its progress lives in the corpus
(:attr:`Corpus.extraction`), so a run that stops, fails or pauses for a
manual fix can be picked up again later, even from a reloaded state file.

Per batch the outcome decides what happens next:

* success: the records are merged and the next batch follows after a short
  courtesy delay;
* ``PARSE_FAILURE``: the run pauses in ``awaiting_fix`` with the offending
  text, without spending a retry;
* ``RATE_LIMITED`` / ``OVERLOADED``: the batch is retried with backoff and the
  run fails once the retry budget is spent;
* ``AUTH_ERROR`` / ``QUOTA_EXCEEDED``: the run fails immediately.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import random
from threading import Event
import time
from typing import Callable, List, Optional

from .audit import AuditResult, TaxonomyAuditor
from .corpus import Corpus
from .errors import ErrorKind
from .llm import LLMClientError
from .merger import ResultMerger
from .models import BatchState, BatchStatus
from .retry import RetryPolicy, call_with_retries
from .segmentation import DEFAULT_MAX_CHUNK_SIZE, clean_raw_text, create_batches
from .service import ReviewService

logger = logging.getLogger(__name__)

DEFAULT_COURTESY_DELAY = 2.0


class PipelineStateError(RuntimeError):
    """Raised when a command does not fit the current extraction state."""


@dataclass
class ExtractionResult:
    status: BatchStatus
    batches_total: int = 0
    batches_processed: int = 0
    records_added: int = 0
    retry_delays: List[float] = field(default_factory=list)
    truncated_batches: List[int] = field(default_factory=list)
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    export_recommended: bool = False
    audit: Optional[AuditResult] = None

    @property
    def awaiting_fix(self) -> bool:
        return self.status is BatchStatus.AWAITING_FIX


class ExtractionPipeline:
    """Process citation batches against a corpus one at a time."""

    def __init__(
        self,
        corpus: Corpus,
        service: ReviewService,
        *,
        merger: ResultMerger | None = None,
        policy: RetryPolicy | None = None,
        auditor: TaxonomyAuditor | None = None,
        courtesy_delay: float = DEFAULT_COURTESY_DELAY,
        max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
        on_progress: Callable[[Corpus], None] | None = None,
    ) -> None:
        self.corpus = corpus
        self.service = service
        self.merger = merger or ResultMerger()
        self.policy = policy or RetryPolicy()
        self.auditor = auditor
        self.courtesy_delay = courtesy_delay
        self.max_chunk_size = max_chunk_size
        self._sleep = sleep
        self._rng = rng
        self._on_progress = on_progress
        self._stop = Event()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def run(self, text: str) -> ExtractionResult:
        """Segment ``text`` and process every batch from the first."""

        if not text or not text.strip():
            raise ValueError("Extraction requires non-empty input text")
        batches = create_batches(clean_raw_text(text), self.max_chunk_size)
        if not batches:
            raise ValueError("Input text produced no batches")
        with self.corpus.exclusive("extraction"):
            self.corpus.extraction = BatchState(
                status=BatchStatus.PENDING,
                batches=batches,
                species=self.service.enable_species,
            )
            logger.info("Starting extraction of %d batches", len(batches))
            return self._process()

    def resume_with_fix(self, corrected_text: str) -> ExtractionResult:
        """Reprocess the paused batch with ``corrected_text`` and continue."""

        state = self.corpus.extraction
        if state.status is not BatchStatus.AWAITING_FIX:
            raise PipelineStateError(
                f"No batch is awaiting a fix (extraction is {state.status.value})"
            )
        if not corrected_text or not corrected_text.strip():
            raise ValueError("Corrected batch text must not be empty")
        with self.corpus.exclusive("extraction"):
            state.fix_text = corrected_text.strip()
            logger.info("Retrying batch %d with corrected text", state.batch_index + 1)
            return self._process(manual_fix=True)

    def resume(self) -> ExtractionResult:
        """Continue a stopped or failed run from the batch where it ended."""

        state = self.corpus.extraction
        if state.status is BatchStatus.AWAITING_FIX:
            raise PipelineStateError("Batch is awaiting a manual fix; use resume_with_fix")
        if not state.resumable:
            raise PipelineStateError(
                f"Nothing to resume (extraction is {state.status.value})"
            )
        with self.corpus.exclusive("extraction"):
            logger.info(
                "Resuming extraction at batch %d/%d", state.batch_index + 1, state.total_batches
            )
            return self._process()

    def request_stop(self) -> None:
        """Ask the running loop to stop before the next batch starts."""

        self._stop.set()

    # ------------------------------------------------------------------
    # Batch loop
    # ------------------------------------------------------------------
    def _process(self, *, manual_fix: bool = False) -> ExtractionResult:
        self._stop.clear()
        state = self.corpus.extraction
        state.error_kind = None
        state.message = None
        # the run's species setting carries over to fixes and resumes
        state.species = state.species or self.service.enable_species
        result = ExtractionResult(status=state.status, batches_total=state.total_batches)

        while state.batch_index < state.total_batches:
            if self._stop.is_set():
                state.status = BatchStatus.STOPPED
                logger.info("Extraction stopped before batch %d", state.batch_index + 1)
                break

            index = state.batch_index
            is_fix = manual_fix and state.fix_text is not None
            text = state.fix_text if is_fix else state.batches[index]
            label = f"Batch {index + 1}/{state.total_batches}"
            state.status = BatchStatus.IN_FLIGHT

            try:
                attempt = call_with_retries(
                    lambda: self.service.extract_batch(
                        text,
                        taxonomy=self.corpus.taxonomy(),
                        topic=self.corpus.topic,
                        species=state.species,
                    ),
                    self.policy,
                    sleep=self._sleep,
                    rng=self._rng,
                    label=label,
                )
            except LLMClientError as exc:
                state.status = BatchStatus.FAILED_FATAL
                state.message = str(exc)
                self._checkpoint()
                raise
            except BaseException:
                # Ctrl-C or a crash mid-request: the batch was never merged
                state.status = BatchStatus.AWAITING_FIX if is_fix else BatchStatus.STOPPED
                state.message = f"{label} interrupted before its reply was merged"
                logger.warning("%s interrupted; resume will repeat it", label)
                self._checkpoint()
                raise
            result.retry_delays.extend(attempt.delays)
            outcome = attempt.outcome

            if outcome.ok:
                assert outcome.value is not None
                if outcome.truncated:
                    logger.warning(
                        "%s reply was truncated and repaired; some records may be missing", label
                    )
                    result.truncated_batches.append(index)
                merged = self.merger.merge(
                    self.corpus,
                    outcome.value.papers,
                    manual_fix=is_fix,
                    model_used=outcome.value.model_used,
                )
                result.records_added += len(merged.records)
                result.batches_processed += 1
                state.batch_index += 1
                state.fix_text = None
                manual_fix = False
                state.status = BatchStatus.SUCCEEDED
                self._checkpoint()
                if state.batch_index < state.total_batches and self.courtesy_delay > 0:
                    self._sleep(self.courtesy_delay)
                continue

            failure = outcome.failure
            assert failure is not None
            state.error_kind = failure.kind.value
            state.message = failure.message
            result.error_kind = failure.kind
            result.message = failure.message
            if failure.kind is ErrorKind.PARSE_FAILURE:
                state.status = BatchStatus.AWAITING_FIX
                state.fix_text = text
                logger.warning("%s could not be parsed; waiting for a manual fix", label)
            else:
                state.status = BatchStatus.FAILED_FATAL
                result.export_recommended = failure.kind is ErrorKind.QUOTA_EXCEEDED
                logger.error("%s failed (%s): %s", label, failure.kind.value, failure.message)
            self._checkpoint()
            break
        else:
            state.status = BatchStatus.SUCCEEDED
            logger.info(
                "Extraction finished: %d batches, %d new records",
                result.batches_processed,
                result.records_added,
            )
            if self.auditor is not None:
                result.audit = self.auditor.run(self.corpus)
            self._checkpoint()

        result.status = state.status
        return result

    def _checkpoint(self) -> None:
        if self._on_progress is not None:
            self._on_progress(self.corpus)


__all__ = [
    "DEFAULT_COURTESY_DELAY",
    "ExtractionPipeline",
    "ExtractionResult",
    "PipelineStateError",
]
