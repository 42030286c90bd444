"""One-shot taxonomy audit run after a complete extraction."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import random
import time
from typing import Callable, List

from .corpus import Corpus
from .retry import RetryPolicy, call_with_retries
from .service import AuditFix, ReviewService

logger = logging.getLogger(__name__)

PAIR_SEPARATOR = " ||| "


@dataclass
class AuditResult:
    applied: List[AuditFix] = field(default_factory=list)
    skipped: List[AuditFix] = field(default_factory=list)
    records_changed: int = 0


class TaxonomyAuditor:
    """Ask the service for duplicated or redundant themes and apply its fixes.

    Fixes are applied by exact (category, theme) match.  A fix whose source or
    destination is locked is skipped, as is a fix naming a pair that no longer
    exists.  Any service failure leaves the corpus untouched.
    """

    def __init__(
        self,
        service: ReviewService,
        *,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.service = service
        self.policy = policy or RetryPolicy(max_retries=3)
        self._sleep = sleep
        self._rng = rng

    @staticmethod
    def pair_lines(corpus: Corpus) -> List[str]:
        return [f"{category}{PAIR_SEPARATOR}{theme}" for category, theme in corpus.taxonomy_pairs()]

    def run(self, corpus: Corpus) -> AuditResult:
        result = AuditResult()
        pairs = self.pair_lines(corpus)
        if not pairs:
            return result

        attempt = call_with_retries(
            lambda: self.service.audit_taxonomy(pairs, topic=corpus.topic),
            self.policy,
            sleep=self._sleep,
            rng=self._rng,
            label="Taxonomy audit",
        )
        outcome = attempt.outcome
        if not outcome.ok:
            assert outcome.failure is not None
            logger.warning("Taxonomy audit skipped: %s", outcome.failure.message)
            return result

        for fix in outcome.value or []:
            if corpus.locks.is_theme_locked(fix.category, fix.theme) or corpus.locks.is_theme_locked(
                fix.new_category, fix.new_theme
            ):
                logger.info("Audit fix for %s / %s touches a lock; skipped", fix.category, fix.theme)
                result.skipped.append(fix)
                continue
            if (fix.category, fix.theme) == (fix.new_category, fix.new_theme):
                continue
            if not corpus.records_in(fix.category, fix.theme):
                result.skipped.append(fix)
                continue
            changed = corpus.reassign(
                fix.category,
                fix.theme,
                new_category=fix.new_category,
                new_theme=fix.new_theme,
            )
            result.records_changed += changed
            result.applied.append(fix)
            logger.info(
                "Audit moved %s / %s -> %s / %s (%d records)",
                fix.category,
                fix.theme,
                fix.new_category,
                fix.new_theme,
                changed,
            )
        return result


__all__ = ["AuditResult", "PAIR_SEPARATOR", "TaxonomyAuditor"]
