"""Narrative synthesis of the extracted findings, per section or for the whole review."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .corpus import Corpus
from .retry import RetryPolicy, call_with_retries
from .service import ReviewService, SectionSynthesis

logger = logging.getLogger(__name__)


@dataclass
class ReviewSynthesis:
    """Every (category, theme) section of a review, in sorted order."""

    topic: str = ""
    sections: List[Tuple[str, str, SectionSynthesis]] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)


class SectionSynthesizer:
    def __init__(
        self,
        service: ReviewService,
        *,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.service = service
        self.policy = policy or RetryPolicy(max_retries=5)
        self._sleep = sleep
        self._rng = rng

    def synthesize(
        self, corpus: Corpus, category: str, theme: str | None = None
    ) -> Optional[SectionSynthesis]:
        """Summarise one category (or one of its themes); ``None`` if the service fails."""

        records = corpus.records_in(category, theme)
        if not records:
            raise ValueError(f"No records in section {category!r}" + (f" / {theme!r}" if theme else ""))
        section = f"{category}: {theme}" if theme else category
        attempt = call_with_retries(
            lambda: self.service.synthesize_section(section, records, topic=corpus.topic),
            self.policy,
            sleep=self._sleep,
            rng=self._rng,
            label="Section synthesis",
        )
        if not attempt.outcome.ok:
            assert attempt.outcome.failure is not None
            logger.warning("Synthesis of %s failed: %s", section, attempt.outcome.failure.message)
            return None
        return attempt.outcome.value

    def synthesize_all(self, corpus: Corpus) -> ReviewSynthesis:
        """Synthesise each theme of each category, both sorted by name.

        Sections whose request fails are listed in ``failed`` and left out of
        the document.
        """

        review = ReviewSynthesis(topic=corpus.topic)
        taxonomy = corpus.taxonomy()
        for category in sorted(taxonomy):
            for theme in sorted(taxonomy[category]):
                synthesis = self.synthesize(corpus, category, theme)
                if synthesis is None:
                    review.failed.append((category, theme))
                else:
                    review.sections.append((category, theme, synthesis))
        logger.info(
            "Synthesised %d sections (%d failed)", len(review.sections), len(review.failed)
        )
        return review


def render_synthesis(synthesis: SectionSynthesis) -> str:
    if isinstance(synthesis.summary, list):
        summary = "\n".join(f"- {item}" for item in synthesis.summary)
    else:
        summary = synthesis.summary
    lines = ["Summary", summary, "", "Contradiction analysis", synthesis.contradiction_analysis]
    if synthesis.model_used:
        lines.extend(["", f"Generated with: {synthesis.model_used}"])
    return "\n".join(lines)


def _summary_items(synthesis: SectionSynthesis) -> List[str]:
    if isinstance(synthesis.summary, list):
        return synthesis.summary
    return [synthesis.summary]


def render_review(review: ReviewSynthesis) -> str:
    """Markdown document with one heading per category and per theme."""

    lines = [f"# Synthesis: {review.topic}" if review.topic else "# Synthesis", ""]
    current = None
    for category, theme, synthesis in review.sections:
        if category != current:
            lines.extend([f"## {category}", ""])
            current = category
        lines.extend([f"### {theme}", ""])
        lines.extend(f"- {item}" for item in _summary_items(synthesis))
        lines.extend(["", f"**Contradictions:** {synthesis.contradiction_analysis}", ""])
    if review.failed:
        lines.append("## Sections without a synthesis")
        lines.append("")
        lines.extend(f"- {category} / {theme}" for category, theme in review.failed)
        lines.append("")
    return "\n".join(lines)


__all__ = ["ReviewSynthesis", "SectionSynthesizer", "render_review", "render_synthesis"]
