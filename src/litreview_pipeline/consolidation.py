"""Structural consolidation of the category -> theme taxonomy.

The :class:`ConsolidationEngine` asks the service for structural edits,
filters them against the user's locks and rejection log, and keeps the
survivors as the corpus' pending proposal list.  Accepting a proposal
rewrites the affected records.  When a whole category changes name (rename or
category merge), the same substitution is applied to every other pending
proposal and to the lock set, and proposals that turn into no-ops are
dropped.  All of that goes through :meth:`ConsolidationEngine._rewrite`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import random
import time
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .corpus import Corpus
from .models import (
    CategoryMerge,
    CategoryRename,
    LockSet,
    Proposal,
    ThemeMerge,
    ThemeMove,
    normalise_key,
)
from .retry import RetryPolicy, call_with_retries
from .service import ReviewService

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 5
DEFAULT_VERIFY_SAMPLE_SIZE = 15


class ProposalError(RuntimeError):
    """Raised for unknown proposal ids or operations a proposal does not support."""


@dataclass
class GenerationResult:
    proposals: List[Proposal] = field(default_factory=list)
    discarded: Dict[str, int] = field(default_factory=dict)
    failed: bool = False
    message: Optional[str] = None

    def discard(self, reason: str) -> None:
        self.discarded[reason] = self.discarded.get(reason, 0) + 1


@dataclass
class AcceptResult:
    proposal: Proposal
    records_changed: int = 0
    dropped: List[str] = field(default_factory=list)


class ConsolidationEngine:
    """Generate, filter and apply taxonomy proposals against one corpus."""

    def __init__(
        self,
        corpus: Corpus,
        service: ReviewService,
        *,
        policy: RetryPolicy | None = None,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        verify_sample_size: int = DEFAULT_VERIFY_SAMPLE_SIZE,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.corpus = corpus
        self.service = service
        self.policy = policy or RetryPolicy(max_retries=3)
        self.sample_size = sample_size
        self.verify_sample_size = verify_sample_size
        self._sleep = sleep
        self._rng = rng

    @property
    def pending(self) -> List[Proposal]:
        return list(self.corpus.pending_proposals)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    def generate(self) -> GenerationResult:
        """Request a fresh proposal list and replace the pending one with it.

        A failed request leaves the current pending list in place.
        """

        with self.corpus.exclusive("consolidation"):
            result = GenerationResult()
            if not self.corpus.records:
                return result
            attempt = call_with_retries(
                lambda: self.service.propose_consolidation(
                    self.corpus.taxonomy_samples(self.sample_size),
                    locks=self.corpus.locks.describe(),
                    rejected=self.corpus.rejections.describe(),
                    topic=self.corpus.topic,
                ),
                self.policy,
                sleep=self._sleep,
                rng=self._rng,
                label="Consolidation",
            )
            outcome = attempt.outcome
            if not outcome.ok:
                assert outcome.failure is not None
                logger.warning("Consolidation produced no proposals: %s", outcome.failure.message)
                result.failed = True
                result.message = outcome.failure.message
                return result

            taxonomy = self.corpus.taxonomy()
            seen = set()
            for proposal in outcome.value or []:
                reason = self._rejection_reason(proposal, taxonomy)
                if reason is None:
                    signature = proposal.signature()
                    if signature in self.corpus.rejections:
                        reason = "rejected"
                    elif signature in seen:
                        reason = "duplicate"
                    else:
                        seen.add(signature)
                if reason is not None:
                    logger.debug("Discarding proposal %s (%s)", proposal.describe(), reason)
                    result.discard(reason)
                    continue
                proposal.id = f"p{len(result.proposals) + 1}"
                result.proposals.append(proposal)

            self.corpus.pending_proposals = list(result.proposals)
            self.corpus.revision += 1
            logger.info(
                "Consolidation produced %d proposals (%d discarded)",
                len(result.proposals),
                sum(result.discarded.values()),
            )
            return result

    def _rejection_reason(
        self, proposal: Proposal, taxonomy: Mapping[str, Sequence[str]]
    ) -> Optional[str]:
        """Canonicalise ``proposal`` in place; return why it must be dropped, if so."""

        if isinstance(proposal, ThemeMerge):
            category = _resolve(proposal.category, taxonomy)
            if category is None:
                return "unknown"
            proposal.category = category
            themes: List[str] = []
            for theme in proposal.themes:
                resolved = _resolve(theme, taxonomy[category])
                if resolved is None:
                    return "unknown"
                if resolved not in themes:
                    themes.append(resolved)
            proposal.themes = themes
        elif isinstance(proposal, ThemeMove):
            category = _resolve(proposal.category, taxonomy)
            theme = _resolve(proposal.theme, taxonomy[category]) if category is not None else None
            if category is None or theme is None:
                return "unknown"
            proposal.category, proposal.theme = category, theme
            proposal.target_category = _resolve(proposal.target_category, taxonomy) or proposal.target_category
        elif isinstance(proposal, CategoryMerge):
            source = _resolve(proposal.source, taxonomy)
            target = _resolve(proposal.target, taxonomy)
            if source is None or target is None:
                return "unknown"
            proposal.source, proposal.target = source, target
        elif isinstance(proposal, CategoryRename):
            old = _resolve(proposal.old, taxonomy)
            if old is None:
                return "unknown"
            proposal.old = old
        else:
            return "unsupported"

        if _touches_lock(proposal, self.corpus.locks):
            return "locked"
        if proposal.is_noop():
            return "noop"
        return None

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------
    def get(self, proposal_id: str) -> Proposal:
        for proposal in self.corpus.pending_proposals:
            if proposal.id == proposal_id:
                return proposal
        raise ProposalError(f"No pending proposal with id {proposal_id!r}")

    def accept(self, proposal_id: str) -> AcceptResult:
        with self.corpus.exclusive("consolidation"):
            proposal = self.get(proposal_id)
            self._remove(proposal_id)
            result = AcceptResult(proposal=proposal)

            if isinstance(proposal, ThemeMerge):
                for theme in proposal.themes:
                    changed, _ = self._rewrite(proposal.category, theme, new_theme=proposal.new_theme)
                    result.records_changed += changed
            elif isinstance(proposal, ThemeMove):
                result.records_changed, _ = self._rewrite(
                    proposal.category, proposal.theme, new_category=proposal.target_category
                )
            elif isinstance(proposal, CategoryMerge):
                result.records_changed, result.dropped = self._rewrite(
                    proposal.source, new_category=proposal.target
                )
            elif isinstance(proposal, CategoryRename):
                result.records_changed, result.dropped = self._rewrite(
                    proposal.old, new_category=proposal.new
                )
            else:  # pragma: no cover - generation never stores other kinds
                raise ProposalError(f"Unsupported proposal kind {proposal.kind!r}")

            logger.info(
                "Accepted %s: %d records changed, %d proposals dropped",
                proposal.describe(),
                result.records_changed,
                len(result.dropped),
            )
            return result

    def reject(self, proposal_id: str) -> Proposal:
        with self.corpus.exclusive("consolidation"):
            proposal = self.get(proposal_id)
            self.corpus.rejections.add(proposal.signature())
            self._remove(proposal_id)
            logger.info("Rejected %s", proposal.describe())
            return proposal

    def verify(self, proposal_id: str) -> Optional[bool]:
        """Re-check a theme move against a larger sample of its titles.

        Returns ``True`` (marked verified), ``False`` (invalid, discarded) or
        ``None`` when the service could not answer; the proposal is then left
        as it was.
        """

        with self.corpus.exclusive("consolidation"):
            proposal = self.get(proposal_id)
            if not isinstance(proposal, ThemeMove):
                raise ProposalError("Only theme moves can be verified")
            titles = self.corpus.titles_for(
                proposal.category, proposal.theme, self.verify_sample_size
            )
            attempt = call_with_retries(
                lambda: self.service.verify_move(proposal, titles, topic=self.corpus.topic),
                self.policy,
                sleep=self._sleep,
                rng=self._rng,
                label="Move verification",
            )
            outcome = attempt.outcome
            if not outcome.ok or outcome.value is None:
                logger.warning("Could not verify %s; leaving it unchanged", proposal.describe())
                return None
            if not outcome.value.valid:
                self._remove(proposal_id)
                logger.info("Discarded invalid move %s: %s", proposal.describe(), outcome.value.reason)
                return False
            proposal.verified = True
            if outcome.value.reason:
                proposal.reason = outcome.value.reason
            self.corpus.revision += 1
            return True

    def reverse(self, proposal_id: str) -> Proposal:
        """Replace a category merge or theme move by the opposite category merge."""

        with self.corpus.exclusive("consolidation"):
            proposal = self.get(proposal_id)
            if isinstance(proposal, CategoryMerge):
                source, target = proposal.target, proposal.source
            elif isinstance(proposal, ThemeMove):
                source, target = proposal.target_category, proposal.category
            else:
                raise ProposalError("Only category merges and theme moves can be reversed")
            for name in (source, target):
                if self.corpus.locks.is_category_locked(name):
                    raise ProposalError(f"Cannot reverse: category {name!r} is locked")

            if isinstance(proposal, CategoryMerge):
                reason = self._justify(source, target)
            else:
                reason = _templated_reason(source, target)
            reversed_proposal = CategoryMerge(id=proposal.id, reason=reason, source=source, target=target)
            index = self.corpus.pending_proposals.index(proposal)
            self.corpus.pending_proposals[index] = reversed_proposal
            self.corpus.revision += 1
            logger.info("Reversed %s into %s", proposal.describe(), reversed_proposal.describe())
            return reversed_proposal

    def _justify(self, source: str, target: str) -> str:
        attempt = call_with_retries(
            lambda: self.service.justify_reversal(source, target, topic=self.corpus.topic),
            self.policy,
            sleep=self._sleep,
            rng=self._rng,
            label="Reversal justification",
        )
        if attempt.outcome.ok and attempt.outcome.value:
            return attempt.outcome.value
        return _templated_reason(source, target)

    # ------------------------------------------------------------------
    # Direct edits and locks
    # ------------------------------------------------------------------
    def rename_category(self, old: str, new: str) -> AcceptResult:
        new = new.strip()
        if not new:
            raise ValueError("New category name must not be empty")
        with self.corpus.exclusive("consolidation"):
            if old not in self.corpus.taxonomy():
                raise ValueError(f"Unknown category {old!r}")
            changed, dropped = self._rewrite(old, new_category=new)
            logger.info("Renamed category %s -> %s (%d records)", old, new, changed)
            return AcceptResult(
                proposal=CategoryRename(id="manual", reason="user rename", old=old, new=new),
                records_changed=changed,
                dropped=dropped,
            )

    def lock_category(self, category: str) -> List[str]:
        self.corpus.locks.lock_category(category)
        return self._prune_locked()

    def lock_theme(self, category: str, theme: str) -> List[str]:
        self.corpus.locks.lock_theme(category, theme)
        return self._prune_locked()

    def unlock_category(self, category: str) -> bool:
        return self.corpus.locks.unlock_category(category)

    def unlock_theme(self, category: str, theme: str) -> bool:
        return self.corpus.locks.unlock_theme(category, theme)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _rewrite(
        self,
        category: str,
        theme: str | None = None,
        *,
        new_category: str | None = None,
        new_theme: str | None = None,
    ) -> Tuple[int, List[str]]:
        """Rewrite records and, for whole-category changes, proposals and locks.

        Returns the number of changed records and the ids of pending proposals
        dropped because the substitution made them no-ops.
        """

        changed = self.corpus.reassign(
            category, theme, new_category=new_category, new_theme=new_theme
        )
        dropped: List[str] = []
        if theme is None and new_category and new_category != category:
            self.corpus.locks.rename_category(category, new_category)
            kept: List[Proposal] = []
            for proposal in self.corpus.pending_proposals:
                if proposal.substitute_category(category, new_category) and proposal.is_noop():
                    logger.debug("Dropping %s after category substitution", proposal.describe())
                    dropped.append(proposal.id)
                    continue
                kept.append(proposal)
            self.corpus.pending_proposals = kept
        self.corpus.revision += 1
        return changed, dropped

    def _remove(self, proposal_id: str) -> None:
        self.corpus.pending_proposals = [
            proposal for proposal in self.corpus.pending_proposals if proposal.id != proposal_id
        ]
        self.corpus.revision += 1

    def _prune_locked(self) -> List[str]:
        locks = self.corpus.locks
        dropped: List[str] = []
        kept: List[Proposal] = []
        for proposal in self.corpus.pending_proposals:
            if _touches_lock(proposal, locks):
                dropped.append(proposal.id)
            else:
                kept.append(proposal)
        self.corpus.pending_proposals = kept
        return dropped


def _touches_lock(proposal: Proposal, locks: LockSet) -> bool:
    """Whether ``proposal`` reads or writes a locked category or theme.

    Moving a theme *into* a locked category is the one edit a lock allows.
    """

    if isinstance(proposal, ThemeMerge):
        pairs = [(proposal.category, theme) for theme in [*proposal.themes, proposal.new_theme]]
        return any(locks.is_theme_locked(category, theme) for category, theme in pairs)
    if isinstance(proposal, ThemeMove):
        return locks.is_theme_locked(proposal.category, proposal.theme)
    if isinstance(proposal, CategoryMerge):
        return locks.is_category_locked(proposal.source) or locks.is_category_locked(proposal.target)
    if isinstance(proposal, CategoryRename):
        return locks.is_category_locked(proposal.old) or locks.is_category_locked(proposal.new)
    return False

def _resolve(name: str, candidates: Sequence[str] | Mapping[str, object]) -> Optional[str]:
    key = normalise_key(name)
    for candidate in candidates:
        if normalise_key(candidate) == key:
            return candidate
    return None


def _templated_reason(source: str, target: str) -> str:
    return f"Merge '{source}' into '{target}' to keep the broader section."


__all__ = [
    "AcceptResult",
    "ConsolidationEngine",
    "DEFAULT_SAMPLE_SIZE",
    "DEFAULT_VERIFY_SAMPLE_SIZE",
    "GenerationResult",
    "ProposalError",
]
