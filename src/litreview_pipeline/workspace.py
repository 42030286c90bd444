"""Single command-processing entry point over one persisted corpus.

A :class:`ReviewWorkspace` owns the corpus loaded from the state document and
builds the pipeline components around it on demand.  Every mutating command
writes the state document back when it finishes; extraction also saves after
each merged batch so an interrupted run loses nothing.
"""

from __future__ import annotations

import logging
from pathlib import Path
import random
import time
from typing import Any, Callable, Dict, List, Optional

from .audit import TaxonomyAuditor
from .config_utils import MissingSecretError, PipelineSettings, load_config
from .consolidation import AcceptResult, ConsolidationEngine, GenerationResult
from .corpus import Corpus
from .extraction import ExtractionPipeline, ExtractionResult
from .llm import LLMClient
from .models import Proposal, ThemeMove
from .normalization import NormalizationResult, TermNormalizer
from .service import ReviewService, SectionSynthesis
from .synthesis import ReviewSynthesis, SectionSynthesizer

logger = logging.getLogger(__name__)


class ReviewWorkspace:
    def __init__(
        self,
        settings: PipelineSettings,
        *,
        llm_client: Any | None = None,
        corpus: Corpus | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
        autosave: bool = True,
    ) -> None:
        self.settings = settings
        self.state_path = Path(settings.state_path)
        if corpus is None:
            corpus = Corpus.load(self.state_path) if self.state_path.exists() else Corpus()
        if settings.topic and not corpus.topic:
            corpus.topic = settings.topic
        self.corpus = corpus
        self.autosave = autosave
        self._llm = llm_client
        self._service: Optional[ReviewService] = None
        self._pipeline: Optional[ExtractionPipeline] = None
        self._sleep = sleep
        self._rng = rng

    @classmethod
    def from_config_file(
        cls, path: str | Path, *, env: Dict[str, str] | None = None, **kwargs: Any
    ) -> "ReviewWorkspace":
        config_path = Path(path)
        settings = PipelineSettings.from_config(
            load_config(config_path), env=env, base_path=config_path.parent
        )
        return cls(settings, **kwargs)

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------
    @property
    def service(self) -> ReviewService:
        if self._service is None:
            if self._llm is None:
                if not self.settings.api_key:
                    raise MissingSecretError(
                        "No LLM API key configured; set api_keys.openai in the config or "
                        "export OPENAI_API_KEY"
                    )
                self._llm = LLMClient(self.settings.llm_config(), api_key=self.settings.api_key)
            self._service = ReviewService(
                self._llm,
                model=self.settings.model,
                temperature=self.settings.temperature,
                enable_species=self.settings.enable_species,
            )
        return self._service

    def _engine(self, *, offline: bool = False) -> ConsolidationEngine:
        # accept, reject, rename and lock edits never call the service
        service = self._service if offline else self.service
        return ConsolidationEngine(
            self.corpus,
            service,
            policy=self.settings.consolidation_policy(),
            sample_size=self.settings.sample_size,
            verify_sample_size=self.settings.verify_sample_size,
            sleep=self._sleep,
            rng=self._rng,
        )

    def _extraction_pipeline(self) -> ExtractionPipeline:
        self._pipeline = ExtractionPipeline(
            self.corpus,
            self.service,
            policy=self.settings.extraction_policy(),
            auditor=TaxonomyAuditor(
                self.service,
                policy=self.settings.consolidation_policy(),
                sleep=self._sleep,
                rng=self._rng,
            ),
            courtesy_delay=self.settings.courtesy_delay,
            max_chunk_size=self.settings.max_chunk_size,
            sleep=self._sleep,
            rng=self._rng,
            on_progress=lambda corpus: self.save(),
        )
        return self._pipeline

    def save(self) -> None:
        if self.autosave:
            self.corpus.save(self.state_path)

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------
    def extract(self, text: str) -> ExtractionResult:
        return self._extraction_pipeline().run(text)

    def fix(self, corrected_text: str) -> ExtractionResult:
        return self._extraction_pipeline().resume_with_fix(corrected_text)

    def resume(self) -> ExtractionResult:
        return self._extraction_pipeline().resume()

    def request_stop(self) -> None:
        if self._pipeline is not None:
            self._pipeline.request_stop()

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------
    def generate_proposals(self) -> GenerationResult:
        result = self._engine().generate()
        self.save()
        return result

    def pending_proposals(self) -> List[Proposal]:
        return list(self.corpus.pending_proposals)

    def accept(self, proposal_id: str) -> AcceptResult:
        result = self._engine(offline=True).accept(proposal_id)
        self.save()
        return result

    def reject(self, proposal_id: str) -> Proposal:
        proposal = self._engine(offline=True).reject(proposal_id)
        self.save()
        return proposal

    def verify(self, proposal_id: str) -> Optional[bool]:
        verdict = self._engine().verify(proposal_id)
        self.save()
        return verdict

    def reverse(self, proposal_id: str) -> Proposal:
        # only category-merge reversals ask the service for a new reason
        moving = isinstance(self._engine(offline=True).get(proposal_id), ThemeMove)
        proposal = self._engine(offline=moving).reverse(proposal_id)
        self.save()
        return proposal

    def rename_category(self, old: str, new: str) -> AcceptResult:
        result = self._engine(offline=True).rename_category(old, new)
        self.save()
        return result

    def lock(self, category: str, theme: str | None = None) -> List[str]:
        with self.corpus.exclusive("lock"):
            engine = self._engine(offline=True)
            dropped = engine.lock_theme(category, theme) if theme else engine.lock_category(category)
        self.save()
        return dropped

    def unlock(self, category: str, theme: str | None = None) -> bool:
        with self.corpus.exclusive("unlock"):
            engine = self._engine(offline=True)
            removed = engine.unlock_theme(category, theme) if theme else engine.unlock_category(category)
        self.save()
        return removed

    # ------------------------------------------------------------------
    # Normalisation and synthesis
    # ------------------------------------------------------------------
    def normalize(self) -> NormalizationResult:
        normalizer = TermNormalizer(
            self.service,
            chunk_size=self.settings.normalization_chunk_size,
            policy=self.settings.consolidation_policy(),
            sleep=self._sleep,
            rng=self._rng,
        )
        result = normalizer.run(self.corpus)
        self.save()
        return result

    def synthesize(self, category: str, theme: str | None = None) -> Optional[SectionSynthesis]:
        synthesizer = SectionSynthesizer(self.service, sleep=self._sleep, rng=self._rng)
        return synthesizer.synthesize(self.corpus, category, theme)

    def synthesize_all(self) -> ReviewSynthesis:
        synthesizer = SectionSynthesizer(self.service, sleep=self._sleep, rng=self._rng)
        return synthesizer.synthesize_all(self.corpus)

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------
    def export_state(self, path: str | Path) -> Path:
        return self.corpus.save(path)

    def import_state(self, path: str | Path) -> Corpus:
        with self.corpus.exclusive("import"):
            loaded = Corpus.load(path)
        if not loaded.topic:
            loaded.topic = self.corpus.topic
        self.corpus = loaded
        self._pipeline = None
        self.save()
        logger.info("Imported %d records from %s", len(loaded.records), path)
        return loaded

    def reset(self) -> None:
        with self.corpus.exclusive("reset"):
            self.corpus.reset()
        self.save()
        logger.info("Corpus reset")

    def summary(self) -> Dict[str, Any]:
        taxonomy = self.corpus.taxonomy()
        extraction = self.corpus.extraction
        return {
            "topic": self.corpus.topic,
            "records": len(self.corpus.records),
            "categories": len(taxonomy),
            "themes": sum(len(themes) for themes in taxonomy.values()),
            "normalized": self.corpus.normalized,
            "pending_proposals": len(self.corpus.pending_proposals),
            "locks": self.corpus.locks.describe(),
            "rejected": len(self.corpus.rejections),
            "extraction": {
                "status": extraction.status.value,
                "batch": extraction.batch_index,
                "total_batches": extraction.total_batches,
            },
        }


__all__ = ["ReviewWorkspace"]
