"""Turn decoded extraction replies into corpus records."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .corpus import Corpus
from .models import UNSPECIFIED, Record, coerce_effect_direction

logger = logging.getLogger(__name__)

# reply key -> record field; the first key present wins
_FIELD_ALIASES: Dict[str, Sequence[str]] = {
    "title": ("title",),
    "authors": ("authors",),
    "year": ("year",),
    "journal": ("journal",),
    "abstract_summary": ("abstract_summary", "abstractSummary"),
    "category": ("main_category", "category"),
    "theme": ("sub_theme", "theme"),
    "driver": ("driver_variable", "driver"),
    "driver_group": ("driver_group",),
    "response": ("response_variable", "response"),
    "response_group": ("response_group",),
    "effect_direction": ("effect_direction", "effectDirection"),
    "location": ("study_location", "location"),
    "species": ("study_species", "species"),
    "key_finding": ("key_finding", "keyFinding"),
    "impact_keywords": ("impact_keywords", "impactKeywords"),
    "short_citation": ("short_citation", "shortCitation"),
}

_DEFAULT_UNSPECIFIED = ("category", "theme", "driver", "response", "location", "species")


@dataclass
class MergeResult:
    batch_id: int
    records: List[Record] = field(default_factory=list)
    taxonomy: Dict[str, List[str]] = field(default_factory=dict)


class ResultMerger:
    """Append extraction replies to a corpus with stable, never-reused ids."""

    def merge(
        self,
        corpus: Corpus,
        papers: Sequence[Mapping[str, Any]],
        *,
        manual_fix: bool = False,
        model_used: Optional[str] = None,
    ) -> MergeResult:
        batch_id = corpus.next_batch_id()
        prefix = f"b{batch_id}-fix-p" if manual_fix else f"b{batch_id}-p"
        records = [
            self.build_record(f"{prefix}{index}", paper, batch_id=batch_id, model_used=model_used)
            for index, paper in enumerate(papers)
        ]
        corpus.append_records(records)
        logger.info(
            "Merged %d records from batch %d%s",
            len(records),
            batch_id,
            " (manual fix)" if manual_fix else "",
        )
        return MergeResult(batch_id=batch_id, records=records, taxonomy=corpus.taxonomy())

    def build_record(
        self,
        record_id: str,
        paper: Mapping[str, Any],
        *,
        batch_id: int,
        model_used: Optional[str] = None,
    ) -> Record:
        values: Dict[str, Any] = {}
        for name, aliases in _FIELD_ALIASES.items():
            values[name] = _first_text(paper, aliases)
        for name in _DEFAULT_UNSPECIFIED:
            values[name] = values[name] or UNSPECIFIED
        values["driver_group"] = values["driver_group"] or values["driver"]
        values["response_group"] = values["response_group"] or values["response"]
        values["effect_direction"] = coerce_effect_direction(values["effect_direction"])
        return Record(id=record_id, batch_id=batch_id, model_used=model_used, **values)


def _first_text(paper: Mapping[str, Any], keys: Sequence[str]) -> str:
    for key in keys:
        value = paper.get(key)
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            text = ", ".join(str(item).strip() for item in value if str(item).strip())
        else:
            text = str(value).strip()
        if text:
            return text
    return ""


__all__ = ["MergeResult", "ResultMerger"]
