"""Prompts and response decoding for every request sent to the LLM service.

:class:`ReviewService` is the narrow contract the rest of the pipeline relies
on.  Each public method builds a system/user prompt pair, sends it through an
:class:`~litreview_pipeline.llm.LLMClient` compatible object (anything with a
``generate`` method), decodes the strict-JSON reply and returns a
:class:`~litreview_pipeline.errors.ServiceOutcome`.

Classified client errors and undecodable replies come back as failures.
Client errors that fit no :class:`~litreview_pipeline.errors.ErrorKind`
propagate unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import ErrorKind, ServiceOutcome, classify_exception
from .llm import LLMClientError, LLMMessage
from .models import (
    CategoryMerge,
    CategoryRename,
    Proposal,
    Record,
    ThemeMerge,
    ThemeMove,
)
from .parsing import ParsedPayload, ResponseParseError, parse_json_payload

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "General Academic Research"


@dataclass(frozen=True)
class ExtractionReply:
    papers: List[Mapping[str, Any]]
    model_used: Optional[str] = None


@dataclass(frozen=True)
class AuditFix:
    """Reassignment of every record in one (category, theme) pair."""

    category: str
    theme: str
    new_category: str
    new_theme: str
    reason: str = ""


@dataclass(frozen=True)
class MoveVerdict:
    valid: bool
    reason: str = ""


@dataclass(frozen=True)
class SectionSynthesis:
    summary: List[str] | str
    contradiction_analysis: str
    model_used: Optional[str] = None


@dataclass(frozen=True)
class TermUpdate:
    paper_id: str
    changes: Dict[str, str] = field(default_factory=dict)


class ReviewService:
    """Build prompts for the review workflow and decode the service replies."""

    EXTRACTION_SYSTEM_PROMPT = (
        "You are an expert systematic review data extractor. Process the batch of raw "
        'citation text (title, abstract, authors, year, journal) for a review on "{topic}".\n\n'
        "INSTRUCTIONS:\n"
        "1. Extract metadata (title, authors, year, journal). Separate the citation from the "
        "title, ignore list numbering such as '25.' and keep only the English title when a "
        "bracketed translation follows it.\n"
        "2. Condense the abstract into 'abstract_summary'.\n"
        "3. Determine 'main_category' (high level) and 'sub_theme' (specific, outcome based). "
        "Group papers by the response variable, never by the driver, and do not create a "
        "category that repeats the review topic.\n"
        "4. Extract 'driver_variable' and 'response_variable' as short standard terms, "
        "'effect_direction' as one of Positive, Negative, Neutral, Complex, Methodological "
        "(Positive/Negative assume the driver increases) and 'study_location' as an English "
        "country or region name.{species_rule}\n"
        "5. Generate 'key_finding', 'impact_keywords' and 'short_citation'.\n\n"
        "EXISTING TAXONOMY HINT: {taxonomy}\n\n"
        "OUTPUT (strict JSON):\n"
        '{{"papers": [{{"title": "...", "authors": "...", "year": "...", "journal": "...", '
        '"abstract_summary": "...", "main_category": "...", "sub_theme": "...", '
        '"driver_variable": "...", "response_variable": "...", "effect_direction": "...", '
        '"study_location": "...",{species_field} "key_finding": "...", '
        '"impact_keywords": "...", "short_citation": "..."}}]}}'
    )

    SPECIES_RULE = (
        "\n   'study_species': species name or group without counts (say 'Birds (General)' "
        "rather than '18 bird species'); prefer common names."
    )

    CONSOLIDATION_SYSTEM_PROMPT = (
        'You are an expert taxonomy architect for a systematic review on "{topic}". '
        "Review the category -> theme structure and the sample titles. Suggest structural "
        "edits only where they clearly improve the manuscript outline: merge synonymous "
        "themes within a category, move a theme that belongs in another existing category, "
        "merge redundant categories, or rename a category.\n"
        "Never touch these locked entries (they may still receive moved themes): {locks}\n"
        "Never repeat these rejected suggestions: {rejected}\n\n"
        "OUTPUT (strict JSON):\n"
        '{{"suggestions": [{{"category": "...", '
        '"merge_themes": {{"themes": ["..."], "new_theme": "...", "reason": "..."}}, '
        '"move_theme": {{"theme": "...", "target_category": "...", "reason": "..."}}, '
        '"merge_category": {{"target": "...", "reason": "..."}}, '
        '"rename_category": {{"new_name": "...", "reason": "..."}}}}]}}\n'
        "Omit the keys that do not apply. Return an empty list when the structure is fine."
    )

    AUDIT_SYSTEM_PROMPT = (
        'You audit the taxonomy of a systematic review on "{topic}". Each line is '
        "'category ||| theme'. Find themes duplicated across categories and themes that "
        "are redundant with their parent or a sibling. For each problem return the exact "
        "existing pair and the pair its records should move to.\n"
        "OUTPUT (strict JSON):\n"
        '{{"fixes": [{{"category": "...", "theme": "...", "new_category": "...", '
        '"new_theme": "...", "reason": "..."}}]}}'
    )

    VERIFY_SYSTEM_PROMPT = (
        'You check a proposed edit to the taxonomy of a review on "{topic}". The theme '
        "'{theme}' currently sits in category '{category}'. Decide whether moving it into "
        "'{target}' is correct given the titles of the papers it contains.\n"
        'OUTPUT (strict JSON): {{"valid": true|false, "reason": "..."}}'
    )

    REVERSAL_SYSTEM_PROMPT = (
        'You justify a taxonomy decision for a review on "{topic}". In one sentence, '
        "explain why category '{source}' should be merged into category '{target}'.\n"
        'OUTPUT (strict JSON): {{"reason": "..."}}'
    )

    NORMALIZATION_SYSTEM_PROMPT = (
        'You normalise metadata for a systematic review on "{topic}". Standardise '
        "synonymous drivers (e.g. 'Rainfall' and 'Precipitation' -> 'Precipitation'), "
        "locations ('USA' -> 'United States') and species ('5 ducks' -> 'Anatidae (Ducks)'). "
        "Assign a broader 'new_driver_group' and 'new_response_group' to every paper. "
        "Return the current value when nothing needs to change.\n"
        "OUTPUT (strict JSON):\n"
        '{{"updates": [{{"paper_id": "...", "new_driver": "...", "new_driver_group": "...", '
        '"new_response": "...", "new_response_group": "...", "new_location": "...", '
        '"new_species": "..."}}]}}'
    )

    SYNTHESIS_SYSTEM_PROMPT = (
        'Generate a synthesis for section "{section}" (topic: "{topic}"). '
        "TASK 1: bulleted summary of the findings with citations. "
        "TASK 2: contradiction analysis across the studies.\n"
        'OUTPUT (strict JSON): {{"summary": ["..."], "contradictionAnalysis": "..."}}'
    )

    NORMALIZED_FIELDS: Tuple[Tuple[str, str], ...] = (
        ("new_driver", "driver"),
        ("new_driver_group", "driver_group"),
        ("new_response", "response"),
        ("new_response_group", "response_group"),
        ("new_location", "location"),
        ("new_species", "species"),
    )

    def __init__(
        self,
        llm_client: Any,
        *,
        model: str | None = None,
        temperature: float | None = None,
        enable_species: bool = False,
    ) -> None:
        self._llm = llm_client
        self._model = model
        self._temperature = temperature
        self.enable_species = enable_species

    @property
    def model_name(self) -> Optional[str]:
        if self._model:
            return self._model
        config = getattr(self._llm, "config", None)
        return getattr(config, "model", None)

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------
    def extract_batch(
        self,
        text: str,
        *,
        taxonomy: Mapping[str, Sequence[str]],
        topic: str = "",
        species: bool | None = None,
    ) -> ServiceOutcome[ExtractionReply]:
        """``species`` overrides :attr:`enable_species` for this batch."""

        with_species = self.enable_species if species is None else species
        system = self.EXTRACTION_SYSTEM_PROMPT.format(
            topic=_topic(topic),
            taxonomy=json.dumps(taxonomy, ensure_ascii=False),
            species_rule=self.SPECIES_RULE if with_species else "",
            species_field=' "study_species": "...",' if with_species else "",
        )
        user = f"Process this raw data batch:\n{text}"

        def decode(data: Any) -> ExtractionReply:
            if isinstance(data, Mapping):
                papers = data.get("papers")
            else:
                papers = data
            if not isinstance(papers, list):
                raise ResponseParseError("Reply does not contain a 'papers' list", raw=str(data))
            entries = [entry for entry in papers if isinstance(entry, Mapping)]
            return ExtractionReply(papers=entries, model_used=self.model_name)

        return self._request(system, user, decode, label="extraction")

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------
    def propose_consolidation(
        self,
        samples: Mapping[str, Mapping[str, Sequence[str]]],
        *,
        locks: Sequence[str] = (),
        rejected: Sequence[str] = (),
        topic: str = "",
    ) -> ServiceOutcome[List[Proposal]]:
        system = self.CONSOLIDATION_SYSTEM_PROMPT.format(
            topic=_topic(topic),
            locks=json.dumps(list(locks), ensure_ascii=False),
            rejected=json.dumps(list(rejected), ensure_ascii=False),
        )
        user = "TAXONOMY WITH SAMPLE TITLES:\n" + json.dumps(samples, ensure_ascii=False, indent=1)

        def decode(data: Any) -> List[Proposal]:
            entries = data.get("suggestions") if isinstance(data, Mapping) else data
            if not isinstance(entries, list):
                raise ResponseParseError("Reply does not contain a 'suggestions' list", raw=str(data))
            proposals: List[Proposal] = []
            for entry in entries:
                if isinstance(entry, Mapping):
                    proposals.extend(decode_suggestion(entry))
            return proposals

        return self._request(system, user, decode, label="consolidation")

    def verify_move(
        self,
        move: ThemeMove,
        titles: Sequence[str],
        *,
        topic: str = "",
    ) -> ServiceOutcome[MoveVerdict]:
        system = self.VERIFY_SYSTEM_PROMPT.format(
            topic=_topic(topic),
            theme=move.theme,
            category=move.category,
            target=move.target_category,
        )
        user = "PAPER TITLES:\n" + "\n".join(f"- {title}" for title in titles)

        def decode(data: Any) -> MoveVerdict:
            if not isinstance(data, Mapping) or "valid" not in data:
                raise ResponseParseError("Reply does not contain a 'valid' flag", raw=str(data))
            return MoveVerdict(valid=_as_bool(data.get("valid")), reason=_text(data.get("reason")))

        return self._request(system, user, decode, label="move verification")

    def justify_reversal(
        self,
        source: str,
        target: str,
        *,
        topic: str = "",
    ) -> ServiceOutcome[str]:
        system = self.REVERSAL_SYSTEM_PROMPT.format(topic=_topic(topic), source=source, target=target)
        user = f"Merge '{source}' into '{target}'."

        def decode(data: Any) -> str:
            reason = _text(data.get("reason")) if isinstance(data, Mapping) else ""
            if not reason:
                raise ResponseParseError("Reply does not contain a 'reason'", raw=str(data))
            return reason

        return self._request(system, user, decode, label="reversal justification")

    def audit_taxonomy(
        self,
        pairs: Sequence[str],
        *,
        topic: str = "",
    ) -> ServiceOutcome[List[AuditFix]]:
        system = self.AUDIT_SYSTEM_PROMPT.format(topic=_topic(topic))
        user = "TAXONOMY:\n" + "\n".join(pairs)

        def decode(data: Any) -> List[AuditFix]:
            entries = data.get("fixes") if isinstance(data, Mapping) else data
            if not isinstance(entries, list):
                raise ResponseParseError("Reply does not contain a 'fixes' list", raw=str(data))
            fixes: List[AuditFix] = []
            for entry in entries:
                if not isinstance(entry, Mapping):
                    continue
                values = [_text(entry.get(key)) for key in ("category", "theme", "new_category", "new_theme")]
                if not all(values):
                    continue
                fixes.append(AuditFix(*values, reason=_text(entry.get("reason"))))
            return fixes

        return self._request(system, user, decode, label="taxonomy audit")

    # ------------------------------------------------------------------
    # Normalisation and synthesis
    # ------------------------------------------------------------------
    def normalize_terms(
        self,
        summaries: Sequence[Mapping[str, Any]],
        *,
        topic: str = "",
    ) -> ServiceOutcome[List[TermUpdate]]:
        system = self.NORMALIZATION_SYSTEM_PROMPT.format(topic=_topic(topic))
        user = "PAPER LIST:\n" + json.dumps(list(summaries), ensure_ascii=False)

        def decode(data: Any) -> List[TermUpdate]:
            if isinstance(data, Mapping):
                entries = data.get("updates", data.get("moves"))
            else:
                entries = data
            if not isinstance(entries, list):
                raise ResponseParseError("Reply does not contain an 'updates' list", raw=str(data))
            updates: List[TermUpdate] = []
            for entry in entries:
                if not isinstance(entry, Mapping):
                    continue
                paper_id = _text(entry.get("paper_id") or entry.get("id"))
                if not paper_id:
                    continue
                changes = {
                    target: _text(entry.get(source))
                    for source, target in self.NORMALIZED_FIELDS
                    if _text(entry.get(source))
                }
                updates.append(TermUpdate(paper_id=paper_id, changes=changes))
            return updates

        return self._request(system, user, decode, label="term normalisation")

    def synthesize_section(
        self,
        section: str,
        records: Sequence[Record],
        *,
        topic: str = "",
    ) -> ServiceOutcome[SectionSynthesis]:
        system = self.SYNTHESIS_SYSTEM_PROMPT.format(section=section, topic=_topic(topic, "Academic Research"))
        user = "DATA:\n" + "\n---\n".join(
            f'Key Finding: "{record.key_finding}". Keywords: [{record.impact_keywords}]. '
            f"Citation: {record.short_citation}"
            for record in records
        )

        def decode(data: Any) -> SectionSynthesis:
            if not isinstance(data, Mapping):
                raise ResponseParseError("Reply is not a JSON object", raw=str(data))
            return SectionSynthesis(
                summary=clean_summary(data.get("summary")),
                contradiction_analysis=_text(data.get("contradictionAnalysis"))
                or "No analysis generated.",
                model_used=self.model_name,
            )

        return self._request(system, user, decode, label="section synthesis")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _request(
        self,
        system: str,
        user: str,
        decode: Callable[[Any], Any],
        *,
        label: str,
    ) -> ServiceOutcome[Any]:
        messages = [
            LLMMessage(role="system", content=system),
            LLMMessage(role="user", content=user),
        ]
        try:
            response = self._llm.generate(
                [messages], model=self._model, temperature=self._temperature
            )[0]
        except LLMClientError as exc:
            kind = classify_exception(exc)
            if kind is None:
                raise
            logger.debug("%s request failed (%s): %s", label, kind.value, exc)
            return ServiceOutcome.error(
                kind, str(exc), status=getattr(exc, "status_code", None)
            )

        raw = response.content or ""
        if not raw.strip():
            return ServiceOutcome.error(ErrorKind.PARSE_FAILURE, "No data returned from the LLM", raw=raw)
        try:
            parsed: ParsedPayload = parse_json_payload(raw)
            value = decode(parsed.data)
        except ResponseParseError as exc:
            logger.debug("%s reply could not be decoded: %s", label, exc)
            return ServiceOutcome.error(ErrorKind.PARSE_FAILURE, str(exc), raw=raw)
        cut_off = (response.metadata or {}).get("finish_reason") == "length"
        return ServiceOutcome.success(value, truncated=parsed.truncated or cut_off)


def decode_suggestion(entry: Mapping[str, Any]) -> List[Proposal]:
    """Decode every proposal shape present in one suggestion entry.

    Proposals come back without an id; the consolidation engine assigns one.
    """

    category = _text(entry.get("category") or entry.get("main_category"))
    proposals: List[Proposal] = []

    merge = entry.get("merge_themes") or entry.get("suggested_merge")
    if isinstance(merge, Mapping):
        themes = merge.get("themes") or merge.get("themes_to_merge") or []
        if isinstance(themes, list):
            names = [_text(theme) for theme in themes if _text(theme)]
            new_theme = _text(merge.get("new_theme") or merge.get("new_theme_name"))
            if category and names and new_theme:
                proposals.append(
                    ThemeMerge(
                        id="",
                        reason=_text(merge.get("reason")),
                        category=category,
                        themes=names,
                        new_theme=new_theme,
                    )
                )

    move = entry.get("move_theme") or entry.get("suggested_move")
    if isinstance(move, Mapping):
        theme = _text(move.get("theme") or move.get("theme_to_move"))
        target = _text(move.get("target_category") or move.get("target_main_category"))
        if category and theme and target:
            proposals.append(
                ThemeMove(
                    id="",
                    reason=_text(move.get("reason")),
                    category=category,
                    theme=theme,
                    target_category=target,
                )
            )

    merge_category = entry.get("merge_category") or entry.get("suggested_category_merge")
    if isinstance(merge_category, Mapping):
        target = _text(merge_category.get("target") or merge_category.get("target_category"))
        if category and target:
            proposals.append(
                CategoryMerge(
                    id="",
                    reason=_text(merge_category.get("reason")),
                    source=category,
                    target=target,
                )
            )

    rename = entry.get("rename_category") or entry.get("suggested_rename")
    if isinstance(rename, Mapping):
        new_name = _text(rename.get("new_name") or rename.get("new_category_name"))
        if category and new_name:
            proposals.append(
                CategoryRename(id="", reason=_text(rename.get("reason")), old=category, new=new_name)
            )

    return proposals


_LIST_TAGS = re.compile(r"</?ul>", re.IGNORECASE)
_ITEM_OPEN = re.compile(r"<li>", re.IGNORECASE)
_ITEM_CLOSE = re.compile(r"</li>", re.IGNORECASE)


def clean_summary(summary: Any) -> List[str] | str:
    """Unwrap ``<ul>/<li>`` HTML into a list of bullet strings."""

    if isinstance(summary, list):
        return [_text(item) for item in summary if _text(item)]
    text = _text(summary)
    if not text:
        return "No summary generated."
    if "<ul>" not in text.lower() and "<li>" not in text.lower():
        return text
    stripped = _LIST_TAGS.sub("", text)
    items = [_ITEM_OPEN.sub("", part).strip() for part in _ITEM_CLOSE.split(stripped)]
    return [item for item in items if item]


def _topic(topic: str, default: str = DEFAULT_TOPIC) -> str:
    return topic.strip() or default


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(_text(item) for item in value if _text(item))
    return str(value).strip()


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "valid", "1"}
    return bool(value)


__all__ = [
    "AuditFix",
    "DEFAULT_TOPIC",
    "ExtractionReply",
    "MoveVerdict",
    "ReviewService",
    "SectionSynthesis",
    "TermUpdate",
    "clean_summary",
    "decode_suggestion",
]
