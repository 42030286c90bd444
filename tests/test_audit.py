from __future__ import annotations

from litreview_pipeline.audit import TaxonomyAuditor
from litreview_pipeline.corpus import Corpus
from litreview_pipeline.llm import LLMClientError
from litreview_pipeline.models import Record
from litreview_pipeline.service import ReviewService


def _corpus() -> Corpus:
    rows = [
        ("Climate", "Drought"),
        ("Climate", "Heat"),
        ("Water", "Drought"),
        ("Predation", "Nest predation"),
    ]
    return Corpus(
        [Record(id=f"b1-p{index}", category=category, theme=theme) for index, (category, theme) in enumerate(rows)]
    )


def _auditor(llm) -> TaxonomyAuditor:
    return TaxonomyAuditor(ReviewService(llm), sleep=lambda _: None, rng=lambda: 0.0)


def _fix(category, theme, new_category, new_theme) -> dict:
    return {"category": category, "theme": theme, "new_category": new_category, "new_theme": new_theme}


def test_audit_sends_pairs_and_applies_exact_matches(scripted_llm) -> None:
    corpus = _corpus()
    llm = scripted_llm({"fixes": [_fix("Water", "Drought", "Climate", "Drought"), _fix("Climate", "Cold", "Climate", "Heat")]})

    result = _auditor(llm).run(corpus)

    assert llm.user_prompt().splitlines()[1:] == [
        "Climate ||| Drought",
        "Climate ||| Heat",
        "Water ||| Drought",
        "Predation ||| Nest predation",
    ]
    assert result.records_changed == 1
    assert len(result.applied) == 1
    assert len(result.skipped) == 1
    assert corpus.taxonomy() == {"Climate": ["Drought", "Heat"], "Predation": ["Nest predation"]}


def test_audit_respects_locks_on_both_ends(scripted_llm) -> None:
    corpus = _corpus()
    corpus.locks.lock_theme("Water", "Drought")
    corpus.locks.lock_category("Predation")
    llm = scripted_llm(
        {
            "fixes": [
                _fix("Water", "Drought", "Climate", "Drought"),
                _fix("Climate", "Heat", "Predation", "Heat"),
            ]
        }
    )

    result = _auditor(llm).run(corpus)

    assert result.records_changed == 0
    assert len(result.skipped) == 2
    assert corpus.taxonomy()["Water"] == ["Drought"]


def test_audit_failure_leaves_corpus_untouched(scripted_llm) -> None:
    corpus = _corpus()
    before = corpus.to_dict()
    llm = scripted_llm(*[LLMClientError("overloaded", status_code=503) for _ in range(4)])

    result = _auditor(llm).run(corpus)

    assert result.applied == []
    assert corpus.to_dict() == before
    assert len(llm.calls) == 4


def test_empty_corpus_skips_the_request(scripted_llm) -> None:
    llm = scripted_llm()
    assert _auditor(llm).run(Corpus()).records_changed == 0
    assert llm.calls == []
