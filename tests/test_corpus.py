from __future__ import annotations

import json
from pathlib import Path

import pytest

from litreview_pipeline.corpus import Corpus, CorpusBusyError
from litreview_pipeline.models import (
    BatchState,
    BatchStatus,
    CategoryMerge,
    CategoryRename,
    LockSet,
    Record,
    RejectionLog,
    ThemeMerge,
    ThemeMove,
)


def _record(record_id: str, category: str, theme: str, **extra) -> Record:
    return Record(id=record_id, title=f"Title {record_id}", category=category, theme=theme, **extra)


def _sample_corpus() -> Corpus:
    corpus = Corpus(
        [
            _record("b1-p0", "Fire", "Survival", batch_id=1),
            _record("b1-p1", "Fire", "Growth", batch_id=1),
            _record("b2-p0", "Drought", "Survival", batch_id=2),
        ],
        topic="Fire ecology",
        batch_counter=2,
    )
    corpus.locks.lock_category("Drought")
    corpus.locks.lock_theme("Fire", "Growth")
    corpus.rejections.add(ThemeMove(id="x", category="Fire", theme="Survival", target_category="Drought").signature())
    corpus.pending_proposals = [
        ThemeMerge(id="p1", reason="same", category="Fire", themes=["Survival", "Growth"], new_theme="Fitness"),
        CategoryMerge(id="p2", source="Fire", target="Drought"),
        CategoryRename(id="p3", old="Fire", new="Wildfire", verified=True),
    ]
    corpus.extraction = BatchState(
        status=BatchStatus.AWAITING_FIX,
        batch_index=1,
        batches=["first", "second"],
        fix_text="second",
        error_kind="parse_failure",
        message="bad json",
    )
    return corpus


def test_state_document_round_trip(tmp_path: Path) -> None:
    corpus = _sample_corpus()
    path = corpus.save(tmp_path / "state.json")

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert set(payload) == {
        "version",
        "topic",
        "normalized",
        "records",
        "batch_counter",
        "locks",
        "rejected_signatures",
        "pending_proposals",
        "extraction",
    }
    assert payload["rejected_signatures"] == [["move_theme", "fire", "survival", "drought"]]

    loaded = Corpus.load(path)
    assert loaded.to_dict() == corpus.to_dict()
    assert loaded.records == corpus.records
    assert isinstance(loaded.pending_proposals[0], ThemeMerge)
    assert loaded.pending_proposals[2].verified is True
    assert loaded.extraction.status is BatchStatus.AWAITING_FIX
    assert loaded.locks.is_theme_locked("fire", "growth")


def test_from_dict_accepts_legacy_papers_export() -> None:
    corpus = Corpus.from_dict(
        {
            "reviewTopic": "Birds",
            "papers": [
                {
                    "id": "b2-p0-1700000000000",
                    "title": "A",
                    "abstractSnippet": "Short abstract",
                    "category": "Climate",
                    "theme": "Heat",
                    "driver": "Temperature",
                    "driverGroup": "Climate",
                    "response": "Survival",
                    "responseGroup": "Demography",
                    "effectDirection": "negative",
                    "keyFinding": "KF",
                    "impactKeywords": "heat, survival",
                    "location": "Spain",
                    "species": "Parus major",
                    "batchId": 2,
                    "authors": "Smith",
                    "year": 2020,
                    "journal": "Ibis",
                    "shortCitation": "Smith 2020",
                    "modelUsed": "gpt-test",
                },
                {"id": "b3-p0", "title": "B", "category": "X", "theme": "Y", "driver": "Rain", "batchId": 3},
            ],
        }
    )

    first, second = corpus.records
    assert corpus.topic == "Birds"
    assert corpus.batch_counter == 3
    assert first.abstract_summary == "Short abstract"
    assert first.effect_direction == "Negative"
    assert (first.driver_group, first.response_group) == ("Climate", "Demography")
    assert (first.key_finding, first.impact_keywords, first.short_citation) == ("KF", "heat, survival", "Smith 2020")
    assert (first.year, first.batch_id, first.model_used) == ("2020", 2, "gpt-test")
    assert second.driver_group == "Rain"
    assert second.effect_direction == "Unclear"


def test_taxonomy_is_derived_in_first_seen_order() -> None:
    corpus = _sample_corpus()
    assert corpus.taxonomy() == {"Fire": ["Survival", "Growth"], "Drought": ["Survival"]}
    assert corpus.taxonomy_samples(per_theme=1)["Fire"]["Growth"] == ["Title b1-p1"]


def test_update_records_reports_only_real_changes() -> None:
    corpus = _sample_corpus()
    changed = corpus.update_records(
        {
            "b1-p0": {"driver": "Fire frequency"},
            "b1-p1": {"driver": "Unspecified", "location": "  "},
            "missing": {"driver": "Rain"},
            "b2-p0": {"id": "hijack", "driver": "Rain"},
        }
    )
    assert changed == ["b1-p0", "b2-p0"]
    assert corpus.get("b2-p0").driver == "Rain"
    assert corpus.get("hijack") is None


def test_reassign_rewrites_matching_records() -> None:
    corpus = _sample_corpus()
    assert corpus.reassign("Fire", "Survival", new_theme="Fitness") == 1
    assert corpus.reassign("Fire", new_category="Wildfire") == 2
    assert corpus.taxonomy()["Wildfire"] == ["Fitness", "Growth"]


def test_append_records_rejects_duplicate_ids() -> None:
    corpus = _sample_corpus()
    with pytest.raises(ValueError):
        corpus.append_records([_record("b1-p0", "Fire", "Survival")])


def test_exclusive_guard_refuses_second_operation() -> None:
    corpus = _sample_corpus()
    with corpus.exclusive("extraction"):
        assert corpus.active_operation == "extraction"
        with pytest.raises(CorpusBusyError, match="extraction"):
            with corpus.exclusive("consolidation"):
                pass
    with corpus.exclusive("consolidation"):
        pass
    assert corpus.active_operation is None


def test_reset_clears_records_and_review_state() -> None:
    corpus = _sample_corpus()
    corpus.reset()
    assert corpus.records == []
    assert corpus.batch_counter == 0
    assert corpus.pending_proposals == []
    assert len(corpus.rejections) == 0
    assert corpus.locks.to_dict() == {"categories": [], "themes": []}
    assert corpus.extraction.status is BatchStatus.IDLE


def test_proposal_signatures_are_structural() -> None:
    first = ThemeMerge(id="a", category="Fire ", themes=["Growth", "survival"], new_theme="X")
    second = ThemeMerge(id="b", category="fire", themes=["Survival", "growth"], new_theme="Y")
    assert first.signature() == second.signature() == ("merge_themes", "fire", ("growth", "survival"))
    assert CategoryMerge(id="a", source="B", target="A").signature() == CategoryMerge(
        id="b", source="a", target="b"
    ).signature()
    assert CategoryRename(id="a", old="Old", new="New").signature_text() == "rename_category::old::new"


def test_lock_set_and_rejection_log_serialisation() -> None:
    locks = LockSet()
    locks.lock_theme("Fire", "Growth")
    locks.rename_category("Fire", "Wildfire")
    assert LockSet.from_dict(locks.to_dict()).themes == {("Wildfire", "Growth")}

    log = RejectionLog()
    assert log.add(("move_theme", "a", "b", "c")) is True
    assert log.add(("move_theme", "a", "b", "c")) is False
    assert ("move_theme", "a", "b", "c") in RejectionLog.from_list(log.to_list())


def test_rejections_survive_separators_in_names(tmp_path: Path) -> None:
    corpus = Corpus([Record(id="b1-p0", category="a::b", theme="x|y")])
    rename = CategoryRename(id="p1", old="a::b", new="c").signature()
    merge = ThemeMerge(id="p2", category="a::b", themes=["x|y", "z"], new_theme="w").signature()
    corpus.rejections.add(rename)
    corpus.rejections.add(merge)

    loaded = Corpus.load(corpus.save(tmp_path / "state.json"))

    assert rename in loaded.rejections
    assert merge in loaded.rejections
    assert len(loaded.rejections) == 2


def test_rejections_written_as_text_still_load() -> None:
    log = RejectionLog.from_list(["rename_category::old::new", "merge_themes::fire::growth|survival"])
    assert ("rename_category", "old", "new") in log
    assert ThemeMerge(id="a", category="Fire", themes=["Survival", "Growth"]).signature() in log
