from __future__ import annotations

from litreview_pipeline.corpus import Corpus
from litreview_pipeline.merger import ResultMerger


def test_merge_assigns_batch_scoped_ids_and_returns_taxonomy(make_paper) -> None:
    corpus = Corpus()
    merger = ResultMerger()

    first = merger.merge(corpus, [make_paper("A"), make_paper("B", theme="Growth")], model_used="m1")
    second = merger.merge(corpus, [make_paper("C", category="Drought")], manual_fix=True)

    assert [record.id for record in first.records] == ["b1-p0", "b1-p1"]
    assert [record.id for record in second.records] == ["b2-fix-p0"]
    assert corpus.batch_counter == 2
    assert first.records[0].model_used == "m1"
    assert second.taxonomy == {"Fire": ["Survival", "Growth"], "Drought": ["Survival"]}


def test_batch_counter_never_reuses_ids_after_reload() -> None:
    corpus = Corpus()
    merger = ResultMerger()
    merger.merge(corpus, [{"title": "A"}])
    reloaded = Corpus.from_dict(corpus.to_dict())
    result = merger.merge(reloaded, [{"title": "B"}])
    assert result.records[0].id == "b2-p0"


def test_build_record_applies_defaults_and_coerces_direction() -> None:
    record = ResultMerger().build_record(
        "b1-p0",
        {
            "title": "  Nest success under fire  ",
            "driver_variable": "Fire",
            "response_variable": "",
            "effect_direction": "negative",
            "impact_keywords": ["fire", "nests"],
        },
        batch_id=1,
    )
    assert record.title == "Nest success under fire"
    assert record.driver == "Fire"
    assert record.driver_group == "Fire"
    assert record.response == "Unspecified"
    assert record.response_group == "Unspecified"
    assert record.location == "Unspecified"
    assert record.species == "Unspecified"
    assert record.category == "Unspecified"
    assert record.effect_direction == "Negative"
    assert record.impact_keywords == "fire, nests"


def test_unknown_effect_direction_becomes_unclear() -> None:
    record = ResultMerger().build_record("b1-p0", {"effect_direction": "Sideways"}, batch_id=1)
    assert record.effect_direction == "Unclear"


def test_species_and_groups_from_reply_are_kept(make_paper) -> None:
    record = ResultMerger().build_record(
        "b1-p0",
        make_paper("A", study_species="Birds (General)", driver_group="Disturbance"),
        batch_id=1,
    )
    assert record.species == "Birds (General)"
    assert record.driver_group == "Disturbance"
    assert record.response_group == "Nest survival"
