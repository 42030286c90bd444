from __future__ import annotations

import logging
from typing import List

import pytest

from litreview_pipeline.audit import TaxonomyAuditor
from litreview_pipeline.corpus import Corpus, CorpusBusyError
from litreview_pipeline.errors import ErrorKind
from litreview_pipeline.extraction import ExtractionPipeline, PipelineStateError
from litreview_pipeline.llm import LLMClientError, LLMRateLimitError
from litreview_pipeline.models import BatchStatus
from litreview_pipeline.service import ReviewService


def _text(count: int) -> str:
    return "\n\n".join(f"Paper {index}\nabstract {index}" for index in range(count))


def _papers(*titles: str, category: str = "Fire") -> dict:
    return {"papers": [{"title": title, "main_category": category, "sub_theme": "Survival"} for title in titles]}


def _overloaded() -> LLMClientError:
    return LLMClientError("The model is overloaded", status_code=503)


def _build(corpus: Corpus, llm, **kwargs):
    slept: List[float] = []
    pipeline = ExtractionPipeline(
        corpus,
        ReviewService(llm, model="test-model"),
        max_chunk_size=20,
        sleep=slept.append,
        rng=lambda: 0.0,
        **kwargs,
    )
    return pipeline, slept


def test_run_processes_every_batch_in_order(scripted_llm) -> None:
    llm = scripted_llm(_papers("A"), _papers("B"), _papers("C", category="Drought"))
    corpus = Corpus(topic="Fire ecology")
    pipeline, slept = _build(corpus, llm)

    result = pipeline.run(_text(3))

    assert result.status is BatchStatus.SUCCEEDED
    assert result.batches_processed == 3
    assert [record.id for record in corpus.records] == ["b1-p0", "b2-p0", "b3-p0"]
    assert corpus.records[0].model_used == "test-model"
    assert slept == [2.0, 2.0]
    assert "Paper 1\nabstract 1" in llm.user_prompt(1)
    assert '"Fire": ["Survival"]' in llm.system_prompt(1)
    assert "Fire ecology" in llm.system_prompt(0)


def test_overloaded_batch_is_retried_without_duplicates(scripted_llm) -> None:
    llm = scripted_llm(_overloaded(), _overloaded(), _overloaded(), _papers("A", "B"))
    corpus = Corpus()
    pipeline, slept = _build(corpus, llm)

    result = pipeline.run(_text(1))

    assert result.status is BatchStatus.SUCCEEDED
    assert result.retry_delays == [2.0, 4.0, 8.0]
    assert slept == [2.0, 4.0, 8.0]
    assert [record.id for record in corpus.records] == ["b1-p0", "b1-p1"]
    assert corpus.batch_counter == 1


def test_parse_failure_pauses_for_manual_fix_and_resumes(scripted_llm) -> None:
    llm = scripted_llm(_papers("A"), _papers("B"), "this is not json")
    corpus = Corpus()
    pipeline, _ = _build(corpus, llm)

    paused = pipeline.run(_text(5))

    assert paused.status is BatchStatus.AWAITING_FIX
    assert paused.error_kind is ErrorKind.PARSE_FAILURE
    assert paused.retry_delays == []
    assert corpus.extraction.batch_index == 2
    assert corpus.extraction.fix_text == "Paper 2\nabstract 2"
    before = [record.id for record in corpus.records]
    assert before == ["b1-p0", "b2-p0"]

    llm.queue(_papers("C"), _papers("D"), _papers("E"))
    resumed = pipeline.resume_with_fix("Paper 2 (edited)\nabstract 2")

    assert resumed.status is BatchStatus.SUCCEEDED
    assert resumed.batches_processed == 3
    assert "Paper 2 (edited)" in llm.user_prompt(3)
    assert "Paper 3\nabstract 3" in llm.user_prompt(4)
    ids = [record.id for record in corpus.records]
    assert ids[:2] == before
    assert ids[2:] == ["b3-fix-p0", "b4-p0", "b5-p0"]


def test_fix_that_still_fails_keeps_edited_text(scripted_llm) -> None:
    llm = scripted_llm("{{{ nope", "still [ not json")
    corpus = Corpus()
    pipeline, _ = _build(corpus, llm)
    pipeline.run(_text(1))

    result = pipeline.resume_with_fix("edited text")

    assert result.status is BatchStatus.AWAITING_FIX
    assert corpus.extraction.fix_text == "edited text"
    assert corpus.records == []


def test_quota_exhaustion_is_fatal_and_recommends_export(scripted_llm) -> None:
    llm = scripted_llm(_papers("A"), LLMRateLimitError("You exceeded your current quota", status_code=429))
    corpus = Corpus()
    pipeline, slept = _build(corpus, llm)

    result = pipeline.run(_text(3))

    assert result.status is BatchStatus.FAILED_FATAL
    assert result.error_kind is ErrorKind.QUOTA_EXCEEDED
    assert result.export_recommended is True
    assert result.retry_delays == []
    assert len(llm.calls) == 2
    assert corpus.extraction.batch_index == 1
    assert len(corpus.records) == 1


def test_auth_error_is_fatal_without_retries(scripted_llm) -> None:
    llm = scripted_llm(LLMClientError("Incorrect API key provided", status_code=401))
    pipeline, _ = _build(Corpus(), llm)

    result = pipeline.run(_text(2))

    assert result.status is BatchStatus.FAILED_FATAL
    assert result.error_kind is ErrorKind.AUTH_ERROR
    assert result.export_recommended is False
    assert len(llm.calls) == 1


def test_retry_ceiling_fails_run_and_resume_continues(scripted_llm) -> None:
    llm = scripted_llm(*[_overloaded() for _ in range(7)])
    corpus = Corpus()
    pipeline, _ = _build(corpus, llm)

    failed = pipeline.run(_text(2))

    assert failed.status is BatchStatus.FAILED_FATAL
    assert failed.error_kind is ErrorKind.OVERLOADED
    assert len(failed.retry_delays) == 6
    assert corpus.extraction.resumable

    llm.queue(_papers("A"), _papers("B"))
    resumed = pipeline.resume()
    assert resumed.status is BatchStatus.SUCCEEDED
    assert [record.id for record in corpus.records] == ["b1-p0", "b2-p0"]


def test_stop_request_halts_between_batches(scripted_llm) -> None:
    corpus = Corpus()
    holder = {}

    def first_reply(messages):
        holder["pipeline"].request_stop()
        return _papers("A")

    llm = scripted_llm(first_reply)
    pipeline, _ = _build(corpus, llm)
    holder["pipeline"] = pipeline

    stopped = pipeline.run(_text(3))

    assert stopped.status is BatchStatus.STOPPED
    assert stopped.batches_processed == 1
    assert corpus.extraction.batch_index == 1

    llm.queue(_papers("B"), _papers("C"))
    finished = pipeline.resume()
    assert finished.status is BatchStatus.SUCCEEDED
    assert len(corpus.records) == 3


def test_unclassified_error_propagates(scripted_llm) -> None:
    llm = scripted_llm(LLMClientError("The model `gpt-x` does not exist", status_code=404))
    corpus = Corpus()
    pipeline, _ = _build(corpus, llm)

    with pytest.raises(LLMClientError, match="does not exist"):
        pipeline.run(_text(1))
    assert corpus.extraction.status is BatchStatus.FAILED_FATAL


def test_truncated_reply_is_merged_with_warning(scripted_llm, caplog) -> None:
    llm = scripted_llm('{"papers": [{"title": "A"}, {"title": "B", "authors": "Sm')
    corpus = Corpus()
    pipeline, _ = _build(corpus, llm)

    with caplog.at_level(logging.WARNING, logger="litreview_pipeline.extraction"):
        result = pipeline.run(_text(1))

    assert result.truncated_batches == [0]
    assert len(corpus.records) == 2
    assert "truncated" in caplog.text


def test_successful_run_triggers_audit(scripted_llm) -> None:
    llm = scripted_llm(
        _papers("A"),
        _papers("B", category="Drought"),
        {"fixes": [{"category": "Drought", "theme": "Survival", "new_category": "Fire", "new_theme": "Survival"}]},
    )
    corpus = Corpus()
    service = ReviewService(llm)
    pipeline = ExtractionPipeline(
        corpus,
        service,
        auditor=TaxonomyAuditor(service, sleep=lambda _: None),
        max_chunk_size=20,
        sleep=lambda _: None,
    )

    result = pipeline.run(_text(2))

    assert result.audit is not None
    assert result.audit.records_changed == 1
    assert corpus.taxonomy() == {"Fire": ["Survival"]}
    assert "Drought ||| Survival" in llm.user_prompt(2)


def test_progress_callback_runs_after_each_batch(scripted_llm) -> None:
    llm = scripted_llm(_papers("A"), _papers("B"))
    checkpoints: List[int] = []
    corpus = Corpus()
    pipeline, _ = _build(corpus, llm, on_progress=lambda c: checkpoints.append(len(c.records)))

    pipeline.run(_text(2))

    assert checkpoints[:2] == [1, 2]


def test_commands_validate_state(scripted_llm) -> None:
    pipeline, _ = _build(Corpus(), scripted_llm())
    with pytest.raises(ValueError):
        pipeline.run("   ")
    with pytest.raises(PipelineStateError):
        pipeline.resume_with_fix("text")
    with pytest.raises(PipelineStateError):
        pipeline.resume()


def test_run_refuses_busy_corpus(scripted_llm) -> None:
    corpus = Corpus()
    pipeline, _ = _build(corpus, scripted_llm())
    with corpus.exclusive("consolidation"):
        with pytest.raises(CorpusBusyError):
            pipeline.run(_text(1))


def test_interrupted_batch_is_saved_and_resumed_once(scripted_llm, tmp_path) -> None:
    llm = scripted_llm(_papers("A"), KeyboardInterrupt())
    corpus = Corpus()
    state_path = tmp_path / "state.json"
    pipeline, _ = _build(corpus, llm, on_progress=lambda c: c.save(state_path))

    with pytest.raises(KeyboardInterrupt):
        pipeline.run(_text(3))

    saved = Corpus.load(state_path)
    assert saved.extraction.status is BatchStatus.STOPPED
    assert saved.extraction.batch_index == 1
    assert saved.extraction.resumable

    llm = scripted_llm(_papers("B"), _papers("C"))
    pipeline, _ = _build(saved, llm)
    resumed = pipeline.resume()

    assert resumed.status is BatchStatus.SUCCEEDED
    assert len(llm.calls) == 2
    assert "Paper 1\nabstract 1" in llm.user_prompt(0)
    assert [record.id for record in saved.records] == ["b1-p0", "b2-p0", "b3-p0"]


def test_state_left_in_flight_is_resumable(scripted_llm) -> None:
    corpus = Corpus()
    pipeline, _ = _build(corpus, scripted_llm(_papers("A")))
    pipeline.run(_text(1))
    corpus.extraction.batches.append("Paper 1\nabstract 1")
    corpus.extraction.status = BatchStatus.IN_FLIGHT

    reloaded = Corpus.from_dict(corpus.to_dict())
    llm = scripted_llm(_papers("B"))
    pipeline, _ = _build(reloaded, llm)

    assert pipeline.resume().status is BatchStatus.SUCCEEDED
    assert [record.id for record in reloaded.records] == ["b1-p0", "b2-p0"]


def test_interrupted_fix_keeps_waiting_for_the_edited_text(scripted_llm) -> None:
    llm = scripted_llm("not json", KeyboardInterrupt())
    corpus = Corpus()
    pipeline, _ = _build(corpus, llm)
    pipeline.run(_text(1))

    with pytest.raises(KeyboardInterrupt):
        pipeline.resume_with_fix("edited text")

    assert corpus.extraction.status is BatchStatus.AWAITING_FIX
    assert corpus.extraction.fix_text == "edited text"


def test_species_setting_is_kept_for_the_fix(scripted_llm) -> None:
    corpus = Corpus()
    llm = scripted_llm("not json")
    pipeline = ExtractionPipeline(
        corpus, ReviewService(llm, enable_species=True), sleep=lambda _: None, rng=lambda: 0.0
    )
    pipeline.run(_text(1))
    assert '"study_species"' in llm.system_prompt(0)

    reloaded = Corpus.from_dict(corpus.to_dict())
    assert reloaded.extraction.species is True
    llm = scripted_llm(_papers("A"))
    pipeline, _ = _build(reloaded, llm)
    pipeline.resume_with_fix("Paper 0 (edited)")

    assert '"study_species"' in llm.system_prompt(0)
