from __future__ import annotations

import pytest

from litreview_pipeline.segmentation import clean_raw_text, create_batches


def test_create_batches_keeps_paragraphs_whole() -> None:
    text = "Paper1\nabstract1\n\nPaper2\nabstract2"
    batches = create_batches(text, max_chunk_size=20)
    assert batches == ["Paper1\nabstract1", "Paper2\nabstract2"]


def test_create_batches_returns_single_batch_when_text_fits() -> None:
    assert create_batches("  short text \n", max_chunk_size=100) == ["short text"]


def test_create_batches_falls_back_to_line_breaks() -> None:
    text = "alpha beta\ngamma delta\nepsilon"
    batches = create_batches(text, max_chunk_size=15)
    assert batches == ["alpha beta", "gamma delta", "epsilon"]


def test_create_batches_hard_cuts_without_newlines() -> None:
    text = "x" * 25
    batches = create_batches(text, max_chunk_size=10)
    assert batches == ["x" * 10, "x" * 10, "x" * 5]


def test_create_batches_preserves_content_and_order() -> None:
    paragraphs = [f"Paper {index}\nAbstract number {index}" for index in range(30)]
    text = "\n\n".join(paragraphs)
    batches = create_batches(text, max_chunk_size=80)
    assert all(len(batch) <= 80 for batch in batches)
    rebuilt = "\n\n".join(batches)
    assert rebuilt.replace("\n", "") == text.replace("\n", "")


def test_create_batches_terminates_on_leading_separators() -> None:
    text = "\n\n\nabcdefghij\nklmnopqrst"
    batches = create_batches(text, max_chunk_size=5)
    assert "".join(batches) == "abcdefghijklmnopqrst"
    assert all(len(batch) <= 5 for batch in batches)


def test_create_batches_of_blank_text_is_empty() -> None:
    assert create_batches("   \n\n  ") == []


def test_create_batches_rejects_non_positive_size() -> None:
    with pytest.raises(ValueError):
        create_batches("text", max_chunk_size=0)


def test_clean_raw_text_folds_smart_punctuation() -> None:
    raw = "It’s “quoted” – and — dashed\r\nnext line"
    assert clean_raw_text(raw) == "It's \"quoted\" - and - dashed\nnext line"


def test_clean_raw_text_repairs_mojibake_and_odd_spaces() -> None:
    raw = "CafÃ© study in EspaÃ±a donâ€™t�"
    assert clean_raw_text(raw) == "Café study in España don't"
