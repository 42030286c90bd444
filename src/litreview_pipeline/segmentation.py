"""Raw citation text cleaning and batch segmentation.

Pasted bibliographies tend to arrive with smart punctuation, non-breaking
spaces and UTF-8 text that was decoded as Latin-1 somewhere along the way.
:func:`clean_raw_text` folds those artefacts back into plain text before
:func:`create_batches` cuts the blob into service-sized chunks.
"""

from __future__ import annotations

import re
from typing import List, Tuple

DEFAULT_MAX_CHUNK_SIZE = 25000

_MOJIBAKE: Tuple[Tuple[str, str], ...] = (
    ("\u00e2\u20ac\u2122", "'"),
    ("\u00e2\u20ac\u0153", '"'),
    ("\u00e2\u20ac\u201c", "-"),
    ("\u00e2\u20ac\u201d", "-"),
    ("\u00e2\u20ac", '"'),
    ("\u00c3\u00a9", "\u00e9"),
    ("\u00c3\u00b1", "\u00f1"),
    ("\u00c3\u00bc", "\u00fc"),
    ("\u00c3\u00a0", "\u00e0"),
)

_SINGLE_QUOTES = re.compile("[\u2018\u2019]")
_DOUBLE_QUOTES = re.compile("[\u201c\u201d]")
_DASHES = re.compile("[\u2013\u2014]")
_ODD_SPACES = re.compile(
    "[\u00a0\u1680\u180e\u2000-\u200b\u202f\u205f\u3000\ufeff]"
)
_STRAY_LEADS = re.compile("[\u00c3\u00c2\u0192]")


def clean_raw_text(text: str) -> str:
    """Return ``text`` with smart punctuation and common mojibake folded away."""

    # mojibake first: its sequences contain characters the later passes rewrite
    cleaned = text
    for broken, fixed in _MOJIBAKE:
        cleaned = cleaned.replace(broken, fixed)
    cleaned = _SINGLE_QUOTES.sub("'", cleaned)
    cleaned = _DOUBLE_QUOTES.sub('"', cleaned)
    cleaned = _DASHES.sub("-", cleaned)
    cleaned = cleaned.replace("\ufffd", "")
    cleaned = _ODD_SPACES.sub(" ", cleaned)
    cleaned = _STRAY_LEADS.sub(" ", cleaned)
    return cleaned.replace("\r\n", "\n")


def _find_cut(text: str, limit: int) -> int:
    for separator in ("\n\n", "\n"):
        # only separators starting at or before ``limit`` qualify
        index = text.rfind(separator, 0, limit + len(separator))
        if index > 0:
            return index
    return limit


def create_batches(text: str, max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE) -> List[str]:
    """Split ``text`` into ordered chunks of at most ``max_chunk_size`` characters.

    Cuts prefer the last paragraph break at or before the limit, then the last
    line break, and only fall back to a hard cut when the window contains no
    newline at all.  Whitespace around each cut is dropped.
    """

    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be >= 1")

    batches: List[str] = []
    remaining = text.strip()
    while remaining:
        if len(remaining) <= max_chunk_size:
            batches.append(remaining)
            break
        cut = _find_cut(remaining, max_chunk_size)
        chunk = remaining[:cut].strip()
        if chunk:
            batches.append(chunk)
        remaining = remaining[cut:].strip()
    return batches


__all__ = ["DEFAULT_MAX_CHUNK_SIZE", "clean_raw_text", "create_batches"]
