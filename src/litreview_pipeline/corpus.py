"""The record corpus and the state document it is persisted as.

:class:`Corpus` owns everything that must survive between commands: the
extracted records, the running batch counter used to mint record ids, the
user's locks and rejected proposals, the pending proposal list of the last
consolidation run and the extraction progress.  Category and theme are plain
string keys on each record; the taxonomy is always derived from the records.

Long-running operations wrap themselves in :meth:`Corpus.exclusive`, which
refuses to start a second operation while one is active.  Extraction and
consolidation therefore cannot interleave against the same corpus.
"""

from __future__ import annotations

from contextlib import contextmanager
import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from .models import (
    BatchState,
    LockSet,
    Proposal,
    Record,
    RejectionLog,
    proposal_from_dict,
)

logger = logging.getLogger(__name__)

STATE_VERSION = 1

MUTABLE_FIELDS = frozenset(
    {
        "title",
        "category",
        "theme",
        "driver",
        "driver_group",
        "response",
        "response_group",
        "location",
        "species",
        "effect_direction",
    }
)


class CorpusBusyError(RuntimeError):
    """Raised when an operation starts while another one holds the corpus."""


class Corpus:
    """Mutable record collection with derived taxonomy views."""

    def __init__(
        self,
        records: Iterable[Record] | None = None,
        *,
        topic: str = "",
        normalized: bool = False,
        batch_counter: int = 0,
        locks: LockSet | None = None,
        rejections: RejectionLog | None = None,
        pending_proposals: Sequence[Proposal] | None = None,
        extraction: BatchState | None = None,
    ) -> None:
        self.records: List[Record] = list(records or [])
        self.topic = topic
        self.normalized = normalized
        self.batch_counter = int(batch_counter)
        self.locks = locks or LockSet()
        self.rejections = rejections or RejectionLog()
        self.pending_proposals: List[Proposal] = list(pending_proposals or [])
        self.extraction = extraction or BatchState()
        self.revision = 0
        self._guard = Lock()
        self._active: Optional[str] = None

    # ------------------------------------------------------------------
    # Serialisation of operations
    # ------------------------------------------------------------------
    @contextmanager
    def exclusive(self, operation: str) -> Iterator["Corpus"]:
        if not self._guard.acquire(blocking=False):
            raise CorpusBusyError(
                f"Cannot start {operation}: corpus is busy with {self._active or 'another operation'}"
            )
        self._active = operation
        try:
            yield self
        finally:
            self._active = None
            self._guard.release()

    @property
    def active_operation(self) -> Optional[str]:
        return self._active

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self.records)

    def next_batch_id(self) -> int:
        self.batch_counter += 1
        return self.batch_counter

    def get(self, record_id: str) -> Optional[Record]:
        for record in self.records:
            if record.id == record_id:
                return record
        return None

    def append_records(self, records: Sequence[Record]) -> None:
        existing = {record.id for record in self.records}
        for record in records:
            if record.id in existing:
                raise ValueError(f"Duplicate record id {record.id!r}")
            existing.add(record.id)
        self.records.extend(records)
        self.revision += 1

    def update_records(self, updates: Mapping[str, Mapping[str, Any]]) -> List[str]:
        """Apply per-record field updates keyed by record id.

        Only fields in :data:`MUTABLE_FIELDS` are written and blank values are
        ignored.  Returns the ids whose content actually changed; unknown ids
        are skipped.
        """

        changed: List[str] = []
        for record in self.records:
            patch = updates.get(record.id)
            if not patch:
                continue
            touched = False
            for key, value in patch.items():
                if key not in MUTABLE_FIELDS or value is None:
                    continue
                text = str(value).strip()
                if not text or getattr(record, key) == text:
                    continue
                setattr(record, key, text)
                touched = True
            if touched:
                changed.append(record.id)
        if changed:
            self.revision += 1
        return changed

    def reassign(
        self,
        category: str,
        theme: str | None = None,
        *,
        new_category: str | None = None,
        new_theme: str | None = None,
    ) -> int:
        """Rewrite category/theme on every record matching ``category`` (and ``theme``)."""

        patch: Dict[str, str] = {}
        if new_category:
            patch["category"] = new_category
        if new_theme:
            patch["theme"] = new_theme
        if not patch:
            return 0
        updates = {
            record.id: patch
            for record in self.records
            if record.category == category and (theme is None or record.theme == theme)
        }
        return len(self.update_records(updates))

    def reset(self) -> None:
        """Drop every record and all derived state."""

        self.records.clear()
        self.batch_counter = 0
        self.normalized = False
        self.locks = LockSet()
        self.rejections = RejectionLog()
        self.pending_proposals.clear()
        self.extraction = BatchState()
        self.revision += 1

    # ------------------------------------------------------------------
    # Taxonomy views
    # ------------------------------------------------------------------
    def categories(self) -> List[str]:
        return sorted({record.category for record in self.records})

    def taxonomy(self) -> Dict[str, List[str]]:
        """Category -> themes mapping in first-seen order."""

        taxonomy: Dict[str, List[str]] = {}
        for record in self.records:
            themes = taxonomy.setdefault(record.category, [])
            if record.theme not in themes:
                themes.append(record.theme)
        return taxonomy

    def taxonomy_pairs(self) -> List[Tuple[str, str]]:
        return [(category, theme) for category, themes in self.taxonomy().items() for theme in themes]

    def titles_for(self, category: str, theme: str, limit: int | None = None) -> List[str]:
        titles = [
            record.title
            for record in self.records
            if record.category == category and record.theme == theme and record.title
        ]
        return titles if limit is None else titles[:limit]

    def taxonomy_samples(self, per_theme: int = 5) -> Dict[str, Dict[str, List[str]]]:
        return {
            category: {theme: self.titles_for(category, theme, per_theme) for theme in themes}
            for category, themes in self.taxonomy().items()
        }

    def records_in(self, category: str, theme: str | None = None) -> List[Record]:
        return [
            record
            for record in self.records
            if record.category == category and (theme is None or record.theme == theme)
        ]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "topic": self.topic,
            "normalized": self.normalized,
            "batch_counter": self.batch_counter,
            "records": [record.to_dict() for record in self.records],
            "locks": self.locks.to_dict(),
            "rejected_signatures": self.rejections.to_list(),
            "pending_proposals": [proposal.to_dict() for proposal in self.pending_proposals],
            "extraction": self.extraction.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Corpus":
        if not isinstance(payload, Mapping):
            raise ValueError(f"Expected mapping for corpus state; found {type(payload)!r}")
        raw_records = payload.get("records")
        read_record = Record.from_dict
        if raw_records is None:
            # exports from the browser tool: camelCase "papers"
            raw_records = payload.get("papers", [])
            read_record = Record.from_legacy
        if not isinstance(raw_records, list):
            raise ValueError("Corpus state 'records' must be a list")
        records = [read_record(entry) for entry in raw_records if isinstance(entry, Mapping)]

        batch_counter = payload.get("batch_counter")
        if not isinstance(batch_counter, int):
            batch_counter = max((record.batch_id for record in records), default=0)

        pending: List[Proposal] = []
        for entry in payload.get("pending_proposals", []) or []:
            if not isinstance(entry, Mapping):
                continue
            try:
                pending.append(proposal_from_dict(entry))
            except (TypeError, ValueError) as exc:
                logger.warning("Dropping unreadable pending proposal %r: %s", entry, exc)

        return cls(
            records,
            topic=str(payload.get("topic") or payload.get("reviewTopic") or ""),
            normalized=bool(payload.get("normalized", False)),
            batch_counter=batch_counter,
            locks=LockSet.from_dict(payload.get("locks")),
            rejections=RejectionLog.from_list(payload.get("rejected_signatures")),
            pending_proposals=pending,
            extraction=BatchState.from_dict(payload.get("extraction")),
        )

    def save(self, path: str | Path) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_suffix(target.suffix + ".tmp")
        tmp_path.write_text(
            json.dumps(self.to_dict(), indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )
        tmp_path.replace(target)
        logger.debug("Saved corpus with %d records to %s", len(self.records), target)
        return target

    @classmethod
    def load(cls, path: str | Path) -> "Corpus":
        source = Path(path)
        payload = json.loads(source.read_text(encoding="utf-8"))
        corpus = cls.from_dict(payload)
        logger.debug("Loaded corpus with %d records from %s", len(corpus.records), source)
        return corpus


__all__ = ["Corpus", "CorpusBusyError", "MUTABLE_FIELDS", "STATE_VERSION"]
