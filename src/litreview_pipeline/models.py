"""Core data structures shared by the extraction and consolidation stages."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Set, Tuple

UNSPECIFIED = "Unspecified"

EFFECT_DIRECTIONS: Tuple[str, ...] = (
    "Positive",
    "Negative",
    "Neutral",
    "Complex",
    "Methodological",
    "Unclear",
)

# ("merge_themes", category, (theme, ...)) or a flat tuple of strings
Signature = Tuple[Any, ...]


def normalise_key(value: Any) -> str:
    """Casefolded, whitespace-collapsed form used for identity comparisons."""

    return " ".join(str(value or "").split()).casefold()


def coerce_effect_direction(value: Any) -> str:
    lookup = {direction.lower(): direction for direction in EFFECT_DIRECTIONS}
    return lookup.get(str(value or "").strip().lower(), "Unclear")


_LEGACY_FIELDS: Dict[str, str] = {
    "abstractSnippet": "abstract_summary",
    "driverGroup": "driver_group",
    "responseGroup": "response_group",
    "effectDirection": "effect_direction",
    "keyFinding": "key_finding",
    "impactKeywords": "impact_keywords",
    "shortCitation": "short_citation",
    "batchId": "batch_id",
    "modelUsed": "model_used",
}


@dataclass
class Record:
    """One extracted driver/response finding."""

    id: str
    title: str = ""
    authors: str = ""
    year: str = ""
    journal: str = ""
    abstract_summary: str = ""
    category: str = UNSPECIFIED
    theme: str = UNSPECIFIED
    driver: str = UNSPECIFIED
    driver_group: str = UNSPECIFIED
    response: str = UNSPECIFIED
    response_group: str = UNSPECIFIED
    effect_direction: str = "Unclear"
    location: str = UNSPECIFIED
    species: str = UNSPECIFIED
    key_finding: str = ""
    impact_keywords: str = ""
    short_citation: str = ""
    batch_id: int = 0
    model_used: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Record":
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in payload.items() if key in known}
        if "id" not in values:
            raise ValueError("record payload is missing 'id'")
        return cls(**values)

    @classmethod
    def from_legacy(cls, payload: Mapping[str, Any]) -> "Record":
        """Read one entry of the browser tool's camelCase ``papers`` export."""

        values = {
            _LEGACY_FIELDS.get(key, key): value for key, value in payload.items() if value is not None
        }
        if values.get("batch_id") is not None:
            values["batch_id"] = int(values["batch_id"])
        for name in ("year", "impact_keywords"):
            value = values.get(name)
            if isinstance(value, (list, tuple)):
                values[name] = ", ".join(str(item) for item in value)
            elif value is not None:
                values[name] = str(value)
        values.setdefault("driver_group", values.get("driver") or UNSPECIFIED)
        values.setdefault("response_group", values.get("response") or UNSPECIFIED)
        values["effect_direction"] = coerce_effect_direction(values.get("effect_direction"))
        return cls.from_dict(values)


# ----------------------------------------------------------------------
# Proposals
# ----------------------------------------------------------------------
@dataclass
class Proposal:
    """Base class for a structural taxonomy edit awaiting a user decision."""

    kind: ClassVar[str] = "proposal"

    id: str
    reason: str = ""
    verified: bool = False

    def signature(self) -> Signature:
        raise NotImplementedError

    def signature_text(self) -> str:
        return signature_to_text(self.signature())

    def categories(self) -> Set[str]:
        """Category names this proposal reads or writes."""

        raise NotImplementedError

    def substitute_category(self, old: str, new: str) -> bool:
        """Point every reference to category ``old`` at ``new`` instead."""

        raise NotImplementedError

    def is_noop(self) -> bool:
        return False

    def describe(self) -> str:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["kind"] = self.kind
        return payload


@dataclass
class ThemeMerge(Proposal):
    kind: ClassVar[str] = "merge_themes"

    category: str = ""
    themes: List[str] = field(default_factory=list)
    new_theme: str = ""

    def signature(self) -> Signature:
        members = tuple(sorted({normalise_key(theme) for theme in self.themes}))
        return (self.kind, normalise_key(self.category), members)

    def categories(self) -> Set[str]:
        return {self.category}

    def substitute_category(self, old: str, new: str) -> bool:
        if self.category == old:
            self.category = new
            return True
        return False

    def is_noop(self) -> bool:
        members = {normalise_key(theme) for theme in self.themes}
        return not members or members == {normalise_key(self.new_theme)}

    def describe(self) -> str:
        combined = ", ".join(self.themes)
        return f"[{self.category}] merge themes {combined} -> {self.new_theme}"


@dataclass
class ThemeMove(Proposal):
    kind: ClassVar[str] = "move_theme"

    category: str = ""
    theme: str = ""
    target_category: str = ""

    def signature(self) -> Signature:
        return (
            self.kind,
            normalise_key(self.category),
            normalise_key(self.theme),
            normalise_key(self.target_category),
        )

    def categories(self) -> Set[str]:
        return {self.category, self.target_category}

    def substitute_category(self, old: str, new: str) -> bool:
        changed = False
        if self.category == old:
            self.category = new
            changed = True
        if self.target_category == old:
            self.target_category = new
            changed = True
        return changed

    def is_noop(self) -> bool:
        return normalise_key(self.category) == normalise_key(self.target_category)

    def describe(self) -> str:
        return f"move theme '{self.theme}' from {self.category} -> {self.target_category}"


@dataclass
class CategoryMerge(Proposal):
    kind: ClassVar[str] = "merge_categories"

    source: str = ""
    target: str = ""

    def signature(self) -> Signature:
        pair = sorted((normalise_key(self.source), normalise_key(self.target)))
        return (self.kind, pair[0], pair[1])

    def categories(self) -> Set[str]:
        return {self.source, self.target}

    def substitute_category(self, old: str, new: str) -> bool:
        changed = False
        if self.source == old:
            self.source = new
            changed = True
        if self.target == old:
            self.target = new
            changed = True
        return changed

    def is_noop(self) -> bool:
        return normalise_key(self.source) == normalise_key(self.target)

    def describe(self) -> str:
        return f"merge category {self.source} -> {self.target}"


@dataclass
class CategoryRename(Proposal):
    kind: ClassVar[str] = "rename_category"

    old: str = ""
    new: str = ""

    def signature(self) -> Signature:
        return (self.kind, normalise_key(self.old), normalise_key(self.new))

    def categories(self) -> Set[str]:
        return {self.old}

    def substitute_category(self, old: str, new: str) -> bool:
        if self.old == old:
            self.old = new
            return True
        return False

    def is_noop(self) -> bool:
        return self.old.strip() == self.new.strip() or not self.new.strip()

    def describe(self) -> str:
        return f"rename category {self.old} -> {self.new}"


PROPOSAL_TYPES: Dict[str, type] = {
    cls.kind: cls for cls in (ThemeMerge, ThemeMove, CategoryMerge, CategoryRename)
}


def proposal_from_dict(payload: Mapping[str, Any]) -> Proposal:
    kind = payload.get("kind")
    proposal_cls = PROPOSAL_TYPES.get(str(kind))
    if proposal_cls is None:
        raise ValueError(f"Unknown proposal kind: {kind!r}")
    known = {item.name for item in fields(proposal_cls)}
    values = {key: value for key, value in payload.items() if key in known}
    return proposal_cls(**values)


def signature_to_text(signature: Signature) -> str:
    """Readable one-line form, used in prompts and listings only."""

    return "::".join(
        "|".join(part) if isinstance(part, tuple) else str(part) for part in signature
    )


def signature_to_json(signature: Signature) -> List[Any]:
    return [list(part) if isinstance(part, tuple) else part for part in signature]


def signature_from_json(value: Any) -> Signature:
    """Inverse of :func:`signature_to_json`.

    Older state files stored the ``"::"``-joined text; those are split the
    same way they were written.
    """

    if isinstance(value, str):
        parts: List[Any] = value.split("::")
        if parts and parts[0] == ThemeMerge.kind and len(parts) == 3:
            parts[2] = tuple(parts[2].split("|"))
        return tuple(parts)
    return tuple(tuple(str(item) for item in part) if isinstance(part, list) else str(part) for part in value)


# ----------------------------------------------------------------------
# Locks and rejections
# ----------------------------------------------------------------------
@dataclass
class LockSet:
    """User-placed exclusions for future consolidation proposals."""

    categories: Set[str] = field(default_factory=set)
    themes: Set[Tuple[str, str]] = field(default_factory=set)

    def lock_category(self, category: str) -> None:
        self.categories.add(category)

    def lock_theme(self, category: str, theme: str) -> None:
        self.themes.add((category, theme))

    def unlock_category(self, category: str) -> bool:
        if category in self.categories:
            self.categories.discard(category)
            return True
        return False

    def unlock_theme(self, category: str, theme: str) -> bool:
        if (category, theme) in self.themes:
            self.themes.discard((category, theme))
            return True
        return False

    def is_category_locked(self, category: str) -> bool:
        key = normalise_key(category)
        return any(normalise_key(item) == key for item in self.categories)

    def is_theme_locked(self, category: str, theme: str) -> bool:
        """True when the pair itself or its whole category is locked."""

        if self.is_category_locked(category):
            return True
        pair = (normalise_key(category), normalise_key(theme))
        return any(
            (normalise_key(cat), normalise_key(name)) == pair for cat, name in self.themes
        )

    def rename_category(self, old: str, new: str) -> None:
        if old in self.categories:
            self.categories.discard(old)
            self.categories.add(new)
        self.themes = {(new if cat == old else cat, theme) for cat, theme in self.themes}

    def describe(self) -> List[str]:
        entries = [f"category: {name}" for name in sorted(self.categories)]
        entries.extend(f"theme: {cat} / {theme}" for cat, theme in sorted(self.themes))
        return entries

    def to_dict(self) -> Dict[str, Any]:
        return {
            "categories": sorted(self.categories),
            "themes": [[cat, theme] for cat, theme in sorted(self.themes)],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "LockSet":
        payload = payload or {}
        categories = {str(item) for item in payload.get("categories", []) if str(item).strip()}
        themes: Set[Tuple[str, str]] = set()
        for entry in payload.get("themes", []):
            if isinstance(entry, (list, tuple)) and len(entry) == 2:
                themes.add((str(entry[0]), str(entry[1])))
        return cls(categories=categories, themes=themes)


@dataclass
class RejectionLog:
    """Signatures of proposals the user turned down."""

    signatures: Set[Signature] = field(default_factory=set)

    def add(self, signature: Signature) -> bool:
        if signature in self.signatures:
            return False
        self.signatures.add(signature)
        return True

    def __contains__(self, signature: object) -> bool:
        return signature in self.signatures

    def __len__(self) -> int:
        return len(self.signatures)

    def ordered(self) -> List[Signature]:
        return sorted(self.signatures, key=signature_to_text)

    def describe(self) -> List[str]:
        return [signature_to_text(signature) for signature in self.ordered()]

    def to_list(self) -> List[List[Any]]:
        return [signature_to_json(signature) for signature in self.ordered()]

    @classmethod
    def from_list(cls, values: Iterable[Any] | None) -> "RejectionLog":
        return cls({signature_from_json(value) for value in values or () if value})


# ----------------------------------------------------------------------
# Extraction progress
# ----------------------------------------------------------------------
class BatchStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    AWAITING_FIX = "awaiting_fix"
    STOPPED = "stopped"
    FAILED_FATAL = "failed_fatal"


@dataclass
class BatchState:
    """Where an extraction run stands, persisted so it can be resumed."""

    status: BatchStatus = BatchStatus.IDLE
    batch_index: int = 0
    batches: List[str] = field(default_factory=list)
    fix_text: Optional[str] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    species: bool = False

    @property
    def total_batches(self) -> int:
        return len(self.batches)

    @property
    def resumable(self) -> bool:
        """Batches remain and a run was started.

        A state saved mid-run (``in_flight`` after a crash, ``succeeded`` between
        batches) resumes at ``batch_index``, which only advances after a merge.
        """

        return self.status is not BatchStatus.IDLE and self.batch_index < len(self.batches)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "batch_index": self.batch_index,
            "batches": list(self.batches),
            "fix_text": self.fix_text,
            "error_kind": self.error_kind,
            "message": self.message,
            "species": self.species,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "BatchState":
        payload = payload or {}
        try:
            status = BatchStatus(payload.get("status", BatchStatus.IDLE.value))
        except ValueError:
            status = BatchStatus.IDLE
        batches = payload.get("batches")
        return cls(
            status=status,
            batch_index=int(payload.get("batch_index", 0) or 0),
            batches=[str(item) for item in batches] if isinstance(batches, list) else [],
            fix_text=payload.get("fix_text"),
            error_kind=payload.get("error_kind"),
            message=payload.get("message"),
            species=bool(payload.get("species", False)),
        )


__all__ = [
    "EFFECT_DIRECTIONS",
    "UNSPECIFIED",
    "BatchState",
    "BatchStatus",
    "CategoryMerge",
    "CategoryRename",
    "LockSet",
    "PROPOSAL_TYPES",
    "Proposal",
    "Record",
    "RejectionLog",
    "Signature",
    "ThemeMerge",
    "ThemeMove",
    "coerce_effect_direction",
    "normalise_key",
    "proposal_from_dict",
    "signature_from_json",
    "signature_to_json",
    "signature_to_text",
]
