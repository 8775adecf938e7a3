"""
Core value types shared by the reconciliation engine.

- Tri-state field values (value / explicit null / not present)
- Modification watermarks
- Sync policies and the actions they resolve to
- Relationship edges between entity classes
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class _Unset:
    """Marker for a field the source never asserted a value for."""

    _instance: "_Unset | None" = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def is_unset(value: Any) -> bool:
    return value is UNSET


class SyncPolicy(str, Enum):
    """Per-class rule deciding which side of a record is authoritative."""

    PULL_ONLY_IF_ABSENT = "pull_only_if_absent"
    LATEST_WINS = "latest_wins_bidirectional"
    FORCED_CASCADE = "forced_cascade"


class SyncAction(str, Enum):
    """Outcome of resolving a sync policy for one record."""

    INSERT = "insert"
    PULL_UPDATE = "pull_update"
    PUSH_UPDATE = "push_update"
    SKIP = "skip"
    FORCE_SYNC = "force_sync"

    @property
    def writes_locally(self) -> bool:
        return self in (SyncAction.INSERT, SyncAction.PULL_UPDATE, SyncAction.FORCE_SYNC)


class Tier(int, Enum):
    """Topological position of an entity class; lower tiers sync first."""

    INDEPENDENT = 0
    DEPENDENT = 1
    LEDGER = 2
    COMPLIANCE = 3
    AGGREGATE = 4


class Cardinality(str, Enum):
    SINGLE = "single"
    MULTI = "multi"


class ProblemKind(str, Enum):
    """Classification of a record that could not be reconciled."""

    TRANSIENT_FETCH_FAILURE = "TransientFetchFailure"
    UNRESOLVED_FOREIGN_KEY = "UnresolvedForeignKey"
    VALIDATION_FAILURE = "ValidationFailure"


@dataclass(frozen=True)
class RelationshipEdge:
    """
    A reference from a holder field to records of a target class.

    ``back_reference`` names the scalar column on the target that must
    point back at the holder once the repair pass has run. ``fallback``
    is a second class searched when a key is not found in ``target``.
    ``cascade_reverse`` asks the orchestrator to pull every holder that
    references a target whenever that target is force-synced.
    """

    holder: str
    field: str
    target: str
    cardinality: Cardinality = Cardinality.SINGLE
    back_reference: str | None = None
    fallback: str | None = None
    cascade_reverse: bool = False

    @property
    def is_multi(self) -> bool:
        return self.cardinality == Cardinality.MULTI


@dataclass(frozen=True)
class PropagationRule:
    """An attribute copied across an edge to whichever side lacks it."""

    edge_holder: str
    edge_field: str
    attribute: str


@dataclass
class Watermark:
    """Modification watermark of a local record."""

    source_modified_at: datetime | None = None
    last_reconciled_at: datetime | None = None
    local_edited_at: datetime | None = None

    @property
    def last_edited_at(self) -> datetime | None:
        """The local copy's own notion of when it last changed."""
        return self.local_edited_at or self.source_modified_at


@dataclass
class EntityRecord:
    """A class-tagged bag of fields keyed by its source-minted natural key."""

    entity_class: str
    natural_key: str
    fields: dict[str, Any] = field(default_factory=dict)
    modified_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def get(self, column: str, default: Any = None) -> Any:
        return self.fields.get(column, default)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a source or stored timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (with ``Z`` or an offset), datetimes and
    epoch milliseconds. Returns None for empty input and raises
    ValueError for anything unparsable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")
