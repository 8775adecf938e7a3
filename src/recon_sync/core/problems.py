"""
Problem Queue - durable record of unresolved reconciliation failures.

Entries are keyed by natural key; appending a key that is already
queued replaces the entry and bumps its attempt counter. Every change
is flushed to a JSON file so an interrupted batch can be resumed and
inspected later.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from recon_sync.models import ProblemKind

logger = logging.getLogger(__name__)


@dataclass
class ProblemRecord:
    """One record that could not be reconciled."""

    natural_key: str
    kind: ProblemKind
    entity_class: str = ""
    message: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""
    attempts: int = 1

    def __post_init__(self) -> None:
        self.kind = ProblemKind(self.kind)
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProblemRecord":
        return cls(
            natural_key=data["natural_key"],
            kind=ProblemKind(data["kind"]),
            entity_class=data.get("entity_class", ""),
            message=data.get("message", ""),
            context=data.get("context") or {},
            timestamp=data.get("timestamp", ""),
            attempts=data.get("attempts", 1),
        )


class ProblemQueue:
    """
    Durable, key-addressed list of problem records.

    Example:
        queue = ProblemQueue(Path(".recon-sync-problems.json"))
        queue.append(ProblemRecord(
            natural_key="1699-pay",
            kind=ProblemKind.UNRESOLVED_FOREIGN_KEY,
            entity_class="payment",
            context={"claimed_parent": "1699-inv"},
        ))
        queue.remove("1699-pay")  # resolved by a later pass
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path else None
        self._entries: dict[str, ProblemRecord] = {}
        self._load()

    def _load(self) -> None:
        if not self.path or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            # Keep the unreadable file for inspection instead of overwriting it
            backup = self.path.with_suffix(self.path.suffix + ".corrupt")
            os.replace(self.path, backup)
            logger.error("Problem queue %s unreadable (%s); moved to %s", self.path, e, backup)
            return
        self._entries = {
            item["natural_key"]: ProblemRecord.from_dict(item) for item in data
        }

    def _save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(
            json.dumps([entry.to_dict() for entry in self._entries.values()], indent=2)
        )
        os.replace(tmp, self.path)

    def append(self, record: ProblemRecord) -> ProblemRecord:
        """Queue a record, replacing any entry with the same key."""
        existing = self._entries.get(record.natural_key)
        if existing is not None:
            record.attempts = existing.attempts + 1
        self._entries[record.natural_key] = record
        self._save()
        logger.debug(
            "Queued %s %s (%s)",
            record.entity_class or "record",
            record.natural_key,
            record.kind.value,
        )
        return record

    def remove(self, natural_key: str) -> bool:
        """Drop an entry after the key was resolved."""
        if self._entries.pop(natural_key, None) is None:
            return False
        self._save()
        return True

    def get(self, natural_key: str) -> ProblemRecord | None:
        return self._entries.get(natural_key)

    def list(self, kind: ProblemKind | str | None = None) -> list[ProblemRecord]:
        """Entries oldest first, optionally of one kind."""
        entries = sorted(self._entries.values(), key=lambda e: e.timestamp)
        if kind is None:
            return entries
        kind = ProblemKind(kind)
        return [e for e in entries if e.kind == kind]

    def clear(self, natural_key: str | None = None) -> int:
        """Remove one entry, or all entries when no key is given."""
        if natural_key is not None:
            return 1 if self.remove(natural_key) else 0
        count = len(self._entries)
        self._entries.clear()
        self._save()
        return count

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, natural_key: object) -> bool:
        return natural_key in self._entries
