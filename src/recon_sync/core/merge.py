"""
Merge-Upsert Executor.

Writes source records into the local store by natural key:
- Fields the source asserted (including null or "") overwrite
- Fields the source never mentioned keep their stored value
- Watermarks are written in the same statement as the data
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from recon_sync.connectors.local_store import LocalStore
from recon_sync.models import (
    UNSET,
    EntityRecord,
    Watermark,
    format_timestamp,
    parse_timestamp,
)
from recon_sync.schema import MODIFIED_FIELD, NATURAL_KEY_FIELD, EntityClass

logger = logging.getLogger(__name__)

# Uploaded exports name the natural key differently from the live API.
NATURAL_KEY_ALIASES = (NATURAL_KEY_FIELD, "unique id")


class RecordValidationError(ValueError):
    """Raised when a source payload cannot be mapped onto its class."""


@dataclass
class MergeOutcome:
    """Result of one upsert."""

    entity_class: str
    natural_key: str
    inserted: bool = False
    updated: bool = False
    changed_fields: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.inserted or bool(self.changed_fields)


def natural_key_of(raw: dict[str, Any]) -> str | None:
    for name in NATURAL_KEY_ALIASES:
        value = raw.get(name)
        if value not in (None, ""):
            return str(value).strip()
    return None


def map_source_record(entity: EntityClass, raw: Any) -> EntityRecord:
    """
    Map a raw source payload onto the local columns of ``entity``.

    Only fields present in the payload end up in the record; a field
    the payload omits is left out entirely rather than set to None.

    Raises:
        RecordValidationError: payload is not an object, has no natural
            key, or carries a value that cannot be coerced
    """
    if not isinstance(raw, dict):
        raise RecordValidationError(
            f"{entity.name} record must be an object, got {type(raw).__name__}"
        )

    key = natural_key_of(raw)
    if not key:
        raise RecordValidationError(f"{entity.name} record has no natural key")

    fields: dict[str, Any] = {}
    for spec in entity.fields:
        try:
            value = spec.extract(raw)
        except (TypeError, ValueError) as e:
            raise RecordValidationError(
                f"{entity.name} {key}: bad value for '{spec.source}': {e}"
            ) from e
        if value is not UNSET:
            fields[spec.column] = value

    try:
        modified = parse_timestamp(raw.get(MODIFIED_FIELD))
    except ValueError as e:
        raise RecordValidationError(
            f"{entity.name} {key}: bad '{MODIFIED_FIELD}': {e}"
        ) from e

    return EntityRecord(
        entity_class=entity.name,
        natural_key=key,
        fields=fields,
        modified_at=modified,
        raw=raw,
    )


class MergeExecutor:
    """
    Idempotent field-merging writer.

    Example:
        executor = MergeExecutor(store)

        # Only "name" changes; every other stored column is untouched
        executor.upsert(AGENT, "1699-abc", {"name": "Ali"})

        # Whole source record with its watermark
        record = map_source_record(AGENT, payload)
        executor.apply(AGENT, record, reconciled_at=utcnow())
    """

    def __init__(self, store: LocalStore) -> None:
        self.store = store

    def upsert(
        self,
        entity: EntityClass,
        natural_key: str,
        field_values: dict[str, Any],
        watermark: Watermark | None = None,
    ) -> MergeOutcome:
        """
        Insert or field-merge one record.

        Args:
            entity: Entity class of the record
            natural_key: Source-minted key
            field_values: column -> value; UNSET values are treated as absent
            watermark: Written alongside the data when given; on a pull the
                local edit time is aligned with the source modification time

        Returns:
            MergeOutcome describing what changed
        """
        present = {
            column: value
            for column, value in field_values.items()
            if value is not UNSET
        }
        for column in present:
            entity.field_for(column)

        columns: dict[str, Any] = dict(present)
        if watermark is not None:
            if watermark.source_modified_at is not None:
                stamp = format_timestamp(watermark.source_modified_at)
                columns["source_modified_at"] = stamp
                columns["local_edited_at"] = stamp
            if watermark.last_reconciled_at is not None:
                columns["last_reconciled_at"] = format_timestamp(
                    watermark.last_reconciled_at
                )

        result = self.store.merge_row(entity, natural_key, columns)
        outcome = MergeOutcome(
            entity_class=entity.name,
            natural_key=natural_key,
            inserted=result.inserted,
            updated=not result.inserted,
        )

        if result.inserted:
            outcome.changed_fields = sorted(present)
        else:
            previous = result.previous or {}
            for column, value in present.items():
                spec = entity.field_for(column)
                if spec.from_db(spec.to_db(value)) != previous.get(column):
                    outcome.changed_fields.append(column)

        logger.debug(
            "%s %s %s (%d fields changed)",
            "Inserted" if outcome.inserted else "Merged",
            entity.name,
            natural_key,
            len(outcome.changed_fields),
        )
        return outcome

    def apply(
        self,
        entity: EntityClass,
        record: EntityRecord,
        reconciled_at: datetime,
    ) -> MergeOutcome:
        """Write a mapped source record and stamp it reconciled."""
        return self.upsert(
            entity,
            record.natural_key,
            record.fields,
            Watermark(
                source_modified_at=record.modified_at,
                last_reconciled_at=reconciled_at,
            ),
        )

    def mark_reconciled(
        self,
        entity: EntityClass,
        natural_key: str,
        reconciled_at: datetime,
        source_modified_at: datetime | None = None,
    ) -> bool:
        """Advance the watermark of an existing row without touching data."""
        columns: dict[str, Any] = {
            "last_reconciled_at": format_timestamp(reconciled_at),
        }
        if source_modified_at is not None:
            columns["source_modified_at"] = format_timestamp(source_modified_at)
        return self.store.update_columns(entity, natural_key, columns)

    def patch(
        self,
        entity: EntityClass,
        natural_key: str,
        field_values: dict[str, Any],
    ) -> bool:
        """
        Merge fields into an existing row only; watermarks stay as they are.

        Returns:
            False when the row does not exist
        """
        present = {c: v for c, v in field_values.items() if v is not UNSET}
        return self.store.update_columns(entity, natural_key, present)

    @staticmethod
    def source_modified(row: dict[str, Any] | None) -> datetime | None:
        if not row:
            return None
        return parse_timestamp(row.get("source_modified_at"))
