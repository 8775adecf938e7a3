"""
Local SQLite Store.

Relational home of every reconciled entity class:
- One table per entity class, natural key under a UNIQUE constraint
- JSON text columns for multi-valued relationship fields
- Watermark columns tracked next to the business fields
- An atomic "insert, or update on conflict" merge primitive
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generator, Iterator

from recon_sync.schema import ENTITY_CLASSES, EntityClass, get_entity_class
from recon_sync.models import (
    Watermark,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

WATERMARK_COLUMNS = ("source_modified_at", "last_reconciled_at", "local_edited_at")


class StoreError(Exception):
    """Raised when the local store cannot complete an operation."""


@dataclass
class MergeResult:
    """What a single merge statement did to the stored row."""

    inserted: bool
    previous: dict[str, Any] | None


class LocalStore:
    """
    SQLite-backed store for reconciled records.

    Tables are created on first use from the entity class table, so a
    fresh database file is ready as soon as the store is opened.

    Example:
        with LocalStore(Path("recon.db")) as store:
            store.merge_row("agent", "1699-abc", {"name": "Ali"})
            row = store.get("agent", "1699-abc")
            mark = store.get_watermark("agent", "1699-abc")
    """

    def __init__(
        self,
        path: Path | str,
        readonly: bool = False,
        classes: dict[str, EntityClass] | None = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            path: SQLite database file (":memory:" is accepted)
            readonly: Open in read-only mode
            classes: Entity classes to manage (defaults to all)
        """
        self.path = Path(path) if str(path) != ":memory:" else None
        self.readonly = readonly
        self.classes = classes or ENTITY_CLASSES
        self._connection: sqlite3.Connection | None = None
        self._initialized = False

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with proper cleanup."""
        if self._connection is None:
            self._connection = self._create_connection()

        try:
            yield self._connection
        except Exception:
            self._connection.rollback()
            raise

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new database connection."""
        if self.path is None:
            conn = sqlite3.connect(":memory:", check_same_thread=False)
        else:
            if self.readonly:
                if not self.path.exists():
                    raise FileNotFoundError(f"Database not found: {self.path}")
                uri = f"file:{self.path}?mode=ro"
            else:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                uri = f"file:{self.path}"
            conn = sqlite3.connect(
                uri,
                uri=True,
                check_same_thread=False,
                timeout=30.0,
            )

        conn.row_factory = sqlite3.Row
        if not self.readonly:
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA temp_store=MEMORY")
        return conn

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self) -> "LocalStore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # =========================================================================
    # Schema
    # =========================================================================

    def create_tables(self) -> list[str]:
        """Create any missing entity tables. Returns the table names."""
        if self.readonly:
            self._initialized = True
            return [entity.table for entity in self.classes.values()]

        created = []
        with self.connection() as conn:
            for entity in self.classes.values():
                conn.execute(self._create_table_sql(entity))
                created.append(entity.table)
            conn.commit()
        self._initialized = True
        return created

    def _create_table_sql(self, entity: EntityClass) -> str:
        columns = [
            "id INTEGER PRIMARY KEY AUTOINCREMENT",
            "natural_key TEXT NOT NULL UNIQUE",
        ]
        columns += [f'"{spec.column}" {spec.sql_type}' for spec in entity.fields]
        columns += [f"{name} TEXT" for name in WATERMARK_COLUMNS]
        body = ",\n    ".join(columns)
        return f'CREATE TABLE IF NOT EXISTS "{entity.table}" (\n    {body}\n)'

    def _ensure_tables(self) -> None:
        if not self._initialized:
            self.create_tables()

    def _entity(self, entity: EntityClass | str) -> EntityClass:
        if isinstance(entity, EntityClass):
            return entity
        return get_entity_class(entity)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, entity: EntityClass | str, key: str) -> dict[str, Any] | None:
        """Fetch one row as a dict of decoded column values."""
        entity = self._entity(entity)
        self._ensure_tables()
        with self.connection() as conn:
            row = conn.execute(
                f'SELECT * FROM "{entity.table}" WHERE natural_key = ?',
                (key,),
            ).fetchone()
        return self._decode(entity, row) if row else None

    def exists(self, entity: EntityClass | str, key: str) -> bool:
        entity = self._entity(entity)
        self._ensure_tables()
        with self.connection() as conn:
            row = conn.execute(
                f'SELECT 1 FROM "{entity.table}" WHERE natural_key = ?',
                (key,),
            ).fetchone()
        return row is not None

    def natural_keys(self, entity: EntityClass | str) -> set[str]:
        """Every natural key stored for a class."""
        entity = self._entity(entity)
        self._ensure_tables()
        with self.connection() as conn:
            cursor = conn.execute(f'SELECT natural_key FROM "{entity.table}"')
            return {row["natural_key"] for row in cursor}

    def get_watermark(self, entity: EntityClass | str, key: str) -> Watermark | None:
        """Watermark of a local row, or None when the row is absent."""
        entity = self._entity(entity)
        self._ensure_tables()
        with self.connection() as conn:
            row = conn.execute(
                f"SELECT {', '.join(WATERMARK_COLUMNS)} "
                f'FROM "{entity.table}" WHERE natural_key = ?',
                (key,),
            ).fetchone()
        if row is None:
            return None
        return Watermark(
            source_modified_at=parse_timestamp(row["source_modified_at"]),
            last_reconciled_at=parse_timestamp(row["last_reconciled_at"]),
            local_edited_at=parse_timestamp(row["local_edited_at"]),
        )

    def iter_records(
        self,
        entity: EntityClass | str,
        non_empty: str | None = None,
    ) -> Iterator[dict[str, Any]]:
        """
        Iterate over every row of a class in natural-key order.

        Args:
            entity: Entity class or name
            non_empty: Only rows where this column holds a value
        """
        entity = self._entity(entity)
        self._ensure_tables()
        query = f'SELECT * FROM "{entity.table}"'
        if non_empty:
            entity.field_for(non_empty)
            query += f' WHERE "{non_empty}" IS NOT NULL AND "{non_empty}" NOT IN (\'\', \'[]\')'
        query += " ORDER BY natural_key"

        with self.connection() as conn:
            rows = conn.execute(query).fetchall()
        for row in rows:
            yield self._decode(entity, row)

    def count(self, entity: EntityClass | str) -> int:
        entity = self._entity(entity)
        self._ensure_tables()
        with self.connection() as conn:
            row = conn.execute(
                f'SELECT COUNT(*) AS count FROM "{entity.table}"'
            ).fetchone()
        return row["count"] if row else 0

    def table_counts(self) -> dict[str, int]:
        """Row count per entity class."""
        return {name: self.count(entity) for name, entity in self.classes.items()}

    def _decode(self, entity: EntityClass, row: sqlite3.Row) -> dict[str, Any]:
        data: dict[str, Any] = {"natural_key": row["natural_key"]}
        for spec in entity.fields:
            data[spec.column] = spec.from_db(row[spec.column])
        for name in WATERMARK_COLUMNS:
            data[name] = row[name]
        return data

    # =========================================================================
    # Writes
    # =========================================================================

    def _check_writable(self) -> None:
        if self.readonly:
            raise RuntimeError("Cannot execute write operations in read-only mode")

    def merge_row(
        self,
        entity: EntityClass | str,
        key: str,
        columns: dict[str, Any],
    ) -> MergeResult:
        """
        Insert a row, or update exactly the supplied columns on conflict.

        Columns missing from ``columns`` keep their stored values (or
        their defaults on insert). Values are python values and are
        encoded through the field specs; watermark columns are passed
        as ISO strings.

        Returns:
            MergeResult with the row as it was before the statement
        """
        entity = self._entity(entity)
        self._check_writable()
        self._ensure_tables()
        if not key:
            raise StoreError(f"Refusing to store {entity.name} without a natural key")

        names: list[str] = []
        values: list[Any] = []
        for column, value in columns.items():
            if column in WATERMARK_COLUMNS:
                values.append(value)
            else:
                values.append(entity.field_for(column).to_db(value))
            names.append(column)

        col_str = ", ".join(["natural_key"] + [f'"{c}"' for c in names])
        placeholders = ", ".join("?" for _ in range(len(names) + 1))
        sql = f'INSERT INTO "{entity.table}" ({col_str}) VALUES ({placeholders})'
        if names:
            assignments = ", ".join(f'"{c}" = excluded."{c}"' for c in names)
            sql += f" ON CONFLICT(natural_key) DO UPDATE SET {assignments}"
        else:
            sql += " ON CONFLICT(natural_key) DO NOTHING"

        try:
            with self.connection() as conn:
                before = conn.execute(
                    f'SELECT * FROM "{entity.table}" WHERE natural_key = ?',
                    (key,),
                ).fetchone()
                conn.execute(sql, [key, *values])
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Merge into {entity.table} failed for {key}: {e}") from e

        previous = self._decode(entity, before) if before else None
        return MergeResult(inserted=before is None, previous=previous)

    def update_columns(
        self,
        entity: EntityClass | str,
        key: str,
        columns: dict[str, Any],
    ) -> bool:
        """Update columns of an existing row. Returns False if absent."""
        entity = self._entity(entity)
        self._check_writable()
        self._ensure_tables()
        if not columns:
            return self.exists(entity, key)

        assignments = ", ".join(f'"{c}" = ?' for c in columns)
        values = [
            value if column in WATERMARK_COLUMNS else entity.field_for(column).to_db(value)
            for column, value in columns.items()
        ]
        try:
            with self.connection() as conn:
                cursor = conn.execute(
                    f'UPDATE "{entity.table}" SET {assignments} WHERE natural_key = ?',
                    [*values, key],
                )
                conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Update of {entity.table} failed for {key}: {e}") from e
        return cursor.rowcount > 0

    def record_local_edit(
        self,
        entity: EntityClass | str,
        key: str,
        fields: dict[str, Any],
    ) -> bool:
        """
        Apply an edit made by the application, not by the engine.

        Stamps ``local_edited_at`` so the next reconciliation sees the
        local copy as newer than the source.
        """
        columns = dict(fields)
        columns["local_edited_at"] = format_timestamp(utcnow())
        return self.update_columns(entity, key, columns)
