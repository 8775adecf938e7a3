"""Tests for the local SQLite store."""

from pathlib import Path

import pytest

from recon_sync.connectors.local_store import LocalStore, StoreError
from recon_sync.models import parse_timestamp
from recon_sync.schema import AGENT, INVOICE, PAYMENT


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "store.db"


class TestLocalStore:
    """Tests for LocalStore class."""

    def test_tables_created_lazily(self, db_path: Path) -> None:
        """A fresh store creates its tables on first use."""
        with LocalStore(db_path) as store:
            assert store.count(AGENT) == 0
            counts = store.table_counts()
            assert set(counts) >= {"agent", "invoice", "payment"}
            assert all(count == 0 for count in counts.values())

    def test_create_tables_idempotent(self, db_path: Path) -> None:
        """Creating tables twice is harmless."""
        with LocalStore(db_path) as store:
            first = store.create_tables()
            second = store.create_tables()
            assert first == second
            assert "invoices" in first

    def test_merge_row_insert_and_update(self, db_path: Path) -> None:
        """Only the supplied columns change on conflict."""
        with LocalStore(db_path) as store:
            result = store.merge_row(AGENT, "A1", {"name": "Ali", "email": "ali@x.test"})
            assert result.inserted is True
            assert result.previous is None

            result = store.merge_row(AGENT, "A1", {"name": "Ali Baba"})
            assert result.inserted is False
            assert result.previous["name"] == "Ali"

            row = store.get(AGENT, "A1")
            assert row["name"] == "Ali Baba"
            assert row["email"] == "ali@x.test"
            assert store.count(AGENT) == 1

    def test_merge_row_without_columns(self, db_path: Path) -> None:
        """An empty column set inserts a bare row and never updates."""
        with LocalStore(db_path) as store:
            assert store.merge_row(AGENT, "A1", {}).inserted is True
            assert store.merge_row(AGENT, "A1", {}).inserted is False
            assert store.exists(AGENT, "A1")

    def test_merge_row_requires_key(self, db_path: Path) -> None:
        """Rows without a natural key are refused."""
        with LocalStore(db_path) as store:
            with pytest.raises(StoreError):
                store.merge_row(AGENT, "", {"name": "x"})

    def test_list_columns_round_trip(self, db_path: Path) -> None:
        """Multi-valued edges are stored as JSON arrays."""
        with LocalStore(db_path) as store:
            store.merge_row(INVOICE, "I1", {"linked_payment": ["P1", "P2"], "paid": True})
            row = store.get(INVOICE, "I1")
            assert row["linked_payment"] == ["P1", "P2"]
            assert row["paid"] is True

    def test_watermark(self, db_path: Path) -> None:
        """Watermarks are parsed back into aware datetimes."""
        with LocalStore(db_path) as store:
            assert store.get_watermark(AGENT, "A1") is None
            store.merge_row(AGENT, "A1", {
                "source_modified_at": "2024-01-10T08:00:00.000+00:00",
                "last_reconciled_at": "2024-01-11T08:00:00.000+00:00",
            })
            mark = store.get_watermark("agent", "A1")
            assert mark.source_modified_at == parse_timestamp("2024-01-10T08:00:00Z")
            assert mark.last_reconciled_at == parse_timestamp("2024-01-11T08:00:00Z")
            assert mark.local_edited_at is None

    def test_record_local_edit(self, db_path: Path) -> None:
        """Application edits stamp local_edited_at."""
        with LocalStore(db_path) as store:
            store.merge_row(AGENT, "A1", {"name": "Ali"})
            assert store.record_local_edit(AGENT, "A1", {"name": "Local"}) is True
            assert store.get(AGENT, "A1")["name"] == "Local"
            assert store.get_watermark(AGENT, "A1").local_edited_at is not None
            assert store.record_local_edit(AGENT, "missing", {"name": "x"}) is False

    def test_iter_records_non_empty(self, db_path: Path) -> None:
        """Filtering on a column skips null, empty and empty-list values."""
        with LocalStore(db_path) as store:
            store.merge_row(INVOICE, "I2", {"linked_payment": ["P1"]})
            store.merge_row(INVOICE, "I1", {"linked_payment": []})
            store.merge_row(INVOICE, "I3", {"status": "open"})

            keys = [row["natural_key"] for row in store.iter_records(INVOICE)]
            assert keys == ["I1", "I2", "I3"]

            linked = [
                row["natural_key"]
                for row in store.iter_records(INVOICE, non_empty="linked_payment")
            ]
            assert linked == ["I2"]

    def test_natural_keys(self, db_path: Path) -> None:
        """Test listing every stored key of a class."""
        with LocalStore(db_path) as store:
            store.merge_row(PAYMENT, "P1", {"linked_invoice": "I1"})
            store.merge_row(PAYMENT, "P2", {"linked_invoice": "I1"})
            store.merge_row(PAYMENT, "P3", {"linked_invoice": "I2"})

            assert store.natural_keys(PAYMENT) == {"P1", "P2", "P3"}

    def test_readonly_mode(self, db_path: Path) -> None:
        """Test read-only mode prevents writes."""
        with LocalStore(db_path) as store:
            store.merge_row(AGENT, "A1", {"name": "Ali"})

        with LocalStore(db_path, readonly=True) as store:
            assert store.get(AGENT, "A1")["name"] == "Ali"
            with pytest.raises(RuntimeError, match="read-only"):
                store.merge_row(AGENT, "A2", {"name": "x"})

    def test_readonly_missing_file(self, tmp_path: Path) -> None:
        """A read-only store needs an existing database."""
        store = LocalStore(tmp_path / "missing.db", readonly=True)
        with pytest.raises(FileNotFoundError):
            store.get(AGENT, "A1")

    def test_in_memory(self) -> None:
        """Test the in-memory store."""
        with LocalStore(":memory:") as store:
            store.merge_row(AGENT, "A1", {"name": "Ali"})
            assert store.get("agents", "A1")["name"] == "Ali"

    def test_unknown_column(self, db_path: Path) -> None:
        """Columns outside the class field list are rejected."""
        with LocalStore(db_path) as store:
            with pytest.raises(KeyError):
                store.merge_row(AGENT, "A1", {"favourite_colour": "red"})
