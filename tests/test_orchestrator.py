"""Tests for the dependency orchestrator against an in-memory source."""

import json
from typing import Any

import pytest

from conftest import FakeSource, make_record
from recon_sync.config import Settings
from recon_sync.connectors.local_store import LocalStore
from recon_sync.core.problems import ProblemQueue
from recon_sync.core.progress import ProgressTracker, SessionStatus
from recon_sync.models import ProblemKind
from recon_sync.schema import (
    AGENT,
    CUSTOMER,
    ENTITY_CLASSES,
    INVOICE,
    INVOICE_ITEM,
    PAYMENT,
    SEDA_REGISTRATION,
    SUBMITTED_PAYMENT,
    USER,
)

T0 = "2024-01-10T08:00:00.000Z"
T1 = "2024-01-12T08:00:00.000Z"


def load_dataset(source: FakeSource) -> None:
    """One invoice with its full package."""
    source.add("agent", make_record("A1", T0, {"Name": "Ali", "email": "ali@x.test"}))
    source.add("user", make_record("U1", T0, {"Linked Agent Profile": "A1", "authentication": "u1@x.test"}))
    source.add("user", make_record("U2", T0, {"Linked Agent Profile": "A1", "authentication": "u2@x.test"}))
    source.add("Customer_Profile", make_record("C1", T0, {"Name": "Siti", "Linked Agent": "A1"}))
    source.add("payment", make_record("P1", T0, {"Linked Invoice": "I1", "Amount": 100}))
    source.add("invoice_item", make_record("II1", T0, {"Linked Invoice": "I1", "Description": "Panel"}))
    source.add("seda_registration", make_record("S1", T0, {
        "Linked Customer": "C1",
        "Linked Invoice": ["I1"],
    }))
    source.add("invoice", make_record("I1", T0, {
        "Linked Customer": "C1",
        "Linked Agent": "A1",
        "Linked Payment": ["P1"],
        "linked_invoice_item": ["II1"],
        "Linked SEDA Registration": "S1",
        "Created By": "U1",
        "Total Amount": 100,
    }))


def snapshot(store: LocalStore) -> dict[str, list[dict[str, Any]]]:
    return {
        name: list(store.iter_records(entity))
        for name, entity in ENTITY_CLASSES.items()
    }


@pytest.fixture
def dataset(fake_source: FakeSource) -> FakeSource:
    load_dataset(fake_source)
    return fake_source


class TestDateRange:
    """Tests for date-range reconciliation."""

    def test_syncs_everything(self, run_batch, store: LocalStore, dataset: FakeSource) -> None:
        """Every class is reconciled parents first."""
        result = run_batch(lambda o: o.sync_date_range("2024-01-01"))

        assert result.success
        assert result.synced == {
            "agent": 1, "customer": 1, "user": 2, "payment": 1,
            "invoice_item": 1, "seda_registration": 1, "invoice": 1,
        }
        assert result.problems_added == 0
        assert store.get(INVOICE, "I1")["linked_payment"] == ["P1"]
        assert store.get(PAYMENT, "P1")["amount"] == 100.0
        assert result.repair is not None

    def test_second_run_is_a_no_op(self, run_batch, store: LocalStore, dataset: FakeSource) -> None:
        """Re-running without source changes writes nothing."""
        run_batch(lambda o: o.sync_date_range("2024-01-01"))
        before = snapshot(store)

        result = run_batch(lambda o: o.sync_date_range("2024-01-01"))

        assert result.total_synced == 0
        assert result.total_skipped == 8
        assert result.repair.changes == 0
        assert snapshot(store) == before

    def test_window_filters_locally(self, run_batch, store: LocalStore, dataset: FakeSource) -> None:
        """Records modified outside the window are left alone."""
        dataset.add("agent", make_record("A2", T1, {"Name": "Later"}))

        result = run_batch(lambda o: o.sync_date_range("2024-01-11", classes=["agent"]))

        assert result.synced == {"agent": 1}
        assert store.exists(AGENT, "A2")
        assert not store.exists(AGENT, "A1")
        assert "agent: 1 of 2 records in window" in result.steps

    def test_inverted_window(self, run_batch, dataset: FakeSource) -> None:
        """Test a start date after the end date."""
        with pytest.raises(ValueError):
            run_batch(lambda o: o.sync_date_range("2024-02-01", "2024-01-01"))

    def test_class_fetch_failure(self, run_batch, store: LocalStore, dataset: FakeSource) -> None:
        """A class that cannot be listed is reported and the batch goes on."""
        dataset.fail_types.add("invoice_template")

        result = run_batch(lambda o: o.sync_date_range("2024-01-01"))

        assert result.success
        assert any(e.startswith("invoice_template: fetch failed") for e in result.errors)
        assert store.exists(AGENT, "A1")
        assert store.exists(INVOICE, "I1")

    def test_session_completed(self, run_batch, settings: Settings, dataset: FakeSource) -> None:
        """The progress session ends completed with every record counted."""
        result = run_batch(lambda o: o.sync_date_range("2024-01-01"))

        session = ProgressTracker(settings.sync.progress_file).get(result.session_id)
        assert session.status == SessionStatus.COMPLETED
        assert session.total == 8
        assert session.completed == 8
        assert session.category == "date_range"

    def test_session_details(self, run_batch, settings: Settings, dataset: FakeSource) -> None:
        """Step and error lines reach the session that pollers read."""
        dataset.fail_keys.add("P1")

        result = run_batch(lambda o: o.sync_id_list("I1"))

        session = ProgressTracker(settings.sync.progress_file).get(result.session_id)
        assert "Parsed 1 IDs" in session.details
        assert any("children fetched" in line for line in session.details)
        assert any(line.startswith("ERROR invoice I1") for line in session.details)

    def test_cancellation(self, run_batch, settings: Settings, store: LocalStore, dataset: FakeSource) -> None:
        """A cancel request stops the batch before the next record."""

        def call(orchestrator):
            def on_progress(session):
                if session.completed >= 1:
                    orchestrator.progress.request_cancel(session.session_id)

            return orchestrator.sync_date_range("2024-01-01", on_progress=on_progress)

        result = run_batch(call)

        assert result.cancelled
        assert result.total_synced == 1
        assert not store.exists(INVOICE, "I1")
        session = ProgressTracker(settings.sync.progress_file).get(result.session_id)
        assert session.status == SessionStatus.ERROR
        assert session.error == "cancelled"


class TestIdList:
    """Tests for ID-list reconciliation."""

    def test_pulls_whole_package(self, run_batch, store: LocalStore, dataset: FakeSource) -> None:
        """One invoice ID brings in every record it depends on."""
        result = run_batch(lambda o: o.sync_id_list("I1"))

        assert result.success
        for entity, key in [
            (AGENT, "A1"), (CUSTOMER, "C1"), (USER, "U1"), (PAYMENT, "P1"),
            (INVOICE_ITEM, "II1"), (SEDA_REGISTRATION, "S1"), (INVOICE, "I1"),
        ]:
            assert store.exists(entity, key), f"{entity.name} {key} missing"

    def test_agent_pulls_its_users(self, run_batch, store: LocalStore, dataset: FakeSource) -> None:
        """Users linked to a force-synced agent follow it."""
        run_batch(lambda o: o.sync_id_list("I1"))

        assert store.exists(USER, "U2")
        assert store.get(USER, "U2")["linked_agent_profile"] == "A1"

    def test_stale_child_resyncs_package(self, run_batch, store: LocalStore, dataset: FakeSource) -> None:
        """A newer payment at the source resyncs the invoice's package."""
        run_batch(lambda o: o.sync_id_list("I1"))
        dataset.records["payment"]["P1"].update({"Amount": 150, "Modified Date": T1})

        result = run_batch(lambda o: o.sync_id_list("I1"))

        assert store.get(PAYMENT, "P1")["amount"] == 150.0
        assert result.synced["invoice"] == 1
        assert result.synced["payment"] == 1
        assert any("1 stale" in step for step in result.steps)

        again = run_batch(lambda o: o.sync_id_list("I1"))
        assert again.total_synced == 0
        assert again.skipped == {"invoice": 1}

    def test_listed_date_avoids_fetch(self, run_batch, dataset: FakeSource) -> None:
        """A listed modification time no newer than the local one skips the fetch."""
        run_batch(lambda o: o.sync_id_list("invoice,I1"))
        before = dataset.count("GET", "invoice")

        result = run_batch(lambda o: o.sync_id_list(f"invoice,I1,{T0}"))

        assert result.skipped == {"invoice": 1}
        assert dataset.count("GET", "invoice") == before

    def test_unknown_id(self, run_batch, settings: Settings, dataset: FakeSource) -> None:
        """An ID the source does not know is queued."""
        result = run_batch(lambda o: o.sync_id_list("payment,P9"))

        assert result.counts["payment"].failed == 1
        entry = ProblemQueue(settings.sync.problem_queue_file).get("P9")
        assert entry.kind == ProblemKind.UNRESOLVED_FOREIGN_KEY

    def test_transient_fetch_failure(self, run_batch, settings: Settings, dataset: FakeSource) -> None:
        """A listed record that keeps failing is queued as transient."""
        dataset.fail_keys.add("I1")

        result = run_batch(lambda o: o.sync_id_list("I1"))

        assert result.total_failed == 1
        entry = ProblemQueue(settings.sync.problem_queue_file).get("I1")
        assert entry.kind == ProblemKind.TRANSIENT_FETCH_FAILURE

    def test_failed_child_blocks_aggregate(self, run_batch, settings: Settings, store: LocalStore, dataset: FakeSource) -> None:
        """The aggregate is not written while a child cannot be fetched."""
        dataset.fail_keys.add("P1")

        result = run_batch(lambda o: o.sync_id_list("I1"))

        assert not store.exists(INVOICE, "I1")
        assert store.exists(CUSTOMER, "C1")
        assert result.counts["invoice"].failed == 1
        entry = ProblemQueue(settings.sync.problem_queue_file).get("I1")
        assert entry.kind == ProblemKind.TRANSIENT_FETCH_FAILURE

    def test_invalid_child_blocks_aggregate(self, run_batch, settings: Settings, store: LocalStore, dataset: FakeSource) -> None:
        """A child that fails validation keeps the aggregate unwritten and unstamped."""
        dataset.records["invoice_item"]["II1"]["Qty"] = "abc"

        result = run_batch(lambda o: o.sync_id_list("I1"))

        assert not store.exists(INVOICE_ITEM, "II1")
        assert store.get_watermark(INVOICE, "I1") is None
        assert result.counts["invoice"].failed == 1
        assert result.counts["invoice_item"].failed == 1
        queue = ProblemQueue(settings.sync.problem_queue_file)
        assert queue.get("II1").kind == ProblemKind.VALIDATION_FAILURE
        entry = queue.get("I1")
        assert entry.kind == ProblemKind.VALIDATION_FAILURE
        assert "invoice_item:II1" in entry.message

    def test_child_missing_at_source(self, run_batch, settings: Settings, store: LocalStore, dataset: FakeSource) -> None:
        """A listed child that no longer exists is queued against the aggregate."""
        dataset.records["invoice"]["I1"]["Linked Payment"] = ["P1", "P404"]

        result = run_batch(lambda o: o.sync_id_list("I1"))

        assert store.exists(INVOICE, "I1")
        entry = ProblemQueue(settings.sync.problem_queue_file).get("I1")
        assert entry.kind == ProblemKind.UNRESOLVED_FOREIGN_KEY
        assert entry.context["missing_children"] == ["payment:P404"]
        assert result.problems_added == 1


class TestForeignKeys:
    """Tests for parent resolution and the problem queue."""

    def test_missing_parent_fetched(self, run_batch, store: LocalStore, fake_source: FakeSource) -> None:
        """A parent missing locally is pulled from the source."""
        fake_source.add("agent", make_record("A1", T0, {"Name": "Ali"}))
        fake_source.add("Customer_Profile", make_record("C1", T0, {"Linked Agent": "A1"}))

        result = run_batch(lambda o: o.sync_class("customer"))

        assert result.synced == {"customer": 1, "agent": 1}
        assert store.exists(AGENT, "A1")

    def test_orphan_queued_and_kept(self, run_batch, settings: Settings, store: LocalStore, fake_source: FakeSource) -> None:
        """A parent missing everywhere is queued; the record is still stored."""
        fake_source.add("payment", make_record("P2", T0, {"Linked Customer": "C9", "Amount": 75}))

        result = run_batch(lambda o: o.sync_class("payment"))

        assert store.exists(PAYMENT, "P2")
        assert result.problems_added == 1
        entry = ProblemQueue(settings.sync.problem_queue_file).get("P2")
        assert entry.kind == ProblemKind.UNRESOLVED_FOREIGN_KEY
        assert entry.context["claimed_parent"] == "C9"
        assert entry.context["amount"] == 75.0

    def test_problem_resolved_later(self, run_batch, settings: Settings, store: LocalStore, fake_source: FakeSource) -> None:
        """Once the parent appears, the queued entry is removed."""
        fake_source.add("payment", make_record("P2", T0, {"Linked Customer": "C9"}))
        run_batch(lambda o: o.sync_class("payment"))

        fake_source.add("Customer_Profile", make_record("C9", T1, {"Name": "Late"}))
        fake_source.records["payment"]["P2"]["Modified Date"] = T1

        result = run_batch(lambda o: o.sync_class("payment"))

        assert result.problems_resolved == 1
        assert store.exists(CUSTOMER, "C9")
        assert "P2" not in ProblemQueue(settings.sync.problem_queue_file)

    def test_problem_resolved_without_source_change(self, run_batch, settings: Settings, store: LocalStore, fake_source: FakeSource) -> None:
        """An unchanged queued record is re-checked and cleared once its parent is stored."""
        fake_source.add("payment", make_record("P2", T0, {"Linked Customer": "C9"}))
        run_batch(lambda o: o.sync_class("payment"))
        assert "P2" in ProblemQueue(settings.sync.problem_queue_file)

        fake_source.add("Customer_Profile", make_record("C9", T1, {"Name": "Late"}))
        run_batch(lambda o: o.sync_class("customer"))

        result = run_batch(lambda o: o.sync_class("payment"))

        assert result.skipped == {"payment": 1}
        assert result.problems_resolved == 1
        assert "P2" not in ProblemQueue(settings.sync.problem_queue_file)

    def test_later_tier_reference_missing_everywhere(self, run_batch, settings: Settings, fake_source: FakeSource) -> None:
        """A payment pointing at an invoice the source does not have is queued at the end."""
        fake_source.add("payment", make_record("P3", T0, {"Linked Invoice": "I9"}))

        result = run_batch(lambda o: o.sync_class("payment"))

        assert fake_source.count("GET", "invoice") == 1
        entry = ProblemQueue(settings.sync.problem_queue_file).get("P3")
        assert entry.kind == ProblemKind.UNRESOLVED_FOREIGN_KEY
        assert entry.context["field"] == "linked_invoice"
        assert result.problems_added == 1

    def test_later_tier_reference_found_at_source(self, run_batch, settings: Settings, store: LocalStore, fake_source: FakeSource) -> None:
        """A later-tier target that exists at the source is synced, not queued."""
        fake_source.add("payment", make_record("P3", T0, {"Linked Invoice": "I9"}))
        fake_source.add("invoice", make_record("I9", T0, {"Linked Payment": ["P3"]}))

        result = run_batch(lambda o: o.sync_class("payment"))

        assert store.exists(INVOICE, "I9")
        assert result.synced == {"payment": 1, "invoice": 1}
        assert result.problems_added == 0
        assert "P3" not in ProblemQueue(settings.sync.problem_queue_file)

    def test_upload_reference_queued_unchecked(self, run_batch, settings: Settings, fake_source: FakeSource) -> None:
        """Uploads never reach the source, so dangling references are flagged unchecked."""
        records = [{"unique id": "P3", "Modified Date": T0, "Linked Invoice": "I9"}]

        run_batch(lambda o: o.upload_json("payment", records))

        assert fake_source.requests == []
        entry = ProblemQueue(settings.sync.problem_queue_file).get("P3")
        assert entry.kind == ProblemKind.UNRESOLVED_FOREIGN_KEY
        assert entry.context["checked_at_source"] is False

    def test_invalid_record(self, run_batch, settings: Settings, store: LocalStore, fake_source: FakeSource) -> None:
        """A record that cannot be mapped is queued and the class goes on."""
        fake_source.add("agent", make_record("A1", "not a date"))
        fake_source.add("agent", make_record("A2", T0, {"Name": "Fine"}))

        result = run_batch(lambda o: o.sync_class("agent"))

        assert store.exists(AGENT, "A2")
        assert result.counts["agent"].failed == 1
        entry = ProblemQueue(settings.sync.problem_queue_file).get("A1")
        assert entry.kind == ProblemKind.VALIDATION_FAILURE


class TestPolicies:
    """Tests for per-class policies inside batches."""

    def test_local_edit_pushed(self, run_batch, store: LocalStore, fake_source: FakeSource) -> None:
        """A locally newer agent is written back, keyed by source field names."""
        fake_source.add("agent", make_record("A1", T0, {"Name": "Ali"}))
        run_batch(lambda o: o.sync_class("agent"))
        store.record_local_edit(AGENT, "A1", {"name": "Ali Local"})

        result = run_batch(lambda o: o.sync_class("agent"))

        assert result.pushed == {"agent": 1}
        assert fake_source.patches == [("agent", "A1", {"Name": "Ali Local"})]

        again = run_batch(lambda o: o.sync_class("agent"))
        assert again.total_pushed == 0
        assert len(fake_source.patches) == 1
        assert store.get(AGENT, "A1")["name"] == "Ali Local"

    def test_no_push_for_read_only_class(self, run_batch, store: LocalStore, fake_source: FakeSource) -> None:
        """A class without write-back keeps its local edit unpushed."""
        fake_source.add("Customer_Profile", make_record("C1", T0, {"Name": "Siti"}))
        run_batch(lambda o: o.sync_class("customer"))
        store.record_local_edit(CUSTOMER, "C1", {"name": "Local"})

        result = run_batch(lambda o: o.sync_class("customer"))

        assert result.skipped == {"customer": 1}
        assert fake_source.patches == []
        assert store.get(CUSTOMER, "C1")["name"] == "Local"

    def test_push_disabled(self, run_batch, settings: Settings, store: LocalStore, fake_source: FakeSource) -> None:
        """Test that no write-back happens when push is disabled."""
        settings.sync.enable_push = False
        fake_source.add("agent", make_record("A1", T0, {"Name": "Ali"}))
        run_batch(lambda o: o.sync_class("agent"))
        store.record_local_edit(AGENT, "A1", {"name": "Ali Local"})

        result = run_batch(lambda o: o.sync_class("agent"))

        assert result.total_pushed == 0
        assert fake_source.patches == []

    def test_submitted_payment_never_overwritten(self, run_batch, store: LocalStore, fake_source: FakeSource) -> None:
        """Submitted payments are pulled once and then left alone."""
        fake_source.add("submit_payment", make_record("SP1", T0, {"Status": "pending"}))
        run_batch(lambda o: o.sync_class("submitted_payment"))
        fake_source.records["submit_payment"]["SP1"].update({"Status": "approved", "Modified Date": T1})

        result = run_batch(lambda o: o.sync_class("submitted_payment"))

        assert result.skipped == {"submitted_payment": 1}
        assert store.get(SUBMITTED_PAYMENT, "SP1")["status"] == "pending"


class TestUpload:
    """Tests for JSON upload."""

    def payments(self, count: int, modified: str = T0) -> list[dict[str, Any]]:
        return [
            {"unique id": f"P{i}", "Modified Date": modified, "Amount": i}
            for i in range(count)
        ]

    def test_merges_records(self, run_batch, store: LocalStore, fake_source: FakeSource) -> None:
        """Uploaded records are merged without touching the source."""
        result = run_batch(lambda o: o.upload_json("payment", json.dumps(self.payments(3))))

        assert result.success
        assert result.processed == 3
        assert result.synced == {"payment": 3}
        assert store.count(PAYMENT) == 3
        assert fake_source.requests == []

    def test_first_record_invalid_rejects_all(self, run_batch, settings: Settings, store: LocalStore, fake_source: FakeSource) -> None:
        """Nothing is written when the first record is malformed."""
        records = self.payments(50)
        del records[0]["unique id"]

        result = run_batch(lambda o: o.upload_json("payment", records))

        assert not result.success
        assert "no natural key" in result.validation_error
        assert store.count(PAYMENT) == 0
        assert result.repair is None
        assert fake_source.requests == []

    def test_first_record_without_date(self, run_batch, settings: Settings, store: LocalStore) -> None:
        """A keyed first record without a modification date is queued."""
        records = self.payments(2)
        del records[0]["Modified Date"]

        result = run_batch(lambda o: o.upload_json("payment", records))

        assert not result.success
        assert store.count(PAYMENT) == 0
        entry = ProblemQueue(settings.sync.problem_queue_file).get("P0")
        assert entry.kind == ProblemKind.VALIDATION_FAILURE

    def test_skip_reasons(self, run_batch, store: LocalStore) -> None:
        """Records not newer than the local copy are counted by reason."""
        run_batch(lambda o: o.upload_json("payment", self.payments(2, T1)))

        records = self.payments(3, T0)
        records[1]["Modified Date"] = T1
        result = run_batch(lambda o: o.upload_json("payment", records))

        assert result.skip_reasons == {"existing_is_newer": 1, "same_timestamp": 1}
        assert result.synced == {"payment": 1}
        assert store.get(PAYMENT, "P0")["amount"] == 0.0

    def test_comma_separated_lists(self, run_batch, store: LocalStore) -> None:
        """Flattened list fields are split on upload."""
        records = [{"unique id": "I1", "Modified Date": T0, "Linked Payment": "P1, P2"}]

        run_batch(lambda o: o.upload_json("invoice", records))

        assert store.get(INVOICE, "I1")["linked_payment"] == ["P1", "P2"]

    @pytest.mark.parametrize("entity_class,payload,message", [
        ("agent", "[]", "Unsupported entity class"),
        ("widget", "[]", "Unsupported entity class"),
        ("payment", "[]", "non-empty JSON array"),
        ("payment", "{not json", "Invalid JSON"),
        ("payment", '{"unique id": "P1"}', "non-empty JSON array"),
    ])
    def test_rejected_payloads(self, run_batch, store: LocalStore, entity_class: str, payload: str, message: str) -> None:
        """Test payloads refused before any record is read."""
        result = run_batch(lambda o: o.upload_json(entity_class, payload))

        assert not result.success
        assert message in result.validation_error
        assert store.count(PAYMENT) == 0


class TestSingleRecordOperations:
    """Tests for sync_aggregate and push_record."""

    def test_aggregate_not_found(self, run_batch, fake_source: FakeSource) -> None:
        """Test syncing an aggregate the source does not have."""
        result = run_batch(lambda o: o.sync_aggregate("I404"))

        assert not result.success
        assert "not found" in result.errors[0]

    def test_aggregate_skip_classes(self, run_batch, settings: Settings, store: LocalStore, dataset: FakeSource) -> None:
        """Skipped child classes are neither fetched nor queued."""
        result = run_batch(lambda o: o.sync_aggregate("I1", skip_classes=["user"]))

        assert result.success
        assert store.exists(INVOICE, "I1")
        assert not store.exists(USER, "U1")
        assert dataset.count("GET", "user") == 0
        assert len(ProblemQueue(settings.sync.problem_queue_file)) == 0

    def test_aggregate_force(self, run_batch, dataset: FakeSource) -> None:
        """Forcing resyncs an unchanged package."""
        run_batch(lambda o: o.sync_aggregate("I1"))

        unforced = run_batch(lambda o: o.sync_aggregate("I1"))
        forced = run_batch(lambda o: o.sync_aggregate("I1", force=True))

        assert unforced.total_synced == 0
        assert forced.synced["invoice"] == 1
        assert forced.synced["payment"] == 1

    def test_push_record(self, run_batch, store: LocalStore, fake_source: FakeSource) -> None:
        """A single local row is written back on request."""
        fake_source.add("payment", make_record("P1", T0, {"Amount": 10}))
        run_batch(lambda o: o.sync_class("payment"))
        store.record_local_edit(PAYMENT, "P1", {"remark": "corrected"})

        result = run_batch(lambda o: o.push_record("payment", "P1"))

        assert result.success
        assert result.repair is None
        assert fake_source.patches == [("payment", "P1", {"Amount": 10.0, "Remark": "corrected"})]

    def test_push_record_not_allowed(self, run_batch, store: LocalStore) -> None:
        """Test pushing a class without write-back."""
        result = run_batch(lambda o: o.push_record("customer", "C1"))

        assert not result.success
        assert "not enabled" in result.errors[0]

    def test_push_record_not_stored(self, run_batch) -> None:
        """Test pushing a row that does not exist locally."""
        result = run_batch(lambda o: o.push_record("agent", "A404"))

        assert not result.success
        assert "not stored locally" in result.errors[0]
