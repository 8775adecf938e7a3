"""
Dependency Orchestrator - coordinates reconciliation batches.

Runs entity classes in topological order and ties together:
- Source client for fetching and pushing records
- Policy resolver and merge executor for every record
- Aggregate packages (a stale child resyncs the whole package)
- Problem queue for records that cannot be reconciled
- One progress session per batch, with cooperative cancellation
- Relationship repair pass at the end of every batch
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Iterable

from recon_sync.config import Settings
from recon_sync.connectors.local_store import LocalStore, StoreError
from recon_sync.connectors.source_client import (
    Constraint,
    SourceClient,
    SourceError,
    SourceNotFoundError,
)
from recon_sync.core.idlist import IdListEntry, parse_id_list
from recon_sync.core.merge import (
    MergeExecutor,
    RecordValidationError,
    map_source_record,
    natural_key_of,
)
from recon_sync.core.policy import PolicyResolver
from recon_sync.core.problems import ProblemQueue, ProblemRecord
from recon_sync.core.progress import ProgressSession, ProgressTracker, SessionStatus
from recon_sync.core.repair import RelationshipRepair, RepairReport
from recon_sync.models import (
    EntityRecord,
    ProblemKind,
    RelationshipEdge,
    SyncAction,
    SyncPolicy,
    Watermark,
    format_timestamp,
    parse_timestamp,
    utcnow,
)
from recon_sync.schema import (
    ENTITY_CLASSES,
    INVOICE,
    MODIFIED_FIELD,
    SEDA_REGISTRATION,
    EntityClass,
    get_entity_class,
    package_edges,
    reverse_cascade_edges,
    tier_groups,
    topological_order,
)
from recon_sync.utils.logger import ActivityLog

logger = logging.getLogger(__name__)

UPLOAD_CLASSES = ("invoice", "payment", "seda_registration", "invoice_item", "user")

# Progress callback type
ProgressCallback = Callable[[ProgressSession], None]

RecordHandler = Callable[["_BatchRun", EntityClass, Any], Awaitable[Any]]


class BatchCancelled(Exception):
    """Raised between records once the batch's session was cancelled."""


@dataclass
class ClassCounts:
    """Per-class record counts of one batch."""

    synced: int = 0
    skipped: int = 0
    pushed: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class BatchResult:
    """Outcome of one batch invocation."""

    operation: str
    success: bool = True
    session_id: str | None = None
    counts: dict[str, ClassCounts] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    problems_added: int = 0
    problems_resolved: int = 0
    cancelled: bool = False
    repair: RepairReport | None = None
    steps: list[str] = field(default_factory=list)
    processed: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)
    validation_error: str | None = None
    start_time: float = 0.0
    end_time: float = 0.0

    def count(self, entity_class: str) -> ClassCounts:
        return self.counts.setdefault(entity_class, ClassCounts())

    @property
    def synced(self) -> dict[str, int]:
        return {name: c.synced for name, c in self.counts.items() if c.synced}

    @property
    def skipped(self) -> dict[str, int]:
        return {name: c.skipped for name, c in self.counts.items() if c.skipped}

    @property
    def pushed(self) -> dict[str, int]:
        return {name: c.pushed for name, c in self.counts.items() if c.pushed}

    @property
    def total_synced(self) -> int:
        return sum(c.synced for c in self.counts.values())

    @property
    def total_skipped(self) -> int:
        return sum(c.skipped for c in self.counts.values())

    @property
    def total_pushed(self) -> int:
        return sum(c.pushed for c in self.counts.values())

    @property
    def total_failed(self) -> int:
        return sum(c.failed for c in self.counts.values())

    @property
    def duration_seconds(self) -> float:
        """Duration in seconds."""
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        if self.start_time:
            return time.time() - self.start_time
        return 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "success": self.success,
            "session_id": self.session_id,
            "counts": {name: c.to_dict() for name, c in self.counts.items()},
            "errors": list(self.errors),
            "problems_added": self.problems_added,
            "problems_resolved": self.problems_resolved,
            "cancelled": self.cancelled,
            "repair": self.repair.to_dict() if self.repair else None,
            "steps": list(self.steps),
            "processed": self.processed,
            "skip_reasons": dict(self.skip_reasons),
            "validation_error": self.validation_error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class _Deferred:
    """A reference to a later-tier record, checked once the batch is done."""

    entity: EntityClass
    natural_key: str
    edge: RelationshipEdge
    ref: str
    context: dict[str, Any]


@dataclass
class _Package:
    """Children of one aggregate as fetched from the source."""

    found: list[tuple[EntityClass, dict[str, Any]]] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


@dataclass
class _BatchRun:
    """Mutable state shared by every step of one batch."""

    result: BatchResult
    session_id: str
    reconciled_at: datetime
    on_progress: ProgressCallback | None = None
    fetch_parents: bool = True
    skip_classes: frozenset[str] = frozenset()
    written: set[tuple[str, str]] = field(default_factory=set)
    rechecked: set[tuple[str, str]] = field(default_factory=set)
    failed: set[tuple[str, str]] = field(default_factory=set)
    queued: set[str] = field(default_factory=set)
    deferred: list[_Deferred] = field(default_factory=list)
    reverse_pulled: set[tuple[str, str]] = field(default_factory=set)


def _keys(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return [str(v) for v in value if v]
    return [str(value)]


def _as_datetime(value: datetime | str | None) -> datetime | None:
    return parse_timestamp(value) if value is not None else None


class SyncOrchestrator:
    """
    Batch reconciliation between the source and the local store.

    Example:
        async with create_source_client(settings) as source:
            orchestrator = SyncOrchestrator(settings, store, source)

            result = await orchestrator.sync_date_range("2024-01-01", "2024-01-31")
            result = await orchestrator.sync_id_list("invoice,1699-abc\\nseda,1700-def")
            result = await orchestrator.sync_aggregate("1699-abc", force=True)

        print(result.total_synced, result.errors)
    """

    def __init__(
        self,
        settings: Settings,
        store: LocalStore,
        source: SourceClient,
        problems: ProblemQueue | None = None,
        progress: ProgressTracker | None = None,
        activity: ActivityLog | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            settings: Application settings
            store: Local store to reconcile into
            source: Client for the source REST interface
            problems: Problem queue (default: the configured queue file)
            progress: Progress tracker (default: the configured progress file)
            activity: Activity log collaborator
        """
        self.settings = settings
        self.store = store
        self.source = source
        self.problems = problems or ProblemQueue(settings.sync.problem_queue_file)
        self.progress = progress or ProgressTracker(
            settings.sync.progress_file,
            settings.sync.progress_ttl_hours,
            settings.sync.progress_flush_seconds,
        )
        self.activity = activity or ActivityLog(
            settings.logging.activity_file,
            settings.logging.activity_buffer_size,
        )
        self.executor = MergeExecutor(store)
        self.resolver = PolicyResolver(
            push_classes=set(settings.sync.push_classes),
            enable_push=settings.sync.enable_push,
        )
        self.repair = RelationshipRepair(store, self.executor, activity=self.activity)
        self._order = {entity.name: i for i, entity in enumerate(topological_order())}

    # =========================================================================
    # Batch entry points
    # =========================================================================

    async def sync_date_range(
        self,
        date_from: datetime | str,
        date_to: datetime | str | None = None,
        classes: Iterable[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> BatchResult:
        """
        Reconcile every record modified inside a date window.

        The source cannot filter on its modification field, so each class
        is fetched in full and filtered locally. Classes of one tier are
        fetched concurrently; their records are then reconciled one at a
        time, tier after tier.

        Args:
            date_from: Start of the window (inclusive)
            date_to: End of the window (inclusive, default: now)
            classes: Entity classes to include (default: all)
            on_progress: Optional progress callback

        Returns:
            BatchResult
        """
        start = _as_datetime(date_from)
        end = _as_datetime(date_to) or utcnow()
        if start is None:
            raise ValueError("date_from is required")
        if start > end:
            raise ValueError(f"date_from {date_from} is after date_to {date_to}")
        groups = tier_groups(list(classes) if classes is not None else None)

        async def work(run: _BatchRun) -> None:
            for group in groups:
                self._check_cancel(run)
                fetched = await asyncio.gather(
                    *(self._fetch_class(run, entity) for entity in group)
                )
                for entity, records in zip(group, fetched):
                    if records is None:
                        continue
                    selected = [r for r in records if self._in_window(r, start, end)]
                    self._step(
                        run,
                        f"{entity.name}: {len(selected)} of {len(records)} records in window"
                    )
                    self._add_total(run, len(selected))
                    await self._process_records(run, entity, selected)

        return await self._execute(
            "date_range",
            work,
            on_progress,
            date_from=format_timestamp(start),
            date_to=format_timestamp(end),
        )

    async def sync_class(
        self,
        entity_class: str,
        date_from: datetime | str | None = None,
        date_to: datetime | str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> BatchResult:
        """Reconcile one entity class, optionally restricted to a date window."""
        entity = get_entity_class(entity_class)
        start = _as_datetime(date_from)
        end = _as_datetime(date_to) or (utcnow() if start else None)

        async def work(run: _BatchRun) -> None:
            records = await self._fetch_class(run, entity)
            if records is None:
                run.result.success = False
                return
            if start is not None:
                records = [r for r in records if self._in_window(r, start, end)]
            self._step(run, f"{entity.name}: {len(records)} records selected")
            self._add_total(run, len(records))
            await self._process_records(run, entity, records)

        return await self._execute(
            f"sync_{entity.name}",
            work,
            on_progress,
            date_from=format_timestamp(start),
            date_to=format_timestamp(end),
        )

    async def sync_seda(
        self,
        date_from: datetime | str | None = None,
        date_to: datetime | str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> BatchResult:
        """Registration-only variant: touches seda_registration records alone."""
        return await self.sync_class(SEDA_REGISTRATION.name, date_from, date_to, on_progress)

    async def sync_id_list(
        self,
        text: str,
        default_class: str = "invoice",
        on_progress: ProgressCallback | None = None,
    ) -> BatchResult:
        """
        Reconcile an explicit list of records without a full scan.

        Each listed ID is checked against its local watermark first and
        fetched only when the local row is missing or older than the
        listed modification time (always, when none was listed).
        """

        async def work(run: _BatchRun) -> None:
            entries = parse_id_list(text, default_class)
            self._step(run, f"Parsed {len(entries)} IDs")
            self._add_total(run, len(entries))

            by_class: dict[str, list[IdListEntry]] = {}
            for entry in entries:
                by_class.setdefault(entry.entity_class, []).append(entry)

            batch_size = self.settings.source.id_batch_size
            for entity in topological_order(by_class):
                to_fetch: list[str] = []
                for entry in by_class[entity.name]:
                    local = self.store.get_watermark(entity, entry.natural_key)
                    if self._needs_fetch(local, entry):
                        to_fetch.append(entry.natural_key)
                    else:
                        run.result.count(entity.name).skipped += 1
                        self._tick(run, entry.natural_key)
                self._step(
                    run,
                    f"{entity.name}: {len(to_fetch)} of {len(by_class[entity.name])} need fetching"
                )

                for start in range(0, len(to_fetch), batch_size):
                    self._check_cancel(run)
                    chunk = to_fetch[start:start + batch_size]
                    fetched = await self.source.fetch_many(entity.source_type, chunk)
                    for key in chunk:
                        if key in fetched.found:
                            await self._process_record(run, entity, fetched.found[key])
                        elif key in fetched.failed:
                            self._record_failure(
                                run, entity, key, str(fetched.failed[key]),
                                ProblemKind.TRANSIENT_FETCH_FAILURE,
                            )
                        else:
                            self._record_failure(
                                run, entity, key, "Listed record not found at source",
                                ProblemKind.UNRESOLVED_FOREIGN_KEY,
                            )

        return await self._execute("id_list", work, on_progress)

    async def upload_json(
        self,
        entity_class: str,
        payload: str | bytes | list[Any],
        on_progress: ProgressCallback | None = None,
    ) -> BatchResult:
        """
        Merge an uploaded export into the local store.

        Only the first record is validated before accepting the batch; if
        it is malformed the whole upload is rejected with nothing written.
        Later records are merged only when newer than the local copy.

        Args:
            entity_class: One of invoice, payment, seda_registration,
                invoice_item, user
            payload: JSON text or an already decoded list of objects

        Returns:
            BatchResult with processed, skip_reasons and validation_error set
        """

        async def work(run: _BatchRun) -> None:
            run.fetch_parents = False
            try:
                entity = get_entity_class(entity_class)
            except KeyError:
                entity = None
            if entity is None or entity.name not in UPLOAD_CLASSES:
                self._reject(run, f"Unsupported entity class for upload: {entity_class}")
                return

            records: Any = payload
            if isinstance(payload, (str, bytes)):
                try:
                    records = json.loads(payload)
                except json.JSONDecodeError as e:
                    self._reject(run, f"Invalid JSON: {e}")
                    return
            if not isinstance(records, list) or not records:
                self._reject(run, "Upload must be a non-empty JSON array")
                return

            try:
                first = map_source_record(entity, records[0])
                if first.modified_at is None:
                    raise RecordValidationError(
                        f"{entity.name} {first.natural_key}: missing '{MODIFIED_FIELD}'"
                    )
            except RecordValidationError as e:
                self._reject(run, f"First record rejected: {e}")
                key = natural_key_of(records[0]) if isinstance(records[0], dict) else None
                if key:
                    self._queue(run, entity, key, ProblemKind.VALIDATION_FAILURE, str(e))
                return

            self._add_total(run, len(records))
            for raw in records:
                self._check_cancel(run)
                run.result.processed += 1
                await self._guarded(run, entity, raw, self._merge_uploaded)

        return await self._execute("upload", work, on_progress)

    async def sync_aggregate(
        self,
        natural_key: str,
        force: bool = False,
        skip_classes: Iterable[str] = (),
        on_progress: ProgressCallback | None = None,
    ) -> BatchResult:
        """
        Reconcile one aggregate together with its whole package.

        Args:
            natural_key: Key of the aggregate record
            force: Resync the package even when nothing is stale
            skip_classes: Child classes to leave alone (e.g. "user")

        Returns:
            BatchResult whose ``steps`` list what was done
        """
        skipped = frozenset(get_entity_class(name).name for name in skip_classes)

        async def work(run: _BatchRun) -> None:
            run.skip_classes = skipped
            self._step(run, f"Fetching {INVOICE.name} {natural_key}")
            try:
                raw = await self.source.fetch_one(INVOICE.source_type, natural_key)
            except SourceNotFoundError:
                run.result.success = False
                run.result.errors.append(f"{INVOICE.name} {natural_key} not found at source")
                return

            self._add_total(run, 1)
            await self._guarded(run, INVOICE, raw, partial(self._sync_package, force=force))
            if run.result.total_failed:
                run.result.success = False

        return await self._execute("aggregate", work, on_progress)

    async def push_record(
        self,
        entity_class: str,
        natural_key: str,
        on_progress: ProgressCallback | None = None,
    ) -> BatchResult:
        """Write the push-enabled columns of one local row back to the source."""
        entity = get_entity_class(entity_class)

        async def work(run: _BatchRun) -> None:
            if not self.resolver.can_push(entity):
                run.result.success = False
                run.result.errors.append(f"Push-back is not enabled for {entity.name}")
                return
            local = self.store.get_watermark(entity, natural_key)
            if local is None:
                run.result.success = False
                run.result.errors.append(f"{entity.name} {natural_key} is not stored locally")
                return

            async def push(run: _BatchRun, entity: EntityClass, raw: Any) -> None:
                await self._push(run, entity, natural_key, local)

            self._add_total(run, 1)
            await self._guarded(run, entity, {"_id": natural_key}, push)
            if run.result.total_failed:
                run.result.success = False

        return await self._execute("push", work, on_progress, repair=False)

    # =========================================================================
    # Batch lifecycle
    # =========================================================================

    async def _execute(
        self,
        operation: str,
        work: Callable[[_BatchRun], Awaitable[None]],
        on_progress: ProgressCallback | None = None,
        repair: bool = True,
        **session_fields: Any,
    ) -> BatchResult:
        result = BatchResult(operation=operation, start_time=time.time())
        self.progress.cleanup()
        session = self.progress.create(
            category=operation,
            status=SessionStatus.RUNNING,
            **session_fields,
        )
        result.session_id = session.session_id
        run = _BatchRun(
            result=result,
            session_id=session.session_id,
            reconciled_at=utcnow(),
            on_progress=on_progress,
        )
        self.activity.log(f"{operation}: started (session {session.session_id})")

        crashed = False
        try:
            await work(run)
        except BatchCancelled:
            result.cancelled = True
            self.activity.log(f"{operation}: cancelled on request", "WARNING")
        except Exception as e:
            crashed = True
            result.success = False
            result.errors.append(f"{operation} aborted: {e}")
            logger.exception("%s aborted", operation)
            self.activity.log(f"{operation} aborted: {e}", "ERROR")

        if not crashed:
            await self._finish_references(run)
            if repair and self.settings.sync.repair_after_batch and result.validation_error is None:
                try:
                    result.repair = self.repair.run()
                except StoreError as e:
                    result.errors.append(f"Repair pass failed: {e}")
                    self.activity.log(f"Repair pass failed: {e}", "ERROR")

        if result.cancelled:
            self.progress.update(session.session_id, status=SessionStatus.ERROR, error="cancelled")
        elif not result.success:
            self.progress.update(
                session.session_id,
                status=SessionStatus.ERROR,
                error=result.errors[-1] if result.errors else "failed",
            )
        else:
            self.progress.update(session.session_id, status=SessionStatus.COMPLETED)

        result.end_time = time.time()
        self.activity.log(
            f"{operation}: {result.total_synced} synced, {result.total_skipped} skipped, "
            f"{result.total_pushed} pushed, {len(result.errors)} errors "
            f"in {result.duration_seconds:.1f}s",
            "INFO" if result.success else "ERROR",
        )
        return result

    def _check_cancel(self, run: _BatchRun) -> None:
        if self.progress.is_cancelled(run.session_id):
            raise BatchCancelled(run.session_id)

    def _notify(self, run: _BatchRun) -> None:
        if run.on_progress:
            session = self.progress.get(run.session_id)
            if session is not None:
                run.on_progress(session)

    def _add_total(self, run: _BatchRun, count: int) -> None:
        if count <= 0:
            return
        session = self.progress.get(run.session_id)
        total = session.total if session else 0
        self.progress.update(run.session_id, total=total + count)
        self._notify(run)

    def _tick(self, run: _BatchRun, key: str | None) -> None:
        self.progress.increment(run.session_id, completed=1, current_key=key)
        self._notify(run)

    def _step(self, run: _BatchRun, line: str) -> None:
        """Record a step on the result and on the session pollers see."""
        run.result.steps.append(line)
        self.progress.add_detail(run.session_id, line)

    def _reject(self, run: _BatchRun, message: str) -> None:
        run.result.success = False
        run.result.validation_error = message
        run.result.errors.append(message)
        self.activity.log(message, "ERROR")

    def _queue(
        self,
        run: _BatchRun,
        entity: EntityClass,
        key: str,
        kind: ProblemKind,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.problems.append(ProblemRecord(
            natural_key=key,
            kind=kind,
            entity_class=entity.name,
            message=message,
            context=context or {},
        ))
        run.queued.add(key)
        run.result.problems_added += 1

    def _record_failure(
        self,
        run: _BatchRun,
        entity: EntityClass,
        key: str | None,
        message: str,
        kind: ProblemKind | None = None,
    ) -> None:
        line = f"{entity.name} {key or '<no key>'}: {message}"
        run.result.errors.append(line)
        run.result.count(entity.name).failed += 1
        if key:
            run.failed.add((entity.name, key))
        self.activity.log(line, "ERROR")
        self.progress.add_detail(run.session_id, f"ERROR {line}")
        self.progress.increment(run.session_id, failed=1, current_key=key)
        self._notify(run)
        if kind is not None and key:
            self._queue(run, entity, key, kind, message)

    async def _finish_references(self, run: _BatchRun) -> None:
        """
        Settle later-tier references, and clear problems that were fixed.

        A target still missing locally is looked up at the source and
        reconciled when found; only a target absent from both is queued
        as unresolved. Batches that must not reach the source (uploads,
        cancelled runs) queue the reference unchecked so that a later
        source-backed pass re-examines it.
        """
        offline = not run.fetch_parents or run.result.cancelled
        found_at_source: dict[tuple[str, str], bool] = {}
        index = 0
        # Reconciling a target may defer further references
        while index < len(run.deferred):
            item = run.deferred[index]
            index += 1
            if item.natural_key in run.queued or self._stored(item.edge, item.ref):
                continue
            targets = (item.edge.target, item.edge.fallback)
            if any((name, item.ref) in run.failed for name in targets):
                continue

            context = dict(item.context)
            if offline:
                context["checked_at_source"] = False
            else:
                marker = (item.edge.target, item.ref)
                if marker not in found_at_source:
                    try:
                        found_at_source[marker] = await self._fetch_later(
                            run, item.edge, item.ref,
                        )
                    except SourceError as e:
                        self._queue(
                            run,
                            item.entity,
                            item.natural_key,
                            ProblemKind.TRANSIENT_FETCH_FAILURE,
                            f"Could not fetch {item.edge.target} {item.ref}: {e}",
                            {**context, "error": str(e)},
                        )
                        continue
                if found_at_source[marker]:
                    continue

            self._queue(
                run,
                item.entity,
                item.natural_key,
                ProblemKind.UNRESOLVED_FOREIGN_KEY,
                f"{item.edge.field} references missing {item.edge.target} {item.ref}",
                context,
            )

        for _, key in run.written | run.rechecked:
            if key in run.queued or key not in self.problems:
                continue
            self.problems.remove(key)
            run.result.problems_resolved += 1

    # =========================================================================
    # Per-record handling
    # =========================================================================

    async def _process_records(
        self,
        run: _BatchRun,
        entity: EntityClass,
        records: list[dict[str, Any]],
    ) -> None:
        for raw in records:
            await self._process_record(run, entity, raw)

    async def _process_record(
        self,
        run: _BatchRun,
        entity: EntityClass,
        raw: dict[str, Any],
    ) -> None:
        self._check_cancel(run)
        if entity.is_aggregate:
            await self._guarded(run, entity, raw, self._sync_package)
        else:
            await self._guarded(run, entity, raw, self._reconcile)

    async def _guarded(
        self,
        run: _BatchRun,
        entity: EntityClass,
        raw: Any,
        handler: RecordHandler,
    ) -> None:
        """Run one record handler; a failure is counted and the batch goes on."""
        key = natural_key_of(raw) if isinstance(raw, dict) else None
        try:
            await handler(run, entity, raw)
        except BatchCancelled:
            raise
        except RecordValidationError as e:
            self._record_failure(run, entity, key, str(e), ProblemKind.VALIDATION_FAILURE)
        except SourceError as e:
            self._record_failure(run, entity, key, str(e), ProblemKind.TRANSIENT_FETCH_FAILURE)
        except Exception as e:
            logger.exception("Unexpected error reconciling %s %s", entity.name, key)
            self._record_failure(run, entity, key, f"{type(e).__name__}: {e}")
        else:
            self._tick(run, key)

    async def _reconcile(
        self,
        run: _BatchRun,
        entity: EntityClass,
        raw: Any,
        cascade: bool = False,
    ) -> SyncAction:
        """Resolve and carry out the policy for one non-aggregate record."""
        record = map_source_record(entity, raw)
        key = record.natural_key
        if (entity.name, key) in run.written:
            return SyncAction.SKIP

        local = self.store.get_watermark(entity, key)
        action = self.resolver.resolve(entity, local, record.modified_at, cascade=cascade)
        counts = run.result.count(entity.name)

        if action.writes_locally:
            self.executor.apply(entity, record, run.reconciled_at)
            run.written.add((entity.name, key))
            counts.synced += 1
            logger.debug("%s %s: %s", entity.name, key, action.value)
            await self._resolve_references(run, entity, record)
            if action == SyncAction.FORCE_SYNC:
                await self._pull_reverse(run, entity, key)
        elif action == SyncAction.PUSH_UPDATE and local is not None:
            await self._push(run, entity, key, local)
        else:
            counts.skipped += 1
            await self._recheck_problem(run, entity, record)
        return action

    async def _recheck_problem(
        self,
        run: _BatchRun,
        entity: EntityClass,
        record: EntityRecord,
    ) -> None:
        """Re-run the reference check of an unchanged record that is queued."""
        key = record.natural_key
        if key not in self.problems or key in run.queued:
            return
        await self._resolve_references(run, entity, record)
        run.rechecked.add((entity.name, key))

    async def _reconcile_child(
        self,
        run: _BatchRun,
        entity: EntityClass,
        raw: dict[str, Any],
    ) -> SyncAction | None:
        try:
            return await self._reconcile(run, entity, raw, cascade=True)
        except RecordValidationError as e:
            self._record_failure(
                run, entity, natural_key_of(raw), str(e), ProblemKind.VALIDATION_FAILURE,
            )
            return None

    async def _merge_uploaded(
        self,
        run: _BatchRun,
        entity: EntityClass,
        raw: Any,
    ) -> None:
        record = map_source_record(entity, raw)
        key = record.natural_key
        local = self.store.get_watermark(entity, key)
        action = self.resolver.resolve(entity, local, record.modified_at)
        counts = run.result.count(entity.name)

        if action.writes_locally:
            self.executor.apply(entity, record, run.reconciled_at)
            run.written.add((entity.name, key))
            counts.synced += 1
            await self._resolve_references(run, entity, record)
            return

        if (
            local is not None
            and record.modified_at is not None
            and local.last_edited_at == record.modified_at
        ):
            reason = "same_timestamp"
        else:
            reason = "existing_is_newer"
        counts.skipped += 1
        run.result.skip_reasons[reason] = run.result.skip_reasons.get(reason, 0) + 1

    async def _push(
        self,
        run: _BatchRun,
        entity: EntityClass,
        key: str,
        local: Watermark,
    ) -> None:
        row = self.store.get(entity, key)
        if row is None:
            raise StoreError(f"{entity.name} {key} disappeared before push")

        body: dict[str, Any] = {}
        for column in entity.push_columns:
            value = row.get(column)
            if value is None or value == "" or value == []:
                continue
            spec = entity.field_for(column)
            body[spec.source] = spec.to_source(value)

        sent = await self.source.patch(entity.source_type, key, body)
        self.executor.mark_reconciled(
            entity,
            key,
            run.reconciled_at,
            source_modified_at=local.last_edited_at,
        )
        run.written.add((entity.name, key))
        run.result.count(entity.name).pushed += 1
        self.activity.log(f"Pushed {entity.name} {key} ({len(sent)} fields)")

    # =========================================================================
    # Foreign keys
    # =========================================================================

    def _stored(self, edge: RelationshipEdge, ref: str) -> bool:
        if self.store.exists(edge.target, ref):
            return True
        return bool(edge.fallback) and self.store.exists(edge.fallback, ref)

    @staticmethod
    def _problem_context(
        record: EntityRecord,
        edge: RelationshipEdge,
        ref: str,
    ) -> dict[str, Any]:
        context: dict[str, Any] = {
            "field": edge.field,
            "claimed_parent": ref,
            "parent_class": edge.target,
        }
        if record.get("amount") is not None:
            context["amount"] = record.get("amount")
        date = record.get("payment_date") or format_timestamp(record.modified_at)
        if date:
            context["date"] = date
        return context

    async def _resolve_references(
        self,
        run: _BatchRun,
        entity: EntityClass,
        record: EntityRecord,
    ) -> None:
        """
        Make sure every scalar reference of a written record resolves.

        Parents in earlier tiers are fetched and force-synced when missing.
        References to later tiers are checked once the batch is done.
        """
        unresolved: list[dict[str, Any]] = []
        transient: list[dict[str, Any]] = []

        for edge in entity.edges:
            if edge.is_multi or edge.target in run.skip_classes:
                continue
            for ref in _keys(record.get(edge.field)):
                if self._stored(edge, ref):
                    continue
                context = self._problem_context(record, edge, ref)
                target = ENTITY_CLASSES[edge.target]
                if target.tier >= entity.tier or not run.fetch_parents:
                    run.deferred.append(_Deferred(entity, record.natural_key, edge, ref, context))
                    continue
                try:
                    found = await self._fetch_parent(run, edge, ref)
                except SourceError as e:
                    context["error"] = str(e)
                    transient.append(context)
                    continue
                if not found:
                    unresolved.append(context)

        if unresolved:
            first = unresolved[0]
            self._queue(
                run,
                entity,
                record.natural_key,
                ProblemKind.UNRESOLVED_FOREIGN_KEY,
                f"{first['field']} references {first['parent_class']} {first['claimed_parent']}, "
                "which exists neither locally nor at the source",
                {**first, "unresolved": unresolved} if len(unresolved) > 1 else first,
            )
        elif transient:
            first = transient[0]
            self._queue(
                run,
                entity,
                record.natural_key,
                ProblemKind.TRANSIENT_FETCH_FAILURE,
                f"Could not fetch {first['parent_class']} {first['claimed_parent']}: {first['error']}",
                first,
            )

    async def _fetch_parent(
        self,
        run: _BatchRun,
        edge: RelationshipEdge,
        ref: str,
    ) -> bool:
        for name in (edge.target, edge.fallback):
            if not name or name in run.skip_classes:
                continue
            parent = ENTITY_CLASSES[name]
            try:
                raw = await self.source.fetch_one(parent.source_type, ref)
            except SourceNotFoundError:
                continue
            await self._reconcile(run, parent, raw, cascade=True)
            return True
        return False

    async def _fetch_later(
        self,
        run: _BatchRun,
        edge: RelationshipEdge,
        ref: str,
    ) -> bool:
        """Look a later-tier target up at the source; reconcile it when found."""
        for name in (edge.target, edge.fallback):
            if not name or name in run.skip_classes:
                continue
            target = ENTITY_CLASSES[name]
            try:
                raw = await self.source.fetch_one(target.source_type, ref)
            except SourceNotFoundError:
                continue
            self._add_total(run, 1)
            handler = self._sync_package if target.is_aggregate else self._reconcile
            await self._guarded(run, target, raw, handler)
            return True
        return False

    async def _pull_reverse(self, run: _BatchRun, entity: EntityClass, key: str) -> None:
        """Pull holders that must follow a force-synced target (agent -> users)."""
        if not run.fetch_parents:
            return
        for edge in reverse_cascade_edges(entity.name):
            marker = (edge.holder, key)
            if edge.holder in run.skip_classes or marker in run.reverse_pulled:
                continue
            run.reverse_pulled.add(marker)
            holder = ENTITY_CLASSES[edge.holder]
            constraint = Constraint(holder.field_for(edge.field).source, "equals", key)
            records = await self.source.fetch_all(holder.source_type, [constraint])
            for raw in records:
                await self._reconcile_child(run, holder, raw)

    # =========================================================================
    # Aggregate packages
    # =========================================================================

    def _is_stale(self, entity: EntityClass, raw: dict[str, Any]) -> bool:
        """True when a fetched child differs from what the last package saw."""
        key = natural_key_of(raw)
        if not key:
            return False
        local = self.store.get_watermark(entity, key)
        if local is None:
            return True
        if entity.policy == SyncPolicy.PULL_ONLY_IF_ABSENT:
            return False
        if local.last_reconciled_at is None or local.source_modified_at is None:
            return True
        try:
            modified = parse_timestamp(raw.get(MODIFIED_FIELD))
        except ValueError:
            return True
        return modified is not None and modified > local.source_modified_at

    async def _fetch_edge(
        self,
        edge: RelationshipEdge,
        keys: list[str],
        package: _Package,
    ) -> None:
        target = ENTITY_CLASSES[edge.target]
        result = await self.source.fetch_many(target.source_type, keys)
        package.found.extend((target, raw) for raw in result.found.values())
        missing = result.missing
        if missing and edge.fallback:
            fallback = ENTITY_CLASSES[edge.fallback]
            second = await self.source.fetch_many(fallback.source_type, missing)
            package.found.extend((fallback, raw) for raw in second.found.values())
            package.failed.update(
                {f"{fallback.name}:{k}": str(e) for k, e in second.failed.items()}
            )
            missing = second.missing
        package.missing.extend(f"{target.name}:{k}" for k in missing)
        package.failed.update({f"{target.name}:{k}": str(e) for k, e in result.failed.items()})

    async def _fetch_package(
        self,
        run: _BatchRun,
        entity: EntityClass,
        record: EntityRecord,
    ) -> _Package:
        package = _Package()
        requests = []
        for edge in package_edges(entity):
            if edge.target in run.skip_classes:
                continue
            keys = _keys(record.get(edge.field))
            if keys:
                requests.append(self._fetch_edge(edge, keys, package))
        await asyncio.gather(*requests)
        package.found.sort(key=lambda item: self._order[item[0].name])
        return package

    async def _sync_package(
        self,
        run: _BatchRun,
        entity: EntityClass,
        raw: Any,
        force: bool = False,
    ) -> bool:
        """
        Reconcile an aggregate and its children as one unit.

        The package is resynced when the aggregate itself is stale or any
        child is; every child is then force-synced before the aggregate
        is written, all under the batch's reconciliation stamp.

        Returns:
            True when the package was written
        """
        record = map_source_record(entity, raw)
        key = record.natural_key
        counts = run.result.count(entity.name)
        if (entity.name, key) in run.written:
            return False

        local = self.store.get_watermark(entity, key)
        action = self.resolver.resolve(entity, local, record.modified_at)
        package = await self._fetch_package(run, entity, record)
        stale = [
            child.name
            for child, child_raw in package.found
            if self._is_stale(child, child_raw)
        ]
        self._step(
            run,
            f"{entity.name} {key}: {action.value}, {len(package.found)} children fetched, "
            f"{len(stale)} stale"
        )

        if not (force or action.writes_locally or stale):
            if package.missing and key not in self.problems:
                self._queue(
                    run,
                    entity,
                    key,
                    ProblemKind.UNRESOLVED_FOREIGN_KEY,
                    f"Children missing at source: {', '.join(package.missing)}",
                    {"missing_children": list(package.missing)},
                )
            if action == SyncAction.PUSH_UPDATE and local is not None:
                await self._push(run, entity, key, local)
                self._step(run, f"{entity.name} {key}: pushed local changes")
            else:
                counts.skipped += 1
                self._step(run, f"{entity.name} {key}: package unchanged, skipped")
            if not package.missing:
                await self._recheck_problem(run, entity, record)
            return False

        if action == SyncAction.PUSH_UPDATE:
            logger.warning(
                "%s %s has local edits but a child changed; resyncing from source",
                entity.name, key,
            )

        invalid: list[str] = []
        for child, child_raw in package.found:
            if await self._reconcile_child(run, child, child_raw) is None:
                invalid.append(f"{child.name}:{natural_key_of(child_raw)}")
        self._step(
            run,
            f"{entity.name} {key}: {len(package.found) - len(invalid)} children force-synced",
        )

        if package.failed:
            raise SourceError(
                f"{len(package.failed)} package children could not be fetched: "
                + ", ".join(sorted(package.failed)),
                entity_class=entity.name,
            )
        if invalid:
            raise RecordValidationError(
                f"{len(invalid)} package children failed validation: " + ", ".join(invalid)
            )

        self.executor.apply(entity, record, run.reconciled_at)
        run.written.add((entity.name, key))
        counts.synced += 1
        self._step(run, f"{entity.name} {key}: written")

        if package.missing:
            self._queue(
                run,
                entity,
                key,
                ProblemKind.UNRESOLVED_FOREIGN_KEY,
                f"Children missing at source: {', '.join(package.missing)}",
                {"missing_children": list(package.missing)},
            )
            return True

        # Scalar references the package fetch did not cover
        await self._resolve_references(run, entity, record)
        return True

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _fetch_class(
        self,
        run: _BatchRun,
        entity: EntityClass,
    ) -> list[dict[str, Any]] | None:
        """Full scan of one class; a failure is reported as a class-level error."""
        try:
            records = await self.source.fetch_all(entity.source_type)
        except SourceError as e:
            message = f"{entity.name}: fetch failed: {e}"
            run.result.errors.append(message)
            self.activity.log(message, "ERROR")
            return None
        logger.info("Fetched %d %s records", len(records), entity.name)
        return records

    @staticmethod
    def _in_window(raw: Any, start: datetime, end: datetime | None) -> bool:
        if not isinstance(raw, dict):
            return False
        try:
            modified = parse_timestamp(raw.get(MODIFIED_FIELD))
        except ValueError:
            return False
        if modified is None:
            return False
        return start <= modified and (end is None or modified <= end)

    @staticmethod
    def _needs_fetch(local: Watermark | None, entry: IdListEntry) -> bool:
        if local is None or entry.modified_at is None:
            return True
        if local.source_modified_at is None:
            return True
        return entry.modified_at > local.source_modified_at
