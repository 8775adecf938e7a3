"""Shared fixtures: settings, a temporary store and an in-memory source API."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx
import pytest

from recon_sync.config import Settings, SourceLimits, StoreConfig, SyncOptions
from recon_sync.connectors.local_store import LocalStore
from recon_sync.connectors.source_client import SourceClient
from recon_sync.core.orchestrator import BatchResult, SyncOrchestrator

BASE_URL = "https://source.test/api/1.1/obj"


def make_record(key: str, modified: str, fields: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build a source payload the way the API returns it."""
    record = {"_id": key, "Modified Date": modified, "Created Date": modified}
    record.update(fields or {})
    return record


class FakeSource:
    """
    In-memory source API served through httpx.MockTransport.

    Supports cursor pagination, "equals" constraints, single-record GET
    and PATCH. A PATCH applies the fields and bumps "Modified Date" the
    way the real source does.
    """

    def __init__(self) -> None:
        self.records: dict[str, dict[str, dict[str, Any]]] = {}
        self.patches: list[tuple[str, str, dict[str, Any]]] = []
        self.requests: list[httpx.Request] = []
        self.fail_types: set[str] = set()
        self.fail_keys: set[str] = set()

    def add(self, source_type: str, record: dict[str, Any]) -> dict[str, Any]:
        self.records.setdefault(source_type, {})[record["_id"]] = record
        return record

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = request.url.path.split("/obj/", 1)[1].strip("/").split("/")
        source_type, rest = parts[0], parts[1:]

        if source_type in self.fail_types or (rest and rest[0] in self.fail_keys):
            return httpx.Response(500, text="boom")

        if request.method == "PATCH":
            key = rest[0]
            body = json.loads(request.content)
            self.patches.append((source_type, key, body))
            stored = self.records.get(source_type, {}).get(key)
            if stored is not None:
                stored.update(body)
                stored["Modified Date"] = (
                    datetime.now(timezone.utc).isoformat(timespec="milliseconds")
                )
            return httpx.Response(204)

        if rest:
            record = self.records.get(source_type, {}).get(rest[0])
            if record is None:
                return httpx.Response(404, json={"statusCode": 404})
            return httpx.Response(200, json={"response": dict(record)})

        records = list(self.records.get(source_type, {}).values())
        constraints = request.url.params.get("constraints")
        if constraints:
            for constraint in json.loads(constraints):
                records = [
                    r for r in records if r.get(constraint["key"]) == constraint.get("value")
                ]
        cursor = int(request.url.params.get("cursor", 0))
        limit = int(request.url.params.get("limit", 100))
        page = records[cursor:cursor + limit]
        remaining = max(0, len(records) - cursor - len(page))
        return httpx.Response(
            200,
            json={"response": {"results": [dict(r) for r in page], "remaining": remaining}},
        )

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def count(self, method: str, source_type: str) -> int:
        return sum(
            1 for r in self.requests
            if r.method == method and f"/obj/{source_type}" in r.url.path
        )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing every file into tmp_path, with instant retries."""
    return Settings(
        source_base_url=BASE_URL,
        source_api_token="test-token",
        source=SourceLimits(retry_backoff_seconds=0, max_retries=2),
        store=StoreConfig(path=tmp_path / "recon.db"),
        sync=SyncOptions(
            progress_file=tmp_path / "progress.json",
            problem_queue_file=tmp_path / "problems.json",
        ),
    )


@pytest.fixture
def store(settings: Settings):
    local = LocalStore(settings.store.path)
    yield local
    local.close()


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def run_batch(
    settings: Settings,
    store: LocalStore,
    fake_source: FakeSource,
) -> Callable[[Callable[[SyncOrchestrator], Awaitable[BatchResult]]], BatchResult]:
    """Run one orchestrator call against the fake source."""

    def run(call: Callable[[SyncOrchestrator], Awaitable[BatchResult]]) -> BatchResult:
        async def runner() -> BatchResult:
            async with SourceClient(
                settings.source_base_url,
                "test-token",
                limits=settings.source,
                transport=fake_source.transport(),
            ) as source:
                orchestrator = SyncOrchestrator(settings, store, source)
                return await call(orchestrator)

        return asyncio.run(runner())

    return run
