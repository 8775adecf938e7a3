"""Tests for the source API client."""

import asyncio
import json
from typing import Any, Callable

import httpx
import pytest

from recon_sync.config import SourceLimits
from recon_sync.connectors.source_client import (
    Constraint,
    ConstraintError,
    SourceClient,
    SourceError,
    SourceNotFoundError,
    SourceRateLimitError,
    SourceTimeoutError,
)

BASE_URL = "https://source.test/api/1.1/obj"
LIMITS = SourceLimits(retry_backoff_seconds=0, max_retries=3, max_retry_after_seconds=0)


def client_for(handler: Callable[[httpx.Request], Any], **limits: Any) -> SourceClient:
    source_limits = LIMITS.model_copy(update=limits) if limits else LIMITS
    return SourceClient(
        BASE_URL,
        "test-token",
        limits=source_limits,
        transport=httpx.MockTransport(handler),
    )


def run(client: SourceClient, coro_factory: Callable[[SourceClient], Any]) -> Any:
    async def runner() -> Any:
        async with client:
            return await coro_factory(client)

    return asyncio.run(runner())


def page(results: list[dict[str, Any]], remaining: int) -> httpx.Response:
    return httpx.Response(200, json={"response": {"results": results, "remaining": remaining}})


class TestPagination:
    """Tests for listing with cursor/limit paging."""

    def test_fetch_all_follows_remaining(self) -> None:
        """237 records arrive in pages of 100, 100 and 37."""
        total = [{"_id": f"R{i}"} for i in range(237)]
        seen: list[tuple[int, int]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            cursor = int(request.url.params["cursor"])
            limit = int(request.url.params["limit"])
            seen.append((cursor, limit))
            chunk = total[cursor:cursor + limit]
            return page(chunk, len(total) - cursor - len(chunk))

        records = run(client_for(handler), lambda c: c.fetch_all("invoice"))

        assert len(records) == 237
        assert seen == [(0, 100), (100, 100), (200, 100)]
        assert records[-1]["_id"] == "R236"

    def test_empty_page_stops(self) -> None:
        """An empty page ends the listing even if remaining says otherwise."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return page([], 50)

        assert run(client_for(handler), lambda c: c.fetch_all("agent")) == []
        assert len(calls) == 1

    def test_constraints_are_json_encoded(self) -> None:
        """Constraints travel as a JSON array in the query string."""
        captured: dict[str, Any] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["constraints"] = json.loads(request.url.params["constraints"])
            return page([{"_id": "U1"}], 0)

        constraint = Constraint("Linked Agent Profile", "equals", "A1")
        ids = run(client_for(handler), lambda c: c.fetch_all("user", [constraint]))

        assert [r["_id"] for r in ids] == ["U1"]
        assert captured["constraints"] == [
            {"key": "Linked Agent Profile", "constraint_type": "equals", "value": "A1"}
        ]

    def test_auth_header(self) -> None:
        """Every call carries the bearer token."""
        headers: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            headers.append(request.headers["Authorization"])
            return page([], 0)

        run(client_for(handler), lambda c: c.fetch_all("agent"))
        assert headers == ["Bearer test-token"]


class TestConstraint:
    """Tests for Constraint class."""

    def test_system_timestamps_rejected(self) -> None:
        """The source cannot filter on its system timestamps."""
        with pytest.raises(ConstraintError):
            Constraint("Modified Date", "greater than", "2024-01-01")
        with pytest.raises(ConstraintError):
            Constraint("Created Date", "less than", "2024-01-01")

    def test_unknown_type_rejected(self) -> None:
        """Test an unsupported constraint type."""
        with pytest.raises(ConstraintError):
            Constraint("Status", "roughly", "paid")

    def test_to_dict_omits_missing_value(self) -> None:
        """Test serializing a constraint without a value."""
        assert Constraint("Status", "is_empty").to_dict() == {
            "key": "Status",
            "constraint_type": "is_empty",
        }


class TestErrors:
    """Tests for retry and error mapping."""

    def test_rate_limit_retried(self) -> None:
        """A 429 is retried and the call then succeeds."""
        responses = [
            httpx.Response(429, headers={"Retry-After": "0"}),
            page([{"_id": "A1"}], 0),
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        records = run(client_for(handler), lambda c: c.fetch_all("agent"))
        assert records == [{"_id": "A1"}]

    def test_rate_limit_exhausted(self) -> None:
        """Persistent 429s surface as SourceRateLimitError."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, headers={"Retry-After": "0"})

        with pytest.raises(SourceRateLimitError):
            run(client_for(handler), lambda c: c.fetch_all("agent"))

    def test_server_error_exhausted(self) -> None:
        """5xx responses are retried, then raised with their status."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        with pytest.raises(SourceError) as exc_info:
            run(client_for(handler), lambda c: c.fetch_one("agent", "A1"))
        assert exc_info.value.status == 503
        assert exc_info.value.entity_class == "agent"
        assert len(calls) == 3

    def test_not_found(self) -> None:
        """A 404 on a single fetch is not retried."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404)

        with pytest.raises(SourceNotFoundError):
            run(client_for(handler), lambda c: c.fetch_one("agent", "A9"))
        assert len(calls) == 1

    def test_client_error(self) -> None:
        """Other 4xx responses raise immediately."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, text="bad constraint")

        with pytest.raises(SourceError, match="400"):
            run(client_for(handler), lambda c: c.fetch_all("agent"))

    def test_timeout(self) -> None:
        """Repeated timeouts surface as SourceTimeoutError."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(SourceTimeoutError):
            run(client_for(handler), lambda c: c.fetch_one("agent", "A1"))

    def test_invalid_body(self) -> None:
        """Test a response without the response envelope."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"results": []})

        with pytest.raises(SourceError, match="response"):
            run(client_for(handler), lambda c: c.fetch_all("agent"))


class TestSingleRecords:
    """Tests for single fetches and write-back."""

    def test_fetch_one(self) -> None:
        """The natural key is filled in when the body omits it."""
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/obj/agent/A1")
            return httpx.Response(200, json={"response": {"Name": "Ali"}})

        record = run(client_for(handler), lambda c: c.fetch_one("agent", "A1"))
        assert record == {"Name": "Ali", "_id": "A1"}

    def test_fetch_many_partitions_keys(self) -> None:
        """Found, missing and failed keys are reported separately."""
        def handler(request: httpx.Request) -> httpx.Response:
            key = request.url.path.rsplit("/", 1)[1]
            if key == "P2":
                return httpx.Response(404)
            if key == "P3":
                return httpx.Response(500)
            return httpx.Response(200, json={"response": {"_id": key}})

        result = run(
            client_for(handler),
            lambda c: c.fetch_many("payment", ["P1", "P2", "P3", "P1", ""]),
        )
        assert list(result.found) == ["P1"]
        assert result.missing == ["P2"]
        assert list(result.failed) == ["P3"]
        assert result.failed["P3"].status == 500

    def test_concurrency_is_bounded(self) -> None:
        """No more than max_concurrency calls are ever in flight."""
        state = {"active": 0, "peak": 0}

        async def handler(request: httpx.Request) -> httpx.Response:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
            await asyncio.sleep(0.01)
            state["active"] -= 1
            key = request.url.path.rsplit("/", 1)[1]
            return httpx.Response(200, json={"response": {"_id": key}})

        keys = [f"K{i}" for i in range(12)]
        result = run(
            client_for(handler, max_concurrency=2),
            lambda c: c.fetch_many("invoice_item", keys),
        )
        assert len(result.found) == 12
        assert state["peak"] <= 2

    def test_patch_sends_non_empty_values(self) -> None:
        """Null, empty and empty-list values are left out of the body."""
        bodies: list[dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "PATCH"
            bodies.append(json.loads(request.content))
            return httpx.Response(204)

        sent = run(
            client_for(handler),
            lambda c: c.patch("agent", "A1", {"Name": "Ali", "email": None, "Address": "", "x": []}),
        )
        assert sent == {"Name": "Ali"}
        assert bodies == [{"Name": "Ali"}]

    def test_patch_empty_body_not_sent(self) -> None:
        """Test that nothing is sent when there is nothing to push."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(204)

        assert run(client_for(handler), lambda c: c.patch("agent", "A1", {"Name": None})) == {}
        assert calls == []
