"""
Source REST API Client.

Async client for the external system of record:
- Cursor/limit pagination over one entity type
- Constraint queries on non-system fields only
- Single-record fetch and PATCH write-back
- Retry on rate limits, 5xx responses and transport errors
- Bounded concurrency shared by every call made through one client
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable

import httpx

from recon_sync.config import Settings, SourceLimits
from recon_sync.schema import SYSTEM_TIMESTAMP_FIELDS

logger = logging.getLogger(__name__)

CONSTRAINT_TYPES = frozenset({
    "equals",
    "not equal",
    "is_empty",
    "is_not_empty",
    "text contains",
    "not text contains",
    "greater than",
    "less than",
    "in",
    "not in",
    "contains",
    "not contains",
})


class SourceError(Exception):
    """Base exception for source API errors."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        entity_class: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.entity_class = entity_class


class SourceRateLimitError(SourceError):
    """Raised when the rate limit is still exceeded after all retries."""

    def __init__(self, retry_after: float = 60, entity_class: str | None = None) -> None:
        super().__init__(
            f"Rate limit exceeded. Retry after {retry_after:g}s",
            status=429,
            entity_class=entity_class,
        )
        self.retry_after = retry_after


class SourceTimeoutError(SourceError):
    """Raised when a source call keeps timing out."""


class SourceNotFoundError(SourceError):
    """Raised when a single record does not exist at the source."""


class ConstraintError(ValueError):
    """Raised for a constraint the source cannot evaluate."""


@dataclass
class Constraint:
    """One server-side filter of a constraint query."""

    key: str
    constraint_type: str
    value: Any = None

    def __post_init__(self) -> None:
        if self.key in SYSTEM_TIMESTAMP_FIELDS:
            raise ConstraintError(
                f"The source cannot filter on '{self.key}'; "
                "fetch everything and filter locally instead"
            )
        if self.constraint_type not in CONSTRAINT_TYPES:
            raise ConstraintError(f"Unknown constraint type: {self.constraint_type}")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"key": self.key, "constraint_type": self.constraint_type}
        if self.value is not None:
            data["value"] = self.value
        return data


@dataclass
class Page:
    """One page of a paginated listing."""

    records: list[dict[str, Any]]
    remaining: int
    cursor: int

    def __len__(self) -> int:
        return len(self.records)


@dataclass
class FetchResult:
    """Outcome of fetching several single records concurrently."""

    found: dict[str, dict[str, Any]] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    failed: dict[str, SourceError] = field(default_factory=dict)


class SourceClient:
    """
    Client for the paginated, rate-limited source REST interface.

    Example:
        async with SourceClient(base_url, api_token) as source:
            invoices = await source.fetch_all("invoice")
            invoice = await source.fetch_one("invoice", "1699-abc")
            users = await source.fetch_all(
                "user",
                constraints=[Constraint("Linked Agent Profile", "equals", agent_id)],
            )
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        limits: SourceLimits | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize source client.

        Args:
            base_url: Object API root, e.g. https://app.example.com/api/1.1/obj
            api_token: Bearer token
            limits: Paging, retry and concurrency limits
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.limits = limits or SourceLimits()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._semaphore = asyncio.Semaphore(self.limits.max_concurrency)
        self.request_count = 0

    def _get_headers(self) -> dict[str, str]:
        """Get request headers with authentication."""
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            timeout = self.limits.timeout_seconds
            self._client = httpx.AsyncClient(
                headers=self._get_headers(),
                timeout=httpx.Timeout(
                    connect=min(10.0, timeout),
                    read=timeout,
                    write=timeout,
                    pool=timeout,
                ),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SourceClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def type_url(self, source_type: str, natural_key: str | None = None) -> str:
        url = f"{self.base_url}/{source_type}"
        if natural_key is not None:
            url += f"/{natural_key}"
        return url

    async def _request(
        self,
        method: str,
        url: str,
        entity_class: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Make an API request with retry logic.

        Handles:
        - 429 with the server's Retry-After (capped)
        - 5xx and transport errors with linear backoff
        - Timeouts, surfaced as SourceTimeoutError once retries run out
        """
        client = await self._get_client()
        max_retries = self.limits.max_retries
        backoff = self.limits.retry_backoff_seconds

        async with self._semaphore:
            for attempt in range(max_retries):
                last_attempt = attempt == max_retries - 1
                try:
                    self.request_count += 1
                    response = await client.request(method, url, **kwargs)
                except httpx.TimeoutException as e:
                    if not last_attempt:
                        logger.warning("Timeout on %s %s, retrying", method, url)
                        await asyncio.sleep(backoff * (attempt + 1))
                        continue
                    raise SourceTimeoutError(
                        f"Timed out: {method} {url}", entity_class=entity_class
                    ) from e
                except httpx.TransportError as e:
                    if not last_attempt:
                        logger.warning("Connection error on %s %s: %s", method, url, e)
                        await asyncio.sleep(backoff * (attempt + 1))
                        continue
                    raise SourceError(
                        f"Connection error: {e}", entity_class=entity_class
                    ) from e

                if response.status_code == 429:
                    retry_after = self._retry_after(response)
                    if not last_attempt:
                        logger.warning("Rate limited, sleeping %.1fs", retry_after)
                        await asyncio.sleep(retry_after)
                        continue
                    raise SourceRateLimitError(retry_after, entity_class=entity_class)

                if response.status_code >= 500:
                    if not last_attempt:
                        logger.warning(
                            "Source returned %s for %s, retrying",
                            response.status_code,
                            url,
                        )
                        await asyncio.sleep(backoff * (attempt + 1))
                        continue
                    raise SourceError(
                        f"Source returned {response.status_code}: {response.reason_phrase}",
                        status=response.status_code,
                        entity_class=entity_class,
                    )

                if response.status_code == 404:
                    raise SourceNotFoundError(
                        f"Not found: {url}",
                        status=404,
                        entity_class=entity_class,
                    )

                if response.status_code >= 400:
                    raise SourceError(
                        f"Source returned {response.status_code}: {response.text[:200]}",
                        status=response.status_code,
                        entity_class=entity_class,
                    )

                return response

        raise SourceError("Max retries exceeded", entity_class=entity_class)

    def _retry_after(self, response: httpx.Response) -> float:
        try:
            value = float(response.headers.get("Retry-After", "60"))
        except ValueError:
            value = 60.0
        return max(0.0, min(value, self.limits.max_retry_after_seconds))

    @staticmethod
    def _body(response: httpx.Response, entity_class: str | None) -> dict[str, Any]:
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise SourceError(
                f"Invalid JSON from source: {e}", entity_class=entity_class
            ) from e
        body = data.get("response") if isinstance(data, dict) else None
        if not isinstance(body, dict):
            raise SourceError(
                "Source response has no 'response' object", entity_class=entity_class
            )
        return body

    # =========================================================================
    # Listing
    # =========================================================================

    async def fetch_page(
        self,
        source_type: str,
        cursor: int = 0,
        constraints: Iterable[Constraint] | None = None,
        limit: int | None = None,
    ) -> Page:
        """
        Fetch one page of records.

        Args:
            source_type: Source type path, e.g. "invoice"
            cursor: Offset of the first record
            constraints: Optional server-side filters (no system timestamps)
            limit: Page size (defaults to the configured page limit)
        """
        params: dict[str, Any] = {
            "limit": limit or self.limits.page_limit,
            "cursor": cursor,
        }
        constraint_list = list(constraints or [])
        if constraint_list:
            params["constraints"] = json.dumps([c.to_dict() for c in constraint_list])

        response = await self._request(
            "GET",
            self.type_url(source_type),
            entity_class=source_type,
            params=params,
        )
        body = self._body(response, source_type)
        records = body.get("results") or []
        remaining = int(body.get("remaining") or 0)
        return Page(records=list(records), remaining=remaining, cursor=cursor)

    async def iter_pages(
        self,
        source_type: str,
        constraints: Iterable[Constraint] | None = None,
    ) -> AsyncIterator[Page]:
        """
        Yield pages until the source reports nothing remaining.

        Stops when ``remaining`` is 0 or a page comes back empty. An error
        on a page propagates to the caller; pages already yielded stay
        valid.
        """
        constraint_list = list(constraints or [])
        cursor = 0
        while True:
            page = await self.fetch_page(source_type, cursor, constraint_list)
            if not page.records:
                break
            yield page
            cursor += len(page.records)
            if page.remaining <= 0:
                break

    async def fetch_all(
        self,
        source_type: str,
        constraints: Iterable[Constraint] | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch every record of a type (optionally constrained)."""
        records: list[dict[str, Any]] = []
        pages = 0
        async for page in self.iter_pages(source_type, constraints):
            records.extend(page.records)
            pages += 1
        logger.debug("Fetched %d %s records in %d pages", len(records), source_type, pages)
        return records

    # =========================================================================
    # Single records
    # =========================================================================

    async def fetch_one(self, source_type: str, natural_key: str) -> dict[str, Any]:
        """
        Fetch one record by natural key.

        Raises:
            SourceNotFoundError: record does not exist at the source
        """
        response = await self._request(
            "GET",
            self.type_url(source_type, natural_key),
            entity_class=source_type,
        )
        record = self._body(response, source_type)
        record.setdefault("_id", natural_key)
        return record

    async def fetch_many(
        self,
        source_type: str,
        natural_keys: Iterable[str],
    ) -> FetchResult:
        """Fetch several records concurrently, bounded by max_concurrency."""
        keys = list(dict.fromkeys(k for k in natural_keys if k))
        result = FetchResult()

        async def fetch(key: str) -> None:
            try:
                result.found[key] = await self.fetch_one(source_type, key)
            except SourceNotFoundError:
                result.missing.append(key)
            except SourceError as e:
                result.failed[key] = e

        await asyncio.gather(*(fetch(key) for key in keys))
        return result

    async def patch(
        self,
        source_type: str,
        natural_key: str,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Write fields back to a source record.

        Only non-empty values are sent; an empty body is not sent at all.

        Returns:
            The body actually sent
        """
        body = {
            name: value
            for name, value in fields.items()
            if value is not None and value != "" and value != []
        }
        if not body:
            logger.debug("Nothing to push for %s %s", source_type, natural_key)
            return body

        await self._request(
            "PATCH",
            self.type_url(source_type, natural_key),
            entity_class=source_type,
            json=body,
        )
        return body


def create_source_client(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SourceClient:
    """Create a SourceClient from settings."""
    return SourceClient(
        base_url=settings.source_base_url,
        api_token=settings.source_api_token.get_secret_value(),
        limits=settings.source,
        transport=transport,
    )
