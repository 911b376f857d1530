"""Pytest configuration for cmsfacade tests."""

import asyncio
import random
from datetime import datetime, timedelta
from typing import Any

import pytest

from cmsfacade.datasource.base import (
    ContentItem,
    PaginatedResult,
    ProviderAdapter,
    QueryOptions,
)
from cmsfacade.facade import ContentFacade
from cmsfacade.services.errors import NotFoundError
from cmsfacade.settings import ProviderConfig, ProviderKind


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeAdapter(ProviderAdapter):
    """In-memory adapter that records every call."""

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self.rows: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[tuple[str, str]] = []
        self.error: BaseException | None = None
        self.gate: asyncio.Event | None = None
        self.last_options: QueryOptions | None = None
        self.closed = False
        self._next_id = 100

    @property
    def service_id(self) -> str:
        return "fake"

    def default_headers(self) -> dict[str, str]:
        return {}

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def fetch_all(self, collection: str, options: QueryOptions) -> PaginatedResult:
        await self._enter("fetch_all", collection)
        self.last_options = options
        return self._page(self.rows.get(collection, []), options)

    async def fetch_by_id(self, collection: str, item_id: str) -> ContentItem | None:
        await self._enter("fetch_by_id", collection)
        row = self._find(collection, "id", item_id)
        return ContentItem.model_validate(row) if row else None

    async def fetch_by_slug(self, collection: str, slug: str) -> ContentItem | None:
        await self._enter("fetch_by_slug", collection)
        row = self._find(collection, "slug", slug)
        return ContentItem.model_validate(row) if row else None

    async def create(self, collection: str, data: dict[str, Any]) -> ContentItem:
        await self._enter("create", collection)
        self._next_id += 1
        row = {**data, "id": str(self._next_id)}
        self.rows.setdefault(collection, []).append(row)
        return ContentItem.model_validate(row)

    async def update(self, collection: str, item_id: str, data: dict[str, Any]) -> ContentItem:
        await self._enter("update", collection)
        row = self._find(collection, "id", item_id)
        if row is None:
            raise NotFoundError(f"{collection}/{item_id}", service_id=self.service_id)
        row.update(data)
        return ContentItem.model_validate(row)

    async def delete(self, collection: str, item_id: str) -> None:
        await self._enter("delete", collection)
        self.rows[collection] = [
            row for row in self.rows.get(collection, []) if row["id"] != item_id
        ]

    async def search(self, collection: str, query: str, options: QueryOptions) -> PaginatedResult:
        await self._enter("search", collection)
        self.last_options = options
        matches = [
            row
            for row in self.rows.get(collection, [])
            if query.lower() in str(row.get("name", "")).lower()
        ]
        return self._page(matches, options)

    async def close(self) -> None:
        self.closed = True

    async def _enter(self, method: str, collection: str) -> None:
        self.calls.append((method, collection))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error

    def _find(self, collection: str, field: str, value: str) -> dict[str, Any] | None:
        for row in self.rows.get(collection, []):
            if row.get(field) == value:
                return row
        return None

    @staticmethod
    def _page(rows: list[dict[str, Any]], options: QueryOptions) -> PaginatedResult:
        start = (options.page - 1) * options.page_size
        chunk = rows[start : start + options.page_size]
        return PaginatedResult(
            data=[ContentItem.model_validate(row) for row in chunk],
            total=len(rows),
            page=options.page,
            page_size=options.page_size,
            has_more=start + len(chunk) < len(rows),
        )


def make_config(**overrides: Any) -> ProviderConfig:
    values: dict[str, Any] = {
        "kind": ProviderKind.BASEROW,
        "base_url": "https://api.baserow.io",
        "token": "test-token",
        "cache_ttl_seconds": 60,
        "stale_while_revalidate_seconds": 20,
        "retry_attempts": 3,
        "retry_base_delay_ms": 100,
        "retry_max_delay_ms": 1000,
        "timeout_ms": 1000,
        "circuit_breaker_threshold": 3,
        "circuit_breaker_reset_seconds": 30,
    }
    values.update(overrides)
    return ProviderConfig.create(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the retry loop."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def config() -> ProviderConfig:
    return make_config()


@pytest.fixture
def adapter(config) -> FakeAdapter:
    return FakeAdapter(config)


@pytest.fixture
def facade(config, adapter, clock, fake_sleep) -> ContentFacade:
    return ContentFacade(
        config,
        adapter=adapter,
        clock=clock,
        sleep=fake_sleep,
        rng=random.Random(0),
    )
