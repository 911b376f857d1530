"""
ContentFacade - one content-access contract over any configured backend.

Combines:
- ProviderAdapter for the selected backend
- CacheManager for TTL / stale-while-revalidate / tag invalidation
- ResilienceController for timeout, retry and circuit breaking
- RequestDeduplicator so one key never has two loads in flight
"""

import asyncio
import inspect
import random
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Sequence, TypeVar

import httpx
from loguru import logger

from cmsfacade.datasource import create_adapter
from cmsfacade.datasource.base import (
    ContentItem,
    PaginatedResult,
    ProviderAdapter,
    QueryOptions,
)
from cmsfacade.services.cache import CacheManager
from cmsfacade.services.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from cmsfacade.services.deduplicator import RequestDeduplicator
from cmsfacade.services.errors import ConfigurationError, is_unavailable
from cmsfacade.services.resilience import ResilienceController
from cmsfacade.services.retry import RetryPolicy
from cmsfacade.settings import ProviderConfig

T = TypeVar("T")

RefreshErrorObserver = Callable[[str, BaseException], Any]
PathRevalidator = Callable[[Sequence[str]], Any]


class ContentFacade:
    """
    Cached, fault-tolerant access to one content backend.

    Usage:
        config = ProviderConfig.from_settings(Settings.from_env())
        async with ContentFacade(config) as cms:
            page = await cms.fetch_all("stations", QueryOptions(page=1, page_size=20))
            station = await cms.fetch_by_slug("stations", "shell-darwin")
    """

    def __init__(
        self,
        config: ProviderConfig,
        adapter: ProviderAdapter | None = None,
        http_client: httpx.AsyncClient | None = None,
        on_refresh_error: RefreshErrorObserver | None = None,
        path_revalidator: PathRevalidator | None = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        errors = config.validation_errors()
        if errors:
            raise ConfigurationError(
                "CMS configuration validation failed:\n- " + "\n- ".join(errors), errors
            )

        self._config = config
        self._adapter = adapter or create_adapter(config, client=http_client)
        self._on_refresh_error = on_refresh_error
        self._path_revalidator = path_revalidator

        self._ttl = timedelta(seconds=config.cache_ttl_seconds)
        self._stale_window = timedelta(seconds=config.stale_while_revalidate_seconds)

        self._cache = CacheManager(
            prefix="cms:",
            max_size=config.cache_max_size,
            default_ttl=self._ttl,
            default_stale_window=self._stale_window,
            clock=clock,
            debug=config.debug,
        )
        self._resilience = ResilienceController(
            breakers=CircuitBreakerRegistry(
                CircuitBreakerConfig(
                    failure_threshold=config.circuit_breaker_threshold,
                    reset_timeout=timedelta(seconds=config.circuit_breaker_reset_seconds),
                ),
                clock=clock,
            ),
            circuit_breaker_enabled=config.circuit_breaker_enabled,
            sleep=sleep,
            rng=rng,
        )
        self._deduplicator = RequestDeduplicator(debug=config.debug)

        self._read_policy = RetryPolicy(
            max_attempts=config.retry_attempts,
            base_delay=config.retry_base_delay_ms / 1000,
            max_delay=config.retry_max_delay_ms / 1000,
            timeout=config.timeout_ms / 1000,
        )
        # create/update are not idempotent: a timed-out attempt may have landed
        self._write_policy = RetryPolicy(
            max_attempts=config.retry_attempts,
            base_delay=config.retry_base_delay_ms / 1000,
            max_delay=config.retry_max_delay_ms / 1000,
            timeout=config.timeout_ms / 1000,
            retry_on_timeout=False,
        )

        # Loads started before an invalidation of their collection do not store
        self._epoch = 0
        self._generations: dict[str, int] = {}

        logger.info(f"Content facade ready: {config.safe_dict()}")

    @property
    def config(self) -> ProviderConfig:
        return self._config

    @property
    def adapter(self) -> ProviderAdapter:
        return self._adapter

    @property
    def cache(self) -> CacheManager:
        return self._cache

    @property
    def resilience(self) -> ResilienceController:
        return self._resilience

    @property
    def provider(self) -> str:
        return self._config.kind.value

    # Reads

    async def fetch_all(
        self, collection: str, options: QueryOptions | None = None
    ) -> PaginatedResult:
        """Paginated list of a collection."""
        options = options or QueryOptions()
        return await self._cached_read(
            collection,
            "fetch_all",
            options.cache_params(),
            lambda: self._adapter.fetch_all(collection, options),
            options.tags,
        )

    async def fetch_by_id(self, collection: str, item_id: str) -> ContentItem | None:
        """Single record by id, or None when it does not exist."""
        return await self._cached_read(
            collection,
            "fetch_by_id",
            {"id": item_id},
            lambda: self._adapter.fetch_by_id(collection, item_id),
            {f"{collection}:{item_id}"},
        )

    async def fetch_by_slug(self, collection: str, slug: str) -> ContentItem | None:
        """Single record by slug, or None when it does not exist."""
        return await self._cached_read(
            collection,
            "fetch_by_slug",
            {"slug": slug},
            lambda: self._adapter.fetch_by_slug(collection, slug),
            {f"{collection}:slug:{slug}"},
        )

    async def search(
        self, collection: str, query: str, options: QueryOptions | None = None
    ) -> PaginatedResult:
        """Full-text search within a collection."""
        options = options or QueryOptions()
        return await self._cached_read(
            collection,
            "search",
            {"query": query, **options.cache_params()},
            lambda: self._adapter.search(collection, query, options),
            options.tags,
        )

    async def fetch_all_with_fallback(
        self, collection: str, options: QueryOptions | None = None
    ) -> PaginatedResult:
        """
        Like fetch_all, but an unavailable upstream yields an empty page.

        Permanent errors still raise.
        """
        options = options or QueryOptions()
        return await self._resilience.with_fallback(
            lambda: self.fetch_all(collection, options),
            lambda: PaginatedResult.empty(options),
            on_error=lambda e: logger.warning(
                f"[{self._operation_id(collection)}] fetch_all degraded to empty result: {e}"
            ),
            should_fallback=is_unavailable,
        )

    # Writes

    async def create(self, collection: str, data: dict[str, Any]) -> ContentItem:
        item = await self._resilience.execute(
            self._operation_id(collection),
            lambda: self._adapter.create(collection, data),
            self._write_policy,
        )
        self._invalidate_collection(collection)
        return item

    async def update(
        self, collection: str, item_id: str, data: dict[str, Any]
    ) -> ContentItem:
        item = await self._resilience.execute(
            self._operation_id(collection),
            lambda: self._adapter.update(collection, item_id, data),
            self._write_policy,
        )
        self._invalidate_collection(collection)
        return item

    async def delete(self, collection: str, item_id: str) -> None:
        await self._resilience.execute(
            self._operation_id(collection),
            lambda: self._adapter.delete(collection, item_id),
            self._read_policy,
        )
        self._invalidate_collection(collection)

    # Invalidation

    async def revalidate(
        self,
        paths: Sequence[str] | None = None,
        tags: Iterable[str] | None = None,
    ) -> int:
        """
        Drop cache entries carrying any of tags, then hand paths to the
        page-regeneration hook if one is configured.

        Returns:
            Number of cache entries removed
        """
        tags = list(tags or ())
        removed = self._cache.invalidate(tags=tags)
        self._epoch += 1
        logger.info(f"Revalidated tags={tags} paths={list(paths or ())}: {removed} entries dropped")

        if paths and self._path_revalidator is not None:
            result = self._path_revalidator(list(paths))
            if inspect.isawaitable(result):
                await result

        return removed

    # Lifecycle and status

    async def drain(self) -> None:
        """Wait for in-flight loads and background refreshes to finish."""
        await self._deduplicator.wait_idle()

    async def close(self) -> None:
        """Cancel background work and close the adapter's HTTP client."""
        await self._deduplicator.cancel_all()
        await self._adapter.close()
        logger.debug("ContentFacade closed")

    async def __aenter__(self) -> "ContentFacade":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def get_health_status(self) -> dict[str, Any]:
        """Cache, breaker and deduplication status."""
        return {
            "provider": self.provider,
            "cache": self._cache.get_stats().to_dict(),
            "circuit_breakers": self._resilience.breakers.get_all_status(),
            "open_circuits": self._resilience.breakers.get_open_circuits(),
            "deduplicator": self._deduplicator.get_stats().to_dict(),
        }

    # Internals

    def _operation_id(self, collection: str) -> str:
        return f"{self.provider}:{collection}"

    async def _cached_read(
        self,
        collection: str,
        operation: str,
        params: dict[str, Any],
        loader: Callable[[], Awaitable[T]],
        extra_tags: Iterable[str] = (),
    ) -> T:
        operation_id = self._operation_id(collection)

        if not self._config.cache_enabled:
            return await self._resilience.execute(operation_id, loader, self._read_policy)

        key = self._cache.generate_key(self.provider, collection, operation, params)
        tags = {collection, self.provider, *extra_tags}

        cached = self._cache.get(key)
        if cached.is_hit:
            return cached.value

        if cached.is_stale:
            self._schedule_refresh(key, collection, loader, tags)
            return cached.value

        return await self._deduplicator.dedupe(
            key, lambda: self._load(key, collection, loader, tags)
        )

    async def _load(
        self,
        key: str,
        collection: str,
        loader: Callable[[], Awaitable[T]],
        tags: set[str],
    ) -> T:
        generation = self._generation_of(collection)
        value = await self._resilience.execute(
            self._operation_id(collection), loader, self._read_policy
        )

        if generation != self._generation_of(collection):
            return value
        if value is None:
            # Record is gone upstream; drop any stale copy
            self._cache.delete(key)
        else:
            self._cache.set(key, value, self._ttl, self._stale_window, tags)
        return value

    def _schedule_refresh(
        self,
        key: str,
        collection: str,
        loader: Callable[[], Awaitable[Any]],
        tags: set[str],
    ) -> None:
        if self._deduplicator.is_in_flight(key):
            return

        task = self._deduplicator.start(
            key, lambda: self._load(key, collection, loader, tags)
        )
        operation_id = self._operation_id(collection)
        task.add_done_callback(lambda t: self._on_refresh_done(key, operation_id, t))

    def _on_refresh_done(self, key: str, operation_id: str, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return

        error = task.exception()
        if error is None:
            return

        logger.warning(f"[{operation_id}] background refresh failed: {error}")
        if self._on_refresh_error is not None:
            try:
                self._on_refresh_error(key, error)
            except Exception as e:
                logger.error(f"Refresh error observer raised: {e}")

    def _generation_of(self, collection: str) -> tuple[int, int]:
        return self._epoch, self._generations.get(collection, 0)

    def _invalidate_collection(self, collection: str) -> None:
        removed = self._cache.invalidate(tags=[collection])
        self._generations[collection] = self._generations.get(collection, 0) + 1
        if removed:
            logger.debug(f"Invalidated {removed} cache entries for '{collection}'")
