"""
Provider adapter interface.

Adapters translate the uniform query contract into one backend's wire
protocol and normalize its responses. They do not cache, retry or break
circuits; the facade composes those around every call.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Literal

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from cmsfacade.services.errors import (
    ServiceError,
    TransientUpstreamError,
    UpstreamTimeoutError,
    classify_status,
)
from cmsfacade.settings import ProviderConfig


class SortSpec(BaseModel):
    """Sort order for list queries."""

    model_config = ConfigDict(frozen=True)

    field: str
    order: Literal["asc", "desc"] = "asc"

    @classmethod
    def parse(cls, raw: str) -> "SortSpec":
        """Parse `field`, `-field` or `field:desc`."""
        if raw.startswith("-"):
            return cls(field=raw[1:], order="desc")
        name, _, order = raw.partition(":")
        return cls(field=name, order=order.lower() or "asc")


class QueryOptions(BaseModel):
    """Uniform query parameters for list and search reads."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, gt=0, alias="pageSize")
    filters: dict[str, Any] = Field(default_factory=dict)
    sort: SortSpec | None = None
    search: str | None = None
    fields: frozenset[str] | None = None
    tags: frozenset[str] = frozenset()

    def cache_params(self) -> dict[str, Any]:
        """Parameters that identify this query for caching."""
        return {
            "page": self.page,
            "page_size": self.page_size,
            "filters": self.filters,
            "sort": f"{self.sort.field}:{self.sort.order}" if self.sort else None,
            "search": self.search,
            "fields": self.fields,
            "tags": self.tags,
        }


class ContentItem(BaseModel):
    """A normalized record. Backend fields are kept as extra attributes."""

    model_config = ConfigDict(extra="allow")

    id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PaginatedResult(BaseModel):
    """Normalized paginated read."""

    model_config = ConfigDict(populate_by_name=True)

    data: list[ContentItem] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = Field(default=20, alias="pageSize")
    has_more: bool = Field(default=False, alias="hasMore")

    @classmethod
    def empty(cls, options: QueryOptions | None = None) -> "PaginatedResult":
        options = options or QueryOptions()
        return cls(page=options.page, page_size=options.page_size)

    def to_response(self) -> dict[str, Any]:
        """Wire shape: {data, total, page, pageSize, hasMore}."""
        return self.model_dump(mode="json", by_alias=True)


class ProviderAdapter(ABC):
    """
    Abstract base class for all content backends.

    All adapters should:
    - Use one httpx.AsyncClient per adapter instance
    - Return ContentItem / PaginatedResult models
    - Raise classified ServiceError subclasses (see raise_for_status)
    """

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client

    @property
    @abstractmethod
    def service_id(self) -> str:
        """Unique identifier for this backend kind."""
        ...

    @abstractmethod
    def default_headers(self) -> dict[str, str]:
        """Auth and content headers sent with every request."""
        ...

    @abstractmethod
    async def fetch_all(self, collection: str, options: QueryOptions) -> PaginatedResult:
        ...

    @abstractmethod
    async def fetch_by_id(self, collection: str, item_id: str) -> ContentItem | None:
        ...

    @abstractmethod
    async def fetch_by_slug(self, collection: str, slug: str) -> ContentItem | None:
        ...

    @abstractmethod
    async def create(self, collection: str, data: dict[str, Any]) -> ContentItem:
        ...

    @abstractmethod
    async def update(self, collection: str, item_id: str, data: dict[str, Any]) -> ContentItem:
        ...

    @abstractmethod
    async def delete(self, collection: str, item_id: str) -> None:
        ...

    @abstractmethod
    async def search(self, collection: str, query: str, options: QueryOptions) -> PaginatedResult:
        ...

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=self.default_headers(),
                timeout=httpx.Timeout(self.config.timeout_ms / 1000),
                follow_redirects=True,
            )
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        params: Any = None,
        json_data: Any = None,
    ) -> Any:
        """
        Execute one upstream request and return the decoded JSON body.

        Raises classified errors; 204 / empty bodies return None.
        """
        try:
            response = await self.client.request(method, url, params=params, json=json_data)
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(self.service_id, self.config.timeout_ms / 1000) from e
        except httpx.RequestError as e:
            raise TransientUpstreamError(
                f"{type(e).__name__}: {e}", service_id=self.service_id
            ) from e

        self.raise_for_status(response)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise TransientUpstreamError(
                f"Invalid JSON from {self.service_id}", service_id=self.service_id
            ) from e

    def raise_for_status(self, response: httpx.Response) -> None:
        """Raise the classified error for a non-2xx response."""
        if response.is_success:
            return

        retry_after = _parse_retry_after(response.headers.get("Retry-After"))
        message = f"HTTP {response.status_code}: {response.text[:200]}"
        error: ServiceError = classify_status(
            response.status_code, message, self.service_id, retry_after
        )
        logger.debug(f"[{self.service_id}] {response.request.method} {response.request.url} -> {message}")
        raise error

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
