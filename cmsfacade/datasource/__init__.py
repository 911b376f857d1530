"""
Content backends.

The set of adapters is closed: one ProviderKind maps to exactly one
adapter class. Adding a backend means adding a kind and an adapter here.
"""

import httpx

from cmsfacade.datasource.airtable import AirtableAdapter
from cmsfacade.datasource.base import (
    ContentItem,
    PaginatedResult,
    ProviderAdapter,
    QueryOptions,
    SortSpec,
)
from cmsfacade.datasource.baserow import BaserowAdapter
from cmsfacade.services.errors import ConfigurationError
from cmsfacade.settings import ProviderConfig, ProviderKind

ADAPTERS: dict[ProviderKind, type[ProviderAdapter]] = {
    ProviderKind.BASEROW: BaserowAdapter,
    ProviderKind.AIRTABLE: AirtableAdapter,
}


def create_adapter(
    config: ProviderConfig,
    client: httpx.AsyncClient | None = None,
) -> ProviderAdapter:
    """Instantiate the adapter for config.kind."""
    adapter_cls = ADAPTERS.get(config.kind)
    if adapter_cls is None:
        msg = f"No adapter registered for provider '{config.kind.value}'"
        raise ConfigurationError(msg, [msg])
    return adapter_cls(config, client=client)


__all__ = [
    "ADAPTERS",
    "AirtableAdapter",
    "BaserowAdapter",
    "ContentItem",
    "PaginatedResult",
    "ProviderAdapter",
    "QueryOptions",
    "SortSpec",
    "create_adapter",
]
