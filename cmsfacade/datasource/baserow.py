"""
Baserow data source.

API Documentation: https://api.baserow.io/api/redoc/
Rows live at /api/database/rows/table/{table_id}/; the collection name
passed to the adapter is the Baserow table id.
"""

from typing import Any

from cmsfacade.datasource.base import (
    ContentItem,
    PaginatedResult,
    ProviderAdapter,
    QueryOptions,
)
from cmsfacade.services.errors import NotFoundError, PermanentRequestError


class BaserowAdapter(ProviderAdapter):
    """
    Baserow REST adapter.

    Uses `Token` authentication and `user_field_names=true`, so records
    carry human-readable field names.
    """

    SERVICE_ID = "baserow"

    @property
    def service_id(self) -> str:
        return self.SERVICE_ID

    def default_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Token {self.config.token}",
            "Content-Type": "application/json",
        }

    async def fetch_all(self, collection: str, options: QueryOptions) -> PaginatedResult:
        data = await self.request(
            "GET", self._rows_url(collection), params=self._build_params(options)
        )
        if not isinstance(data, dict) or not isinstance(data.get("results"), list):
            raise PermanentRequestError(
                f"Invalid API response structure for table {collection}",
                service_id=self.service_id,
            )

        return PaginatedResult(
            data=[self._normalize(row) for row in data["results"]],
            total=int(data.get("count", len(data["results"]))),
            page=options.page,
            page_size=options.page_size,
            has_more=data.get("next") is not None,
        )

    async def fetch_by_id(self, collection: str, item_id: str) -> ContentItem | None:
        try:
            data = await self.request(
                "GET",
                self._row_url(collection, item_id),
                params={"user_field_names": "true"},
            )
        except NotFoundError:
            return None
        return self._normalize(data)

    async def fetch_by_slug(self, collection: str, slug: str) -> ContentItem | None:
        result = await self.fetch_all(
            collection, QueryOptions(filters={"slug": slug}, page_size=1)
        )
        return result.data[0] if result.data else None

    async def create(self, collection: str, data: dict[str, Any]) -> ContentItem:
        row = await self.request(
            "POST",
            self._rows_url(collection),
            params={"user_field_names": "true"},
            json_data=self._denormalize(data),
        )
        return self._normalize(row)

    async def update(self, collection: str, item_id: str, data: dict[str, Any]) -> ContentItem:
        row = await self.request(
            "PATCH",
            self._row_url(collection, item_id),
            params={"user_field_names": "true"},
            json_data=self._denormalize(data),
        )
        return self._normalize(row)

    async def delete(self, collection: str, item_id: str) -> None:
        await self.request("DELETE", self._row_url(collection, item_id))

    async def search(self, collection: str, query: str, options: QueryOptions) -> PaginatedResult:
        return await self.fetch_all(collection, options.model_copy(update={"search": query}))

    def _build_params(self, options: QueryOptions) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = [
            ("user_field_names", "true"),
            ("page", str(options.page)),
            ("size", str(options.page_size)),
        ]

        if options.search:
            params.append(("search", options.search))

        if options.sort:
            prefix = "-" if options.sort.order == "desc" else ""
            params.append(("order_by", f"{prefix}{options.sort.field}"))

        for name, value in sorted(options.filters.items()):
            params.append((f"filter__{name}__equal", _stringify(value)))

        if options.fields:
            params.append(("include", ",".join(sorted(options.fields))))

        return params

    def _rows_url(self, collection: str) -> str:
        return f"/api/database/rows/table/{collection}/"

    def _row_url(self, collection: str, item_id: str) -> str:
        return f"/api/database/rows/table/{collection}/{item_id}/"

    def _normalize(self, row: dict[str, Any]) -> ContentItem:
        fields = {k: v for k, v in row.items() if k not in ("id", "created_on", "updated_on")}
        return ContentItem.model_validate(
            {
                **fields,
                "id": str(row["id"]),
                "created_at": row.get("created_on"),
                "updated_at": row.get("updated_on"),
            }
        )

    def _denormalize(self, data: dict[str, Any]) -> dict[str, Any]:
        return {
            k: v for k, v in data.items() if k not in ("id", "created_at", "updated_at")
        }


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
