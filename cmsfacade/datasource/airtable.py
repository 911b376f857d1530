"""
Airtable data source.

API Documentation: https://airtable.com/developers/web/api/introduction
Records live at /v0/{base_id}/{table}; the configured dataset id is the
base id and the collection is the table name or id.

Airtable pages with opaque offset tokens rather than page numbers, so
page N is reached by walking N - 1 offsets.
"""

from typing import Any

from cmsfacade.datasource.base import (
    ContentItem,
    PaginatedResult,
    ProviderAdapter,
    QueryOptions,
)
from cmsfacade.services.errors import NotFoundError

MAX_PAGE_SIZE = 100


class AirtableAdapter(ProviderAdapter):
    """Airtable REST adapter using Bearer (personal access token) auth."""

    SERVICE_ID = "airtable"
    SEARCH_FIELD = "Name"

    @property
    def service_id(self) -> str:
        return self.SERVICE_ID

    def default_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.token}",
            "Content-Type": "application/json",
        }

    async def fetch_all(self, collection: str, options: QueryOptions) -> PaginatedResult:
        page_size = min(options.page_size, MAX_PAGE_SIZE)
        base_params = self._build_params(options, page_size)

        offset: str | None = None
        skipped = 0
        for _ in range(options.page - 1):
            data = await self._list(collection, base_params, offset)
            skipped += len(data.get("records", []))
            offset = data.get("offset")
            if not offset:
                return PaginatedResult(
                    data=[], total=skipped, page=options.page, page_size=page_size
                )

        data = await self._list(collection, base_params, offset)
        records = data.get("records", [])
        return PaginatedResult(
            data=[self._normalize(record) for record in records],
            total=skipped + len(records),
            page=options.page,
            page_size=page_size,
            has_more=bool(data.get("offset")),
        )

    async def fetch_by_id(self, collection: str, item_id: str) -> ContentItem | None:
        try:
            record = await self.request("GET", self._record_url(collection, item_id))
        except NotFoundError:
            return None
        return self._normalize(record)

    async def fetch_by_slug(self, collection: str, slug: str) -> ContentItem | None:
        data = await self.request(
            "GET",
            self._table_url(collection),
            params=[
                ("filterByFormula", f"{{slug}}={_quote(slug)}"),
                ("maxRecords", "1"),
            ],
        )
        records = data.get("records", []) if data else []
        return self._normalize(records[0]) if records else None

    async def create(self, collection: str, data: dict[str, Any]) -> ContentItem:
        record = await self.request(
            "POST", self._table_url(collection), json_data={"fields": self._denormalize(data)}
        )
        return self._normalize(record)

    async def update(self, collection: str, item_id: str, data: dict[str, Any]) -> ContentItem:
        record = await self.request(
            "PATCH",
            self._record_url(collection, item_id),
            json_data={"fields": self._denormalize(data)},
        )
        return self._normalize(record)

    async def delete(self, collection: str, item_id: str) -> None:
        await self.request("DELETE", self._record_url(collection, item_id))

    async def search(self, collection: str, query: str, options: QueryOptions) -> PaginatedResult:
        return await self.fetch_all(collection, options.model_copy(update={"search": query}))

    async def _list(
        self,
        collection: str,
        base_params: list[tuple[str, str]],
        offset: str | None,
    ) -> dict[str, Any]:
        params = list(base_params)
        if offset:
            params.append(("offset", offset))
        return await self.request("GET", self._table_url(collection), params=params) or {}

    def _build_params(self, options: QueryOptions, page_size: int) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = [("pageSize", str(page_size))]

        if options.sort:
            params.append(("sort[0][field]", options.sort.field))
            params.append(("sort[0][direction]", options.sort.order))

        formula = self._build_formula(options)
        if formula:
            params.append(("filterByFormula", formula))

        for name in sorted(options.fields or ()):
            params.append(("fields[]", name))

        return params

    def _build_formula(self, options: QueryOptions) -> str | None:
        conditions = [
            f"{{{name}}}={_quote(value)}" for name, value in sorted(options.filters.items())
        ]
        if options.search:
            conditions.append(
                f"SEARCH(LOWER({_quote(options.search)}), LOWER({{{self.SEARCH_FIELD}}}))"
            )

        if not conditions:
            return None
        if len(conditions) == 1:
            return conditions[0]
        return f"AND({','.join(conditions)})"

    def _table_url(self, collection: str) -> str:
        return f"/{self.config.dataset_id}/{collection}"

    def _record_url(self, collection: str, item_id: str) -> str:
        return f"/{self.config.dataset_id}/{collection}/{item_id}"

    def _normalize(self, record: dict[str, Any]) -> ContentItem:
        # Airtable does not track update time by default
        return ContentItem.model_validate(
            {
                **record.get("fields", {}),
                "id": record["id"],
                "created_at": record.get("createdTime"),
                "updated_at": record.get("createdTime"),
            }
        )

    def _denormalize(self, data: dict[str, Any]) -> dict[str, Any]:
        return {
            k: v for k, v in data.items() if k not in ("id", "created_at", "updated_at")
        }


def _quote(value: Any) -> str:
    """Render a value as an Airtable formula literal."""
    if isinstance(value, bool):
        return "TRUE()" if value else "FALSE()"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'
