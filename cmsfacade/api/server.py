"""FastAPI surface over the content facade."""

import hmac
import math
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Body, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from cmsfacade.datasource.base import QueryOptions, SortSpec
from cmsfacade.exceptions import BadRequestError, RecordNotFoundError, UnauthorizedError
from cmsfacade.facade import ContentFacade
from cmsfacade.services.errors import (
    CircuitOpenError,
    NotFoundError,
    PermanentRequestError,
    ServiceError,
    TransientUpstreamError,
)

DEFAULT_RETRY_AFTER_SECONDS = 5
FILTER_PREFIX = "filter."


class RevalidateRequest(BaseModel):
    """Body of a revalidation webhook."""

    tags: list[str] = Field(default_factory=list)
    paths: list[str] = Field(default_factory=list)


def error_response(error: ServiceError) -> JSONResponse:
    """Map a classified service error to its HTTP response."""
    headers: dict[str, str] = {}

    if isinstance(error, CircuitOpenError):
        status_code = 503
        headers["Retry-After"] = str(max(1, math.ceil(error.reset_after_seconds)))
    elif isinstance(error, TransientUpstreamError):
        status_code = 503
        retry_after = error.retry_after or DEFAULT_RETRY_AFTER_SECONDS
        headers["Retry-After"] = str(max(1, math.ceil(retry_after)))
    elif isinstance(error, PermanentRequestError):
        status_code = 400
    elif isinstance(error, NotFoundError):
        status_code = 404
    else:
        status_code = 500

    return JSONResponse(
        status_code=status_code,
        content={"error": str(error), "retryable": error.retryable},
        headers=headers,
    )


class ContentServer:
    """HTTP server exposing content reads, writes and revalidation."""

    def __init__(self, facade: ContentFacade, revalidation_secret: str | None = None):
        self.facade = facade
        self.revalidation_secret = revalidation_secret
        self.app = FastAPI(title="CMS Facade", lifespan=self.lifespan)

        config = facade.config
        self.cache_control = (
            f"s-maxage={config.cache_ttl_seconds}, "
            f"stale-while-revalidate={config.stale_while_revalidate_seconds}"
        )

        # Register routes
        self.app.get("/health")(self.health_check)
        self.app.post("/revalidate")(self.revalidate)
        self.app.get("/content/{collection}")(self.list_content)
        self.app.get("/content/{collection}/slug/{slug}")(self.get_by_slug)
        self.app.get("/content/{collection}/{item_id}")(self.get_by_id)
        self.app.post("/content/{collection}", status_code=201)(self.create_content)
        self.app.patch("/content/{collection}/{item_id}")(self.update_content)
        self.app.delete("/content/{collection}/{item_id}", status_code=204)(
            self.delete_content
        )

        # Register error mapping
        self.app.exception_handler(ServiceError)(self.handle_service_error)
        self.app.exception_handler(RequestValidationError)(self.handle_validation_error)
        self.app.exception_handler(Exception)(self.handle_unexpected_error)

    @asynccontextmanager
    async def lifespan(self, app: FastAPI):
        yield
        logger.info("Closing content facade...")
        await self.facade.close()

    async def list_content(
        self,
        request: Request,
        collection: str,
        page: int = Query(default=1),
        page_size: int = Query(default=20, alias="pageSize"),
        search: Optional[str] = Query(default=None),
        sort: Optional[str] = Query(default=None),
    ):
        """List or search a collection.

        Filters are passed as `filter.<field>=<value>` query parameters and
        sort as `field`, `-field` or `field:desc`.
        """
        filters = {
            key[len(FILTER_PREFIX):]: value
            for key, value in request.query_params.items()
            if key.startswith(FILTER_PREFIX) and len(key) > len(FILTER_PREFIX)
        }

        try:
            options = QueryOptions(
                page=page,
                page_size=page_size,
                filters=filters,
                sort=SortSpec.parse(sort) if sort else None,
            )
        except ValidationError as e:
            raise BadRequestError(f"Invalid query: {e.errors()[0]['msg']}") from e

        if search:
            result = await self.facade.search(collection, search, options)
        else:
            result = await self.facade.fetch_all(collection, options)

        return JSONResponse(
            content=result.to_response(),
            headers={"Cache-Control": self.cache_control},
        )

    async def get_by_id(self, collection: str, item_id: str):
        """Fetch a single record by id."""
        item = await self.facade.fetch_by_id(collection, item_id)
        if item is None:
            raise RecordNotFoundError(f"{collection}/{item_id} not found")
        return JSONResponse(
            content={"data": item.model_dump(mode="json")},
            headers={"Cache-Control": self.cache_control},
        )

    async def get_by_slug(self, collection: str, slug: str):
        """Fetch a single record by slug."""
        item = await self.facade.fetch_by_slug(collection, slug)
        if item is None:
            raise RecordNotFoundError(f"{collection} with slug '{slug}' not found")
        return JSONResponse(
            content={"data": item.model_dump(mode="json")},
            headers={"Cache-Control": self.cache_control},
        )

    async def create_content(self, collection: str, data: dict[str, Any] = Body(...)):
        """Create a record."""
        item = await self.facade.create(collection, data)
        return {"data": item.model_dump(mode="json")}

    async def update_content(
        self, collection: str, item_id: str, data: dict[str, Any] = Body(...)
    ):
        """Update a record."""
        item = await self.facade.update(collection, item_id, data)
        return {"data": item.model_dump(mode="json")}

    async def delete_content(self, collection: str, item_id: str):
        """Delete a record."""
        await self.facade.delete(collection, item_id)
        return Response(status_code=204)

    async def revalidate(
        self,
        body: RevalidateRequest,
        authorization: Optional[str] = Header(None),
    ):
        """Invalidate cached content by tag (webhook target)."""
        if not self._authorized(authorization):
            logger.warning("Rejected revalidation request with invalid token")
            raise UnauthorizedError("Invalid revalidation token")

        removed = await self.facade.revalidate(paths=body.paths, tags=body.tags)
        return {
            "revalidated": True,
            "removed": removed,
            "tags": body.tags,
            "paths": body.paths,
        }

    async def health_check(self):
        """Health check endpoint."""
        return {"status": "ok", **self.facade.get_health_status()}

    async def handle_service_error(self, request: Request, exc: ServiceError):
        if not isinstance(exc, (NotFoundError, PermanentRequestError)):
            logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return error_response(exc)

    async def handle_validation_error(self, request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0]["msg"] if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"error": message, "retryable": False})

    async def handle_unexpected_error(self, request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc!r}")
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "retryable": False},
        )

    def _authorized(self, authorization: str | None) -> bool:
        if not self.revalidation_secret or not authorization:
            return False
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer":
            return False
        return hmac.compare_digest(
            token.strip().encode(), self.revalidation_secret.encode()
        )


def create_app(facade: ContentFacade, revalidation_secret: str | None = None) -> FastAPI:
    """Create FastAPI app for a content facade.

    Args:
        facade: Configured ContentFacade
        revalidation_secret: Bearer token required by POST /revalidate

    Returns:
        FastAPI app
    """
    server = ContentServer(facade, revalidation_secret)
    return server.app
