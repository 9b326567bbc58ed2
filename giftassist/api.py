"""HTTP surface of giftassist: vendor upload, search, products and chat."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

import structlog
from dotenv import find_dotenv, load_dotenv
from fastapi import FastAPI, File, Form, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .assistant import ChatAssistant, CompletionService, OpenAICompletion
from .configuration import Settings
from .embedders import Embedder, create_embedder
from .errors import GiftAssistError, IngestValidationError
from .ingestion import IngestionPipeline, load_spreadsheet, make_resource_id
from .retrieval import DEFAULT_TOP_K, LocalCatalog, RetrievalService
from .repository import ProductRepository
from .vectorstores import DEFAULT_RANGE_LIMIT, VectorStore, create_vector_store

logger = structlog.get_logger()

UPLOAD_FAILED = "Failed to process upload. Check server logs."
CHAT_FAILED = "Internal server error. Check server logs."
QUOTA_EXCEEDED = "OpenAI quota exceeded."
MAX_SEARCH_TOP_K = 50


class SearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = ""
    top_k: Annotated[int, Field(alias="topK")] = DEFAULT_TOP_K


def parse_search_request(payload: Any) -> SearchRequest:
    """
    Reads a search body without ever rejecting it.

    A non-object body searches for nothing. A badly typed ``topK`` falls back
    to the default, a badly typed ``query`` to the empty query.
    """
    if not isinstance(payload, dict):
        return SearchRequest()
    try:
        return SearchRequest.model_validate(payload)
    except ValidationError:
        query = payload.get("query")
        return SearchRequest(query=query if isinstance(query, str) else "")


class ChatRequest(BaseModel):
    message: str | None = None


def error_response(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def is_quota_error(e: Exception) -> bool:
    return getattr(e, "status_code", None) == status.HTTP_429_TOO_MANY_REQUESTS


def create_app(
    settings: Settings | None = None,
    *,
    embedder: Embedder | None = None,
    store: VectorStore | None = None,
    catalog: LocalCatalog | None = None,
    completion: CompletionService | None = None,
) -> FastAPI:
    """
    Builds the FastAPI application.

    Collaborators not passed in are created from ``settings``, which default
    to the environment (after loading a ``.env`` file). Nothing contacts a
    backend until the first request.
    """
    if settings is None:
        load_dotenv(dotenv_path=find_dotenv(usecwd=True))
        settings = Settings.from_env()
    if embedder is None:
        embedder = create_embedder(settings)
    if store is None:
        store = create_vector_store(settings)
    if catalog is None:
        catalog = (
            LocalCatalog.from_json(settings.catalog_path)
            if settings.catalog_path
            else LocalCatalog()
        )
    if completion is None:
        completion = OpenAICompletion(
            model=settings.completion_model,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
        )

    pipeline = IngestionPipeline.from_settings(settings, embedder, store)
    retrieval = RetrievalService(
        embedder, store, catalog, backend_timeout=settings.backend_timeout
    )
    repository = ProductRepository(
        store, retrieval, backend_timeout=settings.backend_timeout
    )
    assistant = ChatAssistant(retrieval, completion)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await store.close()

    app = FastAPI(title="giftassist", lifespan=lifespan)

    @app.exception_handler(IngestValidationError)
    async def validation_exception_handler(
        _: Request, exc: IngestValidationError
    ) -> JSONResponse:
        return error_response(str(exc) or exc.msg, status.HTTP_400_BAD_REQUEST)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.post("/api/portal/upload")
    async def upload(
        file: Annotated[UploadFile | None, File()] = None,
        shop_id: Annotated[str | None, Form(alias="shopId")] = None,
    ):
        data = await file.read() if file is not None else b""
        sheet = load_spreadsheet(
            data,
            file_name=file.filename if file is not None else None,
            content_type=file.content_type if file is not None else None,
            max_bytes=settings.max_upload_bytes,
        )
        resource_id = make_resource_id(shop_id)
        try:
            result = await pipeline.ingest_spreadsheet(sheet, resource_id)
        except IngestValidationError:
            raise
        except Exception as e:
            await logger.aerror(
                "upload failed",
                resource_id=resource_id,
                error=str(e),
                error_type=e.__class__.__name__,
            )
            return error_response(
                UPLOAD_FAILED, status.HTTP_500_INTERNAL_SERVER_ERROR
            )
        return {
            "success": True,
            "resourceId": resource_id,
            **result.model_dump(by_alias=True),
        }

    @app.post("/api/search")
    async def search(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        body = parse_search_request(payload)
        top_k = max(1, min(body.top_k, MAX_SEARCH_TOP_K))
        products = await repository.search(body.query, top_k)
        return {"products": [product.to_wire() for product in products]}

    @app.get("/api/products")
    async def list_products(
        cursor: str | None = None,
        limit: Annotated[int, Query(ge=1, le=1000)] = DEFAULT_RANGE_LIMIT,
    ):
        try:
            products, next_cursor = await repository.list(cursor or None, limit)
        except (GiftAssistError, asyncio.TimeoutError) as e:
            await logger.aerror("product listing failed", error=str(e))
            return error_response(
                "Could not list products.", status.HTTP_500_INTERNAL_SERVER_ERROR
            )
        return {
            "products": [product.to_wire() for product in products],
            "nextCursor": next_cursor,
        }

    @app.get("/api/products/{product_id}")
    async def get_product(product_id: str):
        try:
            product = await repository.find_by_id(product_id)
        except (GiftAssistError, asyncio.TimeoutError) as e:
            await logger.aerror(
                "product lookup failed", id=product_id, error=str(e)
            )
            return error_response(
                "Internal server error", status.HTTP_500_INTERNAL_SERVER_ERROR
            )
        if product is None:
            return error_response("Product not found", status.HTTP_404_NOT_FOUND)
        return product.to_wire()

    @app.post("/api/chat")
    async def chat(body: ChatRequest):
        message = (body.message or "").strip()
        if not message:
            return error_response(
                "Missing or invalid message.", status.HTTP_400_BAD_REQUEST
            )
        try:
            answer = await assistant.reply(message)
        except Exception as e:
            await logger.aerror(
                "chat failed", error=str(e), error_type=e.__class__.__name__
            )
            if is_quota_error(e):
                return error_response(
                    QUOTA_EXCEEDED, status.HTTP_429_TOO_MANY_REQUESTS
                )
            return error_response(
                CHAT_FAILED, status.HTTP_500_INTERNAL_SERVER_ERROR
            )
        return {"message": answer}

    app.state.settings = settings
    app.state.pipeline = pipeline
    app.state.repository = repository
    app.state.assistant = assistant
    return app
