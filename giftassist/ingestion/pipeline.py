import asyncio
import re
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

import backoff
import httpx
import structlog
from backoff._typing import Details
from ddtrace.trace import tracer

from ..configuration import Settings
from ..embedders import Embedder, EmbeddingProviderError, normalize_whitespace
from ..errors import IngestValidationError
from ..models import (
    Chunk,
    EmbeddingRecord,
    EmbeddingVector,
    ImageMetadata,
    IngestResult,
    RecordMetadata,
)
from ..tracing import tag_current_span
from ..vectorstores import VectorStore
from .images import DEFAULT_IMAGE_CHECK_TIMEOUT, validate_image
from .loading import EmptySheetError, LoadedSpreadsheet, read_rows
from .normalizing import ColumnMap, normalize_rows, resolve_columns

logger = structlog.get_logger()

RESOURCE_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,64}")


class InvalidResourceIdError(IngestValidationError):
    """
    Raised when a shop id cannot be used to build a resource id.
    """

    msg = "invalid shop id"


def make_resource_id(shop_id: str | None = None, now: datetime | None = None) -> str:
    """
    Returns the resource id an upload is stored under.

    ``shop-<shopId>`` when a shop id is given, so re-uploading a shop's sheet
    overwrites its previous rows. Otherwise ``batch-<unix millis>``.

    Raises:
        InvalidResourceIdError: If the shop id, once trimmed, is not 1 to 64
            characters of letters, digits, ``_`` or ``-``. A blank shop id is
            rejected rather than treated as absent.
    """
    if shop_id is not None:
        shop_id = shop_id.strip()
        if not RESOURCE_ID_PATTERN.fullmatch(shop_id):
            raise InvalidResourceIdError(
                "Invalid shopId. Use 1-64 letters, digits, '_' or '-'."
            )
        return f"shop-{shop_id}"
    if now is None:
        now = datetime.now()
    return f"batch-{int(now.timestamp() * 1000)}"


def record_id(resource_id: str, row_index: int) -> str:
    return f"{resource_id}-{row_index}"


def row_index_of(id: str, resource_id: str) -> int | None:
    prefix = f"{resource_id}-"
    if not id.startswith(prefix):
        return None
    suffix = id[len(prefix) :]
    return int(suffix) if suffix.isdigit() else None


def headers_of(rows: Sequence[Mapping[str, Any]]) -> list[str]:
    headers: dict[str, None] = {}
    for row in rows:
        headers.update(dict.fromkeys(row))
    return list(headers)


class IngestionPipeline:
    """
    Turns the rows of one upload into vector records.

    A call to :meth:`ingest` validates every row before any network call,
    checks the image references concurrently, embeds all chunk texts in one
    logical call and writes all records with one upsert. Either every row of
    the upload is written or the call raises.

    Args:
        embedder: Produces the vectors. Its ``model`` is stored on every record.
        store: Where the records are written.
        image_timeout: Seconds allowed for one image HEAD request.
        image_concurrency: Image checks in flight at once.
        backend_timeout: Seconds allowed for the embedding call and the
            upsert, each.
        embed_retries: Extra attempts of the embedding call on provider
            errors, with exponential backoff. Timeouts are not retried.
        prune_stale: After a successful upsert, delete this resource's
            records with a row index past the new row count.
        http_client: Shared client for image checks.
    """

    def __init__(
        self,
        embedder: Embedder,
        store: VectorStore,
        image_timeout: float = DEFAULT_IMAGE_CHECK_TIMEOUT,
        image_concurrency: int = 10,
        backend_timeout: float = 30.0,
        embed_retries: int = 0,
        prune_stale: bool = False,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.embedder = embedder
        self.store = store
        self.image_timeout = image_timeout
        self.image_concurrency = image_concurrency
        self.backend_timeout = backend_timeout
        self.embed_retries = embed_retries
        self.prune_stale = prune_stale
        self.http_client = http_client

    @classmethod
    def from_settings(
        cls, settings: Settings, embedder: Embedder, store: VectorStore
    ) -> "IngestionPipeline":
        return cls(
            embedder,
            store,
            image_timeout=settings.image_check_timeout,
            image_concurrency=settings.image_check_concurrency,
            backend_timeout=settings.backend_timeout,
            embed_retries=settings.embed_retries,
            prune_stale=settings.prune_stale,
        )

    async def ingest_spreadsheet(
        self, sheet: LoadedSpreadsheet, resource_id: str
    ) -> IngestResult:
        headers, rows = await asyncio.to_thread(read_rows, sheet)
        return await self.ingest(resource_id, rows, resolve_columns(headers))

    @tracer.wrap()
    async def ingest(
        self,
        resource_id: str,
        rows: Sequence[Mapping[str, Any]],
        columns: ColumnMap | None = None,
    ) -> IngestResult:
        """
        Ingests the rows of one upload under ``resource_id``.

        Records are stored as ``<resource_id>-<row index>``, so ingesting the
        same rows again overwrites them instead of adding duplicates.

        Raises:
            IngestValidationError: If a column is missing or any row is
                invalid. Nothing is written.
            EmbeddingProviderError: If embedding fails after all retries.
            VectorStoreError: If the upsert fails.
            asyncio.TimeoutError: If a backend call exceeds its timeout.
        """
        if not rows:
            raise EmptySheetError("No data rows found.")
        if columns is None:
            columns = resolve_columns(headers_of(rows))
        chunks = normalize_rows(rows, columns)
        tag_current_span(resource_id=resource_id, rows=len(chunks))
        await logger.ainfo(
            "ingesting rows", resource_id=resource_id, rows=len(chunks)
        )

        images = await self._validate_images(chunks)
        # stored content is exactly the text that was embedded
        texts = [normalize_whitespace(chunk.text) for chunk in chunks]
        vectors = await self._embed(texts)
        records = [
            EmbeddingRecord(
                id=record_id(resource_id, index),
                vector=vector,
                metadata=RecordMetadata(
                    resource_id=resource_id,
                    content=text,
                    image_url=image.url,
                    image_valid=image.valid,
                    image_content_type=image.content_type,
                    image_size=image.byte_size,
                    embedding_model=self.embedder.model,
                ),
            )
            for index, (text, image, vector) in enumerate(
                zip(texts, images, vectors, strict=True)
            )
        ]
        await asyncio.wait_for(self.store.upsert(records), self.backend_timeout)

        if self.prune_stale:
            await self._prune(resource_id, len(records))

        images_valid = sum(1 for image in images if image.valid)
        result = IngestResult(
            rows_upserted=len(records),
            images_valid=images_valid,
            images_invalid=len(images) - images_valid,
        )
        tag_current_span(
            rows_upserted=result.rows_upserted,
            images_valid=result.images_valid,
            images_invalid=result.images_invalid,
        )
        await logger.ainfo(
            "ingestion done",
            resource_id=resource_id,
            rows_upserted=result.rows_upserted,
            images_valid=result.images_valid,
            images_invalid=result.images_invalid,
        )
        return result

    @tracer.wrap()
    async def _validate_images(self, chunks: Sequence[Chunk]) -> list[ImageMetadata]:
        semaphore = asyncio.Semaphore(self.image_concurrency)

        async def check(client: httpx.AsyncClient, url: str) -> ImageMetadata:
            async with semaphore:
                return await validate_image(url, self.image_timeout, client)

        async def check_all(client: httpx.AsyncClient) -> list[ImageMetadata]:
            return await asyncio.gather(
                *(check(client, chunk.source_image_ref) for chunk in chunks)
            )

        if self.http_client is not None:
            return await check_all(self.http_client)
        async with httpx.AsyncClient(follow_redirects=True) as client:
            return await check_all(client)

    async def _embed(self, texts: list[str]) -> list[EmbeddingVector]:
        def on_backoff(details: Details):
            logger.warning(
                "embedding failed, retrying",
                tries=details["tries"],
                wait=details.get("wait", 0),
            )

        @backoff.on_exception(
            backoff.expo,
            EmbeddingProviderError,
            max_tries=self.embed_retries + 1,
            on_backoff=on_backoff,
            raise_on_giveup=True,
        )
        async def embed() -> list[EmbeddingVector]:
            return await asyncio.wait_for(
                self.embedder.embed_many(texts), self.backend_timeout
            )

        with tracer.trace("ingestion.embed"):
            tag_current_span(texts=len(texts))
            vectors = await embed()
        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                f"expected {len(texts)} vectors, got {len(vectors)}"
            )
        return vectors

    async def _prune(self, resource_id: str, row_count: int) -> None:
        stale: list[str] = []
        cursor: str | None = None
        while True:
            page = await asyncio.wait_for(
                self.store.range(cursor), self.backend_timeout
            )
            for record in page.items:
                if record.metadata.resource_id != resource_id:
                    continue
                index = row_index_of(record.id, resource_id)
                if index is not None and index >= row_count:
                    stale.append(record.id)
            if page.next_cursor is None:
                break
            cursor = page.next_cursor
        if stale:
            await asyncio.wait_for(self.store.delete(stale), self.backend_timeout)
        await logger.ainfo(
            "pruned stale rows", resource_id=resource_id, deleted=len(stale)
        )
