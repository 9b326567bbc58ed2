import asyncio
from collections.abc import Callable, Sequence
from typing import Any, TypeVar

import structlog
from typing_extensions import override

from ..models import (
    EmbeddingRecord,
    EmbeddingVector,
    QueryHit,
    RangePage,
    RecordMetadata,
)
from .base import DEFAULT_RANGE_LIMIT, VectorStore, VectorStoreError, sort_hits

logger = structlog.get_logger()

T = TypeVar("T")

# Pinecone recommends upserts of at most 100 vectors per request
UPSERT_BATCH_SIZE = 100


class PineconeVectorStore(VectorStore):
    """
    Vector store backed by a Pinecone index.

    The Pinecone client is blocking, so every call runs in a worker thread.
    The index must already exist with the embedding model's dimensions.
    """

    name = "pinecone"

    def __init__(
        self,
        api_key: str | None = None,
        index_name: str | None = None,
        namespace: str | None = None,
        index: Any = None,
    ):
        if index is None:
            if not api_key or not index_name:
                raise VectorStoreError(
                    "PINECONE_API_KEY and PINECONE_INDEX are required"
                )
            # Note: deferred import to avoid import overhead
            from pinecone import Pinecone

            index = Pinecone(api_key=api_key).Index(index_name)
        self.index = index
        self.namespace = namespace

    def _namespaced(self, **kwargs: Any) -> dict[str, Any]:
        if self.namespace:
            kwargs["namespace"] = self.namespace
        return kwargs

    async def _call(self, operation: str, fn: Callable[..., T], **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, **kwargs)
        except Exception as e:
            await logger.aerror(
                "pinecone call failed", operation=operation, error=str(e)
            )
            raise VectorStoreError(f"pinecone {operation} failed: {e}") from e

    @override
    async def upsert(self, records: Sequence[EmbeddingRecord]) -> None:
        """
        Writes the records in batches of :data:`UPSERT_BATCH_SIZE`.

        When a batch fails, the ids written by earlier batches of this call are
        deleted again before the error is raised.
        """
        vectors = [
            {
                "id": record.id,
                "values": record.vector,
                "metadata": record.metadata.to_store(),
            }
            for record in records
        ]
        written: list[str] = []
        for start in range(0, len(vectors), UPSERT_BATCH_SIZE):
            batch = vectors[start : start + UPSERT_BATCH_SIZE]
            try:
                await self._call(
                    "upsert", self.index.upsert, **self._namespaced(vectors=batch)
                )
            except VectorStoreError:
                await self._rollback(written)
                raise
            written.extend(vector["id"] for vector in batch)

    async def _rollback(self, ids: list[str]) -> None:
        if not ids:
            return
        try:
            await self.delete(ids)
        except VectorStoreError:
            await logger.aerror("pinecone upsert rollback failed", ids=len(ids))
            return
        await logger.awarning("pinecone upsert rolled back", ids=len(ids))

    @override
    async def query(self, vector: EmbeddingVector, top_k: int) -> list[QueryHit]:
        if top_k <= 0:
            return []
        response = await self._call(
            "query",
            self.index.query,
            **self._namespaced(vector=vector, top_k=top_k, include_metadata=True),
        )
        hits = [
            QueryHit(
                id=str(match.id),
                score=float(match.score),
                metadata=RecordMetadata.from_store(match.metadata),
            )
            for match in response.matches
        ]
        return sort_hits(hits)

    async def _fetch_many(self, ids: list[str]) -> dict[str, Any]:
        if not ids:
            return {}
        response = await self._call(
            "fetch", self.index.fetch, **self._namespaced(ids=ids)
        )
        return dict(response.vectors)

    @override
    async def range(
        self, cursor: str | None = None, limit: int = DEFAULT_RANGE_LIMIT
    ) -> RangePage:
        if limit <= 0:
            raise VectorStoreError(f"limit must be positive, got {limit}")
        listing = await self._call(
            "list",
            self.index.list_paginated,
            **self._namespaced(limit=limit, pagination_token=cursor or None),
        )
        ids = [str(item.id) for item in listing.vectors]
        vectors = await self._fetch_many(ids)
        items = [
            record
            for id in ids
            if id in vectors and (record := _to_record(vectors[id])) is not None
        ]
        pagination = getattr(listing, "pagination", None)
        next_cursor = getattr(pagination, "next", None) if pagination else None
        return RangePage(items=items, next_cursor=next_cursor or None)

    @override
    async def fetch(self, id: str) -> EmbeddingRecord | None:
        vectors = await self._fetch_many([id])
        if id not in vectors:
            return None
        return _to_record(vectors[id])

    @override
    async def delete(self, ids: Sequence[str]) -> None:
        if not ids:
            return
        await self._call("delete", self.index.delete, **self._namespaced(ids=list(ids)))

    @override
    async def reset(self) -> None:
        await self._call(
            "reset", self.index.delete, **self._namespaced(delete_all=True)
        )

    @override
    async def describe(self) -> dict[str, object]:
        stats = await self._call("describe", self.index.describe_index_stats)
        return {
            "backend": self.name,
            "records": stats.total_vector_count,
            "dimension": stats.dimension,
            "namespace": self.namespace,
        }


def _to_record(vector: Any) -> EmbeddingRecord | None:
    metadata = RecordMetadata.from_store(vector.metadata)
    if metadata is None:
        return None
    return EmbeddingRecord(
        id=str(vector.id), vector=list(vector.values or []), metadata=metadata
    )
