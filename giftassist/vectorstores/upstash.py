from collections.abc import Awaitable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

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

if TYPE_CHECKING:
    from upstash_vector import AsyncIndex

logger = structlog.get_logger()

T = TypeVar("T")


class UpstashVectorStore(VectorStore):
    """
    Vector store backed by an Upstash Vector index, through its async SDK.

    Records whose stored metadata does not parse (written by something other
    than giftassist) are returned without metadata and skipped by ``range``.
    """

    name = "upstash"

    def __init__(
        self,
        url: str | None = None,
        token: str | None = None,
        index: "AsyncIndex | None" = None,
    ):
        if index is None:
            if not url or not token:
                raise VectorStoreError(
                    "UPSTASH_VECTOR_REST_URL and UPSTASH_VECTOR_REST_TOKEN are required"
                )
            # Note: deferred import to avoid import overhead
            from upstash_vector import AsyncIndex

            index = AsyncIndex(url=url, token=token)
        self.index = index

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except Exception as e:
            await logger.aerror(
                "upstash call failed", operation=operation, error=str(e)
            )
            raise VectorStoreError(f"upstash {operation} failed: {e}") from e

    @override
    async def upsert(self, records: Sequence[EmbeddingRecord]) -> None:
        from upstash_vector import Vector

        if not records:
            return
        vectors = [
            Vector(
                id=record.id,
                vector=record.vector,
                metadata=record.metadata.to_store(),
            )
            for record in records
        ]
        await self._call("upsert", self.index.upsert(vectors=vectors))

    @override
    async def query(self, vector: EmbeddingVector, top_k: int) -> list[QueryHit]:
        if top_k <= 0:
            return []
        results = await self._call(
            "query",
            self.index.query(vector=vector, top_k=top_k, include_metadata=True),
        )
        hits = [
            QueryHit(
                id=str(result.id),
                score=float(result.score),
                metadata=RecordMetadata.from_store(result.metadata),
            )
            for result in results
        ]
        return sort_hits(hits)

    @override
    async def range(
        self, cursor: str | None = None, limit: int = DEFAULT_RANGE_LIMIT
    ) -> RangePage:
        if limit <= 0:
            raise VectorStoreError(f"limit must be positive, got {limit}")
        result = await self._call(
            "range",
            self.index.range(
                cursor=cursor or "",
                limit=limit,
                include_vectors=True,
                include_metadata=True,
            ),
        )
        return RangePage(
            items=[
                record
                for item in result.vectors
                if (record := _to_record(item)) is not None
            ],
            next_cursor=result.next_cursor or None,
        )

    @override
    async def fetch(self, id: str) -> EmbeddingRecord | None:
        results = await self._call(
            "fetch",
            self.index.fetch(ids=[id], include_vectors=True, include_metadata=True),
        )
        if not results or results[0] is None:
            return None
        return _to_record(results[0])

    @override
    async def delete(self, ids: Sequence[str]) -> None:
        if not ids:
            return
        await self._call("delete", self.index.delete(ids=list(ids)))

    @override
    async def reset(self) -> None:
        await self._call("reset", self.index.reset())

    @override
    async def describe(self) -> dict[str, object]:
        info = await self._call("info", self.index.info())
        return {
            "backend": self.name,
            "records": info.vector_count,
            "pending": info.pending_vector_count,
            "dimension": info.dimension,
            "similarity": info.similarity_function,
        }


def _to_record(item: Any) -> EmbeddingRecord | None:
    metadata = RecordMetadata.from_store(item.metadata)
    if metadata is None:
        return None
    return EmbeddingRecord(
        id=str(item.id), vector=list(item.vector or []), metadata=metadata
    )
