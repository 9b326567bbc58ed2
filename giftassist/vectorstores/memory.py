import asyncio
import json
from collections.abc import Sequence
from pathlib import Path

import numpy as np
import structlog
from typing_extensions import override

from ..models import EmbeddingRecord, EmbeddingVector, QueryHit, RangePage
from .base import DEFAULT_RANGE_LIMIT, VectorStore, VectorStoreError, sort_hits

logger = structlog.get_logger()


class MemoryVectorStore(VectorStore):
    """
    A vector store kept in process memory, ranked by cosine similarity.

    Used for tests and local runs. When ``path`` is given the records are
    loaded from that JSON file on creation and written back after every
    change, so the CLI and the server can share an index on one machine.
    """

    name = "memory"

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path is not None else None
        self._records: dict[str, EmbeddingRecord] = {}
        if self.path is not None and self.path.exists():
            self._load()

    def _load(self) -> None:
        assert self.path is not None
        try:
            data = json.loads(self.path.read_text())
            records = [EmbeddingRecord.model_validate(item) for item in data]
        except (OSError, ValueError) as e:
            raise VectorStoreError(f"could not load {self.path}: {e}") from e
        self._records = {record.id: record for record in records}

    def _save(self) -> None:
        assert self.path is not None
        payload = [
            {
                "id": record.id,
                "vector": record.vector,
                "metadata": record.metadata.to_store(),
            }
            for record in self._records.values()
        ]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload))
        tmp.replace(self.path)

    async def _persist(self) -> None:
        if self.path is None:
            return
        try:
            await asyncio.to_thread(self._save)
        except OSError as e:
            raise VectorStoreError(f"could not write {self.path}: {e}") from e

    def __len__(self) -> int:
        return len(self._records)

    def _dimension(self) -> int | None:
        if not self._records:
            return None
        return len(next(iter(self._records.values())).vector)

    @override
    async def upsert(self, records: Sequence[EmbeddingRecord]) -> None:
        """
        Raises:
            VectorStoreError: If the records do not all share the index's
                dimension. Nothing is written in that case.
        """
        dimensions = {len(record.vector) for record in records}
        if (dimension := self._dimension()) is not None:
            dimensions.add(dimension)
        if len(dimensions) > 1:
            raise VectorStoreError(
                f"mixed vector dimensions {sorted(dimensions)} in one index"
            )
        for record in records:
            self._records[record.id] = record.model_copy(deep=True)
        await logger.adebug("memory upsert", records=len(records))
        await self._persist()

    @override
    async def query(self, vector: EmbeddingVector, top_k: int) -> list[QueryHit]:
        if top_k <= 0 or not self._records:
            return []
        ids = list(self._records)
        try:
            matrix = np.array(
                [self._records[id].vector for id in ids], dtype=np.float64
            )
        except ValueError as e:
            # a file written by hand may hold ragged vectors
            raise VectorStoreError(f"index vectors are inconsistent: {e}") from e
        query = np.asarray(vector, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[1] != query.shape[0]:
            raise VectorStoreError(
                f"query has {query.shape[0]} dimensions, "
                f"index has {matrix.shape[-1]}"
            )
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms != 0)
        hits = [
            QueryHit(id=id, score=float(score), metadata=self._records[id].metadata)
            for id, score in zip(ids, scores, strict=True)
        ]
        return sort_hits(hits)[:top_k]

    @override
    async def range(
        self, cursor: str | None = None, limit: int = DEFAULT_RANGE_LIMIT
    ) -> RangePage:
        if limit <= 0:
            raise VectorStoreError(f"limit must be positive, got {limit}")
        try:
            offset = int(cursor) if cursor else 0
        except ValueError as e:
            raise VectorStoreError(f"invalid cursor: {cursor!r}") from e
        ids = sorted(self._records)
        page = ids[offset : offset + limit]
        end = offset + len(page)
        return RangePage(
            items=[self._records[id] for id in page],
            next_cursor=str(end) if end < len(ids) else None,
        )

    @override
    async def fetch(self, id: str) -> EmbeddingRecord | None:
        return self._records.get(id)

    @override
    async def delete(self, ids: Sequence[str]) -> None:
        for id in ids:
            self._records.pop(id, None)
        await self._persist()

    @override
    async def reset(self) -> None:
        self._records.clear()
        await self._persist()

    @override
    async def describe(self) -> dict[str, object]:
        return {
            "backend": self.name,
            "records": len(self._records),
            "dimension": self._dimension(),
            "path": str(self.path) if self.path is not None else None,
        }
