from abc import ABC, abstractmethod
from collections.abc import Sequence

from ..errors import GiftAssistError
from ..models import EmbeddingRecord, EmbeddingVector, QueryHit, RangePage

DEFAULT_RANGE_LIMIT = 100


class VectorStoreError(GiftAssistError):
    """
    Raised when a vector store backend call fails.
    """

    msg = "vector store failed"


class VectorStore(ABC):
    """
    Abstract base class for a vector index holding product records.

    Records are addressed by id. ``upsert`` replaces a record with the same id
    entirely, vector and metadata. ``query`` returns hits ordered by
    similarity, highest first, with ties broken by ascending id.
    """

    name: str

    @abstractmethod
    async def upsert(self, records: Sequence[EmbeddingRecord]) -> None:
        """Writes all records, overwriting existing ids."""

    @abstractmethod
    async def query(self, vector: EmbeddingVector, top_k: int) -> list[QueryHit]:
        """Returns the ``top_k`` nearest records with their metadata."""

    @abstractmethod
    async def range(
        self, cursor: str | None = None, limit: int = DEFAULT_RANGE_LIMIT
    ) -> RangePage:
        """
        Lists stored records one page at a time.

        Pass ``None`` to start and the returned ``next_cursor`` to continue;
        the last page has ``next_cursor=None``.
        """

    @abstractmethod
    async def fetch(self, id: str) -> EmbeddingRecord | None:
        """Returns the record stored under ``id``, or None."""

    @abstractmethod
    async def delete(self, ids: Sequence[str]) -> None:
        """Removes the given ids. Unknown ids are ignored."""

    @abstractmethod
    async def reset(self) -> None:
        """Removes every record from the index."""

    async def describe(self) -> dict[str, object]:
        """Backend facts for diagnostics, such as record count and dimensions."""
        return {"backend": self.name}

    async def close(self) -> None:  # noqa: B027 empty on purpose
        """Releases backend resources."""


def sort_hits(hits: list[QueryHit]) -> list[QueryHit]:
    return sorted(hits, key=lambda hit: (-hit.score, hit.id))
