import asyncio
import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
from ddtrace.trace import tracer

from .embedders import Embedder
from .errors import GiftAssistError
from .models import Product
from .tracing import tag_current_span
from .vectorstores import VectorStore

logger = structlog.get_logger()

DEFAULT_TOP_K = 5


class CatalogError(GiftAssistError):
    """
    Raised when the local catalog file cannot be read.
    """

    msg = "local catalog unreadable"


def keyword_score(query: str, text: str) -> int:
    """
    Scores ``text`` against ``query`` by plain substring matching.

    +3 when the whole query occurs in the text, +1 for every whitespace
    separated query token that occurs in it. Case insensitive.

    >>> keyword_score("red lipstick", "Matte Red Lipstick, long wear")
    5
    """
    query = query.strip().lower()
    if not query:
        return 0
    text = text.lower()
    score = 3 if query in text else 0
    score += sum(1 for token in query.split() if token in text)
    return score


@dataclass(frozen=True)
class CatalogEntry:
    product: Product
    searchable_text: str


def _scalar_text(entry: Mapping[str, Any]) -> str:
    return " ".join(
        str(value)
        for key, value in entry.items()
        if key != "id"
        and value is not None
        and not isinstance(value, bool)
        and isinstance(value, str | int | float)
    )


class LocalCatalog:
    """
    Products searched by keyword when the vector path is unavailable.

    Loaded from a JSON list of objects that each carry an ``id``. The text
    searched is ``content`` when an entry has it, otherwise every other
    scalar value of the entry joined by spaces.
    """

    def __init__(self, entries: Iterable[CatalogEntry] = ()):
        self.entries = list(entries)

    def __len__(self) -> int:
        return len(self.entries)

    @classmethod
    def from_records(cls, records: Sequence[Mapping[str, Any]]) -> "LocalCatalog":
        entries: list[CatalogEntry] = []
        for record in records:
            if "id" not in record:
                continue
            content = record.get("content")
            text = str(content) if content else _scalar_text(record)
            image = record.get("imageUrl") or record.get("image")
            entries.append(
                CatalogEntry(
                    product=Product(
                        id=str(record["id"]),
                        content=text,
                        image_url=str(image) if image else None,
                    ),
                    searchable_text=text,
                )
            )
        return cls(entries)

    @classmethod
    def from_json(cls, path: str | Path) -> "LocalCatalog":
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, ValueError) as e:
            raise CatalogError(f"could not read catalog {path}: {e}") from e
        if not isinstance(data, list):
            raise CatalogError(f"catalog {path} must hold a JSON list")
        return cls.from_records([item for item in data if isinstance(item, dict)])

    def search(self, query: str, top_k: int) -> list[Product]:
        scored = [
            (keyword_score(query, entry.searchable_text), entry.product)
            for entry in self.entries
        ]
        # sorted() is stable, so equal scores keep catalog order
        ranked = sorted(
            (item for item in scored if item[0] > 0),
            key=lambda item: item[0],
            reverse=True,
        )
        return [
            product.model_copy(update={"score": float(score)})
            for score, product in ranked[:top_k]
        ]


class RetrievalService:
    """
    Finds the products most relevant to a free-text query.

    The vector path embeds the query and asks the store for its nearest
    records. When that path raises, times out or finds nothing usable, the
    local catalog is searched by keyword instead. :meth:`search` never raises
    on backend failures; they are logged and masked by the fallback.
    """

    def __init__(
        self,
        embedder: Embedder | None,
        store: VectorStore | None,
        catalog: LocalCatalog | None = None,
        backend_timeout: float = 30.0,
    ):
        self.embedder = embedder
        self.store = store
        self.catalog = catalog if catalog is not None else LocalCatalog()
        self.backend_timeout = backend_timeout

    @tracer.wrap()
    async def search(self, query: str, top_k: int = DEFAULT_TOP_K) -> list[Product]:
        query = query.strip()
        if not query or top_k <= 0:
            return []

        products: list[Product] = []
        try:
            products = await self._vector_search(query, top_k)
        except Exception as e:
            await logger.aerror(
                "vector search failed, using keyword fallback",
                error=str(e),
                error_type=e.__class__.__name__,
            )

        if products:
            tag_current_span(path="vector", hits=len(products))
            return products

        products = self.catalog.search(query, top_k)
        tag_current_span(path="keyword", hits=len(products))
        await logger.adebug("keyword fallback", query=query, hits=len(products))
        return products

    async def _vector_search(self, query: str, top_k: int) -> list[Product]:
        if self.embedder is None or self.store is None:
            return []
        vector = await asyncio.wait_for(
            self.embedder.embed_one(query), self.backend_timeout
        )
        hits = await asyncio.wait_for(
            self.store.query(vector, top_k), self.backend_timeout
        )
        return [
            Product.from_metadata(hit.id, hit.metadata, hit.score)
            for hit in hits
            if hit.metadata is not None and hit.metadata.content
        ]
