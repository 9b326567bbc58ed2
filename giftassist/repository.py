import asyncio

from .models import Product
from .retrieval import DEFAULT_TOP_K, RetrievalService
from .vectorstores import DEFAULT_RANGE_LIMIT, VectorStore

MAX_LIST_LIMIT = 1000


class ProductRepository:
    """
    Read access to the products stored in the vector index.

    Lookup and listing read the store directly, search goes through the
    retrieval service so it shares the keyword fallback.
    """

    def __init__(
        self,
        store: VectorStore,
        retrieval: RetrievalService,
        backend_timeout: float = 30.0,
    ):
        self.store = store
        self.retrieval = retrieval
        self.backend_timeout = backend_timeout

    async def find_by_id(self, id: str) -> Product | None:
        record = await asyncio.wait_for(self.store.fetch(id), self.backend_timeout)
        if record is None:
            return None
        return Product.from_metadata(record.id, record.metadata)

    async def search(self, query: str, top_k: int = DEFAULT_TOP_K) -> list[Product]:
        return await self.retrieval.search(query, top_k)

    async def list(
        self, cursor: str | None = None, limit: int = DEFAULT_RANGE_LIMIT
    ) -> tuple[list[Product], str | None]:
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        page = await asyncio.wait_for(
            self.store.range(cursor, limit), self.backend_timeout
        )
        products = [
            Product.from_metadata(record.id, record.metadata) for record in page.items
        ]
        return products, page.next_cursor
