import hashlib
import io
from collections.abc import AsyncGenerator, Sequence
from typing import Any

import httpx
import pytest
from openpyxl import Workbook
from typing_extensions import override

from giftassist.embedders import Embedder, EmbeddingResponse, Usage
from giftassist.ingestion import IngestionPipeline
from giftassist.models import EmbeddingVector, QueryHit
from giftassist.vectorstores import MemoryVectorStore, VectorStoreError

DIMENSIONS = 32
IMAGE_HOST = "img.example.com"


def hashed_vector(text: str, dimensions: int = DIMENSIONS) -> EmbeddingVector:
    """Bag of words: texts sharing words get similar vectors."""
    vector = [0.0] * dimensions
    for token in text.lower().replace(".", " ").replace(":", " ").split():
        digest = hashlib.sha256(token.encode()).digest()
        vector[int.from_bytes(digest[:4], "big") % dimensions] += 1.0
    return vector


class HashingEmbedder(Embedder):
    """Deterministic embedder that records every provider call."""

    def __init__(self, batch_size: int = 2048, failures: int = 0):
        self.model = "test-hashing"
        self.batch_size = batch_size
        self.failures = failures
        self.calls: list[list[str]] = []

    @override
    def _max_inputs_per_batch(self) -> int:
        return self.batch_size

    @override
    async def call_embed_api(self, texts: list[str]) -> EmbeddingResponse:
        self.calls.append(list(texts))
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("provider unavailable")
        return EmbeddingResponse(
            embeddings=[hashed_vector(text) for text in texts],
            usage=Usage(prompt_tokens=len(texts), total_tokens=len(texts)),
        )


class BrokenVectorStore(MemoryVectorStore):
    @override
    async def query(self, vector: EmbeddingVector, top_k: int) -> list[QueryHit]:
        raise VectorStoreError("index unreachable")


def image_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host != IMAGE_HOST:
        raise httpx.ConnectError("name resolution failed", request=request)
    if request.url.path.endswith("/missing.png"):
        return httpx.Response(404)
    return httpx.Response(
        200, headers={"content-type": "image/png", "content-length": "2048"}
    )


def make_xlsx(rows: Sequence[Sequence[Any]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(list(row))
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def product_row(
    name: str, description: str, image: str, **extra: str
) -> dict[str, str]:
    return {"Name": name, "Description": description, "Image": image, **extra}


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def store() -> MemoryVectorStore:
    return MemoryVectorStore()


@pytest.fixture
async def image_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(image_handler)
    ) as client:
        yield client


@pytest.fixture
def pipeline(
    embedder: HashingEmbedder,
    store: MemoryVectorStore,
    image_client: httpx.AsyncClient,
) -> IngestionPipeline:
    return IngestionPipeline(embedder, store, http_client=image_client)


@pytest.fixture
def catalog_rows() -> list[dict[str, str]]:
    return [
        product_row(
            "Ceramic Mug",
            "Hand glazed coffee mug",
            f"https://{IMAGE_HOST}/mug.png",
            Color="Blue",
        ),
        product_row(
            "Scented Candle",
            "Soy candle with lavender scent",
            f"https://{IMAGE_HOST}/missing.png",
        ),
        product_row(
            "Leather Wallet",
            "Slim wallet in brown leather",
            "not-a-url",
            Color="Brown",
        ),
    ]
