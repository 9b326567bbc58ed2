from functools import cached_property
from typing import TYPE_CHECKING

from typing_extensions import override

if TYPE_CHECKING:
    import openai

from .base import Embedder, EmbeddingResponse, Usage

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"


class OpenAIEmbedder(Embedder):
    """
    Embedder that uses OpenAI's API to embed documents into vector representations.

    The client is created with ``max_retries=0``; retrying is left to the
    ingestion pipeline so that one upload never multiplies provider calls
    behind the caller's back.

    Attributes:
        model (str): The name of the OpenAI model used for embeddings.
        dimensions (int | None): Optional dimensions for the embeddings.
        api_key (str | None): API key, falls back to ``OPENAI_API_KEY``.
        base_url (str | None): Optional OpenAI-compatible endpoint.
    """

    def __init__(
        self,
        model: str = DEFAULT_EMBEDDING_MODEL,
        dimensions: int | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        client: "openai.AsyncOpenAI | None" = None,
    ):
        self.model = model
        self.dimensions = dimensions
        self.api_key = api_key
        self.base_url = base_url
        self._client = client

    @cached_property
    def _openai_dimensions(self) -> "int | openai.NotGiven":
        # Note: deferred import to avoid import overhead
        import openai

        if self.model == "text-embedding-ada-002":
            if self.dimensions not in (None, 1536):
                raise ValueError("dimensions must be 1536 for text-embedding-ada-002")
            return openai.NOT_GIVEN
        return self.dimensions if self.dimensions is not None else openai.NOT_GIVEN

    @cached_property
    def client(self) -> "openai.AsyncOpenAI":
        if self._client is not None:
            return self._client
        import openai

        return openai.AsyncOpenAI(
            api_key=self.api_key, base_url=self.base_url, max_retries=0
        )

    @override
    def _max_inputs_per_batch(self) -> int:
        return 2048

    @override
    def _max_tokens_per_batch(self) -> float:
        return 300_000

    @override
    def _estimate_token_length(self, text: str) -> float:
        """
        Estimates token count based on UTF-8 byte length.
        """
        # OpenAI's per batch limit uses an estimator, not real token counts
        return len(text.encode("utf-8")) * 0.25  # 0.25 tokens per byte

    @override
    async def call_embed_api(self, texts: list[str]) -> EmbeddingResponse:
        response = await self.client.embeddings.create(
            input=texts,
            model=self.model,
            dimensions=self._openai_dimensions,
            encoding_format="float",
        )
        data = sorted(response.data, key=lambda item: item.index)
        return EmbeddingResponse(
            embeddings=[item.embedding for item in data],
            usage=Usage(
                prompt_tokens=response.usage.prompt_tokens,
                total_tokens=response.usage.total_tokens,
            ),
        )
