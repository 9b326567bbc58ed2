from ..configuration import Settings
from .base import (
    BatchingError,
    Embedder,
    EmbeddingProviderError,
    EmbeddingResponse,
    Usage,
    batch_indices,
    normalize_whitespace,
)
from .openai import OpenAIEmbedder


def create_embedder(settings: Settings) -> Embedder:
    return OpenAIEmbedder(
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
    )


__all__ = [
    "BatchingError",
    "Embedder",
    "EmbeddingProviderError",
    "EmbeddingResponse",
    "OpenAIEmbedder",
    "Usage",
    "batch_indices",
    "create_embedder",
    "normalize_whitespace",
]
