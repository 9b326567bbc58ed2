from ..configuration import Settings
from .base import DEFAULT_RANGE_LIMIT, VectorStore, VectorStoreError
from .memory import MemoryVectorStore
from .pinecone import PineconeVectorStore
from .upstash import UpstashVectorStore


def create_vector_store(settings: Settings) -> VectorStore:
    match settings.vector_backend:
        case "upstash":
            return UpstashVectorStore(
                url=settings.upstash_url, token=settings.upstash_token
            )
        case "pinecone":
            return PineconeVectorStore(
                api_key=settings.pinecone_api_key,
                index_name=settings.pinecone_index,
                namespace=settings.pinecone_namespace,
            )
        case "memory":
            return MemoryVectorStore(path=settings.memory_store_path)


__all__ = [
    "DEFAULT_RANGE_LIMIT",
    "MemoryVectorStore",
    "PineconeVectorStore",
    "UpstashVectorStore",
    "VectorStore",
    "VectorStoreError",
    "create_vector_store",
]
