import os
from typing import Annotated, Literal

from annotated_types import Ge, Gt, Le
from pydantic import BaseModel

DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024


def asbool(value: str | None) -> bool:
    """Convert the given String to a boolean object.

    Accepted values are `True` and `1`.
    """
    if value is None:
        return False

    return value.lower() in ("true", "1")


class Settings(BaseModel):
    """
    Runtime configuration of the gift assistant.

    Built from environment variables by :meth:`from_env`. Provider credentials
    use the providers' usual variable names, everything else is prefixed with
    ``GIFTASSIST_``.

    Attributes:
        vector_backend: Which vector store adapter to use.
        embedding_model: The OpenAI embedding model. Must stay fixed for the
            lifetime of an index.
        embedding_dimensions: Optional output dimensions for the model.
        completion_model: The chat model used by the assistant.
        openai_api_key: API key for embeddings and completions.
        openai_base_url: Optional OpenAI-compatible endpoint.
        upstash_url: REST URL of the Upstash Vector index.
        upstash_token: REST token of the Upstash Vector index.
        pinecone_api_key: Pinecone API key.
        pinecone_index: Name of the Pinecone index.
        pinecone_namespace: Optional Pinecone namespace.
        memory_store_path: JSON file backing the memory store, if any.
        catalog_path: JSON product file used by the keyword fallback.
        image_check_timeout: Seconds allowed for one image HEAD request.
        image_check_concurrency: Image checks in flight per ingestion.
        backend_timeout: Seconds allowed for one embedding or vector call.
        embed_retries: Retries of the batched embedding call on failure.
        max_upload_bytes: Largest accepted spreadsheet.
        prune_stale: Delete rows left over from a longer previous upload.
        log_level: Log level for the CLI and the server.
    """

    vector_backend: Literal["memory", "upstash", "pinecone"] = "memory"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int | None = None
    completion_model: str = "gpt-4o-mini"
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    upstash_url: str | None = None
    upstash_token: str | None = None
    pinecone_api_key: str | None = None
    pinecone_index: str | None = None
    pinecone_namespace: str | None = None
    memory_store_path: str | None = None
    catalog_path: str | None = None
    image_check_timeout: Annotated[float, Gt(gt=0), Le(le=30)] = 4.0
    image_check_concurrency: Annotated[int, Gt(gt=0), Le(le=100)] = 10
    backend_timeout: Annotated[float, Gt(gt=0)] = 30.0
    embed_retries: Annotated[int, Ge(ge=0), Le(le=10)] = 3
    max_upload_bytes: Annotated[int, Gt(gt=0)] = DEFAULT_MAX_UPLOAD_BYTES
    prune_stale: bool = False
    log_level: Literal[
        "CRITICAL",
        "FATAL",
        "ERROR",
        "WARN",
        "WARNING",
        "INFO",
        "DEBUG",
    ] = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        values: dict[str, object] = {
            "openai_api_key": os.getenv("OPENAI_API_KEY"),
            "openai_base_url": os.getenv("OPENAI_BASE_URL"),
            "upstash_url": _stripped(os.getenv("UPSTASH_VECTOR_REST_URL")),
            "upstash_token": _stripped(os.getenv("UPSTASH_VECTOR_REST_TOKEN")),
            "pinecone_api_key": os.getenv("PINECONE_API_KEY"),
            "pinecone_index": os.getenv("PINECONE_INDEX"),
            "pinecone_namespace": os.getenv("PINECONE_NAMESPACE"),
            "memory_store_path": os.getenv("GIFTASSIST_MEMORY_STORE_PATH"),
            "catalog_path": os.getenv("GIFTASSIST_CATALOG_PATH"),
            "prune_stale": asbool(os.getenv("GIFTASSIST_PRUNE_STALE")),
        }
        env_fields = {
            "vector_backend": "GIFTASSIST_VECTOR_BACKEND",
            "embedding_model": "GIFTASSIST_EMBEDDING_MODEL",
            "embedding_dimensions": "GIFTASSIST_EMBEDDING_DIMENSIONS",
            "completion_model": "GIFTASSIST_COMPLETION_MODEL",
            "image_check_timeout": "GIFTASSIST_IMAGE_CHECK_TIMEOUT",
            "image_check_concurrency": "GIFTASSIST_IMAGE_CHECK_CONCURRENCY",
            "backend_timeout": "GIFTASSIST_BACKEND_TIMEOUT",
            "embed_retries": "GIFTASSIST_EMBED_RETRIES",
            "max_upload_bytes": "GIFTASSIST_MAX_UPLOAD_BYTES",
            "log_level": "GIFTASSIST_LOG_LEVEL",
        }
        for field, name in env_fields.items():
            value = os.getenv(name)
            if value is not None and value != "":
                values[field] = value.upper() if field == "log_level" else value
        return cls.model_validate(values)


def _stripped(value: str | None) -> str | None:
    return value.strip() if value is not None else None
