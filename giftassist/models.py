"""Data shapes shared by the ingestion and retrieval sides of giftassist.

The record id scheme (``<resourceId>-<rowIndex>``) and the metadata keys
produced by :class:`RecordMetadata` are the stored format of the vector index.
Changing either breaks round trips with records written by older versions.
"""

from collections.abc import Mapping
from typing import Any, TypeAlias

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

SourceRow: TypeAlias = dict[str, Any]
EmbeddingVector: TypeAlias = list[float]
MetadataValue: TypeAlias = str | int | float | bool


class CamelModel(BaseModel):
    """Serializes snake_case fields with the camelCase keys used on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Chunk(BaseModel):
    """
    The normalized text of one spreadsheet row.

    Attributes:
        text: The text that gets embedded.
        source_image_ref: The raw (trimmed) value of the image column.
    """

    text: str
    source_image_ref: str


class ImageMetadata(BaseModel):
    url: str
    valid: bool
    content_type: str | None = None
    byte_size: int | None = None


class RecordMetadata(CamelModel):
    """
    Metadata stored next to every vector.

    Only ``resource_id`` and ``content`` are always present. Optional fields
    that are ``None`` are left out of the stored payload entirely, since the
    vector stores refuse null metadata values.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    resource_id: str
    content: str
    image_url: str | None = None
    image_valid: bool | None = None
    image_content_type: str | None = None
    image_size: int | None = None
    embedding_model: str | None = None

    def to_store(self) -> dict[str, MetadataValue]:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_store(cls, data: Mapping[str, Any] | None) -> "RecordMetadata | None":
        """Parses stored metadata, returning None for records in another format."""
        if not data:
            return None
        try:
            return cls.model_validate(dict(data))
        except ValidationError:
            return None


class EmbeddingRecord(BaseModel):
    id: str
    vector: EmbeddingVector
    metadata: RecordMetadata


class QueryHit(BaseModel):
    id: str
    score: float
    metadata: RecordMetadata | None = None


class RangePage(BaseModel):
    """One page of a full listing. ``next_cursor`` is None on the last page."""

    items: list[EmbeddingRecord]
    next_cursor: str | None = None


class IngestResult(CamelModel):
    rows_upserted: int
    images_valid: int
    images_invalid: int


class Product(CamelModel):
    """
    The read model returned by search, listing and lookup.

    Built either from a stored vector record or from an entry of the local
    catalog used by the keyword fallback.
    """

    id: str
    content: str
    resource_id: str | None = None
    image_url: str | None = None
    image_valid: bool | None = None
    image_content_type: str | None = None
    image_size: int | None = None
    score: float | None = None

    @classmethod
    def from_metadata(
        cls, id: str, metadata: RecordMetadata, score: float | None = None
    ) -> "Product":
        return cls(
            id=id,
            content=metadata.content,
            resource_id=metadata.resource_id,
            image_url=metadata.image_url,
            image_valid=metadata.image_valid,
            image_content_type=metadata.image_content_type,
            image_size=metadata.image_size,
            score=score,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
