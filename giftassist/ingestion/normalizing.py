from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from ..errors import IngestValidationError
from ..models import Chunk

REQUIRED_COLUMNS = ("name", "description", "image")


class MissingColumnError(IngestValidationError):
    """
    Raised when a required column is absent from the sheet header.
    """

    msg = "required column not found"

    def __init__(self, column: str):
        super().__init__(f'Required column "{column.capitalize()}" not found')
        self.column = column


class DuplicateColumnError(IngestValidationError):
    """
    Raised when more than one header matches the same column.
    """

    msg = "column is ambiguous"

    def __init__(self, column: str, headers: Sequence[str]):
        super().__init__(
            f'Column "{headers[0].strip()}" matches more than one '
            f"header: {', '.join(repr(h) for h in headers)}"
        )
        self.column = column
        self.headers = list(headers)


class InvalidRowError(IngestValidationError):
    """
    Raised when a row has an empty name, description or image reference.
    """

    msg = "row missing required fields"

    def __init__(self, index: int, fields: Sequence[str]):
        super().__init__(
            f"Row {index + 1} is missing required fields: {', '.join(fields)}"
        )
        self.index = index
        self.fields = list(fields)


class InvalidRowsError(IngestValidationError):
    """
    Raised with every row failure of a sheet, so the vendor can fix them all
    before uploading again.
    """

    msg = "rows missing required fields"

    def __init__(self, errors: Sequence[InvalidRowError]):
        super().__init__("; ".join(str(e) for e in errors))
        self.errors = list(errors)


@dataclass(frozen=True)
class ColumnMap:
    name: str
    description: str
    image: str
    other_columns: tuple[str, ...] = ()


def normalize_column_name(name: Any) -> str:
    return str(name).strip().lower()


def resolve_columns(headers: Sequence[str]) -> ColumnMap:
    """
    Finds the name, description and image columns of a sheet header.

    Matching ignores case and surrounding whitespace, so " name " and "IMAGE"
    both match. Every other header is kept, in sheet order, as free text that
    gets appended to the chunk.

    Raises:
        MissingColumnError: If a required column is absent.
        DuplicateColumnError: If a required column matches several headers,
            or another header appears more than once.
    """
    found: dict[str, str] = {}
    for column in REQUIRED_COLUMNS:
        matches = [h for h in headers if normalize_column_name(h) == column]
        if not matches:
            raise MissingColumnError(column)
        if len(matches) > 1:
            raise DuplicateColumnError(column, matches)
        found[column] = matches[0]

    required = set(found.values())
    other_columns = [h for h in headers if h not in required]
    for header in other_columns:
        # rows are keyed by header, so a repeated one would hide a cell
        if other_columns.count(header) > 1:
            raise DuplicateColumnError(
                normalize_column_name(header), [header] * other_columns.count(header)
            )
    return ColumnMap(
        name=found["name"],
        description=found["description"],
        image=found["image"],
        other_columns=tuple(other_columns),
    )


def _cell(row: Mapping[str, Any], column: str) -> str:
    value = row.get(column)
    if value is None:
        return ""
    return str(value).strip()


def format_chunk_text(
    name: str, description: str, extras: Sequence[tuple[str, str]]
) -> str:
    parts = [f"Name: {name}", f"Description: {description}"]
    parts.extend(f"{column.strip()}: {value}" for column, value in extras)
    return ". ".join(parts) + "."


def normalize_row(index: int, row: Mapping[str, Any], columns: ColumnMap) -> Chunk:
    """
    Turns one sheet row into a chunk.

    >>> columns = resolve_columns(["Name", "Description", "Image", "Color"])
    >>> normalize_row(
    ...     0,
    ...     {"Name": "Mug", "Description": "Ceramic mug", "Image": "x", "Color": "Blue"},
    ...     columns,
    ... ).text
    'Name: Mug. Description: Ceramic mug. Color: Blue.'

    Raises:
        InvalidRowError: If name, description or image is empty after trimming.
    """
    name = _cell(row, columns.name)
    description = _cell(row, columns.description)
    image = _cell(row, columns.image)

    missing = [
        field
        for field, value in (
            ("name", name),
            ("description", description),
            ("image", image),
        )
        if not value
    ]
    if missing:
        raise InvalidRowError(index, missing)

    extras = [
        (column, value)
        for column in columns.other_columns
        if (value := _cell(row, column))
    ]
    return Chunk(
        text=format_chunk_text(name, description, extras),
        source_image_ref=image,
    )


def normalize_rows(
    rows: Sequence[Mapping[str, Any]], columns: ColumnMap
) -> list[Chunk]:
    """
    Normalizes every row, reporting all bad rows at once.

    Raises:
        InvalidRowsError: If at least one row is invalid.
    """
    chunks: list[Chunk] = []
    errors: list[InvalidRowError] = []
    for index, row in enumerate(rows):
        try:
            chunks.append(normalize_row(index, row, columns))
        except InvalidRowError as e:
            errors.append(e)
    if errors:
        raise InvalidRowsError(errors)
    return chunks
