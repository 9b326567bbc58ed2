from dataclasses import dataclass
from io import BytesIO

from filetype import filetype  # type: ignore

from ..errors import IngestValidationError
from ..models import SourceRow

SPREADSHEET_EXTENSIONS = ("xlsx", "xls")
SPREADSHEET_CONTENT_TYPES = (
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel",
)


class InvalidFileError(IngestValidationError):
    """
    Raised when the upload is missing, too large or not a spreadsheet.
    """

    msg = "invalid file"


class EmptySheetError(IngestValidationError):
    """
    Raised when the workbook has no sheet or the first sheet has no data rows.
    """

    msg = "no data rows found"


@dataclass
class LoadedSpreadsheet:
    content: BytesIO
    file_name: str | None = None
    file_type: str | None = None


def guess_filetype(file_like: BytesIO, file_name: str | None = None) -> str | None:
    guess = filetype.guess(file_like)  # type: ignore
    file_like.seek(0)
    if guess is None:
        if file_name is None or "." not in file_name:
            return None
        return file_name.rsplit(".", 1)[-1].lower()
    return guess.extension


def check_upload(
    file_name: str | None,
    content_type: str | None,
    size: int,
    max_bytes: int,
) -> None:
    """
    Rejects uploads that cannot be a spreadsheet we accept.

    A file is accepted when either its extension or its declared content type
    identifies an Excel workbook, mirroring what browsers send for .xls/.xlsx.

    Raises:
        InvalidFileError: If the file is empty, too large or of another type.
    """
    if size <= 0:
        raise InvalidFileError(
            "Missing or invalid file. Send a file in form field 'file'."
        )
    if size > max_bytes:
        raise InvalidFileError(
            f"File too large. Max {max_bytes // (1024 * 1024)}MB allowed."
        )
    name = (file_name or "").lower()
    is_excel = name.endswith(tuple(f".{ext}" for ext in SPREADSHEET_EXTENSIONS)) or (
        content_type in SPREADSHEET_CONTENT_TYPES
    )
    if not is_excel:
        raise InvalidFileError("Invalid file type. Use .xlsx or .xls.")


def load_spreadsheet(
    data: bytes,
    file_name: str | None = None,
    content_type: str | None = None,
    max_bytes: int | None = None,
) -> LoadedSpreadsheet:
    if max_bytes is not None:
        check_upload(file_name, content_type, len(data), max_bytes)
    content = BytesIO(data)
    return LoadedSpreadsheet(
        content=content,
        file_name=file_name,
        file_type=guess_filetype(content, file_name),
    )


def read_rows(sheet: LoadedSpreadsheet) -> tuple[list[str], list[SourceRow]]:
    """
    Reads the first sheet of a workbook.

    Every cell is read as a string and blank cells become empty strings, so
    the normalizer never sees NaN or numeric coercions. Columns without a
    header and rows without any value are dropped. The header row is taken
    as written: repeated headers are returned as repeated names, never
    renamed, so the column resolver can reject them.

    Returns:
        The header names in sheet order, and one dict per data row.

    Raises:
        InvalidFileError: If the content cannot be parsed as a workbook.
        EmptySheetError: If the first sheet holds no data rows.
    """
    # Note: deferred import to avoid import overhead
    import pandas as pd

    engine = "xlrd" if sheet.file_type == "xls" else None
    try:
        frame = pd.read_excel(
            sheet.content,
            sheet_name=0,
            header=None,
            dtype=str,
            keep_default_na=False,
            engine=engine,
        )
    except (IndexError, KeyError) as e:
        raise EmptySheetError("Excel file has no sheets.") from e
    except Exception as e:
        raise InvalidFileError("Could not read the spreadsheet.") from e
    finally:
        sheet.content.seek(0)

    if frame.empty:
        raise EmptySheetError("No data rows found.")
    cells = [
        ["" if pd.isna(value) else str(value) for value in row]
        for row in frame.itertuples(index=False, name=None)
    ]
    header_row, data_rows = cells[0], cells[1:]
    positions = [i for i, header in enumerate(header_row) if header.strip()]
    headers = [header_row[i] for i in positions]
    rows: list[SourceRow] = []
    for values in data_rows:
        if any(values[i].strip() for i in positions):
            rows.append({header_row[i]: values[i] for i in positions})

    if not headers or not rows:
        raise EmptySheetError("No data rows found.")
    return headers, rows
