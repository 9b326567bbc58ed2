from .images import validate_image
from .loading import (
    EmptySheetError,
    InvalidFileError,
    LoadedSpreadsheet,
    check_upload,
    load_spreadsheet,
    read_rows,
)
from .normalizing import (
    ColumnMap,
    DuplicateColumnError,
    InvalidRowError,
    InvalidRowsError,
    MissingColumnError,
    normalize_row,
    normalize_rows,
    resolve_columns,
)
from .pipeline import IngestionPipeline, InvalidResourceIdError, make_resource_id

__all__ = [
    "ColumnMap",
    "DuplicateColumnError",
    "EmptySheetError",
    "IngestionPipeline",
    "InvalidFileError",
    "InvalidResourceIdError",
    "InvalidRowError",
    "InvalidRowsError",
    "LoadedSpreadsheet",
    "MissingColumnError",
    "check_upload",
    "load_spreadsheet",
    "make_resource_id",
    "normalize_row",
    "normalize_rows",
    "read_rows",
    "resolve_columns",
    "validate_image",
]
