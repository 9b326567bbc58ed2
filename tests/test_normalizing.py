import pytest

from giftassist.ingestion import (
    DuplicateColumnError,
    InvalidRowError,
    InvalidRowsError,
    MissingColumnError,
    normalize_row,
    normalize_rows,
    resolve_columns,
)


def test_resolve_columns_ignores_case_and_whitespace():
    columns = resolve_columns([" NAME ", "description", "Image ", "Color", "Price"])

    assert columns.name == " NAME "
    assert columns.description == "description"
    assert columns.image == "Image "
    assert columns.other_columns == ("Color", "Price")


@pytest.mark.parametrize(
    "headers,missing",
    [
        (["Description", "Image"], "name"),
        (["Name", "Image", "Color"], "description"),
        (["Name", "Description", "Picture"], "image"),
        ([], "name"),
    ],
)
def test_resolve_columns_missing(headers: list[str], missing: str):
    with pytest.raises(MissingColumnError) as exc_info:
        resolve_columns(headers)

    assert exc_info.value.column == missing
    assert str(exc_info.value) == (
        f'Required column "{missing.capitalize()}" not found'
    )


def test_resolve_columns_rejects_ambiguous_headers():
    with pytest.raises(DuplicateColumnError) as exc_info:
        resolve_columns(["Name", "name ", "Description", "Image"])

    assert exc_info.value.column == "name"
    assert exc_info.value.headers == ["Name", "name "]


def test_resolve_columns_rejects_repeated_required_header():
    with pytest.raises(DuplicateColumnError) as exc_info:
        resolve_columns(["Name", "Name", "Description", "Image"])

    assert exc_info.value.column == "name"
    assert str(exc_info.value) == (
        "Column \"Name\" matches more than one header: 'Name', 'Name'"
    )


def test_resolve_columns_rejects_repeated_extra_header():
    with pytest.raises(DuplicateColumnError) as exc_info:
        resolve_columns(["Name", "Description", "Image", "Color", "Color"])

    assert exc_info.value.column == "color"
    assert exc_info.value.headers == ["Color", "Color"]


def test_normalize_row_formats_text():
    columns = resolve_columns(["Name", "Description", "Image", "Color"])
    row = {
        "Name": "Mug",
        "Description": "Ceramic mug",
        "Image": "https://img.example.com/mug.png",
        "Color": "Blue",
    }

    chunk = normalize_row(0, row, columns)

    assert chunk.text == "Name: Mug. Description: Ceramic mug. Color: Blue."
    assert chunk.source_image_ref == "https://img.example.com/mug.png"


def test_normalize_row_without_extra_columns():
    columns = resolve_columns(["Name", "Description", "Image"])

    chunk = normalize_row(
        0, {"Name": "Mug", "Description": "Ceramic mug", "Image": "x"}, columns
    )

    assert chunk.text == "Name: Mug. Description: Ceramic mug."


def test_normalize_row_trims_and_skips_empty_extras():
    columns = resolve_columns(["Name", "Description", "Image", "Color", "Size"])
    row = {
        "Name": "  Mug ",
        "Description": "Ceramic mug\t",
        "Image": " x ",
        "Color": "   ",
        "Size": 12,
    }

    chunk = normalize_row(0, row, columns)

    assert chunk.text == "Name: Mug. Description: Ceramic mug. Size: 12."
    assert chunk.source_image_ref == "x"


def test_normalize_row_is_deterministic():
    columns = resolve_columns(["Name", "Description", "Image", "Color"])
    row = {"Name": "Mug", "Description": "Ceramic mug", "Image": "x", "Color": "Blue"}

    assert normalize_row(3, row, columns) == normalize_row(3, dict(row), columns)


@pytest.mark.parametrize(
    "row,fields",
    [
        ({"Name": "", "Description": "d", "Image": "i"}, ["name"]),
        ({"Name": "n", "Description": " ", "Image": "i"}, ["description"]),
        ({"Name": "n", "Description": "d", "Image": None}, ["image"]),
        ({"Name": "n"}, ["description", "image"]),
    ],
)
def test_normalize_row_rejects_missing_fields(row: dict[str, str], fields: list[str]):
    columns = resolve_columns(["Name", "Description", "Image"])

    with pytest.raises(InvalidRowError) as exc_info:
        normalize_row(4, row, columns)

    assert exc_info.value.index == 4
    assert exc_info.value.fields == fields


def test_normalize_rows_reports_every_bad_row():
    columns = resolve_columns(["Name", "Description", "Image"])
    rows = [
        {"Name": "Mug", "Description": "Ceramic mug", "Image": "x"},
        {"Name": "", "Description": "Soy candle", "Image": "y"},
        {"Name": "Wallet", "Description": "Leather", "Image": "z"},
        {"Name": "Scarf", "Description": "", "Image": ""},
    ]

    with pytest.raises(InvalidRowsError) as exc_info:
        normalize_rows(rows, columns)

    errors = exc_info.value.errors
    assert [(e.index, e.fields) for e in errors] == [
        (1, ["name"]),
        (3, ["description", "image"]),
    ]
    assert "Row 2 is missing required fields: name" in str(exc_info.value)
    assert "Row 4 is missing required fields: description, image" in str(
        exc_info.value
    )


def test_normalize_rows_keeps_order():
    columns = resolve_columns(["Name", "Description", "Image"])
    rows = [
        {"Name": name, "Description": "d", "Image": "i"}
        for name in ("A", "B", "C")
    ]

    chunks = normalize_rows(rows, columns)

    assert [chunk.text for chunk in chunks] == [
        "Name: A. Description: d.",
        "Name: B. Description: d.",
        "Name: C. Description: d.",
    ]
