"""Unit tests for the source readers.

Workbooks and Word documents are built in memory; URL fetches are mocked with
respx.
"""

import io
from datetime import datetime

import httpx
import pytest
import respx


def make_workbook(sheets):
    """Helper: build .xlsx bytes from ``{sheet_name: [row, ...]}``."""
    import openpyxl

    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)
    for name, rows in sheets.items():
        sheet = workbook.create_sheet(name)
        for row in rows:
            sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def make_docx(paragraphs):
    """Helper: build .docx bytes from a list of paragraph strings."""
    import docx

    document = docx.Document()
    for text in paragraphs:
        document.add_paragraph(text)
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


# --- detect_format ---


@pytest.mark.parametrize(
    ("filename", "expected"),
    [
        ("reqs.csv", "csv"),
        ("IMPORT.JSON", "json"),
        ("book.xlsx", "excel"),
        ("old.xls", "excel"),
        ("law.docx", "docx"),
    ],
)
def test_detect_format_by_extension(filename, expected):
    """detect_format should map accepted extensions case-insensitively."""
    from grc_importer.readers import detect_format

    assert detect_format(filename) == expected


def test_detect_format_falls_back_to_mime_type():
    """detect_format should use the MIME type when the extension is unknown."""
    from grc_importer.readers import detect_format

    assert detect_format("upload", "text/csv; charset=utf-8") == "csv"


def test_detect_format_rejects_other_files():
    """detect_format should reject a PDF with UnsupportedFormat."""
    from grc_importer.errors import UnsupportedFormat
    from grc_importer.readers import detect_format

    with pytest.raises(UnsupportedFormat, match="Accepted formats"):
        detect_format("policy.pdf", "application/pdf")


def test_detect_format_without_file_raises():
    """detect_format should raise NoFileSelected for a missing filename."""
    from grc_importer.errors import NoFileSelected
    from grc_importer.readers import detect_format

    with pytest.raises(NoFileSelected):
        detect_format("")


# --- read_csv / read_json ---


def test_read_csv_skips_blank_rows_and_bom():
    """read_csv should key rows by header, drop a BOM and skip blank rows."""
    from grc_importer.readers import read_csv

    data = "\ufeffcode,title,text\nR1,Access,Users log in.\n\n,,\nR2,Backup,Daily.\n".encode()

    rows = read_csv(data)

    assert rows == [
        {"code": "R1", "title": "Access", "text": "Users log in."},
        {"code": "R2", "title": "Backup", "text": "Daily."},
    ]


def test_read_csv_empty_raises_no_file():
    """read_csv should treat empty content as no file selected."""
    from grc_importer.errors import NoFileSelected
    from grc_importer.readers import read_csv

    with pytest.raises(NoFileSelected):
        read_csv(b"")


def test_read_json_accepts_object_or_array():
    """read_json should wrap a single object into a list."""
    from grc_importer.readers import read_json

    assert read_json(b'{"framework": {"code": "A"}}') == [{"framework": {"code": "A"}}]
    assert len(read_json(b'[{"a": 1}, {"b": 2}]')) == 2


def test_read_json_invalid_raises():
    """read_json should reject malformed JSON and non-object items."""
    from grc_importer.errors import UnsupportedFormat
    from grc_importer.readers import read_json

    with pytest.raises(UnsupportedFormat):
        read_json(b"{not json")
    with pytest.raises(UnsupportedFormat):
        read_json(b"[1, 2]")


# --- read_spreadsheet ---


def test_read_spreadsheet_prefers_requirements_sheet():
    """read_spreadsheet should pick the sheet whose name contains 'require'."""
    from grc_importer.readers import read_spreadsheet

    data = make_workbook(
        {
            "Cover": [["ignored"], ["nothing here"]],
            "Requirements": [["code", "title", "text"], ["R1", "Access", "Users log in."]],
        }
    )

    assert read_spreadsheet(data) == [{"code": "R1", "title": "Access", "text": "Users log in."}]


def test_read_spreadsheet_renders_display_strings():
    """Numbers and dates should come back as display strings, not native types."""
    from grc_importer.readers import read_spreadsheet

    data = make_workbook(
        {"Sheet": [["code", "due", None], [7, datetime(2024, 3, 1), 2.5]]}
    )

    rows = read_spreadsheet(data)

    assert rows == [{"code": "7", "due": "2024-03-01", "column_3": "2.5"}]


def test_read_spreadsheet_applies_number_formats():
    """Percentage and fixed-decimal formats should shape the display string."""
    import openpyxl

    from grc_importer.readers import read_spreadsheet

    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.append(["code", "weight", "budget", "count"])
    sheet.append(["R1", 0.25, 1234.5, 3])
    sheet["B2"].number_format = "0%"
    sheet["C2"].number_format = "#,##0.00"
    sheet["D2"].number_format = "0.0"
    buffer = io.BytesIO()
    workbook.save(buffer)

    rows = read_spreadsheet(buffer.getvalue())

    assert rows == [{"code": "R1", "weight": "25%", "budget": "1,234.50", "count": "3.0"}]


def test_pick_sheet_name_falls_back_to_first():
    """pick_sheet_name should return the first sheet without a match."""
    from grc_importer.readers import pick_sheet_name

    assert pick_sheet_name(["Data", "Other"]) == "Data"
    assert pick_sheet_name(["Data", "REQUIREMENT list"]) == "REQUIREMENT list"
    assert pick_sheet_name([]) is None


def test_read_spreadsheet_rejects_legacy_xls():
    """Legacy OLE2 workbooks should be rejected with UnsupportedFormat."""
    from grc_importer.errors import UnsupportedFormat
    from grc_importer.readers import read_spreadsheet

    with pytest.raises(UnsupportedFormat, match="xlsx"):
        read_spreadsheet(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 64)


def test_read_spreadsheet_rejects_garbage():
    """Bytes that are not a workbook should raise UnsupportedFormat."""
    from grc_importer.errors import UnsupportedFormat
    from grc_importer.readers import read_spreadsheet

    with pytest.raises(UnsupportedFormat):
        read_spreadsheet(b"definitely not a zip file")


# --- read_docx / LibraryLoader ---


async def test_read_docx_extracts_paragraphs():
    """read_docx should join paragraphs and replace non-breaking spaces."""
    from grc_importer.readers import read_docx

    text = await read_docx(make_docx(["MADDE 1 – Amaç.", "MADDE 2 – Kapsam."]))

    assert text == "MADDE 1 – Amaç.\nMADDE 2 – Kapsam."


async def test_read_docx_includes_table_text_in_body_order():
    """Articles held in table cells should be read between the surrounding paragraphs."""
    import docx

    from grc_importer.readers import read_docx

    document = docx.Document()
    document.add_paragraph("MADDE 1 – Amaç bu kanundur.")
    table = document.add_table(rows=1, cols=2)
    table.cell(0, 0).text = "MADDE 2 – Kapsam budur."
    table.cell(0, 1).text = "Not"
    document.add_paragraph("MADDE 3 – Tanımlar.")
    buffer = io.BytesIO()
    document.save(buffer)

    text = await read_docx(buffer.getvalue())

    assert text.splitlines() == [
        "MADDE 1 – Amaç bu kanundur.",
        "MADDE 2 – Kapsam budur.",
        "Not",
        "MADDE 3 – Tanımlar.",
    ]


async def test_library_loader_lifecycle():
    """LibraryLoader should move from unloaded to loaded and cache the module."""
    from grc_importer.readers import LibraryLoader

    loader = LibraryLoader("json")
    assert loader.state == "unloaded"

    first = await loader.load()
    second = await loader.load()

    assert loader.state == "loaded"
    assert first is second


async def test_library_loader_failure_is_sticky():
    """A failed import should raise LibraryLoadFailed until reset()."""
    from grc_importer.errors import LibraryLoadFailed
    from grc_importer.readers import LibraryLoader

    loader = LibraryLoader("grc_importer_no_such_module")

    with pytest.raises(LibraryLoadFailed):
        await loader.load()
    assert loader.state == "failed"
    with pytest.raises(LibraryLoadFailed):
        await loader.load()

    loader.reset()
    assert loader.state == "unloaded"


# --- URL and paste ---


def test_normalize_url_adds_scheme():
    """normalize_url should prepend https:// when no scheme is present."""
    from grc_importer.readers import normalize_url

    assert normalize_url("  example.com/law  ") == "https://example.com/law"
    assert normalize_url("http://example.com") == "http://example.com"


def test_normalize_url_too_short_raises():
    """URLs under 8 characters should raise InputTooShort."""
    from grc_importer.errors import InputTooShort
    from grc_importer.readers import normalize_url

    with pytest.raises(InputTooShort):
        normalize_url("a.io")


@respx.mock
async def test_fetch_url_uses_reader_proxy_first():
    """fetch_url should return the proxy's text and guess the title from line one."""
    from grc_importer.readers import fetch_url

    respx.get("https://reader.test/http://example.com/law").mock(
        return_value=httpx.Response(200, text="\nData Protection Law\nMADDE 1 – Amaç.")
    )

    content = await fetch_url("example.com/law", proxy_url="https://reader.test/", http_client=httpx.AsyncClient())

    assert content.strategy == "reader_proxy"
    assert content.title_guess == "Data Protection Law"
    assert "MADDE 1" in content.text


@respx.mock
async def test_fetch_url_falls_back_to_direct():
    """fetch_url should fetch the page itself when the proxy fails."""
    from grc_importer.readers import fetch_url

    respx.get("https://reader.test/http://example.com/law").mock(return_value=httpx.Response(503))
    respx.get("https://example.com/law").mock(
        return_value=httpx.Response(200, text="<html><title> Kanun </title><p>MADDE 1 – Amaç.</p></html>")
    )

    content = await fetch_url("https://example.com/law", proxy_url="https://reader.test/", http_client=httpx.AsyncClient())

    assert content.strategy == "direct"
    assert content.title_guess == "Kanun"
    assert content.html.startswith("<html>")


@respx.mock
async def test_fetch_url_all_strategies_fail():
    """FetchFailed should list the error of every attempted strategy."""
    from grc_importer.errors import FetchFailed
    from grc_importer.readers import fetch_url

    respx.get("https://reader.test/http://example.com/law").mock(return_value=httpx.Response(500))
    respx.get("https://example.com/law").mock(side_effect=httpx.ConnectError("refused"))

    with pytest.raises(FetchFailed) as exc_info:
        await fetch_url("example.com/law", proxy_url="https://reader.test/", http_client=httpx.AsyncClient())

    names = [name for name, _ in exc_info.value.attempts]
    assert names == ["reader_proxy", "direct"]
    assert "HTTP 500" in str(exc_info.value)
    assert "refused" in str(exc_info.value)


def test_read_paste_detects_html():
    """read_paste should route HTML to .html and plain text to .text."""
    from grc_importer.readers import read_paste

    html = read_paste("<p>MADDE 1 – Amaç bu kanundur.</p>")
    text = read_paste("MADDE 1 – Amaç bu kanundur.")

    assert html.html is not None and html.text is None
    assert text.text is not None and text.html is None


def test_read_paste_too_short_raises():
    """Pastes shorter than the minimum should raise InputTooShort."""
    from grc_importer.errors import InputTooShort
    from grc_importer.readers import read_paste

    with pytest.raises(InputTooShort, match="20"):
        read_paste("   too short   ")
