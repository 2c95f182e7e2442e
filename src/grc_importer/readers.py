"""Source readers: obtain raw rows or text for one input mode.

Readers are leaves of the pipeline. File readers take raw bytes and return
either row mappings (csv, json, spreadsheet) or a text block (docx). URL and
paste readers return ``FetchedContent`` for the normalizer.
"""

from __future__ import annotations

import asyncio
import csv
import importlib
import io
import json
import logging
import re
import zipfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, time
from types import ModuleType
from typing import Any

import httpx
import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from grc_importer.errors import (
    FetchFailed,
    InputTooShort,
    LibraryLoadFailed,
    NoFileSelected,
    UnsupportedFormat,
)
from grc_importer.models import FetchedContent, SourceFormat

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    ".csv": SourceFormat.CSV,
    ".json": SourceFormat.JSON,
    ".xlsx": SourceFormat.EXCEL,
    ".xls": SourceFormat.EXCEL,
    ".docx": SourceFormat.DOCX,
}

_MIME_TYPES = {
    "text/csv": SourceFormat.CSV,
    "application/csv": SourceFormat.CSV,
    "application/json": SourceFormat.JSON,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": SourceFormat.EXCEL,
    "application/vnd.ms-excel": SourceFormat.EXCEL,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": SourceFormat.DOCX,
}

# OLE2 compound document header (legacy .xls / .doc)
_OLE2_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

_HTML_TAG_RE = re.compile(r"<\w+[^>]*>")
_TITLE_RE = re.compile(r"<title[^>]*>([\s\S]*?)</title>", re.IGNORECASE)
_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)

MIN_URL_LENGTH = 8
TITLE_GUESS_LENGTH = 120

# 0, 0.00, #,##0.00, 0%, 0.0% and the like
_NUMBER_FORMAT_RE = re.compile(r"^(?P<grouping>#,##)?0(?:\.(?P<decimals>0+))?(?P<percent>%)?$")


def detect_format(filename: str | None, content_type: str | None = None) -> SourceFormat:
    """Pick the input mode for a selected file by extension, then MIME type.

    Args:
        filename: Name of the selected file.
        content_type: Optional MIME type reported for the file.

    Returns:
        The matching ``SourceFormat``.

    Raises:
        NoFileSelected: If no filename was given.
        UnsupportedFormat: If neither extension nor MIME type is accepted.
    """
    if not filename or not filename.strip():
        raise NoFileSelected("Please select a file to import.")
    name = filename.strip().lower()
    for extension, source_format in _EXTENSIONS.items():
        if name.endswith(extension):
            return source_format
    mime = (content_type or "").split(";")[0].strip().lower()
    if mime in _MIME_TYPES:
        return _MIME_TYPES[mime]
    raise UnsupportedFormat(
        f"Unsupported file '{filename}'. Accepted formats: .csv, .json, .xlsx, .xls, .docx"
    )


def _require_data(data: bytes | None, label: str) -> bytes:
    if not data:
        raise NoFileSelected(f"Please select a {label} file to import.")
    return data


def read_csv(data: bytes) -> list[dict[str, str]]:
    """Parse a delimited file into header-keyed rows.

    The header row defines the keys; blank lines and rows whose cells are all
    empty are skipped.
    """
    data = _require_data(data, "CSV")
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise UnsupportedFormat(f"CSV file is not valid UTF-8: {exc}") from exc

    rows: list[dict[str, str]] = []
    reader = csv.DictReader(io.StringIO(text), skipinitialspace=False)
    for raw in reader:
        row = {key: (value or "") for key, value in raw.items() if key is not None}
        if any(value.strip() for value in row.values()):
            rows.append(row)
    return rows


def read_json(data: bytes) -> list[dict[str, Any]]:
    """Parse a JSON import file into a list of import items.

    Accepts either a single object or an array of objects.
    """
    data = _require_data(data, "JSON")
    try:
        payload = json.loads(data.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise UnsupportedFormat(f"Invalid JSON: {exc}") from exc
    items = payload if isinstance(payload, list) else [payload]
    if not all(isinstance(item, dict) for item in items):
        raise UnsupportedFormat("JSON import must be an object or an array of objects")
    return items


def _display(value: Any, number_format: str | None = None) -> str:
    """Render a cell value the way a spreadsheet displays it.

    Percentage, fixed-decimal and thousands-separator number formats are
    applied; dates always render as ISO strings.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)) and number_format:
        match = _NUMBER_FORMAT_RE.match(number_format)
        if match:
            return _apply_number_format(value, match)
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _apply_number_format(value: float, match: re.Match[str]) -> str:
    decimals = len(match["decimals"] or "")
    if match["percent"]:
        value *= 100
    rendered = f"{value:,.{decimals}f}" if match["grouping"] else f"{value:.{decimals}f}"
    return f"{rendered}%" if match["percent"] else rendered


def pick_sheet_name(sheet_names: list[str], keyword: str = "require") -> str | None:
    """Return the first sheet whose name contains ``keyword``, else the first sheet."""
    for name in sheet_names:
        if keyword in name.lower():
            return name
    return sheet_names[0] if sheet_names else None


def read_spreadsheet(data: bytes) -> list[dict[str, str]]:
    """Read the requirements sheet of a workbook into header-keyed rows.

    Cells are rendered as display strings; empty cells become ``""``.

    Raises:
        NoFileSelected: If ``data`` is empty.
        UnsupportedFormat: For legacy ``.xls`` files or unreadable workbooks.
    """
    data = _require_data(data, "spreadsheet")
    if data.startswith(_OLE2_MAGIC):
        raise UnsupportedFormat("Legacy .xls workbooks are not supported; save the file as .xlsx")
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise UnsupportedFormat(f"Unreadable workbook: {exc}") from exc

    try:
        sheet_name = pick_sheet_name(workbook.sheetnames)
        if sheet_name is None:
            return []
        sheet = workbook[sheet_name]
        logger.debug("Reading sheet %r", sheet_name)

        sheet_rows = sheet.iter_rows()
        header_row = next(sheet_rows, None)
        if header_row is None:
            return []
        headers = [
            _display(cell.value).strip() or f"column_{index + 1}" for index, cell in enumerate(header_row)
        ]

        rows: list[dict[str, str]] = []
        for cells in sheet_rows:
            row = {header: "" for header in headers}
            for header, cell in zip(headers, cells):
                row[header] = _display(cell.value, getattr(cell, "number_format", None))
            if any(value.strip() for value in row.values()):
                rows.append(row)
        return rows
    finally:
        workbook.close()


class LibraryLoader:
    """Load an optional parsing library once, on first use.

    Lifecycle: ``unloaded -> loading -> loaded | failed``. A failed load stays
    failed until ``reset()``.
    """

    def __init__(self, module_name: str) -> None:
        self.module_name = module_name
        self.state = "unloaded"
        self._module: ModuleType | None = None
        self._error: str | None = None
        self._lock = asyncio.Lock()

    async def load(self) -> ModuleType:
        """Return the loaded module, importing it on first call.

        Raises:
            LibraryLoadFailed: If the import fails (now or previously).
        """
        async with self._lock:
            if self.state == "loaded" and self._module is not None:
                return self._module
            if self.state == "failed":
                raise LibraryLoadFailed(f"Failed to load {self.module_name}: {self._error}")
            self.state = "loading"
            try:
                self._module = await asyncio.to_thread(importlib.import_module, self.module_name)
            except ImportError as exc:
                self.state = "failed"
                self._error = str(exc)
                logger.warning("Could not load %s: %s", self.module_name, exc)
                raise LibraryLoadFailed(f"Failed to load {self.module_name}: {exc}") from exc
            self.state = "loaded"
            return self._module

    def reset(self) -> None:
        self.state = "unloaded"
        self._module = None
        self._error = None


docx_loader = LibraryLoader("docx")


async def read_docx(data: bytes) -> str:
    """Extract the raw text of a ``.docx`` document.

    Paragraphs, including those inside table cells, are joined with newlines
    in body order; non-breaking spaces become regular spaces and the result
    is trimmed.

    Raises:
        NoFileSelected: If ``data`` is empty.
        LibraryLoadFailed: If python-docx cannot be imported.
        UnsupportedFormat: If the bytes are not a Word document.
    """
    data = _require_data(data, "Word (.docx)")
    docx = await docx_loader.load()
    try:
        document = docx.Document(io.BytesIO(data))
    except Exception as exc:
        raise UnsupportedFormat(f"Unreadable Word document: {exc}") from exc
    text = "\n".join(_docx_lines(document))
    return text.replace("\u00a0", " ").strip()


def _docx_lines(container: Any) -> list[str]:
    """Paragraph texts of a document or table cell, tables included, in body order."""
    lines: list[str] = []
    for block in container.iter_inner_content():
        if hasattr(block, "rows"):
            for row in block.rows:
                seen: set[int] = set()
                for cell in row.cells:
                    # merged cells repeat across the row
                    if id(cell._tc) in seen:
                        continue
                    seen.add(id(cell._tc))
                    lines.extend(_docx_lines(cell))
        else:
            lines.append(block.text)
    return lines


def normalize_url(url: str | None) -> str:
    """Trim a user-supplied URL and make sure it carries a scheme.

    Raises:
        InputTooShort: If the URL is missing or shorter than 8 characters.
    """
    candidate = (url or "").strip()
    if len(candidate) < MIN_URL_LENGTH:
        raise InputTooShort("Please enter a valid URL.")
    if not _SCHEME_RE.match(candidate):
        candidate = f"https://{candidate}"
    return candidate


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()[:TITLE_GUESS_LENGTH]
    return ""


@dataclass(frozen=True)
class FetchOutcome:
    """Result of one fetch strategy: content on success, error otherwise."""

    content: FetchedContent | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.content is not None


FetchStrategy = Callable[[httpx.AsyncClient, str], Awaitable[FetchOutcome]]


def reader_proxy_strategy(proxy_url: str) -> FetchStrategy:
    """Build the strategy that asks the reader proxy for the page's text."""

    async def fetch(http: httpx.AsyncClient, url: str) -> FetchOutcome:
        target = f"{proxy_url.rstrip('/')}/http://{_SCHEME_RE.sub('', url)}"
        try:
            response = await http.get(target)
        except httpx.HTTPError as exc:
            return FetchOutcome(error=f"{type(exc).__name__}: {exc}")
        if response.is_error:
            return FetchOutcome(error=f"HTTP {response.status_code}")
        text = response.text
        return FetchOutcome(
            content=FetchedContent(text=text, title_guess=_first_line(text), strategy="reader_proxy")
        )

    return fetch


async def direct_strategy(http: httpx.AsyncClient, url: str) -> FetchOutcome:
    """Fetch the raw HTML of the page itself."""
    try:
        response = await http.get(url)
    except httpx.HTTPError as exc:
        return FetchOutcome(error=f"{type(exc).__name__}: {exc}")
    if response.is_error:
        return FetchOutcome(error=f"HTTP {response.status_code}")
    html = response.text
    match = _TITLE_RE.search(html)
    title = match.group(1).strip() if match else ""
    return FetchOutcome(content=FetchedContent(html=html, title_guess=title, strategy="direct"))


def default_strategies(proxy_url: str) -> list[tuple[str, FetchStrategy]]:
    """Strategies in the order they are attempted."""
    return [
        ("reader_proxy", reader_proxy_strategy(proxy_url)),
        ("direct", direct_strategy),
    ]


async def fetch_url(
    url: str,
    *,
    proxy_url: str = "https://r.jina.ai/",
    timeout: float = 15.0,
    strategies: list[tuple[str, FetchStrategy]] | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FetchedContent:
    """Fetch a page, trying each strategy in order until one succeeds.

    Args:
        url: User-supplied URL; a missing scheme is filled in with ``https://``.
        proxy_url: Prefix of the reader proxy service.
        timeout: Per-request timeout in seconds.
        strategies: Override of the ordered ``(name, strategy)`` list.
        http_client: Optional pre-built httpx client (used in tests).

    Returns:
        The first successfully fetched content.

    Raises:
        InputTooShort: If the URL is too short to be valid.
        FetchFailed: If every strategy failed; lists each strategy's error.
    """
    target = normalize_url(url)
    chain = strategies if strategies is not None else default_strategies(proxy_url)
    http = http_client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    attempts: list[tuple[str, str]] = []
    try:
        for name, strategy in chain:
            outcome = await strategy(http, target)
            if outcome.ok and outcome.content is not None:
                logger.info("Fetched %s via %s", target, name)
                return outcome.content
            logger.warning("Fetch strategy %s failed for %s: %s", name, target, outcome.error)
            attempts.append((name, outcome.error or "unknown error"))
    finally:
        if http_client is None:
            await http.aclose()
    raise FetchFailed(target, attempts)


def is_html(text: str) -> bool:
    """True when the text contains something that looks like an HTML tag."""
    return bool(_HTML_TAG_RE.search(text))


def read_paste(text: str | None, min_length: int = 20) -> FetchedContent:
    """Accept pasted text or HTML, auto-detected by the presence of a tag.

    Raises:
        InputTooShort: If fewer than ``min_length`` characters were pasted.
    """
    pasted = text or ""
    if len(pasted.strip()) < min_length:
        raise InputTooShort(f"Please paste at least {min_length} characters of text/HTML.")
    if is_html(pasted):
        return FetchedContent(html=pasted, strategy="paste")
    return FetchedContent(text=pasted, strategy="paste")
