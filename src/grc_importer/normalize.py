"""Normalizer: turn reader output into canonical rows or a plain-text block."""

from __future__ import annotations

import logging
import re
from typing import Any

from bs4 import BeautifulSoup, NavigableString

from grc_importer.models import FetchedContent, RequirementCandidate

logger = logging.getLogger(__name__)

# Header aliases, matched case-sensitively, first present non-empty value wins
REQUIREMENT_CODE_ALIASES = ("requirement_code", "code", "req_code", "requirement", "RequirementCode")
TITLE_ALIASES = ("title", "Title")
TEXT_ALIASES = ("text", "requirement_text", "RequirementText")
SECTION_CODE_ALIASES = ("section_code", "sectionCode", "section")
GUIDANCE_ALIASES = ("guidance", "Guidance")
PRIORITY_ALIASES = ("priority", "Priority")
FRAMEWORK_CODE_ALIASES = ("framework_code", "frameworkCode", "framework", "Framework")
IS_ACTIVE_ALIASES = ("is_active", "active", "enabled", "IsActive", "Is Active")

FRAMEWORK_COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "code": FRAMEWORK_CODE_ALIASES,
    "name": ("framework_name", "frameworkName", "FrameworkName"),
    "version": ("framework_version", "version", "Version"),
    "authority": ("framework_authority", "authority"),
    "category": ("framework_category", "category"),
    "description": ("framework_description", "description"),
}

BLOCK_TAGS = ("p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "li", "article", "section")

_INLINE_SPACE_RE = re.compile(r"[\t ]+")
_ANY_SPACE_RE = re.compile(r"\s+")


def pick(row: dict[str, Any], aliases: tuple[str, ...]) -> Any:
    """Return the first alias value that is present and not blank."""
    for key in aliases:
        value = row.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def resolve_row_aliases(row: dict[str, Any], default_framework_code: str | None = None) -> dict[str, Any]:
    """Map one tabular row onto the canonical requirement keys."""
    return {
        "framework_code": pick(row, FRAMEWORK_CODE_ALIASES) or default_framework_code,
        "section_code": pick(row, SECTION_CODE_ALIASES),
        "requirement_code": pick(row, REQUIREMENT_CODE_ALIASES),
        "title": pick(row, TITLE_ALIASES),
        "text": pick(row, TEXT_ALIASES),
        "guidance": pick(row, GUIDANCE_ALIASES),
        "priority": pick(row, PRIORITY_ALIASES),
        "is_active": pick(row, IS_ACTIVE_ALIASES),
    }


def detect_framework_columns(first_row: dict[str, Any] | None) -> dict[str, Any] | None:
    """Build a framework candidate from framework columns of the first row.

    Returns ``None`` unless both a code and a name are present.
    """
    if not first_row:
        return None
    candidate = {field: pick(first_row, aliases) for field, aliases in FRAMEWORK_COLUMN_ALIASES.items()}
    if not candidate["code"] or not candidate["name"]:
        return None
    return candidate


def rows_to_candidates(rows: list[dict[str, Any]]) -> list[RequirementCandidate]:
    """Turn spreadsheet rows into editable candidates.

    Rows with neither title nor text are skipped. Missing codes are numbered
    ``REQ-001``, ``REQ-002``...; a missing title falls back to the first 120
    characters of the text.
    """
    candidates: list[RequirementCandidate] = []
    for row in rows:
        canonical = resolve_row_aliases(row)
        title = str(canonical["title"] or "").strip()
        text = str(canonical["text"] or "").strip()
        if not title and not text:
            continue
        code = str(canonical["requirement_code"] or "").strip()
        guidance = canonical["guidance"]
        candidates.append(
            RequirementCandidate(
                requirement_code=code or f"REQ-{len(candidates) + 1:03d}",
                title=title or text[:120],
                text=text,
                guidance=str(guidance) if guidance is not None else None,
                framework_code=canonical["framework_code"],
            )
        )
    return candidates


def clean_text(text: str) -> str:
    """Collapse runs of spaces and tabs; keep newlines as boundaries."""
    return _INLINE_SPACE_RE.sub(" ", text.replace("\u00a0", " "))


def html_to_text(html: str) -> tuple[str, str]:
    """Flatten HTML into newline-separated block text.

    Source whitespace inside text nodes collapses to single spaces; each
    block-level element (and ``<br>``) starts a new line, so every visible
    character appears once, in document order.

    Returns:
        ``(text, document_title)``.
    """
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""
    for hidden in soup(["head", "title", "script", "style", "noscript", "template"]):
        hidden.decompose()
    root = soup.body or soup

    for node in root.find_all(string=True):
        if type(node) is NavigableString:
            node.replace_with(_ANY_SPACE_RE.sub(" ", str(node)))
    for element in root.find_all(BLOCK_TAGS):
        element.insert_before("\n")
        element.insert_after("\n")
    for br in root.find_all("br"):
        br.replace_with("\n")

    lines = (line.strip() for line in root.get_text().splitlines())
    return "\n".join(line for line in lines if line), title


def canonical_text(content: FetchedContent) -> str:
    """Return the cleaned plain text for fetched or pasted content.

    Plain text wins when present; otherwise the HTML is flattened.
    """
    text = content.text
    if not text and content.html:
        text, _ = html_to_text(content.html)
    return clean_text(text or "")
