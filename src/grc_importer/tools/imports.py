"""FastMCP tools for running compliance import sessions.

Registers the following tools on a ``FastMCP`` instance via ``register_tools()``:

- ``start_import``: open a bulk (strict) or rich (lenient) import session
- ``parse_import_file``: parse a base64-encoded CSV/Excel/JSON/Word file
- ``parse_import_url``: fetch and segment a web page
- ``parse_import_text``: segment pasted text or HTML
- ``get_import_preview``: phase, dry-run summary, errors and rows
- ``edit_candidate``: edit or exclude one candidate (rich sessions)
- ``link_requirement``: link a candidate/requirement to a control or risk
- ``list_frameworks``: list existing frameworks
- ``select_framework`` / ``create_framework``: choose the target framework
- ``commit_import``: commit the session
- ``cancel_import`` / ``reset_import`` / ``close_import``: session control
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Literal

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from mcp.types import ToolAnnotations

from grc_importer.client import get_client
from grc_importer.config import load_settings
from grc_importer.errors import UnsupportedFormat
from grc_importer.reconciler import FRAMEWORKS_TABLE
from grc_importer.session import (
    BulkImportSession,
    ImportSession,
    RichImportSession,
    registry,
)

logger = logging.getLogger(__name__)

Flow = Literal["bulk", "rich"]


def _decode(content_base64: str) -> bytes:
    try:
        return base64.b64decode(content_base64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise UnsupportedFormat(f"File content is not valid base64: {exc}") from exc


def _rich(session_id: str) -> RichImportSession:
    session = registry.get(session_id)
    if not isinstance(session, RichImportSession):
        raise ToolError("This operation is only available in rich import sessions")
    return session


def _state(session: ImportSession) -> dict[str, Any]:
    return {
        "session_id": session.id,
        "flow": "rich" if isinstance(session, RichImportSession) else "bulk",
        "mode": session.mode.value,
        "phase": session.phase.value,
        "message": session.message,
        "summary": session.summary().model_dump(),
        "errors": session.errors(),
    }


async def start_import(flow: Flow = "bulk") -> dict[str, Any]:
    """Open a new import session.

    Args:
        flow: ``bulk`` for the strict CSV/Excel/JSON importer (any invalid row
            blocks the commit) or ``rich`` for the lenient Excel/Word/URL/text
            importer with candidate editing and risk/control linking.

    Returns:
        Session state including ``session_id``.
    """
    settings = load_settings()
    client = await get_client()
    options = {
        "proxy_url": settings.reader_proxy_url,
        "fetch_timeout": settings.fetch_timeout,
        "min_paste_length": settings.min_paste_length,
    }
    if flow == "rich":
        session: ImportSession = RichImportSession(client, **options)
    elif flow == "bulk":
        session = BulkImportSession(client, **options)
    else:
        raise ToolError(f"flow must be 'bulk' or 'rich'; got '{flow}'")
    registry.configure(settings.session_ttl, settings.max_sessions)
    registry.add(session)
    logger.info("Started %s import session %s", flow, session.id)
    return _state(session)


async def parse_import_file(
    session_id: str,
    filename: str,
    content_base64: str,
    content_type: str | None = None,
) -> dict[str, Any]:
    """Parse an uploaded file into the session preview.

    Args:
        session_id: Session returned by ``start_import``.
        filename: Original file name; its extension selects the parser.
        content_base64: File content, base64-encoded.
        content_type: Optional MIME type.

    Returns:
        Session state after parsing.

    Raises:
        ToolError: If the file type is unsupported or the file cannot be parsed.
    """
    session = registry.get(session_id)
    data = _decode(content_base64)
    await session.parse_file(filename, data, content_type)  # type: ignore[attr-defined]
    return _state(session)


async def parse_import_url(session_id: str, url: str) -> dict[str, Any]:
    """Fetch a web page (reader proxy first, then direct) and segment it.

    Raises:
        ToolError: If every fetch strategy fails.
    """
    session = registry.get(session_id)
    await session.parse_url(url)  # type: ignore[attr-defined]
    return _state(session)


async def parse_import_text(
    session_id: str,
    text: str,
    framework_code: str | None = None,
    framework_name: str | None = None,
) -> dict[str, Any]:
    """Segment pasted text or HTML (at least 20 characters).

    Args:
        session_id: Session returned by ``start_import``.
        text: Pasted plain text or HTML.
        framework_code: Framework code for bulk sessions (generated if omitted).
        framework_name: Framework name for bulk sessions.
    """
    session = registry.get(session_id)
    if isinstance(session, BulkImportSession):
        await session.parse_text(text, framework_code, framework_name)
    else:
        await _rich(session_id).parse_text(text)
    return _state(session)


async def get_import_preview(session_id: str) -> dict[str, Any]:
    """Return the session phase, dry-run summary, errors and preview rows."""
    session = registry.get(session_id)
    state = _state(session)
    state["frameworks"] = [row.model_dump(mode="json") for row in session.framework_preview]
    state["requirements"] = [row.model_dump(mode="json") for row in session.requirement_preview]
    if isinstance(session, RichImportSession):
        state["framework_id"] = session.framework_id
        state["candidates"] = [c.model_dump(mode="json") for c in session.candidates]
    return state


async def edit_candidate(
    session_id: str,
    index: int,
    requirement_code: str | None = None,
    title: str | None = None,
    text: str | None = None,
    guidance: str | None = None,
    include: bool | None = None,
) -> dict[str, Any]:
    """Edit one candidate of a rich session; only the fields you pass change."""
    changes = {
        key: value
        for key, value in {
            "requirement_code": requirement_code,
            "title": title,
            "text": text,
            "guidance": guidance,
            "include": include,
        }.items()
        if value is not None
    }
    candidate = _rich(session_id).edit_candidate(index, **changes)
    return candidate.model_dump(mode="json")


async def link_requirement(
    session_id: str,
    kind: Literal["control", "risk"],
    entity_id: str | None = None,
    index: int | None = None,
    requirement_code: str | None = None,
) -> dict[str, Any]:
    """Link a candidate (rich, by ``index``) or requirement (bulk, by code).

    Pass no ``entity_id`` to clear the link. Mappings are created at commit.
    """
    session = registry.get(session_id)
    if isinstance(session, RichImportSession):
        if index is None:
            raise ToolError("index is required for rich sessions")
        session.link_candidate(index, kind, entity_id)
    elif isinstance(session, BulkImportSession):
        if not requirement_code:
            raise ToolError("requirement_code is required for bulk sessions")
        session.link(requirement_code, kind, entity_id)
    return _state(session)


async def list_frameworks() -> list[dict[str, Any]]:
    """List compliance frameworks (id, code, name), ordered by name."""
    client = await get_client()
    return await client.select(FRAMEWORKS_TABLE, columns="id,code,name", order="name.asc")


async def select_framework(session_id: str, framework_id: str) -> dict[str, Any]:
    """Choose the framework a rich session commits into."""
    session = _rich(session_id)
    session.select_framework(framework_id)
    return _state(session)


async def create_framework(
    session_id: str,
    code: str,
    name: str,
    version: str | None = None,
    authority: str | None = None,
    category: str | None = None,
    description: str | None = None,
) -> dict[str, Any]:
    """Create a framework (or update the one with this code) and select it."""
    session = _rich(session_id)
    framework_id = await session.create_framework(
        {
            "code": code,
            "name": name,
            "version": version,
            "authority": authority,
            "category": category,
            "description": description,
        }
    )
    return {"framework_id": framework_id, **_state(session)}


async def commit_import(session_id: str) -> dict[str, Any]:
    """Commit the session: frameworks, then requirements, then mappings.

    Bulk sessions abort on the first error; rich sessions report failures per row.

    Raises:
        ToolError: When the commit is blocked or (bulk) a row fails.
    """
    session = registry.get(session_id)
    result = await session.commit()
    return {**_state(session), "result": result.model_dump(mode="json"), "ok": result.ok}


async def cancel_import(session_id: str) -> dict[str, Any]:
    """Ask a running commit to stop before its next row."""
    session = registry.get(session_id)
    session.cancel()
    return _state(session)


async def reset_import(session_id: str) -> dict[str, Any]:
    """Return the session to ``idle``, discarding parsed rows."""
    session = registry.get(session_id)
    session.reset()
    return _state(session)


async def close_import(session_id: str) -> dict[str, bool]:
    """Forget a session."""
    registry.remove(session_id)
    return {"closed": True}


def register_tools(mcp: FastMCP) -> None:  # type: ignore[type-arg]
    """Register all import tools on the given FastMCP instance.

    Args:
        mcp: The FastMCP server instance to register tools on.
    """
    mcp.add_tool(start_import, name="start_import")
    mcp.add_tool(parse_import_file, name="parse_import_file")
    mcp.add_tool(parse_import_url, name="parse_import_url")
    mcp.add_tool(parse_import_text, name="parse_import_text")
    mcp.add_tool(
        get_import_preview,
        name="get_import_preview",
        annotations=ToolAnnotations(readOnlyHint=True),
    )
    mcp.add_tool(edit_candidate, name="edit_candidate")
    mcp.add_tool(link_requirement, name="link_requirement")
    mcp.add_tool(
        list_frameworks,
        name="list_frameworks",
        annotations=ToolAnnotations(readOnlyHint=True),
    )
    mcp.add_tool(select_framework, name="select_framework")
    mcp.add_tool(create_framework, name="create_framework")
    mcp.add_tool(commit_import, name="commit_import")
    mcp.add_tool(cancel_import, name="cancel_import")
    mcp.add_tool(reset_import, name="reset_import")
    mcp.add_tool(close_import, name="close_import")
