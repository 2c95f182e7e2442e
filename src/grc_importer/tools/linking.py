"""FastMCP tools for finding and creating the risks/controls requirements link to.

Registers the following tools on a ``FastMCP`` instance via ``register_tools()``:

- ``search_risks``: risks whose title contains a query
- ``search_controls``: controls whose title contains a query
- ``list_control_sets``: control sets a new control can be created in
- ``list_linkable_risks``: latest risks with business unit and owner names
- ``create_risk``: create a minimal risk, optionally attaching it in a session
- ``create_control``: create a minimal control, optionally attaching it
"""

from __future__ import annotations

import logging
from typing import Any

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from mcp.types import ToolAnnotations

from grc_importer import linking
from grc_importer.client import get_client
from grc_importer.config import load_settings
from grc_importer.enrichment import load_linkable_risks
from grc_importer.session import RichImportSession, registry

logger = logging.getLogger(__name__)


def _session(session_id: str) -> RichImportSession:
    session = registry.get(session_id)
    if not isinstance(session, RichImportSession):
        raise ToolError("Inline creation is only available in rich import sessions")
    return session


async def search_risks(query: str) -> list[dict[str, str]]:
    """Search risks by title (case-insensitive, at least 2 characters).

    Returns:
        Up to 20 ``{id, label}`` entries.
    """
    client = await get_client()
    return await linking.search_risks(client, query, limit=load_settings().search_limit)


async def search_controls(query: str) -> list[dict[str, str]]:
    """Search non-deleted controls by title (case-insensitive, at least 2 characters).

    Returns:
        Up to 20 ``{id, label}`` entries; labels read ``CODE · Title``.
    """
    client = await get_client()
    return await linking.search_controls(client, query, limit=load_settings().search_limit)


async def list_control_sets() -> list[dict[str, str]]:
    """List control sets, newest first."""
    client = await get_client()
    return await linking.list_control_sets(client)


async def list_linkable_risks(limit: int = 50) -> list[dict[str, Any]]:
    """List recent risks with business unit and owner names resolved.

    Args:
        limit: Maximum number of risks (1 to 200). Defaults to 50.
    """
    if not 1 <= limit <= 200:
        raise ToolError("limit must be between 1 and 200")
    client = await get_client()
    return await load_linkable_risks(client, limit=limit)


async def create_risk(title: str, session_id: str | None = None) -> dict[str, Any]:
    """Create a minimal risk (category General, level medium, status identified).

    Args:
        title: Risk title. Must not be empty.
        session_id: If given, the new risk is linked to the first included
            candidate of that rich session that has no risk yet.

    Returns:
        ``{"risk_id": ..., "attached_index": ...}``.
    """
    if session_id:
        risk_id, index = await _session(session_id).create_and_attach_risk(title)
        return {"risk_id": risk_id, "attached_index": index}
    client = await get_client()
    return {"risk_id": await linking.create_risk(client, title), "attached_index": None}


async def create_control(
    control_set_id: str,
    code: str,
    title: str,
    description: str = "",
    session_id: str | None = None,
) -> dict[str, Any]:
    """Create a minimal control with placeholder type/frequency/process area.

    Args:
        control_set_id: Control set to create the control in.
        code: Control code.
        title: Control title.
        description: Optional description.
        session_id: If given, the new control is linked to the first included
            candidate of that rich session that has no control yet.
    """
    if session_id:
        control_id, index = await _session(session_id).create_and_attach_control(
            control_set_id, code, title, description
        )
        return {"control_id": control_id, "attached_index": index}
    client = await get_client()
    control_id = await linking.create_control(client, control_set_id, code, title, description)
    return {"control_id": control_id, "attached_index": None}


def register_tools(mcp: FastMCP) -> None:  # type: ignore[type-arg]
    """Register all linking tools on the given FastMCP instance."""
    mcp.add_tool(
        search_risks,
        name="search_risks",
        annotations=ToolAnnotations(readOnlyHint=True),
    )
    mcp.add_tool(
        search_controls,
        name="search_controls",
        annotations=ToolAnnotations(readOnlyHint=True),
    )
    mcp.add_tool(
        list_control_sets,
        name="list_control_sets",
        annotations=ToolAnnotations(readOnlyHint=True),
    )
    mcp.add_tool(
        list_linkable_risks,
        name="list_linkable_risks",
        annotations=ToolAnnotations(readOnlyHint=True),
    )
    mcp.add_tool(create_risk, name="create_risk")
    mcp.add_tool(create_control, name="create_control")
