"""Search and create the risks/controls that candidates link to.

The importer only reads existing risks and controls, or inserts new minimal
ones; it never modifies rows owned by the risk and control registers.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from grc_importer.client import StoreClient
from grc_importer.errors import ImporterError
from grc_importer.models import RequirementCandidate

logger = logging.getLogger(__name__)

RISKS_TABLE = "risks"
CONTROLS_TABLE = "controls"
CONTROL_SETS_TABLE = "control_sets"

MIN_QUERY_LENGTH = 2
DEFAULT_LIMIT = 20

RISK_DEFAULTS: dict[str, Any] = {
    "category": "General",
    "risk_level": "medium",
    "status": "identified",
}

CONTROL_DEFAULTS: dict[str, Any] = {
    "control_type": "preventive",
    "frequency": "annually",
    "process_area": "General",
    "testing_procedure": "TBD",
    "evidence_requirements": "TBD",
    "is_automated": False,
}

LinkKind = Literal["control", "risk"]


def _escape_pattern(query: str) -> str:
    # "*" is the PostgREST wildcard and "," separates filter values
    return query.replace("*", "").replace(",", " ").strip()


async def search_risks(
    client: StoreClient, query: str, limit: int = DEFAULT_LIMIT
) -> list[dict[str, str]]:
    """Find risks whose title contains ``query`` (case-insensitive).

    Queries shorter than two characters return nothing. Store failures are
    logged and yield an empty list.

    Returns:
        ``[{"id": ..., "label": <title>}, ...]``, at most ``limit`` entries.
    """
    needle = _escape_pattern(query or "")
    if len(needle) < MIN_QUERY_LENGTH:
        return []
    try:
        rows = await client.select(
            RISKS_TABLE, columns="id,title", ilike={"title": f"*{needle}*"}, limit=limit
        )
    except ImporterError as exc:
        logger.warning("Risk search for %r failed: %s", needle, exc)
        return []
    return [{"id": str(row["id"]), "label": str(row.get("title") or "")} for row in rows]


async def search_controls(
    client: StoreClient, query: str, limit: int = DEFAULT_LIMIT
) -> list[dict[str, str]]:
    """Find non-deleted controls whose title contains ``query``.

    Labels read ``"<control_code> · <title>"`` when the control has a code.
    """
    needle = _escape_pattern(query or "")
    if len(needle) < MIN_QUERY_LENGTH:
        return []
    try:
        rows = await client.select(
            CONTROLS_TABLE,
            columns="id,title,control_code",
            filters={"is_deleted": False},
            ilike={"title": f"*{needle}*"},
            limit=limit,
        )
    except ImporterError as exc:
        logger.warning("Control search for %r failed: %s", needle, exc)
        return []
    results = []
    for row in rows:
        code = row.get("control_code")
        title = str(row.get("title") or "")
        label = f"{code} · {title}" if code else title
        results.append({"id": str(row["id"]), "label": label})
    return results


async def list_control_sets(client: StoreClient) -> list[dict[str, str]]:
    """Non-deleted control sets, newest first."""
    rows = await client.select(
        CONTROL_SETS_TABLE,
        columns="id,name",
        filters={"is_deleted": False},
        order="created_at.desc",
    )
    return [{"id": str(row["id"]), "name": str(row.get("name") or "")} for row in rows]


async def create_risk(client: StoreClient, title: str) -> str:
    """Insert a minimal risk and return its id.

    Raises:
        ImporterError: If the title is empty.
        PersistenceError: If the store rejects the insert.
    """
    if not title or not title.strip():
        raise ImporterError("title must not be empty")
    row = await client.insert(RISKS_TABLE, {"title": title.strip(), **RISK_DEFAULTS})
    logger.info("Created risk %s", row.get("id"))
    return str(row["id"])


async def create_control(
    client: StoreClient,
    control_set_id: str,
    code: str,
    title: str,
    description: str = "",
) -> str:
    """Insert a minimal control with placeholder fields and return its id.

    Raises:
        ImporterError: If the control set, code or title is missing.
        PersistenceError: If the store rejects the insert.
    """
    if not control_set_id or not code.strip() or not title.strip():
        raise ImporterError("control_set_id, code and title are required")
    row = await client.insert(
        CONTROLS_TABLE,
        {
            "control_set_id": control_set_id,
            "control_code": code.strip(),
            "title": title.strip(),
            "description": description or "",
            **CONTROL_DEFAULTS,
        },
    )
    logger.info("Created control %s", row.get("id"))
    return str(row["id"])


def attach_to_first_unlinked(
    candidates: list[RequirementCandidate], kind: LinkKind, entity_id: str
) -> int | None:
    """Link ``entity_id`` to the first included candidate without such a link.

    Returns:
        Index of the candidate that was linked, or ``None`` if every included
        candidate already has one.
    """
    field = "linked_control_id" if kind == "control" else "linked_risk_id"
    for index, candidate in enumerate(candidates):
        if candidate.include and not getattr(candidate, field):
            setattr(candidate, field, entity_id)
            return index
    return None
