"""Enrich related-entity rows with display names.

Lookups for different rows are independent reads, so they run concurrently.
A failed or empty lookup degrades to ``"Unknown"`` and never aborts the batch.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from grc_importer.client import StoreClient
from grc_importer.errors import ImporterError

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"


async def business_unit_name(client: StoreClient, business_unit_id: Any) -> str:
    if not business_unit_id:
        return UNKNOWN
    try:
        row = await client.select_one("business_units", columns="name", filters={"id": business_unit_id})
    except ImporterError as exc:
        logger.warning("Business unit lookup %s failed: %s", business_unit_id, exc)
        return UNKNOWN
    return str(row["name"]) if row and row.get("name") else UNKNOWN


async def owner_name(client: StoreClient, owner_id: Any) -> str:
    if not owner_id:
        return UNKNOWN
    try:
        row = await client.select_one("users", columns="first_name,last_name", filters={"id": owner_id})
    except ImporterError as exc:
        logger.warning("Owner lookup %s failed: %s", owner_id, exc)
        return UNKNOWN
    if not row:
        return UNKNOWN
    full_name = f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip()
    return full_name or UNKNOWN


async def _enrich_risk(client: StoreClient, risk: dict[str, Any]) -> dict[str, Any]:
    unit, owner = await asyncio.gather(
        business_unit_name(client, risk.get("business_unit_id")),
        owner_name(client, risk.get("owner_id")),
    )
    return {
        **risk,
        "business_unit": unit,
        "owner": owner,
        "risk_level": risk.get("risk_level") or "medium",
        "title": risk.get("title") or f"Risk {risk.get('id')}",
    }


async def enrich_risks(client: StoreClient, risks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Add ``business_unit`` and ``owner`` names to every risk, concurrently.

    Row order is preserved.
    """
    return list(await asyncio.gather(*(_enrich_risk(client, risk) for risk in risks)))


async def load_linkable_risks(client: StoreClient, limit: int = 50) -> list[dict[str, Any]]:
    """Latest risks with their business unit and owner resolved."""
    rows = await client.select(
        "risks",
        columns="id,title,risk_level,status,business_unit_id,owner_id",
        order="created_at.desc",
        limit=limit,
    )
    return await enrich_risks(client, rows)
