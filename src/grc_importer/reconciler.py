"""Reconciler: commit validated candidates to the table store.

The commit is strictly sequential: frameworks first, then requirements, then
requirement-to-control/risk mappings. Each store call is awaited before the
next so that upsert ordering holds and every failure is attributable to one
row.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from grc_importer.client import StoreClient
from grc_importer.errors import (
    CommitBlocked,
    CommitCancelled,
    ImporterError,
    PersistenceError,
    UnresolvedFramework,
)
from grc_importer.models import (
    CommitResult,
    FrameworkRow,
    PreviewRow,
    RequirementRow,
    RowFailure,
    StrictnessMode,
)
from grc_importer.validation import normalize_framework_code

logger = logging.getLogger(__name__)

FRAMEWORKS_TABLE = "compliance_frameworks"
REQUIREMENTS_TABLE = "compliance_requirements"
CONTROL_MAP_TABLE = "requirement_controls_map"
RISK_MAP_TABLE = "requirement_risks_map"

REQUIREMENT_CONFLICT_KEY = ["framework_id", "requirement_code"]


async def find_framework_id(client: StoreClient, code: str) -> str | None:
    """Look up a framework id by code, ignoring case and surrounding/inner spacing."""
    wanted = normalize_framework_code(code)
    if not wanted:
        return None
    rows = await client.select(
        FRAMEWORKS_TABLE,
        columns="id,code",
        ilike={"code": "*".join(code.split())},
    )
    for row in rows:
        if normalize_framework_code(str(row.get("code", ""))) == wanted:
            return str(row["id"])
    return None


class Reconciler:
    """Commits one import session's preview rows.

    Args:
        client: Table store client.
        mode: ``ALL_OR_NOTHING`` re-raises the first failure and refuses to
            start while any preview row is invalid; ``BEST_EFFORT`` skips
            invalid rows and records failures per row.
        cancel_event: Checked before every row; once set, the commit stops.
    """

    def __init__(
        self,
        client: StoreClient,
        mode: StrictnessMode = StrictnessMode.ALL_OR_NOTHING,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._client = client
        self.mode = mode
        self._cancel_event = cancel_event or asyncio.Event()

    @property
    def strict(self) -> bool:
        return self.mode is StrictnessMode.ALL_OR_NOTHING

    def cancel(self) -> None:
        self._cancel_event.set()

    def _cancelled(self, result: CommitResult) -> bool:
        if not self._cancel_event.is_set():
            return False
        if self.strict:
            raise CommitCancelled("Commit cancelled before completion")
        logger.info("Commit cancelled after %d requirements", len(result.requirement_ids))
        result.cancelled = True
        return True

    async def upsert_framework(self, row: FrameworkRow) -> str:
        """Update the framework with this code if it exists, else insert it."""
        values: dict[str, Any] = {
            "name": row.name,
            "version": row.version,
            "authority": row.authority,
            "category": row.category,
            "description": row.description,
            "is_active": True,
        }
        existing_id = await find_framework_id(self._client, row.code)
        if existing_id:
            updated = await self._client.update(FRAMEWORKS_TABLE, {"id": existing_id}, values)
            logger.debug("Updated framework %s (%s)", row.code, existing_id)
            return str(updated[0]["id"]) if updated else existing_id
        inserted = await self._client.insert(FRAMEWORKS_TABLE, {"code": row.code, **values})
        if "id" not in inserted:
            raise PersistenceError(f"Store returned no id for framework {row.code}")
        logger.debug("Inserted framework %s (%s)", row.code, inserted["id"])
        return str(inserted["id"])

    async def resolve_framework_id(self, row: RequirementRow, known: dict[str, str]) -> str | None:
        """Explicit ``framework_id`` first, then the code map, then a cached lookup."""
        if row.framework_id:
            return row.framework_id
        if not row.framework_code:
            return None
        key = normalize_framework_code(row.framework_code)
        if key not in known:
            found = await find_framework_id(self._client, row.framework_code)
            if found is None:
                return None
            known[key] = found
        return known[key]

    async def upsert_requirement(self, row: RequirementRow, framework_id: str) -> str:
        """Insert or overwrite the requirement keyed on (framework_id, requirement_code)."""
        stored = await self._client.upsert(
            REQUIREMENTS_TABLE,
            {
                "framework_id": framework_id,
                "section_id": None,
                "requirement_code": row.requirement_code,
                "title": row.title,
                "text": row.text,
                "guidance": row.guidance,
                "priority": row.priority.value if row.priority else None,
                "is_active": row.is_active,
            },
            on_conflict=REQUIREMENT_CONFLICT_KEY,
        )
        if "id" not in stored:
            raise PersistenceError(f"Store returned no id for requirement {row.requirement_code}")
        return str(stored["id"])

    def _record(self, result: CommitResult, code: str, exc: ImporterError) -> None:
        if self.strict:
            raise exc
        logger.warning("Commit of %s failed: %s", code, exc)
        result.failures.append(RowFailure(code=code, error=str(exc)))

    async def commit(
        self,
        frameworks: list[PreviewRow[FrameworkRow]],
        requirements: list[PreviewRow[RequirementRow]],
    ) -> CommitResult:
        """Persist valid frameworks, requirements and their mappings.

        Returns:
            A ``CommitResult`` with persisted ids and any per-row failures.

        Raises:
            CommitBlocked: In strict mode, if any preview row is invalid.
            ImporterError: In strict mode, the first commit-time failure.
            CommitCancelled: In strict mode, if cancelled mid-flight.
        """
        if self.strict:
            invalid = [row for row in [*frameworks, *requirements] if not row.ok]
            if invalid:
                raise CommitBlocked(
                    "Cannot commit while there are validation errors. "
                    "Please fix the source file and re-parse."
                )

        result = CommitResult()

        for fw_row in frameworks:
            if not fw_row.ok or fw_row.data is None:
                continue
            if self._cancelled(result):
                return result
            framework = fw_row.data
            try:
                framework_id = await self.upsert_framework(framework)
            except ImporterError as exc:
                self._record(result, framework.code, exc)
                continue
            result.framework_ids[normalize_framework_code(framework.code)] = framework_id

        links: list[tuple[str, RequirementRow]] = []
        for req_row in requirements:
            if not req_row.ok or req_row.data is None:
                continue
            if self._cancelled(result):
                return result
            requirement = req_row.data
            try:
                framework_id = await self.resolve_framework_id(requirement, result.framework_ids)
                if not framework_id:
                    raise UnresolvedFramework(requirement.requirement_code)
                requirement_id = await self.upsert_requirement(requirement, framework_id)
            except ImporterError as exc:
                self._record(result, requirement.requirement_code, exc)
                continue
            result.requirement_ids[requirement.requirement_code] = requirement_id
            links.append((requirement_id, requirement))

        await self._create_mappings(links, result)
        logger.info(
            "Commit finished: %d frameworks, %d requirements, %d failures, %d mapping failures",
            len(result.framework_ids),
            len(result.requirement_ids),
            len(result.failures),
            len(result.mapping_failures),
        )
        return result

    async def _create_mappings(
        self, links: list[tuple[str, RequirementRow]], result: CommitResult
    ) -> None:
        """Best effort: failures are logged and collected, never raised."""
        for requirement_id, requirement in links:
            jobs: list[tuple[str, dict[str, Any]]] = []
            if requirement.linked_control_id:
                jobs.append(
                    (
                        CONTROL_MAP_TABLE,
                        {"requirement_id": requirement_id, "control_id": requirement.linked_control_id},
                    )
                )
            if requirement.linked_risk_id:
                jobs.append(
                    (
                        RISK_MAP_TABLE,
                        {
                            "requirement_id": requirement_id,
                            "risk_id": requirement.linked_risk_id,
                            "mapping_strength": "direct",
                        },
                    )
                )
            for table, values in jobs:
                try:
                    await self._client.insert(table, values)
                except ImporterError as exc:
                    logger.warning(
                        "Mapping %s for %s failed: %s", table, requirement.requirement_code, exc
                    )
                    result.mapping_failures.append(
                        RowFailure(code=requirement.requirement_code, error=str(exc))
                    )
