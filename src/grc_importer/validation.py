"""Validation rules for framework and requirement candidates.

Pure functions with no I/O. Validation never raises: every problem is
reported as a ``PreviewRow`` with ``ok=False`` and an error message.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

from grc_importer.errors import DuplicateCode
from grc_importer.models import (
    DryRunSummary,
    FrameworkRow,
    PreviewRow,
    Priority,
    RequirementRow,
)

REQUIRED_REQUIREMENT_FIELDS = ("requirement_code", "title", "text")

_FALSE_STRINGS = {"false", "0", "no"}
_SPACE_RE = re.compile(r"\s+")


def _is_blank(value: Any) -> bool:
    return value is None or not str(value).strip()


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def normalize_framework_code(code: str) -> str:
    """Canonical lookup key for a framework code: trimmed, single-spaced, upper case."""
    return _SPACE_RE.sub(" ", code.strip()).upper()


def normalize_priority(value: Any) -> Priority | None:
    """Map a raw priority onto ``Priority``.

    Absent or blank values give ``None``; anything unrecognized gives
    ``Priority.MEDIUM``.
    """
    if _is_blank(value):
        return None
    normalized = str(value).strip().lower()
    try:
        return Priority(normalized)
    except ValueError:
        return Priority.MEDIUM


def parse_is_active(value: Any) -> bool:
    """``False`` only for an explicit false (bool, ``"false"``, ``"0"``, ``"no"``)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_STRINGS
    if isinstance(value, (int, float)):
        return value != 0
    return True


def validate_framework(obj: dict[str, Any] | None) -> PreviewRow[FrameworkRow]:
    """Validate a framework candidate; ``code`` and ``name`` are required."""
    if not obj:
        return PreviewRow[FrameworkRow].failure("Missing framework object")
    if _is_blank(obj.get("code")) or _is_blank(obj.get("name")):
        return PreviewRow[FrameworkRow].failure("Framework requires code and name")
    return PreviewRow[FrameworkRow].success(
        FrameworkRow(
            code=" ".join(str(obj["code"]).split()),
            name=str(obj["name"]).strip(),
            version=_optional_str(obj.get("version")),
            authority=_optional_str(obj.get("authority")),
            category=_optional_str(obj.get("category")),
            description=_optional_str(obj.get("description")),
        )
    )


def validate_requirement(obj: dict[str, Any] | None) -> PreviewRow[RequirementRow]:
    """Validate a requirement candidate.

    The first missing field of ``requirement_code``, ``title``, ``text`` is
    reported as ``"Missing required field: <name>"``.
    """
    row = obj or {}
    for field in REQUIRED_REQUIREMENT_FIELDS:
        if _is_blank(row.get(field)):
            return PreviewRow[RequirementRow].failure(f"Missing required field: {field}")

    framework_code = row.get("framework_code")
    return PreviewRow[RequirementRow].success(
        RequirementRow(
            framework_code=str(framework_code).strip() if not _is_blank(framework_code) else None,
            framework_id=_optional_str(row.get("framework_id")) or None,
            section_code=_optional_str(row.get("section_code")) or None,
            requirement_code=str(row["requirement_code"]).strip(),
            title=str(row["title"]).strip(),
            text=str(row["text"]).strip(),
            guidance=_optional_str(row.get("guidance")),
            priority=normalize_priority(row.get("priority")),
            is_active=parse_is_active(row.get("is_active")),
            linked_control_id=_optional_str(row.get("linked_control_id")) or None,
            linked_risk_id=_optional_str(row.get("linked_risk_id")) or None,
        )
    )


def flag_duplicate_codes(rows: list[PreviewRow[RequirementRow]]) -> list[PreviewRow[RequirementRow]]:
    """Fail later rows that repeat a (framework, requirement_code) pair.

    Both rows would upsert onto the same record, so only the first is kept.
    """
    seen: set[tuple[str, str]] = set()
    flagged: list[PreviewRow[RequirementRow]] = []
    for row in rows:
        if row.ok and row.data is not None:
            owner = row.data.framework_id or normalize_framework_code(row.data.framework_code or "")
            key = (owner, row.data.requirement_code)
            if key in seen:
                flagged.append(
                    PreviewRow[RequirementRow].failure(str(DuplicateCode(row.data.requirement_code)))
                )
                continue
            seen.add(key)
        flagged.append(row)
    return flagged


def dry_run_summary(
    frameworks: Iterable[PreviewRow[FrameworkRow]],
    requirements: Iterable[PreviewRow[RequirementRow]],
) -> DryRunSummary:
    """Count valid and invalid rows without touching storage."""
    fw = list(frameworks)
    reqs = list(requirements)
    fw_ok = sum(1 for row in fw if row.ok)
    req_ok = sum(1 for row in reqs if row.ok)
    return DryRunSummary(
        fw_ok=fw_ok,
        fw_err=len(fw) - fw_ok,
        req_ok=req_ok,
        req_err=len(reqs) - req_ok,
    )


def collect_errors(
    frameworks: list[PreviewRow[FrameworkRow]],
    requirements: list[PreviewRow[RequirementRow]],
    limit: int = 20,
) -> list[str]:
    """Human-readable error lines, capped at ``limit``."""
    errors = [f"Framework row {i + 1}: {row.error}" for i, row in enumerate(frameworks) if not row.ok]
    errors += [f"Requirement row {i + 1}: {row.error}" for i, row in enumerate(requirements) if not row.ok]
    return errors[:limit]
