"""Pydantic data models for the compliance import pipeline.

Persisted shapes (``Framework``, ``Requirement``) mirror the rows of the
``compliance_frameworks`` and ``compliance_requirements`` tables. Staging
shapes (``FrameworkRow``, ``RequirementRow``, ``RequirementCandidate``) only
live for the duration of one import session.
"""

from enum import StrEnum
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class Priority(StrEnum):
    """Requirement priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ImportPhase(StrEnum):
    """Lifecycle of one import session."""

    IDLE = "idle"
    PARSED = "parsed"
    VALID = "valid"
    PARSED_WITH_ERRORS = "parsed_with_errors"
    COMMITTING = "committing"
    DONE = "done"
    ERROR = "error"


class StrictnessMode(StrEnum):
    """How a commit treats invalid or failing rows.

    ``all_or_nothing`` refuses to commit while any row is invalid and stops at
    the first commit-time error. ``best_effort`` commits the valid subset and
    reports failures per row.
    """

    ALL_OR_NOTHING = "all_or_nothing"
    BEST_EFFORT = "best_effort"


class SourceFormat(StrEnum):
    """Input modes accepted by the importers."""

    CSV = "csv"
    JSON = "json"
    EXCEL = "excel"
    DOCX = "docx"
    URL = "url"
    TEXT = "text"


class Framework(BaseModel):
    """A regulatory or standard body of rules (e.g. ISO 27001)."""

    id: str = Field(description="Unique framework identifier")
    code: str = Field(description="Globally unique human-chosen code")
    name: str = Field(description="Framework name")
    version: str | None = Field(default=None, description="Framework version")
    authority: str | None = Field(default=None, description="Issuing authority")
    category: str | None = Field(default=None, description="Category (e.g. Law/Regulation)")
    description: str | None = Field(default=None, description="Free-text description")
    is_active: bool = Field(default=True, description="Whether the framework is in use")


class Requirement(BaseModel):
    """One persisted obligation belonging to a framework."""

    id: str = Field(description="Unique requirement identifier")
    framework_id: str = Field(description="ID of the owning framework")
    section_id: str | None = Field(default=None, description="Optional owning section")
    requirement_code: str = Field(description="Code unique within the framework")
    title: str = Field(description="Short requirement title")
    text: str = Field(description="Full requirement body")
    guidance: str | None = Field(default=None, description="Implementation guidance")
    priority: Priority | None = Field(default=None, description="Requirement priority")
    is_active: bool = Field(default=True, description="Whether the requirement is in force")


class FrameworkRow(BaseModel):
    """A validated framework candidate awaiting commit."""

    code: str
    name: str
    version: str | None = None
    authority: str | None = None
    category: str | None = None
    description: str | None = None


class RequirementRow(BaseModel):
    """A validated requirement candidate awaiting commit."""

    framework_code: str | None = None
    framework_id: str | None = None
    section_code: str | None = None
    requirement_code: str
    title: str
    text: str
    guidance: str | None = None
    priority: Priority | None = None
    is_active: bool = True
    linked_control_id: str | None = None
    linked_risk_id: str | None = None


class RequirementCandidate(BaseModel):
    """An editable, not-yet-persisted requirement produced by parsing."""

    requirement_code: str
    title: str
    text: str
    guidance: str | None = None
    include: bool = Field(default=True, description="Whether to commit this candidate")
    linked_control_id: str | None = None
    linked_risk_id: str | None = None
    framework_code: str | None = None
    framework_id: str | None = None


class PreviewRow(BaseModel, Generic[T]):
    """Validation outcome for one candidate row.

    Either ``ok`` with ``data`` or not ``ok`` with ``error``; build instances
    through ``success`` and ``failure`` only.
    """

    ok: bool
    error: str | None = None
    data: T | None = None

    @classmethod
    def success(cls, data: T) -> "PreviewRow[T]":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str) -> "PreviewRow[T]":
        return cls(ok=False, error=error)


class FetchedContent(BaseModel):
    """Raw content obtained from a URL or a paste."""

    html: str | None = None
    text: str | None = None
    title_guess: str = ""
    strategy: str | None = Field(default=None, description="Fetch strategy that produced it")


class MarkerMatch(BaseModel):
    """One segment boundary found by the marker scan."""

    kind: str = Field(description="Name of the rule that matched")
    number: int | None = None
    offset: int
    raw: str


class Segment(BaseModel):
    """A contiguous span of source text mapped to one requirement."""

    code: str
    body: str


class DryRunSummary(BaseModel):
    """Counts of valid and invalid preview rows."""

    fw_ok: int = 0
    fw_err: int = 0
    req_ok: int = 0
    req_err: int = 0


class RowFailure(BaseModel):
    """A framework, requirement or mapping that could not be committed."""

    code: str = Field(description="Framework or requirement code the failure belongs to")
    error: str


class CommitResult(BaseModel):
    """Outcome of one commit run."""

    framework_ids: dict[str, str] = Field(default_factory=dict)
    requirement_ids: dict[str, str] = Field(default_factory=dict)
    failures: list[RowFailure] = Field(default_factory=list)
    mapping_failures: list[RowFailure] = Field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures and not self.cancelled
