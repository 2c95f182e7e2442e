"""Unit tests for the pydantic data models."""

from grc_importer.models import (
    CommitResult,
    FrameworkRow,
    ImportPhase,
    PreviewRow,
    Priority,
    RequirementCandidate,
    RowFailure,
)


def test_priority_values():
    """Priority should expose the four lower-case levels."""
    assert [p.value for p in Priority] == ["low", "medium", "high", "critical"]


def test_import_phase_is_string_enum():
    """ImportPhase members should compare equal to their string values."""
    assert ImportPhase.PARSED_WITH_ERRORS == "parsed_with_errors"


def test_preview_row_success_has_data_and_no_error():
    """PreviewRow.success should carry data and no error."""
    row = PreviewRow[FrameworkRow].success(FrameworkRow(code="ISO", name="ISO 27001"))
    assert row.ok is True
    assert row.error is None
    assert row.data.code == "ISO"


def test_preview_row_failure_has_error_and_no_data():
    """PreviewRow.failure should carry an error and no data."""
    row = PreviewRow[FrameworkRow].failure("Framework requires code and name")
    assert row.ok is False
    assert row.data is None
    assert row.error == "Framework requires code and name"


def test_candidate_defaults():
    """A new candidate should be included and unlinked."""
    candidate = RequirementCandidate(requirement_code="R1", title="T", text="X")
    assert candidate.include is True
    assert candidate.linked_control_id is None
    assert candidate.linked_risk_id is None


def test_commit_result_ok():
    """CommitResult.ok should be false once a row failed or the commit was cancelled."""
    assert CommitResult().ok is True
    assert CommitResult(failures=[RowFailure(code="R1", error="x")]).ok is False
    assert CommitResult(cancelled=True).ok is False


def test_commit_result_mapping_failures_do_not_fail_commit():
    """Mapping failures are partial success, not a failed commit."""
    result = CommitResult(mapping_failures=[RowFailure(code="R1", error="x")])
    assert result.ok is True
