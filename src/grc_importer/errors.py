"""Error taxonomy for the import pipeline.

Every error a user can act on derives from ``ToolError`` so FastMCP reports it
to the client as a failed tool call with the message intact. Validation
problems are not raised at all; they travel as ``PreviewRow.error``.
"""

from mcp.server.fastmcp.exceptions import ToolError


class ImporterError(ToolError):
    """Base class for all importer failures."""


# --- Input errors ---


class NoFileSelected(ImporterError):
    """No file (or an empty file) was supplied to a file-based mode."""


class UnsupportedFormat(ImporterError):
    """The file type is not one of csv, json, xlsx/xls or docx."""


class InputTooShort(ImporterError):
    """Pasted text or URL is below the minimum accepted length."""


class EmptyInput(ImporterError):
    """The segmenter was handed an empty text block."""


# --- Transport errors ---


class FetchFailed(ImporterError):
    """Every URL fetch strategy failed.

    Attributes:
        attempts: ``(strategy_name, error_message)`` pairs in the order tried.
    """

    def __init__(self, url: str, attempts: list[tuple[str, str]]) -> None:
        self.url = url
        self.attempts = attempts
        detail = "; ".join(f"{name}: {error}" for name, error in attempts)
        super().__init__(f"Cannot fetch {url} ({detail})")


class LibraryLoadFailed(ImporterError):
    """An optional parsing library could not be imported."""


class PersistenceError(ImporterError):
    """The table store rejected a request or could not be reached."""


# --- Resolution errors ---


class UnresolvedFramework(ImporterError):
    """A requirement's owning framework could not be found."""

    def __init__(self, requirement_code: str) -> None:
        self.requirement_code = requirement_code
        super().__init__(
            f"Cannot resolve framework for requirement {requirement_code}. "
            "Provide framework_code or framework_id."
        )


class DuplicateCode(ImporterError):
    """The same requirement code appears twice for one framework in a batch."""

    def __init__(self, requirement_code: str) -> None:
        self.requirement_code = requirement_code
        super().__init__(f"Duplicate requirement_code {requirement_code} in this import")


# --- Session errors ---


class InvalidTransition(ImporterError):
    """An operation was attempted from a session phase that does not allow it."""


class CommitBlocked(ImporterError):
    """Strict commit refused because the preview contains invalid rows."""


class CommitCancelled(ImporterError):
    """The commit loop observed a cancellation request."""
