"""Import sessions: the two importer flows and their state machine.

Phases::

    idle -> parsed -> valid | parsed_with_errors -> committing -> done | error

``reset()`` returns to ``idle`` from any phase, and a new parse may start from
any phase except ``committing``. ``commit()`` is allowed from ``valid``, and
from ``parsed_with_errors`` only in ``best_effort`` mode.

``BulkImportSession`` is the strict CSV/Excel/JSON/URL/text importer.
``RichImportSession`` is the lenient Excel/Word/URL/text importer with an
editable candidate list and inline risk/control linking.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

import httpx

from grc_importer import linking
from grc_importer.client import StoreClient
from grc_importer.errors import (
    CommitBlocked,
    ImporterError,
    InvalidTransition,
    UnsupportedFormat,
)
from grc_importer.models import (
    CommitResult,
    DryRunSummary,
    FetchedContent,
    FrameworkRow,
    ImportPhase,
    PreviewRow,
    RequirementCandidate,
    RequirementRow,
    SourceFormat,
    StrictnessMode,
)
from grc_importer.normalize import (
    canonical_text,
    detect_framework_columns,
    html_to_text,
    resolve_row_aliases,
    rows_to_candidates,
)
from grc_importer.readers import (
    detect_format,
    fetch_url,
    normalize_url,
    read_csv,
    read_docx,
    read_json,
    read_paste,
    read_spreadsheet,
)
from grc_importer.reconciler import Reconciler
from grc_importer.segmenter import segment_to_candidates
from grc_importer.validation import (
    collect_errors,
    dry_run_summary,
    flag_duplicate_codes,
    validate_framework,
    validate_requirement,
)

logger = logging.getLogger(__name__)

LEGAL_AUTHORITY = "Resmi Gazete"
LEGAL_CATEGORY = "Law/Regulation"
FRAMEWORK_NAME_LENGTH = 64

_TRANSITIONS: dict[ImportPhase, set[ImportPhase]] = {
    ImportPhase.IDLE: {ImportPhase.PARSED, ImportPhase.ERROR},
    ImportPhase.PARSED: {ImportPhase.VALID, ImportPhase.PARSED_WITH_ERRORS, ImportPhase.ERROR},
    ImportPhase.VALID: {ImportPhase.COMMITTING, ImportPhase.PARSED, ImportPhase.ERROR},
    ImportPhase.PARSED_WITH_ERRORS: {ImportPhase.COMMITTING, ImportPhase.PARSED, ImportPhase.ERROR},
    ImportPhase.COMMITTING: {ImportPhase.DONE, ImportPhase.ERROR},
    ImportPhase.DONE: set(),
    ImportPhase.ERROR: set(),
}


def _timestamp_code() -> str:
    return f"RESMI-{int(time.time() * 1000)}"


def legal_framework_code(url: str) -> str:
    """``RESMI-<digits of the URL path>`` (max 12), ``RESMI-DOC`` without digits."""
    try:
        path = urlparse(normalize_url(url)).path
    except ImporterError:
        return _timestamp_code()
    digits = re.sub(r"\D", "", path)[:12]
    return f"RESMI-{digits or 'DOC'}"


def legal_text_rows(
    content: FetchedContent,
    framework_code: str | None = None,
    framework_name: str | None = None,
) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    """Segment legal text into one framework candidate and its requirements.

    Returns:
        ``(framework, requirements)`` as raw dicts ready for validation.
    """
    text = canonical_text(content)
    title = content.title_guess
    if not title and content.html:
        _, title = html_to_text(content.html)

    framework = {
        "code": framework_code or _timestamp_code(),
        "name": framework_name or (title[:FRAMEWORK_NAME_LENGTH] if title else "Resmi Gazete Document"),
        "version": None,
        "authority": LEGAL_AUTHORITY,
        "category": LEGAL_CATEGORY,
        "description": f"Imported on {datetime.now(tz=timezone.utc).isoformat()}",
    }
    requirements = [
        {
            "framework_code": framework["code"],
            "requirement_code": candidate.requirement_code,
            "title": candidate.title,
            "text": candidate.text,
            "guidance": None,
            "priority": "medium",
            "is_active": True,
        }
        for candidate in segment_to_candidates(text, framework_code=framework["code"])
    ]
    return framework, requirements


class ImportSession:
    """State and preview rows shared by both importer flows."""

    mode: StrictnessMode = StrictnessMode.ALL_OR_NOTHING

    def __init__(
        self,
        client: StoreClient,
        *,
        proxy_url: str = "https://r.jina.ai/",
        fetch_timeout: float = 15.0,
        min_paste_length: int = 20,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.id = uuid.uuid4().hex
        self._client = client
        self._proxy_url = proxy_url
        self._fetch_timeout = fetch_timeout
        self._min_paste_length = min_paste_length
        self._http_client = http_client
        self._reconciler: Reconciler | None = None
        self.phase = ImportPhase.IDLE
        self.message = ""
        self.framework_preview: list[PreviewRow[FrameworkRow]] = []
        self.requirement_preview: list[PreviewRow[RequirementRow]] = []
        self.last_result: CommitResult | None = None

    # --- state machine ---

    def _move(self, target: ImportPhase) -> None:
        if target not in _TRANSITIONS[self.phase]:
            raise InvalidTransition(f"Cannot go from {self.phase} to {target}")
        logger.debug("Session %s: %s -> %s", self.id, self.phase, target)
        self.phase = target

    def reset(self) -> None:
        """Drop all parsed state and return to ``idle``."""
        if self._reconciler is not None:
            self._reconciler.cancel()
            self._reconciler = None
        self.phase = ImportPhase.IDLE
        self.message = ""
        self.framework_preview = []
        self.requirement_preview = []
        self.last_result = None

    def _begin_parse(self) -> None:
        if self.phase is ImportPhase.COMMITTING:
            raise InvalidTransition("Cannot parse while a commit is running")
        self.reset()

    def _fail(self, exc: Exception, prefix: str) -> None:
        self.phase = ImportPhase.ERROR
        self.message = f"{prefix}: {exc}"
        logger.info("Session %s failed: %s", self.id, self.message)

    def _set_preview(
        self,
        frameworks: list[PreviewRow[FrameworkRow]],
        requirements: list[PreviewRow[RequirementRow]],
    ) -> None:
        if self.phase is not ImportPhase.PARSED:
            self._move(ImportPhase.PARSED)
        self.framework_preview = frameworks
        self.requirement_preview = flag_duplicate_codes(requirements)
        all_ok = all(row.ok for row in [*self.framework_preview, *self.requirement_preview])
        if all_ok:
            self._move(ImportPhase.VALID)
            self.message = "Validation passed. Ready for dry-run/commit."
        else:
            self._move(ImportPhase.PARSED_WITH_ERRORS)
            self.message = "Parsed with some validation errors."

    def summary(self) -> DryRunSummary:
        """Dry-run counts for the current preview."""
        return dry_run_summary(self.framework_preview, self.requirement_preview)

    def errors(self) -> list[str]:
        return collect_errors(self.framework_preview, self.requirement_preview)

    def cancel(self) -> None:
        """Ask a running commit to stop before its next row."""
        if self._reconciler is not None:
            self._reconciler.cancel()

    async def _fetch(self, url: str) -> FetchedContent:
        return await fetch_url(
            url,
            proxy_url=self._proxy_url,
            timeout=self._fetch_timeout,
            http_client=self._http_client,
        )

    # --- commit ---

    async def commit(self) -> CommitResult:
        """Commit the current preview under this session's strictness mode.

        Raises:
            InvalidTransition: If nothing has been parsed or the session is busy.
            CommitBlocked: In strict mode with invalid rows.
            ImporterError: In strict mode, the first failure during commit.
        """
        if self.phase is ImportPhase.PARSED_WITH_ERRORS and self.mode is StrictnessMode.ALL_OR_NOTHING:
            exc = CommitBlocked(
                "Cannot commit while there are validation errors. "
                "Please fix the source file and re-parse."
            )
            self._fail(exc, "Commit failed")
            raise exc
        if self.phase not in (ImportPhase.VALID, ImportPhase.PARSED_WITH_ERRORS):
            raise InvalidTransition(f"Nothing to commit in phase {self.phase}")

        self._move(ImportPhase.COMMITTING)
        self.message = "Committing to database..."
        reconciler = Reconciler(self._client, self.mode)
        self._reconciler = reconciler
        try:
            result = await reconciler.commit(self.framework_preview, self.requirement_preview)
        except ImporterError as exc:
            if self._reconciler is reconciler:
                self._fail(exc, "Commit failed")
            raise
        except Exception as exc:
            logger.exception("Session %s: unexpected commit failure", self.id)
            if self._reconciler is reconciler:
                self._fail(exc, "Commit failed unexpectedly")
            raise
        finally:
            owned = self._reconciler is reconciler
            if owned:
                self._reconciler = None

        if not owned:
            # reset() ran while the commit was in flight
            return result
        self.last_result = result
        self._move(ImportPhase.DONE)
        if result.cancelled:
            self.message = f"Commit cancelled after {len(result.requirement_ids)} requirement(s)."
        elif result.failures or result.mapping_failures:
            self.message = (
                f"Saved {len(result.requirement_ids)} requirement(s); "
                f"{len(result.failures)} failed, {len(result.mapping_failures)} mapping(s) failed."
            )
        else:
            self.message = "Import completed successfully."
        return result


class BulkImportSession(ImportSession):
    """Strict importer: any invalid row blocks the whole commit."""

    mode = StrictnessMode.ALL_OR_NOTHING

    def __init__(self, client: StoreClient, **kwargs: Any) -> None:
        super().__init__(client, **kwargs)
        self.control_links: dict[str, str] = {}
        self.risk_links: dict[str, str] = {}

    def reset(self) -> None:
        super().reset()
        self.control_links = {}
        self.risk_links = {}

    def _tabular_preview(self, rows: list[dict[str, Any]]) -> None:
        framework = detect_framework_columns(rows[0])
        frameworks = [validate_framework(framework)] if framework else []
        default_code = str(framework["code"]) if framework else None
        self._set_preview(
            frameworks,
            [validate_requirement(resolve_row_aliases(row, default_code)) for row in rows],
        )

    def _json_preview(self, items: list[dict[str, Any]]) -> None:
        frameworks: list[PreviewRow[FrameworkRow]] = []
        requirements: list[PreviewRow[RequirementRow]] = []
        for item in items:
            framework = item.get("framework")
            frameworks.append(validate_framework(framework if isinstance(framework, dict) else None))
            framework_code = framework.get("code") if isinstance(framework, dict) else None
            item_requirements = item.get("requirements") or []
            if not isinstance(item_requirements, list):
                requirements.append(PreviewRow[RequirementRow].failure("requirements must be an array"))
                continue
            for requirement in item_requirements:
                if not isinstance(requirement, dict):
                    requirements.append(PreviewRow[RequirementRow].failure("Requirement must be an object"))
                    continue
                requirements.append(
                    validate_requirement(
                        {
                            **requirement,
                            "framework_id": requirement.get("framework_id") or item.get("framework_id"),
                            "framework_code": requirement.get("framework_code") or framework_code,
                        }
                    )
                )
        self._set_preview(frameworks, requirements)

    async def parse_file(self, filename: str, data: bytes, content_type: str | None = None) -> DryRunSummary:
        """Parse a CSV, Excel or JSON file into the preview.

        Returns:
            The dry-run summary. On failure the session moves to ``error`` and
            the error is raised.
        """
        self._begin_parse()
        try:
            source_format = detect_format(filename, content_type)
            if source_format is SourceFormat.JSON:
                self._json_preview(read_json(data))
            elif source_format in (SourceFormat.CSV, SourceFormat.EXCEL):
                rows = read_csv(data) if source_format is SourceFormat.CSV else read_spreadsheet(data)
                if not rows:
                    raise ImporterError(f"No rows found in {source_format.upper()}.")
                self._tabular_preview(rows)
            else:
                raise UnsupportedFormat("The bulk importer accepts CSV, Excel and JSON files only")
        except ImporterError as exc:
            self._fail(exc, "Parse error")
            raise
        return self.summary()

    async def parse_url(self, url: str) -> DryRunSummary:
        """Fetch a legal text page and segment it into the preview."""
        self._begin_parse()
        try:
            content = await self._fetch(url)
            framework, requirements = legal_text_rows(
                content,
                framework_code=legal_framework_code(url),
                framework_name=content.title_guess[:FRAMEWORK_NAME_LENGTH] or None,
            )
            self._set_preview(
                [validate_framework(framework)], [validate_requirement(r) for r in requirements]
            )
        except ImporterError as exc:
            self._fail(exc, "Parse error")
            raise
        return self.summary()

    async def parse_text(
        self,
        text: str,
        framework_code: str | None = None,
        framework_name: str | None = None,
    ) -> DryRunSummary:
        """Segment pasted text or HTML into the preview."""
        self._begin_parse()
        try:
            content = read_paste(text, self._min_paste_length)
            framework, requirements = legal_text_rows(
                content,
                framework_code=(framework_code or "").strip() or None,
                framework_name=(framework_name or "").strip() or "Imported Document",
            )
            self._set_preview(
                [validate_framework(framework)], [validate_requirement(r) for r in requirements]
            )
        except ImporterError as exc:
            self._fail(exc, "Parse error")
            raise
        return self.summary()

    def link(self, requirement_code: str, kind: linking.LinkKind, entity_id: str | None) -> None:
        """Choose (or clear) the control/risk to map a requirement to after commit."""
        links = self.control_links if kind == "control" else self.risk_links
        if entity_id:
            links[requirement_code] = entity_id
        else:
            links.pop(requirement_code, None)

    async def commit(self) -> CommitResult:
        for row in self.requirement_preview:
            if row.ok and row.data is not None:
                code = row.data.requirement_code
                row.data.linked_control_id = self.control_links.get(code)
                row.data.linked_risk_id = self.risk_links.get(code)
        return await super().commit()


class RichImportSession(ImportSession):
    """Lenient importer with an editable candidate list."""

    mode = StrictnessMode.BEST_EFFORT

    def __init__(self, client: StoreClient, **kwargs: Any) -> None:
        super().__init__(client, **kwargs)
        self.candidates: list[RequirementCandidate] = []
        self.framework_id: str | None = None

    def reset(self) -> None:
        super().reset()
        self.candidates = []

    def _in_review(self) -> bool:
        return self.phase in (ImportPhase.VALID, ImportPhase.PARSED_WITH_ERRORS)

    def _refresh_preview(self) -> None:
        requirements = [
            validate_requirement(
                {
                    **candidate.model_dump(),
                    "framework_id": self.framework_id or candidate.framework_id,
                }
            )
            for candidate in self.candidates
            if candidate.include
        ]
        if self._in_review():
            self._move(ImportPhase.PARSED)
        self._set_preview([], requirements)
        self.message = f"Parsed {len(self.candidates)} article(s)."

    def _load(self, candidates: list[RequirementCandidate]) -> None:
        self.candidates = candidates
        self._refresh_preview()

    async def parse_file(self, filename: str, data: bytes, content_type: str | None = None) -> int:
        """Parse an Excel workbook or Word document into candidates.

        Returns:
            Number of candidates produced.
        """
        self._begin_parse()
        try:
            source_format = detect_format(filename, content_type)
            if source_format is SourceFormat.EXCEL:
                self._load(rows_to_candidates(read_spreadsheet(data)))
            elif source_format is SourceFormat.DOCX:
                text = await read_docx(data)
                self._load(segment_to_candidates(canonical_text(FetchedContent(text=text))))
            else:
                raise UnsupportedFormat("Select an Excel (.xlsx) or Word (.docx) file")
        except ImporterError as exc:
            self._fail(exc, "Parse failed")
            raise
        return len(self.candidates)

    async def parse_url(self, url: str) -> int:
        self._begin_parse()
        try:
            content = await self._fetch(url)
            self._load(segment_to_candidates(canonical_text(content)))
        except ImporterError as exc:
            self._fail(exc, "Parse failed")
            raise
        return len(self.candidates)

    async def parse_text(self, text: str) -> int:
        self._begin_parse()
        try:
            content = read_paste(text, self._min_paste_length)
            self._load(segment_to_candidates(canonical_text(content)))
        except ImporterError as exc:
            self._fail(exc, "Parse failed")
            raise
        return len(self.candidates)

    # --- review table ---

    def _candidate(self, index: int) -> RequirementCandidate:
        if not self._in_review():
            raise InvalidTransition(f"No candidates to edit in phase {self.phase}")
        if not 0 <= index < len(self.candidates):
            raise ImporterError(f"No candidate at index {index}")
        return self.candidates[index]

    def edit_candidate(self, index: int, **changes: Any) -> RequirementCandidate:
        """Apply user edits (code, title, text, guidance, include) to one candidate."""
        candidate = self._candidate(index)
        allowed = {"requirement_code", "title", "text", "guidance", "include"}
        unknown = set(changes) - allowed
        if unknown:
            raise ImporterError(f"Cannot edit field(s): {', '.join(sorted(unknown))}")
        updated = candidate.model_copy(update=changes)
        self.candidates[index] = updated
        self._refresh_preview()
        return updated

    def link_candidate(self, index: int, kind: linking.LinkKind, entity_id: str | None) -> RequirementCandidate:
        """Set or clear the control/risk link of one candidate."""
        field = "linked_control_id" if kind == "control" else "linked_risk_id"
        return self._edit_link(index, field, entity_id)

    def _edit_link(self, index: int, field: str, entity_id: str | None) -> RequirementCandidate:
        candidate = self._candidate(index)
        updated = candidate.model_copy(update={field: entity_id or None})
        self.candidates[index] = updated
        self._refresh_preview()
        return updated

    async def create_and_attach_risk(self, title: str) -> tuple[str, int | None]:
        """Create a risk and link it to the first included candidate lacking one."""
        risk_id = await linking.create_risk(self._client, title)
        index = linking.attach_to_first_unlinked(self.candidates, "risk", risk_id)
        if self._in_review():
            self._refresh_preview()
        self.message = "Risk created"
        return risk_id, index

    async def create_and_attach_control(
        self, control_set_id: str, code: str, title: str, description: str = ""
    ) -> tuple[str, int | None]:
        """Create a control and link it to the first included candidate lacking one."""
        control_id = await linking.create_control(self._client, control_set_id, code, title, description)
        index = linking.attach_to_first_unlinked(self.candidates, "control", control_id)
        if self._in_review():
            self._refresh_preview()
        self.message = "Control created"
        return control_id, index

    # --- framework ---

    def select_framework(self, framework_id: str) -> None:
        self.framework_id = framework_id or None
        if self._in_review():
            self._refresh_preview()

    async def create_framework(self, fields: dict[str, Any]) -> str:
        """Create (or update, when the code exists) a framework and select it.

        Raises:
            ImporterError: If code or name is missing.
        """
        row = validate_framework(fields)
        if not row.ok or row.data is None:
            raise ImporterError(row.error or "Invalid framework")
        framework_id = await Reconciler(self._client, self.mode).upsert_framework(row.data)
        self.select_framework(framework_id)
        return framework_id

    async def commit(self) -> CommitResult:
        if not self.framework_id:
            raise ImporterError("Select a framework first")
        if not any(candidate.include for candidate in self.candidates):
            raise ImporterError("Nothing to save")
        if self._in_review():
            self._refresh_preview()
        return await super().commit()


class SessionRegistry:
    """Holds the live sessions of this process by id.

    Sessions unused for longer than ``ttl`` seconds are evicted when a new
    session is added, and the least recently used go once ``max_sessions``
    would be exceeded. A committing session is never evicted.

    Args:
        ttl: Idle time in seconds after which a session may be evicted.
        max_sessions: Number of sessions kept at most.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        ttl: float = 3600.0,
        max_sessions: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_sessions = max_sessions
        self._clock = clock
        self._sessions: dict[str, ImportSession] = {}
        self._last_used: dict[str, float] = {}

    def configure(self, ttl: float, max_sessions: int) -> None:
        self.ttl = ttl
        self.max_sessions = max_sessions

    def add(self, session: ImportSession) -> str:
        self._evict()
        self._sessions[session.id] = session
        self._last_used[session.id] = self._clock()
        return session.id

    def get(self, session_id: str) -> ImportSession:
        try:
            session = self._sessions[session_id]
        except KeyError:
            raise ImporterError(f"Unknown import session: {session_id}") from None
        self._last_used[session_id] = self._clock()
        return session

    def remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._last_used.pop(session_id, None)

    def _evict(self) -> None:
        now = self._clock()
        evictable = sorted(
            (sid for sid, session in self._sessions.items() if session.phase is not ImportPhase.COMMITTING),
            key=self._last_used.__getitem__,
        )
        expired = [sid for sid in evictable if now - self._last_used[sid] > self.ttl]
        # room for the session being added
        overflow = len(self._sessions) - len(expired) + 1 - self.max_sessions
        if overflow > 0:
            expired += [sid for sid in evictable if sid not in expired][:overflow]
        for session_id in expired:
            logger.info("Evicting import session %s", session_id)
            self.remove(session_id)

    def __len__(self) -> int:
        return len(self._sessions)


registry = SessionRegistry()
