"""Segmenter: split a plain-text block into requirement candidates.

Boundaries come from three marker rules scanned together in one combined
pattern, in priority order at each position:

- ``madde``: Turkish legal articles, ``MADDE 12 –`` (en/em dash or hyphen)
- ``article``: ``Article 12`` followed by ``-``, ``:`` or ``.``
- ``numbered``: a line starting with ``12.`` or ``12)``

Segmentation runs through three tiers, stopping at the first that applies:

1. ``MARKERS``: at least one marker matched; each marker starts a segment.
2. ``NUMBERED_LINES``: lines starting with ``<digits>`` and one of ``. ) -``
   or a space start segments; other non-blank lines are appended.
3. ``SINGLE``: the whole text is one segment.

Text before the first boundary becomes a ``SEC-0`` segment, so every
non-whitespace character of the input lands in exactly one segment body.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import StrEnum

from grc_importer.errors import EmptyInput
from grc_importer.models import MarkerMatch, RequirementCandidate, Segment

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 140
PRELUDE_CODE = "SEC-0"


@dataclass(frozen=True)
class MarkerRule:
    """A named boundary pattern.

    ``pattern`` must capture the article number in a group named
    ``<name>_number``. ``keyword`` is the code prefix; rules without one
    produce synthetic ``SEC-<n>`` codes.
    """

    name: str
    pattern: str
    keyword: str | None = None


MARKER_RULES: tuple[MarkerRule, ...] = (
    MarkerRule("madde", r"MADDE\s+(?P<madde_number>\d+)\s*[–—-]", keyword="MADDE"),
    MarkerRule("article", r"Article\s+(?P<article_number>\d+)\s*[-:.]", keyword="ARTICLE"),
    MarkerRule("numbered", r"^[ \t]*(?P<numbered_number>\d+)[.)](?=\s)"),
)

_NUMBERED_LINE_RE = re.compile(r"^\s*(\d+)[.)\- ]")
_SENTENCE_END_RE = re.compile(r"[.!?]")


def _combine(rules: tuple[MarkerRule, ...]) -> re.Pattern[str]:
    alternatives = "|".join(f"(?P<{rule.name}>{rule.pattern})" for rule in rules)
    return re.compile(alternatives, re.IGNORECASE | re.MULTILINE)


_COMBINED_RE = _combine(MARKER_RULES)
_RULES_BY_NAME = {rule.name: rule for rule in MARKER_RULES}


class SegmentationTier(StrEnum):
    MARKERS = "markers"
    NUMBERED_LINES = "numbered_lines"
    SINGLE = "single"


def scan_markers(text: str) -> list[MarkerMatch]:
    """Return every marker in ``text`` in document order."""
    matches: list[MarkerMatch] = []
    for hit in _COMBINED_RE.finditer(text):
        kind = hit.lastgroup
        if kind is None:
            continue
        number = hit.group(f"{kind}_number")
        matches.append(
            MarkerMatch(
                kind=kind,
                number=int(number) if number else None,
                offset=hit.start(),
                raw=hit.group(0),
            )
        )
    return matches


def _has_numbered_lines(text: str) -> bool:
    return any(_NUMBERED_LINE_RE.match(line) for line in text.splitlines())


def choose_tier(text: str, markers: list[MarkerMatch]) -> SegmentationTier:
    if markers:
        return SegmentationTier.MARKERS
    if _has_numbered_lines(text):
        return SegmentationTier.NUMBERED_LINES
    return SegmentationTier.SINGLE


def marker_code(marker: MarkerMatch, index: int) -> str:
    """``MADDE 3`` / ``ARTICLE 3`` for keyword rules, ``SEC-<index+1>`` otherwise."""
    rule = _RULES_BY_NAME.get(marker.kind)
    if rule is not None and rule.keyword and marker.number is not None:
        return f"{rule.keyword} {marker.number}"
    return f"SEC-{index + 1}"


def _split_on_markers(text: str, markers: list[MarkerMatch]) -> list[Segment]:
    segments: list[Segment] = []
    prelude = text[: markers[0].offset].strip()
    if prelude:
        segments.append(Segment(code=PRELUDE_CODE, body=prelude))
    for index, marker in enumerate(markers):
        end = markers[index + 1].offset if index + 1 < len(markers) else len(text)
        body = text[marker.offset : end].strip()
        segments.append(Segment(code=marker_code(marker, index), body=body))
    return segments


def _split_on_numbered_lines(text: str) -> list[Segment]:
    segments: list[Segment] = []
    current: list[str] = []
    current_code = PRELUDE_CODE
    for line in text.splitlines():
        hit = _NUMBERED_LINE_RE.match(line)
        if hit:
            if current:
                segments.append(Segment(code=current_code, body=" ".join(current)))
            current = [line.strip()]
            current_code = f"SEC-{hit.group(1)}"
        elif line.strip():
            current.append(line.strip())
    if current:
        segments.append(Segment(code=current_code, body=" ".join(current)))
    return segments


def segment_text(text: str) -> list[Segment]:
    """Split ``text`` into ordered segments.

    Never fails on non-empty input: the worst case is a single segment
    holding the whole text.

    Raises:
        EmptyInput: If ``text`` is empty or whitespace only.
    """
    if not text or not text.strip():
        raise EmptyInput("Nothing to segment: the document is empty.")

    markers = scan_markers(text)
    tier = choose_tier(text, markers)
    logger.debug("Segmenting %d chars via %s (%d markers)", len(text), tier, len(markers))

    if tier is SegmentationTier.MARKERS:
        return _split_on_markers(text, markers)
    if tier is SegmentationTier.NUMBERED_LINES:
        return _split_on_numbered_lines(text)
    return [Segment(code="SEC-1", body=text.strip())]


def derive_title(code: str, body: str) -> str:
    """``"<code>: <first sentence>"`` cut to 140 characters, or the bare code."""
    first_sentence = _SENTENCE_END_RE.split(body, maxsplit=1)[0].strip()
    if not first_sentence:
        return code
    return f"{code}: {first_sentence}"[:TITLE_MAX_LENGTH]


def segment_to_candidates(text: str, framework_code: str | None = None) -> list[RequirementCandidate]:
    """Segment ``text`` and wrap each segment as an included, unlinked candidate."""
    return [
        RequirementCandidate(
            requirement_code=segment.code,
            title=derive_title(segment.code, segment.body),
            text=segment.body,
            framework_code=framework_code,
        )
        for segment in segment_text(text)
    ]
