"""
Header Parser Module - Header Row Detection and Column Resolution

Vendor exports prepend title/metadata rows and spell the same column many
ways ("Avg. Price($)", "avg price", "Average Price"). This module finds the
true header row by keyword scoring and resolves target columns through an
ordered, configuration-driven list of predicates.

Example:
    detector = HeaderDetector(MARKET_ANALYSIS_KEYWORDS)
    header_idx = detector.detect(rows)
    columns = ColumnResolver.from_config("market_analysis", sheet="Market Analysis")
    indexes = columns.resolve(rows[header_idx])
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from research_engine.config import COLUMN_ALIASES, HEADER_SCAN_ROWS
from research_engine.errors import MissingColumnError

if TYPE_CHECKING:
    from collections.abc import Sequence

# Exporter title rows, e.g. "KeywordsAnalyze-US-...-202504-20251013"
_TITLE_PATTERN = re.compile(r"keywordsanalyze|batch\(\d+\)", re.IGNORECASE)
_DATESTAMP_PATTERN = re.compile(r"\d{4}-?\d{2}-?\d{5,}")
_NUMERIC_LEADING = re.compile(r"^(\$|\d|\.|,|%)")


def cell_text(cell: Any) -> str:
    """Trimmed string form of a raw cell; empty for None."""
    if cell is None:
        return ""
    if isinstance(cell, float) and cell != cell:
        return ""
    return str(cell).strip()


def default_normalize(text: str) -> str:
    return text.strip().lower()


def ads_normalize(text: str) -> str:
    """Lower-case and collapse punctuation to single spaces, keeping '%'."""
    collapsed = re.sub(r"[^a-z0-9%]+", " ", str(text or "").lower())
    return re.sub(r"\s+", " ", collapsed).strip()


class HeaderDetector:
    """
    Picks the header row among the first rows of a raw sheet.

    Each row scores one point per cell containing any expected keyword. The
    highest score wins; ties keep the earliest row, so row 0 is the default
    when nothing matches.
    """

    def __init__(self, keywords: Sequence[str], scan_rows: int = HEADER_SCAN_ROWS):
        self.keywords = [k.lower() for k in keywords]
        self.scan_rows = scan_rows

    def score(self, row: Sequence[Any] | None) -> int:
        hits = 0
        for cell in row or []:
            text = cell_text(cell).lower()
            if text and any(k in text for k in self.keywords):
                hits += 1
        return hits

    def detect(self, rows: Sequence[Sequence[Any]]) -> int:
        best_idx = 0
        best_score = -1
        for i in range(min(len(rows), self.scan_rows)):
            score = self.score(rows[i])
            if score > best_score:
                best_score = score
                best_idx = i
        return best_idx


@dataclass
class ColumnSpec:
    """One target column and the predicates that identify it."""

    name: str
    contains: tuple[str, ...] = ()
    regex: tuple[str, ...] = ()
    excludes: tuple[str, ...] = ()
    required: bool = False
    label: str = ""
    _compiled: list[re.Pattern] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        self._compiled = [re.compile(p) for p in self.regex]
        if not self.label:
            self.label = self.name.replace("_", " ").title()

    @classmethod
    def from_definition(cls, name: str, definition: dict[str, Any]) -> ColumnSpec:
        return cls(
            name=name,
            contains=tuple(definition.get("contains", ())),
            regex=tuple(definition.get("regex", ())),
            excludes=tuple(definition.get("excludes", ())),
            required=bool(definition.get("required", False)),
            label=definition.get("label", ""),
        )

    def matches(self, header: str, normalize: Callable[[str], str] = default_normalize) -> bool:
        if not header:
            return False
        if any(normalize(x) in header for x in self.excludes):
            return False
        if any(normalize(p) in header for p in self.contains if normalize(p)):
            return True
        return any(p.search(header) for p in self._compiled)


class ColumnResolver:
    """
    Resolves column indexes from a header row.

    For every spec, the first header cell (left to right) satisfying any of
    its predicates wins. Missing required columns raise MissingColumnError.
    """

    def __init__(
        self,
        specs: Sequence[ColumnSpec],
        normalize: Callable[[str], str] = default_normalize,
        sheet: str | None = None,
    ):
        self.specs = list(specs)
        self.normalize = normalize
        self.sheet = sheet

    @classmethod
    def from_config(
        cls,
        shape: str,
        normalize: Callable[[str], str] = default_normalize,
        sheet: str | None = None,
    ) -> ColumnResolver:
        definitions = COLUMN_ALIASES[shape]
        specs = [ColumnSpec.from_definition(name, d) for name, d in definitions.items()]
        return cls(specs, normalize=normalize, sheet=sheet)

    def find(self, header: Sequence[Any], spec: ColumnSpec) -> int | None:
        for idx, cell in enumerate(header):
            if spec.matches(self.normalize(cell_text(cell)), self.normalize):
                return idx
        return None

    def resolve(self, header: Sequence[Any]) -> dict[str, int | None]:
        resolved: dict[str, int | None] = {}
        for spec in self.specs:
            idx = self.find(header, spec)
            if idx is None and spec.required:
                raise MissingColumnError(spec.label, self.sheet)
            resolved[spec.name] = idx
        return resolved


def looks_like_title_row(row: Sequence[Any]) -> bool:
    joined = " ".join(cell_text(c) for c in row)
    return bool(_TITLE_PATTERN.search(joined) or _DATESTAMP_PATTERN.search(joined.lower()))


def detect_title_header(rows: Sequence[Sequence[Any]], scan_rows: int = HEADER_SCAN_ROWS) -> int:
    """
    Header row index for keyword-tool exports that start with a title row.

    Returns 0 unless row 0 looks like an exporter title; then the first later
    row with at least four filled cells, not all numeric, is the header.
    """
    if not rows or not looks_like_title_row(rows[0]):
        return 0
    for i in range(1, min(scan_rows, len(rows))):
        filled = [cell_text(c) for c in rows[i] if cell_text(c)]
        numeric = [c for c in filled if _NUMERIC_LEADING.match(c)]
        if len(filled) >= 4 and len(numeric) < len(filled):
            return i
    return 0
