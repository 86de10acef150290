"""
Typed ingestion errors.

Sheet-level problems are raised by parsers and converted into a failed
ParseResult by the ingestion layer; none of them should reach the caller
of `ingest_sheet` as an exception.
"""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for user-visible ingestion failures."""

    def __init__(self, message: str, sheet: str | None = None):
        super().__init__(message)
        self.message = message
        self.sheet = sheet

    def to_dict(self) -> dict[str, str | None]:
        return {"error": type(self).__name__, "message": self.message, "sheet": self.sheet}


class MissingColumnError(IngestionError):
    """A required column could not be resolved in the detected header row."""

    def __init__(self, column: str, sheet: str | None = None):
        where = f" in {sheet} sheet" if sheet else ""
        super().__init__(f"{column} column not found{where}", sheet)
        self.column = column


class NoValidRowsError(IngestionError):
    """Columns were found but no row passed validation."""

    def __init__(self, sheet: str | None = None, detail: str | None = None):
        message = detail or f"No valid data found in {sheet or 'sheet'}"
        super().__init__(message, sheet)


class NoMatchingRuleError(IngestionError):
    """A rule-table lookup returned nothing."""


class NoMatchingTierError(NoMatchingRuleError):
    pass


class NoMatchingFeeBandError(NoMatchingRuleError):
    pass


class EnrichmentFailure(IngestionError):
    """An optional lookup failed; logged and swallowed by callers."""


class PersistenceError(IngestionError):
    """The metric store rejected a read or write."""
