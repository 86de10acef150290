"""
Workbook loading utilities.

Reads XLSX/XLS/XLSM workbooks (every sheet) or CSV files (a single sheet)
into raw row lists with no implied schema, and resolves expected sheet
names tolerantly.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pandas as pd

from research_engine.logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = get_logger(__name__)

ALLOWED_SUFFIXES = (".csv", ".xlsx", ".xls", ".xlsm")
CSV_ENCODINGS = ["utf-8", "latin-1", "cp1252", "iso-8859-1"]
CSV_DELIMITERS = [",", ";", "\t", "|"]

RawRows = list[list[Any]]


def _read_sample(path: Path, encoding: str, sample_size: int = 8192) -> str | None:
    try:
        with path.open("r", encoding=encoding, errors="replace") as handle:
            return handle.read(sample_size)
    except Exception as exc:
        logger.debug(f"Failed to read sample for {path} ({encoding}): {exc}")
        return None


def sniff_csv_delimiter(path: Path, encoding: str) -> str | None:
    sample = _read_sample(path, encoding)
    if not sample:
        return None
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=CSV_DELIMITERS)
        return dialect.delimiter
    except csv.Error:
        return None


def load_csv(
    path: Path,
    *,
    delimiter: str | None = None,
    encoding: str | None = None,
) -> pd.DataFrame:
    encodings_to_try = [encoding] if encoding else CSV_ENCODINGS
    last_error: Exception | None = None
    for candidate in encodings_to_try:
        try:
            sep = delimiter or sniff_csv_delimiter(path, candidate) or ","
            return pd.read_csv(path, encoding=candidate, sep=sep, header=None, dtype=object)
        except Exception as exc:
            last_error = exc
            continue
    raise ValueError(f"Failed to load CSV: {path}") from last_error


def load_excel(path: Path) -> dict[str, pd.DataFrame]:
    suffix = path.suffix.lower()
    engine = "openpyxl" if suffix in (".xlsx", ".xlsm") else None
    return pd.read_excel(path, engine=engine, sheet_name=None, header=None)


def _is_empty_row(row: list[Any]) -> bool:
    return not any(c is not None and str(c).strip() != "" for c in row)


def frame_to_rows(df: pd.DataFrame) -> RawRows:
    """Convert a header-less frame into raw rows (None for empty cells)."""
    if df.empty:
        return []
    clean = df.astype(object).where(pd.notna(df), None)
    return [list(row) for row in clean.values.tolist()]


def drop_leading_empty_rows(rows: RawRows) -> RawRows:
    start = 0
    while start < len(rows) and _is_empty_row(rows[start]):
        start += 1
    return rows[start:]


class Workbook:
    """Named sheets, each readable as raw rows."""

    def __init__(self, sheets: Mapping[str, RawRows], filename: str = ""):
        self._sheets = {name: list(rows) for name, rows in sheets.items()}
        self.filename = filename

    @classmethod
    def from_frames(cls, frames: Mapping[str, pd.DataFrame], filename: str = "") -> Workbook:
        return cls({name: frame_to_rows(df) for name, df in frames.items()}, filename)

    @property
    def sheet_names(self) -> list[str]:
        return list(self._sheets)

    def find_sheet(self, name: str) -> str | None:
        """Resolve a sheet name: exact, then case-insensitive, then containment."""
        if name in self._sheets:
            return name
        target = str(name or "").lower()
        if not target:
            return None
        for candidate in self._sheets:
            if candidate.lower() == target:
                return candidate
        for candidate in self._sheets:
            if target in candidate.lower():
                return candidate
        return None

    def find_sheet_containing(self, tokens: tuple[str, ...] | list[str]) -> str | None:
        for candidate in self._sheets:
            lowered = candidate.lower()
            if any(token in lowered for token in tokens):
                return candidate
        return None

    def read_sheet(self, name: str) -> RawRows:
        """Raw rows of a sheet with leading empty rows dropped; [] if absent."""
        actual = self.find_sheet(name)
        if actual is None:
            return []
        return drop_leading_empty_rows(self._sheets[actual])


def load_workbook(path: Path | str, *, delimiter: str | None = None, encoding: str | None = None) -> Workbook:
    """
    Load a workbook file into a Workbook.

    Args:
        path: XLSX/XLS/XLSM workbook or CSV file.
        delimiter: Optional CSV delimiter (sniffed when omitted).
        encoding: Optional CSV encoding (several are tried when omitted).

    Returns:
        Workbook with every sheet as raw rows.
    """
    file_path = Path(path)
    suffix = file_path.suffix.lower()

    if suffix == ".csv":
        frame = load_csv(file_path, delimiter=delimiter, encoding=encoding)
        return Workbook.from_frames({file_path.stem: frame}, file_path.name)
    if suffix in (".xlsx", ".xls", ".xlsm"):
        frames = load_excel(file_path)
        logger.debug(f"Loaded {len(frames)} sheet(s) from {file_path.name}")
        return Workbook.from_frames(frames, file_path.name)

    raise ValueError(f"Unsupported file format: {suffix}")
