"""
Shared numeric parsing utilities for spreadsheet cells.

`parse_numeric_value` strips currencies, thousands separators and percent
signs; percent text is normalized to decimals (e.g., "45%" -> 0.45).
Sheet-level shares are then expressed in percentage points with
`to_percent_points`, ads ratios as fractions with `to_fraction`.
"""

from __future__ import annotations

import math
import re
from typing import Any

import pandas as pd

_NULL_TOKENS = {"", "null", "n/a", "na", "none", "nan", "-", "--"}
_CURRENCY_CODES = [
    "usd", "aed", "sar", "gbp", "eur", "jpy", "cny", "cad", "aud",
    "chf", "inr", "krw", "sek", "nok", "dkk",
]
_CURRENCY_SYMBOLS = r"[$€£¥]"
_NON_NUMERIC = re.compile(r"[^0-9.\-]")


def is_blank(value: Any) -> bool:
    """True for None/NaN cells and strings that are empty after trimming."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _strip_currency_tokens(text: str) -> str:
    pattern = r"\b(" + "|".join(_CURRENCY_CODES) + r")\b"
    return re.sub(pattern, "", text, flags=re.IGNORECASE)


def _normalize_number_string(text: str) -> str:
    # Currency codes first; "AED1" has no word boundary once spaces are gone
    cleaned = _strip_currency_tokens(text)
    cleaned = cleaned.replace(" ", "").replace("\u00a0", "")
    cleaned = re.sub(_CURRENCY_SYMBOLS, "", cleaned)

    # Handle European decimals: "1.234,56" -> "1234.56"
    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "")
            cleaned = cleaned.replace(",", ".")
    elif "," in cleaned and "." not in cleaned:
        # Treat comma as decimal if it looks like cents (one or two digits)
        parts = cleaned.split(",")
        if len(parts) == 2 and len(parts[-1]) in (1, 2):
            cleaned = ".".join(parts)
        else:
            cleaned = cleaned.replace(",", "")

    cleaned = cleaned.replace(",", "")
    cleaned = cleaned.replace("%", "")
    cleaned = cleaned.strip()
    return cleaned


def _parse_cell(value: Any) -> tuple[float | None, bool]:
    """Return the bare number in a cell and whether it was written as a percent."""
    if is_blank(value) or isinstance(value, bool):
        return None, False

    if isinstance(value, (int, float)):
        numeric = float(value)
        return (numeric if math.isfinite(numeric) else None), False

    text = str(value).strip()
    if text.lower() in _NULL_TOKENS:
        return None, False

    is_negative = False
    if text.startswith("(") and text.endswith(")"):
        is_negative = True
        text = text[1:-1].strip()
    if text.startswith("-"):
        is_negative = True

    is_percentage = "%" in text
    text = text.replace("+", "")

    cleaned = _normalize_number_string(text)
    if cleaned.lower() in _NULL_TOKENS:
        return None, is_percentage

    try:
        numeric = float(cleaned)
    except ValueError:
        return None, is_percentage

    if not math.isfinite(numeric):
        return None, is_percentage

    if is_negative:
        numeric = -abs(numeric)

    return numeric, is_percentage


def parse_numeric_value(value: Any) -> float | None:
    """
    Parse a raw cell into a float.

    Percent text is returned as a decimal ("45%" -> 0.45). Non-finite values,
    booleans and unparseable text return None.
    """
    numeric, is_percentage = _parse_cell(value)
    if numeric is not None and is_percentage:
        return numeric / 100.0
    return numeric


def extract_number(value: Any) -> float | None:
    """
    Lenient parse for cells carrying units or markers ("0.24 lb", "#3").

    Everything except digits, dots and minus signs is dropped before parsing.
    """
    if is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        numeric = float(value)
        return numeric if math.isfinite(numeric) else None
    cleaned = _NON_NUMERIC.sub("", str(value))
    if cleaned in ("", "-", ".", "-."):
        return None
    try:
        numeric = float(cleaned)
    except ValueError:
        return None
    return numeric if math.isfinite(numeric) else None


def parse_positive(value: Any) -> float | None:
    """Parse a cell that must be strictly positive (sales, price, sample size)."""
    numeric = parse_numeric_value(value)
    if numeric is None or numeric <= 0:
        return None
    return numeric


def to_percent_points(value: Any) -> float | None:
    """
    Normalize a share to percentage points (0-100).

    "45%" -> 45.0, 0.45 -> 45.0, 83 -> 83.0. Plain numbers in (0, 1] are
    treated as fractions.
    """
    numeric, is_percent_text = _parse_cell(value)
    if numeric is None or is_percent_text:
        return numeric
    if 0 < numeric <= 1:
        return round(numeric * 100.0, 10)
    return numeric


def to_fraction(value: Any) -> float | None:
    """
    Normalize an ads ratio to a fraction (0-1).

    "4.5%" -> 0.045, 4.5 -> 0.045, 0.045 -> 0.045. Plain numbers above 1 are
    treated as percentage points.
    """
    numeric, is_percent_text = _parse_cell(value)
    if numeric is None:
        return None
    if is_percent_text or numeric > 1:
        return numeric / 100.0
    return numeric
