"""
Month bucket helpers.

Buckets are "YYYY-MM" months or fixed tokens ("overall", "top10").
"""

from __future__ import annotations

import re
from typing import Any

_YYYYMM = re.compile(r"(\d{4})(\d{2})(?!\d)")
_YYYY_SEP_MM = re.compile(r"(\d{4})[-_](\d{2})(?!\d)")
_MONTH_BUCKET = re.compile(r"^\d{4}-\d{2}$")
_LOOSE_MONTH = re.compile(r"(\d{4})[-_/]?(\d{2})")
_MM_SLASH_YYYY = re.compile(r"^(\d{1,2})/(\d{4})$")
_LEGACY_BUCKET = re.compile(r"^\d{3,4}$")


def _valid_month(month: str) -> bool:
    return 1 <= int(month) <= 12


def detect_month_from_filename(filename: str | None) -> str | None:
    """
    Detect a YYYY-MM month in a filename.

    "US-Market-202508-Home.xlsx" -> "2025-08"; "report_2025-03.xlsx" -> "2025-03".
    """
    if not filename:
        return None
    name = str(filename)
    for pattern in (_YYYYMM, _YYYY_SEP_MM):
        for match in pattern.finditer(name):
            year, month = match.group(1), match.group(2)
            if _valid_month(month):
                return f"{year}-{month}"
    return None


def is_month_bucket(bucket: Any) -> bool:
    return bool(_MONTH_BUCKET.match(str(bucket or "")))


def is_legacy_bucket(bucket: Any) -> bool:
    """3-4 digit buckets written by older imports that used a value column as time."""
    return bool(_LEGACY_BUCKET.match(str(bucket or "")))


def coerce_month(bucket: Any, default_month: str | None = None) -> str | None:
    """Map a stored bucket onto YYYY-MM, falling back to the dataset month."""
    s = str(bucket or "").strip()
    if _MONTH_BUCKET.match(s):
        return s
    if re.fullmatch(r"\d{6}", s):
        return f"{s[:4]}-{s[4:6]}"
    match = _LOOSE_MONTH.search(s)
    if match:
        return f"{match.group(1)}-{match.group(2)}"
    return default_month or s or None


def normalize_bucket(raw: Any, bucket_format: str | None = None) -> str:
    """Normalize a bucket cell according to a declared format (YYYYMM or MM/YYYY)."""
    bucket = str(raw).strip()
    if bucket_format == "YYYYMM" and re.fullmatch(r"\d{6}", bucket):
        return f"{bucket[:4]}-{bucket[4:6]}"
    if bucket_format == "MM/YYYY":
        match = _MM_SLASH_YYYY.match(bucket)
        if match:
            return f"{match.group(2)}-{match.group(1).zfill(2)}"
    return bucket


def month_compact(bucket: str) -> str:
    """'2025-08' -> '202508'."""
    return bucket.replace("-", "")
