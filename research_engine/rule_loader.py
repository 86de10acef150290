"""
Rule table loading.

Reads referral-fee, size-tier and FBA-fee rule tables from CSV, XLSX or JSON
into rule dataclasses. Column names are matched case-insensitively after
punctuation is collapsed to underscores, with a few common aliases.
"""

from __future__ import annotations

import json
import math
import re
from pathlib import Path
from typing import Any

import pandas as pd

from research_engine.file_loader import load_csv
from research_engine.logger import get_logger
from research_engine.models import FbaFeeRule, OverageRule, ReferralFeeRule, SizeTierRule
from research_engine.value_parser import extract_number, is_blank, to_fraction

logger = get_logger(__name__)

REFERRAL_ALIASES = {
    "category": ["category", "category_name", "product_category"],
    "fee_percent": ["fee_percent", "fee_pct", "referral_fee_percent", "referral_fee", "percent"],
    "price_min": ["price_min", "min_price", "from_price"],
    "price_max": ["price_max", "max_price", "to_price"],
    "apply_to": ["apply_to", "applies_to"],
    "min_fee_usd": ["min_fee_usd", "min_fee", "minimum_fee"],
}

SIZE_TIER_ALIASES = {
    "tier": ["tier", "size_tier", "name"],
    "longest_max": ["longest_max", "longest_side_max", "max_longest"],
    "median_max": ["median_max", "median_side_max", "max_median"],
    "shortest_max": ["shortest_max", "shortest_side_max", "max_shortest"],
    "length_girth_max": ["length_girth_max", "length_and_girth_max", "max_length_girth"],
    "shipping_weight_max": ["shipping_weight_max", "weight_max", "max_weight"],
    "unit_length": ["unit_length", "length_unit"],
    "unit_weight": ["unit_weight", "weight_unit"],
}

FBA_FEE_ALIASES = {
    "tier": ["tier", "size_tier"],
    "unit": ["unit", "weight_unit"],
    "weight_min": ["weight_min", "min_weight"],
    "weight_max": ["weight_max", "max_weight"],
    "fee_usd": ["fee_usd", "fee", "fulfillment_fee"],
    "base_usd": ["base_usd", "base_fee", "base"],
    "overage_rules": ["overage_rules", "overage"],
    "over_threshold_value": ["over_threshold_value", "threshold"],
    "over_threshold_unit": ["over_threshold_unit", "threshold_unit"],
    "step_value": ["step_value", "step"],
    "step_fee_usd": ["step_fee_usd", "step_fee"],
}


def normalize_column(name: Any) -> str:
    return re.sub(r"[^a-z0-9]+", "_", str(name).strip().lower()).strip("_")


def read_table(path: Path | str) -> pd.DataFrame:
    """Read a rule table file into a DataFrame with normalized column names."""
    file_path = Path(path)
    suffix = file_path.suffix.lower()
    if suffix == ".csv":
        raw = load_csv(file_path)
        df = raw.iloc[1:].reset_index(drop=True)
        df.columns = [normalize_column(c) for c in raw.iloc[0]]
        return df
    if suffix in (".xlsx", ".xlsm", ".xls"):
        engine = "openpyxl" if suffix in (".xlsx", ".xlsm") else None
        df = pd.read_excel(file_path, engine=engine, dtype=object)
    elif suffix == ".json":
        with open(file_path, "r") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("rules", [])
        df = pd.DataFrame(data)
    else:
        raise ValueError(f"Unsupported rule file format: {suffix}")
    df.columns = [normalize_column(c) for c in df.columns]
    return df


def _rows(df: pd.DataFrame, aliases: dict[str, list[str]]) -> list[dict[str, Any]]:
    """Rows as dicts keyed by canonical field name; blank cells become None."""
    mapping: dict[str, str] = {}
    for field_name, candidates in aliases.items():
        for candidate in candidates:
            if candidate in df.columns:
                mapping[field_name] = candidate
                break
    rows = []
    for record in df.to_dict(orient="records"):
        row = {}
        for field_name, column in mapping.items():
            value = record.get(column)
            row[field_name] = None if not isinstance(value, list) and is_blank(value) else value
        if any(v is not None for v in row.values()):
            rows.append(row)
    return rows


def _number(value: Any) -> float | None:
    numeric = extract_number(value)
    return numeric if numeric is not None and math.isfinite(numeric) else None


def _text(value: Any, default: str | None = None) -> str | None:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def referral_rules_from_frame(df: pd.DataFrame) -> list[ReferralFeeRule]:
    rules = []
    for row in _rows(df, REFERRAL_ALIASES):
        fee_percent = to_fraction(row.get("fee_percent"))
        if not row.get("category") or fee_percent is None:
            logger.debug(f"Skipping referral rule without category/fee: {row}")
            continue
        apply_to = (_text(row.get("apply_to"), "total") or "total").lower()
        rules.append(ReferralFeeRule(
            category=_text(row["category"]),
            fee_percent=fee_percent,
            price_min=_number(row.get("price_min")),
            price_max=_number(row.get("price_max")),
            apply_to="portion" if apply_to == "portion" else "total",
            min_fee_usd=_number(row.get("min_fee_usd")),
        ))
    return rules


def size_tier_rules_from_frame(df: pd.DataFrame) -> list[SizeTierRule]:
    rules = []
    for row in _rows(df, SIZE_TIER_ALIASES):
        if not row.get("tier"):
            continue
        rules.append(SizeTierRule(
            tier=_text(row["tier"]),
            longest_max=_number(row.get("longest_max")),
            median_max=_number(row.get("median_max")),
            shortest_max=_number(row.get("shortest_max")),
            length_girth_max=_number(row.get("length_girth_max")),
            shipping_weight_max=_number(row.get("shipping_weight_max")),
            unit_length=(_text(row.get("unit_length"), "in") or "in").lower(),
            unit_weight=(_text(row.get("unit_weight"), "lb") or "lb").lower(),
        ))
    return rules


def _overage_rules(row: dict[str, Any]) -> list[OverageRule]:
    raw = row.get("overage_rules")
    if isinstance(raw, str):
        raw = json.loads(raw)
    if isinstance(raw, dict):
        raw = [raw]
    entries = list(raw or [])
    if not entries and row.get("over_threshold_value") is not None:
        entries = [row]

    overage = []
    for entry in entries:
        threshold = _number(entry.get("over_threshold_value"))
        step = _number(entry.get("step_value"))
        if threshold is None or not step:
            continue
        overage.append(OverageRule(
            over_threshold_value=threshold,
            step_value=step,
            step_fee_usd=_number(entry.get("step_fee_usd")) or 0.0,
            over_threshold_unit=(_text(entry.get("over_threshold_unit"), "lb") or "lb").lower(),
        ))
    return overage


def fba_fee_rules_from_frame(df: pd.DataFrame) -> list[FbaFeeRule]:
    rules = []
    for row in _rows(df, FBA_FEE_ALIASES):
        if not row.get("tier"):
            continue
        rules.append(FbaFeeRule(
            tier=_text(row["tier"]),
            unit=(_text(row.get("unit"), "oz") or "oz").lower(),
            weight_min=_number(row.get("weight_min")),
            weight_max=_number(row.get("weight_max")),
            fee_usd=_number(row.get("fee_usd")),
            base_usd=_number(row.get("base_usd")),
            overage_rules=_overage_rules(row),
        ))
    return rules


def load_referral_rules(path: Path | str) -> list[ReferralFeeRule]:
    rules = referral_rules_from_frame(read_table(path))
    logger.info(f"Loaded {len(rules)} referral fee rules from {Path(path).name}")
    return rules


def load_size_tier_rules(path: Path | str) -> list[SizeTierRule]:
    rules = size_tier_rules_from_frame(read_table(path))
    logger.info(f"Loaded {len(rules)} size tier rules from {Path(path).name}")
    return rules


def load_fba_fee_rules(path: Path | str) -> list[FbaFeeRule]:
    rules = fba_fee_rules_from_frame(read_table(path))
    logger.info(f"Loaded {len(rules)} FBA fee rules from {Path(path).name}")
    return rules
