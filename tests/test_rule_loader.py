"""
Tests for loading rule tables from CSV, XLSX and JSON files.
"""

import json
import sys
from pathlib import Path

import pandas as pd
import pytest

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from research_engine.models import OverageRule
from research_engine.rule_loader import (
    load_fba_fee_rules,
    load_referral_rules,
    load_size_tier_rules,
    normalize_column,
)


def test_normalize_column():
    assert normalize_column(" Fee Percent ") == "fee_percent"
    assert normalize_column("Length + Girth (max)") == "length_girth_max"


def test_referral_rules_from_csv(tmp_path):
    path = tmp_path / "referral.csv"
    path.write_text(
        "Category,Fee Percent,Price Min,Price Max,Apply To,Min Fee\n"
        "Home & Kitchen,8%,0,10,portion,0.30\n"
        "Home & Kitchen,15,10,,Portion,0.30\n"
        "Toys,,0,,total,\n",
        encoding="utf-8",
    )
    rules = load_referral_rules(path)
    assert len(rules) == 2
    first, second = rules
    assert first.category == "Home & Kitchen"
    assert first.fee_percent == pytest.approx(0.08)
    assert first.price_max == 10.0
    assert first.apply_to == "portion"
    assert first.min_fee_usd == pytest.approx(0.30)
    assert second.fee_percent == pytest.approx(0.15)
    assert second.price_max is None
    assert second.apply_to == "portion"


def test_size_tier_rules_from_xlsx(tmp_path):
    path = tmp_path / "tiers.xlsx"
    pd.DataFrame([
        {"Tier": "Small Standard", "Longest Max": 15, "Median Max": 12, "Shortest Max": 0.75,
         "Shipping Weight Max": 16, "Unit Length": "in", "Unit Weight": "oz"},
        {"Tier": "Large Standard", "Longest Max": 18, "Median Max": 14, "Shortest Max": 8,
         "Shipping Weight Max": 20, "Unit Length": "IN", "Unit Weight": "LB"},
    ]).to_excel(path, index=False, engine="openpyxl")

    rules = load_size_tier_rules(path)
    assert [r.tier for r in rules] == ["Small Standard", "Large Standard"]
    assert rules[0].shortest_max == 0.75
    assert rules[0].unit_weight == "oz"
    assert rules[1].unit_weight == "lb"
    assert rules[1].length_girth_max is None


def test_fba_fee_rules_from_json(tmp_path):
    path = tmp_path / "fba.json"
    path.write_text(json.dumps({"rules": [
        {"tier": "Small Standard", "unit": "oz", "weight_min": 0, "weight_max": 16, "fee_usd": 3.22},
        {
            "tier": "Large Standard", "unit": "lb", "weight_min": 3, "weight_max": 20, "base_usd": 6.92,
            "overage_rules": [{"over_threshold_value": 3, "step_value": 0.25, "step_fee_usd": 0.08}],
        },
    ]}))
    rules = load_fba_fee_rules(path)
    assert rules[0].fee_usd == 3.22
    assert rules[0].overage_rules == []
    assert rules[1].base_usd == 6.92
    assert rules[1].overage_rules == [OverageRule(3.0, 0.25, 0.08, "lb")]


def test_fba_fee_rules_with_flat_overage_columns(tmp_path):
    path = tmp_path / "fba.csv"
    path.write_text(
        "Tier,Unit,Weight Min,Weight Max,Base USD,Over Threshold Value,Step Value,Step Fee USD\n"
        "Large Standard,lb,3,20,6.92,3,0.25,0.08\n",
        encoding="utf-8",
    )
    [rule] = load_fba_fee_rules(path)
    assert rule.overage_rules == [OverageRule(3.0, 0.25, 0.08, "lb")]


def test_unsupported_format(tmp_path):
    path = tmp_path / "rules.txt"
    path.write_text("nothing")
    with pytest.raises(ValueError):
        load_referral_rules(path)
