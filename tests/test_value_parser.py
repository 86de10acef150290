"""
Unit tests for spreadsheet cell parsing.
"""

import math
import sys
from pathlib import Path

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from research_engine.value_parser import (
    extract_number,
    is_blank,
    parse_numeric_value,
    parse_positive,
    to_fraction,
    to_percent_points,
)


def test_parse_currency():
    assert parse_numeric_value("$1,234.56") == 1234.56
    assert parse_numeric_value("AED 1,234.56") == 1234.56
    assert parse_numeric_value("€12") == 12.0


def test_parse_percent_decimal():
    assert parse_numeric_value("45%") == 0.45
    assert parse_numeric_value("12.5%") == 0.125


def test_parse_parentheses_negative():
    assert parse_numeric_value("(1,234)") == -1234.0
    assert parse_numeric_value("-3.5") == -3.5


def test_parse_european_decimal():
    assert parse_numeric_value("1.234,56") == 1234.56
    assert parse_numeric_value("12,5") == 12.5


def test_parse_null_tokens():
    for token in (None, "", "  ", "N/A", "null", "-", "--", float("nan")):
        assert parse_numeric_value(token) is None, token


def test_non_finite_and_booleans_rejected():
    assert parse_numeric_value(float("inf")) is None
    assert parse_numeric_value(True) is None
    assert extract_number(float("-inf")) is None


def test_unparseable_text():
    assert parse_numeric_value("abc") is None
    assert parse_numeric_value("12abc") is None


def test_extract_number_with_units():
    assert extract_number("0.24 lb") == 0.24
    assert extract_number("64.54 in³") == 64.54
    assert extract_number("#3") == 3.0
    assert extract_number("lb") is None
    assert extract_number(7) == 7.0


def test_parse_positive():
    assert parse_positive("15.99") == 15.99
    assert parse_positive(0) is None
    assert parse_positive("-2") is None
    assert parse_positive("") is None


def test_to_percent_points():
    assert to_percent_points("45%") == 45.0
    assert to_percent_points(0.45) == 45.0
    assert to_percent_points(83) == 83.0
    assert to_percent_points("n/a") is None


def test_to_fraction():
    assert to_fraction("4.5%") == 0.045
    assert math.isclose(to_fraction(4.5), 0.045)
    assert to_fraction(0.045) == 0.045
    assert to_fraction(None) is None


def test_is_blank():
    assert is_blank(None)
    assert is_blank("   ")
    assert is_blank(float("nan"))
    assert not is_blank(0)
    assert not is_blank("0")
