"""
Configuration Module - Centralized Configuration Hub

Contains all configurable parameters for the research ingestion engine:
- Directory paths and store location
- Business assumptions used by derived metrics
- Header keyword sets and column alias definitions per sheet shape
- Sheet-name routing tokens
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any


# ============================================================================
# DIRECTORY PATHS
# ============================================================================

# Project root directory (parent of research_engine/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Data/persistence directories
DATA_PATH = PROJECT_ROOT / "data"
STORE_PATH = Path(os.environ.get("RESEARCH_ENGINE_STORE", str(DATA_PATH / "research.duckdb")))

# Configuration file directory
CONFIG_DIR = PROJECT_ROOT / "config"


# ============================================================================
# BUSINESS ASSUMPTIONS (share of price)
# ============================================================================
# Global defaults for the cost-cap / profit chain. They may be overridden via
# config/assumptions.json but are never per category.
#
# Note: Assumptions are loaded from JSON files if available (see bottom of file)
# Default values are defined in _ASSUMPTIONS_DEFAULT below.

_ASSUMPTIONS_DEFAULT = {
    "ads_pct": 0.20,
    "profit_target_pct": 0.20,
    "cogs_assumed_pct": 0.20,
}


# ============================================================================
# PARSING CONSTANTS
# ============================================================================

# Panel reporting convention: Avg. Monthly Revenue is per 1% of the panel
REVENUE_PANEL_MULTIPLIER = 100

# Volumetric divisor for dimensional weight (in^3 per lb)
DIMENSIONAL_WEIGHT_DIVISOR = 139

# Rows inspected when looking for the header row
HEADER_SCAN_ROWS = 10

# Token Jaccard threshold for fuzzy category matching
CATEGORY_SIMILARITY_THRESHOLD = 0.5

# Slack when comparing dimensions/weights against size-tier maxima
DIMENSION_TOLERANCE = 1e-6

# Listing concentration covers ranks 1..TOP_LISTING_RANK
TOP_LISTING_RANK = 10

# Unit conversions
CM_PER_INCH = 2.54
OZ_PER_LB = 16

# Fixed bucket tokens
OVERALL_BUCKET = "overall"
TOP10_BUCKET = "top10"


# ============================================================================
# SHEET ROUTING
# ============================================================================

MARKET_ANALYSIS_SHEET = "Market Analysis"
LISTING_CONCENTRATION_SHEET = "Listing Concentration"
FULFILLMENT_SHEET = "Fulfillment"
ORIGIN_OF_SELLER_SHEET = "Origin of Seller"
PUBLICATION_TIME_SHEET = "Publication Time"
ADS_METRICS_SHEET = "Ads Metrics"
MARKET_RESEARCH_SHEET = "Market-research"
DERIVED_SHEET = "Derived"
MANUAL_SHEET = "Manual"

# Processed in this order during auto-ingestion
STANDARD_SHEETS = [
    MARKET_ANALYSIS_SHEET,
    LISTING_CONCENTRATION_SHEET,
    FULFILLMENT_SHEET,
    ORIGIN_OF_SELLER_SHEET,
    PUBLICATION_TIME_SHEET,
]

MARKET_RESEARCH_SHEET_TOKEN = "market-research"
ADS_SHEET_TOKENS = ("batch", "ads", "christmas")


# ============================================================================
# HEADER KEYWORDS
# ============================================================================
# Cells containing any of these (lower-cased) count towards a header row score

MARKET_ANALYSIS_KEYWORDS = [
    "avg. monthly unit sales",
    "avg monthly unit sales",
    "avg. monthly revenue",
    "avg monthly revenue",
    "avg. price",
    "avg price",
    "avg. ratings",
    "avg ratings",
    "avg. rating",
    "avg rating",
    "sample size",
    "sample type",
]

ADS_KEYWORDS = [
    # direct ads metrics
    "ctr", "cpc", "roas", "cr", "acos", "tacos", "cpp", "click share", "clickshare",
    # raw columns used to compute category metrics
    "clicks", "impressions", "monthly sales", "monthly searches", "ppc bid",
    "avg price", "price",
]

MARKET_RESEARCH_KEYWORDS = ["avg.weight", "avg weight", "avg.volume", "avg volume"]


# ============================================================================
# COLUMN ALIASES
# ============================================================================
# Per sheet shape, an ordered mapping of target -> predicate definition.
#   contains: any substring (lower-cased header) satisfies the target
#   regex:    any regex search satisfies the target
#   excludes: header is rejected if it contains any of these
#   required: missing column raises MissingColumnError
#
# Note: Column aliases are loaded from JSON files if available (see bottom of file)
# Default values are defined in _COLUMN_ALIASES_DEFAULT below.

_COLUMN_ALIASES_DEFAULT: dict[str, dict[str, dict[str, Any]]] = {
    "market_analysis": {
        "sales": {"contains": ["avg. monthly unit sales", "avg monthly unit sales"], "required": True},
        "revenue": {"contains": ["avg. monthly revenue", "avg monthly revenue"], "required": True},
        "time": {"contains": ["month", "date", "period", "time"], "required": True},
        "sample_size": {"contains": ["sample size", "sample_size", "samplesize"], "required": True},
        "sample_type": {"contains": ["sample type", "sample_type", "sampletype"], "required": True},
        "price": {"contains": ["avg. price", "avg price"], "required": True},
        "ratings": {
            "contains": ["avg. ratings", "avg ratings"],
            "regex": [r"\bavg\.?\s+ratings\b"],
            "required": True,
        },
        "rating": {
            "contains": ["avg. rating", "avg rating"],
            "regex": [r"\bavg\.?\s+rating\b"],
            "excludes": ["ratings"],
            "required": True,
        },
    },
    "fulfillment": {
        "fulfillment": {"contains": ["fulfillment"], "required": True},
        "proportion": {
            "contains": ["asins proportion"],
            "regex": [r"asin.*proportion", r"proportion.*asin"],
            "required": True,
        },
    },
    "publication_time": {
        "publication_time": {"contains": ["publication time"], "required": True},
        "sales_proportion": {"contains": ["sales proportion"], "required": True},
    },
    "origin_of_seller": {
        "origin": {"contains": ["origin of seller"], "required": True},
        "sales_proportion": {"contains": ["sales proportion"], "required": True},
    },
    "listing_concentration": {
        "rank": {"contains": ["rank"], "required": True},
        "sales_proportion": {"contains": ["sales proportion"], "required": True},
    },
    "market_research": {
        "weight": {"contains": ["avg.weight", "avg weight"], "required": True},
        "volume": {"contains": ["avg.volume", "avg volume"], "required": True},
    },
    # Ads headers are matched after punctuation is collapsed to spaces
    "ads_direct": {
        "ctr": {"contains": ["ctr"]},
        "cpc": {"contains": ["cpc"]},
        "roas": {"contains": ["roas"]},
        "cr": {"contains": ["cr click", "cr search", "cr"]},
        "acos": {"contains": ["acos"], "excludes": ["tacos"]},
        "tacos": {"contains": ["tacos"]},
        "cpp": {"contains": ["cpp"]},
    },
    "ads_raw": {
        "clicks": {"contains": ["clicks", "total clicks", "sum clicks", "click count", "no clicks", "click"], "excludes": ["share"]},
        "impressions": {"contains": ["impressions", "impr", "impression", "imprs", "total impressions"]},
        "sales": {"contains": ["monthly sales", "sales", "orders", "order", "purchase", "purchases", "sales units"]},
        "searches": {"contains": ["monthly searches", "searches", "keyword searches", "search volume", "volume", "sv"]},
        "bid": {"contains": ["ppc bid", "bid", "cpc bid", "avg cpc bid", "suggested bid"]},
        "click_share": {"contains": ["click share %", "click share", "clickshare", "clicks share", "click share pct"]},
        "avg_price": {"contains": ["avg price", "average price", "price avg", "avg price usd"]},
    },
}


# ============================================================================
# SUMMARY SETTINGS
# ============================================================================

# Market Analysis metrics only trusted from the "All" cohort in summaries
SAMPLE_TYPE_RESTRICTED_METRICS = [
    "sales_units",
    "revenue",
    "avg_price",
    "avg_ratings",
    "avg_rating",
]

# Category defaults written back after direct ads ingestion
ADS_DEFAULT_FIELDS = {
    "ctr": "default_ctr",
    "cpc": "default_cpc",
    "roas": "default_roas",
    "cr": "default_cr",
    "acos": "default_acos",
    "tacos": "default_tacos",
    "cpp": "default_cpp",
}


# ============================================================================
# CONFIG LOADING AND VALIDATION
# ============================================================================

def _load_assumptions_from_json(defaults: dict[str, float]) -> dict[str, float]:
    """Load business assumptions from JSON file, merge with defaults."""
    assumptions_file = CONFIG_DIR / "assumptions.json"
    if assumptions_file.exists():
        try:
            with open(assumptions_file, "r") as f:
                data = json.load(f)
                if "assumptions" in data:
                    merged = defaults.copy()
                    merged.update({k: float(v) for k, v in data["assumptions"].items()})
                    return merged
        except Exception as e:
            import warnings
            warnings.warn(f"Failed to load assumptions from JSON: {e}. Using defaults.")
    return defaults


def _load_column_aliases_from_json(
    defaults: dict[str, dict[str, dict[str, Any]]],
) -> dict[str, dict[str, dict[str, Any]]]:
    """Load column aliases from JSON file, merge per sheet shape with defaults."""
    aliases_file = CONFIG_DIR / "column_aliases.json"
    if aliases_file.exists():
        try:
            with open(aliases_file, "r") as f:
                data = json.load(f)
                if "column_aliases" in data:
                    merged = {shape: dict(columns) for shape, columns in defaults.items()}
                    for shape, columns in data["column_aliases"].items():
                        merged.setdefault(shape, {}).update(columns)
                    return merged
        except Exception as e:
            import warnings
            warnings.warn(f"Failed to load column aliases from JSON: {e}. Using defaults.")
    return defaults


# Load from JSON if available, otherwise use defaults
ASSUMPTIONS = _load_assumptions_from_json(_ASSUMPTIONS_DEFAULT)
COLUMN_ALIASES = _load_column_aliases_from_json(_COLUMN_ALIASES_DEFAULT)

ADS_PCT = ASSUMPTIONS["ads_pct"]
PROFIT_TARGET_PCT = ASSUMPTIONS["profit_target_pct"]
COGS_ASSUMED_PCT = ASSUMPTIONS["cogs_assumed_pct"]


def load_config() -> dict[str, Any]:
    """
    Load and return all configuration as a dictionary.

    Returns:
        Dictionary with all configuration values.
    """
    return {
        "project_root": PROJECT_ROOT,
        "data_path": DATA_PATH,
        "store_path": STORE_PATH,
        "config_dir": CONFIG_DIR,
        "assumptions": ASSUMPTIONS,
        "column_aliases": COLUMN_ALIASES,
        "standard_sheets": STANDARD_SHEETS,
        "header_scan_rows": HEADER_SCAN_ROWS,
        "category_similarity_threshold": CATEGORY_SIMILARITY_THRESHOLD,
        "dimensional_weight_divisor": DIMENSIONAL_WEIGHT_DIVISOR,
    }


def validate_config() -> tuple[bool, list[str]]:
    """
    Validate configuration settings.

    Returns:
        Tuple of (is_valid, list_of_errors).
    """
    errors = []

    for key, value in ASSUMPTIONS.items():
        if not isinstance(value, (int, float)) or not 0 <= value < 1:
            errors.append(f"Invalid assumption {key}: {value} (expected a share of price in [0, 1))")

    if sum(ASSUMPTIONS.get(k, 0) for k in ("ads_pct", "profit_target_pct")) >= 1:
        errors.append("ads_pct + profit_target_pct leaves no room for fees or COGS")

    for shape, columns in COLUMN_ALIASES.items():
        for target, definition in columns.items():
            if not definition.get("contains") and not definition.get("regex"):
                errors.append(f"Column alias {shape}.{target} has no contains/regex predicates")

    if not 0 < CATEGORY_SIMILARITY_THRESHOLD <= 1:
        errors.append(f"Invalid category similarity threshold: {CATEGORY_SIMILARITY_THRESHOLD}")

    return len(errors) == 0, errors


def ensure_directories() -> None:
    """Create required directories if they don't exist."""
    DATA_PATH.mkdir(parents=True, exist_ok=True)
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)


if __name__ == "__main__":
    # Validate configuration on direct execution
    print("=" * 60)
    print("Configuration Validation")
    print("=" * 60)
    is_valid, problems = validate_config()
    if is_valid:
        print("Configuration is valid.")
    else:
        for problem in problems:
            print(f"  - {problem}")
