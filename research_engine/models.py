"""
Data model for research ingestion.

MetricRecord is the canonical time-series row; the rule dataclasses mirror
the externally supplied fee/tier tables; Category and Dataset carry the
state the engine reads as fallbacks and updates after ingestion.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from research_engine.errors import IngestionError

VALID_UNITS = ("usd", "pct", "units", "count", "ratio")

# Dataset lifecycle
STATUS_UPLOADED = "uploaded"
STATUS_PARSED = "parsed"
STATUS_READY = "ready"
STATUS_FAILED = "failed"

# Constants the engine may write back onto a Category
CATEGORY_CONSTANT_FIELDS = (
    "fba_fee_usd",
    "size_tier_estimate",
    "avg_weight_lb",
    "avg_volume_in3",
    "estimated_side_in",
    "estimated_dimensional_weight_lb",
    "estimated_shipping_weight_lb",
    "referral_fee_percent_default",
    "referral_min_fee_usd",
    "default_ctr",
    "default_cpc",
    "default_roas",
    "default_cr",
    "default_acos",
    "default_tacos",
    "default_cpp",
)


@dataclass
class MetricRecord:
    """One metric value for a (dataset, bucket) pair."""

    dataset_id: int
    category_id: int
    metric: str
    bucket: str
    value: float
    unit: str
    source_sheet: str
    sample_size: float | None = None
    sample_type: str | None = None
    fee_percent: float | None = None
    base_price: float | None = None
    created_at: datetime | None = None
    record_id: int | None = None

    def __post_init__(self) -> None:
        if self.unit not in VALID_UNITS:
            raise ValueError(f"Unknown unit '{self.unit}' for metric {self.metric}")
        if self.value is None or not math.isfinite(self.value):
            raise ValueError(f"Metric {self.metric} has non-finite value {self.value!r}")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.created_at is not None:
            data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class ReferralFeeRule:
    category: str
    fee_percent: float
    price_min: float | None = None
    price_max: float | None = None
    apply_to: str = "total"  # "total" or "portion"
    min_fee_usd: float | None = None

    @property
    def lower_bound(self) -> float:
        return self.price_min or 0.0

    @property
    def upper_bound(self) -> float:
        # 0 and missing both mean "no upper limit"
        if self.price_max is None or self.price_max == 0:
            return math.inf
        return self.price_max

    @property
    def price_span(self) -> float:
        return self.upper_bound - self.lower_bound


@dataclass
class SizeTierRule:
    tier: str
    longest_max: float | None = None
    median_max: float | None = None
    shortest_max: float | None = None
    length_girth_max: float | None = None
    shipping_weight_max: float | None = None
    unit_length: str = "in"  # "in" or "cm"
    unit_weight: str = "lb"  # "lb" or "oz"


@dataclass
class OverageRule:
    over_threshold_value: float
    step_value: float
    step_fee_usd: float = 0.0
    over_threshold_unit: str = "lb"


@dataclass
class FbaFeeRule:
    tier: str
    unit: str = "oz"
    weight_min: float | None = None
    weight_max: float | None = None
    fee_usd: float | None = None
    base_usd: float | None = None
    overage_rules: list[OverageRule] = field(default_factory=list)


@dataclass
class Category:
    id: int
    name: str
    description: str | None = None
    fba_fee_usd: float | None = None
    size_tier_estimate: str | None = None
    avg_weight_lb: float | None = None
    avg_volume_in3: float | None = None
    estimated_side_in: float | None = None
    estimated_dimensional_weight_lb: float | None = None
    estimated_shipping_weight_lb: float | None = None
    referral_fee_percent_default: float | None = None
    referral_min_fee_usd: float | None = None
    default_ctr: float | None = None
    default_cpc: float | None = None
    default_roas: float | None = None
    default_cr: float | None = None
    default_acos: float | None = None
    default_tacos: float | None = None
    default_cpp: float | None = None


@dataclass
class SheetInfo:
    name: str
    columns: list[str] = field(default_factory=list)
    rows: int = 0


@dataclass
class Dataset:
    category_id: int
    original_filename: str = ""
    time_range_from: str | None = None  # detected YYYY-MM
    time_range_to: str | None = None
    status: str = STATUS_UPLOADED
    sheets: list[SheetInfo] = field(default_factory=list)
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class CategoryConstantUpdate:
    """Fields to write back onto a Category, applied by the caller."""

    category_id: int
    fields: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        unknown = set(self.fields) - set(CATEGORY_CONSTANT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown category constant(s): {sorted(unknown)}")

    @property
    def is_empty(self) -> bool:
        return not self.fields


@dataclass
class ParseResult:
    """Outcome of ingesting one sheet: records on success, a typed error otherwise."""

    sheet: str
    ok: bool
    records: list[MetricRecord] = field(default_factory=list)
    error: IngestionError | None = None
    category_update: CategoryConstantUpdate | None = None
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    # Source sheets whose stored records this result replaces
    replaces: list[str] = field(default_factory=list)

    @classmethod
    def success(
        cls,
        sheet: str,
        records: list[MetricRecord],
        message: str = "",
        category_update: CategoryConstantUpdate | None = None,
        replaces: list[str] | None = None,
        **details: Any,
    ) -> ParseResult:
        owned = list(replaces or [])
        for record in records:
            if record.source_sheet not in owned:
                owned.append(record.source_sheet)
        return cls(
            sheet=sheet,
            ok=True,
            records=records,
            category_update=category_update,
            message=message,
            details=details,
            replaces=owned,
        )

    @classmethod
    def failure(cls, sheet: str, error: IngestionError) -> ParseResult:
        return cls(sheet=sheet, ok=False, error=error, message=error.message)

    @property
    def inserted(self) -> int:
        return len(self.records)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"sheet": self.sheet, "ok": self.ok, "message": self.message}
        if self.ok:
            payload["inserted"] = self.inserted
            payload["records"] = [r.to_dict() for r in self.records]
            if self.details:
                payload["details"] = self.details
        else:
            payload.update(self.error.to_dict() if self.error else {})
        return payload
