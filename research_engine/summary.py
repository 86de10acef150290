"""
Summary Module - Read-side queries over stored metric records

Provides:
- metrics_summary: reconciled month series for one dataset, with ROAS/ACOS/TACOS
  derived per bucket from stored CR, CPC, avg price and click share
- category_detail: per-metric summary, month series and derived profitability
  across every dataset of a category
- migrate_buckets: re-bucket records written with a numeric value as bucket
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from research_engine.config import OVERALL_BUCKET, SAMPLE_TYPE_RESTRICTED_METRICS
from research_engine.derived_metrics import DerivedMetricsCalculator
from research_engine.logger import debug_watcher, get_logger
from research_engine.periods import coerce_month, is_legacy_bucket, is_month_bucket
from research_engine.reconciler import TimeBucketReconciler, is_all_sample

if TYPE_CHECKING:
    from collections.abc import Sequence

    from research_engine.metric_store import DuckDBMetricStore

logger = get_logger(__name__)

DERIVED_UNITS = {
    "cogs_cap": "usd",
    "profit": "usd",
    "margin": "pct",
    "roi": "pct",
    "roas": "ratio",
    "acos": "pct",
    "tacos": "pct",
}


def _finite(value: Any) -> float | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        return float(value)
    return None


@dataclass
class MetricsSummary:
    time_buckets: list[str] = field(default_factory=list)
    series_by_metric: dict[str, dict[str, float]] = field(default_factory=dict)

    def put(self, metric: str, bucket: str, value: float | None) -> None:
        if _finite(value) is None:
            return
        self.series_by_metric.setdefault(metric, {})[bucket] = value

    def to_dict(self) -> dict[str, Any]:
        return {"timeBuckets": self.time_buckets, "seriesByMetric": self.series_by_metric}


def _bucket_price(series: dict[str, dict[str, float]], bucket: str) -> float | None:
    """Bucket avg price, else the overall one, else any stored value."""
    prices = series.get("avg_price", {})
    price = _finite(prices.get(bucket))
    if price is None:
        price = _finite(prices.get(OVERALL_BUCKET))
    if price is None and prices:
        price = _finite(next(iter(prices.values())))
    return price


@debug_watcher
def metrics_summary(
    store: DuckDBMetricStore,
    dataset_id: int,
    metrics: Sequence[str] | None = None,
    month_from: str | None = None,
    month_to: str | None = None,
    calculator: DerivedMetricsCalculator | None = None,
) -> MetricsSummary:
    """
    Reconciled series for one dataset.

    Market Analysis headline metrics only count "All" cohort records. Stored
    buckets are coerced onto YYYY-MM using the dataset month, then one record
    per (metric, month) is selected by TimeBucketReconciler.

    Args:
        store: Metric store.
        dataset_id: Dataset to summarize.
        metrics: Optional metric filter.
        month_from: Inclusive lower bucket bound.
        month_to: Inclusive upper bucket bound.
        calculator: Ads chain calculator (defaults to configured assumptions).

    Returns:
        MetricsSummary with sorted time buckets and metric -> bucket -> value.
    """
    calculator = calculator or DerivedMetricsCalculator()
    metric_filter = [m for m in (metrics or []) if m]

    records = store.find_records(
        dataset_id=dataset_id,
        metrics=metric_filter or None,
        bucket_from=month_from,
        bucket_to=month_to,
    )
    records = [
        r for r in records
        if r.metric not in SAMPLE_TYPE_RESTRICTED_METRICS or is_all_sample(r)
    ]

    dataset = store.get_dataset(dataset_id)
    default_month = dataset.time_range_from if dataset else None
    reconciler = TimeBucketReconciler(default_month=default_month)

    summary = MetricsSummary(series_by_metric=reconciler.series(records))
    buckets = sorted({b for values in summary.series_by_metric.values() for b in values if b})
    if not buckets and default_month:
        buckets = [default_month]
    summary.time_buckets = buckets

    for bucket in summary.time_buckets:
        series = summary.series_by_metric
        cr = _finite(series.get("cr", {}).get(bucket))
        cpc = _finite(series.get("cpc", {}).get(bucket))
        click_share = _finite(series.get("clickshare", {}).get(bucket))
        chain = calculator.ads_chain(cr, _bucket_price(series, bucket), cpc, click_share)
        summary.put("roas", bucket, chain.roas)
        summary.put("acos", bucket, chain.acos)
        summary.put("tacos", bucket, chain.tacos)

    if (not summary.series_by_metric or not summary.time_buckets) and metric_filter:
        logger.debug(f"Summary for dataset {dataset_id} empty, falling back to latest records")
        for metric in metric_filter:
            latest = store.latest_record(metric, dataset_id=dataset_id)
            if latest is None:
                continue
            bucket = coerce_month(latest.bucket, default_month)
            summary.put(metric, bucket, latest.value)
            if bucket and bucket not in summary.time_buckets:
                summary.time_buckets.append(bucket)
        summary.time_buckets = sorted(b for b in summary.time_buckets if b)

    return summary


@debug_watcher
def category_detail(
    store: DuckDBMetricStore,
    category_id: int,
    calculator: DerivedMetricsCalculator | None = None,
) -> dict[str, Any] | None:
    """
    Everything known about a category across its datasets.

    Derived profitability per month uses the "All" cohort avg price and
    referral fee of that month, the latest CPP (else the category default) as
    the per-unit ads cost and the category FBA fee.
    """
    category = store.get_category(category_id)
    if category is None:
        return None
    calculator = calculator or DerivedMetricsCalculator()

    datasets = store.find_datasets(category_id)
    records = store.find_records(category_id=category_id)
    newest_first = sorted(records, key=lambda r: r.record_id or 0, reverse=True)

    summary: dict[str, dict[str, Any]] = {}
    by_dataset: dict[int, dict[str, list[dict[str, Any]]]] = {}
    for record in newest_first:
        entry = summary.setdefault(record.metric, {
            "metric": record.metric,
            "latest_value": record.value,
            "latest_bucket": record.bucket,
            "unit": record.unit,
            "total_records": 0,
            "datasets": [],
        })
        entry["total_records"] += 1
        if record.dataset_id not in entry["datasets"]:
            entry["datasets"].append(record.dataset_id)
        by_dataset.setdefault(record.dataset_id, {}).setdefault(record.metric, []).append({
            "bucket": record.bucket,
            "value": record.value,
            "unit": record.unit,
            "source_sheet": record.source_sheet,
            "sample_size": record.sample_size,
            "sample_type": record.sample_type,
        })

    time_buckets = sorted({r.bucket for r in records if is_month_bucket(r.bucket)})
    month_records = [r for r in records if is_month_bucket(r.bucket)]
    selected = TimeBucketReconciler(coerce=False).select(month_records)

    time_series: dict[str, dict[str, Any]] = {}
    for metric, entry in summary.items():
        points = [
            {
                "bucket": bucket,
                "value": selected[(metric, bucket)].value,
                "sample_type": selected[(metric, bucket)].sample_type,
                "sample_size": selected[(metric, bucket)].sample_size,
            }
            for bucket in time_buckets
            if (metric, bucket) in selected
        ]
        time_series[metric] = {"metric": metric, "unit": entry["unit"], "time_series": points}

    latest_cpp = store.latest_record("cpp", category_id=category_id)
    cpp = latest_cpp.value if latest_cpp else category.default_cpp
    fba_fee = category.fba_fee_usd or 0.0

    derived: dict[str, list[dict[str, Any]]] = {key: [] for key in DERIVED_UNITS}
    for bucket in time_buckets:
        price_record = selected.get(("avg_price", bucket))
        if price_record is None:
            continue
        price = price_record.value
        referral = selected.get(("referral_fee", bucket))
        breakdown = calculator.profitability(
            price,
            referral.value if referral else None,
            fba_fee,
            ads_cost=cpp,
        )
        derived["cogs_cap"].append({"bucket": bucket, "value": breakdown.cogs_cap})
        derived["profit"].append({"bucket": bucket, "value": breakdown.profit})
        derived["margin"].append({"bucket": bucket, "value": breakdown.margin_pct})
        derived["roi"].append({"bucket": bucket, "value": breakdown.roi_pct})

        def pick(metric: str) -> float | None:
            record = selected.get((metric, bucket))
            return _finite(record.value) if record else None

        chain = calculator.ads_chain(pick("cr"), price, pick("cpc"), pick("clickshare"))
        for metric in ("roas", "acos", "tacos"):
            value = getattr(chain, metric)
            if value is not None:
                derived[metric].append({"bucket": bucket, "value": value})

    for metric, points in derived.items():
        time_series[metric] = {"metric": metric, "unit": DERIVED_UNITS[metric], "time_series": points}

    return {
        "category": vars(category).copy(),
        "datasets": [
            {
                "id": d.id,
                "filename": d.original_filename,
                "time_range": {"from": d.time_range_from, "to": d.time_range_to},
                "status": d.status,
                "sheet_count": len(d.sheets),
                "metrics": by_dataset.get(d.id, {}),
            }
            for d in datasets
        ],
        "metrics_summary": list(summary.values()),
        "time_series": list(time_series.values()),
        "time_buckets": time_buckets,
        "statistics": {
            "total_datasets": len(datasets),
            "total_metrics": len(summary),
            "total_records": len(records),
            "time_range": {"from": time_buckets[0], "to": time_buckets[-1]} if time_buckets else None,
            "months_covered": len(time_buckets),
        },
    }


@debug_watcher
def migrate_buckets(store: DuckDBMetricStore, category_id: int) -> dict[str, int]:
    """Move records bucketed under a bare 3-4 digit number to their dataset month."""
    invalid = [r for r in store.find_records(category_id=category_id) if is_legacy_bucket(r.bucket)]
    if not invalid:
        return {"updated": 0, "invalid_buckets": 0}

    months: dict[int, str] = {}
    for record in invalid:
        if record.dataset_id not in months:
            dataset = store.get_dataset(record.dataset_id)
            months[record.dataset_id] = (dataset.time_range_from if dataset else None) or OVERALL_BUCKET

    for record in invalid:
        store.update_record_bucket(record.record_id, months[record.dataset_id])

    logger.info(f"Re-bucketed {len(invalid)} records for category {category_id}")
    return {"updated": len(invalid), "invalid_buckets": len(invalid)}

