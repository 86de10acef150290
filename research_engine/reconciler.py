"""
Time bucket reconciliation.

Several records can exist for one (metric, month) pair, typically one per
Market Analysis cohort. Selection happens at read time so the per-cohort
records stay available; the preferred record is:

1. sample type "All"
2. larger sample size
3. most recently created
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from research_engine.periods import coerce_month

if TYPE_CHECKING:
    from collections.abc import Iterable

    from research_engine.models import MetricRecord

_ALL_SAMPLE = re.compile(r"^all$", re.IGNORECASE)


def is_all_sample(record: MetricRecord) -> bool:
    return bool(record.sample_type) and bool(_ALL_SAMPLE.match(record.sample_type.strip()))


def preference_key(record: MetricRecord) -> tuple:
    created = record.created_at.timestamp() if record.created_at else 0.0
    return (
        is_all_sample(record),
        record.sample_size or 0.0,
        created,
        record.record_id or 0,
    )


class TimeBucketReconciler:
    """
    Picks one record per (metric, bucket).

    Args:
        default_month: Month used for buckets that cannot be read as YYYY-MM.
        coerce: Map stored buckets onto YYYY-MM before grouping.
    """

    def __init__(self, default_month: str | None = None, coerce: bool = True):
        self.default_month = default_month
        self.coerce = coerce

    def bucket_of(self, record: MetricRecord) -> str | None:
        if not self.coerce:
            return record.bucket
        return coerce_month(record.bucket, self.default_month)

    @staticmethod
    def prefer(current: MetricRecord | None, candidate: MetricRecord) -> MetricRecord:
        if current is None:
            return candidate
        return candidate if preference_key(candidate) > preference_key(current) else current

    def select(self, records: Iterable[MetricRecord]) -> dict[tuple[str, str], MetricRecord]:
        best: dict[tuple[str, str], MetricRecord] = {}
        for record in records:
            bucket = self.bucket_of(record)
            if not bucket:
                continue
            key = (record.metric, bucket)
            best[key] = self.prefer(best.get(key), record)
        return best

    def series(self, records: Iterable[MetricRecord]) -> dict[str, dict[str, float]]:
        """metric -> bucket -> selected value."""
        out: dict[str, dict[str, float]] = {}
        for (metric, bucket), record in self.select(records).items():
            out.setdefault(metric, {})[bucket] = record.value
        return out
