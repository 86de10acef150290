"""
Average price resolution for the ads aggregate path.

An explicit, ordered list of strategies, each returning a price or None.
The first strategy that yields a finite value wins. Strategy failures are
logged and skipped so the ads records are still produced without a price.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from typing import TYPE_CHECKING

from research_engine.config import OVERALL_BUCKET
from research_engine.logger import get_logger
from research_engine.periods import month_compact

if TYPE_CHECKING:
    from research_engine.metric_store import DuckDBMetricStore
    from research_engine.models import Dataset, MetricRecord

logger = get_logger(__name__)

PriceStrategy = Callable[["Dataset", "str | None"], "float | None"]

# Market Analysis exports are named "US-Market-...YYYYMM..."
_RELATED_FILENAME = "^US-.*{month}"
_MARKET_ANALYSIS_PATTERN = r"market\s*analysis"


def _value(record: MetricRecord | None) -> float | None:
    if record is None or record.value is None or not math.isfinite(record.value):
        return None
    return float(record.value)


class AvgPriceResolver:
    """
    Fallback chain for the average selling price of a dataset month.

    Order:
        1. same-bucket avg_price in this dataset
        2. Market Analysis avg_price of a related dataset (same category, same month)
        3. latest avg_price recorded for this dataset

    The same-sheet column mean is taken by the caller before the chain runs.
    """

    def __init__(self, store: DuckDBMetricStore, strategies: list[PriceStrategy] | None = None):
        self.store = store
        self.strategies: list[PriceStrategy] = strategies if strategies is not None else [
            self.same_bucket,
            self.related_dataset,
            self.latest_for_dataset,
        ]

    def same_bucket(self, dataset: Dataset, month: str | None) -> float | None:
        if not month:
            return None
        return _value(self.store.latest_record("avg_price", dataset_id=dataset.id, bucket=month))

    def related_dataset(self, dataset: Dataset, month: str | None) -> float | None:
        if not month:
            return None
        pattern = _RELATED_FILENAME.format(month=month_compact(month))
        related = self.store.find_datasets(dataset.category_id, filename_pattern=pattern)
        if not related:
            return None

        # Newest related dataset first, then any of them
        for dataset_ids in ([related[0].id], [d.id for d in related]):
            for bucket in (month, OVERALL_BUCKET):
                value = _value(self.store.latest_record(
                    "avg_price",
                    dataset_ids=dataset_ids,
                    bucket=bucket,
                    source_sheet_pattern=_MARKET_ANALYSIS_PATTERN,
                ))
                if value is not None:
                    return value
        return None

    def latest_for_dataset(self, dataset: Dataset, month: str | None) -> float | None:
        return _value(self.store.latest_record("avg_price", dataset_id=dataset.id))

    def resolve(self, dataset: Dataset, month: str | None) -> float | None:
        for strategy in self.strategies:
            name = getattr(strategy, "__name__", repr(strategy))
            try:
                value = strategy(dataset, month)
            except Exception as e:
                logger.warning(f"Avg price strategy {name} failed for dataset {dataset.id}: {e}")
                continue
            if value is not None and math.isfinite(value):
                logger.debug(f"Avg price for dataset {dataset.id} resolved by {name}: {value}")
                return value
        logger.debug(f"No avg price available for dataset {dataset.id} ({month})")
        return None
