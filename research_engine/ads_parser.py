"""
Ads Metrics parser.

Two layouts are supported:

1. Raw keyword columns (Clicks, Impressions, Monthly Sales, Monthly Searches,
   PPC Bid, Click Share, Avg Price): summed across rows into one set of
   category-level ratios for the dataset month.
2. Pre-computed ratio columns (CTR, CPC, ROAS, CR, ACOS, TACOS, CPP): parsed
   row by row. The last value of each ratio becomes the category default.

Ratios (CTR, CR, ACOS, TACOS, click share) are stored as fractions.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from research_engine.config import ADS_DEFAULT_FIELDS, ADS_KEYWORDS, ADS_METRICS_SHEET, COLUMN_ALIASES
from research_engine.errors import MissingColumnError, NoValidRowsError
from research_engine.header_parser import ColumnResolver, ColumnSpec, HeaderDetector, ads_normalize
from research_engine.logger import get_logger
from research_engine.models import CategoryConstantUpdate, MetricRecord, ParseResult
from research_engine.sheet_parsers import SheetParser, _cell
from research_engine.value_parser import extract_number, is_blank, to_fraction

if TYPE_CHECKING:
    from collections.abc import Sequence

    from research_engine.sheet_parsers import ParseContext

logger = get_logger(__name__)

DIRECT_METRICS = ("ctr", "cpc", "roas", "cr", "acos", "tacos", "cpp")
FRACTION_METRICS = ("ctr", "cr", "acos", "tacos")
METRIC_UNITS = {
    "ctr": "pct",
    "cr": "pct",
    "cpc": "usd",
    "roas": "ratio",
    "acos": "pct",
    "clickshare": "pct",
    "tacos": "pct",
    "cpp": "usd",
}


def _row_is_empty(row: Sequence[Any] | None) -> bool:
    return not row or all(is_blank(c) for c in row)


def _row_has_numbers(row: Sequence[Any] | None, indexes: list[int]) -> bool:
    return any(extract_number(_cell(row, idx)) is not None for idx in indexes)


class AdsMetricsParser(SheetParser):
    sheet_label = ADS_METRICS_SHEET
    keywords = ADS_KEYWORDS

    def __init__(self) -> None:
        self.detector = HeaderDetector(self.keywords)
        specs = [
            ColumnSpec.from_definition(name, definition)
            for shape in ("ads_direct", "ads_raw")
            for name, definition in COLUMN_ALIASES[shape].items()
        ]
        self.resolver = ColumnResolver(specs, normalize=ads_normalize, sheet=self.sheet_label)

    def rows_to_process(
        self,
        rows: Sequence[Sequence[Any]],
        header_idx: int,
        columns: dict[str, int | None],
    ) -> list[Sequence[Any]]:
        """
        Data rows below the header, unless the row directly above the header
        carries numbers in a detected column; then that row alone is the data.
        """
        if header_idx > 0:
            detected = [idx for idx in columns.values() if idx is not None]
            above = rows[header_idx - 1]
            if _row_has_numbers(above, detected):
                logger.debug(f"Ads values found above header row {header_idx}")
                return [above]
        return list(rows[header_idx + 1:])

    def build(self, rows, header_idx, columns, context):
        data_rows = self.rows_to_process(rows, header_idx, columns)
        if columns.get("clicks") is not None:
            return self.build_aggregate(data_rows, columns, context)
        if all(columns.get(m) is None for m in DIRECT_METRICS):
            raise MissingColumnError("Ads metric", ADS_METRICS_SHEET)
        return self.build_direct(data_rows, columns, context)

    # ------------------------------------------------------------------
    # Raw keyword columns -> category-level ratios
    # ------------------------------------------------------------------

    def build_aggregate(
        self,
        data_rows: list[Sequence[Any]],
        columns: dict[str, int | None],
        context: ParseContext,
    ) -> ParseResult:
        sum_clicks = sum_impr = sum_sales = sum_searches = 0.0
        sum_bid_clicks = sum_share_clicks = 0.0
        prices: list[float] = []

        def read(row, name, fraction=False):
            raw = _cell(row, columns.get(name))
            return to_fraction(raw) if fraction else extract_number(raw)

        for row in data_rows:
            if _row_is_empty(row):
                continue
            clicks = read(row, "clicks") or 0.0
            sum_clicks += clicks
            sum_impr += read(row, "impressions") or 0.0
            sum_sales += read(row, "sales") or 0.0
            sum_searches += read(row, "searches") or 0.0
            sum_bid_clicks += (read(row, "bid") or 0.0) * clicks
            sum_share_clicks += (read(row, "click_share", fraction=True) or 0.0) * clicks
            price = read(row, "avg_price")
            if price is not None:
                prices.append(price)

        ctr = sum_clicks / sum_impr if sum_impr > 0 else None
        cr = sum_sales / sum_searches if sum_searches > 0 else None
        cpc = sum_bid_clicks / sum_clicks if sum_clicks > 0 else None
        click_share = sum_share_clicks / sum_clicks if sum_clicks > 0 else None

        avg_price = sum(prices) / len(prices) if prices else None
        if avg_price is None and context.price_resolver is not None:
            avg_price = context.price_resolver.resolve(context.dataset, context.month)

        calc = context.calculator
        chain = calc.ads_chain(cr, avg_price, cpc, click_share)
        values = {
            "ctr": ctr,
            "cr": cr,
            "cpc": cpc,
            "roas": chain.roas,
            "acos": chain.acos,
            "clickshare": click_share,
            "tacos": chain.tacos,
            "cpp": calc.cpp(cpc, cr),
        }
        records = [
            context.record(metric, value, METRIC_UNITS[metric], ADS_METRICS_SHEET)
            for metric, value in values.items()
            if value is not None
        ]
        if not records:
            raise NoValidRowsError(ADS_METRICS_SHEET, "Could not compute any ads metric from the sheet")

        return ParseResult.success(
            ADS_METRICS_SHEET,
            records,
            message=f"Computed category-level ads metrics from {len(data_rows)} rows",
            avg_price=avg_price,
            processed_rows=len(data_rows),
        )

    # ------------------------------------------------------------------
    # Pre-computed ratio columns
    # ------------------------------------------------------------------

    def build_direct(
        self,
        data_rows: list[Sequence[Any]],
        columns: dict[str, int | None],
        context: ParseContext,
    ) -> ParseResult:
        records: list[MetricRecord] = []
        processed = 0
        for row in data_rows:
            if _row_is_empty(row):
                continue
            for metric in DIRECT_METRICS:
                idx = columns.get(metric)
                if idx is None:
                    continue
                raw = _cell(row, idx)
                value = to_fraction(raw) if metric in FRACTION_METRICS else extract_number(raw)
                if value is not None:
                    records.append(context.record(metric, value, METRIC_UNITS[metric], ADS_METRICS_SHEET))
            processed += 1

        if not records:
            raise NoValidRowsError(ADS_METRICS_SHEET, "No valid ads metrics data found in sheet")

        return ParseResult.success(
            ADS_METRICS_SHEET,
            records,
            message=f"Processed {len(records)} ads metrics records from {processed} rows",
            category_update=self.category_defaults(records, context),
            processed_rows=processed,
        )

    @staticmethod
    def category_defaults(records: list[MetricRecord], context: ParseContext) -> CategoryConstantUpdate | None:
        latest = {r.metric: r.value for r in records}
        fields = {ADS_DEFAULT_FIELDS[m]: v for m, v in latest.items() if m in ADS_DEFAULT_FIELDS}
        return CategoryConstantUpdate(context.category_id, fields) if fields else None
