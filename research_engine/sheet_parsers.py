"""
Sheet Parsers Module - One parser per known research sheet shape

Each parser detects its header row, resolves its columns, validates rows
and emits MetricRecords wrapped in a ParseResult. Row-level problems skip
the row; sheet-level problems (missing column, no valid rows, no matching
rule) fail the sheet with a typed error.

Shapes:
- Market Analysis: headline sales/revenue/price/ratings + referral fee + profitability
- Fulfillment: fulfillment mix shares (fba/fbm/amz/na)
- Publication Time: share of sales from listings published within months
- Origin of Seller: sales share per seller origin
- Listing Concentration: sales share of the top 10 listings
- Market-research: weight/volume -> size tier -> FBA fee
- Mapped sheets: caller-supplied bucket column and metric mappings
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from research_engine.config import (
    COLUMN_ALIASES,
    DERIVED_SHEET,
    FULFILLMENT_SHEET,
    LISTING_CONCENTRATION_SHEET,
    MARKET_ANALYSIS_KEYWORDS,
    MARKET_ANALYSIS_SHEET,
    MARKET_RESEARCH_KEYWORDS,
    MARKET_RESEARCH_SHEET,
    ORIGIN_OF_SELLER_SHEET,
    OVERALL_BUCKET,
    PUBLICATION_TIME_SHEET,
    REVENUE_PANEL_MULTIPLIER,
    TOP10_BUCKET,
    TOP_LISTING_RANK,
)
from research_engine.derived_metrics import DerivedMetricsCalculator
from research_engine.errors import EnrichmentFailure, IngestionError, MissingColumnError, NoValidRowsError
from research_engine.fee_rules import FeeRuleMatcher, estimate_package
from research_engine.header_parser import (
    ColumnResolver,
    HeaderDetector,
    cell_text,
    default_normalize,
    detect_title_header,
)
from research_engine.logger import get_logger
from research_engine.models import CategoryConstantUpdate, MetricRecord, ParseResult
from research_engine.periods import detect_month_from_filename, normalize_bucket
from research_engine.value_parser import (
    extract_number,
    is_blank,
    parse_numeric_value,
    parse_positive,
    to_percent_points,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from research_engine.models import Category, Dataset
    from research_engine.price_resolver import AvgPriceResolver

logger = get_logger(__name__)

_ALL_SAMPLE = re.compile(r"^all$", re.IGNORECASE)
_NEW_LISTING = re.compile(r"\bmonth\b|\bmonths\b")


@dataclass
class ParseContext:
    """Everything a parser needs besides the raw rows."""

    dataset: Dataset
    category: Category | None = None
    sheet_name: str | None = None
    matcher: FeeRuleMatcher = field(default_factory=FeeRuleMatcher)
    calculator: DerivedMetricsCalculator = field(default_factory=DerivedMetricsCalculator)
    fba_fee_usd: float = 0.0
    price_resolver: AvgPriceResolver | None = None
    warnings: list[dict[str, Any]] = field(default_factory=list)

    @property
    def dataset_id(self) -> int:
        return self.dataset.id

    @property
    def category_id(self) -> int:
        return self.dataset.category_id

    @property
    def month(self) -> str | None:
        """Dataset month, else the month detected from the filename."""
        return self.dataset.time_range_from or detect_month_from_filename(self.dataset.original_filename)

    @property
    def default_bucket(self) -> str:
        return self.month or OVERALL_BUCKET

    @property
    def category_name(self) -> str:
        return self.category.name if self.category else ""

    def enrichment_failed(self, what: str, error: Exception) -> None:
        """Log and keep an optional lookup failure; the sheet still succeeds."""
        failure = EnrichmentFailure(f"{what} failed: {error}", self.sheet_name)
        logger.warning(f"{failure.message} (dataset {self.dataset_id})")
        self.warnings.append(failure.to_dict())

    def record(self, metric: str, value: float, unit: str, source_sheet: str, bucket: str | None = None, **extra: Any) -> MetricRecord:
        return MetricRecord(
            dataset_id=self.dataset_id,
            category_id=self.category_id,
            metric=metric,
            bucket=bucket or self.default_bucket,
            value=float(value),
            unit=unit,
            source_sheet=source_sheet,
            **extra,
        )


def _cell(row: Sequence[Any], idx: int | None) -> Any:
    if idx is None or row is None or idx >= len(row):
        return None
    return row[idx]


def _shape_keywords(shape: str) -> list[str]:
    keywords: list[str] = []
    for definition in COLUMN_ALIASES[shape].values():
        keywords.extend(definition.get("contains", []))
    return keywords


class SheetParser:
    """
    Base class: header detection + column resolution + record building.

    Subclasses set `sheet_label`, `shape` (a COLUMN_ALIASES key) and
    optionally `keywords`, then implement `build`.
    """

    sheet_label = ""
    shape = ""
    keywords: list[str] | None = None

    def __init__(self) -> None:
        self.detector = HeaderDetector(self.keywords or _shape_keywords(self.shape))
        self.resolver = ColumnResolver.from_config(self.shape, normalize=default_normalize, sheet=self.sheet_label)

    def parse(self, rows: Sequence[Sequence[Any]], context: ParseContext) -> ParseResult:
        sheet = context.sheet_name or self.sheet_label
        try:
            if not rows:
                raise NoValidRowsError(sheet, "Empty sheet")
            header_idx = self.detector.detect(rows)
            columns = self.resolver.resolve(rows[header_idx])
            logger.debug(f"{sheet}: header row {header_idx}, columns {columns}")
            return self.build(rows, header_idx, columns, context)
        except IngestionError as e:
            if e.sheet is None:
                e.sheet = sheet
            logger.warning(f"{sheet} parsing failed for dataset {context.dataset_id}: {e.message}")
            return ParseResult.failure(sheet, e)

    def build(
        self,
        rows: Sequence[Sequence[Any]],
        header_idx: int,
        columns: dict[str, int | None],
        context: ParseContext,
    ) -> ParseResult:
        raise NotImplementedError


# ============================================================================
# MARKET ANALYSIS
# ============================================================================

class MarketAnalysisParser(SheetParser):
    """
    Headline metrics from the "All" cohort rows.

    sales_units = Avg. Monthly Unit Sales x Sample Size
    revenue = Avg. Monthly Revenue x REVENUE_PANEL_MULTIPLIER
    Each valid row also yields referral_fee (when a rule or category default
    applies) and the Derived profitability set.
    """

    sheet_label = MARKET_ANALYSIS_SHEET
    shape = "market_analysis"
    keywords = MARKET_ANALYSIS_KEYWORDS

    def _referral_fee(self, context: ParseContext, price: float):
        try:
            return context.matcher.referral_fee(context.category_name, price, context.category)
        except Exception as e:
            context.enrichment_failed("Referral fee lookup", e)
            return None

    def build(self, rows, header_idx, columns, context):
        records: list[MetricRecord] = []
        skipped = 0
        bucket = context.default_bucket

        for r in range(header_idx + 1, len(rows)):
            row = rows[r]
            sample_type = cell_text(_cell(row, columns["sample_type"]))
            if not _ALL_SAMPLE.match(sample_type):
                continue
            raw = {name: _cell(row, idx) for name, idx in columns.items()}
            if any(is_blank(v) for v in raw.values()):
                skipped += 1
                logger.debug(f"Market Analysis row {r}: missing required cell")
                continue

            sales = parse_positive(raw["sales"])
            revenue = parse_positive(raw["revenue"])
            sample_size = parse_positive(raw["sample_size"])
            price = parse_positive(raw["price"])
            ratings = parse_positive(raw["ratings"])
            rating = parse_positive(raw["rating"])
            if None in (sales, revenue, sample_size, price, ratings, rating):
                skipped += 1
                logger.debug(f"Market Analysis row {r}: non-positive or unparseable value")
                continue

            sales_units = sales * sample_size
            revenue_total = revenue * REVENUE_PANEL_MULTIPLIER
            if not (math.isfinite(sales_units) and math.isfinite(revenue_total)):
                skipped += 1
                logger.debug(f"Market Analysis row {r}: sales/revenue overflow")
                continue

            quote = self._referral_fee(context, price)
            referral_fee = quote.fee if quote is not None else None
            breakdown = context.calculator.profitability(price, referral_fee, context.fba_fee_usd)
            derived = {
                "cogs_cap": breakdown.cogs_cap,
                "profit": breakdown.profit,
                "margin": breakdown.margin_pct,
                "roi": breakdown.roi_pct,
            }
            if not all(math.isfinite(v) for v in derived.values()):
                skipped += 1
                logger.debug(f"Market Analysis row {r}: non-finite profitability values")
                continue

            cohort = {"sample_size": sample_size, "sample_type": sample_type}
            sheet = MARKET_ANALYSIS_SHEET
            records.append(context.record("sales_units", sales_units, "units", sheet, bucket, **cohort))
            records.append(context.record(
                "revenue", revenue_total, "usd", sheet, bucket,
                sample_size=float(REVENUE_PANEL_MULTIPLIER), sample_type=sample_type,
            ))
            records.append(context.record("avg_price", price, "usd", sheet, bucket, **cohort))
            if quote is not None:
                records.append(context.record(
                    "referral_fee", quote.fee, "usd", sheet, bucket,
                    fee_percent=quote.fee_percent, base_price=price, **cohort,
                ))
            for metric, value in derived.items():
                unit = "pct" if metric in ("margin", "roi") else "usd"
                records.append(context.record(metric, value, unit, DERIVED_SHEET, bucket))

            records.append(context.record("avg_ratings", ratings, "count", sheet, bucket, **cohort))
            records.append(context.record("avg_rating", rating, "count", sheet, bucket, **cohort))

        if not records:
            raise NoValidRowsError(MARKET_ANALYSIS_SHEET, "No valid data found in Market Analysis sheet")

        return ParseResult.success(
            MARKET_ANALYSIS_SHEET,
            records,
            message=f"Processed {len(records)} records from Market Analysis sheet",
            replaces=[MARKET_ANALYSIS_SHEET, DERIVED_SHEET],
            skipped_rows=skipped,
            fba_fee_usd=context.fba_fee_usd,
            warnings=context.warnings,
        )


# ============================================================================
# FULFILLMENT
# ============================================================================

def classify_fulfillment(label: Any) -> str:
    """Reduce a free-text fulfillment type to fba/fbm/amz/na (else its letters)."""
    code = re.sub(r"[^a-z]", "", str(label).strip().lower())
    for known in ("fba", "fbm", "amz"):
        if known in code:
            return known
    return code


class FulfillmentParser(SheetParser):
    sheet_label = FULFILLMENT_SHEET
    shape = "fulfillment"

    def build(self, rows, header_idx, columns, context):
        records: list[MetricRecord] = []
        for r in range(header_idx + 1, len(rows)):
            row = rows[r]
            raw_type = _cell(row, columns["fulfillment"])
            raw_prop = _cell(row, columns["proportion"])
            if is_blank(raw_type) or is_blank(raw_prop):
                continue
            code = classify_fulfillment(raw_type)
            pct = to_percent_points(raw_prop)
            if not code or pct is None:
                logger.debug(f"Fulfillment row {r}: unusable type/proportion")
                continue
            records.append(context.record(f"fulfillment_{code}", pct, "pct", FULFILLMENT_SHEET, OVERALL_BUCKET))

        if not records:
            raise NoValidRowsError(FULFILLMENT_SHEET, "No valid rows found in Fulfillment sheet")
        return ParseResult.success(
            FULFILLMENT_SHEET,
            records,
            message=f"Processed {len(records)} rows from Fulfillment sheet",
        )


# ============================================================================
# PUBLICATION TIME
# ============================================================================

def is_new_listing_label(label: Any) -> bool:
    text = str(label).strip().lower()
    return bool(_NEW_LISTING.search(text)) and "year" not in text


class PublicationTimeParser(SheetParser):
    """new_product_ratio = sum of sales share for month-granularity age buckets."""

    sheet_label = PUBLICATION_TIME_SHEET
    shape = "publication_time"

    def build(self, rows, header_idx, columns, context):
        total_pct = 0.0
        new_pct = 0.0
        details = []
        for r in range(header_idx + 1, len(rows)):
            row = rows[r]
            raw_label = _cell(row, columns["publication_time"])
            raw_prop = _cell(row, columns["sales_proportion"])
            if is_blank(raw_label) or is_blank(raw_prop):
                continue
            pct = to_percent_points(raw_prop)
            if pct is None:
                continue
            is_new = is_new_listing_label(raw_label)
            total_pct += pct
            if is_new:
                new_pct += pct
            details.append({"publication_time": cell_text(raw_label), "sales_proportion": pct, "is_new": is_new})

        if total_pct == 0:
            raise NoValidRowsError(PUBLICATION_TIME_SHEET, "No valid Sales Proportion values found")

        record = context.record("new_product_ratio", new_pct, "pct", PUBLICATION_TIME_SHEET, OVERALL_BUCKET)
        return ParseResult.success(
            PUBLICATION_TIME_SHEET,
            [record],
            message="Computed New Product Ratio from Publication Time sheet",
            rows=details,
        )


# ============================================================================
# ORIGIN OF SELLER
# ============================================================================

def origin_slug(label: Any) -> str:
    slug = re.sub(r"[^a-z]", "_", str(label).strip().lower())
    slug = re.sub(r"_+", "_", slug)
    return slug.strip("_")


class OriginOfSellerParser(SheetParser):
    sheet_label = ORIGIN_OF_SELLER_SHEET
    shape = "origin_of_seller"

    def build(self, rows, header_idx, columns, context):
        shares: dict[str, float] = {}
        for r in range(header_idx + 1, len(rows)):
            row = rows[r]
            raw_origin = _cell(row, columns["origin"])
            raw_prop = _cell(row, columns["sales_proportion"])
            if is_blank(raw_origin) or is_blank(raw_prop):
                continue
            slug = origin_slug(raw_origin)
            pct = to_percent_points(raw_prop)
            if not slug or pct is None:
                continue
            shares[slug] = shares.get(slug, 0.0) + pct

        if not shares:
            raise NoValidRowsError(ORIGIN_OF_SELLER_SHEET, "No valid rows found in Origin of Seller sheet")

        records = [
            context.record(f"seller_origin_{slug}", pct, "pct", ORIGIN_OF_SELLER_SHEET, OVERALL_BUCKET)
            for slug, pct in shares.items()
        ]
        return ParseResult.success(
            ORIGIN_OF_SELLER_SHEET,
            records,
            message=f"Processed {len(records)} seller origins",
        )


# ============================================================================
# LISTING CONCENTRATION
# ============================================================================

class ListingConcentrationParser(SheetParser):
    """listing_concentration = sales share of ranks 1..TOP_LISTING_RANK."""

    sheet_label = LISTING_CONCENTRATION_SHEET
    shape = "listing_concentration"

    def build(self, rows, header_idx, columns, context):
        total_top = 0.0
        valid_rows = 0
        details = []
        for r in range(header_idx + 1, len(rows)):
            row = rows[r]
            rank = extract_number(_cell(row, columns["rank"]))
            pct = to_percent_points(_cell(row, columns["sales_proportion"]))
            if rank is None or pct is None:
                continue
            valid_rows += 1
            if 1 <= rank <= TOP_LISTING_RANK:
                total_top += pct
                details.append({"ranking": rank, "sales_proportion": pct})

        if not valid_rows:
            raise NoValidRowsError(LISTING_CONCENTRATION_SHEET, "No valid rows found in Listing Concentration sheet")

        record = context.record("listing_concentration", total_top, "pct", LISTING_CONCENTRATION_SHEET, TOP10_BUCKET)
        return ParseResult.success(
            LISTING_CONCENTRATION_SHEET,
            [record],
            message="Computed Listing Concentration (Top 10 Sales Proportion Sum)",
            rows=sorted(details, key=lambda d: d["ranking"]),
        )


# ============================================================================
# MARKET-RESEARCH (weight / volume -> tier -> FBA fee)
# ============================================================================

class MarketResearchParser(SheetParser):
    """
    Estimates the FBA fee from a summary row of average weight and volume.

    The package is approximated as a cube (side = cbrt(volume)), shipping
    weight is max(actual, side^3 / 139), then tier and fee band are resolved
    against the rule tables. Category constants are returned as a
    CategoryConstantUpdate for the caller to apply.
    """

    sheet_label = MARKET_RESEARCH_SHEET
    shape = "market_research"
    keywords = MARKET_RESEARCH_KEYWORDS

    def build(self, rows, header_idx, columns, context):
        weight_lb = volume_in3 = None
        for r in range(header_idx + 1, len(rows)):
            row = rows[r]
            raw_w = _cell(row, columns["weight"])
            raw_v = _cell(row, columns["volume"])
            if is_blank(raw_w) or is_blank(raw_v):
                continue
            weight_lb = extract_number(raw_w)
            volume_in3 = extract_number(raw_v)
            if weight_lb is not None and volume_in3 is not None:
                break
        if weight_lb is None or volume_in3 is None:
            raise NoValidRowsError(context.sheet_name or MARKET_RESEARCH_SHEET, "No valid Avg.Weight/Avg.Volume values found")

        package = estimate_package(weight_lb, volume_in3)
        tier = context.matcher.resolve_size_tier(package)
        quote = context.matcher.fba_fee(tier, package.shipping_weight_lb)

        fields: dict[str, Any] = {
            "fba_fee_usd": quote.fee_usd,
            "size_tier_estimate": tier,
            "avg_weight_lb": weight_lb,
            "avg_volume_in3": volume_in3,
            "estimated_side_in": package.side_in,
            "estimated_dimensional_weight_lb": package.dimensional_weight_lb,
            "estimated_shipping_weight_lb": package.shipping_weight_lb,
        }
        try:
            defaults = context.matcher.referral_defaults(context.category_name) if context.category_name else None
            if defaults:
                fields.update(defaults)
        except Exception as e:
            context.enrichment_failed("Referral default refresh", e)

        sheet = context.sheet_name or MARKET_RESEARCH_SHEET
        records: list[MetricRecord] = []
        month = context.month
        if month:
            records.append(context.record("avg_weight_lb", weight_lb, "count", sheet, month))
            records.append(context.record("avg_volume_in3", volume_in3, "count", sheet, month))
            records.append(context.record("fba_fee", quote.fee_usd, "usd", sheet, month))
        records.append(context.record("fba_fee", quote.fee_usd, "usd", MARKET_RESEARCH_SHEET, OVERALL_BUCKET))

        message = (
            f"Computed FBA Fee from Market-research: Weight {weight_lb}lb, Volume {volume_in3}in3 -> "
            f"side {package.side_in:.1f}in -> Dimensional {package.dimensional_weight_lb:.2f}lb -> "
            f"Shipping {package.shipping_weight_lb:.2f}lb -> {tier} -> ${quote.fee_usd:.2f}"
        )
        return ParseResult.success(
            sheet,
            records,
            message=message,
            category_update=CategoryConstantUpdate(context.category_id, fields),
            replaces=[sheet, MARKET_RESEARCH_SHEET],
            tier=tier,
            side_in=package.side_in,
            dimensional_weight_lb=package.dimensional_weight_lb,
            shipping_weight_lb=package.shipping_weight_lb,
            warnings=context.warnings,
        )


# ============================================================================
# MAPPED SHEETS
# ============================================================================

@dataclass
class MetricMapping:
    metric: str
    column: str
    unit: str = "units"


def parse_mapped_sheet(
    rows: Sequence[Sequence[Any]],
    context: ParseContext,
    bucket_column: str,
    mappings: Sequence[MetricMapping],
    bucket_format: str | None = None,
) -> ParseResult:
    """
    Ingest an arbitrary sheet through explicit column mappings.

    Rows with an empty bucket cell use the dataset month; rows without one
    are skipped. Values mapped with unit "pct" are stored as percentage points.
    """
    sheet = context.sheet_name or ""
    try:
        if not rows:
            raise NoValidRowsError(sheet, "Empty sheet")
        header_idx = detect_title_header(rows)
        header = [cell_text(h).lower() for h in rows[header_idx]]

        if str(bucket_column).lower() not in header:
            raise MissingColumnError(bucket_column, sheet)
        bucket_idx = header.index(str(bucket_column).lower())

        resolved = [
            (m, header.index(str(m.column).lower()))
            for m in mappings
            if str(m.column).lower() in header
        ]
        if not resolved:
            raise MissingColumnError("Mapped metric", sheet)

        records: list[MetricRecord] = []
        for r in range(header_idx + 1, len(rows)):
            row = rows[r]
            raw_bucket = _cell(row, bucket_idx)
            if is_blank(raw_bucket):
                if not context.month:
                    continue
                bucket = context.month
            else:
                bucket = normalize_bucket(raw_bucket, bucket_format)
            for mapping, idx in resolved:
                raw_value = _cell(row, idx)
                if mapping.unit == "pct":
                    value = to_percent_points(raw_value)
                else:
                    value = parse_numeric_value(raw_value)
                if value is None:
                    continue
                records.append(context.record(mapping.metric, value, mapping.unit or "units", sheet, bucket))

        if not records:
            raise NoValidRowsError(sheet, "No data rows ingested")
        return ParseResult.success(sheet, records, message=f"Ingested {len(records)} mapped values")
    except IngestionError as e:
        logger.warning(f"{sheet} mapped ingestion failed for dataset {context.dataset_id}: {e.message}")
        return ParseResult.failure(sheet, e)
