"""
Ingestion Module - Orchestrates sheet parsing and persistence

Routes each workbook sheet to its parser, persists the resulting records with
replace-by-source-sheet semantics, applies returned category constant updates
and tracks dataset status. Every entry point resolves to a ParseResult; sheet
failures never abort the other sheets of a workbook.

Also provides dataset registration, sheet previews, manual monthly package
dimensions and COGS cap recomputation.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any

from research_engine.ads_parser import AdsMetricsParser
from research_engine.config import (
    ADS_METRICS_SHEET,
    ADS_PCT,
    ADS_SHEET_TOKENS,
    DERIVED_SHEET,
    FULFILLMENT_SHEET,
    LISTING_CONCENTRATION_SHEET,
    MANUAL_SHEET,
    MARKET_ANALYSIS_SHEET,
    MARKET_RESEARCH_SHEET,
    MARKET_RESEARCH_SHEET_TOKEN,
    ORIGIN_OF_SELLER_SHEET,
    OVERALL_BUCKET,
    PROFIT_TARGET_PCT,
    PUBLICATION_TIME_SHEET,
    STANDARD_SHEETS,
)
from research_engine.derived_metrics import DerivedMetricsCalculator
from research_engine.errors import EnrichmentFailure, IngestionError, NoValidRowsError, PersistenceError
from research_engine.fee_rules import FeeRuleMatcher, estimate_package
from research_engine.header_parser import cell_text, detect_title_header
from research_engine.logger import debug_watcher, get_logger
from research_engine.models import (
    STATUS_FAILED,
    STATUS_PARSED,
    STATUS_READY,
    CategoryConstantUpdate,
    Dataset,
    ParseResult,
    SheetInfo,
)
from research_engine.periods import detect_month_from_filename
from research_engine.price_resolver import AvgPriceResolver
from research_engine.sheet_parsers import (
    FulfillmentParser,
    ListingConcentrationParser,
    MarketAnalysisParser,
    MarketResearchParser,
    MetricMapping,
    OriginOfSellerParser,
    ParseContext,
    PublicationTimeParser,
    parse_mapped_sheet,
)
from research_engine.value_parser import parse_positive

if TYPE_CHECKING:
    from research_engine.file_loader import Workbook
    from research_engine.metric_store import DuckDBMetricStore
    from research_engine.models import Category

logger = get_logger(__name__)

MAPPED_SHEET = "mapped"

PARSERS = {
    MARKET_ANALYSIS_SHEET: MarketAnalysisParser,
    LISTING_CONCENTRATION_SHEET: ListingConcentrationParser,
    FULFILLMENT_SHEET: FulfillmentParser,
    ORIGIN_OF_SELLER_SHEET: OriginOfSellerParser,
    PUBLICATION_TIME_SHEET: PublicationTimeParser,
    MARKET_RESEARCH_SHEET: MarketResearchParser,
    ADS_METRICS_SHEET: AdsMetricsParser,
}


def detect_sheet_kind(sheet_name: str) -> str:
    """
    Parser key for a sheet name.

    Standard sheet names match exactly (case-insensitive); any name containing
    "market-research" is the weight/volume sheet; names containing an ads token
    ("batch", "ads", "christmas") are Ads Metrics; anything else is mapped.
    """
    lowered = str(sheet_name or "").strip().lower()
    for standard in STANDARD_SHEETS:
        if lowered == standard.lower():
            return standard
    if MARKET_RESEARCH_SHEET_TOKEN in lowered:
        return MARKET_RESEARCH_SHEET
    if any(token in lowered for token in ADS_SHEET_TOKENS):
        return ADS_METRICS_SHEET
    return MAPPED_SHEET


def load_matcher(store: DuckDBMetricStore) -> FeeRuleMatcher:
    return FeeRuleMatcher(
        store.referral_fee_rules(),
        store.size_tier_rules(),
        store.fba_fee_rules(),
    )


def preload_fba_fee(store: DuckDBMetricStore, category: Category | None) -> float:
    """Latest fba_fee record of the category, else its persisted FBA fee, else 0."""
    if category is None:
        return 0.0
    try:
        latest = store.latest_record("fba_fee", category_id=category.id)
        if latest is not None:
            return latest.value
    except Exception as e:
        logger.warning(f"FBA fee preload failed for category {category.id}: {e}")
    return category.fba_fee_usd or 0.0


def build_context(
    store: DuckDBMetricStore,
    dataset: Dataset,
    sheet_name: str,
    kind: str,
    calculator: DerivedMetricsCalculator | None = None,
) -> ParseContext:
    category = store.get_category(dataset.category_id)
    return ParseContext(
        dataset=dataset,
        category=category,
        sheet_name=sheet_name,
        matcher=load_matcher(store),
        calculator=calculator or DerivedMetricsCalculator(),
        fba_fee_usd=preload_fba_fee(store, category) if kind == MARKET_ANALYSIS_SHEET else 0.0,
        price_resolver=AvgPriceResolver(store) if kind == ADS_METRICS_SHEET else None,
    )


def apply_category_update(
    store: DuckDBMetricStore,
    update: CategoryConstantUpdate | None,
    warnings: list[dict[str, Any]] | None = None,
) -> bool:
    """Write returned category constants; failures are logged, not raised."""
    if update is None or update.is_empty:
        return False
    try:
        store.update_category_constants(update.category_id, update.fields)
        return True
    except Exception as e:
        failure = EnrichmentFailure(f"Category {update.category_id} constant update failed: {e}")
        logger.warning(failure.message)
        if warnings is not None:
            warnings.append(failure.to_dict())
        return False


def persist_result(store: DuckDBMetricStore, dataset: Dataset, result: ParseResult) -> None:
    """Replace the stored records of every source sheet the result owns."""
    by_sheet: dict[str, list] = defaultdict(list)
    for record in result.records:
        by_sheet[record.source_sheet].append(record)
    for source_sheet in result.replaces:
        store.replace_sheet_records(dataset.id, source_sheet, by_sheet.get(source_sheet, []))

    warnings = result.details.setdefault("warnings", [])
    result.details["category_updated"] = apply_category_update(store, result.category_update, warnings)
    store.set_dataset_status(dataset.id, STATUS_READY)
    dataset.status = STATUS_READY


def _failure(sheet: str, error: Exception) -> ParseResult:
    if isinstance(error, IngestionError):
        if error.sheet is None:
            error.sheet = sheet
        return ParseResult.failure(sheet, error)
    return ParseResult.failure(sheet, IngestionError(f"Failed to process {sheet} sheet: {error}", sheet))


def _mark_failed(store: DuckDBMetricStore, dataset: Dataset) -> None:
    if dataset.status == STATUS_READY:
        return
    try:
        store.set_dataset_status(dataset.id, STATUS_FAILED)
        dataset.status = STATUS_FAILED
    except Exception as e:
        logger.warning(f"Could not mark dataset {dataset.id} failed: {e}")


@debug_watcher
def ingest_sheet(
    store: DuckDBMetricStore,
    dataset_id: int,
    workbook: Workbook,
    sheet_name: str,
    kind: str | None = None,
    bucket_column: str | None = None,
    metric_mappings: list[MetricMapping] | None = None,
    bucket_format: str | None = None,
    calculator: DerivedMetricsCalculator | None = None,
) -> ParseResult:
    """
    Parse one sheet of a workbook and persist its records.

    Args:
        store: Metric store.
        dataset_id: Dataset the workbook was registered as.
        workbook: Workbook holding the sheet.
        sheet_name: Sheet to ingest (resolved tolerantly).
        kind: Parser key; detected from the sheet name when omitted.
        bucket_column: Bucket column for mapped sheets.
        metric_mappings: Metric mappings for mapped sheets.
        bucket_format: Optional bucket format for mapped sheets (YYYYMM, MM/YYYY).
        calculator: Derived metrics calculator (defaults to configured assumptions).

    Returns:
        ParseResult: records on success, a typed error otherwise.
    """
    dataset = store.get_dataset(dataset_id)
    if dataset is None:
        return ParseResult.failure(sheet_name, IngestionError(f"Dataset {dataset_id} not found", sheet_name))

    actual = workbook.find_sheet(sheet_name)
    if actual is None:
        return ParseResult.failure(sheet_name, IngestionError(f"Sheet '{sheet_name}' not found in workbook", sheet_name))

    kind = kind or detect_sheet_kind(actual)
    rows = workbook.read_sheet(actual)
    try:
        context = build_context(store, dataset, actual, kind, calculator)
        if kind == MAPPED_SHEET:
            if not bucket_column or not metric_mappings:
                raise IngestionError("bucket_column and metric_mappings are required for this sheet", actual)
            result = parse_mapped_sheet(rows, context, bucket_column, metric_mappings, bucket_format)
        else:
            result = PARSERS[kind]().parse(rows, context)

        if result.ok:
            persist_result(store, dataset, result)
            logger.info(f"{result.sheet}: {result.message} (dataset {dataset_id})")
    except PersistenceError as e:
        logger.error(f"Persisting {actual} for dataset {dataset_id} failed: {e.message}")
        result = _failure(actual, e)
    except Exception as e:
        logger.error(f"Unexpected error ingesting {actual} for dataset {dataset_id}: {e}")
        result = _failure(actual, e)

    if not result.ok:
        _mark_failed(store, dataset)
    return result


@debug_watcher
def auto_ingest_workbook(
    store: DuckDBMetricStore,
    dataset_id: int,
    workbook: Workbook,
    calculator: DerivedMetricsCalculator | None = None,
) -> list[ParseResult]:
    """
    Ingest every recognizable sheet of a workbook, each independently.

    Order: the standard sheets, then the first market-research sheet, then the
    first ads sheet.
    """
    targets: list[tuple[str, str]] = []
    for standard in STANDARD_SHEETS:
        actual = workbook.find_sheet(standard)
        if actual is not None:
            targets.append((actual, standard))

    research = workbook.find_sheet_containing((MARKET_RESEARCH_SHEET_TOKEN,))
    if research is not None:
        targets.append((research, MARKET_RESEARCH_SHEET))

    taken = {name for name, _ in targets}
    ads = next(
        (
            name for name in workbook.sheet_names
            if name not in taken and detect_sheet_kind(name) == ADS_METRICS_SHEET
        ),
        None,
    )
    if ads is not None:
        targets.append((ads, ADS_METRICS_SHEET))

    results = []
    for sheet_name, kind in targets:
        try:
            result = ingest_sheet(store, dataset_id, workbook, sheet_name, kind=kind, calculator=calculator)
        except Exception as e:
            result = _failure(sheet_name, e)
        if not result.ok:
            logger.warning(f"Auto-ingest of {sheet_name} failed for dataset {dataset_id}: {result.message}")
        results.append(result)
    return results


# ============================================================================
# DATASET REGISTRATION AND PREVIEW
# ============================================================================

def sheet_info(name: str, rows: list[list[Any]]) -> SheetInfo:
    if not rows:
        return SheetInfo(name=name)
    header_idx = detect_title_header(rows)
    columns = [cell_text(c) for c in rows[header_idx] if cell_text(c)]
    return SheetInfo(name=name, columns=columns, rows=max(len(rows) - header_idx - 1, 0))


@debug_watcher
def register_dataset(
    store: DuckDBMetricStore,
    category_id: int,
    workbook: Workbook,
    filename: str | None = None,
    auto_ingest: bool = False,
) -> Dataset:
    """
    Record an uploaded workbook as a dataset of a category.

    The month is detected from the filename; every sheet's header columns and
    data-row count are inventoried. With auto_ingest, recognizable sheets are
    ingested right away.
    """
    if store.get_category(category_id) is None:
        raise IngestionError(f"Category {category_id} not found")

    filename = filename or workbook.filename
    month = detect_month_from_filename(filename)
    sheets = [sheet_info(name, workbook.read_sheet(name)) for name in workbook.sheet_names]

    dataset = store.create_dataset(Dataset(
        category_id=category_id,
        original_filename=filename,
        time_range_from=month,
        time_range_to=month,
        status=STATUS_PARSED,
        sheets=sheets,
    ))
    logger.info(f"Registered dataset {dataset.id} ({filename}, month={month}, {len(sheets)} sheets)")

    if auto_ingest:
        results = auto_ingest_workbook(store, dataset.id, workbook)
        ok = sum(1 for r in results if r.ok)
        logger.info(f"Auto-ingested {ok}/{len(results)} sheets for dataset {dataset.id}")
        dataset = store.get_dataset(dataset.id) or dataset
    return dataset


def preview_sheet(workbook: Workbook, sheet_name: str, limit: int = 20) -> dict[str, Any] | None:
    """Header columns and the first data rows of a sheet, skipping exporter title rows."""
    actual = workbook.find_sheet(sheet_name)
    if actual is None:
        return None
    rows = workbook.read_sheet(actual)
    if not rows:
        return {"sheet": actual, "header_row": 0, "columns": [], "rows": []}
    header_idx = detect_title_header(rows)
    return {
        "sheet": actual,
        "header_row": header_idx,
        "columns": [cell_text(c) for c in rows[header_idx]],
        "rows": rows[header_idx + 1: header_idx + 1 + limit],
    }


# ============================================================================
# MANUAL DIMENSIONS AND COGS CAP
# ============================================================================

@debug_watcher
def set_monthly_dimensions(
    store: DuckDBMetricStore,
    dataset_id: int,
    weight_lb: Any,
    volume_in3: Any,
) -> ParseResult:
    """
    Set the dataset month's average package weight/volume and derive its FBA fee.

    Replaces avg_weight_lb, avg_volume_in3 and fba_fee for the month bucket
    (source sheet "Manual") and refreshes the category constants.
    """
    dataset = store.get_dataset(dataset_id)
    if dataset is None:
        return ParseResult.failure(MANUAL_SHEET, IngestionError(f"Dataset {dataset_id} not found", MANUAL_SHEET))

    month = dataset.time_range_from or detect_month_from_filename(dataset.original_filename)
    weight = parse_positive(weight_lb)
    volume = parse_positive(volume_in3)
    try:
        if not month:
            raise IngestionError("Dataset month is unknown; cannot set monthly dimensions", MANUAL_SHEET)
        if weight is None or volume is None:
            raise NoValidRowsError(MANUAL_SHEET, "Weight and volume must be positive numbers")

        matcher = load_matcher(store)
        package = estimate_package(weight, volume)
        tier = matcher.resolve_size_tier(package)
        quote = matcher.fba_fee(tier, package.shipping_weight_lb)

        context = ParseContext(dataset=dataset, sheet_name=MANUAL_SHEET)
        records = [
            context.record("avg_weight_lb", weight, "count", MANUAL_SHEET, month),
            context.record("avg_volume_in3", volume, "count", MANUAL_SHEET, month),
            context.record("fba_fee", quote.fee_usd, "usd", MANUAL_SHEET, month),
        ]
        store.replace_metric_records(dataset.id, ["avg_weight_lb", "avg_volume_in3", "fba_fee"], month, records)

        update = CategoryConstantUpdate(dataset.category_id, {
            "avg_weight_lb": weight,
            "avg_volume_in3": volume,
            "estimated_side_in": package.side_in,
            "estimated_dimensional_weight_lb": package.dimensional_weight_lb,
            "estimated_shipping_weight_lb": package.shipping_weight_lb,
            "size_tier_estimate": tier,
            "fba_fee_usd": quote.fee_usd,
        })
        apply_category_update(store, update)
        return ParseResult(
            sheet=MANUAL_SHEET,
            ok=True,
            records=records,
            category_update=update,
            message=f"Saved monthly dimensions for {month}: {tier} -> ${quote.fee_usd:.2f}",
            details={"month": month, "tier": tier, "shipping_weight_lb": package.shipping_weight_lb},
            replaces=[],
        )
    except IngestionError as e:
        logger.warning(f"Monthly dimensions rejected for dataset {dataset_id}: {e.message}")
        return _failure(MANUAL_SHEET, e)


@debug_watcher
def compute_cogs_cap(
    store: DuckDBMetricStore,
    dataset_id: int,
    ads_pct: float = ADS_PCT,
    profit_target_pct: float = PROFIT_TARGET_PCT,
) -> ParseResult:
    """
    Recompute the dataset-level COGS cap from its latest price and fees.

    Uses the Market Analysis avg_price of the latest bucket, the referral fee
    of the latest bucket and the most recent fba_fee (0 when absent), then
    upserts one "overall" cogs_cap record.
    """
    dataset = store.get_dataset(dataset_id)
    if dataset is None:
        return ParseResult.failure(DERIVED_SHEET, IngestionError(f"Dataset {dataset_id} not found", DERIVED_SHEET))

    def latest_by_bucket(metric: str, **filters: Any):
        found = store.find_records(dataset_id=dataset_id, metrics=[metric], **filters)
        return max(found, key=lambda r: (r.bucket, r.record_id or 0)) if found else None

    try:
        price_record = latest_by_bucket("avg_price", source_sheet=MARKET_ANALYSIS_SHEET)
        if price_record is None:
            raise NoValidRowsError(DERIVED_SHEET, "avg_price not found")
        referral = latest_by_bucket("referral_fee")
        fba = store.latest_record("fba_fee", dataset_id=dataset_id)

        price = price_record.value
        referral_fee = referral.value if referral else 0.0
        fba_fee = fba.value if fba else 0.0
        calculator = DerivedMetricsCalculator(ads_pct=ads_pct, profit_target_pct=profit_target_pct)
        cogs_cap = calculator.cogs_cap(price, referral_fee, fba_fee)

        record = ParseContext(dataset=dataset).record("cogs_cap", cogs_cap, "usd", DERIVED_SHEET, OVERALL_BUCKET)
        store.replace_metric_records(dataset_id, ["cogs_cap"], OVERALL_BUCKET, [record])
        return ParseResult(
            sheet=DERIVED_SHEET,
            ok=True,
            records=[record],
            message="Computed COGS cap",
            details={
                "avg_price": price,
                "ads": ads_pct * price,
                "referral_fee": referral_fee,
                "fba_fee": fba_fee,
                "profit_target": profit_target_pct * price,
            },
        )
    except IngestionError as e:
        logger.warning(f"COGS cap not computed for dataset {dataset_id}: {e.message}")
        return _failure(DERIVED_SHEET, e)
