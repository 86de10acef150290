"""
Category Research Engine - Command Line Entry Point

Loads fee/tier rule tables, ingests category research workbooks into the
DuckDB metric store and prints reconciled summaries:

1. load-rules: replace the referral-fee, size-tier and FBA-fee rule tables
2. ingest: register a workbook as a dataset of a category and ingest its sheets
3. summary: reconciled month series for one dataset
4. category: everything known about one category
5. cogs: recompute the dataset-level COGS cap
6. dimensions: set the dataset month's average package weight/volume
7. migrate-buckets: re-bucket legacy numeric buckets of a category

Usage:
    python main.py load-rules --referral rules/referral.csv --size-tier rules/tiers.csv --fba rules/fba.json
    python main.py ingest --file "US-Market-202508-Home.xlsx" --category "Home & Kitchen"
    python main.py summary --dataset 1 --metrics sales_units,revenue --from 2025-01 --to 2025-12
    python main.py category --id 1
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

from research_engine.config import ADS_PCT, PROFIT_TARGET_PCT, ensure_directories, validate_config
from research_engine.file_loader import load_workbook
from research_engine.ingestion import (
    auto_ingest_workbook,
    compute_cogs_cap,
    ingest_sheet,
    register_dataset,
    set_monthly_dimensions,
)
from research_engine.metric_store import DuckDBMetricStore
from research_engine.rule_loader import load_fba_fee_rules, load_referral_rules, load_size_tier_rules
from research_engine.summary import category_detail, metrics_summary, migrate_buckets


def log(message: str, level: str = "INFO") -> None:
    """Simple console logging for CLI progress."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] [{level}] {message}", file=sys.stderr)


def emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_load_rules(store: DuckDBMetricStore, args: argparse.Namespace) -> int:
    loaded = {}
    if args.referral:
        loaded["referral_fee_rules"] = store.save_referral_fee_rules(load_referral_rules(args.referral))
    if args.size_tier:
        loaded["size_tier_rules"] = store.save_size_tier_rules(load_size_tier_rules(args.size_tier))
    if args.fba:
        loaded["fba_fee_rules"] = store.save_fba_fee_rules(load_fba_fee_rules(args.fba))
    if not loaded:
        log("Nothing to load: pass --referral, --size-tier and/or --fba", "ERROR")
        return 1
    emit(loaded)
    return 0


def cmd_ingest(store: DuckDBMetricStore, args: argparse.Namespace) -> int:
    path = Path(args.file)
    if not path.exists():
        log(f"File not found: {path}", "ERROR")
        return 1

    workbook = load_workbook(path)
    category = store.get_or_create_category(args.category)
    dataset = register_dataset(store, category.id, workbook, filename=path.name)
    log(f"Dataset {dataset.id}: {dataset.original_filename} (month {dataset.time_range_from or 'unknown'})")

    if args.sheet:
        results = [ingest_sheet(store, dataset.id, workbook, args.sheet)]
    else:
        results = auto_ingest_workbook(store, dataset.id, workbook)

    for result in results:
        level = "INFO" if result.ok else "WARNING"
        log(f"{result.sheet}: {result.message}", level)

    emit({
        "dataset_id": dataset.id,
        "category_id": category.id,
        "results": [
            {k: v for k, v in r.to_dict().items() if k != "records"}
            for r in results
        ],
    })
    # A requested sheet must succeed; auto-ingestion tolerates failures
    if args.sheet and not results[0].ok:
        return 1
    return 0


def cmd_summary(store: DuckDBMetricStore, args: argparse.Namespace) -> int:
    metrics = [m.strip() for m in (args.metrics or "").split(",") if m.strip()]
    summary = metrics_summary(store, args.dataset, metrics, args.month_from, args.month_to)
    emit(summary.to_dict())
    return 0


def cmd_category(store: DuckDBMetricStore, args: argparse.Namespace) -> int:
    detail = category_detail(store, args.id)
    if detail is None:
        log(f"Category {args.id} not found", "ERROR")
        return 1
    emit(detail)
    return 0


def cmd_cogs(store: DuckDBMetricStore, args: argparse.Namespace) -> int:
    result = compute_cogs_cap(store, args.dataset, args.ads_pct, args.profit_target_pct)
    emit(result.to_dict())
    return 0 if result.ok else 1


def cmd_dimensions(store: DuckDBMetricStore, args: argparse.Namespace) -> int:
    result = set_monthly_dimensions(store, args.dataset, args.weight, args.volume)
    emit(result.to_dict())
    return 0 if result.ok else 1


def cmd_migrate(store: DuckDBMetricStore, args: argparse.Namespace) -> int:
    emit(migrate_buckets(store, args.category_id))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Category Research Engine - sheet ingestion and derived metrics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py load-rules --referral referral.csv --size-tier tiers.csv --fba fba.json
  python main.py ingest --file US-Market-202508-Home.xlsx --category "Home & Kitchen"
  python main.py ingest --file US-Market-202508-Home.xlsx --category Home --sheet "Market Analysis"
  python main.py summary --dataset 1 --metrics sales_units,revenue
  python main.py category --id 1
        """
    )
    parser.add_argument(
        "--store",
        type=str,
        default=None,
        help="DuckDB store path (optional, uses data/research.duckdb if not provided)"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    rules = sub.add_parser("load-rules", help="Replace rule tables from CSV/XLSX/JSON files")
    rules.add_argument("--referral", type=str, default=None, help="Referral fee rule table")
    rules.add_argument("--size-tier", type=str, default=None, help="Size tier rule table")
    rules.add_argument("--fba", type=str, default=None, help="FBA fee rule table")
    rules.set_defaults(handler=cmd_load_rules)

    ingest = sub.add_parser("ingest", help="Register and ingest a research workbook")
    ingest.add_argument("--file", "-f", type=str, required=True, help="Workbook path (xlsx/xls/csv)")
    ingest.add_argument("--category", "-c", type=str, required=True, help="Category name (created if missing)")
    ingest.add_argument("--sheet", "-s", type=str, default=None, help="Ingest only this sheet")
    ingest.set_defaults(handler=cmd_ingest)

    summary = sub.add_parser("summary", help="Reconciled metric series for a dataset")
    summary.add_argument("--dataset", "-d", type=int, required=True, help="Dataset id")
    summary.add_argument("--metrics", "-m", type=str, default=None, help="Comma-separated metric names")
    summary.add_argument("--from", dest="month_from", type=str, default=None, help="First bucket (YYYY-MM)")
    summary.add_argument("--to", dest="month_to", type=str, default=None, help="Last bucket (YYYY-MM)")
    summary.set_defaults(handler=cmd_summary)

    category = sub.add_parser("category", help="Category detail across datasets")
    category.add_argument("--id", type=int, required=True, help="Category id")
    category.set_defaults(handler=cmd_category)

    cogs = sub.add_parser("cogs", help="Recompute the dataset COGS cap")
    cogs.add_argument("--dataset", "-d", type=int, required=True, help="Dataset id")
    cogs.add_argument("--ads-pct", type=float, default=ADS_PCT, help="Ads share of price")
    cogs.add_argument("--profit-target-pct", type=float, default=PROFIT_TARGET_PCT, help="Profit target share of price")
    cogs.set_defaults(handler=cmd_cogs)

    dims = sub.add_parser("dimensions", help="Set monthly average package weight/volume")
    dims.add_argument("--dataset", "-d", type=int, required=True, help="Dataset id")
    dims.add_argument("--weight", type=float, required=True, help="Average weight (lb)")
    dims.add_argument("--volume", type=float, required=True, help="Average volume (in^3)")
    dims.set_defaults(handler=cmd_dimensions)

    migrate = sub.add_parser("migrate-buckets", help="Re-bucket legacy numeric buckets")
    migrate.add_argument("--category-id", type=int, required=True, help="Category id")
    migrate.set_defaults(handler=cmd_migrate)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point with argument parsing."""
    args = build_parser().parse_args(argv)

    is_valid, errors = validate_config()
    if not is_valid:
        log(f"Configuration errors: {errors}", "ERROR")
        return 1
    ensure_directories()

    try:
        with DuckDBMetricStore(args.store) as store:
            return args.handler(store, args)
    except Exception as e:
        log(f"Command failed: {e}", "ERROR")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
