"""
Integration tests for workbook ingestion.

Tests dataset registration, per-sheet ingestion with persistence,
auto-ingestion independence, manual dimensions and COGS cap recomputation
against an in-memory store.
"""

import sys
from pathlib import Path

import pytest

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from research_engine.derived_metrics import DerivedMetricsCalculator
from research_engine.errors import IngestionError, MissingColumnError, NoValidRowsError
from research_engine.file_loader import Workbook
from research_engine.ingestion import (
    auto_ingest_workbook,
    compute_cogs_cap,
    detect_sheet_kind,
    ingest_sheet,
    preview_sheet,
    register_dataset,
    set_monthly_dimensions,
)
from research_engine.metric_store import DuckDBMetricStore
from research_engine.models import FbaFeeRule, ReferralFeeRule, SizeTierRule
from research_engine.sheet_parsers import MetricMapping

FILENAME = "US-Market-202508-Home.xlsx"

MARKET_ANALYSIS = [
    ["Home & Kitchen - Market Analysis"],
    ["Sample Type", "Sample Size", "Avg. Monthly Unit Sales", "Avg. Monthly Revenue($)",
     "Avg. Price($)", "Avg. Ratings", "Avg. Rating"],
    ["All", 500, 120, 30, 15.0, 1200, 4.4],
    ["Top 50", 50, 400, 90, 20.0, 3000, 4.6],
]

MARKET_ANALYSIS_NO_SAMPLE_TYPE = [
    ["Sample Size", "Avg. Monthly Unit Sales", "Avg. Monthly Revenue($)",
     "Avg. Price($)", "Avg. Ratings", "Avg. Rating"],
    [500, 120, 30, 15.0, 1200, 4.4],
]

FULFILLMENT = [
    ["Fulfillment", "ASINs Proportion"],
    ["FBA", "60%"],
    ["FBM", "40%"],
]

MARKET_RESEARCH = [
    ["Avg.Weight", "Avg.Volume"],
    ["0.24 lb", "64.54 in³"],
]

ADS = [
    ["KeywordsAnalyze-US-Home-202508-20251013"],
    ["Keyword", "Clicks", "Impressions", "Monthly Sales", "Monthly Searches", "PPC Bid", "Click Share"],
    ["mug", 100, 2000, 30, 1000, 0.5, "10%"],
]


class TestIngestion:

    def setup_method(self):
        self.store = DuckDBMetricStore(":memory:")
        self.store.save_referral_fee_rules([ReferralFeeRule("Home & Kitchen", 0.15, min_fee_usd=0.30)])
        self.store.save_size_tier_rules([
            SizeTierRule("Small Standard", 15, 12, 0.75, None, 16, "in", "oz"),
            SizeTierRule("Large Standard", 18, 14, 8, None, 20, "in", "lb"),
        ])
        self.store.save_fba_fee_rules([
            FbaFeeRule("Small Standard", "oz", 0, 16, fee_usd=3.22),
            FbaFeeRule("Large Standard", "oz", 0, 4, fee_usd=3.68),
            FbaFeeRule("Large Standard", "oz", 4, 8, fee_usd=3.90),
        ])
        self.category = self.store.create_category("Home & Kitchen")
        self.calculator = DerivedMetricsCalculator(ads_pct=0.2, profit_target_pct=0.2, cogs_assumed_pct=0.2)

    def teardown_method(self):
        self.store.close()

    def register(self, sheets, filename=FILENAME):
        workbook = Workbook(sheets, filename)
        return workbook, register_dataset(self.store, self.category.id, workbook)

    # Registration

    def test_register_dataset(self):
        _, dataset = self.register({"Market Analysis": MARKET_ANALYSIS, "Fulfillment": FULFILLMENT})
        assert dataset.time_range_from == "2025-08"
        assert dataset.status == "parsed"
        stored = self.store.get_dataset(dataset.id)
        info = {s.name: s for s in stored.sheets}
        assert info["Fulfillment"].columns == ["Fulfillment", "ASINs Proportion"]
        assert info["Fulfillment"].rows == 2

    def test_register_dataset_unknown_category(self):
        with pytest.raises(IngestionError):
            register_dataset(self.store, 999, Workbook({}, FILENAME))

    def test_detect_sheet_kind(self):
        assert detect_sheet_kind("market analysis") == "Market Analysis"
        assert detect_sheet_kind("Market-research-Home") == "Market-research"
        assert detect_sheet_kind("Batch(1)") == "Ads Metrics"
        assert detect_sheet_kind("Christmas Keywords") == "Ads Metrics"
        assert detect_sheet_kind("Traffic") == "mapped"

    # Single sheets

    def test_reingestion_replaces_records(self):
        workbook, dataset = self.register({"Market Analysis": MARKET_ANALYSIS})
        first = ingest_sheet(self.store, dataset.id, workbook, "Market Analysis", calculator=self.calculator)
        before = sorted(
            (r.metric, r.bucket, r.value, r.source_sheet)
            for r in self.store.find_records(dataset_id=dataset.id)
        )
        second = ingest_sheet(self.store, dataset.id, workbook, "Market Analysis", calculator=self.calculator)
        after = sorted(
            (r.metric, r.bucket, r.value, r.source_sheet)
            for r in self.store.find_records(dataset_id=dataset.id)
        )
        assert first.ok and second.ok
        assert before == after
        assert len(after) == 10
        assert self.store.get_dataset(dataset.id).status == "ready"

    def test_market_analysis_uses_stored_fba_fee(self):
        workbook, dataset = self.register({
            "Market Analysis": MARKET_ANALYSIS,
            "Market-research-Home": MARKET_RESEARCH,
        })
        research = ingest_sheet(self.store, dataset.id, workbook, "Market-research-Home")
        assert research.ok, research.message
        assert research.details["category_updated"] is True
        category = self.store.get_category(self.category.id)
        assert category.fba_fee_usd == 3.90
        assert category.size_tier_estimate == "Large Standard"
        assert category.referral_fee_percent_default == 0.15

        result = ingest_sheet(self.store, dataset.id, workbook, "Market Analysis", calculator=self.calculator)
        assert result.details["fba_fee_usd"] == 3.90
        cogs = {r.metric: r.value for r in result.records}["cogs_cap"]
        assert cogs == pytest.approx(15 - (3 + 2.25 + 3.90 + 3))

    def test_category_update_failure_keeps_sheet_ok(self, monkeypatch):
        workbook, dataset = self.register({"Market-research-Home": MARKET_RESEARCH})

        def fail_update(category_id, fields):
            raise RuntimeError("store is read-only")

        monkeypatch.setattr(self.store, "update_category_constants", fail_update)
        result = ingest_sheet(self.store, dataset.id, workbook, "Market-research-Home")

        assert result.ok, result.message
        assert result.details["category_updated"] is False
        warning = result.details["warnings"][-1]
        assert warning["error"] == "EnrichmentFailure"
        assert "read-only" in warning["message"]
        assert self.store.get_dataset(dataset.id).status == "ready"
        assert self.store.get_category(self.category.id).fba_fee_usd is None

    def test_missing_sheet(self):
        workbook, dataset = self.register({"Fulfillment": FULFILLMENT})
        result = ingest_sheet(self.store, dataset.id, workbook, "Origin of Seller")
        assert not result.ok
        assert "not found" in result.message

    def test_missing_dataset(self):
        result = ingest_sheet(self.store, 999, Workbook({"Fulfillment": FULFILLMENT}), "Fulfillment")
        assert not result.ok

    def test_failure_marks_dataset_failed(self):
        workbook, dataset = self.register({"Market Analysis": MARKET_ANALYSIS_NO_SAMPLE_TYPE})
        result = ingest_sheet(self.store, dataset.id, workbook, "Market Analysis")
        assert isinstance(result.error, MissingColumnError)
        assert self.store.get_dataset(dataset.id).status == "failed"

    def test_mapped_sheet_requires_mappings(self):
        workbook, dataset = self.register({"Traffic": [["Month", "Sessions"], ["202508", 10]]})
        result = ingest_sheet(self.store, dataset.id, workbook, "Traffic")
        assert not result.ok
        assert "required" in result.message

    def test_mapped_sheet(self):
        workbook, dataset = self.register({"Traffic": [["Month", "Sessions"], ["202507", 10], ["202508", 12]]})
        result = ingest_sheet(
            self.store, dataset.id, workbook, "Traffic",
            bucket_column="Month",
            metric_mappings=[MetricMapping("sessions", "Sessions", "count")],
            bucket_format="YYYYMM",
        )
        assert result.ok
        stored = self.store.find_records(dataset_id=dataset.id, source_sheet="Traffic")
        assert [(r.bucket, r.value) for r in stored] == [("2025-07", 10.0), ("2025-08", 12.0)]

    # Auto-ingestion

    def test_auto_ingest_sheets_fail_independently(self):
        workbook, dataset = self.register({
            "Market Analysis": MARKET_ANALYSIS_NO_SAMPLE_TYPE,
            "Fulfillment": FULFILLMENT,
        })
        results = {r.sheet: r for r in auto_ingest_workbook(self.store, dataset.id, workbook)}
        assert not results["Market Analysis"].ok
        assert isinstance(results["Market Analysis"].error, MissingColumnError)
        assert results["Fulfillment"].ok

        stored = self.store.find_records(dataset_id=dataset.id)
        assert {r.metric for r in stored} == {"fulfillment_fba", "fulfillment_fbm"}
        assert self.store.get_dataset(dataset.id).status == "ready"

    def test_auto_ingest_full_workbook(self):
        workbook, dataset = self.register({
            "Market Analysis": MARKET_ANALYSIS,
            "Fulfillment": FULFILLMENT,
            "Market-research-Home": MARKET_RESEARCH,
            "Batch(1)": ADS,
        })
        results = auto_ingest_workbook(self.store, dataset.id, workbook, calculator=self.calculator)
        assert [r.sheet for r in results] == [
            "Market Analysis", "Fulfillment", "Market-research-Home", "Ads Metrics",
        ]
        assert all(r.ok for r in results), [r.message for r in results]

        ads = {r.metric: r.value for r in results[-1].records}
        # Avg price resolved from the Market Analysis record of the same month
        assert results[-1].details["avg_price"] == 15.0
        assert ads["roas"] == pytest.approx(0.03 * 15.0 / 0.5)

    def test_register_with_auto_ingest(self):
        workbook = Workbook({"Fulfillment": FULFILLMENT}, FILENAME)
        dataset = register_dataset(self.store, self.category.id, workbook, auto_ingest=True)
        assert dataset.status == "ready"
        assert len(self.store.find_records(dataset_id=dataset.id)) == 2

    # Preview

    def test_preview_sheet_skips_title_row(self):
        workbook = Workbook({"Batch(1)": ADS}, FILENAME)
        preview = preview_sheet(workbook, "batch(1)", limit=5)
        assert preview["header_row"] == 1
        assert preview["columns"][1] == "Clicks"
        assert len(preview["rows"]) == 1
        assert preview_sheet(workbook, "Nope") is None

    # Manual dimensions and COGS cap

    def test_set_monthly_dimensions(self):
        _, dataset = self.register({"Fulfillment": FULFILLMENT})
        for _ in range(2):
            result = set_monthly_dimensions(self.store, dataset.id, "0.24", 64.54)
            assert result.ok, result.message
        stored = self.store.find_records(dataset_id=dataset.id, source_sheet="Manual")
        assert sorted(r.metric for r in stored) == ["avg_volume_in3", "avg_weight_lb", "fba_fee"]
        assert {r.bucket for r in stored} == {"2025-08"}
        assert result.details["tier"] == "Large Standard"
        assert self.store.get_category(self.category.id).avg_weight_lb == 0.24

    def test_set_monthly_dimensions_rejects_bad_input(self):
        _, dataset = self.register({"Fulfillment": FULFILLMENT})
        result = set_monthly_dimensions(self.store, dataset.id, 0, 64.54)
        assert isinstance(result.error, NoValidRowsError)

    def test_set_monthly_dimensions_needs_month(self):
        _, dataset = self.register({"Fulfillment": FULFILLMENT}, filename="home.xlsx")
        result = set_monthly_dimensions(self.store, dataset.id, 0.24, 64.54)
        assert not result.ok
        assert "month" in result.message

    def test_compute_cogs_cap(self):
        workbook, dataset = self.register({"Market Analysis": MARKET_ANALYSIS})
        ingest_sheet(self.store, dataset.id, workbook, "Market Analysis")
        set_monthly_dimensions(self.store, dataset.id, 0.24, 64.54)

        for _ in range(2):
            result = compute_cogs_cap(self.store, dataset.id, ads_pct=0.2, profit_target_pct=0.2)
            assert result.ok, result.message
        assert result.records[0].value == pytest.approx(15 - (3 + 2.25 + 3.90 + 3))
        overall = self.store.find_records(dataset_id=dataset.id, metrics=["cogs_cap"], bucket="overall")
        assert len(overall) == 1

    def test_compute_cogs_cap_without_price(self):
        _, dataset = self.register({"Fulfillment": FULFILLMENT})
        result = compute_cogs_cap(self.store, dataset.id)
        assert not result.ok
        assert "avg_price" in result.message
