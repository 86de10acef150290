"""
Unit tests for the research sheet parsers.

Covers:
- Market Analysis headline metrics, referral fee and Derived profitability
- Fulfillment, Publication Time, Origin of Seller and Listing Concentration shares
- Market-research weight/volume -> tier -> FBA fee
- Mapped sheets
- Sheet-level failures returned as typed errors
"""

import sys
from pathlib import Path

import pytest

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from research_engine.derived_metrics import DerivedMetricsCalculator
from research_engine.errors import MissingColumnError, NoMatchingTierError, NoValidRowsError
from research_engine.fee_rules import FeeRuleMatcher
from research_engine.models import Category, Dataset, FbaFeeRule, ReferralFeeRule, SizeTierRule
from research_engine.sheet_parsers import (
    FulfillmentParser,
    ListingConcentrationParser,
    MarketAnalysisParser,
    MarketResearchParser,
    MetricMapping,
    OriginOfSellerParser,
    ParseContext,
    PublicationTimeParser,
    classify_fulfillment,
    is_new_listing_label,
    origin_slug,
    parse_mapped_sheet,
)

MARKET_ANALYSIS_HEADER = [
    "Sample Type",
    "Sample Size",
    "Avg. Monthly Unit Sales",
    "Avg. Monthly Revenue($)",
    "Avg. Price($)",
    "Avg. Ratings",
    "Avg. Rating",
]

SIZE_TIERS = [
    SizeTierRule("Small Standard", 15, 12, 0.75, None, 16, "in", "oz"),
    SizeTierRule("Large Standard", 18, 14, 8, None, 20, "in", "lb"),
]

FBA_FEES = [
    FbaFeeRule("Small Standard", "oz", 0, 16, fee_usd=3.22),
    FbaFeeRule("Large Standard", "oz", 0, 4, fee_usd=3.68),
    FbaFeeRule("Large Standard", "oz", 4, 8, fee_usd=3.90),
]


def make_context(month="2025-08", filename="US-Market-202508-Home.xlsx", sheet_name=None, fba_fee_usd=3.0):
    dataset = Dataset(category_id=1, original_filename=filename, time_range_from=month, id=1)
    matcher = FeeRuleMatcher(
        [ReferralFeeRule("Home & Kitchen", 0.15, min_fee_usd=0.30)],
        SIZE_TIERS,
        FBA_FEES,
    )
    return ParseContext(
        dataset=dataset,
        category=Category(id=1, name="Home & Kitchen"),
        sheet_name=sheet_name,
        matcher=matcher,
        calculator=DerivedMetricsCalculator(ads_pct=0.2, profit_target_pct=0.2, cogs_assumed_pct=0.2),
        fba_fee_usd=fba_fee_usd,
    )


def by_metric(result):
    return {r.metric: r for r in result.records}


class TestMarketAnalysisParser:

    def setup_method(self):
        self.parser = MarketAnalysisParser()
        self.context = make_context(sheet_name="Market Analysis")

    def test_all_cohort_metrics(self):
        rows = [
            ["Home & Kitchen - Market Analysis"],
            MARKET_ANALYSIS_HEADER,
            ["All", 500, 120, 30, 15.0, 1200, 4.4],
            ["Top 50", 50, 400, 90, 20.0, 3000, 4.6],
        ]
        result = self.parser.parse(rows, self.context)
        assert result.ok, result.message
        metrics = by_metric(result)

        assert metrics["sales_units"].value == 60000
        assert metrics["sales_units"].unit == "units"
        assert metrics["sales_units"].sample_type == "All"
        assert metrics["sales_units"].sample_size == 500
        assert metrics["revenue"].value == 3000
        assert metrics["revenue"].unit == "usd"
        assert metrics["avg_price"].value == 15.0
        assert metrics["avg_ratings"].value == 1200
        assert metrics["avg_rating"].value == 4.4
        assert all(r.bucket == "2025-08" for r in result.records)
        assert len(result.records) == 10

    def test_referral_fee_and_derived_records(self):
        rows = [MARKET_ANALYSIS_HEADER, ["All", 500, 120, 30, 15.0, 1200, 4.4]]
        result = self.parser.parse(rows, self.context)
        metrics = by_metric(result)

        referral = metrics["referral_fee"]
        assert referral.value == pytest.approx(2.25)
        assert referral.fee_percent == 0.15
        assert referral.base_price == 15.0

        # 15 - (3 ads + 2.25 referral + 3 fba + 3 profit target)
        assert metrics["cogs_cap"].value == pytest.approx(3.75)
        assert metrics["cogs_cap"].source_sheet == "Derived"
        assert metrics["profit"].value == pytest.approx(3.75)
        assert metrics["margin"].value == pytest.approx(25.0)
        assert metrics["roi"].value == pytest.approx(125.0)
        assert result.replaces == ["Market Analysis", "Derived"]

    def test_rows_with_blank_or_non_positive_values_skipped(self):
        rows = [
            MARKET_ANALYSIS_HEADER,
            ["All", 500, None, 30, 15.0, 1200, 4.4],
            ["All", 0, 120, 30, 15.0, 1200, 4.4],
            ["All", 200, 10, 5, 12.0, 800, 4.1],
        ]
        result = self.parser.parse(rows, self.context)
        assert result.ok
        assert result.details["skipped_rows"] == 2
        assert by_metric(result)["sales_units"].value == 2000

    def test_no_valid_rows(self):
        rows = [MARKET_ANALYSIS_HEADER, ["Top 50", 50, 400, 90, 20.0, 3000, 4.6]]
        result = self.parser.parse(rows, self.context)
        assert not result.ok
        assert isinstance(result.error, NoValidRowsError)

    def test_missing_sample_type_column(self):
        header = [h for h in MARKET_ANALYSIS_HEADER if h != "Sample Type"]
        rows = [header, [500, 120, 30, 15.0, 1200, 4.4]]
        result = self.parser.parse(rows, self.context)
        assert not result.ok
        assert isinstance(result.error, MissingColumnError)
        assert result.error.sheet == "Market Analysis"
        assert result.to_dict()["error"] == "MissingColumnError"

    def test_unknown_month_uses_overall_bucket(self):
        context = make_context(month=None, filename="home.xlsx")
        rows = [MARKET_ANALYSIS_HEADER, ["All", 500, 120, 30, 15.0, 1200, 4.4]]
        result = self.parser.parse(rows, context)
        assert {r.bucket for r in result.records} == {"overall"}

    def test_overflowing_row_skipped(self):
        rows = [
            MARKET_ANALYSIS_HEADER,
            ["All", 500, 120, 30, 15.0, 200, 4.5],
            ["All", 1e308, 1e308, 30, 15.0, 200, 4.5],
        ]
        result = self.parser.parse(rows, self.context)
        assert result.ok, result.message
        assert result.details["skipped_rows"] == 1
        assert [r.value for r in result.records if r.metric == "sales_units"] == [60000]

    def test_referral_lookup_failure_keeps_headline_records(self):
        class BrokenMatcher(FeeRuleMatcher):
            def referral_fee(self, *args, **kwargs):
                raise RuntimeError("rule table unavailable")

        self.context.matcher = BrokenMatcher()
        rows = [MARKET_ANALYSIS_HEADER, ["All", 500, 120, 30, 15.0, 1200, 4.4]]
        result = self.parser.parse(rows, self.context)

        assert result.ok, result.message
        metrics = by_metric(result)
        assert metrics["sales_units"].value == 60000
        assert metrics["revenue"].value == 3000
        assert metrics["avg_price"].value == 15.0
        assert "referral_fee" not in metrics
        # No referral fee: 15 - (3 ads + 3 fba + 3 profit target)
        assert metrics["cogs_cap"].value == pytest.approx(6.0)

        [warning] = result.details["warnings"]
        assert warning["error"] == "EnrichmentFailure"
        assert "rule table unavailable" in warning["message"]


class TestShareSheets:

    def test_fulfillment(self):
        rows = [
            ["Fulfillment", "ASINs Proportion"],
            ["FBA", "62.5%"],
            ["FBM", 0.3],
            ["AMZ", "7.5%"],
            [None, None],
        ]
        result = FulfillmentParser().parse(rows, make_context())
        assert result.ok
        values = {r.metric: r.value for r in result.records}
        assert values == {"fulfillment_fba": 62.5, "fulfillment_fbm": 30.0, "fulfillment_amz": 7.5}
        assert {r.bucket for r in result.records} == {"overall"}
        assert {r.unit for r in result.records} == {"pct"}

    def test_fulfillment_without_rows(self):
        result = FulfillmentParser().parse([["Fulfillment", "ASINs Proportion"]], make_context())
        assert not result.ok
        assert isinstance(result.error, NoValidRowsError)

    def test_classify_fulfillment(self):
        assert classify_fulfillment("FBA (Amazon)") == "fba"
        assert classify_fulfillment("Amazon / AMZ") == "amz"
        assert classify_fulfillment("N/A") == "na"

    def test_publication_time(self):
        rows = [
            ["Publication Time", "Sales Proportion"],
            ["Within 3 months", "20%"],
            ["3-6 months", "15%"],
            ["1-2 years", "40%"],
            ["Over 2 years", "25%"],
        ]
        result = PublicationTimeParser().parse(rows, make_context())
        assert result.ok
        [record] = result.records
        assert record.metric == "new_product_ratio"
        assert record.value == pytest.approx(35.0)
        assert record.bucket == "overall"

    def test_publication_time_zero_total(self):
        rows = [["Publication Time", "Sales Proportion"], ["Within 3 months", "0%"]]
        result = PublicationTimeParser().parse(rows, make_context())
        assert not result.ok
        assert isinstance(result.error, NoValidRowsError)

    def test_new_listing_label(self):
        assert is_new_listing_label("Within 1 month")
        assert not is_new_listing_label("6 months - 1 year")
        assert not is_new_listing_label("Monthly")

    def test_origin_of_seller_sums_duplicates(self):
        rows = [
            ["Origin of Seller", "Sales Proportion"],
            ["CN", "55%"],
            ["US", "40%"],
            ["cn ", "5%"],
        ]
        result = OriginOfSellerParser().parse(rows, make_context())
        assert result.ok
        values = {r.metric: r.value for r in result.records}
        assert values == {"seller_origin_cn": 60.0, "seller_origin_us": 40.0}

    def test_origin_slug(self):
        assert origin_slug("Hong Kong") == "hong_kong"
        assert origin_slug(" Mainland-China ") == "mainland_china"

    def test_listing_concentration_top10(self):
        rows = [["Rank", "Sales Proportion"]] + [[f"#{i}", "5%"] for i in range(1, 13)]
        result = ListingConcentrationParser().parse(rows, make_context())
        assert result.ok
        [record] = result.records
        assert record.metric == "listing_concentration"
        assert record.value == pytest.approx(50.0)
        assert record.bucket == "top10"

    def test_listing_concentration_without_rows(self):
        rows = [["Rank", "Sales Proportion"], ["n/a", "5%"]]
        result = ListingConcentrationParser().parse(rows, make_context())
        assert not result.ok


class TestMarketResearchParser:

    def test_tier_and_fba_fee(self):
        context = make_context(sheet_name="Market-research-Home")
        rows = [["Avg.Weight", "Avg.Volume"], ["0.24 lb", "64.54 in³"]]
        result = MarketResearchParser().parse(rows, context)
        assert result.ok, result.message
        assert result.sheet == "Market-research-Home"
        assert result.details["tier"] == "Large Standard"

        month_records = {r.metric: r for r in result.records if r.bucket == "2025-08"}
        assert month_records["avg_weight_lb"].value == 0.24
        assert month_records["avg_volume_in3"].value == 64.54
        assert month_records["fba_fee"].value == 3.90
        assert month_records["fba_fee"].source_sheet == "Market-research-Home"

        [overall] = [r for r in result.records if r.bucket == "overall"]
        assert overall.metric == "fba_fee"
        assert overall.source_sheet == "Market-research"
        assert set(result.replaces) == {"Market-research-Home", "Market-research"}

        fields = result.category_update.fields
        assert fields["fba_fee_usd"] == 3.90
        assert fields["size_tier_estimate"] == "Large Standard"
        assert fields["estimated_shipping_weight_lb"] == pytest.approx(0.4643, abs=1e-4)
        assert fields["referral_fee_percent_default"] == 0.15
        assert fields["referral_min_fee_usd"] == 0.30

    def test_without_month_only_overall_fee(self):
        context = make_context(month=None, filename="research.xlsx", sheet_name="Market-research")
        rows = [["Avg.Weight", "Avg.Volume"], [0.24, 64.54]]
        result = MarketResearchParser().parse(rows, context)
        assert result.ok
        assert [(r.metric, r.bucket) for r in result.records] == [("fba_fee", "overall")]

    def test_no_matching_tier(self):
        rows = [["Avg.Weight", "Avg.Volume"], [90, 50000]]
        result = MarketResearchParser().parse(rows, make_context(sheet_name="Market-research"))
        assert not result.ok
        assert isinstance(result.error, NoMatchingTierError)

    def test_no_values(self):
        rows = [["Avg.Weight", "Avg.Volume"], ["", ""]]
        result = MarketResearchParser().parse(rows, make_context(sheet_name="Market-research"))
        assert not result.ok
        assert isinstance(result.error, NoValidRowsError)


class TestMappedSheet:

    def setup_method(self):
        self.mappings = [
            MetricMapping("sessions", "Sessions", "count"),
            MetricMapping("conversion_share", "Share", "pct"),
        ]

    def test_mapped_values(self):
        rows = [
            ["Month", "Sessions", "Share"],
            ["202501", "1,000", "45%"],
            ["202502", 1200, 0.5],
            [None, "900", "40%"],
        ]
        context = make_context(sheet_name="Traffic")
        result = parse_mapped_sheet(rows, context, "month", self.mappings, bucket_format="YYYYMM")
        assert result.ok
        values = {(r.metric, r.bucket): r.value for r in result.records}
        assert values == {
            ("sessions", "2025-01"): 1000.0,
            ("conversion_share", "2025-01"): 45.0,
            ("sessions", "2025-02"): 1200.0,
            ("conversion_share", "2025-02"): 50.0,
            ("sessions", "2025-08"): 900.0,
            ("conversion_share", "2025-08"): 40.0,
        }
        assert {r.source_sheet for r in result.records} == {"Traffic"}

    def test_mm_slash_yyyy_buckets(self):
        rows = [["Period", "Sessions"], ["3/2025", 10]]
        result = parse_mapped_sheet(rows, make_context(sheet_name="Traffic"), "Period", self.mappings, "MM/YYYY")
        assert [(r.bucket, r.value) for r in result.records] == [("2025-03", 10.0)]

    def test_missing_bucket_column(self):
        rows = [["Sessions"], [10]]
        result = parse_mapped_sheet(rows, make_context(sheet_name="Traffic"), "Month", self.mappings)
        assert not result.ok
        assert isinstance(result.error, MissingColumnError)

    def test_blank_bucket_without_month_skipped(self):
        rows = [["Month", "Sessions"], [None, 10]]
        context = make_context(month=None, filename="traffic.xlsx", sheet_name="Traffic")
        result = parse_mapped_sheet(rows, context, "Month", self.mappings)
        assert not result.ok
        assert isinstance(result.error, NoValidRowsError)
