"""
Unit tests for derived profitability and advertising metrics.
"""

import sys
from pathlib import Path

import pytest

project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from research_engine.derived_metrics import DerivedMetricsCalculator


class TestProfitability:
    """Tests for the cost cap / profit chain."""

    def setup_method(self):
        self.calc = DerivedMetricsCalculator(ads_pct=0.2, profit_target_pct=0.2, cogs_assumed_pct=0.2)

    def test_full_chain(self):
        result = self.calc.profitability(20.0, referral_fee=3.0, fba_fee=4.0)
        assert result.ads == pytest.approx(4.0)
        assert result.fee == pytest.approx(7.0)
        assert result.cogs_cap == pytest.approx(5.0)
        assert result.profit == pytest.approx(5.0)
        assert result.margin_pct == pytest.approx(25.0)
        assert result.roi_pct == pytest.approx(125.0)

    def test_missing_fees_count_as_zero(self):
        result = self.calc.profitability(20.0)
        assert result.fee == 0.0
        assert result.cogs_cap == pytest.approx(12.0)

    def test_explicit_ads_cost(self):
        result = self.calc.profitability(20.0, referral_fee=3.0, fba_fee=4.0, ads_cost=2.0)
        assert result.ads == 2.0
        assert result.cogs_cap == pytest.approx(7.0)
        assert result.profit == pytest.approx(7.0)

    def test_zero_price_has_no_ratios(self):
        result = self.calc.profitability(0.0)
        assert result.margin_pct == 0.0
        assert result.roi_pct == 0.0

    def test_cogs_cap_matches_profitability(self):
        assert self.calc.cogs_cap(20.0, 3.0, 4.0) == pytest.approx(
            self.calc.profitability(20.0, 3.0, 4.0).cogs_cap
        )

    def test_assumptions_are_injectable(self):
        calc = DerivedMetricsCalculator(ads_pct=0.1, profit_target_pct=0.3)
        assert calc.cogs_cap(10.0) == pytest.approx(6.0)


class TestAdsChain:
    """Tests for ROAS / ACOS / TACOS / CPP."""

    def setup_method(self):
        self.calc = DerivedMetricsCalculator()

    def test_chain(self):
        chain = self.calc.ads_chain(cr=0.1, price=20.0, cpc=0.5, click_share=0.3)
        assert chain.roas == pytest.approx(4.0)
        assert chain.acos == pytest.approx(0.25)
        assert chain.tacos == pytest.approx(0.075)

    def test_missing_inputs_propagate_none(self):
        chain = self.calc.ads_chain(cr=None, price=20.0, cpc=0.5)
        assert (chain.roas, chain.acos, chain.tacos) == (None, None, None)

    def test_zero_cpc(self):
        assert self.calc.ads_chain(cr=0.1, price=20.0, cpc=0.0).roas is None

    def test_tacos_needs_click_share(self):
        chain = self.calc.ads_chain(cr=0.1, price=20.0, cpc=0.5)
        assert chain.acos == pytest.approx(0.25)
        assert chain.tacos is None

    def test_cpp(self):
        assert self.calc.cpp(0.5, 0.1) == pytest.approx(5.0)
        assert self.calc.cpp(0.5, 0) is None
        assert self.calc.cpp(None, 0.1) is None
