"""
Derived metric calculations.

Profitability chain (cost cap, profit, margin, ROI) from price and fees,
and the advertising chain (ROAS, ACOS, TACOS) from conversion, cost-per-click
and click share. Missing ads inputs propagate as None instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass

from research_engine.config import ADS_PCT, COGS_ASSUMED_PCT, PROFIT_TARGET_PCT


@dataclass
class ProfitBreakdown:
    price: float
    ads: float
    fee: float
    profit_target: float
    cogs_assumed: float
    cogs_cap: float
    profit: float
    margin_pct: float
    roi_pct: float


@dataclass
class AdsChain:
    roas: float | None
    acos: float | None
    tacos: float | None


class DerivedMetricsCalculator:
    """
    Computes secondary metrics from already-resolved inputs.

    Args:
        ads_pct: Share of price assumed spent on advertising.
        profit_target_pct: Share of price reserved as profit target.
        cogs_assumed_pct: Share of price assumed as COGS for profit/ROI.
    """

    def __init__(
        self,
        ads_pct: float = ADS_PCT,
        profit_target_pct: float = PROFIT_TARGET_PCT,
        cogs_assumed_pct: float = COGS_ASSUMED_PCT,
    ):
        self.ads_pct = ads_pct
        self.profit_target_pct = profit_target_pct
        self.cogs_assumed_pct = cogs_assumed_pct

    def cogs_cap(self, price: float, referral_fee: float | None = None, fba_fee: float | None = None) -> float:
        ads = self.ads_pct * price
        fee = (referral_fee or 0.0) + (fba_fee or 0.0)
        return price - (ads + fee + self.profit_target_pct * price)

    def profitability(
        self,
        price: float,
        referral_fee: float | None = None,
        fba_fee: float | None = None,
        ads_cost: float | None = None,
    ) -> ProfitBreakdown:
        """
        Profit chain for one unit at `price`.

        Args:
            price: Unit selling price.
            referral_fee: Referral fee in USD (missing counts as 0).
            fba_fee: FBA fee in USD (missing counts as 0).
            ads_cost: Per-unit ads cost; defaults to ads_pct x price.

        Returns:
            ProfitBreakdown with cogs_cap, profit, margin_pct and roi_pct.
        """
        ads = self.ads_pct * price if ads_cost is None else ads_cost
        fee = (referral_fee or 0.0) + (fba_fee or 0.0)
        profit_target = self.profit_target_pct * price
        cogs_assumed = self.cogs_assumed_pct * price

        profit = price - (ads + fee + cogs_assumed)
        margin_pct = profit / price * 100 if price > 0 else 0.0
        roi_pct = profit / cogs_assumed * 100 if cogs_assumed > 0 else 0.0

        return ProfitBreakdown(
            price=price,
            ads=ads,
            fee=fee,
            profit_target=profit_target,
            cogs_assumed=cogs_assumed,
            cogs_cap=price - (ads + fee + profit_target),
            profit=profit,
            margin_pct=margin_pct,
            roi_pct=roi_pct,
        )

    @staticmethod
    def roas(cr: float | None, price: float | None, cpc: float | None) -> float | None:
        if cr is None or price is None or not cpc:
            return None
        return cr * price / cpc

    @staticmethod
    def acos(roas: float | None) -> float | None:
        return 1 / roas if roas else None

    @staticmethod
    def tacos(acos: float | None, click_share: float | None) -> float | None:
        if acos is None or click_share is None:
            return None
        return acos * click_share

    def ads_chain(
        self,
        cr: float | None,
        price: float | None,
        cpc: float | None,
        click_share: float | None = None,
    ) -> AdsChain:
        roas = self.roas(cr, price, cpc)
        acos = self.acos(roas)
        return AdsChain(roas=roas, acos=acos, tacos=self.tacos(acos, click_share))

    @staticmethod
    def cpp(cpc: float | None, cr: float | None) -> float | None:
        """Cost per purchase."""
        if cpc is None or not cr or cr <= 0:
            return None
        return cpc / cr
