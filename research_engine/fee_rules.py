"""
Fee Rule Matcher - Referral fee, size tier and FBA fee resolution.

Matches a category/price against referral-fee rules with fuzzy category
matching and band-aware fee computation, and resolves the FBA size tier and
fee band for an estimated package.

Example:
    matcher = FeeRuleMatcher(referral_rules, size_tier_rules, fba_rules)
    quote = matcher.referral_fee("Home & Kitchen", price=15.0)
    package = estimate_package(weight_lb=0.24, volume_in3=64.54)
    tier = matcher.resolve_size_tier(package)
    fba = matcher.fba_fee(tier, package.shipping_weight_lb)
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from research_engine.config import (
    CATEGORY_SIMILARITY_THRESHOLD,
    CM_PER_INCH,
    DIMENSION_TOLERANCE,
    DIMENSIONAL_WEIGHT_DIVISOR,
    OZ_PER_LB,
)
from research_engine.errors import NoMatchingFeeBandError, NoMatchingRuleError, NoMatchingTierError
from research_engine.logger import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from research_engine.models import Category, FbaFeeRule, ReferralFeeRule, SizeTierRule

logger = get_logger(__name__)

_TIER_FALLBACK_PATTERNS = {
    "Small Standard": re.compile(r"small\s*.*\s*standard", re.IGNORECASE),
    "Large Standard": re.compile(r"large\s*.*\s*standard", re.IGNORECASE),
    "Oversize": re.compile(r"over\s*.*\s*size", re.IGNORECASE),
}


# ============================================================================
# CATEGORY MATCHING
# ============================================================================

def normalize_category(text: Any) -> str:
    """Lower-case, '&' -> 'and', non-alphanumerics to spaces, collapse whitespace."""
    s = str(text or "").lower().replace("&", " and ")
    s = re.sub(r"[^a-z0-9]+", " ", s)
    return re.sub(r"\s+", " ", s).strip()


def category_tokens(text: Any) -> set[str]:
    return {t for t in normalize_category(text).split(" ") if t}


def jaccard_similarity(a: Any, b: Any) -> float:
    """Token-set Jaccard similarity; 0 when either side has no tokens."""
    left = category_tokens(a)
    right = category_tokens(b)
    if not left or not right:
        return 0.0
    inter = len(left & right)
    return inter / (len(left) + len(right) - inter)


def category_matches(
    rule_category: Any,
    product_category: Any,
    threshold: float = CATEGORY_SIMILARITY_THRESHOLD,
) -> bool:
    rule_norm = normalize_category(rule_category)
    product_norm = normalize_category(product_category)
    substring = bool(rule_norm) and (rule_norm in product_norm or product_norm in rule_norm)
    return substring or jaccard_similarity(rule_category, product_category) >= threshold


# ============================================================================
# PACKAGE ESTIMATION
# ============================================================================

@dataclass
class PackageEstimate:
    """Cubic package approximation from an average weight and volume."""

    weight_lb: float
    volume_in3: float
    side_in: float
    dimensional_weight_lb: float
    shipping_weight_lb: float

    @property
    def longest(self) -> float:
        return self.side_in

    @property
    def median(self) -> float:
        return self.side_in

    @property
    def shortest(self) -> float:
        return self.side_in

    @property
    def length_girth(self) -> float:
        # L + 2 * (W + H)
        return self.side_in + 2 * (self.side_in + self.side_in)


def estimate_package(weight_lb: float, volume_in3: float) -> PackageEstimate:
    side = float(np.cbrt(max(0.0, volume_in3)))
    dimensional = side ** 3 / DIMENSIONAL_WEIGHT_DIVISOR
    return PackageEstimate(
        weight_lb=weight_lb,
        volume_in3=volume_in3,
        side_in=side,
        dimensional_weight_lb=dimensional,
        shipping_weight_lb=max(weight_lb, dimensional),
    )


def normalize_tier_name(tier: Any) -> Any:
    """Map recognizable tier labels onto Small Standard / Large Standard / Oversize."""
    if not tier:
        return tier
    s = str(tier).lower()
    if "small" in s and "standard" in s:
        return "Small Standard"
    if "large" in s and "standard" in s:
        return "Large Standard"
    if "oversize" in s or "over size" in s:
        return "Oversize"
    return tier


def _to_inches(value: float, unit: str | None) -> float:
    return value / CM_PER_INCH if (unit or "").lower() == "cm" else value


def _to_pounds(value: float, unit: str | None) -> float:
    return value / OZ_PER_LB if (unit or "").lower() == "oz" else value


def _from_pounds(value_lb: float, unit: str | None) -> float:
    return value_lb * OZ_PER_LB if (unit or "").lower() == "oz" else value_lb


# ============================================================================
# QUOTES
# ============================================================================

@dataclass
class ReferralFeeQuote:
    fee: float
    fee_percent: float | None
    min_fee_usd: float
    source: str  # "rules" or "category_default"
    matched_rules: int = 0


@dataclass
class FbaFeeQuote:
    fee_usd: float
    tier: str
    weight_in_rule_unit: float
    rule: FbaFeeRule


# ============================================================================
# MATCHER
# ============================================================================

class FeeRuleMatcher:
    """
    Resolves referral fees, size tiers and FBA fee bands against rule tables.

    The matcher is pure: rule tables are passed in and never modified.
    """

    def __init__(
        self,
        referral_rules: Sequence[ReferralFeeRule] = (),
        size_tier_rules: Sequence[SizeTierRule] = (),
        fba_fee_rules: Sequence[FbaFeeRule] = (),
        similarity_threshold: float = CATEGORY_SIMILARITY_THRESHOLD,
    ):
        self.referral_rules = list(referral_rules)
        self.size_tier_rules = list(size_tier_rules)
        self.fba_fee_rules = list(fba_fee_rules)
        self.similarity_threshold = similarity_threshold

    # ------------------------------------------------------------------
    # Referral fee
    # ------------------------------------------------------------------

    def rules_for_category(self, category_name: str) -> list[ReferralFeeRule]:
        return [
            rule for rule in self.referral_rules
            if category_matches(rule.category, category_name, self.similarity_threshold)
        ]

    @staticmethod
    def price_in_band(rule: ReferralFeeRule, price: float) -> bool:
        # A portion rule applies once the price enters its band; the slice
        # above the band is charged by the next band's rule.
        if (rule.apply_to or "total").lower() == "portion":
            return price >= rule.lower_bound
        return rule.lower_bound <= price <= rule.upper_bound

    def matching_referral_rules(self, category_name: str, price: float) -> list[ReferralFeeRule]:
        """Rules matching category and price, narrowest price band first."""
        matched = [
            rule for rule in self.rules_for_category(category_name)
            if self.price_in_band(rule, price)
        ]
        return sorted(matched, key=lambda r: r.price_span)

    @staticmethod
    def _rule_contribution(rule: ReferralFeeRule, price: float) -> float:
        apply_to = (rule.apply_to or "total").lower()
        pct = rule.fee_percent or 0.0
        if apply_to == "portion":
            portion = max(0.0, min(price, rule.upper_bound) - max(rule.lower_bound, 0.0))
            return portion * pct
        return price * pct

    def referral_fee(
        self,
        category_name: str,
        price: float,
        category: Category | None = None,
    ) -> ReferralFeeQuote | None:
        """
        Referral fee for one price point.

        Sums every matching rule's contribution and clamps to the largest
        minimum fee. Falls back to the category's persisted default percent
        when no rule matches. Returns None when no fee can be determined.
        """
        matched = self.matching_referral_rules(category_name, price)
        if matched:
            total = sum(self._rule_contribution(rule, price) for rule in matched)
            min_fee = max((rule.min_fee_usd or 0.0) for rule in matched)
            if min_fee > 0:
                total = max(total, min_fee)
            if total <= 0:
                return None
            return ReferralFeeQuote(
                fee=total,
                fee_percent=matched[0].fee_percent,
                min_fee_usd=min_fee,
                source="rules",
                matched_rules=len(matched),
            )

        if category is None:
            return None
        default_pct = category.referral_fee_percent_default
        if default_pct is None or not default_pct > 0:
            return None
        min_fee = category.referral_min_fee_usd or 0.0
        return ReferralFeeQuote(
            fee=max(price * default_pct, min_fee),
            fee_percent=default_pct,
            min_fee_usd=min_fee,
            source="category_default",
        )

    def referral_defaults(self, category_name: str) -> dict[str, float] | None:
        """
        Category-level referral defaults from the rule table.

        Prefers a rule spanning the whole price range, else the widest band.
        The minimum fee is the largest across the category's rules.
        """
        rules = self.rules_for_category(category_name)
        if not rules:
            return None
        pick = next(
            (r for r in rules if not r.price_min and not r.price_max),
            None,
        )
        if pick is None:
            pick = max(rules, key=lambda r: r.price_span)
        min_fee = max([0.0] + [float(r.min_fee_usd or 0.0) for r in rules])
        return {
            "referral_fee_percent_default": pick.fee_percent,
            "referral_min_fee_usd": min_fee if math.isfinite(min_fee) else 0.0,
        }

    # ------------------------------------------------------------------
    # Size tier
    # ------------------------------------------------------------------

    @staticmethod
    def _fits(value: float, maximum: float | None) -> bool:
        return maximum is None or value <= maximum + DIMENSION_TOLERANCE

    def tier_fits(self, rule: SizeTierRule, package: PackageEstimate) -> bool:
        def inches(v: float | None) -> float | None:
            return None if v is None else _to_inches(v, rule.unit_length)

        weight_max = (
            None if rule.shipping_weight_max is None
            else _to_pounds(rule.shipping_weight_max, rule.unit_weight)
        )
        return (
            self._fits(package.longest, inches(rule.longest_max))
            and self._fits(package.median, inches(rule.median_max))
            and self._fits(package.shortest, inches(rule.shortest_max))
            and self._fits(package.length_girth, inches(rule.length_girth_max))
            and self._fits(package.shipping_weight_lb, weight_max)
        )

    def resolve_size_tier(self, package: PackageEstimate) -> str:
        """First size-tier rule accommodating the package, as a normalized tier name."""
        for rule in self.size_tier_rules:
            if self.tier_fits(rule, package):
                logger.debug(f"Package side {package.side_in:.3f}in matched tier {rule.tier}")
                return normalize_tier_name(rule.tier)
        raise NoMatchingTierError("No size tier matches given Avg.Weight/Avg.Volume")

    # ------------------------------------------------------------------
    # FBA fee
    # ------------------------------------------------------------------

    def rules_for_tier(self, tier: str) -> list[FbaFeeRule]:
        normalized = str(normalize_tier_name(tier)).lower()
        exact = [r for r in self.fba_fee_rules if str(r.tier).strip().lower() == normalized]
        if exact:
            return exact
        pattern = _TIER_FALLBACK_PATTERNS.get(normalize_tier_name(tier))
        if pattern is None:
            return []
        return [r for r in self.fba_fee_rules if pattern.search(str(r.tier))]

    @staticmethod
    def band_fee(rule: FbaFeeRule, shipping_weight_lb: float) -> float | None:
        if rule.fee_usd is not None:
            return rule.fee_usd
        if rule.base_usd is None:
            return None
        total = rule.base_usd
        for over in rule.overage_rules:
            current = _from_pounds(shipping_weight_lb, over.over_threshold_unit)
            if current > over.over_threshold_value and over.step_value > 0:
                steps = math.ceil((current - over.over_threshold_value) / over.step_value)
                total += steps * (over.step_fee_usd or 0.0)
        return total

    def fba_fee(self, tier: str, shipping_weight_lb: float) -> FbaFeeQuote:
        """
        FBA fee for a tier and shipping weight.

        Raises:
            NoMatchingRuleError: No fee rules exist for the tier.
            NoMatchingFeeBandError: No weight band contains the shipping weight.
        """
        rules = self.rules_for_tier(tier)
        if not rules:
            raise NoMatchingRuleError(f"No FBA fee rules found for tier {tier}")

        for rule in rules:
            weight = _from_pounds(shipping_weight_lb, rule.unit or "oz")
            low = rule.weight_min if rule.weight_min is not None else 0.0
            high = rule.weight_max if rule.weight_max is not None else math.inf
            if not low <= weight <= high:
                continue
            fee = self.band_fee(rule, shipping_weight_lb)
            if fee is None:
                logger.debug(f"FBA band {low}-{high}{rule.unit} for {tier} has no fee defined")
                continue
            return FbaFeeQuote(fee_usd=fee, tier=str(tier), weight_in_rule_unit=weight, rule=rule)

        raise NoMatchingFeeBandError("No matching weight band in FBA fee rules")
