"""
Pricing and proration engine

Pure price computation: plan subtotal, interval scaling, usage charges,
promotion discounts and currency formatting. Nothing here reads the clock or
touches persistence, so identical inputs always produce identical breakdowns.

All amounts are integers in the currency's minor unit (cents for USD, yen for
JPY). Per-unit fees may be fractional; results are rounded half-up.
"""

import logging
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence

from .exceptions import ConfigurationException, ValidationException
from .models import (
    BillingInterval,
    DiscountLine,
    PriceBreakdown,
    PricingOptions,
    PricingType,
    PromotionType,
    UsageCharge
)

logger = logging.getLogger(__name__)


INTERVAL_MULTIPLIERS = {
    BillingInterval.MONTHLY: 1,
    BillingInterval.QUARTERLY: 3,
    BillingInterval.ANNUAL: 12,
}

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "CAD": "CA$",
    "AUD": "A$",
    "JPY": "¥",
}

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def to_minor_units(amount) -> int:
    """Round an amount to a whole minor unit, half-up."""
    return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def currency_exponent(currency: str) -> int:
    """Number of decimal places of the currency's minor unit."""
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def format_price(amount: int, currency: str) -> str:
    """
    Format an amount in minor units for display.

    Args:
        amount: Amount in minor units
        currency: ISO currency code

    Returns:
        Formatted string, e.g. ``$1,234.50`` or ``¥1,500``
    """
    code = currency.upper()
    exponent = currency_exponent(code)
    major = Decimal(amount) / (Decimal(10) ** exponent)
    sign = "-" if major < 0 else ""
    number = f"{abs(major):,.{exponent}f}"

    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{sign}{symbol}{number}"
    return f"{sign}{number} {code}"


def validate_tiers(tiers: Sequence[Any]) -> None:
    """
    Check a tier list is contiguous and non-overlapping.

    Raises:
        ConfigurationException: If the tiers cannot price every quantity
            in their range unambiguously
    """
    ordered = sorted(tiers, key=lambda tier: tier.min_quantity)
    for index, tier in enumerate(ordered):
        is_last = index == len(ordered) - 1

        if tier.min_quantity < 0:
            raise ConfigurationException(f"Tier lower bound cannot be negative: {tier.min_quantity}")

        if tier.infinite:
            if not is_last:
                raise ConfigurationException("Only the last tier may be unbounded")
            continue

        if tier.max_quantity is None:
            raise ConfigurationException("Bounded tier is missing its upper bound")
        if tier.max_quantity <= tier.min_quantity:
            raise ConfigurationException(
                f"Tier upper bound {tier.max_quantity} must exceed lower bound {tier.min_quantity}"
            )
        if not is_last and ordered[index + 1].min_quantity != tier.max_quantity:
            raise ConfigurationException(
                f"Tiers must be contiguous: gap or overlap at {tier.max_quantity}"
            )


def find_applicable_tier(tiers: Sequence[Any], quantity: int) -> Optional[Any]:
    """
    Find the tier whose half-open range ``[min, max)`` contains the quantity.

    An unbounded tier matches any quantity at or above its lower bound.
    """
    for tier in sorted(tiers, key=lambda tier: tier.min_quantity):
        if quantity < tier.min_quantity:
            continue
        if tier.infinite or tier.max_quantity is None or quantity < tier.max_quantity:
            return tier
    return None


def find_limit_tier(tiers: Sequence[Any], quantity: int) -> Optional[Any]:
    """
    Find the tier a usage total is measured against.

    Unlike pricing, a total equal to a bounded tier's upper bound still
    counts against that tier, so usage at the limit reads as 100% of it.
    A total beyond every bounded tier, with no unbounded tier after them,
    is measured against the last bounded tier.
    """
    ordered = sorted(tiers, key=lambda tier: tier.min_quantity)
    bounded = [tier for tier in ordered if not tier.infinite and tier.max_quantity is not None]

    for tier in bounded:
        if tier.min_quantity < quantity <= tier.max_quantity:
            return tier

    current = find_applicable_tier(ordered, quantity)
    if current is None and bounded and quantity >= bounded[-1].max_quantity:
        return bounded[-1]
    return current


def next_tier(tiers: Sequence[Any], current: Any) -> Optional[Any]:
    """Tier immediately above ``current``, if any."""
    ordered = sorted(tiers, key=lambda tier: tier.min_quantity)
    for index, tier in enumerate(ordered):
        if tier is current and index + 1 < len(ordered):
            return ordered[index + 1]
    return None


def tier_charge(tier: Any, quantity: int) -> Decimal:
    """Flat fee plus per-unit fee for ``quantity`` units."""
    return Decimal(tier.flat_fee or 0) + Decimal(tier.unit_price or 0) * quantity


def interval_multiplier(billing_interval: BillingInterval,
                        custom_multiplier: Optional[Decimal] = None) -> Decimal:
    """Scale factor from the monthly base price to the billing interval."""
    if billing_interval == BillingInterval.CUSTOM:
        return Decimal(custom_multiplier) if custom_multiplier is not None else Decimal(1)
    return Decimal(INTERVAL_MULTIPLIERS.get(billing_interval, 1))


def _plan_subtotal(plan: Any, quantity: int) -> Decimal:
    pricing_type = plan.pricing_type
    base_price = Decimal(plan.base_price or 0)

    if pricing_type == PricingType.FLAT:
        return base_price
    if pricing_type == PricingType.PER_UNIT:
        return base_price * quantity
    if pricing_type == PricingType.TIERED:
        tier = find_applicable_tier(plan.tiers, quantity)
        if tier is None:
            logger.warning(
                f"No tier of plan {plan.id} covers quantity {quantity}, "
                f"falling back to base price per unit"
            )
            return base_price * quantity
        return tier_charge(tier, quantity)
    if pricing_type == PricingType.USAGE_BASED:
        return Decimal(0)

    raise ConfigurationException(
        f"Unknown pricing type: {pricing_type}", entity_id=getattr(plan, "id", None),
        operation="calculate_price"
    )


def calculate_usage_charges(usage_records: Sequence[Any],
                            features: Dict[str, Any]) -> List[UsageCharge]:
    """
    Price usage grouped by feature.

    Each feature's total is priced against the tier that contains it; a
    feature without a matching tier is charged nothing.
    """
    totals: "OrderedDict[str, int]" = OrderedDict()
    for record in usage_records:
        totals[record.feature_id] = totals.get(record.feature_id, 0) + record.quantity

    charges = []
    for feature_id, total in totals.items():
        feature = features.get(feature_id)
        if feature is None:
            feature = next(
                (getattr(record, "feature", None) for record in usage_records
                 if record.feature_id == feature_id and getattr(record, "feature", None)),
                None
            )

        tiers = feature.tiers if feature is not None else []
        name = feature.name if feature is not None else feature_id
        tier = find_applicable_tier(tiers, total)
        amount = to_minor_units(tier_charge(tier, total)) if tier else 0

        charges.append(UsageCharge(
            feature_id=feature_id,
            feature_name=name,
            quantity=total,
            amount=amount
        ))

    return charges


def promotion_applies(promotion: Any, plan: Any, as_of: Optional[datetime] = None) -> bool:
    """Whether a promotion is live and targets the plan or one of its features."""
    if not promotion.is_active:
        return False

    if as_of is not None:
        if promotion.start_date and as_of < promotion.start_date:
            return False
        if promotion.end_date and as_of > promotion.end_date:
            return False

    plan_ids = promotion.applicable_plan_ids or []
    feature_ids = promotion.applicable_feature_ids or []
    if plan.id in plan_ids:
        return True
    return any(feature_id in feature_ids for feature_id in (plan.feature_ids or []))


def calculate_discount(promotion: Any, remaining: int) -> int:
    """Discount of one promotion against the running subtotal."""
    promotion_type = promotion.promotion_type
    value = Decimal(promotion.value or 0)

    if promotion_type == PromotionType.PERCENTAGE:
        amount = to_minor_units(Decimal(remaining) * value / 100)
    elif promotion_type == PromotionType.FIXED_AMOUNT:
        amount = to_minor_units(value)
    elif promotion_type == PromotionType.FREE_PERIOD:
        amount = remaining
    else:
        raise ConfigurationException(f"Unknown promotion type: {promotion_type}",
                                     entity_id=getattr(promotion, "id", None))

    return max(0, min(amount, remaining))


def apply_promotions(subtotal: int, promotions: Sequence[Any], plan: Any,
                     as_of: Optional[datetime] = None) -> List[DiscountLine]:
    """
    Apply promotions sequentially: stackable ones first, then at most one
    non-stackable. Each discount is taken from what is left of the subtotal.
    """
    eligible = [promotion for promotion in promotions if promotion_applies(promotion, plan, as_of)]
    eligible.sort(key=lambda promotion: 0 if promotion.is_stackable else 1)

    lines = []
    remaining = subtotal
    exclusive_applied = False

    for promotion in eligible:
        if not promotion.is_stackable:
            if exclusive_applied:
                continue
            exclusive_applied = True

        amount = calculate_discount(promotion, remaining)
        remaining -= amount
        lines.append(DiscountLine(
            promotion_id=promotion.id,
            name=promotion.name,
            promotion_type=promotion.promotion_type,
            amount=amount
        ))

    return lines


def calculate_price(plan: Any, options: Optional[PricingOptions] = None) -> PriceBreakdown:
    """
    Compute the price breakdown of a plan for one billing interval.

    Args:
        plan: Plan exposing ``pricing_type``, ``base_price``, ``tiers``,
            ``currency``, ``billing_interval`` and ``feature_ids``
        options: Quantity, usage, promotions and overrides

    Returns:
        Price breakdown in minor units

    Raises:
        ValidationException: If the quantity is negative
        ConfigurationException: If the plan's pricing type is unknown
    """
    options = options or PricingOptions()
    if options.quantity is None or options.quantity < 0:
        raise ValidationException(
            f"Quantity must be non-negative, got {options.quantity}",
            entity_id=getattr(plan, "id", None), operation="calculate_price"
        )

    billing_interval = options.billing_interval or plan.billing_interval
    currency = (options.currency or plan.currency).upper()

    subtotal = to_minor_units(
        _plan_subtotal(plan, options.quantity)
        * interval_multiplier(billing_interval, options.interval_multiplier)
    )

    usage_charges = []
    if plan.pricing_type == PricingType.USAGE_BASED and options.usage_records:
        usage_charges = calculate_usage_charges(options.usage_records, dict(options.features))
    total_usage = sum(charge.amount for charge in usage_charges)

    discounts = apply_promotions(subtotal, options.promotions, plan, options.as_of)
    total_discount = sum(line.amount for line in discounts)

    total = subtotal - total_discount + total_usage

    return PriceBreakdown(
        subtotal=subtotal,
        discounts=discounts,
        total_discount=total_discount,
        usage_charges=usage_charges,
        total_usage=total_usage,
        total=total,
        currency=currency,
        formatted_total=format_price(total, currency),
        billing_interval=billing_interval
    )


def monthly_price(plan: Any, quantity: int = 1) -> int:
    """Plan subtotal normalised to one month, used to compare plans."""
    options = PricingOptions(quantity=quantity, billing_interval=BillingInterval.MONTHLY)
    return calculate_price(plan, options).subtotal


def calculate_prorated_price(original_price: int, total_days: int, remaining_days: int) -> int:
    """Share of ``original_price`` for the remaining days of a period."""
    if total_days <= 0 or remaining_days <= 0:
        return 0
    remaining_days = min(remaining_days, total_days)
    return to_minor_units(Decimal(original_price) * remaining_days / total_days)


def calculate_proration(old_amount: int, new_amount: int, period_start: datetime,
                        period_end: datetime, as_of: datetime) -> int:
    """
    Estimate the charge (positive) or credit (negative) of switching from
    ``old_amount`` to ``new_amount`` at ``as_of`` within the period.
    """
    total = (period_end - period_start).total_seconds()
    if total <= 0:
        return 0
    remaining = (period_end - max(as_of, period_start)).total_seconds()
    if remaining <= 0:
        return 0
    remaining = min(remaining, total)
    return to_minor_units(Decimal(new_amount - old_amount) * Decimal(remaining) / Decimal(total))


def calculate_tax(amount: int, rate_percent) -> int:
    """Tax on ``amount`` at ``rate_percent`` percent."""
    return to_minor_units(Decimal(amount) * Decimal(str(rate_percent)) / 100)


def convert_currency(amount: int, rate, from_currency: str = "USD", to_currency: str = "USD") -> int:
    """
    Convert an amount between currencies.

    ``rate`` is units of ``to_currency`` per unit of ``from_currency``; the
    minor-unit exponents of both currencies are honoured.
    """
    shift = currency_exponent(to_currency) - currency_exponent(from_currency)
    return to_minor_units(Decimal(amount) * Decimal(str(rate)) * (Decimal(10) ** shift))
