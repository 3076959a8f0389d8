"""
Unit tests for the pricing and proration engine
"""

from datetime import datetime
from decimal import Decimal
import random
from types import SimpleNamespace

import pytest

from backend.billing.exceptions import ConfigurationException, ValidationException
from backend.billing.models import BillingInterval, PricingOptions, PricingType, PromotionType
from backend.billing.pricing import (
    calculate_price,
    calculate_prorated_price,
    calculate_proration,
    calculate_tax,
    convert_currency,
    find_applicable_tier,
    find_limit_tier,
    format_price,
    monthly_price,
    next_tier,
    to_minor_units,
    validate_tiers
)


def tier(min_quantity, max_quantity=None, unit_price="0", flat_fee=0, infinite=False):
    return SimpleNamespace(
        min_quantity=min_quantity,
        max_quantity=max_quantity,
        unit_price=Decimal(unit_price),
        flat_fee=flat_fee,
        infinite=infinite
    )


def plan(pricing_type=PricingType.FLAT, base_price=10000, currency="USD",
         billing_interval=BillingInterval.MONTHLY, tiers=None, feature_ids=None, plan_id="plan-1"):
    return SimpleNamespace(
        id=plan_id,
        pricing_type=pricing_type,
        base_price=base_price,
        currency=currency,
        billing_interval=billing_interval,
        tiers=tiers or [],
        feature_ids=feature_ids or []
    )


def promotion(value, promotion_type=PromotionType.PERCENTAGE, is_stackable=True,
              plan_ids=("plan-1",), start_date=None, end_date=None, promotion_id="promo"):
    return SimpleNamespace(
        id=promotion_id,
        name=f"Promotion {promotion_id}",
        promotion_type=promotion_type,
        value=Decimal(str(value)),
        is_stackable=is_stackable,
        is_active=True,
        start_date=start_date,
        end_date=end_date,
        applicable_plan_ids=list(plan_ids),
        applicable_feature_ids=[]
    )


class TestPlanSubtotal:

    def test_flat_price_ignores_quantity(self):
        result = calculate_price(plan(base_price=2500), PricingOptions(quantity=7))
        assert result.subtotal == 2500
        assert result.total == 2500
        assert result.formatted_total == "$25.00"

    def test_per_unit_multiplies_quantity(self):
        result = calculate_price(plan(PricingType.PER_UNIT, base_price=999), PricingOptions(quantity=3))
        assert result.subtotal == 2997

    def test_tiered_uses_the_tier_containing_quantity(self):
        tiers = [tier(0, 10, unit_price="10"), tier(10, unit_price="8", flat_fee=500, infinite=True)]
        result = calculate_price(plan(PricingType.TIERED, tiers=tiers), PricingOptions(quantity=12))
        assert result.subtotal == 500 + 8 * 12

    def test_usage_based_subtotal_is_zero_and_usage_is_priced(self):
        feature = SimpleNamespace(name="API Calls", tiers=[tier(0, 1000, unit_price="0.01")])
        records = [
            SimpleNamespace(feature_id="f-1", quantity=300),
            SimpleNamespace(feature_id="f-1", quantity=200),
        ]
        result = calculate_price(
            plan(PricingType.USAGE_BASED),
            PricingOptions(usage_records=records, features={"f-1": feature})
        )
        assert result.subtotal == 0
        assert result.usage_charges[0].quantity == 500
        assert result.usage_charges[0].amount == 5
        assert result.total == 5

    def test_unknown_pricing_type_is_a_configuration_error(self):
        with pytest.raises(ConfigurationException):
            calculate_price(plan(pricing_type="mystery"))

    def test_negative_quantity_is_rejected(self):
        with pytest.raises(ValidationException):
            calculate_price(plan(PricingType.PER_UNIT), PricingOptions(quantity=-1))


class TestIntervals:

    @pytest.mark.parametrize("interval,expected", [
        (BillingInterval.MONTHLY, 1000),
        (BillingInterval.QUARTERLY, 3000),
        (BillingInterval.ANNUAL, 12000),
        (BillingInterval.CUSTOM, 1000),
    ])
    def test_interval_factor(self, interval, expected):
        result = calculate_price(plan(base_price=1000, billing_interval=interval))
        assert result.subtotal == expected

    def test_custom_interval_uses_explicit_multiplier(self):
        result = calculate_price(
            plan(base_price=1000, billing_interval=BillingInterval.CUSTOM),
            PricingOptions(interval_multiplier=Decimal(6))
        )
        assert result.subtotal == 6000

    def test_monthly_price_normalises_annual_plans(self):
        assert monthly_price(plan(base_price=1000, billing_interval=BillingInterval.ANNUAL)) == 1000


class TestPromotions:

    def test_stackable_percentages_apply_sequentially(self):
        promotions = [promotion(10, promotion_id="a"), promotion(10, promotion_id="b")]
        result = calculate_price(plan(base_price=10000), PricingOptions(promotions=promotions))
        assert [line.amount for line in result.discounts] == [1000, 900]
        assert result.total == 8100

    def test_only_one_exclusive_promotion_applies(self):
        promotions = [
            promotion(10, is_stackable=False, promotion_id="a"),
            promotion(50, is_stackable=False, promotion_id="b"),
            promotion(10, promotion_id="c"),
        ]
        result = calculate_price(plan(base_price=10000), PricingOptions(promotions=promotions))
        # Stackable first (1000), then the first exclusive one on the remaining 9000
        assert [line.promotion_id for line in result.discounts] == ["c", "a"]
        assert result.total == 10000 - 1000 - 900

    def test_fixed_amount_is_capped_at_remaining_subtotal(self):
        promotions = [promotion(5000, PromotionType.FIXED_AMOUNT)]
        result = calculate_price(plan(base_price=3000), PricingOptions(promotions=promotions))
        assert result.total_discount == 3000
        assert result.total == 0

    def test_free_period_discounts_everything(self):
        promotions = [promotion(0, PromotionType.FREE_PERIOD)]
        result = calculate_price(plan(base_price=4200), PricingOptions(promotions=promotions))
        assert result.total == 0

    def test_promotion_for_other_plan_is_ignored(self):
        promotions = [promotion(10, plan_ids=["other-plan"])]
        result = calculate_price(plan(base_price=10000), PricingOptions(promotions=promotions))
        assert result.discounts == []

    def test_promotion_targeting_a_plan_feature_applies(self):
        promo = promotion(10, plan_ids=[])
        promo.applicable_feature_ids = ["f-1"]
        result = calculate_price(plan(base_price=10000, feature_ids=["f-1"]),
                                 PricingOptions(promotions=[promo]))
        assert result.total == 9000

    def test_promotion_window_is_evaluated_at_given_time(self):
        promotions = [promotion(10, start_date=datetime(2024, 2, 1), end_date=datetime(2024, 3, 1))]

        before = calculate_price(plan(), PricingOptions(promotions=promotions, as_of=datetime(2024, 1, 15)))
        during = calculate_price(plan(), PricingOptions(promotions=promotions, as_of=datetime(2024, 2, 15)))
        unspecified = calculate_price(plan(), PricingOptions(promotions=promotions))

        assert before.total_discount == 0
        assert during.total_discount == 1000
        assert unspecified.total_discount == 1000


class TestTiers:

    def test_half_open_ranges(self):
        tiers = [tier(0, 10), tier(10, 100), tier(100, infinite=True)]
        assert find_applicable_tier(tiers, 0) is tiers[0]
        assert find_applicable_tier(tiers, 9) is tiers[0]
        assert find_applicable_tier(tiers, 10) is tiers[1]
        assert find_applicable_tier(tiers, 100) is tiers[2]
        assert find_applicable_tier(tiers, 10 ** 9) is tiers[2]

    def test_quantity_beyond_bounded_tiers_has_no_tier(self):
        assert find_applicable_tier([tier(0, 10)], 10) is None

    def test_next_tier(self):
        tiers = [tier(10, 100), tier(0, 10)]
        assert next_tier(tiers, tiers[1]) is tiers[0]
        assert next_tier(tiers, tiers[0]) is None

    def test_validate_rejects_gaps_and_early_unbounded_tiers(self):
        validate_tiers([tier(0, 10), tier(10, infinite=True)])
        with pytest.raises(ConfigurationException):
            validate_tiers([tier(0, 10), tier(11, 20)])
        with pytest.raises(ConfigurationException):
            validate_tiers([tier(0, infinite=True), tier(10, 20)])
        with pytest.raises(ConfigurationException):
            validate_tiers([tier(5, 5)])


    def test_limit_tier_includes_the_upper_bound(self):
        tiers = [tier(0, 1000), tier(1000, infinite=True)]
        assert find_limit_tier(tiers, 999) is tiers[0]
        assert find_limit_tier(tiers, 1000) is tiers[0]
        assert find_limit_tier(tiers, 1001) is tiers[1]
        assert find_limit_tier(tiers, 0) is tiers[0]

    def test_limit_tier_beyond_bounded_tiers_is_the_last_one(self):
        tiers = [tier(0, 10), tier(10, 20)]
        assert find_limit_tier(tiers, 20) is tiers[1]
        assert find_limit_tier(tiers, 500) is tiers[1]
        assert find_limit_tier([], 5) is None

    @pytest.mark.parametrize("seed", range(20))
    def test_contiguous_tiers_match_each_quantity_once(self, seed):
        rng = random.Random(seed)
        tiers = []
        lower = 0
        for _ in range(rng.randint(1, 6)):
            upper = lower + rng.randint(1, 50)
            tiers.append(tier(lower, upper))
            lower = upper
        unbounded = rng.random() < 0.5
        if unbounded:
            tiers.append(tier(lower, infinite=True))
        rng.shuffle(tiers)

        validate_tiers(tiers)

        for quantity in range(lower + 10):
            matches = [
                candidate for candidate in tiers
                if candidate.min_quantity <= quantity
                and (candidate.infinite or quantity < candidate.max_quantity)
            ]
            if quantity < lower or unbounded:
                assert len(matches) == 1
                assert find_applicable_tier(tiers, quantity) is matches[0]
            else:
                assert matches == []
                assert find_applicable_tier(tiers, quantity) is None

    def test_identical_inputs_give_identical_breakdowns(self):
        tiers = [tier(0, 10, unit_price="10"), tier(10, unit_price="8", flat_fee=500, infinite=True)]
        feature = SimpleNamespace(name="API Calls", tiers=[tier(0, 1000, unit_price="0.013")])

        def options():
            return PricingOptions(
                quantity=12,
                billing_interval=BillingInterval.QUARTERLY,
                usage_records=[SimpleNamespace(feature_id="f-1", quantity=333)],
                features={"f-1": feature},
                promotions=[promotion(15, promotion_id="a"), promotion(7.5, promotion_id="b")],
                as_of=datetime(2024, 1, 15)
            )

        first = calculate_price(plan(PricingType.TIERED, tiers=tiers), options())
        second = calculate_price(plan(PricingType.TIERED, tiers=tiers), options())
        assert first == second


class TestProrationAndCurrency:

    def test_upgrade_midway_charges_half_the_difference(self):
        amount = calculate_proration(1000, 3000, datetime(2024, 1, 1), datetime(2024, 1, 31),
                                     datetime(2024, 1, 16))
        assert amount == 1000

    def test_downgrade_yields_a_credit(self):
        amount = calculate_proration(3000, 1000, datetime(2024, 1, 1), datetime(2024, 1, 31),
                                     datetime(2024, 1, 16))
        assert amount == -1000

    def test_change_after_period_end_prorates_nothing(self):
        assert calculate_proration(1000, 3000, datetime(2024, 1, 1), datetime(2024, 1, 31),
                                   datetime(2024, 2, 5)) == 0

    def test_prorated_price(self):
        assert calculate_prorated_price(3000, 30, 10) == 1000
        assert calculate_prorated_price(3000, 30, 45) == 3000
        assert calculate_prorated_price(3000, 0, 10) == 0

    def test_rounding_is_half_up(self):
        assert to_minor_units(Decimal("2.5")) == 3
        assert to_minor_units(Decimal("-2.5")) == -3
        assert calculate_tax(1000, 8.25) == 83

    def test_conversion_honours_minor_unit_exponents(self):
        # 10.00 USD at 150 JPY per USD
        assert convert_currency(1000, 150, "USD", "JPY") == 1500
        assert convert_currency(1000, "0.9", "USD", "EUR") == 900

    @pytest.mark.parametrize("amount,currency,expected", [
        (123450, "USD", "$1,234.50"),
        (1500, "JPY", "¥1,500"),
        (-250, "EUR", "-€2.50"),
        (1234, "CHF", "12.34 CHF"),
    ])
    def test_format_price(self, amount, currency, expected):
        assert format_price(amount, currency) == expected
