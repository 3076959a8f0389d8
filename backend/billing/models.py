"""
Billing data models

Value objects passed between the billing services. Persistent entities live
in ``backend.models``; the enums are shared with them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..models.enums import (
    BillingInterval,
    DeliveryStatus,
    PricingType,
    PromotionType,
    SubscriptionStatus
)

__all__ = [
    "BillingInterval",
    "DeliveryStatus",
    "PricingType",
    "PromotionType",
    "SubscriptionStatus",
    "ChangeType",
    "ProrationSource",
    "PricingOptions",
    "DiscountLine",
    "UsageCharge",
    "PriceBreakdown",
    "UsageLimitStatus",
    "FeatureUsage",
    "UsageSummary",
    "ReconciliationResult",
    "FeatureLimitChange",
    "FeatureChanges",
    "PlanChangeImpact",
    "SubscriptionParams",
    "PlanChangeParams",
    "CouponValidation"
]


class ChangeType(str, Enum):
    """Direction of a plan change"""
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    CROSSGRADE = "crossgrade"


class ProrationSource(str, Enum):
    """Where a proration amount came from"""
    GATEWAY = "gateway"
    ESTIMATE = "estimate"


@dataclass
class PricingOptions:
    """Inputs to a price calculation besides the plan itself"""
    quantity: int = 1
    usage_records: Sequence[Any] = field(default_factory=list)
    billing_interval: Optional[BillingInterval] = None
    promotions: Sequence[Any] = field(default_factory=list)
    currency: Optional[str] = None

    # Multiplier for custom intervals; monthly equivalent when omitted
    interval_multiplier: Optional[Decimal] = None

    # feature id -> object exposing ``name`` and ``tiers``
    features: Mapping[str, Any] = field(default_factory=dict)

    # Instant promotion windows are evaluated at; windows are ignored when None
    as_of: Optional[datetime] = None


@dataclass
class DiscountLine:
    """One applied promotion"""
    promotion_id: str
    name: str
    promotion_type: PromotionType
    amount: int


@dataclass
class UsageCharge:
    """Charge for one feature's usage"""
    feature_id: str
    feature_name: str
    quantity: int
    amount: int


@dataclass
class PriceBreakdown:
    """Result of a price calculation. Amounts are minor currency units."""
    subtotal: int
    discounts: List[DiscountLine]
    total_discount: int
    usage_charges: List[UsageCharge]
    total_usage: int
    total: int
    currency: str
    formatted_total: str
    billing_interval: BillingInterval


@dataclass
class UsageLimitStatus:
    """Where an aggregated quantity sits against the feature's tiers"""
    is_exceeded: bool
    is_warning: bool
    remaining: Optional[int]
    limit: Optional[int] = None
    usage_percentage: Optional[float] = None


@dataclass
class FeatureUsage:
    """Usage of one feature in the current period"""
    feature_id: str
    feature_code: str
    feature_name: str
    total_usage: int
    usage_limit: Optional[int]
    usage_percentage: Optional[float]
    current_tier: Optional[Dict[str, Any]] = None
    next_tier: Optional[Dict[str, Any]] = None


@dataclass
class UsageSummary:
    """Usage of every plan feature for a subscription's current period"""
    subscription_id: str
    period_start: datetime
    period_end: datetime
    features: List[FeatureUsage]


@dataclass
class ReconciliationResult:
    """Outcome of one usage reporting run"""
    reports_sent: int = 0
    reports_failed: int = 0
    records_reported: int = 0
    quantity_reported: int = 0
    skipped: int = 0


@dataclass
class FeatureLimitChange:
    """A feature whose limit differs between two plans"""
    feature_code: str
    feature_name: str
    old_limit: Optional[int]
    new_limit: Optional[int]


@dataclass
class FeatureChanges:
    """Feature diff between the current and the target plan"""
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    upgraded: List[FeatureLimitChange] = field(default_factory=list)
    downgraded: List[FeatureLimitChange] = field(default_factory=list)


@dataclass
class PlanChangeImpact:
    """Preview of what a plan change would do"""
    change_type: ChangeType
    current_price: int
    new_price: int
    price_difference: int
    prorated_amount: int
    proration_source: ProrationSource
    feature_changes: FeatureChanges
    currency: str


@dataclass
class SubscriptionParams:
    """Request to create a subscription"""
    organization_id: str
    plan_id: str
    quantity: int = 1
    trial_days: Optional[int] = None
    coupon_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PlanChangeParams:
    """Request to move a subscription to another plan"""
    subscription_id: str
    new_plan_id: str
    quantity: Optional[int] = None
    immediate: bool = False
    preserve_usage: bool = False
    proration_date: Optional[datetime] = None


@dataclass
class CouponValidation:
    """Outcome of a coupon code check"""
    valid: bool
    reason: Optional[str] = None
    coupon_id: Optional[str] = None
    promotion_id: Optional[str] = None
