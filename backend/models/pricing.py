"""
Pricing catalogue: plans, tiers, features and their per-plan limits.
"""

from sqlalchemy import (
    Boolean, CheckConstraint, Column, ForeignKey, Integer, Numeric, String, Text, event, select
)
from sqlalchemy.orm import Session, relationship

from .base import BaseModel, enum_type
from .enums import BillingInterval, PricingType


class PricingPlan(BaseModel):
    """A purchasable plan."""

    __tablename__ = "pricing_plans"

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    pricing_type = Column(enum_type(PricingType), nullable=False, default=PricingType.FLAT)
    base_price = Column(Integer, nullable=False, default=0, doc="Minor currency units per interval")
    currency = Column(String(3), nullable=False, default="USD")
    billing_interval = Column(
        enum_type(BillingInterval), nullable=False, default=BillingInterval.MONTHLY
    )
    custom_interval_months = Column(Integer, nullable=True, doc="Interval length for custom plans")
    trial_days = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    is_public = Column(Boolean, nullable=False, default=True)
    gateway_price_id = Column(String(255), nullable=True)

    tiers = relationship(
        "PricingTier",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="PricingTier.min_quantity",
        lazy="selectin"
    )
    plan_features = relationship(
        "PlanFeature",
        back_populates="plan",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    @property
    def feature_ids(self):
        """Ids of the features included in the plan."""
        return [plan_feature.feature_id for plan_feature in self.plan_features]

    def __repr__(self) -> str:
        return f"<PricingPlan(name='{self.name}', type='{self.pricing_type}')>"


class Feature(BaseModel):
    """A metered dimension identified by a stable code."""

    __tablename__ = "features"

    code = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    unit = Column(String(50), nullable=True)
    gateway_price_id = Column(String(255), nullable=True, doc="Metered price for usage reporting")

    tiers = relationship(
        "PricingTier",
        back_populates="feature",
        cascade="all, delete-orphan",
        order_by="PricingTier.min_quantity",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Feature(code='{self.code}')>"


class PlanFeature(BaseModel):
    """A feature included in a plan, with its per-plan limit."""

    __tablename__ = "plan_features"

    plan_id = Column(String(36), ForeignKey("pricing_plans.id"), nullable=False, index=True)
    feature_id = Column(String(36), ForeignKey("features.id"), nullable=False, index=True)
    usage_limit = Column(Integer, nullable=True, doc="None means unlimited")

    plan = relationship("PricingPlan", back_populates="plan_features")
    feature = relationship("Feature", lazy="selectin")


class PricingTier(BaseModel):
    """Quantity band [min_quantity, max_quantity) with its fees."""

    __tablename__ = "pricing_tiers"

    plan_id = Column(String(36), ForeignKey("pricing_plans.id"), nullable=True, index=True)
    feature_id = Column(String(36), ForeignKey("features.id"), nullable=True, index=True)
    min_quantity = Column(Integer, nullable=False, default=0)
    max_quantity = Column(Integer, nullable=True)
    infinite = Column(Boolean, nullable=False, default=False)
    flat_fee = Column(Integer, nullable=False, default=0)
    unit_price = Column(Numeric(18, 6), nullable=False, default=0)

    plan = relationship("PricingPlan", back_populates="tiers")
    feature = relationship("Feature", back_populates="tiers")

    __table_args__ = (
        CheckConstraint(
            "(plan_id IS NULL) <> (feature_id IS NULL)",
            name="ck_pricing_tier_single_owner"
        ),
    )

    def __repr__(self) -> str:
        upper = "inf" if self.infinite else self.max_quantity
        return f"<PricingTier([{self.min_quantity}, {upper}))>"


def _tier_owner(tier: PricingTier):
    """Owner of a tier as ``(attribute, id)``, or the owner object itself before it has an id."""
    for attribute in ("feature", "plan"):
        owner_id = getattr(tier, f"{attribute}_id")
        owner = tier.__dict__.get(attribute)
        if owner_id is None and owner is not None:
            owner_id = owner.id
        if owner_id is not None:
            return attribute, owner_id
        if owner is not None:
            return attribute, owner
    return None


@event.listens_for(Session, "before_flush")
def validate_tier_changes(session, flush_context, instances):
    """Reject a flush that would leave a plan's or feature's tiers with gaps or overlaps."""
    changed = [
        obj for obj in (*session.new, *session.dirty, *session.deleted)
        if isinstance(obj, PricingTier)
    ]
    if not changed:
        return

    # Import here to avoid a circular import during module initialization
    from ..billing.pricing import validate_tiers

    owners = {owner for owner in map(_tier_owner, changed) if owner is not None}
    pending = [obj for obj in (*session.new, *session.dirty) if isinstance(obj, PricingTier)]
    for tier in pending:
        # Column defaults are only applied at insert
        if tier.min_quantity is None:
            tier.min_quantity = 0
        if tier.infinite is None:
            tier.infinite = False

    for attribute, owner in owners:
        candidates = {tier for tier in pending if _tier_owner(tier) == (attribute, owner)}
        if isinstance(owner, str):
            column = getattr(PricingTier, f"{attribute}_id")
            with session.no_autoflush:
                stored = session.scalars(select(PricingTier).where(column == owner)).all()
            candidates.update(tier for tier in stored if _tier_owner(tier) == (attribute, owner))

        validate_tiers([tier for tier in candidates if tier not in session.deleted])
