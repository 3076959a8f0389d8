"""
Subscription model and cancellation feedback.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from .base import BaseModel, enum_type
from .enums import SubscriptionStatus


class Subscription(BaseModel):
    """
    An organization's subscription to a plan.

    Never hard-deleted; cancellation is a status. Updates are guarded by the
    ``version`` column so two writers working from the same snapshot cannot
    both commit.
    """

    __tablename__ = "subscriptions"

    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    plan_id = Column(String(36), ForeignKey("pricing_plans.id"), nullable=False, index=True)
    status = Column(
        enum_type(SubscriptionStatus), nullable=False, default=SubscriptionStatus.PENDING, index=True
    )
    quantity = Column(Integer, nullable=False, default=1)

    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    trial_end = Column(DateTime, nullable=True)

    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancel_at = Column(DateTime, nullable=True, doc="Scheduled end when cancelling at period end")
    canceled_at = Column(DateTime, nullable=True, doc="When cancellation was requested")
    ended_at = Column(DateTime, nullable=True, doc="When the subscription actually ended")
    paused_at = Column(DateTime, nullable=True)

    coupon_id = Column(String(36), ForeignKey("coupons.id"), nullable=True)

    gateway_subscription_id = Column(String(255), unique=True, nullable=True, index=True)
    gateway_item_id = Column(String(255), nullable=True, doc="Gateway item carrying the plan price")
    gateway_items = Column(JSON, default=dict, doc="Gateway price id -> subscription item id")
    metadata_json = Column("metadata", JSON, default=dict)

    version = Column(Integer, nullable=False, default=1)

    organization = relationship("Organization", lazy="joined")
    plan = relationship("PricingPlan", lazy="joined")

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_active(self) -> bool:
        """Whether the subscription grants access"""
        return self.status in (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.PAST_DUE
        )

    def is_in_trial(self, now) -> bool:
        """Whether the subscription is still inside its trial"""
        return (
            self.status == SubscriptionStatus.TRIALING
            and self.trial_end is not None
            and now < self.trial_end
        )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, status='{self.status}')>"


class CancellationFeedback(BaseModel):
    """Reason and free-text feedback captured on cancellation."""

    __tablename__ = "cancellation_feedback"

    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False, index=True)
    reason = Column(String(100), nullable=True)
    feedback = Column(Text, nullable=True)
    cancel_immediately = Column(Boolean, nullable=False, default=False)
