"""
Promotions and coupon codes.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String
from sqlalchemy.orm import relationship

from .base import BaseModel, enum_type
from .enums import PromotionType


class Promotion(BaseModel):
    """A discount rule."""

    __tablename__ = "promotions"

    name = Column(String(255), nullable=False)
    promotion_type = Column(enum_type(PromotionType), nullable=False)
    value = Column(Numeric(18, 4), nullable=False, default=0, doc="Percent or minor units")
    currency = Column(String(3), nullable=True)
    is_stackable = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    duration_months = Column(Integer, nullable=True)
    applicable_plan_ids = Column(JSON, default=list)
    applicable_feature_ids = Column(JSON, default=list)
    max_redemptions = Column(Integer, nullable=True)
    redemption_count = Column(Integer, nullable=False, default=0)
    gateway_coupon_id = Column(String(255), nullable=True)

    coupons = relationship("Coupon", back_populates="promotion")

    def __repr__(self) -> str:
        return f"<Promotion(name='{self.name}', type='{self.promotion_type}')>"


class Coupon(BaseModel):
    """A redeemable code bound to a promotion."""

    __tablename__ = "coupons"

    code = Column(String(100), unique=True, nullable=False, index=True)
    promotion_id = Column(String(36), ForeignKey("promotions.id"), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    max_redemptions = Column(Integer, nullable=True)
    redemption_count = Column(Integer, nullable=False, default=0)

    promotion = relationship("Promotion", back_populates="coupons", lazy="joined")
