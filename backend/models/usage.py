"""
Usage metering tables: raw records, reconciliation reports and alert ledger.
"""

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, UniqueConstraint
)
from sqlalchemy.orm import relationship

from .base import BaseModel, enum_type
from ..utils.clock import utcnow
from .enums import UsageAlertLevel, UsageReportStatus


class UsageRecord(BaseModel):
    """
    One consumption event. Append-only: only the reporting claim and the
    reported flag change after insert.
    """

    __tablename__ = "usage_records"

    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False)
    feature_id = Column(String(36), ForeignKey("features.id"), nullable=False)
    plan_id = Column(String(36), ForeignKey("pricing_plans.id"), nullable=False, doc="Plan context")
    quantity = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    reported_to_gateway = Column(Boolean, nullable=False, default=False)
    report_id = Column(String(36), ForeignKey("usage_reports.id"), nullable=True, index=True)

    is_transfer = Column(Boolean, nullable=False, default=False)
    transferred_from_plan_id = Column(String(36), nullable=True)
    metadata_json = Column("metadata", JSON, default=dict)

    feature = relationship("Feature", lazy="selectin")

    __table_args__ = (
        Index("ix_usage_records_sub_feature_time", "subscription_id", "feature_id", "timestamp"),
        Index("ix_usage_records_unreported", "subscription_id", "reported_to_gateway"),
    )


class UsageReport(BaseModel):
    """A batch of usage reported to the gateway under one idempotency key."""

    __tablename__ = "usage_reports"

    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False)
    feature_id = Column(String(36), ForeignKey("features.id"), nullable=False)
    period_start = Column(DateTime, nullable=False)
    sequence = Column(Integer, nullable=False, default=1)
    quantity = Column(Integer, nullable=False, default=0)
    idempotency_key = Column(String(255), unique=True, nullable=False)
    status = Column(enum_type(UsageReportStatus), nullable=False, default=UsageReportStatus.PENDING)
    gateway_record_id = Column(String(255), nullable=True)
    reported_at = Column(DateTime, nullable=True)
    last_error = Column(String(1000), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "feature_id", "period_start", "sequence",
            name="uq_usage_report_batch"
        ),
    )


class UsageAlert(BaseModel):
    """Records that a usage threshold notification was already sent."""

    __tablename__ = "usage_alerts"

    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False)
    feature_id = Column(String(36), ForeignKey("features.id"), nullable=False)
    period_start = Column(DateTime, nullable=False)
    level = Column(enum_type(UsageAlertLevel), nullable=False)
    usage_percentage = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "feature_id", "period_start", "level",
            name="uq_usage_alert_level"
        ),
    )
