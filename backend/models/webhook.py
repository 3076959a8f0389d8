"""
Webhook tables: outbound targets, delivery attempts and the inbound
idempotency ledger.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from .base import BaseModel, enum_type
from ..utils.clock import utcnow
from .enums import DeliveryStatus


class WebhookSubscription(BaseModel):
    """An external endpoint subscribed to one billing event."""

    __tablename__ = "webhook_subscriptions"

    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=True, index=True)
    url = Column(String(2048), nullable=False)
    event = Column(String(100), nullable=False, index=True)
    secret = Column(String(255), nullable=False)
    headers = Column(JSON, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)

    deliveries = relationship("WebhookDelivery", back_populates="webhook")


class WebhookDelivery(BaseModel):
    """One emitted event for one target, updated in place until terminal."""

    __tablename__ = "webhook_deliveries"

    webhook_id = Column(String(36), ForeignKey("webhook_subscriptions.id"), nullable=False, index=True)
    event = Column(String(100), nullable=False)
    payload = Column(Text, nullable=False, doc="Serialized JSON body, signed verbatim")
    status = Column(enum_type(DeliveryStatus), nullable=False, default=DeliveryStatus.PENDING)
    retries = Column(Integer, nullable=False, default=0)
    status_code = Column(Integer, nullable=True)
    response = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)
    locked_until = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    webhook = relationship("WebhookSubscription", back_populates="deliveries", lazy="joined")

    __table_args__ = (
        Index("ix_webhook_deliveries_due", "status", "next_attempt_at"),
    )


class ProcessedWebhookEvent(BaseModel):
    """An inbound gateway event that has been fully handled."""

    __tablename__ = "processed_webhook_events"

    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(DateTime, nullable=False, default=utcnow)
    outcome = Column(String(50), nullable=False, default="processed")
