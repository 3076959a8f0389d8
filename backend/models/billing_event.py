"""
Billing Event Database Model

Monitoring trail for billing and webhook reliability events.
"""

from sqlalchemy import Boolean, Column, DateTime, Index, JSON, String

from .base import Base
from ..utils.clock import utcnow


class BillingEvent(Base):
    """
    Billing event table for monitoring and forensic analysis.

    Rows flagged ``requires_attention`` are the ones operators are alerted on
    (signature failures, idempotency store errors, exhausted deliveries).
    """
    __tablename__ = "billing_events"

    event_id = Column(String(36), primary_key=True)
    event_type = Column(String(64), nullable=False, index=True)
    severity = Column(String(16), nullable=False, default="info")
    requires_attention = Column(Boolean, nullable=False, default=False)

    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)

    resource_id = Column(String(255), nullable=True, index=True)
    organization_id = Column(String(36), nullable=True, index=True)

    trace_id = Column(String(64), nullable=True)
    span_id = Column(String(32), nullable=True)

    details = Column(JSON, nullable=True)

    __table_args__ = (
        Index('ix_billing_events_type_time', 'event_type', 'timestamp'),
    )

    def __repr__(self):
        return f"<BillingEvent(event_id='{self.event_id}', event_type='{self.event_type}')>"

    def to_dict(self) -> dict:
        """Convert billing event to dictionary"""
        return {
            'event_id': self.event_id,
            'event_type': self.event_type,
            'severity': self.severity,
            'requires_attention': self.requires_attention,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'resource_id': self.resource_id,
            'organization_id': self.organization_id,
            'trace_id': self.trace_id,
            'span_id': self.span_id,
            'details': self.details
        }
