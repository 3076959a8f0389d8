"""
Audit Logger

Records billing and webhook reliability events to the billing_events table
with OpenTelemetry tracing. Writing an audit event never fails the operation
being audited.
"""

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

# OpenTelemetry imports
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..database import session_scope
from ..models import BillingEvent
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of auditable events"""
    # Inbound webhooks
    WEBHOOK_PROCESSED = "webhook_processed"
    WEBHOOK_DUPLICATE = "webhook_duplicate"
    WEBHOOK_IGNORED = "webhook_ignored"
    WEBHOOK_SIGNATURE_FAILED = "webhook_signature_failed"
    WEBHOOK_IDEMPOTENCY_ERROR = "webhook_idempotency_error"
    WEBHOOK_DATA_ERROR = "webhook_data_error"
    WEBHOOK_PROCESSING_FAILED = "webhook_processing_failed"

    SYSTEM_ERROR = "system_error"


# Events operators must look at
ATTENTION_EVENTS = frozenset({
    AuditEventType.WEBHOOK_SIGNATURE_FAILED,
    AuditEventType.WEBHOOK_IDEMPOTENCY_ERROR,
    AuditEventType.WEBHOOK_DATA_ERROR,
    AuditEventType.WEBHOOK_PROCESSING_FAILED,
    AuditEventType.SYSTEM_ERROR,
})


@dataclass
class AuditEvent:
    """Audit event structure"""
    event_id: str
    event_type: AuditEventType
    timestamp: datetime
    resource_id: Optional[str]
    organization_id: Optional[str]
    details: Dict[str, Any]
    severity: str = "info"
    trace_id: Optional[str] = None
    span_id: Optional[str] = None

    @property
    def requires_attention(self) -> bool:
        return self.event_type in ATTENTION_EVENTS

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        data['event_type'] = self.event_type.value
        data['requires_attention'] = self.requires_attention
        return data


class AuditLogger:
    """
    Audit trail for billing operations.

    Events are written synchronously to the database inside an OpenTelemetry
    span; a failed write is logged and swallowed.
    """

    def __init__(self, session_factory: sessionmaker = None,
                 clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

        # Initialize tracer
        self.tracer = trace.get_tracer("billing-audit-logger")

    def create_event(
        self,
        event_type: AuditEventType,
        resource_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None
    ) -> AuditEvent:
        """Create audit event with current trace context"""

        current_span = trace.get_current_span()
        trace_id = None
        span_id = None

        if current_span.is_recording():
            span_context = current_span.get_span_context()
            trace_id = format(span_context.trace_id, '032x')
            span_id = format(span_context.span_id, '016x')

        if severity is None:
            severity = "error" if event_type in ATTENTION_EVENTS else "info"

        return AuditEvent(
            event_id=str(uuid.uuid4()),
            event_type=event_type,
            timestamp=self.clock(),
            resource_id=resource_id,
            organization_id=organization_id,
            details=details or {},
            severity=severity,
            trace_id=trace_id,
            span_id=span_id
        )

    async def log_event(self, event: AuditEvent) -> str:
        """Write a prepared event"""
        self._write_event(event)
        return event.event_id

    async def log_webhook_event(
        self,
        event_type: AuditEventType,
        gateway_event_id: Optional[str],
        gateway_event_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> str:
        """Log an inbound webhook outcome"""

        event = self.create_event(
            event_type=event_type,
            resource_id=resource_id or gateway_event_id,
            details={
                "gateway_event_id": gateway_event_id,
                "gateway_event_type": gateway_event_type,
                **(details or {})
            }
        )

        self._write_event(event)
        return event.event_id

    async def log_system_error(
        self,
        error_type: str,
        error_message: str,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> str:
        """Log system error event"""

        event = self.create_event(
            event_type=AuditEventType.SYSTEM_ERROR,
            resource_id=resource_id,
            details={
                "error_type": error_type,
                "error_message": error_message,
                **(details or {})
            }
        )

        self._write_event(event)
        return event.event_id

    def _write_event(self, event: AuditEvent) -> None:
        """Write event to the billing_events table"""

        with self.tracer.start_as_current_span("audit_log_write") as span:
            span.set_attribute("event.type", event.event_type.value)
            span.set_attribute("event.id", event.event_id)

            try:
                with session_scope(self.session_factory) as session:
                    session.add(BillingEvent(
                        event_id=event.event_id,
                        event_type=event.event_type.value,
                        severity=event.severity,
                        requires_attention=event.requires_attention,
                        timestamp=event.timestamp,
                        resource_id=event.resource_id,
                        organization_id=event.organization_id,
                        trace_id=event.trace_id,
                        span_id=event.span_id,
                        details=event.details
                    ))
                span.set_status(Status(StatusCode.OK))

            except SQLAlchemyError as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                # Fallback so the event is at least in the application log
                logger.error(f"Failed to write audit event {event.event_id}: {e}; event={event.to_dict()}")

        if event.requires_attention:
            logger.warning(f"Audit {event.event_type.value}: {event.resource_id} {event.details}")

    def search_events(
        self,
        start_time: datetime,
        end_time: datetime,
        event_types: Optional[List[AuditEventType]] = None,
        resource_id: Optional[str] = None,
        requires_attention: Optional[bool] = None,
        page: int = 1,
        size: int = 100
    ) -> Dict[str, Any]:
        """Search audit events for monitoring and forensics"""

        conditions = [BillingEvent.timestamp >= start_time, BillingEvent.timestamp <= end_time]
        if event_types:
            conditions.append(BillingEvent.event_type.in_([t.value for t in event_types]))
        if resource_id:
            conditions.append(BillingEvent.resource_id == resource_id)
        if requires_attention is not None:
            conditions.append(BillingEvent.requires_attention.is_(requires_attention))

        offset = (page - 1) * size
        with session_scope(self.session_factory) as session:
            total_count = session.scalar(
                select(func.count()).select_from(BillingEvent).where(and_(*conditions))
            )
            rows = session.scalars(
                select(BillingEvent).where(and_(*conditions))
                .order_by(BillingEvent.timestamp.desc())
                .offset(offset).limit(size)
            ).all()
            events = [row.to_dict() for row in rows]

        return {
            "events": events,
            "total": total_count,
            "page": page,
            "size": size,
            "has_next": offset + size < total_count,
            "has_prev": page > 1
        }
