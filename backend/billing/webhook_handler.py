"""
Stripe Webhook Handler

Idempotent handling of gateway events: each event id is applied at most once.
The subscription change and the processed-event record commit together, so a
redelivered event is either fully applied already or not at all.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..core.audit_logger import AuditEventType, AuditLogger
from ..database import session_scope
from ..models import NotificationSeverity, Subscription, SubscriptionStatus
from ..utils.clock import from_timestamp, utcnow
from .exceptions import (
    DataIntegrityException,
    NotFoundException,
    WebhookProcessingException,
    WebhookVerificationException
)
from .gateway import PaymentGateway
from .lifecycle import apply_period, can_transition, status_from_gateway, subscription_payload, transition
from .notifications import NotificationService
from .repository import BillingRepository
from .webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


class StripeEventType(str, Enum):
    """Stripe webhook event types we handle"""
    # Subscription events
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_ENDING = "customer.subscription.trial_will_end"
    SUBSCRIPTION_PAUSED = "customer.subscription.paused"
    SUBSCRIPTION_RESUMED = "customer.subscription.resumed"

    # Invoice events
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


# Errors in the event's data; retrying the same event cannot fix them
DATA_ERRORS = (NotFoundException, DataIntegrityException)


@dataclass
class InboundEvent:
    """A verified gateway event"""
    event_id: str
    event_type: str
    created_at: Optional[datetime]
    payload: Dict[str, Any] = field(default_factory=dict)


def to_inbound_event(event: Any) -> InboundEvent:
    """Convert a verified gateway event to an ``InboundEvent``"""
    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise WebhookVerificationException("Event is missing its id or type")

    data = event.get("data") or {}
    return InboundEvent(
        event_id=event_id,
        event_type=event_type,
        created_at=from_timestamp(event.get("created")),
        payload=data.get("object") or {}
    )


def _period_of(subscription: Dict[str, Any]):
    """Current period of a gateway subscription object (top level or first item)"""
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    return from_timestamp(start), from_timestamp(end)


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = invoice.get("subscription")
    if subscription_id:
        return subscription_id if isinstance(subscription_id, str) else subscription_id.get("id")
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


class WebhookEventHandler:
    """
    Handles Stripe webhook events and updates local billing data accordingly.

    Provides idempotent processing, audit logging, and error classification:
    data errors are acknowledged, anything else is reported as retryable.
    """

    def __init__(
        self,
        session_factory: sessionmaker = None,
        gateway: Optional[PaymentGateway] = None,
        audit_logger: Optional[AuditLogger] = None,
        notifications: Optional[NotificationService] = None,
        event_publisher: Optional[WebhookDispatcher] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """Initialize webhook handler"""
        self.session_factory = session_factory
        self.gateway = gateway
        self.audit_logger = audit_logger or AuditLogger(session_factory)
        self.notifications = notifications or NotificationService(session_factory)
        self.event_publisher = event_publisher
        self.clock = clock

        self._handlers = {
            StripeEventType.SUBSCRIPTION_CREATED.value: self._handle_subscription_updated,
            StripeEventType.SUBSCRIPTION_UPDATED.value: self._handle_subscription_updated,
            StripeEventType.SUBSCRIPTION_DELETED.value: self._handle_subscription_deleted,
            StripeEventType.SUBSCRIPTION_TRIAL_ENDING.value: self._handle_trial_ending,
            StripeEventType.SUBSCRIPTION_PAUSED.value: self._handle_subscription_paused,
            StripeEventType.SUBSCRIPTION_RESUMED.value: self._handle_subscription_resumed,
            StripeEventType.INVOICE_PAID.value: self._handle_invoice_paid,
            StripeEventType.INVOICE_PAYMENT_SUCCEEDED.value: self._handle_invoice_paid,
            StripeEventType.INVOICE_PAYMENT_FAILED.value: self._handle_invoice_payment_failed,
        }

    async def handle_webhook(self, payload: str, signature: str) -> Dict[str, Any]:
        """
        Handle incoming Stripe webhook.

        Args:
            payload: Raw webhook payload
            signature: Stripe signature header

        Returns:
            Processing result

        Raises:
            WebhookVerificationException: If the signature or payload is invalid
            WebhookProcessingException: If processing failed and the gateway should retry
        """
        try:
            event = to_inbound_event(self.gateway.verify_webhook_signature(payload, signature))
        except WebhookVerificationException as e:
            logger.error(f"Webhook verification failed: {e}")
            await self.audit_logger.log_webhook_event(
                AuditEventType.WEBHOOK_SIGNATURE_FAILED, None, details={"message": str(e)}
            )
            raise

        return await self.process_event(event)

    async def process_event(self, event: InboundEvent) -> Dict[str, Any]:
        """
        Apply a verified event at most once

        Returns:
            Result with ``status`` one of processed, ignored, already_processed
            or data_error
        """
        logger.info(f"Processing Stripe event {event.event_id}: {event.event_type}")

        try:
            with session_scope(self.session_factory) as session:
                processed = BillingRepository(session).get_processed_event(event.event_id)
        except SQLAlchemyError as e:
            # Proceed without the dedupe check; the unique event id still
            # rejects a second commit
            logger.error(f"Idempotency check failed for {event.event_id}: {e}")
            await self.audit_logger.log_webhook_event(
                AuditEventType.WEBHOOK_IDEMPOTENCY_ERROR, event.event_id, event.event_type,
                details={"error": str(e)}
            )
            processed = None

        if processed is not None:
            return await self._already_processed(event)

        handler = self._handlers.get(event.event_type)
        effects: List[Callable[[], Any]] = []
        now = self.clock()

        try:
            with session_scope(self.session_factory) as session:
                repo = BillingRepository(session)
                if handler is None:
                    result = {"action": "ignored", "reason": "unhandled_event_type"}
                    outcome = "ignored"
                else:
                    result = handler(repo, event, effects, now)
                    outcome = "processed"

                repo.add_processed_event(event.event_id, event.event_type, outcome, now)
                session.flush()

        except IntegrityError as e:
            if self._is_recorded(event.event_id):
                return await self._already_processed(event)
            return await self._record_data_error(event, e)

        except DATA_ERRORS as e:
            return await self._record_data_error(event, e)

        except Exception as e:
            logger.error(f"Webhook processing failed for {event.event_id}: {e}")
            await self.audit_logger.log_webhook_event(
                AuditEventType.WEBHOOK_PROCESSING_FAILED, event.event_id, event.event_type,
                details={"error": str(e), "error_type": type(e).__name__}
            )
            raise WebhookProcessingException(
                f"Webhook processing failed: {e}", event_id=event.event_id, retryable=True, cause=e
            )

        for effect in effects:
            effect()

        await self.audit_logger.log_webhook_event(
            AuditEventType.WEBHOOK_PROCESSED if outcome == "processed" else AuditEventType.WEBHOOK_IGNORED,
            event.event_id, event.event_type, resource_id=result.get("subscription_id"),
            details={"result": result}
        )
        if outcome == "ignored":
            logger.info(f"Unhandled event type: {event.event_type}")

        return {"status": outcome, "event_id": event.event_id, "result": result}

    # Event handlers. Each runs inside the caller's unit of work and queues
    # side effects that must only happen after commit.

    def _handle_subscription_updated(self, repo: BillingRepository, event: InboundEvent,
                                     effects: List, now: datetime) -> Dict[str, Any]:
        """Handle customer.subscription.created / updated"""
        obj = event.payload
        subscription = repo.get_subscription_by_gateway_id(obj.get("id"), for_update=True)
        changed = False

        period_start, period_end = _period_of(obj)
        if subscription.status != SubscriptionStatus.CANCELED:
            changed |= apply_period(subscription, period_start, period_end, now)

        target = status_from_gateway(obj.get("status"))
        if target is not None and subscription.status != SubscriptionStatus.CANCELED:
            changed |= self._sync_status(subscription, target, now, event)

        if subscription.status != SubscriptionStatus.CANCELED:
            cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
            if cancel_at_period_end != subscription.cancel_at_period_end:
                subscription.cancel_at_period_end = cancel_at_period_end
                subscription.cancel_at = subscription.current_period_end if cancel_at_period_end else None
                subscription.canceled_at = (
                    (from_timestamp(obj.get("canceled_at")) or now) if cancel_at_period_end else None
                )
                changed = True

        trial_end = from_timestamp(obj.get("trial_end"))
        if trial_end and trial_end != subscription.trial_end:
            subscription.trial_end = trial_end
            changed = True

        repo.flush(subscription.id, event.event_type)
        if changed:
            self._queue_publish(effects, "subscription.updated", subscription)

        return {
            "action": "subscription_updated",
            "subscription_id": subscription.id,
            "status": subscription.status.value,
            "changed": changed
        }

    def _handle_subscription_deleted(self, repo: BillingRepository, event: InboundEvent,
                                     effects: List, now: datetime) -> Dict[str, Any]:
        """Handle customer.subscription.deleted"""
        obj = event.payload
        subscription = repo.get_subscription_by_gateway_id(obj.get("id"), for_update=True)

        changed = transition(subscription, SubscriptionStatus.CANCELED, now)
        if changed:
            subscription.ended_at = from_timestamp(obj.get("ended_at")) or now
            repo.flush(subscription.id, event.event_type)
            self._queue_publish(effects, "subscription.canceled", subscription)

        return {"action": "subscription_deleted", "subscription_id": subscription.id, "changed": changed}

    def _handle_invoice_paid(self, repo: BillingRepository, event: InboundEvent,
                             effects: List, now: datetime) -> Dict[str, Any]:
        """Handle invoice.paid / invoice.payment_succeeded"""
        invoice = event.payload
        gateway_subscription_id = _invoice_subscription_id(invoice)
        if not gateway_subscription_id:
            return {"action": "invoice_paid", "invoice_id": invoice.get("id"), "subscription_id": None}

        subscription = repo.get_subscription_by_gateway_id(gateway_subscription_id, for_update=True)
        changed = False
        if subscription.status in (SubscriptionStatus.PENDING, SubscriptionStatus.PAST_DUE):
            changed = transition(subscription, SubscriptionStatus.ACTIVE, now)
            repo.flush(subscription.id, event.event_type)

        self._queue_event(effects, "invoice.paid", {
            "subscription_id": subscription.id,
            "organization_id": subscription.organization_id,
            "invoice_id": invoice.get("id"),
            "amount_paid": invoice.get("amount_paid", 0),
            "currency": invoice.get("currency")
        })
        if changed:
            self._queue_publish(effects, "subscription.updated", subscription)

        return {
            "action": "invoice_paid",
            "invoice_id": invoice.get("id"),
            "subscription_id": subscription.id,
            "amount_paid": invoice.get("amount_paid", 0)
        }

    def _handle_invoice_payment_failed(self, repo: BillingRepository, event: InboundEvent,
                                       effects: List, now: datetime) -> Dict[str, Any]:
        """Handle invoice.payment_failed"""
        invoice = event.payload
        gateway_subscription_id = _invoice_subscription_id(invoice)
        if not gateway_subscription_id:
            return {"action": "invoice_payment_failed", "invoice_id": invoice.get("id"), "subscription_id": None}

        subscription = repo.get_subscription_by_gateway_id(gateway_subscription_id, for_update=True)
        attempt_count = invoice.get("attempt_count", 0)
        logger.warning(f"Invoice payment failed: {invoice.get('id')} (attempt {attempt_count})")

        changed = self._sync_status(subscription, SubscriptionStatus.PAST_DUE, now, event)
        repo.flush(subscription.id, event.event_type)

        effects.append(partial(
            self.notifications.notify_admins,
            subscription.organization_id,
            "Payment failed",
            f"We could not collect payment for your subscription (attempt {attempt_count}). "
            f"Please update your payment method.",
            severity=NotificationSeverity.CRITICAL,
            data={"subscription_id": subscription.id, "invoice_id": invoice.get("id")}
        ))
        self._queue_event(effects, "invoice.payment_failed", {
            "subscription_id": subscription.id,
            "organization_id": subscription.organization_id,
            "invoice_id": invoice.get("id"),
            "attempt_count": attempt_count
        })
        if changed:
            self._queue_publish(effects, "subscription.updated", subscription)

        return {
            "action": "invoice_payment_failed",
            "invoice_id": invoice.get("id"),
            "subscription_id": subscription.id,
            "attempt_count": attempt_count
        }

    def _handle_trial_ending(self, repo: BillingRepository, event: InboundEvent,
                             effects: List, now: datetime) -> Dict[str, Any]:
        """Handle customer.subscription.trial_will_end"""
        obj = event.payload
        subscription = repo.get_subscription_by_gateway_id(obj.get("id"))
        trial_end = from_timestamp(obj.get("trial_end")) or subscription.trial_end

        effects.append(partial(
            self.notifications.notify_admins,
            subscription.organization_id,
            "Trial ending soon",
            f"Your trial ends on {trial_end:%Y-%m-%d}." if trial_end else "Your trial ends soon.",
            severity=NotificationSeverity.WARNING,
            data={"subscription_id": subscription.id}
        ))

        return {
            "action": "trial_ending",
            "subscription_id": subscription.id,
            "trial_end": trial_end.isoformat() if trial_end else None
        }

    def _handle_subscription_paused(self, repo: BillingRepository, event: InboundEvent,
                                    effects: List, now: datetime) -> Dict[str, Any]:
        """Handle customer.subscription.paused"""
        return self._handle_pause_change(repo, event, effects, now, SubscriptionStatus.PAUSED)

    def _handle_subscription_resumed(self, repo: BillingRepository, event: InboundEvent,
                                     effects: List, now: datetime) -> Dict[str, Any]:
        """Handle customer.subscription.resumed"""
        return self._handle_pause_change(repo, event, effects, now, SubscriptionStatus.ACTIVE)

    def _handle_pause_change(self, repo: BillingRepository, event: InboundEvent, effects: List,
                             now: datetime, target: SubscriptionStatus) -> Dict[str, Any]:
        subscription = repo.get_subscription_by_gateway_id(event.payload.get("id"), for_update=True)
        changed = self._sync_status(subscription, target, now, event)
        repo.flush(subscription.id, event.event_type)
        if changed:
            self._queue_publish(effects, "subscription.updated", subscription)
        return {
            "action": "subscription_paused" if target == SubscriptionStatus.PAUSED else "subscription_resumed",
            "subscription_id": subscription.id,
            "changed": changed
        }

    # Helpers

    def _sync_status(self, subscription: Subscription, target: SubscriptionStatus,
                     now: datetime, event: InboundEvent) -> bool:
        """Follow the gateway's status; out-of-order events that imply an invalid move are skipped"""
        current = SubscriptionStatus(subscription.status)
        if current == target:
            return False
        if not can_transition(current, target):
            logger.warning(
                f"Ignoring {event.event_type} ({event.event_id}) for {subscription.id}: "
                f"cannot move from {current.value} to {target.value}"
            )
            return False
        return transition(subscription, target, now)

    def _queue_publish(self, effects: List, event: str, subscription: Subscription) -> None:
        self._queue_event(effects, event, subscription_payload(subscription))

    def _queue_event(self, effects: List, event: str, data: Dict[str, Any]) -> None:
        if self.event_publisher is not None:
            effects.append(partial(self._publish, event, data))

    def _publish(self, event: str, data: Dict[str, Any]) -> None:
        try:
            self.event_publisher.enqueue_event(event, data)
        except SQLAlchemyError as e:
            logger.error(f"Failed to enqueue outbound {event}: {e}")

    def _is_recorded(self, event_id: str) -> bool:
        try:
            with session_scope(self.session_factory) as session:
                return BillingRepository(session).get_processed_event(event_id) is not None
        except SQLAlchemyError as e:
            logger.error(f"Could not re-check processed event {event_id}: {e}")
            return False

    async def _already_processed(self, event: InboundEvent) -> Dict[str, Any]:
        logger.info(f"Webhook event {event.event_id} already processed, skipping")
        await self.audit_logger.log_webhook_event(
            AuditEventType.WEBHOOK_DUPLICATE, event.event_id, event.event_type
        )
        return {"status": "already_processed", "event_id": event.event_id}

    async def _record_data_error(self, event: InboundEvent, error: Exception) -> Dict[str, Any]:
        """Acknowledge an event whose data cannot be applied, recording it as handled"""
        logger.error(f"Data error processing {event.event_id} ({event.event_type}): {error}")

        try:
            with session_scope(self.session_factory) as session:
                BillingRepository(session).add_processed_event(
                    event.event_id, event.event_type, "data_error", self.clock()
                )
        except IntegrityError:
            logger.info(f"Event {event.event_id} was recorded concurrently")
        except SQLAlchemyError as e:
            logger.error(f"Failed to record data error for {event.event_id}: {e}")

        await self.audit_logger.log_webhook_event(
            AuditEventType.WEBHOOK_DATA_ERROR, event.event_id, event.event_type,
            details={"error": str(error), "error_type": type(error).__name__}
        )
        return {"status": "data_error", "event_id": event.event_id, "error": str(error)}


def create_webhook_handler(
    session_factory: sessionmaker = None,
    gateway: Optional[PaymentGateway] = None,
    event_publisher: Optional[WebhookDispatcher] = None
) -> WebhookEventHandler:
    """Create a webhook handler with audit logging"""
    if gateway is None:
        from .stripe_client import StripeClient
        gateway = StripeClient()

    return WebhookEventHandler(
        session_factory=session_factory,
        gateway=gateway,
        audit_logger=AuditLogger(session_factory),
        notifications=NotificationService(session_factory),
        event_publisher=event_publisher
    )
