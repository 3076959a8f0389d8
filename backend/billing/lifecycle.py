"""
Subscription lifecycle state machine

Allowed status transitions and the state changes shared by the subscription
manager and the inbound webhook handlers. Functions here mutate the entity
in memory only; callers own the unit of work.
"""

import logging
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional

from ..models import Subscription, SubscriptionStatus
from .exceptions import InvalidTransitionException

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.PENDING: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.TRIALING: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.ACTIVE: frozenset({
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.PAST_DUE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.PAUSED: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.CANCELED: frozenset(),
}

# Gateway statuses that map onto local ones
GATEWAY_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAUSED,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(subscription: Subscription, target: SubscriptionStatus, now: datetime) -> bool:
    """
    Move a subscription to ``target``.

    Returns:
        False when already in ``target`` (nothing to do), True otherwise

    Raises:
        InvalidTransitionException: If the transition is not allowed
    """
    current = SubscriptionStatus(subscription.status)
    if current == target:
        return False
    if not can_transition(current, target):
        raise InvalidTransitionException(subscription.id, current.value, target.value,
                                         operation="transition")

    subscription.status = target
    if target == SubscriptionStatus.CANCELED:
        subscription.ended_at = subscription.ended_at or now
        subscription.canceled_at = subscription.canceled_at or now
        subscription.cancel_at_period_end = False
    elif target == SubscriptionStatus.PAUSED:
        subscription.paused_at = now
    elif current == SubscriptionStatus.PAUSED:
        subscription.paused_at = None

    logger.info(f"Subscription {subscription.id}: {current.value} -> {target.value}")
    return True


def apply_period(subscription: Subscription, period_start: datetime, period_end: datetime,
                 now: datetime) -> bool:
    """
    Apply a billing-cycle boundary reported by the gateway.

    A subscription scheduled to cancel ends when the new period starts at or
    after its current period end; otherwise the period rolls forward.

    Returns:
        True if the subscription changed
    """
    if period_start is None or period_end is None or period_start >= period_end:
        return False

    crossed = period_start >= subscription.current_period_end
    if crossed and subscription.cancel_at_period_end:
        ended_at = subscription.current_period_end
        transition(subscription, SubscriptionStatus.CANCELED, now)
        subscription.ended_at = ended_at
        return True

    if (period_start, period_end) == (subscription.current_period_start, subscription.current_period_end):
        return False

    subscription.current_period_start = period_start
    subscription.current_period_end = period_end
    logger.info(f"Subscription {subscription.id} period is now {period_start} - {period_end}")
    return True


def status_from_gateway(gateway_status: str) -> Optional[SubscriptionStatus]:
    return GATEWAY_STATUS_MAP.get(gateway_status)


def subscription_payload(subscription: Subscription) -> Dict[str, Any]:
    """Outbound event body for a subscription"""
    return {
        "id": subscription.id,
        "organization_id": subscription.organization_id,
        "plan_id": subscription.plan_id,
        "status": SubscriptionStatus(subscription.status).value,
        "quantity": subscription.quantity,
        "current_period_start": subscription.current_period_start.isoformat(),
        "current_period_end": subscription.current_period_end.isoformat(),
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "ended_at": subscription.ended_at.isoformat() if subscription.ended_at else None
    }
