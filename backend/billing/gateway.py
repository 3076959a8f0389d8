"""
Payment gateway interface

The billing services talk to the payment processor only through this
interface; ``StripeClient`` is the production implementation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class GatewaySubscription:
    """Gateway-side view of a subscription"""
    id: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    items: Dict[str, str] = field(default_factory=dict)  # price id -> item id


class PaymentGateway(ABC):
    """
    Abstract payment gateway.

    Every method either returns the gateway's answer or raises
    ``ExternalServiceException``; callers must not assume partial success.
    """

    @abstractmethod
    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        quantity: int = 1,
        trial_period_days: Optional[int] = None,
        metered_price_ids: Optional[List[str]] = None,
        coupon_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> GatewaySubscription:
        pass

    @abstractmethod
    def update_subscription_plan(
        self,
        subscription_id: str,
        item_id: str,
        price_id: str,
        quantity: int,
        proration_behavior: str,
        proration_date: Optional[datetime] = None
    ) -> GatewaySubscription:
        pass

    @abstractmethod
    def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> GatewaySubscription:
        pass

    @abstractmethod
    def resume_subscription(self, subscription_id: str) -> GatewaySubscription:
        pass

    @abstractmethod
    def pause_subscription(self, subscription_id: str) -> GatewaySubscription:
        pass

    @abstractmethod
    def unpause_subscription(self, subscription_id: str) -> GatewaySubscription:
        pass

    @abstractmethod
    def apply_coupon(self, subscription_id: str, coupon_id: str) -> GatewaySubscription:
        pass

    @abstractmethod
    def preview_proration(
        self,
        customer_id: str,
        subscription_id: str,
        item_id: str,
        price_id: str,
        quantity: int,
        proration_date: Optional[datetime] = None
    ) -> int:
        """Amount due (minor units) of the invoice the change would produce"""

    @abstractmethod
    def create_usage_record(
        self,
        item_id: str,
        quantity: int,
        timestamp: datetime,
        idempotency_key: str
    ) -> str:
        """Report usage; repeated calls with one key must count once"""

    @abstractmethod
    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def verify_webhook_signature(self, payload: str, signature: str) -> Dict[str, Any]:
        """Verify and parse an inbound event; raises WebhookVerificationException"""
