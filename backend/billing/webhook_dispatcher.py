"""
Outbound webhook delivery

Billing events are persisted as one delivery per subscribed endpoint before
any network call is made, so a crash never loses an event. Deliveries are
signed with the endpoint's secret and retried with exponential backoff; the
next attempt time is stored on the row and a sweep picks up anything whose
in-process retry timer was lost.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlparse

import httpx
from sqlalchemy.orm import sessionmaker

from ..database import session_scope
from ..models import DeliveryStatus, WebhookDelivery, WebhookSubscription
from ..utils.clock import utcnow
from .exceptions import NotFoundException, ValidationException
from .repository import BillingRepository
from .settings import BillingSettings, RetryConfig

logger = logging.getLogger(__name__)


# Receiver errors that another attempt will not fix
NON_RETRYABLE_STATUSES = frozenset({400, 401, 403, 404, 410})

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_HEADER = "X-Delivery-ID"

MAX_STORED_RESPONSE = 1000


def sign_payload(body: str, secret: str) -> str:
    """HMAC-SHA256 of the raw body, hex encoded"""
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(body: str, secret: str, signature: str) -> bool:
    """Check a signature produced by ``sign_payload``"""
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature)


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """
    Delay before the retry following ``attempt`` (zero-based).

    Args:
        attempt: Number of attempts already failed, minus one
        config: Retry policy

    Returns:
        Seconds to wait, capped at ``config.max_delay``
    """
    delay = config.initial_delay * (config.backoff_multiplier ** max(attempt, 0))
    return min(delay, config.max_delay)


def serialize_event(event: str, data: Dict[str, Any], timestamp: datetime) -> str:
    """Body sent to endpoints; signed verbatim"""
    return json.dumps(
        {"event": event, "timestamp": timestamp.isoformat(), "data": data},
        default=str,
        sort_keys=True
    )


@dataclass
class DeliveryResult:
    """Outcome of one delivery attempt"""
    delivery_id: str
    status: DeliveryStatus
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    retry_delay: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.status == DeliveryStatus.COMPLETED


class WebhookDispatcher:
    """
    Sends billing events to registered endpoints
    """

    def __init__(
        self,
        session_factory: sessionmaker = None,
        settings: Optional[BillingSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
        schedule_retries: bool = True
    ):
        """
        Initialize dispatcher

        Args:
            session_factory: Session factory for units of work
            settings: Billing settings (retry policy, timeout, concurrency)
            client: HTTP client; one is created and owned when omitted
            clock: Source of the current time
            schedule_retries: Re-invoke failed deliveries with ``loop.call_later``;
                when False retries wait for ``process_pending_deliveries``
        """
        self.session_factory = session_factory
        self.settings = settings or BillingSettings()
        self.clock = clock
        self.schedule_retries = schedule_retries

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.settings.request_timeout)
        self._retry_handles: Dict[str, asyncio.TimerHandle] = {}
        self._tasks = set()

    def register_endpoint(
        self,
        url: str,
        event: str,
        organization_id: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> WebhookSubscription:
        """
        Subscribe an endpoint to a billing event

        Returns:
            The stored endpoint, including its generated signing secret
        """
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationException(f"Invalid webhook URL: {url}", operation="register_endpoint")
        if not event:
            raise ValidationException("Webhook event is required", operation="register_endpoint")

        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            endpoint = repo.add(WebhookSubscription(
                organization_id=organization_id,
                url=url,
                event=event,
                secret=secrets.token_hex(32),
                headers=dict(headers or {}),
                is_active=True
            ))
            repo.flush(organization_id, "register_endpoint")

        logger.info(f"Registered webhook endpoint {endpoint.id} for {event}")
        return endpoint

    def deactivate_endpoint(self, webhook_id: str) -> None:
        with session_scope(self.session_factory) as session:
            endpoint = session.get(WebhookSubscription, webhook_id)
            if endpoint is None:
                raise NotFoundException("Webhook endpoint", webhook_id)
            endpoint.is_active = False
        logger.info(f"Deactivated webhook endpoint {webhook_id}")

    def enqueue_event(self, event: str, data: Dict[str, Any]) -> List[str]:
        """
        Persist a pending delivery for every active endpoint subscribed to ``event``

        Returns:
            Delivery ids
        """
        now = self.clock()
        body = serialize_event(event, data, now)

        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            deliveries = [
                repo.add(WebhookDelivery(
                    webhook_id=target.id,
                    event=event,
                    payload=body,
                    status=DeliveryStatus.PENDING,
                    retries=0,
                    next_attempt_at=now
                ))
                for target in repo.list_webhook_targets(event)
            ]
            repo.flush(None, "enqueue_event")
            delivery_ids = [delivery.id for delivery in deliveries]

        if delivery_ids:
            logger.info(f"Queued {len(delivery_ids)} delivery(ies) for {event}")
        else:
            logger.debug(f"No endpoints subscribed to {event}")
        return delivery_ids

    async def dispatch_event(self, event: str, data: Dict[str, Any]) -> List[DeliveryResult]:
        """Queue an event and attempt delivery right away"""
        delivery_ids = self.enqueue_event(event, data)
        return await self._deliver_all(delivery_ids)

    async def process_pending_deliveries(self, limit: Optional[int] = None) -> List[DeliveryResult]:
        """
        Attempt every due pending delivery

        Args:
            limit: Maximum deliveries to pick up (``sweep_batch_size`` by default)
        """
        now = self.clock()
        with session_scope(self.session_factory) as session:
            delivery_ids = BillingRepository(session).list_due_deliveries(
                now, self.settings.retry.max_attempts, limit or self.settings.sweep_batch_size
            )

        if not delivery_ids:
            return []

        results = await self._deliver_all(delivery_ids)
        completed = sum(1 for result in results if result.succeeded)
        logger.info(f"Processed {len(results)} pending deliveries, {completed} completed")
        return results

    async def deliver(self, delivery_id: str) -> Optional[DeliveryResult]:
        """
        Make one attempt at a delivery

        Returns:
            The attempt's outcome, or None if another worker holds the
            delivery or it is no longer pending
        """
        now = self.clock()
        lease_until = now + timedelta(seconds=self.settings.request_timeout * 2)

        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            if not repo.claim_delivery(delivery_id, now, lease_until):
                logger.debug(f"Delivery {delivery_id} is not claimable")
                return None
            delivery = repo.get_delivery(delivery_id)
            endpoint = delivery.webhook
            url = endpoint.url
            secret = endpoint.secret
            custom_headers = dict(endpoint.headers or {})
            body = delivery.payload
            event = delivery.event
            previous_attempts = delivery.retries or 0

        headers = {"Content-Type": "application/json", "User-Agent": self.settings.user_agent}
        headers.update(custom_headers)
        headers.update({
            SIGNATURE_HEADER: sign_payload(body, secret),
            EVENT_HEADER: event,
            DELIVERY_HEADER: delivery_id
        })

        status_code = None
        response_text = None
        error = None
        try:
            response = await self._client.post(
                url, content=body, headers=headers, timeout=self.settings.request_timeout
            )
            status_code = response.status_code
            response_text = response.text[:MAX_STORED_RESPONSE]
        except httpx.HTTPError as e:
            error = f"{type(e).__name__}: {e}"

        return self._record_attempt(
            delivery_id, previous_attempts + 1, status_code, response_text, error
        )

    async def wait_for_retries(self) -> None:
        """Wait until every scheduled retry has run to completion"""
        while self._retry_handles or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(0.01)

    async def close(self) -> None:
        """Cancel scheduled retries and release the HTTP client"""
        for handle in self._retry_handles.values():
            handle.cancel()
        self._retry_handles.clear()
        if self._owns_client:
            await self._client.aclose()

    async def _deliver_all(self, delivery_ids: Sequence[str]) -> List[DeliveryResult]:
        semaphore = asyncio.Semaphore(self.settings.sweep_concurrency)

        async def bounded(delivery_id: str) -> Optional[DeliveryResult]:
            async with semaphore:
                return await self.deliver(delivery_id)

        results = await asyncio.gather(*(bounded(delivery_id) for delivery_id in delivery_ids))
        return [result for result in results if result is not None]

    def _record_attempt(self, delivery_id: str, attempts: int, status_code: Optional[int],
                        response_text: Optional[str], error: Optional[str]) -> DeliveryResult:
        now = self.clock()
        retry = self.settings.retry
        retry_delay = None
        next_attempt_at = None

        if status_code is not None and 200 <= status_code < 300:
            status = DeliveryStatus.COMPLETED
        elif status_code in NON_RETRYABLE_STATUSES:
            status = DeliveryStatus.FAILED
        elif attempts >= retry.max_attempts:
            status = DeliveryStatus.FAILED
        else:
            status = DeliveryStatus.PENDING
            retry_delay = calculate_backoff(attempts - 1, retry)
            next_attempt_at = now + timedelta(seconds=retry_delay)

        if error is None and status != DeliveryStatus.COMPLETED:
            error = f"HTTP {status_code}"

        with session_scope(self.session_factory) as session:
            delivery = BillingRepository(session).get_delivery(delivery_id)
            delivery.retries = attempts
            delivery.status = status
            delivery.status_code = status_code
            delivery.response = response_text
            delivery.error = error
            delivery.next_attempt_at = next_attempt_at
            delivery.locked_until = None
            if status == DeliveryStatus.COMPLETED:
                delivery.completed_at = now
                delivery.webhook.last_success_at = now
            elif status == DeliveryStatus.FAILED:
                delivery.webhook.last_failure_at = now

        if status == DeliveryStatus.COMPLETED:
            logger.info(f"Delivered {delivery_id} (HTTP {status_code}, attempt {attempts})")
        elif status == DeliveryStatus.FAILED:
            logger.error(f"Delivery {delivery_id} failed after {attempts} attempt(s): {error}")
        else:
            logger.warning(
                f"Delivery {delivery_id} attempt {attempts} failed ({error}), "
                f"retrying in {retry_delay:.2f}s"
            )
            if self.schedule_retries:
                self._schedule_retry(delivery_id, retry_delay)

        return DeliveryResult(
            delivery_id=delivery_id,
            status=status,
            attempts=attempts,
            status_code=status_code,
            error=None if status == DeliveryStatus.COMPLETED else error,
            next_attempt_at=next_attempt_at,
            retry_delay=retry_delay
        )

    def _schedule_retry(self, delivery_id: str, delay: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop; delivery {delivery_id} left for the sweep")
            return
        self._retry_handles[delivery_id] = loop.call_later(delay, self._start_retry, delivery_id)

    def _start_retry(self, delivery_id: str) -> None:
        self._retry_handles.pop(delivery_id, None)
        task = asyncio.ensure_future(self.deliver(delivery_id))
        self._tasks.add(task)
        task.add_done_callback(self._retry_finished)

    def _retry_finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Scheduled webhook retry crashed: {task.exception()}")
