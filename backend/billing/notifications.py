"""
Notification and scheduling collaborators

Billing operations hand off user-facing messages and deferred jobs here and
move on; neither waits for delivery and a failure to enqueue is logged, not
raised into the billing operation that triggered it.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..database import session_scope
from ..models import Notification, NotificationSeverity, ScheduledJob
from ..utils.clock import utcnow
from .repository import BillingRepository

logger = logging.getLogger(__name__)


class NotificationService:
    """Persists in-app/email notifications for organizations and their admins"""

    def __init__(self, session_factory: sessionmaker = None):
        self.session_factory = session_factory

    def notify(
        self,
        organization_id: str,
        title: str,
        message: str,
        severity: NotificationSeverity = NotificationSeverity.INFO,
        channels: Sequence[str] = ("in_app",),
        data: Optional[Dict[str, Any]] = None,
        user_ids: Optional[Sequence[str]] = None
    ) -> int:
        """
        Queue a notification for an organization, or one per listed user.

        Returns:
            Number of notifications queued (0 on failure)
        """
        recipients: List[Optional[str]] = list(user_ids) if user_ids else [None]
        try:
            with session_scope(self.session_factory) as session:
                BillingRepository(session).add_notifications(
                    Notification(
                        organization_id=organization_id,
                        user_id=user_id,
                        title=title,
                        message=message,
                        severity=severity,
                        channels=list(channels),
                        data=data or {}
                    )
                    for user_id in recipients
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to queue notification '{title}' for {organization_id}: {e}")
            return 0

        logger.info(f"Queued notification '{title}' for organization {organization_id} ({len(recipients)})")
        return len(recipients)

    def notify_admins(
        self,
        organization_id: str,
        title: str,
        message: str,
        severity: NotificationSeverity = NotificationSeverity.INFO,
        data: Optional[Dict[str, Any]] = None
    ) -> int:
        """Queue a notification for each admin of the organization"""
        try:
            with session_scope(self.session_factory) as session:
                admins = BillingRepository(session).get_organization_admins(organization_id)
                user_ids = [admin.user_id for admin in admins]
        except SQLAlchemyError as e:
            logger.error(f"Failed to load admins of {organization_id}: {e}")
            return 0

        if not user_ids:
            logger.warning(f"Organization {organization_id} has no admins to notify")
            return 0

        return self.notify(
            organization_id,
            title,
            message,
            severity=severity,
            channels=("in_app", "email"),
            data=data,
            user_ids=user_ids
        )


class JobScheduler:
    """Persists deferred job requests for the background worker"""

    def __init__(self, session_factory: sessionmaker = None):
        self.session_factory = session_factory

    def schedule(self, name: str, run_at: datetime, payload: Dict[str, Any]) -> Optional[str]:
        """Schedule one job; returns its id or None on failure"""
        ids = self.schedule_many(name, [(run_at, payload)])
        return ids[0] if ids else None

    def schedule_many(self, name: str, runs: Sequence) -> List[str]:
        """Schedule several runs of one job, each a ``(run_at, payload)`` pair"""
        jobs = [ScheduledJob(name=name, run_at=run_at, payload=payload) for run_at, payload in runs]
        try:
            with session_scope(self.session_factory) as session:
                BillingRepository(session).add_jobs(jobs)
                session.flush()
                job_ids = [job.id for job in jobs]
        except SQLAlchemyError as e:
            logger.error(f"Failed to schedule {name}: {e}")
            return []

        logger.info(f"Scheduled {len(job_ids)} {name} job(s)")
        return job_ids


def win_back_runs(subscription_id: str, organization_id: str, reason: str,
                  step_days: Sequence[int], offer_valid_days: int,
                  now: Optional[datetime] = None) -> List:
    """Build the scheduled steps of a win-back campaign"""
    now = now or utcnow()
    offer = win_back_offer(reason)
    expires_at = now + timedelta(days=offer_valid_days)

    return [
        (
            now + timedelta(days=day),
            {
                "subscription_id": subscription_id,
                "organization_id": organization_id,
                "reason": reason,
                "step": step,
                "offer": offer,
                "offer_expires_at": expires_at.isoformat()
            }
        )
        for step, day in enumerate(step_days, start=1)
    ]


def win_back_offer(reason: str) -> Dict[str, Any]:
    """Offer matched to the cancellation reason"""
    if reason == "too_expensive":
        return {"type": "discount", "percent_off": 20, "duration_months": 3}
    if reason == "missing_features":
        return {"type": "trial_extension", "days": 30}
    return {"type": "generic"}
