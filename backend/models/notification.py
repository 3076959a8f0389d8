"""
Notifications and scheduled jobs handed to the delivery collaborators.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, JSON, String, Text

from .base import BaseModel, enum_type
from .enums import JobStatus, NotificationSeverity


class Notification(BaseModel):
    """A message for an organization or one of its users."""

    __tablename__ = "notifications"

    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(String(36), nullable=True, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    severity = Column(
        enum_type(NotificationSeverity), nullable=False, default=NotificationSeverity.INFO
    )
    channels = Column(JSON, default=list)
    data = Column(JSON, default=dict)
    is_read = Column(Boolean, nullable=False, default=False)


class ScheduledJob(BaseModel):
    """A deferred job request, e.g. a win-back campaign step."""

    __tablename__ = "scheduled_jobs"

    name = Column(String(100), nullable=False, index=True)
    run_at = Column(DateTime, nullable=False, index=True)
    payload = Column(JSON, default=dict)
    status = Column(enum_type(JobStatus), nullable=False, default=JobStatus.SCHEDULED)
