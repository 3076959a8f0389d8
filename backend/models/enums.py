"""
Enumerations shared by the billing tables and the billing services.
"""

from enum import Enum


class PricingType(str, Enum):
    """How a plan's base charge is computed"""
    FLAT = "flat"
    PER_UNIT = "per_unit"
    TIERED = "tiered"
    USAGE_BASED = "usage_based"


class BillingInterval(str, Enum):
    """Billing interval of a plan"""
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"
    CUSTOM = "custom"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states"""
    PENDING = "PENDING"
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    PAUSED = "PAUSED"
    CANCELED = "CANCELED"


class PromotionType(str, Enum):
    """Discount kinds"""
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    FREE_PERIOD = "free_period"


class MemberRole(str, Enum):
    """Organization membership roles"""
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class DeliveryStatus(str, Enum):
    """Outbound webhook delivery states"""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class UsageReportStatus(str, Enum):
    """Reconciliation report states"""
    PENDING = "PENDING"
    REPORTED = "REPORTED"


class UsageAlertLevel(str, Enum):
    """Usage threshold levels that trigger notifications"""
    WARNING = "warning"
    EXCEEDED = "exceeded"


class NotificationSeverity(str, Enum):
    """Notification severity"""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class JobStatus(str, Enum):
    """Scheduled job states"""
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
