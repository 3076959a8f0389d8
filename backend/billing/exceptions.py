"""
Billing-specific exceptions
"""

from typing import Any, Dict, Optional


class BillingException(Exception):
    """Base exception for billing operations"""

    def __init__(self, message: str, code: str = None, details: dict = None,
                 entity_id: str = None, operation: str = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.code = code or "BILLING_ERROR"
        self.details = details or {}
        self.entity_id = entity_id
        self.operation = operation
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for logs and API responses"""
        return {
            "code": self.code,
            "message": self.message,
            "entity_id": self.entity_id,
            "operation": self.operation,
            "cause": str(self.cause) if self.cause else None,
            "details": self.details
        }


class ValidationException(BillingException):
    """Raised when a request is rejected before any state changes"""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("code", "VALIDATION_ERROR")
        super().__init__(message, **kwargs)


class InvalidTransitionException(ValidationException):
    """Raised when a subscription cannot move to the requested state"""

    def __init__(self, subscription_id: str, current_status: str, target_status: str, **kwargs):
        message = (
            f"Subscription {subscription_id} cannot transition "
            f"from {current_status} to {target_status}"
        )
        super().__init__(message, code="INVALID_TRANSITION", entity_id=subscription_id, **kwargs)
        self.current_status = current_status
        self.target_status = target_status


class ConfigurationException(BillingException):
    """Raised when plan or tier configuration is unusable"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code="CONFIGURATION_ERROR", **kwargs)


class NotFoundException(BillingException):
    """Raised when a referenced entity does not exist"""

    def __init__(self, entity: str, entity_id: str, code: str = "NOT_FOUND", **kwargs):
        message = f"{entity} not found: {entity_id}"
        super().__init__(message, code=code, entity_id=entity_id, **kwargs)
        self.entity = entity


class SubscriptionNotFoundException(NotFoundException):
    """Raised when a subscription is not found"""

    def __init__(self, subscription_id: str, **kwargs):
        super().__init__("Subscription", subscription_id, code="SUBSCRIPTION_NOT_FOUND", **kwargs)
        self.subscription_id = subscription_id


class InvalidBillingPlanException(NotFoundException):
    """Raised when an invalid billing plan is specified"""

    def __init__(self, plan_id: str, **kwargs):
        super().__init__("Pricing plan", plan_id, code="INVALID_BILLING_PLAN", **kwargs)
        self.plan_id = plan_id


class FeatureNotFoundException(NotFoundException):
    """Raised when a usage feature is not found"""

    def __init__(self, feature_id: str, **kwargs):
        super().__init__("Feature", feature_id, code="FEATURE_NOT_FOUND", **kwargs)
        self.feature_id = feature_id


class OrganizationNotFoundException(NotFoundException):
    """Raised when an organization is not found"""

    def __init__(self, organization_id: str, **kwargs):
        super().__init__("Organization", organization_id, code="ORGANIZATION_NOT_FOUND", **kwargs)
        self.organization_id = organization_id


class DataIntegrityException(BillingException):
    """Raised when stored data conflicts with an incoming change (duplicates, dangling refs)"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code="DATA_INTEGRITY_ERROR", **kwargs)


class ConcurrencyConflictException(BillingException):
    """Raised when another writer changed the entity first; retry the whole operation"""

    def __init__(self, entity_id: str, operation: str = None, **kwargs):
        message = f"Concurrent modification of {entity_id}"
        if operation:
            message += f" during {operation}"
        super().__init__(message, code="CONCURRENCY_CONFLICT",
                         entity_id=entity_id, operation=operation, **kwargs)


class ExternalServiceException(BillingException):
    """Raised when a collaborator (gateway, webhook target) call fails"""

    def __init__(self, message: str, service: str = None, **kwargs):
        kwargs.setdefault("code", "EXTERNAL_SERVICE_ERROR")
        super().__init__(message, **kwargs)
        self.service = service


class StripeException(ExternalServiceException):
    """Raised when Stripe API operations fail"""

    def __init__(self, message: str, stripe_error_code: str = None,
                 stripe_error_type: str = None, **kwargs):
        super().__init__(message, service="stripe", code="STRIPE_ERROR", **kwargs)
        self.stripe_error_code = stripe_error_code
        self.stripe_error_type = stripe_error_type


class WebhookVerificationException(BillingException):
    """Raised when webhook verification fails"""

    def __init__(self, message: str = "Webhook verification failed", **kwargs):
        super().__init__(message, code="WEBHOOK_VERIFICATION_FAILED", **kwargs)


class WebhookProcessingException(BillingException):
    """Raised when an inbound event could not be applied and should be redelivered"""

    def __init__(self, message: str, event_id: str = None, retryable: bool = True, **kwargs):
        super().__init__(message, code="WEBHOOK_PROCESSING_FAILED", entity_id=event_id, **kwargs)
        self.event_id = event_id
        self.retryable = retryable
