from __future__ import annotations


class SubscriptionError(RuntimeError):
    error_code = "SUBSCRIPTION_ERROR"
    http_status = 500


class SubscriptionValidationError(SubscriptionError):
    error_code = "SUBSCRIPTION_VALIDATION_FAILED"
    http_status = 400


class TransitionRejected(SubscriptionValidationError):
    error_code = "SUBSCRIPTION_TRANSITION_REJECTED"


class TenantNotFoundError(SubscriptionValidationError):
    error_code = "SUBSCRIPTION_TENANT_NOT_FOUND"
    http_status = 404


class UnknownOrderError(SubscriptionValidationError):
    error_code = "SUBSCRIPTION_UNKNOWN_ORDER"
    http_status = 404


class WebhookSignatureError(SubscriptionError):
    error_code = "SUBSCRIPTION_SIGNATURE_INVALID"
    http_status = 403


class SubscriptionStateError(SubscriptionError):
    error_code = "SUBSCRIPTION_STATE_ERROR"
    http_status = 409


class PaymentProviderError(SubscriptionError):
    error_code = "PAYMENT_PROVIDER_ERROR"
    http_status = 502


class UnauthorizedError(SubscriptionError):
    error_code = "UNAUTHORIZED"
    http_status = 401


class EntitlementRequiredError(SubscriptionError):
    error_code = "ENTITLEMENT_REQUIRED"
    http_status = 403
