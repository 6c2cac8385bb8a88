from typing import Dict

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "SUBSCRIPTION_VALIDATION_FAILED": {
        "message": "Invalid subscription request",
        "hint": "Check target_level (0-2) and duration_months (1-12).",
    },
    "SUBSCRIPTION_TRANSITION_REJECTED": {
        "message": "Plan change not allowed",
        "hint": "Downgrades open only inside the renewal window; see /company/subscription/check-downgrade.",
    },
    "SUBSCRIPTION_TENANT_NOT_FOUND": {
        "message": "Company not found",
        "hint": "Confirm the token carries the right company id.",
    },
    "SUBSCRIPTION_UNKNOWN_ORDER": {
        "message": "Unknown order",
        "hint": "The gateway referenced an order_id this service never issued.",
    },
    "SUBSCRIPTION_SIGNATURE_INVALID": {
        "message": "Webhook signature mismatch",
        "hint": "Verify MIDTRANS_SERVER_KEY matches the gateway account.",
    },
    "SUBSCRIPTION_STATE_ERROR": {
        "message": "Subscription state conflict",
        "hint": "Reload the subscription and retry.",
    },
    "PAYMENT_PROVIDER_ERROR": {
        "message": "Payment gateway unavailable",
        "hint": "Check gateway credentials and network, then retry.",
    },
    "PAYMENT_WEBHOOK_NOT_CONFIGURED": {
        "message": "Webhook verification is not configured",
        "hint": "Set MIDTRANS_SERVER_KEY before enabling notifications.",
    },
    "UNAUTHORIZED": {
        "message": "Authentication required",
        "hint": "Send a valid Bearer token.",
    },
    "ENTITLEMENT_REQUIRED": {
        "message": "Plan level too low",
        "hint": "Upgrade the company plan to use this feature.",
    },
    "INTERNAL_SERVER_ERROR": {
        "message": "Unexpected error",
        "hint": "Check the service logs with the request trace id.",
    },
}


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)
