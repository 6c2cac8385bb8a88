from .catalog import LEVEL_BASIC, LEVEL_FREE, LEVEL_PRO, PLAN_LEVELS, plan_label, plan_price
from .classifier import DowngradeEligibility, check_downgrade, classify_transition
from .db import (
    ENGINE,
    SessionLocal,
    build_session_factory,
    init_subscription_db,
    ping_database,
    session_scope,
)
from .entitlements import (
    FREE_STATUS,
    EntitlementStatus,
    effective_status,
    get_tenant_entitlement,
    invalidate_tenant_entitlement,
    require_plan_level,
)
from .exceptions import (
    EntitlementRequiredError,
    PaymentProviderError,
    SubscriptionError,
    SubscriptionStateError,
    SubscriptionValidationError,
    TenantNotFoundError,
    TransitionRejected,
    UnauthorizedError,
    UnknownOrderError,
    WebhookSignatureError,
)
from .models import (
    Base,
    ChangeType,
    SubscriptionTransaction,
    Tenant,
    TransactionStatus,
    WebhookAuditLog,
)
from .periods import Clock, FixedClock, SystemClock, add_months, days_left_ceil
from .proration import Charge, compute_charge, prorated_upgrade_amount
from .provider import (
    BasePaymentProvider,
    MidtransSnapProvider,
    MockProvider,
    PaymentContact,
    PaymentSession,
    get_payment_provider,
)
from .repository import SubscriptionRepository
from .service import (
    AppliedDowngrade,
    PendingTransaction,
    SubscriptionChangeRequest,
    WebhookResult,
    check_downgrade_eligibility,
    create_subscription_transaction,
    get_subscription_status,
    list_transaction_history,
    process_midtrans_webhook,
    verify_webhook_signature,
)

__all__ = [
    "LEVEL_FREE",
    "LEVEL_BASIC",
    "LEVEL_PRO",
    "PLAN_LEVELS",
    "plan_label",
    "plan_price",
    "DowngradeEligibility",
    "check_downgrade",
    "classify_transition",
    "ENGINE",
    "SessionLocal",
    "build_session_factory",
    "init_subscription_db",
    "ping_database",
    "session_scope",
    "FREE_STATUS",
    "EntitlementStatus",
    "effective_status",
    "get_tenant_entitlement",
    "invalidate_tenant_entitlement",
    "require_plan_level",
    "SubscriptionError",
    "SubscriptionValidationError",
    "TransitionRejected",
    "TenantNotFoundError",
    "UnknownOrderError",
    "WebhookSignatureError",
    "UnauthorizedError",
    "EntitlementRequiredError",
    "SubscriptionStateError",
    "PaymentProviderError",
    "Base",
    "ChangeType",
    "TransactionStatus",
    "Tenant",
    "SubscriptionTransaction",
    "WebhookAuditLog",
    "Clock",
    "FixedClock",
    "SystemClock",
    "add_months",
    "days_left_ceil",
    "Charge",
    "compute_charge",
    "prorated_upgrade_amount",
    "BasePaymentProvider",
    "MockProvider",
    "MidtransSnapProvider",
    "PaymentContact",
    "PaymentSession",
    "get_payment_provider",
    "SubscriptionRepository",
    "SubscriptionChangeRequest",
    "PendingTransaction",
    "AppliedDowngrade",
    "WebhookResult",
    "create_subscription_transaction",
    "process_midtrans_webhook",
    "verify_webhook_signature",
    "list_transaction_history",
    "check_downgrade_eligibility",
    "get_subscription_status",
]
