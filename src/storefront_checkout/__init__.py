"""
Storefront checkout flow.

Drives one customer's checkout for one store: a four-step form wizard with
per-step validation, a persisted draft that survives reloads, order
submission against the checkout API, and payment through redirect, popup or
wallet-connect gateways.

Features:
- Step state machine gated by per-step pydantic validation
- Debounced draft persistence (in-memory or Redis)
- Server-authoritative totals
- Gateway adapters behind one interface, with an origin-filtered callback broker
- Per-customer payment retry limiting
- Funnel and payment analytics
"""

from storefront_checkout.analytics import (
    AnalyticsBackend,
    CheckoutAnalytics,
    CheckoutAnalyticsEvent,
    CheckoutEventType,
    InMemoryAnalyticsBackend,
    LoggingAnalyticsBackend,
)
from storefront_checkout.api import CheckoutApiClient, RetryPolicy
from storefront_checkout.callbacks import (
    CallbackBroker,
    CallbackResult,
    CallbackReturnHandler,
    PendingCallback,
)
from storefront_checkout.config import CheckoutSettings, PaymentRules, load_settings
from storefront_checkout.context import CheckoutContext, build_checkout_context
from storefront_checkout.coordinator import OrderSubmissionCoordinator, build_order_payload
from storefront_checkout.errors import (
    CheckoutApiError,
    CheckoutError,
    ErrorAction,
    ErrorPresentation,
    GatewayError,
    InvalidSubmissionState,
    PaymentError,
    StepError,
    SubmissionError,
    SubmissionInProgress,
    UnsupportedGateway,
    present_error,
)
from storefront_checkout.flow import CheckoutFlow
from storefront_checkout.forms import FormStore
from storefront_checkout.gateways import (
    GatewayRegistry,
    Navigator,
    PaymentGatewayAdapter,
    PopupGatewayAdapter,
    PopupHandle,
    RedirectGatewayAdapter,
    WalletConnectGatewayAdapter,
    WalletPayClient,
)
from storefront_checkout.models import (
    ActivationKind,
    ActivationTarget,
    CheckoutFormData,
    CheckoutItem,
    CheckoutSession,
    CheckoutStep,
    CustomerInfo,
    GatewayInitResult,
    GatewayType,
    OrderConfirmation,
    OrderTotals,
    OutcomeStatus,
    PaymentAttempt,
    PaymentErrorCode,
    PaymentErrorInfo,
    PaymentMethodChoice,
    PaymentMethodType,
    PaymentOutcome,
    PaymentStatus,
    PricingValidation,
    RateLimitState,
    ShippingAddress,
    SubmissionState,
    STEP_SEQUENCE,
)
from storefront_checkout.persistence import (
    CheckoutSnapshot,
    InMemoryStorageBackend,
    RedisStorageBackend,
    SessionPersistence,
    StorageBackend,
)
from storefront_checkout.pricing import PricingCoordinator
from storefront_checkout.rate_limit import (
    InMemoryRateLimitStore,
    RedisRateLimitStore,
    RateLimitStore,
    RetryRateLimiter,
)
from storefront_checkout.sessions import (
    CheckoutSessionManager,
    SessionError,
    SessionExpired,
    SessionNotFound,
)
from storefront_checkout.steps import StepStateMachine
from storefront_checkout.validation import (
    PaymentValidator,
    StepValidation,
    ValidationGate,
)

__all__ = [
    # Flow
    "CheckoutFlow",
    "CheckoutContext",
    "build_checkout_context",
    "OrderSubmissionCoordinator",
    "build_order_payload",
    # Form and steps
    "FormStore",
    "StepStateMachine",
    "ValidationGate",
    "StepValidation",
    "PaymentValidator",
    # Persistence
    "SessionPersistence",
    "CheckoutSnapshot",
    "StorageBackend",
    "InMemoryStorageBackend",
    "RedisStorageBackend",
    # API
    "CheckoutApiClient",
    "RetryPolicy",
    "CheckoutSessionManager",
    "PricingCoordinator",
    # Gateways
    "PaymentGatewayAdapter",
    "RedirectGatewayAdapter",
    "PopupGatewayAdapter",
    "WalletConnectGatewayAdapter",
    "WalletPayClient",
    "Navigator",
    "PopupHandle",
    "GatewayRegistry",
    # Callbacks
    "CallbackBroker",
    "PendingCallback",
    "CallbackReturnHandler",
    "CallbackResult",
    # Retry limiting
    "RetryRateLimiter",
    "RateLimitStore",
    "InMemoryRateLimitStore",
    "RedisRateLimitStore",
    # Analytics
    "CheckoutAnalytics",
    "CheckoutAnalyticsEvent",
    "CheckoutEventType",
    "AnalyticsBackend",
    "InMemoryAnalyticsBackend",
    "LoggingAnalyticsBackend",
    # Config
    "CheckoutSettings",
    "PaymentRules",
    "load_settings",
    # Models
    "ActivationKind",
    "ActivationTarget",
    "CheckoutFormData",
    "CheckoutItem",
    "CheckoutSession",
    "CheckoutStep",
    "CustomerInfo",
    "GatewayInitResult",
    "GatewayType",
    "OrderConfirmation",
    "OrderTotals",
    "OutcomeStatus",
    "PaymentAttempt",
    "PaymentErrorCode",
    "PaymentErrorInfo",
    "PaymentMethodChoice",
    "PaymentMethodType",
    "PaymentOutcome",
    "PaymentStatus",
    "PricingValidation",
    "RateLimitState",
    "ShippingAddress",
    "SubmissionState",
    "STEP_SEQUENCE",
    # Errors
    "CheckoutError",
    "CheckoutApiError",
    "StepError",
    "SubmissionError",
    "SubmissionInProgress",
    "InvalidSubmissionState",
    "GatewayError",
    "UnsupportedGateway",
    "PaymentError",
    "ErrorAction",
    "ErrorPresentation",
    "present_error",
    "SessionError",
    "SessionExpired",
    "SessionNotFound",
]

__version__ = "0.1.0"
