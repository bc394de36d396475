"""
Checkout error hierarchy and the payment error taxonomy.

HTTP-layer failures from the checkout API surface as CheckoutApiError;
payment failures carry a PaymentErrorCode and are turned into a
user-facing ErrorPresentation by present_error().
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from storefront_checkout.models import PaymentErrorCode, PaymentErrorInfo


class CheckoutError(Exception):
    """Base exception for the checkout flow."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "CHECKOUT_ERROR"
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class CheckoutApiError(CheckoutError):
    """Error returned by (or while reaching) the checkout API."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        errors: Optional[List[Any]] = None,
        retryable: bool = False,
        code: Optional[str] = None,
    ):
        super().__init__(message, code or "API_ERROR", {"errors": errors or []})
        self.status_code = status_code
        self.errors = errors or []
        self.retryable = retryable

    @classmethod
    def from_response(
        cls,
        status_code: int,
        body: Any,
        retryable: bool = False,
    ) -> "CheckoutApiError":
        """Build from a non-2xx response body (envelope or bare detail)."""
        if isinstance(body, dict):
            message = body.get("message") or body.get("error") or f"HTTP error! status: {status_code}"
            errors = body.get("errors") or []
            if isinstance(message, dict):
                message = message.get("message", f"HTTP error! status: {status_code}")
        elif isinstance(body, str) and body:
            message, errors = body, []
        else:
            message, errors = f"HTTP error! status: {status_code}", []
        return cls(str(message), status_code=status_code, errors=list(errors), retryable=retryable)


class StepError(CheckoutError):
    """Raised for an illegal step transition."""

    def __init__(self, message: str):
        super().__init__(message, code="INVALID_STEP")


class SubmissionError(CheckoutError):
    """Base exception for order submission."""
    pass


class SubmissionInProgress(SubmissionError):
    """Raised when a submission is requested while another is pending."""

    def __init__(self, message: str = "An order submission is already in progress"):
        super().__init__(message, code="SUBMISSION_IN_PROGRESS")


class InvalidSubmissionState(SubmissionError):
    """Raised when an operation is not allowed in the current state."""

    def __init__(self, message: str):
        super().__init__(message, code="INVALID_SUBMISSION_STATE")


class GatewayError(CheckoutError):
    """Base exception for gateway adapters."""
    pass


class UnsupportedGateway(GatewayError):
    """Raised when no adapter is registered for a gateway/method pair."""

    def __init__(self, gateway: str, method: Optional[str] = None):
        label = f"{gateway}/{method}" if method else gateway
        super().__init__(f"No payment adapter registered for {label}", code="UNSUPPORTED_GATEWAY")
        self.gateway = gateway
        self.method = method


class PaymentError(CheckoutError):
    """A payment failure classified into the error taxonomy."""

    def __init__(
        self,
        message: str,
        code: PaymentErrorCode = PaymentErrorCode.UNKNOWN_ERROR,
        retryable: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
        reference: Optional[str] = None,
    ):
        super().__init__(message, code.value, details)
        self.error_code = code
        self.retryable = is_retryable(code) if retryable is None else retryable
        self.reference = reference

    @classmethod
    def from_api_error(cls, error: CheckoutApiError) -> "PaymentError":
        """Map an HTTP-layer failure onto the payment taxonomy."""
        if error.status_code == 429:
            return cls(
                "Too many payment attempts. Please try again later.",
                PaymentErrorCode.RATE_LIMITED,
                retryable=True,
            )
        if error.status_code == 408 or error.code == "TIMEOUT":
            return cls(
                "The payment request timed out. Please try again.",
                PaymentErrorCode.PAYMENT_TIMEOUT,
                retryable=True,
            )
        if error.status_code >= 500:
            return cls(
                "Payment service temporarily unavailable. Please try again.",
                PaymentErrorCode.GATEWAY_ERROR,
                retryable=True,
            )
        if error.status_code == 0:
            return cls(error.message, PaymentErrorCode.NETWORK_ERROR, retryable=True)
        if error.status_code == 400:
            return cls(
                error.message or "Invalid payment data provided.",
                PaymentErrorCode.UNKNOWN_ERROR,
                retryable=False,
                details={"errors": error.errors},
            )
        return cls(
            error.message or "An unexpected error occurred.",
            PaymentErrorCode.UNKNOWN_ERROR,
            retryable=False,
        )

    def to_info(self) -> PaymentErrorInfo:
        return PaymentErrorInfo(
            code=self.error_code,
            message=self.message,
            retryable=self.retryable,
            reference=self.reference,
            details=dict(self.details),
        )


# Retryable subject to the retry limiter. RATE_LIMITED only once its
# embedded cool-down has elapsed.
RETRYABLE_CODES = frozenset({
    PaymentErrorCode.INSUFFICIENT_FUNDS,
    PaymentErrorCode.CARD_DECLINED,
    PaymentErrorCode.NETWORK_ERROR,
    PaymentErrorCode.GATEWAY_ERROR,
    PaymentErrorCode.PAYMENT_TIMEOUT,
    PaymentErrorCode.RATE_LIMITED,
    PaymentErrorCode.UNKNOWN_ERROR,
})

# Retrying cannot help until the customer changes card or method.
NON_RETRYABLE_CODES = frozenset({
    PaymentErrorCode.FRAUD_DETECTED,
    PaymentErrorCode.INVALID_CARD,
    PaymentErrorCode.EXPIRED_CARD,
    PaymentErrorCode.CURRENCY_NOT_SUPPORTED,
    PaymentErrorCode.AMOUNT_TOO_LARGE,
    PaymentErrorCode.POPUP_BLOCKED,
})


def is_retryable(code: PaymentErrorCode) -> bool:
    return code in RETRYABLE_CODES


def retry_available_in(info: PaymentErrorInfo, now: Optional[datetime] = None) -> float:
    """Seconds until a rate-limited error may be retried (0 for other codes)."""
    if info.code != PaymentErrorCode.RATE_LIMITED or info.retry_after is None:
        return 0.0
    elapsed = ((now or datetime.now(timezone.utc)) - info.timestamp).total_seconds()
    return max(0.0, info.retry_after - elapsed)


def is_retryable_now(info: PaymentErrorInfo, now: Optional[datetime] = None) -> bool:
    if not info.retryable:
        return False
    return retry_available_in(info, now) <= 0


def make_error_info(
    code: PaymentErrorCode,
    message: Optional[str] = None,
    reference: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    retryable: Optional[bool] = None,
) -> PaymentErrorInfo:
    return PaymentErrorInfo(
        code=code,
        message=message or ERROR_MESSAGES[code]["description"],
        retryable=is_retryable(code) if retryable is None else retryable,
        reference=reference,
        details=details or {},
    )


# Gateway-reported failure strings seen in initialize/verify responses.
_GATEWAY_CODE_HINTS = (
    ("insufficient", PaymentErrorCode.INSUFFICIENT_FUNDS),
    ("declined", PaymentErrorCode.CARD_DECLINED),
    ("expired", PaymentErrorCode.EXPIRED_CARD),
    ("invalid card", PaymentErrorCode.INVALID_CARD),
    ("fraud", PaymentErrorCode.FRAUD_DETECTED),
    ("currency", PaymentErrorCode.CURRENCY_NOT_SUPPORTED),
    ("amount", PaymentErrorCode.AMOUNT_TOO_LARGE),
    ("timeout", PaymentErrorCode.PAYMENT_TIMEOUT),
    ("timed out", PaymentErrorCode.PAYMENT_TIMEOUT),
    ("too many", PaymentErrorCode.RATE_LIMITED),
)


def classify_failure(code: Optional[str] = None, message: Optional[str] = None) -> PaymentErrorCode:
    """Resolve an explicit code or a free-text gateway message to the taxonomy."""
    if code:
        try:
            return PaymentErrorCode(code.upper())
        except ValueError:
            pass
    text = (message or "").lower()
    for hint, mapped in _GATEWAY_CODE_HINTS:
        if hint in text:
            return mapped
    return PaymentErrorCode.UNKNOWN_ERROR


ERROR_MESSAGES: Dict[PaymentErrorCode, Dict[str, str]] = {
    PaymentErrorCode.INSUFFICIENT_FUNDS: {
        "title": "Insufficient Funds",
        "description": "Your card or account doesn't have enough funds for this transaction.",
        "action": "Please check your account balance or try a different payment method.",
    },
    PaymentErrorCode.CARD_DECLINED: {
        "title": "Card Declined",
        "description": "Your card was declined by your bank or card issuer.",
        "action": "Please contact your bank or try a different card.",
    },
    PaymentErrorCode.EXPIRED_CARD: {
        "title": "Card Expired",
        "description": "The card you're trying to use has expired.",
        "action": "Please use a different card or update your card information.",
    },
    PaymentErrorCode.INVALID_CARD: {
        "title": "Invalid Card Details",
        "description": "The card information provided is incorrect or invalid.",
        "action": "Please check your card details and try again.",
    },
    PaymentErrorCode.NETWORK_ERROR: {
        "title": "Network Connection Error",
        "description": "There was a problem connecting to the payment service.",
        "action": "Please check your internet connection and try again.",
    },
    PaymentErrorCode.GATEWAY_ERROR: {
        "title": "Payment Gateway Error",
        "description": "The payment gateway is temporarily unavailable.",
        "action": "Please try again in a few minutes or use a different payment method.",
    },
    PaymentErrorCode.RATE_LIMITED: {
        "title": "Too Many Attempts",
        "description": "You've made too many payment attempts in a short time.",
        "action": "Please wait a few minutes before trying again.",
    },
    PaymentErrorCode.FRAUD_DETECTED: {
        "title": "Security Check Failed",
        "description": "This transaction was flagged by our security system.",
        "action": "Please contact support to verify your identity and complete the payment.",
    },
    PaymentErrorCode.CURRENCY_NOT_SUPPORTED: {
        "title": "Currency Not Supported",
        "description": "The selected payment method doesn't support this currency.",
        "action": "Please try a different payment method.",
    },
    PaymentErrorCode.AMOUNT_TOO_LARGE: {
        "title": "Amount Exceeds Limit",
        "description": "The payment amount exceeds the maximum allowed limit.",
        "action": "Please contact support for large transactions or split into smaller amounts.",
    },
    PaymentErrorCode.PAYMENT_TIMEOUT: {
        "title": "Payment Timeout",
        "description": "The payment took too long to process and timed out.",
        "action": "Please try again. If the problem persists, contact support.",
    },
    PaymentErrorCode.POPUP_BLOCKED: {
        "title": "Popup Blocked",
        "description": "Your browser blocked the payment window.",
        "action": "Please allow popups for this site to complete payment.",
    },
    PaymentErrorCode.UNKNOWN_ERROR: {
        "title": "Payment Failed",
        "description": "An unexpected error occurred while processing your payment.",
        "action": "Please try again or contact support if the problem continues.",
    },
}


class ErrorAction(str, Enum):
    """Actions offered alongside a payment failure."""
    RETRY = "retry"
    CHANGE_METHOD = "change_method"
    CANCEL = "cancel"
    CONTACT_SUPPORT = "contact_support"


class ErrorSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


_CRITICAL = {
    PaymentErrorCode.FRAUD_DETECTED,
    PaymentErrorCode.CARD_DECLINED,
    PaymentErrorCode.INSUFFICIENT_FUNDS,
}
_WARNING = {
    PaymentErrorCode.NETWORK_ERROR,
    PaymentErrorCode.GATEWAY_ERROR,
    PaymentErrorCode.PAYMENT_TIMEOUT,
}


@dataclass
class ErrorPresentation:
    """What the customer sees when a payment fails."""
    code: PaymentErrorCode
    title: str
    description: str
    suggested_action: str
    severity: ErrorSeverity
    actions: List[ErrorAction] = field(default_factory=list)
    reference: Optional[str] = None
    retry_countdown: float = 0.0
    message: str = ""


def present_error(
    info: PaymentErrorInfo,
    retry_count: int = 0,
    max_retries: int = 3,
    now: Optional[datetime] = None,
) -> ErrorPresentation:
    """Build the user-facing failure for a PaymentErrorInfo."""
    catalogue = ERROR_MESSAGES.get(info.code, ERROR_MESSAGES[PaymentErrorCode.UNKNOWN_ERROR])
    countdown = retry_available_in(info, now)

    actions: List[ErrorAction] = []
    if info.retryable and countdown <= 0 and retry_count < max_retries:
        actions.append(ErrorAction.RETRY)
    if info.code != PaymentErrorCode.RATE_LIMITED:
        actions.append(ErrorAction.CHANGE_METHOD)
    actions.append(ErrorAction.CONTACT_SUPPORT)
    actions.append(ErrorAction.CANCEL)

    if info.code in _CRITICAL:
        severity = ErrorSeverity.CRITICAL
    elif info.code in _WARNING:
        severity = ErrorSeverity.WARNING
    else:
        severity = ErrorSeverity.INFO

    return ErrorPresentation(
        code=info.code,
        title=catalogue["title"],
        description=catalogue["description"],
        suggested_action=catalogue["action"],
        severity=severity,
        actions=actions,
        reference=info.reference,
        retry_countdown=countdown,
        message=info.message,
    )


def format_countdown(seconds: float) -> str:
    """Render a cool-down as M:SS."""
    total = max(0, int(seconds))
    return f"{total // 60}:{total % 60:02d}"
