"""Checkout flow data models."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid


DEFAULT_CURRENCY = "NGN"
DEFAULT_COUNTRY = "NG"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CheckoutStep(str, Enum):
    """Steps of the checkout wizard, in order."""
    CUSTOMER_INFO = "customer-info"
    SHIPPING_ADDRESS = "shipping-address"
    PAYMENT_METHOD = "payment-method"
    ORDER_REVIEW = "order-review"


STEP_SEQUENCE: tuple = (
    CheckoutStep.CUSTOMER_INFO,
    CheckoutStep.SHIPPING_ADDRESS,
    CheckoutStep.PAYMENT_METHOD,
    CheckoutStep.ORDER_REVIEW,
)


def step_index(step: CheckoutStep | str) -> int:
    """Position of a step in the wizard sequence."""
    return STEP_SEQUENCE.index(CheckoutStep(step))


class PaymentMethodType(str, Enum):
    """Payment method chosen by the customer."""
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    WALLET = "wallet"
    BASEPAY = "basepay"


class GatewayType(str, Enum):
    """Payment gateway identifiers."""
    PAYSTACK = "paystack"
    FLUTTERWAVE = "flutterwave"
    BASEPAY = "basepay"
    WALLET = "wallet"


class PaymentStatus(str, Enum):
    """Lifecycle of a single payment attempt."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OutcomeStatus(str, Enum):
    """How a pending payment resolved."""
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


class SubmissionState(str, Enum):
    """Order submission states."""
    IDLE = "idle"
    VALIDATING = "validating"
    CALCULATING_TOTALS = "calculating-totals"
    CREATING_ORDER = "creating-order"
    AWAITING_PAYMENT = "awaiting-payment"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentErrorCode(str, Enum):
    """Payment error taxonomy."""
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    CARD_DECLINED = "CARD_DECLINED"
    EXPIRED_CARD = "EXPIRED_CARD"
    INVALID_CARD = "INVALID_CARD"
    NETWORK_ERROR = "NETWORK_ERROR"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    FRAUD_DETECTED = "FRAUD_DETECTED"
    CURRENCY_NOT_SUPPORTED = "CURRENCY_NOT_SUPPORTED"
    AMOUNT_TOO_LARGE = "AMOUNT_TOO_LARGE"
    PAYMENT_TIMEOUT = "PAYMENT_TIMEOUT"
    POPUP_BLOCKED = "POPUP_BLOCKED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ActivationKind(str, Enum):
    """How a gateway hands control to the customer."""
    REDIRECT = "redirect"
    POPUP = "popup"
    WALLET_CONNECT = "wallet_connect"


# Checkout form data. Field names mirror the camelCase wire shape through
# to_dict/from_dict so the persisted draft round-trips without loss.


@dataclass
class CustomerInfo:
    is_guest: bool = True
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    create_account: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isGuest": self.is_guest,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "createAccount": self.create_account,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomerInfo":
        return cls(
            is_guest=bool(data.get("isGuest", True)),
            first_name=data.get("firstName", ""),
            last_name=data.get("lastName", ""),
            email=data.get("email", ""),
            phone=data.get("phone", ""),
            create_account=bool(data.get("createAccount", False)),
        )


@dataclass
class ShippingAddress:
    full_name: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = DEFAULT_COUNTRY
    phone: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "fullName": self.full_name,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "postalCode": self.postal_code,
            "country": self.country,
        }
        if self.phone is not None:
            data["phone"] = self.phone
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShippingAddress":
        return cls(
            full_name=data.get("fullName", ""),
            address=data.get("address", ""),
            city=data.get("city", ""),
            state=data.get("state", ""),
            postal_code=data.get("postalCode", ""),
            country=data.get("country", DEFAULT_COUNTRY),
            phone=data.get("phone"),
        )


@dataclass
class PaymentMethodChoice:
    type: str = PaymentMethodType.CARD.value
    gateway: str = GatewayType.PAYSTACK.value

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "gateway": self.gateway}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentMethodChoice":
        return cls(
            type=data.get("type", PaymentMethodType.CARD.value),
            gateway=data.get("gateway", GatewayType.PAYSTACK.value),
        )


@dataclass
class CheckoutFormData:
    """Everything the customer enters across the wizard."""
    customer_info: CustomerInfo = field(default_factory=CustomerInfo)
    shipping_address: ShippingAddress = field(default_factory=ShippingAddress)
    payment_method: PaymentMethodChoice = field(default_factory=PaymentMethodChoice)
    special_instructions: str = ""
    marketing_opt_in: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customerInfo": self.customer_info.to_dict(),
            "shippingAddress": self.shipping_address.to_dict(),
            "paymentMethod": self.payment_method.to_dict(),
            "specialInstructions": self.special_instructions,
            "marketingOptIn": self.marketing_opt_in,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckoutFormData":
        return cls(
            customer_info=CustomerInfo.from_dict(data.get("customerInfo") or {}),
            shipping_address=ShippingAddress.from_dict(data.get("shippingAddress") or {}),
            payment_method=PaymentMethodChoice.from_dict(data.get("paymentMethod") or {}),
            special_instructions=data.get("specialInstructions") or "",
            marketing_opt_in=bool(data.get("marketingOptIn", False)),
        )


@dataclass
class CheckoutSession:
    """
    One customer's in-progress checkout for one store.

    step_id is always a member of STEP_SEQUENCE and completed_steps only
    grows (in sequence order of completion) until the session is reset.
    """
    store_id: str
    step_id: CheckoutStep = CheckoutStep.CUSTOMER_INFO
    completed_steps: List[CheckoutStep] = field(default_factory=list)
    form_data: CheckoutFormData = field(default_factory=CheckoutFormData)
    expires_at: Optional[datetime] = None
    session_id: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at


@dataclass
class CheckoutItem:
    """Line item as sent to the checkout API."""
    product_id: str
    quantity: int
    unit_price: Decimal
    variant_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "productId": self.product_id,
            "quantity": self.quantity,
            "unitPrice": str(self.unit_price),
        }
        if self.variant_id is not None:
            data["variantId"] = self.variant_id
        return data


def _decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


@dataclass(frozen=True)
class OrderTotals:
    """Server-computed order totals. Never recomputed client-side."""
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    currency: str = DEFAULT_CURRENCY
    breakdown: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderTotals":
        return cls(
            subtotal=_decimal(data.get("subtotal")),
            shipping=_decimal(data.get("shipping")),
            tax=_decimal(data.get("tax")),
            discount=_decimal(data.get("discount")),
            total=_decimal(data.get("total")),
            currency=data.get("currency") or DEFAULT_CURRENCY,
            breakdown=dict(data.get("breakdown") or {}),
        )


@dataclass
class PricingValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    available_items: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricingValidation":
        return cls(
            is_valid=bool(data.get("isValid", False)),
            errors=list(data.get("errors") or []),
            warnings=list(data.get("warnings") or []),
            available_items=list(data.get("availableItems") or []),
        )


@dataclass
class OrderConfirmation:
    """Result of POST /checkout/complete."""
    order_id: str
    order_number: Optional[str] = None
    payment_reference: Optional[str] = None
    payment_url: Optional[str] = None
    status: str = "pending"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderConfirmation":
        return cls(
            order_id=str(data["orderId"]),
            order_number=data.get("orderNumber"),
            payment_reference=data.get("paymentReference"),
            payment_url=data.get("paymentUrl"),
            status=data.get("status", "pending"),
        )


@dataclass
class PaymentErrorInfo:
    """A failed payment, as shown to the customer and counted by the limiter."""
    code: PaymentErrorCode
    message: str
    retryable: bool
    reference: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def retry_after(self) -> Optional[float]:
        value = self.details.get("retry_after")
        return float(value) if value is not None else None


@dataclass
class PaymentAttempt:
    """One invocation of a gateway adapter."""
    reference: str
    gateway: GatewayType
    method: PaymentMethodType
    amount: Decimal
    currency: str
    order_id: str
    started_at: datetime = field(default_factory=utc_now)
    status: PaymentStatus = PaymentStatus.PENDING
    finished_at: Optional[datetime] = None
    error: Optional[PaymentErrorInfo] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != PaymentStatus.PENDING

    def mark(self, status: PaymentStatus, error: Optional[PaymentErrorInfo] = None) -> None:
        self.status = status
        self.error = error
        self.finished_at = utc_now()


@dataclass
class RateLimitState:
    """Failed payment attempts for one customer identity."""
    attempt_count: int = 0
    window_started_at: Optional[float] = None
    blocked_until: Optional[float] = None


@dataclass(frozen=True)
class ActivationTarget:
    """Where the customer completes the payment."""
    kind: ActivationKind
    url: Optional[str] = None
    connector: Optional[str] = None


@dataclass
class GatewayInitResult:
    """Shared result shape of every gateway adapter's initialize()."""
    success: bool
    reference: Optional[str] = None
    activation_target: Optional[ActivationTarget] = None
    message: Optional[str] = None
    error_code: Optional[PaymentErrorCode] = None
    access_code: Optional[str] = None
    payment_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentOutcome:
    """Resolved result of a pending payment."""
    status: OutcomeStatus
    reference: Optional[str] = None
    error: Optional[PaymentErrorInfo] = None
    data: Dict[str, Any] = field(default_factory=dict)


def generate_payment_reference(order_id: str, timestamp_ms: Optional[int] = None) -> str:
    ts = timestamp_ms if timestamp_ms is not None else int(utc_now().timestamp() * 1000)
    return f"PAY_{order_id}_{ts}_{uuid.uuid4().hex[:12]}"
