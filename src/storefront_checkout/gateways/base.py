"""
Payment gateway adapter interface.

Every gateway is driven through the same two calls: initialize() returns a
GatewayInitResult, execute() hands control to the customer and resolves a
PaymentOutcome. The orchestrator picks an adapter by gateway identifier and
never branches on which one it got.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlsplit

from storefront_checkout.callbacks import CallbackBroker
from storefront_checkout.errors import (
    CheckoutApiError,
    PaymentError,
    classify_failure,
    make_error_info,
)
from storefront_checkout.models import (
    ActivationKind,
    ActivationTarget,
    GatewayInitResult,
    GatewayType,
    OutcomeStatus,
    PaymentErrorCode,
    PaymentMethodType,
    PaymentOutcome,
)

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_DOMAINS = (
    "checkout.paystack.com",
    "api.paystack.co",
    "checkout.flutterwave.com",
    "api.flutterwave.com",
    "basepay.app",
    "api.basepay.app",
    "localhost",
)

# Method identifiers expected by POST /payments/initialize.
METHOD_WIRE_NAMES = {
    PaymentMethodType.CARD: "CARD",
    PaymentMethodType.BANK_TRANSFER: "BANK_TRANSFER",
    PaymentMethodType.WALLET: "WALLET",
    PaymentMethodType.BASEPAY: "WALLET",
}

_UNSAFE_CHARS = re.compile(r"[<>\"'&]")


def sanitize_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep only scalar values and strip markup characters from strings."""
    sanitized: Dict[str, Any] = {}
    for key, value in (metadata or {}).items():
        if isinstance(value, str):
            sanitized[key] = _UNSAFE_CHARS.sub("", value)
        elif isinstance(value, (bool, int, float)):
            sanitized[key] = value
    return sanitized


def validate_payment_url(url: str, allowed_domains: Sequence[str] = DEFAULT_ALLOWED_DOMAINS) -> bool:
    """True for http(s) URLs on a known gateway host (or a subdomain of one)."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if parts.scheme not in ("http", "https"):
        return False
    hostname = (parts.hostname or "").lower()
    if not hostname:
        return False
    return any(hostname == d or hostname.endswith(f".{d}") for d in allowed_domains)


class PaymentGatewayAdapter(ABC):
    """Abstract interface every payment gateway implements."""

    gateway: GatewayType
    activation: ActivationKind

    @abstractmethod
    async def initialize(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        method: PaymentMethodType,
        customer_identity: str,
        callback_target: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayInitResult:
        """Create the payment with the gateway. Never raises for gateway failures."""
        pass

    @abstractmethod
    async def execute(
        self,
        result: GatewayInitResult,
        broker: CallbackBroker,
        timeout: Optional[float] = None,
    ) -> PaymentOutcome:
        """Hand control to the customer and wait for the authoritative outcome."""
        pass

    async def release(self) -> None:
        """Free anything still held (popups, polling tasks). Safe to call twice."""
        return None


class ApiInitializedAdapter(PaymentGatewayAdapter):
    """Shared initialize() for gateways created through POST /payments/initialize."""

    requires_activation_url = True

    def __init__(
        self,
        api: Any,
        allowed_domains: Sequence[str] = DEFAULT_ALLOWED_DOMAINS,
    ):
        self._api = api
        self._allowed_domains: List[str] = list(allowed_domains)

    def _failure(
        self,
        message: str,
        code: PaymentErrorCode,
        reference: Optional[str] = None,
    ) -> GatewayInitResult:
        logger.warning(f"{self.gateway.value} initialization failed ({code.value}): {message}")
        return GatewayInitResult(success=False, reference=reference, message=message, error_code=code)

    async def initialize(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        method: PaymentMethodType,
        customer_identity: str,
        callback_target: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayInitResult:
        method = PaymentMethodType(method)
        payload = {
            "orderId": order_id,
            "amount": float(amount),
            "currency": currency,
            "method": METHOD_WIRE_NAMES[method],
            "gateway": self.gateway.value.upper(),
            "callbackUrl": callback_target,
            "metadata": sanitize_metadata({
                **(metadata or {}),
                "customerEmail": customer_identity,
                "paymentMethod": method.value,
            }),
        }

        try:
            data = await self._api.initialize_payment(payload) or {}
        except CheckoutApiError as e:
            error = PaymentError.from_api_error(e)
            return self._failure(error.message, error.error_code)

        reference = data.get("reference")
        if not data.get("success", False) or not reference:
            message = data.get("message") or "Payment initialization failed"
            return self._failure(message, classify_failure(data.get("code"), message), reference)

        url = data.get("authorizationUrl")
        if url and not validate_payment_url(url, self._allowed_domains):
            return self._failure("Invalid payment gateway URL", PaymentErrorCode.GATEWAY_ERROR, reference)
        if self.requires_activation_url and not url:
            return self._failure(
                "Gateway did not return an authorization URL", PaymentErrorCode.GATEWAY_ERROR, reference
            )

        return GatewayInitResult(
            success=True,
            reference=reference,
            activation_target=self._activation_target(url),
            message=data.get("message"),
            access_code=data.get("accessCode"),
            payment_data=sanitize_metadata(data.get("paymentData")),
        )

    def _activation_target(self, url: Optional[str]) -> ActivationTarget:
        return ActivationTarget(kind=self.activation, url=url)


def failed_outcome(
    code: PaymentErrorCode,
    message: Optional[str] = None,
    reference: Optional[str] = None,
) -> PaymentOutcome:
    return PaymentOutcome(
        OutcomeStatus.FAILED,
        reference=reference,
        error=make_error_info(code, message=message, reference=reference),
    )
