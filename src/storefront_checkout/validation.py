"""
Per-step form validation and pre-payment checks.

Each wizard step owns a pydantic schema that covers only its own section of
the form. Validation is synchronous, never touches the network and never
raises: it returns a StepValidation with field-level messages keyed by the
dotted form path.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Literal, Optional, Pattern, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from storefront_checkout.config import PaymentRules
from storefront_checkout.models import CheckoutFormData, CheckoutStep, PaymentErrorCode

logger = logging.getLogger(__name__)

EMAIL_PATTERN: Pattern[str] = re.compile(
    r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
)


class _StepSchema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )


class CustomerInfoSchema(_StepSchema):
    is_guest: bool = True
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str
    phone: str = Field(min_length=10)
    create_account: Optional[bool] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        if not EMAIL_PATTERN.match(v):
            raise ValueError("invalid email")
        return v


class ShippingAddressSchema(_StepSchema):
    full_name: str = Field(min_length=1)
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    postal_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None


class PaymentMethodSchema(_StepSchema):
    type: Literal["card", "bank_transfer", "wallet", "basepay"]
    gateway: Literal["paystack", "flutterwave", "basepay", "wallet"]


# Step -> (form section, schema). The review step has no blocking schema.
STEP_SCHEMAS: Dict[CheckoutStep, tuple] = {
    CheckoutStep.CUSTOMER_INFO: ("customerInfo", CustomerInfoSchema),
    CheckoutStep.SHIPPING_ADDRESS: ("shippingAddress", ShippingAddressSchema),
    CheckoutStep.PAYMENT_METHOD: ("paymentMethod", PaymentMethodSchema),
}

FIELD_MESSAGES: Dict[str, str] = {
    "customerInfo.firstName": "First name is required",
    "customerInfo.lastName": "Last name is required",
    "customerInfo.email": "Valid email is required",
    "customerInfo.phone": "Valid phone number is required",
    "shippingAddress.fullName": "Full name is required",
    "shippingAddress.address": "Address is required",
    "shippingAddress.city": "City is required",
    "shippingAddress.state": "State is required",
    "paymentMethod.type": "Please select a payment method",
    "paymentMethod.gateway": "Please select a payment gateway",
}


@dataclass
class StepValidation:
    """Outcome of validating one step."""
    ok: bool
    errors: Dict[str, str] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.ok


class ValidationGate:
    """Validates the current step's slice of the form data."""

    def __init__(self, schemas: Optional[Dict[CheckoutStep, tuple]] = None):
        self._schemas = dict(STEP_SCHEMAS if schemas is None else schemas)

    def validate(self, step: CheckoutStep, form_data: CheckoutFormData) -> StepValidation:
        entry = self._schemas.get(CheckoutStep(step))
        if entry is None:
            return StepValidation(ok=True)

        section, schema = entry
        payload = form_data.to_dict().get(section) or {}
        return self._run(section, schema, payload)

    @staticmethod
    def _run(section: str, schema: Type[BaseModel], payload: Dict[str, Any]) -> StepValidation:
        try:
            schema.model_validate(payload)
        except ValidationError as e:
            errors: Dict[str, str] = {}
            for err in e.errors():
                loc = ".".join(str(part) for part in err.get("loc", ()))
                path = f"{section}.{loc}" if loc else section
                errors.setdefault(path, FIELD_MESSAGES.get(path, err.get("msg", "Invalid value")))
            logger.debug(f"Validation failed for {section}: {sorted(errors)}")
            return StepValidation(ok=False, errors=errors)
        return StepValidation(ok=True)

    def validate_all(self, form_data: CheckoutFormData) -> StepValidation:
        errors: Dict[str, str] = {}
        for step in self._schemas:
            errors.update(self.validate(step, form_data).errors)
        return StepValidation(ok=not errors, errors=errors)


@dataclass
class PaymentValidation:
    ok: bool
    errors: List[str] = field(default_factory=list)
    error_code: Optional[PaymentErrorCode] = None


class PaymentValidator:
    """Checks amount, currency, method and gateway before a gateway is called."""

    def __init__(self, rules: Optional[PaymentRules] = None):
        self.rules = rules or PaymentRules()

    def validate_amount(self, amount: Any) -> Optional[str]:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            return "Amount must be a valid number"
        if not value.is_finite():
            return "Amount must be a valid number"
        if value < Decimal(str(self.rules.min_amount)):
            return f"Amount must be at least {self.rules.min_amount:,.2f}"
        if value > Decimal(str(self.rules.max_amount)):
            return f"Amount cannot exceed {self.rules.max_amount:,.2f}"
        return None

    def validate_payment(
        self,
        order_id: Optional[str],
        amount: Any,
        currency: str,
        method: str,
        gateway: str,
    ) -> PaymentValidation:
        errors: List[str] = []
        code: Optional[PaymentErrorCode] = None

        if not order_id:
            errors.append("Valid order ID is required")

        amount_error = self.validate_amount(amount)
        if amount_error:
            errors.append(amount_error)
            if amount_error.startswith("Amount cannot exceed"):
                code = PaymentErrorCode.AMOUNT_TOO_LARGE

        if not currency:
            errors.append("Currency is required")
        elif currency.upper() not in self.rules.allowed_currencies:
            errors.append(f"Currency {currency} is not supported")
            code = code or PaymentErrorCode.CURRENCY_NOT_SUPPORTED

        if not method:
            errors.append("Payment method is required")
        elif method.lower() not in self.rules.allowed_methods:
            errors.append(f"Payment method {method} is not supported")

        if not gateway:
            errors.append("Payment gateway is required")
        elif gateway.lower() not in self.rules.allowed_gateways:
            errors.append(f"Payment gateway {gateway} is not supported")

        if errors and code is None:
            code = PaymentErrorCode.UNKNOWN_ERROR
        return PaymentValidation(ok=not errors, errors=errors, error_code=code)
