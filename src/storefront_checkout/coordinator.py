"""
Order submission and payment hand-off.

OrderSubmissionCoordinator runs the review step's submit: validate the cart,
fetch authoritative totals, create the order, then drive the selected
payment gateway until the callback resolves it.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from storefront_checkout.analytics import CheckoutAnalytics
from storefront_checkout.callbacks import CallbackBroker
from storefront_checkout.errors import (
    CheckoutApiError,
    ErrorPresentation,
    InvalidSubmissionState,
    PaymentError,
    SubmissionInProgress,
    UnsupportedGateway,
    is_retryable_now,
    make_error_info,
    present_error,
)
from storefront_checkout.gateways.base import PaymentGatewayAdapter
from storefront_checkout.gateways.registry import GatewayRegistry
from storefront_checkout.logging_config import bind_checkout_context
from storefront_checkout.models import (
    DEFAULT_COUNTRY,
    CheckoutFormData,
    CheckoutItem,
    GatewayType,
    OrderConfirmation,
    OrderTotals,
    OutcomeStatus,
    PaymentAttempt,
    PaymentErrorCode,
    PaymentErrorInfo,
    PaymentMethodType,
    PaymentOutcome,
    PaymentStatus,
    SubmissionState,
    generate_payment_reference,
)
from storefront_checkout.persistence import SessionPersistence
from storefront_checkout.pricing import PricingCoordinator
from storefront_checkout.rate_limit import RetryRateLimiter
from storefront_checkout.validation import PaymentValidator, ValidationGate

logger = logging.getLogger(__name__)

StateListener = Callable[[SubmissionState], None]
SuccessListener = Callable[[PaymentOutcome], Any]

# Payment type identifiers expected by POST /checkout/complete.
ORDER_PAYMENT_TYPES = {
    PaymentMethodType.CARD: "CARD",
    PaymentMethodType.BANK_TRANSFER: "BANK_TRANSFER",
    PaymentMethodType.WALLET: "WALLET",
    PaymentMethodType.BASEPAY: "BASEPAY",
}

# Outcomes that are the customer's choice and never count against the limiter.
_NOT_COUNTED = frozenset({PaymentErrorCode.POPUP_BLOCKED})


def build_order_payload(
    store_id: str,
    form_data: CheckoutFormData,
    items: List[CheckoutItem],
) -> Dict[str, Any]:
    """Shape the form into the order creation request."""
    customer = form_data.customer_info
    address = form_data.shipping_address
    method = PaymentMethodType(form_data.payment_method.type)
    return {
        "storeId": store_id,
        "items": [item.to_dict() for item in items],
        "customerInfo": {
            "name": customer.full_name,
            "email": customer.email,
            "phone": customer.phone,
            "isGuest": customer.is_guest,
        },
        "shippingAddress": {
            "fullName": address.full_name,
            "address": address.address,
            "city": address.city,
            "state": address.state,
            "postalCode": address.postal_code or "",
            "country": DEFAULT_COUNTRY,
        },
        "paymentMethod": {
            "type": ORDER_PAYMENT_TYPES[method],
            "gateway": form_data.payment_method.gateway,
        },
        "specialInstructions": form_data.special_instructions,
    }


class OrderSubmissionCoordinator:
    """
    Sequences order submission and payment for one checkout.

    States move strictly forward:
    idle -> validating -> calculating-totals -> creating-order ->
    awaiting-payment -> completed | failed.

    Totals are never requested before validation succeeds, and no gateway is
    invoked before an order exists. Only one submission or payment runs at a
    time; a second request while one is pending raises SubmissionInProgress.
    """

    def __init__(
        self,
        store_id: str,
        api: Any,
        registry: GatewayRegistry,
        broker: CallbackBroker,
        limiter: RetryRateLimiter,
        pricing: Optional[PricingCoordinator] = None,
        gate: Optional[ValidationGate] = None,
        validator: Optional[PaymentValidator] = None,
        persistence: Optional[SessionPersistence] = None,
        analytics: Optional[CheckoutAnalytics] = None,
        callback_url: str = "",
        callback_timeout: Optional[float] = None,
    ):
        self.store_id = str(store_id)
        self._api = api
        self._registry = registry
        self._broker = broker
        self._limiter = limiter
        self._pricing = pricing or PricingCoordinator(api, self.store_id)
        self._gate = gate or ValidationGate()
        self._validator = validator or PaymentValidator()
        self._persistence = persistence
        self._analytics = analytics
        self.callback_url = callback_url
        self.callback_timeout = callback_timeout

        self._state = SubmissionState.IDLE
        self._pending = False
        self._form: Optional[CheckoutFormData] = None
        self._adapter: Optional[PaymentGatewayAdapter] = None
        self.order: Optional[OrderConfirmation] = None
        self.field_errors: Dict[str, str] = {}
        self.errors: List[str] = []
        self.last_error: Optional[PaymentErrorInfo] = None
        self.attempts: List[PaymentAttempt] = []

        self._state_listeners: List[StateListener] = []
        self._success_listeners: List[SuccessListener] = []

    @property
    def state(self) -> SubmissionState:
        return self._state

    @property
    def is_pending(self) -> bool:
        return self._pending

    @property
    def totals(self) -> Optional[OrderTotals]:
        return self._pricing.totals

    @property
    def current_attempt(self) -> Optional[PaymentAttempt]:
        return self.attempts[-1] if self.attempts else None

    @property
    def customer_identity(self) -> str:
        return self._form.customer_info.email if self._form else ""

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._state_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return unsubscribe

    def on_success(self, listener: SuccessListener) -> None:
        self._success_listeners.append(listener)

    def _set_state(self, state: SubmissionState) -> None:
        if state == self._state:
            return
        logger.debug(f"Submission for store {self.store_id}: {self._state.value} -> {state.value}")
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Submission listener failed: {e}")

    def _begin(self) -> None:
        if self._pending:
            raise SubmissionInProgress()
        self._pending = True

    async def submit(
        self,
        form_data: CheckoutFormData,
        items: List[CheckoutItem],
        coupon_code: Optional[str] = None,
    ) -> SubmissionState:
        """
        Submit the order and hand off to payment.

        Flow:
        1. Validate every step of the form, then the cart on the server
        2. Fetch authoritative totals
        3. Create the order (resubmitting an identical payload is idempotent)
        4. Initialize and run the selected gateway

        Validation errors return to idle. API failures end in failed with a
        PaymentErrorInfo in last_error. Returns the resulting state.
        """
        self._begin()
        try:
            if self.order is not None:
                raise InvalidSubmissionState(
                    f"Order {self.order.order_id} already exists; retry the payment instead"
                )
            self._form = form_data
            self.field_errors = {}
            self.errors = []
            self.last_error = None
            address = form_data.shipping_address.to_dict()

            self._set_state(SubmissionState.VALIDATING)
            result = self._gate.validate_all(form_data)
            if not result.ok:
                self.field_errors = dict(result.errors)
                self._set_state(SubmissionState.IDLE)
                return self._state

            try:
                validation = await self._pricing.validate(items, address, coupon_code)
                if not validation.is_valid:
                    self.errors = list(validation.errors) or ["Checkout validation failed"]
                    self._set_state(SubmissionState.IDLE)
                    return self._state

                self._set_state(SubmissionState.CALCULATING_TOTALS)
                totals = await self._pricing.calculate(items, address, coupon_code)

                self._set_state(SubmissionState.CREATING_ORDER)
                payload = build_order_payload(self.store_id, form_data, items)
                self.order = await self._api.complete_checkout(payload)
            except CheckoutApiError as e:
                logger.warning(f"Order submission failed during {self._state.value}: {e}")
                if self._analytics:
                    await self._analytics.track_error(self.store_id, self._state.value, e.message)
                self.last_error = PaymentError.from_api_error(e).to_info()
                self._set_state(SubmissionState.FAILED)
                return self._state

            bind_checkout_context(store_id=self.store_id, order_id=self.order.order_id)
            logger.info(
                f"Order {self.order.order_id} created for store {self.store_id}, "
                f"total {totals.total} {totals.currency}"
            )
            self._set_state(SubmissionState.AWAITING_PAYMENT)
            return await self._pay()
        finally:
            self._pending = False

    async def retry_payment(self, now: Optional[datetime] = None) -> SubmissionState:
        """
        Run the current payment method again for the existing order.

        Refused while the last failure is not retryable yet. A blocked popup
        may be retried once the customer allows popups. Any other
        non-retryable failure needs change_payment_method.
        """
        self._require_order()
        error = self.last_error
        if (
            error is not None
            and error.code != PaymentErrorCode.POPUP_BLOCKED
            and not is_retryable_now(error, now)
        ):
            raise InvalidSubmissionState(
                f"Payment for order {self.order.order_id} cannot be retried after {error.code.value}"
            )
        self._begin()
        try:
            self._set_state(SubmissionState.AWAITING_PAYMENT)
            return await self._pay()
        finally:
            self._pending = False

    async def change_payment_method(
        self,
        method: PaymentMethodType | str,
        gateway: GatewayType | str,
    ) -> SubmissionState:
        """Switch method/gateway and pay for the existing order with it."""
        self._require_order()
        self._begin()
        try:
            self._form.payment_method.type = PaymentMethodType(method).value
            self._form.payment_method.gateway = GatewayType(gateway).value
            self._set_state(SubmissionState.AWAITING_PAYMENT)
            return await self._pay()
        finally:
            self._pending = False

    async def cancel_payment(self) -> bool:
        """
        Dismiss the in-flight payment and free whatever its adapter holds.

        Returns True if a payment was still pending. Its attempt then settles
        as cancelled without counting against the retry limit.
        """
        attempt = self.current_attempt
        in_flight = attempt is not None and not attempt.is_terminal
        if in_flight:
            self._broker.cancel(attempt.reference)
        if self._adapter is not None:
            await self._adapter.release()
        return in_flight

    def _require_order(self) -> None:
        if self.order is None or self._form is None:
            raise InvalidSubmissionState("No order to pay for; submit the checkout first")
        if self._state == SubmissionState.COMPLETED:
            raise InvalidSubmissionState(f"Order {self.order.order_id} is already paid")

    def _fail(self, error: PaymentErrorInfo) -> SubmissionState:
        self.last_error = error
        self._set_state(SubmissionState.FAILED)
        return self._state

    async def _pay(self) -> SubmissionState:
        order, totals, form = self.order, self._pricing.totals, self._form
        identity = form.customer_info.email
        method = form.payment_method.type
        gateway = form.payment_method.gateway

        if not await self._limiter.can_attempt(identity):
            remaining = await self._limiter.get_remaining_time(identity)
            logger.warning(f"Payment for order {order.order_id} refused, retry limit reached")
            return self._fail(make_error_info(
                PaymentErrorCode.RATE_LIMITED,
                details={"retry_after": remaining},
            ))

        amount = totals.total if totals else Decimal("0")
        currency = totals.currency if totals else ""
        validation = self._validator.validate_payment(order.order_id, amount, currency, method, gateway)
        if not validation.ok:
            return self._fail(make_error_info(
                validation.error_code or PaymentErrorCode.UNKNOWN_ERROR,
                message="; ".join(validation.errors),
                retryable=False,
            ))

        try:
            adapter = self._registry.get(gateway, method)
        except UnsupportedGateway as e:
            return self._fail(make_error_info(PaymentErrorCode.GATEWAY_ERROR, message=e.message, retryable=False))
        self._adapter = adapter

        init = await adapter.initialize(
            order.order_id,
            amount,
            currency,
            PaymentMethodType(method),
            identity,
            self.callback_url,
            metadata={"orderId": order.order_id, "orderNumber": order.order_number, "storeId": self.store_id},
        )
        reference = init.reference or order.payment_reference or generate_payment_reference(order.order_id)
        attempt = PaymentAttempt(
            reference=reference,
            gateway=GatewayType(gateway),
            method=PaymentMethodType(method),
            amount=amount,
            currency=currency,
            order_id=order.order_id,
        )
        self.attempts.append(attempt)
        bind_checkout_context(payment_reference=reference)
        if self._analytics:
            await self._analytics.track_payment_attempt(self.store_id, attempt)

        if not init.success:
            outcome = PaymentOutcome(
                OutcomeStatus.FAILED,
                reference=reference,
                error=make_error_info(
                    init.error_code or PaymentErrorCode.UNKNOWN_ERROR,
                    message=init.message,
                    reference=reference,
                ),
            )
        else:
            outcome = await adapter.execute(init, self._broker, self.callback_timeout)
        return await self._settle(attempt, outcome, identity)

    async def _settle(self, attempt: PaymentAttempt, outcome: PaymentOutcome, identity: str) -> SubmissionState:
        if outcome.status == OutcomeStatus.SUCCESS:
            attempt.mark(PaymentStatus.SUCCESS)
            await self._limiter.reset(identity)
            self.last_error = None
            logger.info(f"Payment {attempt.reference} for order {attempt.order_id} succeeded")
            self._set_state(SubmissionState.COMPLETED)
            for listener in list(self._success_listeners):
                try:
                    listener(outcome)
                except Exception as e:
                    logger.error(f"Payment success listener failed: {e}")
            if self._persistence is not None:
                await self._persistence.clear()
            if self._analytics:
                await self._analytics.track_payment_result(self.store_id, attempt)
                await self._analytics.track_conversion(self.store_id, attempt.order_id, self.totals)
            return self._state

        if outcome.status in (OutcomeStatus.CANCELLED, OutcomeStatus.ABANDONED):
            attempt.mark(PaymentStatus.CANCELLED)
            logger.info(f"Payment {attempt.reference} {outcome.status.value} by customer")
            if self._analytics:
                await self._analytics.track_payment_result(self.store_id, attempt)
            return self._state

        error = outcome.error or make_error_info(PaymentErrorCode.UNKNOWN_ERROR, reference=attempt.reference)
        if error.reference is None:
            error.reference = attempt.reference
        attempt.mark(PaymentStatus.FAILED, error)
        if error.code not in _NOT_COUNTED:
            state = await self._limiter.record_failure(identity)
            logger.info(
                f"Payment {attempt.reference} failed ({error.code.value}), "
                f"{state.attempt_count} failed attempt(s) in window"
            )
        if self._analytics:
            await self._analytics.track_payment_result(self.store_id, attempt, error)
        return self._fail(error)

    async def present_error(self, now: Optional[datetime] = None) -> Optional[ErrorPresentation]:
        """User-facing view of the last payment failure, with limiter-aware retry."""
        if self.last_error is None:
            return None
        remaining = await self._limiter.remaining_attempts(self.customer_identity)
        return present_error(
            self.last_error,
            retry_count=self._limiter.max_attempts - remaining,
            max_retries=self._limiter.max_attempts,
            now=now,
        )

    async def should_warn(self) -> bool:
        return await self._limiter.should_warn(self.customer_identity)
