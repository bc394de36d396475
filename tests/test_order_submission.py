"""Tests for order submission and the payment hand-off."""
import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from storefront_checkout.analytics import CheckoutAnalytics, CheckoutEventType, InMemoryAnalyticsBackend
from storefront_checkout.callbacks import CallbackBroker
from storefront_checkout.coordinator import OrderSubmissionCoordinator, build_order_payload
from storefront_checkout.errors import (
    ErrorAction,
    InvalidSubmissionState,
    SubmissionInProgress,
    make_error_info,
)
from storefront_checkout.gateways import (
    GatewayRegistry,
    PaymentGatewayAdapter,
    WalletConnectGatewayAdapter,
    WalletPayClient,
)
from storefront_checkout.gateways.base import failed_outcome
from storefront_checkout.models import (
    ActivationKind,
    ActivationTarget,
    GatewayInitResult,
    GatewayType,
    OutcomeStatus,
    PaymentErrorCode,
    PaymentMethodChoice,
    PaymentOutcome,
    PaymentStatus,
    SubmissionState,
)
from storefront_checkout.persistence import (
    CheckoutSnapshot,
    InMemoryStorageBackend,
    SessionPersistence,
)
from storefront_checkout.rate_limit import RetryRateLimiter

from checkout_helpers import CUSTOMER_EMAIL, PAGE_ORIGIN, envelope, make_form, request_json

CALLBACK_URL = f"{PAGE_ORIGIN}/checkout/callback"

TOTALS = {
    "subtotal": "120.00",
    "shipping": "0",
    "tax": "9.60",
    "discount": "0",
    "total": "129.60",
    "currency": "NGN",
}

ORDER = {"orderId": "ord-1", "orderNumber": "ORD-0001", "status": "pending"}


def ok_init(reference="PAY_1"):
    return GatewayInitResult(
        success=True,
        reference=reference,
        activation_target=ActivationTarget(kind=ActivationKind.REDIRECT, url="https://checkout.paystack.com/x"),
    )


class ScriptedAdapter(PaymentGatewayAdapter):
    """Returns queued init results and outcomes."""

    gateway = GatewayType.PAYSTACK
    activation = ActivationKind.REDIRECT

    def __init__(self, inits=None, outcomes=None):
        self.inits = list(inits or [ok_init()])
        self.outcomes = list(outcomes or [])
        self.initialized = []
        self.released = 0

    async def initialize(self, order_id, amount, currency, method, customer_identity,
                         callback_target, metadata=None):
        self.initialized.append({
            "order_id": order_id,
            "amount": amount,
            "currency": currency,
            "method": method,
            "identity": customer_identity,
            "callback": callback_target,
            "metadata": metadata,
        })
        return self.inits.pop(0) if len(self.inits) > 1 else self.inits[0]

    async def execute(self, result, broker, timeout=None):
        return self.outcomes.pop(0)

    async def release(self):
        self.released += 1


class PendingWallet(WalletPayClient):
    """A wallet whose payment never settles."""

    def __init__(self):
        self.polls = 0

    async def pay(self, amount, currency, reference, payment_data):
        return "tx-1"

    async def get_status(self, transaction_id):
        self.polls += 1
        return "pending"


class BrokerAdapter(ScriptedAdapter):
    """Waits on the callback broker like a real redirect gateway."""

    async def execute(self, result, broker, timeout=None):
        pending = broker.expect(self.gateway, reference=result.reference)
        try:
            return await pending.wait(timeout or 5)
        finally:
            pending.close()


def checkout_api(requests, valid=True, complete_status=200):
    def handler(request):
        path = request.url.path
        requests.append(path.rsplit("/", 1)[-1])
        if path.endswith("/checkout/validate"):
            body = {"isValid": valid, "errors": [] if valid else ["Item out of stock"]}
            return httpx.Response(200, json=envelope(body))
        if path.endswith("/checkout/calculate"):
            return httpx.Response(200, json=envelope(TOTALS))
        if path.endswith("/checkout/complete"):
            if complete_status != 200:
                return httpx.Response(complete_status, json=envelope(success=False, message="Upstream error"))
            return httpx.Response(200, json=envelope(ORDER))
        return httpx.Response(404)

    return handler


@pytest.fixture
def limiter(clock):
    return RetryRateLimiter(clock=clock)


@pytest.fixture
def requests():
    return []


@pytest.fixture
def analytics_backend():
    return InMemoryAnalyticsBackend()


@pytest.fixture
def storage():
    return InMemoryStorageBackend()


@pytest.fixture
def broker():
    return CallbackBroker(PAGE_ORIGIN)


@pytest.fixture
def build(make_api, limiter, broker, requests, analytics_backend, storage):
    """Coordinator for store-1 with ``adapter`` registered for Paystack."""

    def factory(adapter, registry=None, **api_options):
        registry = registry or GatewayRegistry()
        registry.register(GatewayType.PAYSTACK, adapter)
        api = make_api(checkout_api(requests, **api_options), max_retries=0)
        return OrderSubmissionCoordinator(
            "store-1",
            api,
            registry,
            broker,
            limiter,
            persistence=SessionPersistence("store-1", storage),
            analytics=CheckoutAnalytics(analytics_backend),
            callback_url=CALLBACK_URL,
        )

    return factory


class TestSubmit:
    """Validate, price, create the order, then pay."""

    @pytest.mark.asyncio
    async def test_successful_checkout(self, build, items, requests, storage, limiter, analytics_backend):
        adapter = ScriptedAdapter(outcomes=[PaymentOutcome(OutcomeStatus.SUCCESS, reference="PAY_1")])
        coordinator = build(adapter)
        states = []
        coordinator.subscribe(states.append)
        paid = []
        coordinator.on_success(paid.append)
        await SessionPersistence("store-1", storage).save(CheckoutSnapshot(form_data=make_form()))
        await limiter.record_failure(CUSTOMER_EMAIL)

        state = await coordinator.submit(make_form(), items)

        assert state == SubmissionState.COMPLETED
        assert states == [
            SubmissionState.VALIDATING,
            SubmissionState.CALCULATING_TOTALS,
            SubmissionState.CREATING_ORDER,
            SubmissionState.AWAITING_PAYMENT,
            SubmissionState.COMPLETED,
        ]
        assert requests == ["validate", "calculate", "complete"]
        assert coordinator.order.order_id == "ord-1"
        assert coordinator.current_attempt.status == PaymentStatus.SUCCESS
        assert [o.reference for o in paid] == ["PAY_1"]
        assert await limiter.remaining_attempts(CUSTOMER_EMAIL) == 5
        assert await storage.get("checkout-store-1") is None
        assert analytics_backend.of_type(CheckoutEventType.CONVERSION)

    @pytest.mark.asyncio
    async def test_server_totals_shown_unmodified(self, build, items):
        adapter = ScriptedAdapter(outcomes=[PaymentOutcome(OutcomeStatus.SUCCESS, reference="PAY_1")])
        coordinator = build(adapter)

        await coordinator.submit(make_form(), items)

        totals = coordinator.totals
        assert totals.subtotal + totals.shipping + totals.tax - totals.discount == totals.total
        assert str(totals.total) == "129.60"
        init = adapter.initialized[0]
        assert init["amount"] == Decimal("129.60")
        assert init["currency"] == "NGN"
        assert init["identity"] == CUSTOMER_EMAIL
        assert init["callback"] == CALLBACK_URL
        assert init["metadata"] == {"orderId": "ord-1", "orderNumber": "ORD-0001", "storeId": "store-1"}

    @pytest.mark.asyncio
    async def test_invalid_form_returns_to_idle(self, build, items, requests):
        adapter = ScriptedAdapter()
        coordinator = build(adapter)
        form = make_form()
        form.customer_info.email = ""

        state = await coordinator.submit(form, items)

        assert state == SubmissionState.IDLE
        assert "customerInfo.email" in coordinator.field_errors
        assert requests == []
        assert adapter.initialized == []

    @pytest.mark.asyncio
    async def test_rejected_cart_returns_to_idle(self, build, items, requests):
        coordinator = build(ScriptedAdapter(), valid=False)

        state = await coordinator.submit(make_form(), items)

        assert state == SubmissionState.IDLE
        assert coordinator.errors == ["Item out of stock"]
        assert requests == ["validate"]

    @pytest.mark.asyncio
    async def test_order_creation_failure(self, build, items, analytics_backend):
        adapter = ScriptedAdapter()
        coordinator = build(adapter, complete_status=502)

        state = await coordinator.submit(make_form(), items)

        assert state == SubmissionState.FAILED
        assert coordinator.order is None
        assert coordinator.last_error.code == PaymentErrorCode.GATEWAY_ERROR
        assert coordinator.last_error.retryable
        assert adapter.initialized == []
        assert analytics_backend.of_type(CheckoutEventType.ERROR)[0].properties == {"stage": "creating-order"}

    @pytest.mark.asyncio
    async def test_cannot_resubmit_existing_order(self, build, items):
        coordinator = build(ScriptedAdapter(
            inits=[GatewayInitResult(success=False, message="Card declined", error_code=PaymentErrorCode.CARD_DECLINED)]
        ))
        await coordinator.submit(make_form(), items)

        with pytest.raises(InvalidSubmissionState):
            await coordinator.submit(make_form(), items)


class TestPaymentFailures:
    @pytest.mark.asyncio
    async def test_declined_card_is_counted(self, build, items, limiter):
        adapter = ScriptedAdapter(inits=[GatewayInitResult(
            success=False,
            reference="PAY_1",
            message="Card declined",
            error_code=PaymentErrorCode.CARD_DECLINED,
        )])
        coordinator = build(adapter)

        state = await coordinator.submit(make_form(), items)

        assert state == SubmissionState.FAILED
        attempt = coordinator.current_attempt
        assert attempt.status == PaymentStatus.FAILED
        assert attempt.error.code == PaymentErrorCode.CARD_DECLINED
        assert coordinator.last_error.retryable is True
        assert coordinator.last_error.reference == "PAY_1"
        assert (await limiter.get_state(CUSTOMER_EMAIL)).attempt_count == 1

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, build, items, requests):
        adapter = ScriptedAdapter(
            inits=[
                GatewayInitResult(success=False, reference="PAY_1", error_code=PaymentErrorCode.NETWORK_ERROR),
                ok_init("PAY_2"),
            ],
            outcomes=[PaymentOutcome(OutcomeStatus.SUCCESS, reference="PAY_2")],
        )
        coordinator = build(adapter)
        await coordinator.submit(make_form(), items)

        state = await coordinator.retry_payment()

        assert state == SubmissionState.COMPLETED
        assert [a.reference for a in coordinator.attempts] == ["PAY_1", "PAY_2"]
        assert requests.count("complete") == 1

    @pytest.mark.asyncio
    async def test_blocked_popup_is_not_counted(self, build, items, limiter):
        adapter = ScriptedAdapter(outcomes=[failed_outcome(PaymentErrorCode.POPUP_BLOCKED, reference="PAY_1")])
        coordinator = build(adapter)

        state = await coordinator.submit(make_form(), items)

        assert state == SubmissionState.FAILED
        assert coordinator.last_error.code == PaymentErrorCode.POPUP_BLOCKED
        assert (await limiter.get_state(CUSTOMER_EMAIL)).attempt_count == 0

    @pytest.mark.asyncio
    async def test_rate_limited_before_gateway(self, build, items, limiter):
        for _ in range(5):
            await limiter.record_failure(CUSTOMER_EMAIL)
        adapter = ScriptedAdapter()
        coordinator = build(adapter)

        state = await coordinator.submit(make_form(), items)

        assert state == SubmissionState.FAILED
        assert coordinator.last_error.code == PaymentErrorCode.RATE_LIMITED
        assert coordinator.last_error.retry_after > 0
        assert adapter.initialized == []

        presentation = await coordinator.present_error()
        assert presentation.retry_countdown > 0
        assert ErrorAction.RETRY not in presentation.actions
        assert ErrorAction.CHANGE_METHOD not in presentation.actions

    @pytest.mark.asyncio
    async def test_warns_before_limit(self, build, items, limiter):
        for _ in range(2):
            await limiter.record_failure(CUSTOMER_EMAIL)
        coordinator = build(ScriptedAdapter(
            inits=[GatewayInitResult(success=False, error_code=PaymentErrorCode.CARD_DECLINED)]
        ))

        await coordinator.submit(make_form(), items)

        assert await coordinator.should_warn()

    @pytest.mark.asyncio
    async def test_unregistered_gateway(self, build, items):
        coordinator = build(ScriptedAdapter())
        form = make_form()
        form.payment_method.gateway = "flutterwave"

        state = await coordinator.submit(form, items)

        assert state == SubmissionState.FAILED
        assert coordinator.last_error.code == PaymentErrorCode.GATEWAY_ERROR
        assert coordinator.last_error.retryable is False
        assert coordinator.attempts == []

    @pytest.mark.asyncio
    async def test_wallet_gateway_rejected_before_initialize(self, build, items):
        adapter = ScriptedAdapter()
        coordinator = build(adapter)
        form = make_form()
        form.payment_method.type = "wallet"
        form.payment_method.gateway = "wallet"

        state = await coordinator.submit(form, items)

        assert state == SubmissionState.FAILED
        assert coordinator.last_error.message == "Payment gateway wallet is not supported"
        assert adapter.initialized == []


class TestPaymentMethods:
    @pytest.mark.asyncio
    async def test_change_payment_method(self, build, items):
        flutterwave = ScriptedAdapter(outcomes=[PaymentOutcome(OutcomeStatus.SUCCESS, reference="PAY_2")])
        registry = GatewayRegistry()
        registry.register(GatewayType.FLUTTERWAVE, flutterwave)
        coordinator = build(
            ScriptedAdapter(inits=[GatewayInitResult(success=False, error_code=PaymentErrorCode.CARD_DECLINED)]),
            registry=registry,
        )
        await coordinator.submit(make_form(), items)

        state = await coordinator.change_payment_method("bank_transfer", "flutterwave")

        assert state == SubmissionState.COMPLETED
        assert coordinator.current_attempt.gateway == GatewayType.FLUTTERWAVE
        assert flutterwave.initialized[0]["method"].value == "bank_transfer"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [
        PaymentErrorCode.FRAUD_DETECTED,
        PaymentErrorCode.INVALID_CARD,
        PaymentErrorCode.CURRENCY_NOT_SUPPORTED,
    ])
    async def test_no_retry_without_changing_method(self, build, items, code):
        adapter = ScriptedAdapter(inits=[GatewayInitResult(success=False, reference="PAY_1", error_code=code)])
        flutterwave = ScriptedAdapter(outcomes=[PaymentOutcome(OutcomeStatus.SUCCESS, reference="PAY_2")])
        registry = GatewayRegistry()
        registry.register(GatewayType.FLUTTERWAVE, flutterwave)
        coordinator = build(adapter, registry=registry)
        await coordinator.submit(make_form(), items)

        with pytest.raises(InvalidSubmissionState):
            await coordinator.retry_payment()
        assert len(adapter.initialized) == 1
        assert coordinator.state == SubmissionState.FAILED

        assert await coordinator.change_payment_method("card", "flutterwave") == SubmissionState.COMPLETED

    @pytest.mark.asyncio
    async def test_blocked_popup_can_be_retried(self, build, items):
        adapter = ScriptedAdapter(outcomes=[
            failed_outcome(PaymentErrorCode.POPUP_BLOCKED, reference="PAY_1"),
            PaymentOutcome(OutcomeStatus.SUCCESS, reference="PAY_1"),
        ])
        coordinator = build(adapter)
        await coordinator.submit(make_form(), items)
        assert coordinator.last_error.retryable is False

        assert await coordinator.retry_payment() == SubmissionState.COMPLETED

    @pytest.mark.asyncio
    async def test_server_rate_limit_waits_for_cool_down(self, build, items):
        adapter = ScriptedAdapter(outcomes=[
            PaymentOutcome(
                OutcomeStatus.FAILED,
                reference="PAY_1",
                error=make_error_info(PaymentErrorCode.RATE_LIMITED, details={"retry_after": 60}),
            ),
            PaymentOutcome(OutcomeStatus.SUCCESS, reference="PAY_1"),
        ])
        coordinator = build(adapter)
        await coordinator.submit(make_form(), items)
        failed_at = coordinator.last_error.timestamp

        with pytest.raises(InvalidSubmissionState):
            await coordinator.retry_payment(now=failed_at + timedelta(seconds=30))

        state = await coordinator.retry_payment(now=failed_at + timedelta(seconds=61))
        assert state == SubmissionState.COMPLETED

    @pytest.mark.asyncio
    async def test_retry_without_order(self, build):
        coordinator = build(ScriptedAdapter())
        with pytest.raises(InvalidSubmissionState):
            await coordinator.retry_payment()

    @pytest.mark.asyncio
    async def test_retry_after_completion(self, build, items):
        coordinator = build(ScriptedAdapter(outcomes=[PaymentOutcome(OutcomeStatus.SUCCESS, reference="PAY_1")]))
        await coordinator.submit(make_form(), items)
        with pytest.raises(InvalidSubmissionState):
            await coordinator.retry_payment()


class TestConcurrency:
    """One submission or payment at a time."""

    async def _awaiting(self, coordinator, items):
        task = asyncio.create_task(coordinator.submit(make_form(), items))
        for _ in range(100):
            if coordinator.state == SubmissionState.AWAITING_PAYMENT and coordinator.attempts:
                break
            await asyncio.sleep(0.01)
        return task

    @pytest.mark.asyncio
    async def test_second_submit_rejected(self, build, broker, items):
        coordinator = build(BrokerAdapter())
        task = await self._awaiting(coordinator, items)

        assert coordinator.is_pending
        with pytest.raises(SubmissionInProgress):
            await coordinator.submit(make_form(), items)
        with pytest.raises(SubmissionInProgress):
            await coordinator.retry_payment()

        broker.post_message(
            {"type": "paystack_callback", "reference": "PAY_1", "status": "success"}, PAGE_ORIGIN
        )
        assert await task == SubmissionState.COMPLETED
        assert not coordinator.is_pending

    @pytest.mark.asyncio
    async def test_cancel_is_not_counted(self, build, items, limiter):
        adapter = BrokerAdapter()
        coordinator = build(adapter)
        task = await self._awaiting(coordinator, items)

        assert await coordinator.cancel_payment() is True
        state = await task

        assert state == SubmissionState.AWAITING_PAYMENT
        assert coordinator.current_attempt.status == PaymentStatus.CANCELLED
        assert coordinator.last_error is None
        assert adapter.released == 1
        assert (await limiter.get_state(CUSTOMER_EMAIL)).attempt_count == 0

    @pytest.mark.asyncio
    async def test_cancel_stops_wallet_polling(self, build, items, limiter):
        wallet = PendingWallet()
        api = Mock()
        api.initialize_payment = AsyncMock(return_value={"success": True, "reference": "PAY_W"})
        registry = GatewayRegistry()
        registry.register(GatewayType.BASEPAY, WalletConnectGatewayAdapter(api, wallet, poll_interval=0.01))
        coordinator = build(ScriptedAdapter(), registry=registry)
        form = make_form(payment_method=PaymentMethodChoice(type="basepay", gateway="basepay"))

        task = asyncio.create_task(coordinator.submit(form, items))
        for _ in range(100):
            if wallet.polls >= 2:
                break
            await asyncio.sleep(0.01)

        assert await coordinator.cancel_payment() is True
        state = await asyncio.wait_for(task, 1)
        polls = wallet.polls
        await asyncio.sleep(0.05)

        assert wallet.polls == polls
        assert state == SubmissionState.AWAITING_PAYMENT
        assert coordinator.current_attempt.reference == "PAY_W"
        assert coordinator.current_attempt.status == PaymentStatus.CANCELLED
        assert coordinator.last_error is None
        assert (await limiter.get_state(CUSTOMER_EMAIL)).attempt_count == 0

    @pytest.mark.asyncio
    async def test_foreign_callback_leaves_attempt_pending(self, build, broker, items):
        coordinator = build(BrokerAdapter())
        task = await self._awaiting(coordinator, items)

        broker.post_message(
            {"type": "paystack_callback", "reference": "PAY_1", "status": "success"},
            "https://evil.example.com",
        )
        await asyncio.sleep(0.01)
        assert coordinator.current_attempt.status == PaymentStatus.PENDING
        assert not task.done()

        await coordinator.cancel_payment()
        await task


class TestOrderPayload:
    def test_shape(self, items):
        payload = build_order_payload("store-1", make_form(special_instructions="Leave at gate"), items)
        assert payload == {
            "storeId": "store-1",
            "items": [{"productId": "prod-1", "quantity": 2, "unitPrice": "60.00"}],
            "customerInfo": {
                "name": "Ada Obi",
                "email": CUSTOMER_EMAIL,
                "phone": "08012345678",
                "isGuest": True,
            },
            "shippingAddress": {
                "fullName": "Ada Obi",
                "address": "12 Marina Road",
                "city": "Lagos",
                "state": "Lagos",
                "postalCode": "101001",
                "country": "NG",
            },
            "paymentMethod": {"type": "CARD", "gateway": "paystack"},
            "specialInstructions": "Leave at gate",
        }

    @pytest.mark.asyncio
    async def test_sent_with_idempotency_key(self, make_api, items):
        seen = []

        def handler(request):
            seen.append((request.headers.get("Idempotency-Key"), request_json(request)))
            return httpx.Response(200, json=envelope(ORDER))

        api = make_api(handler)
        payload = build_order_payload("store-1", make_form(), items)
        await api.complete_checkout(payload)
        await api.complete_checkout(payload)

        assert seen[0][0] and seen[0][0] == seen[1][0]
        assert seen[0][1] == payload
