"""Tests for checkout funnel analytics."""
import logging
from decimal import Decimal

import pytest

from storefront_checkout.analytics import (
    AnalyticsBackend,
    CheckoutAnalytics,
    CheckoutEventType,
    InMemoryAnalyticsBackend,
    LoggingAnalyticsBackend,
)
from storefront_checkout.errors import make_error_info
from storefront_checkout.models import (
    CheckoutStep,
    GatewayType,
    OrderTotals,
    PaymentAttempt,
    PaymentErrorCode,
    PaymentMethodType,
    PaymentStatus,
)


class BrokenBackend(AnalyticsBackend):
    async def publish(self, event):
        raise ConnectionError("collector down")


def make_attempt():
    return PaymentAttempt(
        reference="PAY_1",
        gateway=GatewayType.PAYSTACK,
        method=PaymentMethodType.CARD,
        amount=Decimal("132.10"),
        currency="NGN",
        order_id="ord-1",
    )


@pytest.fixture
def backend():
    return InMemoryAnalyticsBackend()


@pytest.fixture
def analytics(backend):
    return CheckoutAnalytics(backend)


class TestFunnel:
    @pytest.mark.asyncio
    async def test_step_events(self, analytics, backend):
        await analytics.track_step("store-1", CheckoutStep.CUSTOMER_INFO, "enter")
        await analytics.track_step("store-1", "customer-info", "complete")

        events = backend.of_type(CheckoutEventType.FUNNEL_STEP)
        assert [e.properties["action"] for e in events] == ["enter", "complete"]
        assert {e.step for e in events} == {"customer-info"}

    @pytest.mark.asyncio
    async def test_validation_errors_record_fields_only(self, analytics, backend):
        await analytics.track_validation_errors("store-1", CheckoutStep.CUSTOMER_INFO, {
            "customerInfo.phone": "Valid phone number is required",
            "customerInfo.email": "Valid email is required",
        })
        event = backend.events[0]
        assert event.event_type == CheckoutEventType.VALIDATION_ERROR
        assert event.properties == {"fields": ["customerInfo.email", "customerInfo.phone"]}


class TestPayments:
    @pytest.mark.asyncio
    async def test_attempt_and_result(self, analytics, backend):
        attempt = make_attempt()
        await analytics.track_payment_attempt("store-1", attempt)

        error = make_error_info(PaymentErrorCode.CARD_DECLINED, reference="PAY_1")
        attempt.mark(PaymentStatus.FAILED, error)
        await analytics.track_payment_result("store-1", attempt, error)

        started, result = backend.events
        assert started.status == "pending"
        assert started.gateway == "paystack"
        assert started.properties == {"reference": "PAY_1", "order_id": "ord-1"}
        assert result.status == "failed"
        assert result.error_code == "CARD_DECLINED"
        assert result.properties["duration_ms"] >= 0

    @pytest.mark.asyncio
    async def test_conversion(self, analytics, backend):
        totals = OrderTotals(
            subtotal=Decimal("120"), shipping=Decimal("2.5"), tax=Decimal("9.6"),
            discount=Decimal("0"), total=Decimal("132.1"),
        )
        event = await analytics.track_conversion("store-1", "ord-1", totals)
        assert event.amount == Decimal("132.1")
        assert event.currency == "NGN"
        assert backend.of_type(CheckoutEventType.CONVERSION) == [event]


class TestBackends:
    @pytest.mark.asyncio
    async def test_publish_failure_is_logged(self, caplog):
        analytics = CheckoutAnalytics(BrokenBackend())
        event = await analytics.track_error("store-1", "create_order", "boom")
        assert event.event_type == CheckoutEventType.ERROR
        assert "Failed to publish analytics event" in caplog.text

    @pytest.mark.asyncio
    async def test_disabled(self, backend):
        analytics = CheckoutAnalytics(backend, enabled=False)
        await analytics.track_step("store-1", CheckoutStep.CUSTOMER_INFO, "enter")
        assert backend.events == []

    @pytest.mark.asyncio
    async def test_in_memory_cap(self):
        backend = InMemoryAnalyticsBackend(max_events=2)
        analytics = CheckoutAnalytics(backend)
        for action in ("enter", "complete", "back"):
            await analytics.track_step("store-1", CheckoutStep.SHIPPING_ADDRESS, action)
        assert [e.properties["action"] for e in backend.events] == ["complete", "back"]

    @pytest.mark.asyncio
    async def test_logging_backend(self, caplog):
        caplog.set_level(logging.INFO, logger="storefront_checkout.analytics")
        analytics = CheckoutAnalytics()
        assert isinstance(analytics.backend, LoggingAnalyticsBackend)
        await analytics.track_step("store-1", CheckoutStep.ORDER_REVIEW, "enter")
        assert "type=funnel_step" in caplog.text
        assert "step=order-review" in caplog.text
