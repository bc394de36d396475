"""Tests for the checkout API client."""
from decimal import Decimal

import httpx
import pytest

from storefront_checkout.api import CheckoutApiClient, RetryPolicy, generate_idempotency_key
from storefront_checkout.errors import CheckoutApiError

from checkout_helpers import API_BASE, envelope, request_json


class TestRetryPolicy:
    def test_exponential_delays_are_capped(self):
        policy = RetryPolicy()
        assert [policy.calculate_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_retryable_statuses(self):
        policy = RetryPolicy()
        for status in (408, 429, 500, 502, 503, 504):
            assert policy.is_retryable_status(status)
        assert not policy.is_retryable_status(400)
        assert not policy.is_retryable_status(404)

    def test_from_settings(self, settings):
        policy = RetryPolicy.from_settings(settings)
        assert policy.max_retries == 3
        assert policy.retryable_statuses == frozenset({408, 429, 500, 502, 503, 504})


class TestEnvelope:
    """Responses are unwrapped from the {success, data} envelope."""

    @pytest.mark.asyncio
    async def test_validate_checkout(self, make_api, items):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=envelope({"isValid": True, "warnings": ["Low stock"]}))

        api = make_api(handler)
        result = await api.validate_checkout("store-1", items, {"city": "Lagos"}, "SAVE10")

        assert result.is_valid is True
        assert result.warnings == ["Low stock"]
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/api/v1/checkout/validate"
        body = request_json(seen[0])
        assert body["storeId"] == "store-1"
        assert body["items"] == [{"productId": "prod-1", "quantity": 2, "unitPrice": "60.00"}]
        assert body["shippingAddress"] == {"city": "Lagos"}
        assert body["couponCode"] == "SAVE10"

    @pytest.mark.asyncio
    async def test_calculate_totals_returned_unmodified(self, make_api, items):
        def handler(request):
            return httpx.Response(200, json=envelope({
                "subtotal": 120.00, "shipping": 0, "tax": 9.60, "discount": 0, "total": 129.60,
            }))

        totals = await make_api(handler).calculate_totals("store-1", items)
        assert totals.total == Decimal("129.6")
        assert totals.tax == Decimal("9.6")

    @pytest.mark.asyncio
    async def test_unsuccessful_envelope_raises(self, make_api):
        def handler(request):
            return httpx.Response(200, json=envelope(success=False, message="Session closed"))

        with pytest.raises(CheckoutApiError) as exc_info:
            await make_api(handler).get_session("sess-1")
        assert exc_info.value.message == "Session closed"

    @pytest.mark.asyncio
    async def test_bare_json_passes_through(self, make_api):
        def handler(request):
            return httpx.Response(200, json={"reference": "PAY_1", "status": "success"})

        data = await make_api(handler).verify_payment("PAY_1")
        assert data == {"reference": "PAY_1", "status": "success"}


class TestRetries:
    """Only retryable statuses and transport failures are retried."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, make_api, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, json={"message": "busy"})
            return httpx.Response(200, json=envelope({"ok": True}))

        assert await make_api(handler).get_store_config("store-1") == {"ok": True}
        assert len(calls) == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, make_api, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, json={"message": "down"})

        with pytest.raises(CheckoutApiError) as exc_info:
            await make_api(handler).get_store_config("store-1")

        assert len(calls) == 4
        assert sleeps == [1.0, 2.0, 4.0]
        assert exc_info.value.status_code == 500
        assert exc_info.value.retryable is True
        assert exc_info.value.message == "down"

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, make_api, sleeps):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"success": False, "message": "Invalid items", "errors": ["qty"]})

        with pytest.raises(CheckoutApiError) as exc_info:
            await make_api(handler).validate_inventory("store-1", [])

        assert len(calls) == 1
        assert sleeps == []
        assert exc_info.value.status_code == 400
        assert exc_info.value.retryable is False
        assert exc_info.value.errors == ["qty"]

    @pytest.mark.asyncio
    async def test_network_error(self, make_api):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CheckoutApiError) as exc_info:
            await make_api(handler, max_retries=1).get_payment_status("PAY_1")

        assert len(calls) == 2
        assert exc_info.value.status_code == 0
        assert exc_info.value.code == "NETWORK_ERROR"

    @pytest.mark.asyncio
    async def test_timeout(self, make_api):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(CheckoutApiError) as exc_info:
            await make_api(handler, max_retries=0).get_payment_status("PAY_1")

        assert exc_info.value.status_code == 408
        assert exc_info.value.code == "TIMEOUT"


class TestCompleteCheckout:
    @pytest.mark.asyncio
    async def test_identical_payloads_share_idempotency_key(self, make_api):
        keys = []

        def handler(request):
            keys.append(request.headers["Idempotency-Key"])
            return httpx.Response(201, json=envelope({"orderId": "ord-1", "paymentReference": "PAY_ord-1"}))

        api = make_api(handler)
        payload = {"storeId": "store-1", "items": []}
        first = await api.complete_checkout(payload)
        await api.complete_checkout(dict(payload))

        assert first.order_id == "ord-1"
        assert keys[0] == keys[1] == generate_idempotency_key("checkout.complete", payload)

    def test_key_depends_on_payload(self):
        assert generate_idempotency_key("op", {"a": 1}) != generate_idempotency_key("op", {"a": 2})


class TestEndpoints:
    @pytest.mark.asyncio
    async def test_paths(self, make_api, items):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path))
            return httpx.Response(200, json=envelope({}))

        api = make_api(handler)
        await api.create_session("store-1", items)
        await api.update_session("sess-1", {"couponCode": "X"})
        await api.remove_coupon("sess-1")
        await api.initialize_payment({"orderId": "ord-1"})
        await api.retry_payment("PAY_1", preferred_gateway="flutterwave")

        assert seen == [
            ("POST", "/api/v1/checkout/session"),
            ("PATCH", "/api/v1/checkout/session/sess-1"),
            ("DELETE", "/api/v1/checkout/session/sess-1/coupon"),
            ("POST", "/api/v1/payments/initialize"),
            ("POST", "/api/v1/payments/retry/PAY_1"),
        ]

    @pytest.mark.asyncio
    async def test_owned_client_closed(self):
        api = CheckoutApiClient(API_BASE, auth_token="token")
        client = await api._get_client()
        assert client.headers["Authorization"] == "Bearer token"
        async with api:
            pass
        assert client.is_closed
