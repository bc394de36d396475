"""
Async client for the remote checkout API.

Responses arrive wrapped in a ``{success, data, message, errors}`` envelope;
the client unwraps ``data`` and turns everything else into CheckoutApiError.
Only the configured retryable statuses and transport failures are retried,
with capped exponential backoff.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from storefront_checkout.config import CheckoutSettings
from storefront_checkout.errors import CheckoutApiError
from storefront_checkout.models import (
    CheckoutItem,
    OrderConfirmation,
    OrderTotals,
    PricingValidation,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff policy for checkout API calls.

    Attributes:
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry, in seconds
        max_delay: Cap applied to every delay, in seconds
        retryable_statuses: HTTP statuses worth retrying
    """
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    retryable_statuses: frozenset = field(
        default_factory=lambda: frozenset({408, 429, 500, 502, 503, 504})
    )

    @classmethod
    def from_settings(cls, settings: CheckoutSettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.api_max_retries,
            base_delay=settings.api_base_delay,
            max_delay=settings.api_max_delay,
            retryable_statuses=frozenset(settings.api_retryable_statuses),
        )

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def is_retryable_status(self, status_code: int) -> bool:
        return status_code in self.retryable_statuses


def generate_idempotency_key(operation: str, payload: Dict[str, Any]) -> str:
    """Deterministic key so resubmitting an identical payload is recognised server-side."""
    data = json.dumps({"operation": operation, "payload": payload}, sort_keys=True, default=str)
    return hashlib.sha256(data.encode()).hexdigest()[:32]


class CheckoutApiClient:
    """
    Checkout API client.

    Args:
        base_url: Checkout API base URL
        timeout: Request timeout in seconds
        retry_policy: Backoff policy for retryable failures
        auth_token: Optional bearer token for the signed-in customer
        http_client: Pre-built httpx client (tests pass one with a mock transport)
        sleep: Awaitable used between retries
    """

    DEFAULT_TIMEOUT = 30.0

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        retry_policy: Optional[RetryPolicy] = None,
        auth_token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._retry_policy = retry_policy or RetryPolicy()
        self._auth_token = auth_token
        self._client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: CheckoutSettings, **kwargs: Any) -> "CheckoutApiClient":
        return cls(
            base_url=settings.api_base_url,
            timeout=settings.api_timeout,
            retry_policy=RetryPolicy.from_settings(settings),
            **kwargs,
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self._auth_token:
                headers["Authorization"] = f"Bearer {self._auth_token}"
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._timeout,
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "CheckoutApiClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Make a request with retry on retryable statuses and transport errors."""
        client = await self._get_client()
        policy = self._retry_policy

        for attempt in range(policy.max_retries + 1):
            can_retry = attempt < policy.max_retries
            try:
                response = await client.request(method, path, json=json_body, headers=headers)
            except httpx.TimeoutException as e:
                if can_retry:
                    await self._backoff(method, path, attempt, "timeout")
                    continue
                raise CheckoutApiError(
                    "Request timed out", status_code=408, retryable=True, code="TIMEOUT"
                ) from e
            except httpx.TransportError as e:
                if can_retry:
                    await self._backoff(method, path, attempt, "network error")
                    continue
                raise CheckoutApiError(
                    str(e) or "Network error", status_code=0, retryable=True, code="NETWORK_ERROR"
                ) from e

            if response.status_code >= 400:
                retryable = policy.is_retryable_status(response.status_code)
                if retryable and can_retry:
                    await self._backoff(method, path, attempt, f"HTTP {response.status_code}")
                    continue
                try:
                    body = response.json()
                except ValueError:
                    body = response.text
                raise CheckoutApiError.from_response(response.status_code, body, retryable=retryable)

            return self._unwrap(response)

        raise RuntimeError("Unexpected error in request retry loop")

    async def _backoff(self, method: str, path: str, attempt: int, reason: str) -> None:
        delay = self._retry_policy.calculate_delay(attempt)
        logger.warning(
            f"Checkout API {method} {path} failed ({reason}), "
            f"retry {attempt + 1}/{self._retry_policy.max_retries} in {delay:.1f}s"
        )
        await self._sleep(delay)

    @staticmethod
    def _unwrap(response: httpx.Response) -> Any:
        if not response.content:
            return None
        body = response.json()
        if not isinstance(body, dict) or "success" not in body:
            return body
        if not body.get("success"):
            raise CheckoutApiError(
                body.get("message") or "Request failed",
                status_code=response.status_code,
                errors=body.get("errors") or [],
            )
        return body.get("data")

    # Checkout

    async def validate_checkout(
        self,
        store_id: str,
        items: List[CheckoutItem],
        shipping_address: Optional[Dict[str, Any]] = None,
        coupon_code: Optional[str] = None,
    ) -> PricingValidation:
        payload = _pricing_payload(store_id, items, shipping_address, coupon_code)
        data = await self._request("POST", "/checkout/validate", payload)
        return PricingValidation.from_dict(data or {})

    async def calculate_totals(
        self,
        store_id: str,
        items: List[CheckoutItem],
        shipping_address: Optional[Dict[str, Any]] = None,
        coupon_code: Optional[str] = None,
    ) -> OrderTotals:
        payload = _pricing_payload(store_id, items, shipping_address, coupon_code)
        data = await self._request("POST", "/checkout/calculate", payload)
        return OrderTotals.from_dict(data or {})

    async def create_session(self, store_id: str, items: List[CheckoutItem]) -> Dict[str, Any]:
        payload = {"storeId": store_id, "items": [item.to_dict() for item in items]}
        return await self._request("POST", "/checkout/session", payload)

    async def get_session(self, session_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/checkout/session/{session_id}")

    async def update_session(self, session_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PATCH", f"/checkout/session/{session_id}", updates)

    async def complete_checkout(self, payload: Dict[str, Any]) -> OrderConfirmation:
        """Submit the order. Identical payloads share one idempotency key."""
        headers = {"Idempotency-Key": generate_idempotency_key("checkout.complete", payload)}
        data = await self._request("POST", "/checkout/complete", payload, headers=headers)
        return OrderConfirmation.from_dict(data or {})

    async def get_store_config(self, store_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/checkout/store/{store_id}/config")

    async def validate_inventory(self, store_id: str, items: List[CheckoutItem]) -> Dict[str, Any]:
        payload = {"storeId": store_id, "items": [item.to_dict() for item in items]}
        return await self._request("POST", "/checkout/validate-inventory", payload)

    async def apply_coupon(self, session_id: str, coupon_code: str) -> Dict[str, Any]:
        payload = {"sessionId": session_id, "couponCode": coupon_code}
        return await self._request("POST", "/checkout/apply-coupon", payload)

    async def remove_coupon(self, session_id: str) -> None:
        await self._request("DELETE", f"/checkout/session/{session_id}/coupon")

    # Payments

    async def initialize_payment(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/payments/initialize", payload)

    async def verify_payment(self, reference: str) -> Dict[str, Any]:
        return await self._request("GET", f"/payments/verify/{reference}")

    async def get_payment_status(self, reference: str) -> Dict[str, Any]:
        return await self._request("GET", f"/payments/status/{reference}")

    async def retry_payment(
        self,
        reference: str,
        preferred_gateway: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if preferred_gateway:
            payload["preferredGateway"] = preferred_gateway
        if callback_url:
            payload["callbackUrl"] = callback_url
        return await self._request("POST", f"/payments/retry/{reference}", payload)


def _pricing_payload(
    store_id: str,
    items: List[CheckoutItem],
    shipping_address: Optional[Dict[str, Any]],
    coupon_code: Optional[str],
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "storeId": store_id,
        "items": [item.to_dict() for item in items],
    }
    if shipping_address is not None:
        payload["shippingAddress"] = shipping_address
    if coupon_code:
        payload["couponCode"] = coupon_code
    return payload
