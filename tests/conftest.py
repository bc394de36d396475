"""Shared fixtures for the checkout flow tests."""
from __future__ import annotations

from decimal import Decimal
from typing import Callable, List

import httpx
import pytest

from storefront_checkout.api import CheckoutApiClient, RetryPolicy
from storefront_checkout.config import CheckoutSettings
from storefront_checkout.logging_config import clear_checkout_context
from storefront_checkout.models import CheckoutFormData, CheckoutItem

from checkout_helpers import API_BASE, PAGE_ORIGIN, FakeClock, FakeNavigator, make_form


@pytest.fixture(autouse=True)
def reset_log_context():
    """Keep bound order/reference context from leaking between tests."""
    clear_checkout_context()
    yield
    clear_checkout_context()


@pytest.fixture
def settings() -> CheckoutSettings:
    return CheckoutSettings(_env_file=None, page_origin=PAGE_ORIGIN, api_base_url=API_BASE)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def navigator() -> FakeNavigator:
    return FakeNavigator()


@pytest.fixture
def valid_form() -> CheckoutFormData:
    return make_form()


@pytest.fixture
def items() -> List[CheckoutItem]:
    return [CheckoutItem(product_id="prod-1", quantity=2, unit_price=Decimal("60.00"))]


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_api(sleeps: List[float]) -> Callable[..., CheckoutApiClient]:
    """Build an API client whose HTTP traffic goes to ``handler``."""

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    def factory(handler: Callable[[httpx.Request], httpx.Response], max_retries: int = 3) -> CheckoutApiClient:
        http_client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler),
            base_url=API_BASE,
        )
        return CheckoutApiClient(
            API_BASE,
            retry_policy=RetryPolicy(max_retries=max_retries),
            http_client=http_client,
            sleep=record_sleep,
        )

    return factory
