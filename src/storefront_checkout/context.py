"""
Process-wide checkout collaborators.

build_checkout_context() runs once at application start. The retry limiter
store in particular must outlive individual flows, so that closing and
reopening checkout does not reset a customer's failed attempts.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from storefront_checkout.analytics import AnalyticsBackend, CheckoutAnalytics
from storefront_checkout.api import CheckoutApiClient
from storefront_checkout.callbacks import CallbackBroker, CallbackReturnHandler
from storefront_checkout.config import CheckoutSettings, load_settings
from storefront_checkout.coordinator import OrderSubmissionCoordinator
from storefront_checkout.flow import CheckoutFlow
from storefront_checkout.gateways import (
    GatewayRegistry,
    Navigator,
    PopupGatewayAdapter,
    RedirectGatewayAdapter,
    WalletConnectGatewayAdapter,
    WalletPayClient,
)
from storefront_checkout.models import GatewayType, PaymentMethodType
from storefront_checkout.persistence import (
    InMemoryStorageBackend,
    RedisStorageBackend,
    SessionPersistence,
    StorageBackend,
)
from storefront_checkout.pricing import PricingCoordinator
from storefront_checkout.rate_limit import RateLimitStore, RedisRateLimitStore, RetryRateLimiter
from storefront_checkout.validation import PaymentValidator

logger = logging.getLogger(__name__)


@dataclass
class CheckoutContext:
    """Shared collaborators handed to every checkout flow."""
    settings: CheckoutSettings
    api: CheckoutApiClient
    storage: StorageBackend
    limiter: RetryRateLimiter
    broker: CallbackBroker
    registry: GatewayRegistry
    analytics: CheckoutAnalytics
    validator: PaymentValidator

    @property
    def return_handler(self) -> CallbackReturnHandler:
        return CallbackReturnHandler(self.api, self.broker)

    def create_flow(self, store_id: str) -> CheckoutFlow:
        persistence = SessionPersistence(
            store_id,
            backend=self.storage,
            debounce_seconds=self.settings.persistence_debounce_seconds,
            key_prefix=self.settings.persistence_key_prefix,
        )
        coordinator = OrderSubmissionCoordinator(
            store_id,
            api=self.api,
            registry=self.registry,
            broker=self.broker,
            limiter=self.limiter,
            pricing=PricingCoordinator(self.api, store_id),
            validator=self.validator,
            persistence=persistence,
            analytics=self.analytics,
            callback_url=self.settings.callback_url,
        )
        return CheckoutFlow(store_id, coordinator, persistence, analytics=self.analytics)

    async def close(self) -> None:
        self.broker.close()
        await self.api.close()
        for store in (self.storage, self.limiter.store):
            if isinstance(store, (RedisStorageBackend, RedisRateLimitStore)):
                await store.close()


def build_gateway_registry(
    settings: CheckoutSettings,
    api: CheckoutApiClient,
    navigator: Optional[Navigator] = None,
    wallet: Optional[WalletPayClient] = None,
    on_popup_closed: Optional[Callable[[], None]] = None,
) -> GatewayRegistry:
    """
    Default adapters: Paystack redirects (popup for bank transfer),
    Flutterwave opens a popup and BasePay pays from the connected wallet.
    Gateways whose host primitive is missing are left unregistered.
    """
    registry = GatewayRegistry()
    domains = settings.allowed_payment_domains
    if navigator is not None:
        registry.register(GatewayType.PAYSTACK, RedirectGatewayAdapter(
            api, navigator, GatewayType.PAYSTACK,
            timeout=settings.callback_timeout_seconds,
            allowed_domains=domains,
        ))
        registry.register(GatewayType.PAYSTACK, PopupGatewayAdapter(
            api, navigator, GatewayType.PAYSTACK,
            poll_interval=settings.popup_poll_interval,
            timeout=settings.callback_timeout_seconds,
            on_popup_closed=on_popup_closed,
            allowed_domains=domains,
        ), method=PaymentMethodType.BANK_TRANSFER)
        registry.register(GatewayType.FLUTTERWAVE, PopupGatewayAdapter(
            api, navigator, GatewayType.FLUTTERWAVE,
            poll_interval=settings.popup_poll_interval,
            timeout=settings.callback_timeout_seconds,
            on_popup_closed=on_popup_closed,
            allowed_domains=domains,
        ))
    if wallet is not None:
        registry.register(GatewayType.BASEPAY, WalletConnectGatewayAdapter(
            api, wallet, GatewayType.BASEPAY,
            poll_interval=settings.wallet_poll_interval,
            timeout=settings.wallet_timeout_seconds,
            allowed_domains=domains,
        ))
    return registry


def build_checkout_context(
    settings: Optional[CheckoutSettings] = None,
    navigator: Optional[Navigator] = None,
    wallet: Optional[WalletPayClient] = None,
    storage: Optional[StorageBackend] = None,
    rate_limit_store: Optional[RateLimitStore] = None,
    analytics_backend: Optional[AnalyticsBackend] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    on_popup_closed: Optional[Callable[[], None]] = None,
) -> CheckoutContext:
    """Build the collaborators shared by every checkout in this process."""
    settings = settings or load_settings()
    api = CheckoutApiClient.from_settings(settings, http_client=http_client)

    if storage is None:
        storage = RedisStorageBackend(settings.redis_url) if settings.redis_url else InMemoryStorageBackend()
    if rate_limit_store is None and settings.redis_url:
        rate_limit_store = RedisRateLimitStore(
            settings.redis_url, ttl_seconds=int(settings.rate_limit_window_seconds)
        )

    context = CheckoutContext(
        settings=settings,
        api=api,
        storage=storage,
        limiter=RetryRateLimiter.from_settings(settings, store=rate_limit_store),
        broker=CallbackBroker(settings.page_origin),
        registry=build_gateway_registry(settings, api, navigator, wallet, on_popup_closed),
        analytics=CheckoutAnalytics(analytics_backend),
        validator=PaymentValidator(settings.payment_rules),
    )
    logger.info(
        f"Checkout context ready: api={settings.api_base_url} "
        f"gateways={','.join(context.registry.gateways()) or 'none'}"
    )
    return context
