"""Full-page redirect gateway (card payments via Paystack)."""
from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from storefront_checkout.callbacks import CallbackBroker
from storefront_checkout.gateways.base import (
    ApiInitializedAdapter,
    DEFAULT_ALLOWED_DOMAINS,
    failed_outcome,
)
from storefront_checkout.gateways.browser import Navigator
from storefront_checkout.models import (
    ActivationKind,
    GatewayInitResult,
    GatewayType,
    PaymentErrorCode,
    PaymentOutcome,
)

logger = logging.getLogger(__name__)


class RedirectGatewayAdapter(ApiInitializedAdapter):
    """
    Sends the whole page to the gateway's authorization URL.

    Nothing resolves until the customer comes back through the callback URL
    and the return handler publishes the callback message.
    """

    activation = ActivationKind.REDIRECT

    def __init__(
        self,
        api: Any,
        navigator: Navigator,
        gateway: GatewayType = GatewayType.PAYSTACK,
        timeout: float = 900.0,
        allowed_domains: Sequence[str] = DEFAULT_ALLOWED_DOMAINS,
    ):
        super().__init__(api, allowed_domains)
        self.gateway = gateway
        self._navigator = navigator
        self._timeout = timeout

    async def execute(
        self,
        result: GatewayInitResult,
        broker: CallbackBroker,
        timeout: Optional[float] = None,
    ) -> PaymentOutcome:
        target = result.activation_target
        if not result.success or target is None or not target.url:
            return failed_outcome(
                PaymentErrorCode.GATEWAY_ERROR, "Payment was not initialized", result.reference
            )

        pending = broker.expect(self.gateway, reference=result.reference)
        try:
            logger.info(f"Redirecting to {self.gateway.value} for {result.reference}")
            await self._navigator.redirect(target.url)
            return await pending.wait(timeout or self._timeout)
        finally:
            pending.close()
