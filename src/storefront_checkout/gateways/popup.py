"""Popup-window gateway (bank transfer and international card flows)."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Sequence

from storefront_checkout.callbacks import CallbackBroker
from storefront_checkout.gateways.base import (
    ApiInitializedAdapter,
    DEFAULT_ALLOWED_DOMAINS,
    failed_outcome,
)
from storefront_checkout.gateways.browser import Navigator, PopupHandle
from storefront_checkout.models import (
    ActivationKind,
    GatewayInitResult,
    GatewayType,
    PaymentErrorCode,
    PaymentOutcome,
)

logger = logging.getLogger(__name__)

POPUP_BLOCKED_MESSAGE = "Please allow popups for this site to complete payment"


class PopupGatewayAdapter(ApiInitializedAdapter):
    """
    Opens the gateway in a popup window and waits for its callback message.

    The popup's closed state is polled only to tell the UI it can offer to
    reopen the window. Closing the popup never resolves the payment; the
    callback message (or the timeout) does.
    """

    activation = ActivationKind.POPUP

    def __init__(
        self,
        api: Any,
        navigator: Navigator,
        gateway: GatewayType = GatewayType.FLUTTERWAVE,
        poll_interval: float = 1.0,
        timeout: float = 900.0,
        on_popup_closed: Optional[Callable[[], None]] = None,
        allowed_domains: Sequence[str] = DEFAULT_ALLOWED_DOMAINS,
    ):
        super().__init__(api, allowed_domains)
        self.gateway = gateway
        self._navigator = navigator
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._on_popup_closed = on_popup_closed
        self._popup: Optional[PopupHandle] = None
        self._url: Optional[str] = None
        self._watcher: Optional[asyncio.Task] = None
        self.popup_closed = False

    @property
    def window_name(self) -> str:
        return f"{self.gateway.value}_payment"

    @property
    def is_watching(self) -> bool:
        return self._watcher is not None and not self._watcher.done()

    async def _open(self) -> bool:
        popup = await self._navigator.open_popup(self._url, self.window_name)
        if popup is None:
            return False
        self._popup = popup
        self.popup_closed = False
        return True

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

        self._url = target.url
        pending = broker.expect(self.gateway, reference=result.reference)
        try:
            if not await self._open():
                logger.warning(f"{self.gateway.value} popup blocked for {result.reference}")
                return failed_outcome(
                    PaymentErrorCode.POPUP_BLOCKED, POPUP_BLOCKED_MESSAGE, result.reference
                )
            self._watcher = asyncio.create_task(self._watch(pending))
            return await pending.wait(timeout or self._timeout)
        finally:
            pending.close()
            await self.release()

    async def reopen(self) -> bool:
        """Open the payment window again after the customer closed it."""
        if self._url is None:
            return False
        if self._popup is not None and not self._popup.closed:
            self._popup.focus()
            return True
        return await self._open()

    async def _watch(self, pending: Any) -> None:
        while not pending.resolved:
            await asyncio.sleep(self._poll_interval)
            popup = self._popup
            if popup is not None and popup.closed and not self.popup_closed:
                self.popup_closed = True
                logger.info(f"{self.gateway.value} popup closed before a callback arrived")
                if self._on_popup_closed is not None:
                    try:
                        self._on_popup_closed()
                    except Exception as e:
                        logger.error(f"Popup closed hook failed: {e}")

    async def release(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher is not None and not watcher.done():
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
        popup, self._popup = self._popup, None
        if popup is not None and not popup.closed:
            popup.close()
