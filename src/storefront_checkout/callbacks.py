"""
Payment callback broker.

Gateways report back through a cross-window message
``{type: "<gateway>_callback", reference, status}``. The broker is an
origin-filtered event bus for those messages: anything from a foreign origin
is dropped, and each pending payment resolves exactly once to success,
cancelled, failed, or (when nothing arrives in time) abandoned.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from urllib.parse import parse_qs, urlsplit

from storefront_checkout.errors import CheckoutApiError, classify_failure, make_error_info
from storefront_checkout.models import (
    GatewayType,
    OutcomeStatus,
    PaymentOutcome,
)

logger = logging.getLogger(__name__)

GENERIC_CALLBACK_TYPE = "payment_callback"
CANCELLED_STATUSES = frozenset({"cancelled", "canceled"})

Continuation = Callable[[PaymentOutcome], Any]
MessageListener = Callable[[Any], None]


def callback_type(gateway: Union[GatewayType, str]) -> str:
    value = gateway.value if isinstance(gateway, GatewayType) else str(gateway)
    return f"{value}_callback"


def _normalize_origin(origin: str) -> str:
    return (origin or "").rstrip("/").lower()


class PendingCallback:
    """One payment waiting for its callback message."""

    def __init__(
        self,
        broker: "CallbackBroker",
        gateway: Union[GatewayType, str],
        reference: Optional[str] = None,
        on_success: Optional[Continuation] = None,
        on_cancel: Optional[Continuation] = None,
        on_failure: Optional[Continuation] = None,
    ):
        self._broker = broker
        self.gateway = gateway.value if isinstance(gateway, GatewayType) else str(gateway)
        self.reference = reference
        self._continuations = {
            OutcomeStatus.SUCCESS: on_success,
            OutcomeStatus.CANCELLED: on_cancel,
            OutcomeStatus.ABANDONED: on_cancel,
            OutcomeStatus.FAILED: on_failure,
        }
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._closed = False

    @property
    def resolved(self) -> bool:
        return self._future.done()

    @property
    def outcome(self) -> Optional[PaymentOutcome]:
        return self._future.result() if self._future.done() else None

    def accepts(self, data: Any) -> bool:
        if not isinstance(data, dict):
            return False
        if data.get("type") not in (callback_type(self.gateway), GENERIC_CALLBACK_TYPE):
            return False
        reference = data.get("reference")
        if self.reference and reference and reference != self.reference:
            return False
        return True

    def handle(self, data: Dict[str, Any]) -> PaymentOutcome:
        """Resolve from a matching callback message."""
        reference = data.get("reference")
        status = data.get("status")
        if status == "success" and isinstance(reference, str) and reference:
            outcome = PaymentOutcome(OutcomeStatus.SUCCESS, reference=reference, data=dict(data))
        elif status in CANCELLED_STATUSES:
            outcome = PaymentOutcome(
                OutcomeStatus.CANCELLED, reference=reference or self.reference, data=dict(data)
            )
        else:
            code = classify_failure(data.get("code"), data.get("message"))
            outcome = PaymentOutcome(
                OutcomeStatus.FAILED,
                reference=reference or self.reference,
                error=make_error_info(
                    code,
                    message=data.get("message") or None,
                    reference=reference or self.reference,
                    details={"status": status},
                ),
                data=dict(data),
            )
        self.resolve(outcome)
        return outcome

    def resolve(self, outcome: PaymentOutcome) -> bool:
        """Settle the pending payment. Only the first resolution counts."""
        if self._future.done():
            return False
        self._future.set_result(outcome)
        self.close()
        continuation = self._continuations.get(outcome.status)
        if continuation is not None:
            try:
                continuation(outcome)
            except Exception as e:
                logger.error(f"Payment {outcome.status.value} continuation failed: {e}")
        return True

    def cancel(self) -> bool:
        """The customer dismissed the payment dialog."""
        return self.resolve(PaymentOutcome(OutcomeStatus.CANCELLED, reference=self.reference))

    async def wait(self, timeout: Optional[float] = None) -> PaymentOutcome:
        """Wait for the outcome. A missing message resolves as abandoned, never hangs."""
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout)
        except asyncio.TimeoutError:
            logger.info(f"No {self.gateway} callback within {timeout}s, treating payment as abandoned")
            self.resolve(PaymentOutcome(OutcomeStatus.ABANDONED, reference=self.reference))
            return self._future.result()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._broker._remove(self)


class CallbackBroker:
    """
    Origin-filtered event bus for payment callback messages.

    Usage:
        broker = CallbackBroker(origin="https://shop.example.com")
        pending = broker.expect("paystack", reference="PAY_1_...")
        ...
        broker.post_message(event_data, origin=event_origin)
        outcome = await pending.wait(timeout=900)
    """

    def __init__(self, origin: str):
        self.origin = origin
        self._origin = _normalize_origin(origin)
        self._pending: List[PendingCallback] = []
        self._listeners: List[MessageListener] = []

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def expect(
        self,
        gateway: Union[GatewayType, str],
        reference: Optional[str] = None,
        on_success: Optional[Continuation] = None,
        on_cancel: Optional[Continuation] = None,
        on_failure: Optional[Continuation] = None,
    ) -> PendingCallback:
        pending = PendingCallback(self, gateway, reference, on_success, on_cancel, on_failure)
        self._pending.append(pending)
        return pending

    def subscribe(self, listener: MessageListener) -> Callable[[], None]:
        """Observe every same-origin message."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def post_message(self, data: Any, origin: str) -> bool:
        """Deliver a message. Returns False when it was discarded."""
        if _normalize_origin(origin) != self._origin:
            logger.warning(f"Discarding payment callback from untrusted origin {origin!r}")
            return False

        for listener in list(self._listeners):
            try:
                listener(data)
            except Exception as e:
                logger.error(f"Callback listener failed: {e}")

        handled = False
        for pending in list(self._pending):
            if pending.accepts(data):
                pending.handle(data)
                handled = True
        if not handled:
            logger.debug(f"Callback message matched no pending payment: {data!r}")
        return handled

    def cancel(self, reference: Optional[str] = None) -> int:
        """Resolve waiting payments as cancelled; all of them when no reference is given."""
        cancelled = 0
        for pending in list(self._pending):
            if reference is None or pending.reference in (None, reference):
                if pending.cancel():
                    cancelled += 1
        return cancelled

    def _remove(self, pending: PendingCallback) -> None:
        if pending in self._pending:
            self._pending.remove(pending)

    def close(self) -> None:
        """Cancel everything still waiting and drop all listeners."""
        for pending in list(self._pending):
            pending.resolve(PaymentOutcome(OutcomeStatus.ABANDONED, reference=pending.reference))
        self._pending.clear()
        self._listeners.clear()


@dataclass
class CallbackResult:
    """What the callback return page shows."""
    status: str
    message: str
    reference: Optional[str] = None
    gateway: str = GatewayType.PAYSTACK.value


def _query_params(source: Union[str, Mapping[str, Any]]) -> Dict[str, str]:
    if isinstance(source, str):
        query = urlsplit(source).query if "?" in source or "://" in source else source
        return {k: v[0] for k, v in parse_qs(query).items() if v}
    return {k: (v[0] if isinstance(v, (list, tuple)) else v) for k, v in source.items()}


class CallbackReturnHandler:
    """
    Handles the customer's return from a gateway to the callback URL.

    Reads the reference (``reference``, ``tx_ref`` or ``trxref``), verifies
    the payment with the checkout API and publishes the matching callback
    message to the broker.
    """

    def __init__(self, api: Any, broker: CallbackBroker):
        self._api = api
        self._broker = broker

    def _publish(self, data: Dict[str, Any]) -> None:
        self._broker.post_message(data, origin=self._broker.origin)

    async def handle(self, source: Union[str, Mapping[str, Any]]) -> CallbackResult:
        params = _query_params(source)
        reference = params.get("reference") or params.get("tx_ref") or params.get("trxref")
        status = params.get("status")
        gateway = params.get("gateway") or GatewayType.PAYSTACK.value

        if not reference:
            return CallbackResult("failed", "Payment reference not found in callback URL", gateway=gateway)

        if status in CANCELLED_STATUSES:
            self._publish({"type": callback_type(gateway), "reference": reference, "status": "cancelled"})
            return CallbackResult("cancelled", "Payment was cancelled by user", reference, gateway)

        try:
            result = await self._api.verify_payment(reference) or {}
        except CheckoutApiError as e:
            logger.error(f"Payment verification failed for {reference}: {e}")
            self._publish({
                "type": GENERIC_CALLBACK_TYPE,
                "reference": reference,
                "status": "failed",
                "message": e.message,
            })
            return CallbackResult("failed", e.message or "Payment verification failed", reference, gateway)

        if result.get("success") and result.get("status") == "success":
            self._publish({"type": callback_type(gateway), "reference": reference, "status": "success"})
            return CallbackResult("success", "Payment verified successfully", reference, gateway)

        message = result.get("message") or "Payment verification failed"
        self._publish({
            "type": callback_type(gateway),
            "reference": reference,
            "status": "failed",
            "message": message,
        })
        return CallbackResult("failed", message, reference, gateway)
