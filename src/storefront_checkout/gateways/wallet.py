"""Wallet-connect gateway (BasePay crypto payments)."""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Sequence

from storefront_checkout.callbacks import CallbackBroker
from storefront_checkout.gateways.base import (
    ApiInitializedAdapter,
    DEFAULT_ALLOWED_DOMAINS,
    failed_outcome,
)
from storefront_checkout.models import (
    ActivationKind,
    ActivationTarget,
    GatewayInitResult,
    GatewayType,
    OutcomeStatus,
    PaymentErrorCode,
    PaymentMethodType,
    PaymentOutcome,
)

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"


class WalletPayClient(ABC):
    """External wallet primitives."""

    @abstractmethod
    async def pay(self, amount: float, currency: str, reference: str, payment_data: Dict[str, Any]) -> str:
        """Submit the payment from the connected wallet. Returns a transaction id."""
        pass

    @abstractmethod
    async def get_status(self, transaction_id: str) -> str:
        """Current status of a submitted payment (pending, completed or failed)."""
        pass


class WalletConnectGatewayAdapter(ApiInitializedAdapter):
    """
    Pays straight from the customer's wallet, then polls for a terminal status.

    No callback message is involved: the status primitive is authoritative,
    and running out of time resolves as PAYMENT_TIMEOUT. release() stops the
    polling and resolves the payment as cancelled.
    """

    activation = ActivationKind.WALLET_CONNECT
    requires_activation_url = False

    def __init__(
        self,
        api: Any,
        wallet: WalletPayClient,
        gateway: GatewayType = GatewayType.BASEPAY,
        poll_interval: float = 3.0,
        timeout: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        allowed_domains: Sequence[str] = DEFAULT_ALLOWED_DOMAINS,
    ):
        super().__init__(api, allowed_domains)
        self.gateway = gateway
        self._wallet = wallet
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._clock = clock
        self._amounts: Dict[str, tuple] = {}
        self._cancelled: Optional[asyncio.Event] = None

    def _activation_target(self, url: Optional[str]) -> ActivationTarget:
        return ActivationTarget(kind=self.activation, url=url, connector=self.gateway.value)

    async def initialize(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        method: PaymentMethodType,
        customer_identity: str,
        callback_target: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayInitResult:
        result = await super().initialize(
            order_id, amount, currency, method, customer_identity, callback_target,
            {**(metadata or {}), "cryptoPayment": True},
        )
        if result.success and result.reference:
            self._amounts[result.reference] = (float(amount), currency)
        return result

    async def execute(
        self,
        result: GatewayInitResult,
        broker: CallbackBroker,
        timeout: Optional[float] = None,
    ) -> PaymentOutcome:
        reference = result.reference
        if not result.success or not reference or reference not in self._amounts:
            return failed_outcome(PaymentErrorCode.GATEWAY_ERROR, "Payment was not initialized", reference)

        amount, currency = self._amounts.pop(reference)
        cancelled = self._cancelled = asyncio.Event()
        try:
            transaction_id = await self._wallet.pay(amount, currency, reference, dict(result.payment_data))
        except Exception as e:
            logger.warning(f"Wallet payment for {reference} was not submitted: {e}")
            return failed_outcome(PaymentErrorCode.GATEWAY_ERROR, str(e) or None, reference)

        return await self._poll(reference, transaction_id, timeout or self._timeout, cancelled)

    async def release(self) -> None:
        if self._cancelled is not None:
            self._cancelled.set()
            self._cancelled = None

    async def _wait(self, cancelled: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(cancelled.wait(), self._poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _poll(
        self,
        reference: str,
        transaction_id: str,
        timeout: float,
        cancelled: asyncio.Event,
    ) -> PaymentOutcome:
        deadline = self._clock() + timeout
        while True:
            if cancelled.is_set():
                logger.info(f"Stopped polling wallet payment {reference}")
                return PaymentOutcome(OutcomeStatus.CANCELLED, reference=reference)
            try:
                status = (await self._wallet.get_status(transaction_id) or "").lower()
            except Exception as e:
                logger.warning(f"Wallet status check failed for {transaction_id}: {e}")
                status = ""

            if status == COMPLETED:
                logger.info(f"Wallet payment {reference} completed ({transaction_id})")
                return PaymentOutcome(
                    OutcomeStatus.SUCCESS,
                    reference=reference,
                    data={"transactionId": transaction_id},
                )
            if status == FAILED:
                return failed_outcome(
                    PaymentErrorCode.GATEWAY_ERROR, "Wallet payment failed", reference
                )
            if self._clock() >= deadline:
                logger.warning(f"Wallet payment {reference} still pending after {timeout}s")
                return failed_outcome(PaymentErrorCode.PAYMENT_TIMEOUT, None, reference)
            await self._wait(cancelled)
