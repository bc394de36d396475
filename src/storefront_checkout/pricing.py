"""Server-authoritative pricing for the order review."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from storefront_checkout.api import CheckoutApiClient
from storefront_checkout.models import CheckoutItem, OrderTotals, PricingValidation

logger = logging.getLogger(__name__)


class PricingCoordinator:
    """
    Validates the cart and fetches totals from the checkout API.

    Totals are exactly what the server returns. There is no client-side tax
    or shipping formula; anything shown before calculate() has answered is
    provisional and is dropped as soon as items, address or coupon change.
    """

    def __init__(self, api: CheckoutApiClient, store_id: str):
        self._api = api
        self.store_id = str(store_id)
        self._totals: Optional[OrderTotals] = None
        self._inputs: Optional[tuple] = None

    @property
    def totals(self) -> Optional[OrderTotals]:
        return self._totals

    @staticmethod
    def _fingerprint(
        items: List[CheckoutItem],
        address: Optional[Dict[str, Any]],
        coupon_code: Optional[str],
    ) -> tuple:
        return (
            tuple(sorted((i.product_id, i.variant_id or "", i.quantity, str(i.unit_price)) for i in items)),
            tuple(sorted((address or {}).items())),
            coupon_code or "",
        )

    def is_current(
        self,
        items: List[CheckoutItem],
        address: Optional[Dict[str, Any]] = None,
        coupon_code: Optional[str] = None,
    ) -> bool:
        """True if the cached totals were computed for exactly these inputs."""
        return self._totals is not None and self._inputs == self._fingerprint(items, address, coupon_code)

    def invalidate(self) -> None:
        self._totals = None
        self._inputs = None

    async def validate(
        self,
        items: List[CheckoutItem],
        address: Optional[Dict[str, Any]] = None,
        coupon_code: Optional[str] = None,
    ) -> PricingValidation:
        result = await self._api.validate_checkout(self.store_id, items, address, coupon_code)
        if not result.is_valid:
            logger.info(f"Checkout validation rejected store {self.store_id}: {result.errors}")
        return result

    async def calculate(
        self,
        items: List[CheckoutItem],
        address: Optional[Dict[str, Any]] = None,
        coupon_code: Optional[str] = None,
    ) -> OrderTotals:
        totals = await self._api.calculate_totals(self.store_id, items, address, coupon_code)
        self._totals = totals
        self._inputs = self._fingerprint(items, address, coupon_code)
        return totals
