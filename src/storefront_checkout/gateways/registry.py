"""Lookup table from gateway (and optionally method) to adapter."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple, Union

from storefront_checkout.errors import UnsupportedGateway
from storefront_checkout.gateways.base import PaymentGatewayAdapter
from storefront_checkout.models import GatewayType, PaymentMethodType

logger = logging.getLogger(__name__)

_Key = Tuple[str, Optional[str]]


def _value(v: Union[GatewayType, PaymentMethodType, str, None]) -> Optional[str]:
    if v is None:
        return None
    return v.value if isinstance(v, (GatewayType, PaymentMethodType)) else str(v).lower()


class GatewayRegistry:
    """
    Selects the adapter for a gateway/method pair.

    A method-specific registration wins over the gateway-wide one, so
    Paystack card payments can redirect while Paystack bank transfers open
    a popup.
    """

    def __init__(self):
        self._adapters: Dict[_Key, PaymentGatewayAdapter] = {}

    def register(
        self,
        gateway: Union[GatewayType, str],
        adapter: PaymentGatewayAdapter,
        method: Union[PaymentMethodType, str, None] = None,
    ) -> None:
        key = (_value(gateway), _value(method))
        if key in self._adapters:
            logger.info(f"Replacing payment adapter for {key[0]}/{key[1] or '*'}")
        self._adapters[key] = adapter

    def get(
        self,
        gateway: Union[GatewayType, str],
        method: Union[PaymentMethodType, str, None] = None,
    ) -> PaymentGatewayAdapter:
        g, m = _value(gateway), _value(method)
        adapter = self._adapters.get((g, m)) or self._adapters.get((g, None))
        if adapter is None:
            raise UnsupportedGateway(g, m)
        return adapter

    def supports(
        self,
        gateway: Union[GatewayType, str],
        method: Union[PaymentMethodType, str, None] = None,
    ) -> bool:
        try:
            self.get(gateway, method)
        except UnsupportedGateway:
            return False
        return True

    def gateways(self) -> List[str]:
        return sorted({g for g, _ in self._adapters})
