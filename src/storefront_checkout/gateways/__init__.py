"""Payment gateway adapters."""

from storefront_checkout.gateways.base import (
    PaymentGatewayAdapter,
    ApiInitializedAdapter,
    sanitize_metadata,
    validate_payment_url,
)
from storefront_checkout.gateways.browser import Navigator, PopupHandle
from storefront_checkout.gateways.popup import PopupGatewayAdapter
from storefront_checkout.gateways.redirect import RedirectGatewayAdapter
from storefront_checkout.gateways.registry import GatewayRegistry
from storefront_checkout.gateways.wallet import WalletConnectGatewayAdapter, WalletPayClient

__all__ = [
    "PaymentGatewayAdapter",
    "ApiInitializedAdapter",
    "sanitize_metadata",
    "validate_payment_url",
    "Navigator",
    "PopupHandle",
    "PopupGatewayAdapter",
    "RedirectGatewayAdapter",
    "GatewayRegistry",
    "WalletConnectGatewayAdapter",
    "WalletPayClient",
]
