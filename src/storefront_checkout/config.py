"""Configuration surface for the checkout flow."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class PaymentRules(BaseSettings):
    """Limits applied to a payment before any gateway is contacted."""
    min_amount: float = 50
    max_amount: float = 10_000_000
    allowed_currencies: List[str] = Field(default_factory=lambda: ["NGN", "USD", "EUR", "GBP"])
    allowed_methods: List[str] = Field(
        default_factory=lambda: ["card", "bank_transfer", "wallet", "basepay"]
    )
    allowed_gateways: List[str] = Field(
        default_factory=lambda: ["paystack", "flutterwave", "basepay"]
    )

    @field_validator("allowed_currencies", "allowed_methods", "allowed_gateways", mode="before")
    @classmethod
    def parse_list(cls, v):
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


class CheckoutSettings(BaseSettings):
    """Checkout flow configuration."""

    model_config = SettingsConfigDict(
        env_prefix="STOREFRONT_CHECKOUT_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    # Checkout API
    api_base_url: str = "http://localhost:3000/api/v1"
    api_timeout: float = 30.0
    api_max_retries: int = 3
    api_base_delay: float = 1.0
    api_max_delay: float = 10.0
    api_retryable_statuses: Annotated[List[int], NoDecode] = Field(
        default_factory=lambda: [408, 429, 500, 502, 503, 504]
    )

    # Page origin the flow runs under; callbacks from any other origin are dropped
    page_origin: str = "http://localhost:3000"
    callback_path: str = "/checkout/callback"

    # Draft persistence
    persistence_key_prefix: str = "checkout-"
    persistence_debounce_seconds: float = 2.0
    redis_url: str = ""

    # Payment retry limiter
    rate_limit_max_attempts: int = 5
    rate_limit_warning_threshold: int = 3
    rate_limit_window_seconds: float = 15 * 60

    # Gateway activation
    popup_poll_interval: float = 1.0
    callback_timeout_seconds: float = 15 * 60
    wallet_poll_interval: float = 3.0
    wallet_timeout_seconds: float = 10 * 60
    allowed_payment_domains: Annotated[List[str], NoDecode] = Field(default_factory=lambda: [
        "checkout.paystack.com",
        "api.paystack.co",
        "checkout.flutterwave.com",
        "api.flutterwave.com",
        "basepay.app",
        "api.basepay.app",
        "localhost",
    ])

    default_currency: str = "NGN"
    payment_rules: PaymentRules = Field(default_factory=PaymentRules)

    @field_validator("allowed_payment_domains", "api_retryable_statuses", mode="before")
    @classmethod
    def parse_list(cls, v):
        """Parse comma-separated values from env var."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @property
    def callback_url(self) -> str:
        return f"{self.page_origin.rstrip('/')}{self.callback_path}"


@lru_cache
def load_settings(env_file: str | None = None) -> CheckoutSettings:
    """Load CheckoutSettings once per process."""
    env_path = Path(env_file) if env_file else None
    return CheckoutSettings(_env_file=env_path)
