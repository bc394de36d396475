"""
Checkout funnel analytics.

Tracks where customers are in the wizard, which fields block them, and how
payment attempts end, so drop-off and gateway failure rates can be measured.
Publishing never interrupts the checkout: backend failures are logged.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from storefront_checkout.models import (
    CheckoutStep,
    OrderTotals,
    PaymentAttempt,
    PaymentErrorInfo,
    utc_now,
)

logger = logging.getLogger(__name__)


class CheckoutEventType(str, Enum):
    """Checkout analytics event types."""
    FUNNEL_STEP = "funnel_step"
    VALIDATION_ERROR = "validation_error"
    PAYMENT_ATTEMPT = "payment_attempt"
    PAYMENT_RESULT = "payment_result"
    API_CALL = "api_call"
    ERROR = "error"
    CONVERSION = "conversion"


@dataclass
class CheckoutAnalyticsEvent:
    """One tracked checkout event."""
    event_type: CheckoutEventType
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    store_id: Optional[str] = None
    step: Optional[str] = None
    gateway: Optional[str] = None
    method: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)


class AnalyticsBackend(ABC):
    """Abstract interface for analytics publishing backends."""

    @abstractmethod
    async def publish(self, event: CheckoutAnalyticsEvent) -> None:
        """Publish an analytics event."""
        pass


class InMemoryAnalyticsBackend(AnalyticsBackend):
    """
    In-memory analytics backend for development and testing.

    Note: events are kept only up to ``max_events``.
    """

    def __init__(self, max_events: int = 10000):
        self._events: List[CheckoutAnalyticsEvent] = []
        self._max_events = max_events
        self._lock = asyncio.Lock()

    @property
    def events(self) -> List[CheckoutAnalyticsEvent]:
        return list(self._events)

    async def publish(self, event: CheckoutAnalyticsEvent) -> None:
        async with self._lock:
            self._events.append(event)
            if len(self._events) > self._max_events:
                self._events = self._events[-self._max_events:]

    def of_type(self, event_type: CheckoutEventType) -> List[CheckoutAnalyticsEvent]:
        return [e for e in self._events if e.event_type == event_type]


class LoggingAnalyticsBackend(AnalyticsBackend):
    """Analytics backend that logs events for debugging."""

    def __init__(self, log_level: int = logging.INFO):
        self._log_level = log_level

    async def publish(self, event: CheckoutAnalyticsEvent) -> None:
        logger.log(
            self._log_level,
            "Checkout event: type=%s store=%s step=%s gateway=%s status=%s",
            event.event_type.value,
            event.store_id,
            event.step,
            event.gateway,
            event.status,
        )


class CheckoutAnalytics:
    """Tracks checkout funnel and payment events for one store."""

    def __init__(
        self,
        backend: Optional[AnalyticsBackend] = None,
        enabled: bool = True,
    ):
        self._backend = backend or LoggingAnalyticsBackend()
        self._enabled = enabled

    @property
    def backend(self) -> AnalyticsBackend:
        return self._backend

    async def track(self, event_type: CheckoutEventType, **fields: Any) -> CheckoutAnalyticsEvent:
        event = CheckoutAnalyticsEvent(event_type=event_type, **fields)
        if not self._enabled:
            return event
        try:
            await self._backend.publish(event)
        except Exception as e:
            logger.error(f"Failed to publish analytics event: {e}")
        return event

    async def track_step(self, store_id: str, step: CheckoutStep, action: str) -> CheckoutAnalyticsEvent:
        """action is one of enter, complete, back or edit."""
        return await self.track(
            CheckoutEventType.FUNNEL_STEP,
            store_id=store_id,
            step=CheckoutStep(step).value,
            properties={"action": action},
        )

    async def track_validation_errors(
        self,
        store_id: str,
        step: CheckoutStep,
        errors: Dict[str, str],
    ) -> CheckoutAnalyticsEvent:
        return await self.track(
            CheckoutEventType.VALIDATION_ERROR,
            store_id=store_id,
            step=CheckoutStep(step).value,
            properties={"fields": sorted(errors)},
        )

    async def track_payment_attempt(self, store_id: str, attempt: PaymentAttempt) -> CheckoutAnalyticsEvent:
        return await self.track(
            CheckoutEventType.PAYMENT_ATTEMPT,
            store_id=store_id,
            gateway=attempt.gateway.value,
            method=attempt.method.value,
            amount=attempt.amount,
            currency=attempt.currency,
            status=attempt.status.value,
            properties={"reference": attempt.reference, "order_id": attempt.order_id},
        )

    async def track_payment_result(
        self,
        store_id: str,
        attempt: PaymentAttempt,
        error: Optional[PaymentErrorInfo] = None,
    ) -> CheckoutAnalyticsEvent:
        duration = None
        if attempt.finished_at is not None:
            duration = int((attempt.finished_at - attempt.started_at).total_seconds() * 1000)
        return await self.track(
            CheckoutEventType.PAYMENT_RESULT,
            store_id=store_id,
            gateway=attempt.gateway.value,
            method=attempt.method.value,
            amount=attempt.amount,
            currency=attempt.currency,
            status=attempt.status.value,
            error_code=error.code.value if error else None,
            error_message=error.message if error else None,
            properties={"reference": attempt.reference, "duration_ms": duration},
        )

    async def track_error(self, store_id: str, stage: str, message: str) -> CheckoutAnalyticsEvent:
        return await self.track(
            CheckoutEventType.ERROR,
            store_id=store_id,
            error_message=message,
            properties={"stage": stage},
        )

    async def track_conversion(
        self,
        store_id: str,
        order_id: str,
        totals: Optional[OrderTotals] = None,
    ) -> CheckoutAnalyticsEvent:
        return await self.track(
            CheckoutEventType.CONVERSION,
            store_id=store_id,
            amount=totals.total if totals else None,
            currency=totals.currency if totals else None,
            status="completed",
            properties={"order_id": order_id},
        )
