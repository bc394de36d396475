"""Checkout flow facade for one store."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from storefront_checkout.analytics import CheckoutAnalytics
from storefront_checkout.coordinator import OrderSubmissionCoordinator
from storefront_checkout.errors import ErrorPresentation, StepError
from storefront_checkout.forms import FormStore
from storefront_checkout.models import (
    CheckoutFormData,
    CheckoutItem,
    CheckoutStep,
    GatewayType,
    PaymentMethodType,
    SubmissionState,
)
from storefront_checkout.persistence import CheckoutSnapshot, SessionPersistence
from storefront_checkout.steps import StepStateMachine
from storefront_checkout.validation import ValidationGate

logger = logging.getLogger(__name__)


class CheckoutFlow:
    """
    One customer's checkout for one store.

    Wires the form and the step machine to draft persistence: every field
    change and step transition schedules a debounced save, and close()
    flushes whatever is still pending.

    Usage:
        flow = context.create_flow(store_id)
        await flow.mount()
        flow.update({"customerInfo.email": "customer@example.com", ...})
        if await flow.advance():
            ...
        await flow.submit(items)
        await flow.close()
    """

    def __init__(
        self,
        store_id: str,
        coordinator: OrderSubmissionCoordinator,
        persistence: SessionPersistence,
        form: Optional[FormStore] = None,
        gate: Optional[ValidationGate] = None,
        analytics: Optional[CheckoutAnalytics] = None,
    ):
        self.store_id = str(store_id)
        self.coordinator = coordinator
        self.persistence = persistence
        self.form = form or FormStore()
        self.steps = StepStateMachine(self.form, gate)
        self._analytics = analytics
        self._unsubscribers: List[Callable[[], None]] = []
        self.mounted = False

    @property
    def step_id(self) -> CheckoutStep:
        return self.steps.step_id

    @property
    def completed_steps(self) -> List[CheckoutStep]:
        return self.steps.completed_steps

    @property
    def errors(self) -> Dict[str, str]:
        return self.steps.errors

    @property
    def state(self) -> SubmissionState:
        return self.coordinator.state

    def snapshot(self) -> CheckoutSnapshot:
        return CheckoutSnapshot(
            form_data=self.form.data,
            current_step=self.steps.step_id,
            completed_steps=self.steps.completed_steps,
        )

    async def mount(self) -> bool:
        """Restore the saved draft, if any, and start mirroring changes. Returns True if restored."""
        if self.mounted:
            return False
        restored = False
        snapshot = await self.persistence.load()
        if snapshot is not None:
            try:
                self.steps.restore(snapshot.current_step, snapshot.completed_steps)
            except StepError as e:
                logger.warning(f"Ignoring saved checkout for store {self.store_id}: {e}")
            else:
                self.form.replace(snapshot.form_data)
                restored = True
                logger.info(
                    f"Restored checkout for store {self.store_id} at {snapshot.current_step.value}"
                )

        self._unsubscribers.append(self.form.subscribe(self._on_change))
        self._unsubscribers.append(self.steps.subscribe(self._on_change))
        self.mounted = True
        if self._analytics:
            await self._analytics.track_step(self.store_id, self.steps.step_id, "enter")
        return restored

    def _on_change(self, *args: Any) -> None:
        self.persistence.schedule_save(self.snapshot())

    def update_field(self, path: str, value: Any) -> None:
        self.form.set(path, value)

    def update(self, values: Dict[str, Any]) -> None:
        self.form.update(values)

    async def advance(self) -> bool:
        step = self.steps.step_id
        ok = self.steps.advance()
        if self._analytics:
            if ok:
                await self._analytics.track_step(self.store_id, step, "complete")
            else:
                await self._analytics.track_validation_errors(self.store_id, step, self.steps.errors)
        return ok

    async def retreat(self) -> bool:
        ok = self.steps.retreat()
        if ok and self._analytics:
            await self._analytics.track_step(self.store_id, self.steps.step_id, "back")
        return ok

    async def jump_to(self, step: CheckoutStep | str) -> None:
        self.steps.jump_to(step)
        if self._analytics:
            await self._analytics.track_step(self.store_id, self.steps.step_id, "edit")

    async def submit(
        self,
        items: List[CheckoutItem],
        coupon_code: Optional[str] = None,
    ) -> SubmissionState:
        """Place the order from the review step."""
        if self.steps.step_id != CheckoutStep.ORDER_REVIEW:
            raise StepError(f"Orders are submitted from the review step, not {self.steps.step_id.value}")
        return await self.coordinator.submit(self.form.data, items, coupon_code)

    async def retry(self) -> SubmissionState:
        return await self.coordinator.retry_payment()

    async def change_payment_method(
        self,
        method: PaymentMethodType | str,
        gateway: GatewayType | str,
    ) -> SubmissionState:
        self.form.update({
            "paymentMethod.type": PaymentMethodType(method).value,
            "paymentMethod.gateway": GatewayType(gateway).value,
        })
        return await self.coordinator.change_payment_method(method, gateway)

    async def cancel_payment(self) -> bool:
        return await self.coordinator.cancel_payment()

    async def present_error(self) -> Optional[ErrorPresentation]:
        return await self.coordinator.present_error()

    async def reset(self) -> None:
        """Abandon the draft and start again from the first step."""
        self.form.replace(CheckoutFormData())
        self.steps.reset()
        await self.persistence.clear()

    async def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.persistence.close()
        self.mounted = False
