"""Linear checkout step state machine."""
from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional

from storefront_checkout.errors import StepError
from storefront_checkout.forms import FormStore
from storefront_checkout.models import CheckoutStep, STEP_SEQUENCE, step_index
from storefront_checkout.validation import StepValidation, ValidationGate

logger = logging.getLogger(__name__)

StepListener = Callable[["StepStateMachine"], None]


class StepStateMachine:
    """
    Drives the wizard through customer-info, shipping-address,
    payment-method and order-review, in that fixed order.

    The current step only moves forward after the ValidationGate accepts it,
    and completed steps are never un-marked: retreating or jumping back to
    edit keeps every step that was already completed.
    """

    def __init__(self, form: FormStore, gate: Optional[ValidationGate] = None):
        self._form = form
        self._gate = gate or ValidationGate()
        self._step = STEP_SEQUENCE[0]
        self._completed: List[CheckoutStep] = []
        self._errors: Dict[str, str] = {}
        self._listeners: List[StepListener] = []

    @property
    def step_id(self) -> CheckoutStep:
        return self._step

    @property
    def completed_steps(self) -> List[CheckoutStep]:
        return list(self._completed)

    @property
    def errors(self) -> Dict[str, str]:
        return dict(self._errors)

    @property
    def index(self) -> int:
        return step_index(self._step)

    @property
    def is_first(self) -> bool:
        return self.index == 0

    @property
    def is_last(self) -> bool:
        return self.index == len(STEP_SEQUENCE) - 1

    def is_completed(self, step: CheckoutStep) -> bool:
        return CheckoutStep(step) in self._completed

    def subscribe(self, listener: StepListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def validate_current(self) -> StepValidation:
        result = self._gate.validate(self._step, self._form.data)
        self._errors = dict(result.errors)
        return result

    def advance(self) -> bool:
        """
        Validate the current step and move to the next one.

        Returns False, leaving the step unchanged, when validation fails.
        On the review step a successful advance marks it complete without
        moving anywhere.
        """
        result = self.validate_current()
        if not result.ok:
            logger.info(f"Step {self._step.value} blocked by {len(result.errors)} field error(s)")
            self._notify()
            return False

        self._mark_completed(self._step)
        if not self.is_last:
            self._step = STEP_SEQUENCE[self.index + 1]
        self._notify()
        return True

    def retreat(self) -> bool:
        if self.is_first:
            return False
        self._step = STEP_SEQUENCE[self.index - 1]
        self._errors = {}
        self._notify()
        return True

    def jump_to(self, step: CheckoutStep | str) -> None:
        """Go back to an earlier (or the current) step, e.g. to edit from review."""
        target = CheckoutStep(step)
        if step_index(target) > self.index:
            raise StepError(
                f"Cannot jump ahead from {self._step.value} to {target.value}"
            )
        self._step = target
        self._errors = {}
        self._notify()

    def restore(self, step_id: CheckoutStep | str, completed_steps: Iterable[str]) -> None:
        """Resume from a persisted draft. Unknown step ids raise StepError."""
        try:
            step = CheckoutStep(step_id)
            completed = [CheckoutStep(s) for s in completed_steps]
        except ValueError as e:
            raise StepError(f"Unknown checkout step in saved session: {e}") from e
        self._step = step
        self._completed = []
        for s in completed:
            self._mark_completed(s)
        self._errors = {}
        self._notify()

    def reset(self) -> None:
        self._step = STEP_SEQUENCE[0]
        self._completed = []
        self._errors = {}
        self._notify()

    def _mark_completed(self, step: CheckoutStep) -> None:
        if step not in self._completed:
            self._completed.append(step)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Step listener failed: {e}")
