"""Form data store with dotted-path field access."""
from __future__ import annotations

import logging
from dataclasses import fields, is_dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from storefront_checkout.models import CheckoutFormData

logger = logging.getLogger(__name__)

FormListener = Callable[[str, Any], None]


def _camel_to_snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


class FormStore:
    """
    Holds the checkout form data for one flow.

    Fields are addressed with the dotted camelCase paths used on the wire,
    e.g. ``customerInfo.email`` or ``paymentMethod.gateway``. Every mutation
    notifies the registered listeners with the path and new value.
    """

    def __init__(self, form_data: Optional[CheckoutFormData] = None):
        self._data = form_data or CheckoutFormData()
        self._listeners: List[FormListener] = []

    @property
    def data(self) -> CheckoutFormData:
        return self._data

    def subscribe(self, listener: FormListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _resolve(self, path: str) -> Tuple[Any, str]:
        parts = path.split(".")
        target: Any = self._data
        for part in parts[:-1]:
            target = getattr(target, self._attr(target, part))
        return target, self._attr(target, parts[-1])

    @staticmethod
    def _attr(target: Any, part: str) -> str:
        name = _camel_to_snake(part)
        if not is_dataclass(target) or name not in {f.name for f in fields(target)}:
            raise KeyError(f"Unknown form field: {part}")
        return name

    def get(self, path: str) -> Any:
        target, attr = self._resolve(path)
        return getattr(target, attr)

    def set(self, path: str, value: Any) -> None:
        target, attr = self._resolve(path)
        if is_dataclass(getattr(target, attr)):
            raise KeyError(f"Cannot assign a whole section: {path}")
        setattr(target, attr, value)
        self._notify(path, value)

    def update(self, values: Dict[str, Any]) -> None:
        for path, value in values.items():
            self.set(path, value)

    def replace(self, form_data: CheckoutFormData) -> None:
        self._data = form_data
        self._notify("", form_data)

    def _notify(self, path: str, value: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(path, value)
            except Exception as e:
                logger.error(f"Form listener failed for {path or '<all>'}: {e}")
