"""Host-page primitives the redirect and popup gateways drive."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class PopupHandle(ABC):
    """A payment window opened by the host."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def focus(self) -> None:
        return None


class Navigator(ABC):
    """Navigation primitives of the page running the checkout."""

    @abstractmethod
    async def redirect(self, url: str) -> None:
        """Navigate the whole page away to ``url``."""
        pass

    @abstractmethod
    async def open_popup(
        self,
        url: str,
        name: str,
        features: str = "width=500,height=600,scrollbars=yes,resizable=yes",
    ) -> Optional[PopupHandle]:
        """Open a window. Returns None when the browser blocked it."""
        pass
