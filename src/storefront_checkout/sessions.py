"""
Server-side checkout session lifecycle.

The draft kept by SessionPersistence has no expiry of its own; the
server-assigned session tracked here does, and is checked separately.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from storefront_checkout.api import CheckoutApiClient
from storefront_checkout.errors import CheckoutApiError, CheckoutError
from storefront_checkout.models import CheckoutItem, utc_now

logger = logging.getLogger(__name__)


class SessionError(CheckoutError):
    """Base exception for checkout session errors."""
    pass


class SessionNotFound(SessionError):
    """Raised when a session is not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Checkout session not found: {session_id}", code="SESSION_NOT_FOUND")
        self.session_id = session_id


class SessionExpired(SessionError):
    """Raised when a session has expired."""

    def __init__(self, session_id: str, expires_at: Optional[datetime] = None):
        super().__init__(f"Checkout session expired: {session_id}", code="SESSION_EXPIRED")
        self.session_id = session_id
        self.expires_at = expires_at


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class RemoteSession:
    """Snapshot of a server-tracked checkout session."""

    def __init__(self, data: Dict[str, Any]):
        self.data = dict(data)
        self.session_id = str(data.get("id") or data.get("sessionId") or "")
        self.expires_at = _parse_datetime(data.get("expiresAt"))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and (now or utc_now()) >= self.expires_at


class CheckoutSessionManager:
    """Creates, fetches and updates server checkout sessions."""

    def __init__(self, api: CheckoutApiClient, store_id: str):
        self._api = api
        self.store_id = str(store_id)
        self.current: Optional[RemoteSession] = None

    async def create(self, items: List[CheckoutItem]) -> RemoteSession:
        data = await self._api.create_session(self.store_id, items)
        self.current = RemoteSession(data or {})
        logger.info(f"Created checkout session {self.current.session_id} for store {self.store_id}")
        return self.current

    async def get(self, session_id: str, now: Optional[datetime] = None) -> RemoteSession:
        """Fetch a session, raising SessionNotFound or SessionExpired."""
        try:
            data = await self._api.get_session(session_id)
        except CheckoutApiError as e:
            if e.status_code == 404:
                raise SessionNotFound(session_id) from e
            raise
        session = RemoteSession(data or {})
        if session.is_expired(now):
            raise SessionExpired(session_id, session.expires_at)
        self.current = session
        return session

    async def update(self, session_id: str, updates: Dict[str, Any]) -> RemoteSession:
        try:
            data = await self._api.update_session(session_id, updates)
        except CheckoutApiError as e:
            if e.status_code == 404:
                raise SessionNotFound(session_id) from e
            raise
        self.current = RemoteSession(data or {})
        return self.current

    async def apply_coupon(self, coupon_code: str) -> Dict[str, Any]:
        if self.current is None:
            raise SessionError("No active checkout session", code="NO_SESSION")
        return await self._api.apply_coupon(self.current.session_id, coupon_code)

    async def remove_coupon(self) -> None:
        if self.current is None:
            raise SessionError("No active checkout session", code="NO_SESSION")
        await self._api.remove_coupon(self.current.session_id)
