"""
Draft persistence for in-progress checkouts.

The draft is written under ``checkout-{storeId}`` as JSON
``{formData, currentStep, completedSteps}``. Writes are fire-and-forget and
coalesced: schedule_save() restarts a debounce timer and only the latest
snapshot is written when it fires. close() always performs one final flush.
"""
from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import redis.asyncio as aioredis

from storefront_checkout.models import CheckoutFormData, CheckoutStep

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "checkout-"


class StorageBackend(ABC):
    """Abstract string key/value storage for drafts."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get the stored value, or None."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store a value."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a value. Missing keys are not an error."""
        pass


class InMemoryStorageBackend(StorageBackend):
    """
    In-memory draft storage for development and testing.

    Note: drafts do not survive a process restart.
    """

    def __init__(self):
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)


class RedisStorageBackend(StorageBackend):
    """
    Redis-backed draft storage.

    Usage:
        backend = RedisStorageBackend(redis_url="redis://localhost:6379/0")
        await backend.set("checkout-42", payload)
    """

    def __init__(
        self,
        redis_url: str = "",
        client: Any = None,
        namespace: str = "storefront",
        ttl_seconds: Optional[int] = None,
    ):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self._redis_url = redis_url
        self._client = client
        self._namespace = namespace
        self._ttl = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}" if self._namespace else key

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[str]:
        raw = await self._get_client().get(self._key(key))
        if isinstance(raw, bytes):
            return raw.decode("utf-8")
        return raw

    async def set(self, key: str, value: str) -> None:
        client = self._get_client()
        if self._ttl:
            await client.setex(self._key(key), self._ttl, value)
        else:
            await client.set(self._key(key), value)

    async def delete(self, key: str) -> None:
        await self._get_client().delete(self._key(key))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


@dataclass
class CheckoutSnapshot:
    """What gets persisted for a draft checkout."""
    form_data: CheckoutFormData = field(default_factory=CheckoutFormData)
    current_step: CheckoutStep = CheckoutStep.CUSTOMER_INFO
    completed_steps: List[CheckoutStep] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "formData": self.form_data.to_dict(),
            "currentStep": CheckoutStep(self.current_step).value,
            "completedSteps": [CheckoutStep(s).value for s in self.completed_steps],
        }

    @classmethod
    def from_payload(cls, payload: Any) -> "CheckoutSnapshot":
        """Parse a stored payload. Raises ValueError on anything unexpected."""
        if not isinstance(payload, dict):
            raise ValueError("saved checkout is not an object")
        form = payload.get("formData")
        completed = payload.get("completedSteps")
        if not isinstance(form, dict):
            raise ValueError("saved checkout has no formData")
        if not isinstance(completed, list):
            raise ValueError("saved checkout has no completedSteps")
        for section in ("customerInfo", "shippingAddress", "paymentMethod"):
            if form.get(section) is not None and not isinstance(form[section], dict):
                raise ValueError(f"saved checkout {section} is not an object")
        return cls(
            form_data=CheckoutFormData.from_dict(form),
            current_step=CheckoutStep(payload.get("currentStep")),
            completed_steps=[CheckoutStep(s) for s in completed],
        )


def serialize_snapshot(snapshot: CheckoutSnapshot) -> str:
    """Deterministic JSON so an unchanged draft always serialises to the same bytes."""
    return json.dumps(snapshot.to_payload(), sort_keys=True, separators=(",", ":"))


class SessionPersistence:
    """Reads, debounces writes of and clears one store's draft checkout."""

    def __init__(
        self,
        store_id: str,
        backend: Optional[StorageBackend] = None,
        debounce_seconds: float = 2.0,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ):
        self.store_id = str(store_id)
        self.backend = backend or InMemoryStorageBackend()
        self.debounce_seconds = debounce_seconds
        self.key = f"{key_prefix}{self.store_id}"
        self._pending: Optional[str] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._write_lock = asyncio.Lock()
        self.last_written: Optional[str] = None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    async def load(self) -> Optional[CheckoutSnapshot]:
        """Restore the saved draft, or None when absent or unreadable."""
        try:
            raw = await self.backend.get(self.key)
        except Exception as e:
            logger.warning(f"Could not read saved checkout {self.key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return CheckoutSnapshot.from_payload(json.loads(raw))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Discarding unreadable saved checkout {self.key}: {e}")
            return None

    def schedule_save(self, snapshot: CheckoutSnapshot) -> None:
        """Queue a write; repeated calls inside the debounce window coalesce."""
        self._pending = serialize_snapshot(snapshot)
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce_seconds, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        task = asyncio.ensure_future(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> bool:
        """Write the pending snapshot now. Returns True if something was written."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        async with self._write_lock:
            payload, self._pending = self._pending, None
            if payload is None:
                return False
            try:
                await self.backend.set(self.key, payload)
            except Exception as e:
                logger.warning(f"Failed to save checkout {self.key}: {e}")
                return False
            self.last_written = payload
            return True

    async def save(self, snapshot: CheckoutSnapshot) -> bool:
        self._pending = serialize_snapshot(snapshot)
        return await self.flush()

    async def clear(self) -> None:
        """Drop the draft after a successful order. Failures are only logged."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None
        async with self._write_lock:
            try:
                await self.backend.delete(self.key)
            except Exception as e:
                logger.warning(f"Failed to clear saved checkout {self.key}: {e}")

    async def close(self) -> None:
        """Final flush on teardown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.flush()
