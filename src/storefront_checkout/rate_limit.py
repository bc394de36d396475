"""Payment retry limiting per customer identity.

Failed payment attempts are counted per customer email inside a sliding
window. Once the count reaches the ceiling the identity is blocked until the
window elapses. State lives in an injectable RateLimitStore so it outlives
any single checkout flow, and a successful payment resets it.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, replace
from typing import Any, Callable, Dict, Optional

import redis.asyncio as aioredis

from storefront_checkout.config import CheckoutSettings
from storefront_checkout.models import RateLimitState

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class RateLimitStore(ABC):
    """Abstract storage for per-identity retry state."""

    @abstractmethod
    async def get(self, key: str) -> Optional[RateLimitState]:
        pass

    @abstractmethod
    async def set(self, key: str, state: RateLimitState) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local retry state."""

    def __init__(self):
        self._states: Dict[str, RateLimitState] = {}

    async def get(self, key: str) -> Optional[RateLimitState]:
        state = self._states.get(key)
        return replace(state) if state is not None else None

    async def set(self, key: str, state: RateLimitState) -> None:
        self._states[key] = replace(state)

    async def delete(self, key: str) -> None:
        self._states.pop(key, None)


class RedisRateLimitStore(RateLimitStore):
    """
    Redis-backed retry state, shared by every process serving the storefront.

    Entries expire after ``ttl_seconds`` so abandoned identities do not pile up.
    """

    def __init__(
        self,
        redis_url: str = "",
        client: Any = None,
        namespace: str = "storefront:retry",
        ttl_seconds: int = 15 * 60,
    ):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self._redis_url = redis_url
        self._client = client
        self._namespace = namespace
        self._ttl = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[RateLimitState]:
        raw = await self._get_client().get(self._key(key))
        if raw is None:
            return None
        try:
            return RateLimitState(**json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding unreadable retry state for {key}: {e}")
            return None

    async def set(self, key: str, state: RateLimitState) -> None:
        await self._get_client().setex(self._key(key), self._ttl, json.dumps(asdict(state)))

    async def delete(self, key: str) -> None:
        await self._get_client().delete(self._key(key))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class RetryRateLimiter:
    """
    Limits repeated failed payment attempts for one customer.

    Example:
        limiter = RetryRateLimiter(max_attempts=5, window_seconds=900)

        if await limiter.can_attempt("customer@example.com"):
            ...
        else:
            wait = await limiter.get_remaining_time("customer@example.com")
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        max_attempts: int = 5,
        window_seconds: float = 15 * 60,
        warning_threshold: int = 3,
        clock: Clock = time.time,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store or InMemoryRateLimitStore()
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.warning_threshold = warning_threshold
        self._clock = clock
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: CheckoutSettings,
        store: Optional[RateLimitStore] = None,
        clock: Clock = time.time,
    ) -> "RetryRateLimiter":
        return cls(
            store=store,
            max_attempts=settings.rate_limit_max_attempts,
            window_seconds=settings.rate_limit_window_seconds,
            warning_threshold=settings.rate_limit_warning_threshold,
            clock=clock,
        )

    @staticmethod
    def _key(identity: str) -> str:
        return identity.strip().lower()

    def _expires_at(self, state: RateLimitState) -> Optional[float]:
        if state.blocked_until is not None:
            return state.blocked_until
        if state.window_started_at is not None:
            return state.window_started_at + self.window_seconds
        return None

    async def get_state(self, identity: str) -> RateLimitState:
        """Current state, with an elapsed window treated as a clean slate."""
        key = self._key(identity)
        state = await self.store.get(key)
        if state is None:
            return RateLimitState()
        expires_at = self._expires_at(state)
        if expires_at is not None and self._clock() >= expires_at:
            await self.store.delete(key)
            return RateLimitState()
        return state

    async def can_attempt(self, identity: str) -> bool:
        state = await self.get_state(identity)
        return state.attempt_count < self.max_attempts

    async def record_failure(self, identity: str) -> RateLimitState:
        """Count one failed attempt. Blocks the identity on reaching the ceiling."""
        async with self._lock:
            state = await self.get_state(identity)
            now = self._clock()
            if state.window_started_at is None:
                state.window_started_at = now
            state.attempt_count += 1
            if state.attempt_count >= self.max_attempts and state.blocked_until is None:
                state.blocked_until = now + self.window_seconds
                logger.warning(
                    f"Payment attempts blocked for {self.window_seconds:.0f}s after "
                    f"{state.attempt_count} failures"
                )
            await self.store.set(self._key(identity), state)
            return state

    async def get_remaining_time(self, identity: str) -> float:
        """Seconds until the current window resets (0 when nothing is recorded)."""
        state = await self.get_state(identity)
        if state.attempt_count == 0:
            return 0.0
        expires_at = self._expires_at(state)
        if expires_at is None:
            return 0.0
        return max(0.0, expires_at - self._clock())

    async def remaining_attempts(self, identity: str) -> int:
        state = await self.get_state(identity)
        return max(0, self.max_attempts - state.attempt_count)

    async def should_warn(self, identity: str) -> bool:
        """True once enough failures have piled up to show the attempts-remaining notice."""
        state = await self.get_state(identity)
        return self.warning_threshold <= state.attempt_count < self.max_attempts

    async def reset(self, identity: str) -> None:
        async with self._lock:
            await self.store.delete(self._key(identity))
