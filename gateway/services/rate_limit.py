"""Fixed-window rate limiting over an injectable counter store.

Each limiter counts requests per client key inside fixed windows. The first
request of a window creates ``{count: 1, window_reset_at: now + window_ms}``;
later requests increment the count until ``max_requests`` is reached; once
``now >= window_reset_at`` the entry is replaced rather than incremented.

Known limitation: a client can get up to ``2 * max_requests`` through in a
short burst straddling a window boundary. That is the price of O(1) state per
key and is not compensated for here.

Updates go through ``compare_and_set`` in a retry loop, so each
read-check-increment is atomic per key while unrelated keys never wait on
each other. The in-memory store serves a single process; a shared backend
only has to implement :class:`RateLimitStore`.
"""

from __future__ import annotations

import abc
import math
import time
from dataclasses import dataclass
from typing import Callable


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


@dataclass(frozen=True)
class RateLimitEntry:
    count: int
    window_reset_at: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    reset_at_ms: int
    retry_after_seconds: int


class RateLimitStore(abc.ABC):
    """Counter storage with compare-and-set semantics."""

    @abc.abstractmethod
    async def get(self, key: str) -> RateLimitEntry | None:
        """Return the current entry for *key*, or None."""

    @abc.abstractmethod
    async def compare_and_set(
        self, key: str, expected: RateLimitEntry | None, new: RateLimitEntry
    ) -> bool:
        """Store *new* only if the current entry still equals *expected*."""

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the entry for *key* if present."""

    @abc.abstractmethod
    async def purge_expired(self, now_ms: int) -> int:
        """Drop entries whose window has ended. Returns how many were removed."""


class InMemoryRateLimitStore(RateLimitStore):
    """Dict-backed store for a single event loop.

    Each method completes without awaiting, so no other task can interleave
    between the comparison and the write.
    """

    def __init__(self):
        self._entries: dict[str, RateLimitEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key):
        return self._entries.get(key)

    async def compare_and_set(self, key, expected, new):
        if self._entries.get(key) != expected:
            return False
        self._entries[key] = new
        return True

    async def delete(self, key):
        self._entries.pop(key, None)

    async def purge_expired(self, now_ms):
        expired = [k for k, e in self._entries.items() if now_ms >= e.window_reset_at]
        for key in expired:
            del self._entries[key]
        return len(expired)


def _retry_after(reset_at_ms: int, now_ms: int) -> int:
    return max(1, math.ceil((reset_at_ms - now_ms) / 1000))


class RateLimiter:
    """A named fixed-window policy.

    Limiters never share counters: keys are namespaced by *name*, and each
    limiter gets its own store unless one is passed in.
    """

    def __init__(
        self,
        name: str,
        window_ms: int,
        max_requests: int,
        store: RateLimitStore | None = None,
        clock: Callable[[], int] | None = None,
        message: str | None = None,
    ):
        if window_ms <= 0 or max_requests <= 0:
            raise ValueError("window_ms and max_requests must be positive")
        self.name = name
        self.window_ms = window_ms
        self.max_requests = max_requests
        self.store = store if store is not None else InMemoryRateLimitStore()
        self.clock = clock or monotonic_ms
        self.message = message or "Too many requests. Please try again later."

    def _key(self, client_key: str) -> str:
        return f"{self.name}:{client_key}"

    async def admit(self, client_key: str) -> RateLimitDecision:
        """Count one request for *client_key* and decide whether it may proceed."""
        key = self._key(client_key)
        while True:
            now = self.clock()
            current = await self.store.get(key)

            if current is None or now >= current.window_reset_at:
                fresh = RateLimitEntry(count=1, window_reset_at=now + self.window_ms)
                if await self.store.compare_and_set(key, current, fresh):
                    return RateLimitDecision(True, 1, fresh.window_reset_at, 0)
                continue

            if current.count >= self.max_requests:
                return RateLimitDecision(
                    False,
                    current.count,
                    current.window_reset_at,
                    _retry_after(current.window_reset_at, now),
                )

            bumped = RateLimitEntry(count=current.count + 1, window_reset_at=current.window_reset_at)
            if await self.store.compare_and_set(key, current, bumped):
                return RateLimitDecision(True, bumped.count, bumped.window_reset_at, 0)

    async def purge_expired(self) -> int:
        return await self.store.purge_expired(self.clock())


class FailedAttemptTracker:
    """Locks a client out after too many failed credential presentations.

    Failures are counted in a fixed window that starts at the first failure.
    Reaching *max_attempts* within the window locks the client until the
    window ends; a success clears the count.
    """

    def __init__(
        self,
        max_attempts: int,
        lockout_ms: int,
        store: RateLimitStore | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self.max_attempts = max_attempts
        self.lockout_ms = lockout_ms
        self.store = store if store is not None else InMemoryRateLimitStore()
        self.clock = clock or monotonic_ms

    async def retry_after(self, client_key: str) -> int:
        """Seconds until *client_key* may try again, or 0 if it is not locked."""
        entry = await self.store.get(client_key)
        now = self.clock()
        if entry is None or now >= entry.window_reset_at or entry.count < self.max_attempts:
            return 0
        return _retry_after(entry.window_reset_at, now)

    async def record_failure(self, client_key: str) -> int:
        """Count a failure and return the running total for the window."""
        while True:
            now = self.clock()
            current = await self.store.get(client_key)
            if current is None or now >= current.window_reset_at:
                new = RateLimitEntry(count=1, window_reset_at=now + self.lockout_ms)
            else:
                new = RateLimitEntry(
                    count=current.count + 1, window_reset_at=current.window_reset_at
                )
            if await self.store.compare_and_set(client_key, current, new):
                return new.count

    async def record_success(self, client_key: str) -> None:
        await self.store.delete(client_key)

    async def purge_expired(self) -> int:
        """Forget clients whose failure window has ended."""
        return await self.store.purge_expired(self.clock())
