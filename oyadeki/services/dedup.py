"""Time-windowed duplicate suppression for webhook events and user actions.

Two independent windows are used:

- event level: at-most-once processing of a platform event that may be redelivered;
- action level: suppress double taps of the same postback by the same user.

The in-memory set is process local. With several API instances behind a load
balancer, set ``DEDUP_BACKEND=redis`` so all instances share the same keys.
"""

import os
import threading
import time
from typing import Callable, Optional, Protocol

import redis

from oyadeki.config import settings
from oyadeki.logging_config import get_logger

logger = get_logger("dedup")

EVENT_DEDUP_WINDOW_SECONDS = float(os.environ.get("EVENT_DEDUP_WINDOW_SECONDS", "120"))
ACTION_DEDUP_WINDOW_SECONDS = float(os.environ.get("ACTION_DEDUP_WINDOW_SECONDS", "3"))
DEDUP_SOCKET_TIMEOUT_SECONDS = float(os.environ.get("DEDUP_SOCKET_TIMEOUT_SECONDS", "0.3"))
DEDUP_KEY_PREFIX = "oyadeki:dedup"


class WindowedSet(Protocol):
    def seen(self, key: str, window_seconds: float) -> bool:
        """Return True if key was recorded within the window, otherwise record it and return False."""
        ...


class InMemoryWindowedSet:
    """Process-local windowed set with a lazy sweep on every lookup."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def seen(self, key: str, window_seconds: float) -> bool:
        now = self._clock()
        with self._lock:
            expired = [k for k, ts in self._entries.items() if now - ts > window_seconds]
            for k in expired:
                del self._entries[k]

            if key in self._entries:
                return True

            self._entries[key] = now
            return False


class RedisWindowedSet:
    """Shared windowed set backed by Redis key expiry (SET NX EX)."""

    def __init__(self, client, prefix: str = DEDUP_KEY_PREFIX, fallback: Optional[InMemoryWindowedSet] = None):
        self._client = client
        self._prefix = prefix
        self._fallback = fallback or InMemoryWindowedSet()

    def seen(self, key: str, window_seconds: float) -> bool:
        ttl_ms = max(int(window_seconds * 1000), 1)
        try:
            was_set = self._client.set(f"{self._prefix}:{key}", "1", px=ttl_ms, nx=True)
        except redis.RedisError as e:
            logger.warning(
                "Dedup redis unavailable, falling back to memory",
                extra={"context": {"key": key, "error": str(e)}},
            )
            return self._fallback.seen(key, window_seconds)
        return not was_set


_event_set: WindowedSet | None = None
_action_set: WindowedSet | None = None


def _build_windowed_set(namespace: str) -> WindowedSet:
    if settings.dedup_backend == "redis":
        client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=DEDUP_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=DEDUP_SOCKET_TIMEOUT_SECONDS,
        )
        return RedisWindowedSet(client, prefix=f"{DEDUP_KEY_PREFIX}:{namespace}")
    return InMemoryWindowedSet()


def get_event_set() -> WindowedSet:
    global _event_set
    if _event_set is None:
        _event_set = _build_windowed_set("event")
    return _event_set


def get_action_set() -> WindowedSet:
    global _action_set
    if _action_set is None:
        _action_set = _build_windowed_set("action")
    return _action_set


def reset_dedup_state() -> None:
    """Drop both windows (used by tests and on config reload)."""
    global _event_set, _action_set
    _event_set = None
    _action_set = None


def event_key(owner_id: str, webhook_event_id: str | None, timestamp: int | None) -> str:
    if webhook_event_id:
        return webhook_event_id
    return f"{owner_id}:{timestamp}"


def action_key(owner_id: str, descriptor: str) -> str:
    return f"{owner_id}:{descriptor}"


def is_duplicate_event(key: str, window_seconds: float = EVENT_DEDUP_WINDOW_SECONDS) -> bool:
    duplicate = get_event_set().seen(key, window_seconds)
    if duplicate:
        logger.info("Duplicate event skipped", extra={"context": {"event_key": key}})
    return duplicate


def is_duplicate_action(owner_id: str, descriptor: str, window_seconds: float = ACTION_DEDUP_WINDOW_SECONDS) -> bool:
    key = action_key(owner_id, descriptor)
    duplicate = get_action_set().seen(key, window_seconds)
    if duplicate:
        logger.info("Duplicate action suppressed", extra={"context": {"action_key": key}})
    return duplicate
