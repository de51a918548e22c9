"""Key-value state stores with per-entry expiry.

Sessions, CAPTCHA challenges, lockout counters, the session blacklist and the
credential nonce map all live behind :class:`KeyValueStore`. The in-memory
variant serves a single process; the Redis variant lets several workers share
the same guarantees.
"""

from __future__ import annotations

import copy
import json
import logging
import time
from collections.abc import Callable, Iterator
from threading import Lock
from typing import Any, Protocol

import redis

from cid_portal.core.errors import TransientSystemError
from cid_portal.core.settings import Settings

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Mutator = Callable[[dict[str, Any] | None], dict[str, Any] | None]


class KeyValueStore(Protocol):
    """Capability shared by every state backend.

    Values are JSON-compatible mappings; callers always receive a copy, so
    mutating a returned value has no effect until it is written back.

    ``pop``, ``add`` and ``update`` are atomic with respect to every other
    call on the same key. ``update`` passes the current value (or None) to
    ``mutate`` and stores what it returns; returning None deletes the key.
    ``mutate`` may run more than once under contention, so anything it records
    outside its return value must be reset on each call. With
    ``ttl_seconds=None`` an existing expiry is kept.
    """

    namespace: str

    def get(self, key: str) -> dict[str, Any] | None: ...

    def set(self, key: str, value: dict[str, Any], ttl_seconds: float | None = None) -> None: ...

    def delete(self, key: str) -> bool: ...

    def pop(self, key: str) -> dict[str, Any] | None: ...

    def add(self, key: str, value: dict[str, Any], ttl_seconds: float | None = None) -> bool: ...

    def update(
        self, key: str, mutate: Mutator, ttl_seconds: float | None = None
    ) -> dict[str, Any] | None: ...

    def contains(self, key: str) -> bool: ...

    def items(self) -> Iterator[tuple[str, dict[str, Any]]]: ...

    def sweep(self) -> int: ...

    def clear(self) -> int: ...

    def __len__(self) -> int: ...


class MemoryStore:
    """Process-local store guarded by a lock."""

    def __init__(self, namespace: str, clock: Clock = time.time) -> None:
        self.namespace = namespace
        self._clock = clock
        self._data: dict[str, tuple[dict[str, Any], float | None]] = {}
        self._lock = Lock()

    def _expired(self, expires_at: float | None, now: float) -> bool:
        return expires_at is not None and expires_at <= now

    def get(self, key: str) -> dict[str, Any] | None:
        now = self._clock()
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._expired(expires_at, now):
                del self._data[key]
                return None
            return copy.deepcopy(value)

    def set(self, key: str, value: dict[str, Any], ttl_seconds: float | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        with self._lock:
            self._data[key] = (copy.deepcopy(value), expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def _live(self, key: str, now: float) -> tuple[dict[str, Any], float | None] | None:
        # caller holds the lock
        entry = self._data.get(key)
        if entry is None:
            return None
        if self._expired(entry[1], now):
            del self._data[key]
            return None
        return entry

    def pop(self, key: str) -> dict[str, Any] | None:
        now = self._clock()
        with self._lock:
            entry = self._live(key, now)
            if entry is None:
                return None
            del self._data[key]
            return entry[0]

    def add(self, key: str, value: dict[str, Any], ttl_seconds: float | None = None) -> bool:
        now = self._clock()
        with self._lock:
            if self._live(key, now) is not None:
                return False
            expires_at = now + ttl_seconds if ttl_seconds is not None else None
            self._data[key] = (copy.deepcopy(value), expires_at)
            return True

    def update(
        self, key: str, mutate: Mutator, ttl_seconds: float | None = None
    ) -> dict[str, Any] | None:
        now = self._clock()
        with self._lock:
            entry = self._live(key, now)
            current, expires_at = (copy.deepcopy(entry[0]), entry[1]) if entry else (None, None)
            updated = mutate(current)
            if updated is None:
                self._data.pop(key, None)
                return None
            if ttl_seconds is not None:
                expires_at = now + ttl_seconds
            self._data[key] = (copy.deepcopy(updated), expires_at)
            return copy.deepcopy(updated)

    def contains(self, key: str) -> bool:
        return self.get(key) is not None

    def items(self) -> Iterator[tuple[str, dict[str, Any]]]:
        now = self._clock()
        with self._lock:
            snapshot = [
                (key, copy.deepcopy(value))
                for key, (value, expires_at) in self._data.items()
                if not self._expired(expires_at, now)
            ]
        return iter(snapshot)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, (_, exp) in self._data.items() if self._expired(exp, now)]
            for key in stale:
                del self._data[key]
        return len(stale)

    def clear(self) -> int:
        with self._lock:
            count = len(self._data)
            self._data.clear()
        return count

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for _, exp in self._data.values() if not self._expired(exp, now))


class RedisStore:
    """Redis-backed store; expiry is delegated to Redis key TTLs."""

    def __init__(self, client: redis.Redis, namespace: str) -> None:
        self.namespace = namespace
        self._redis = client

    def _key(self, key: str) -> str:
        return f"cid:{self.namespace}:{key}"

    def _strip(self, raw_key: str | bytes) -> str:
        if isinstance(raw_key, bytes):
            raw_key = raw_key.decode()
        return raw_key[len(self._key("")) :]

    def get(self, key: str) -> dict[str, Any] | None:
        try:
            raw = self._redis.get(self._key(key))
        except redis.RedisError as exc:
            logger.exception("Redis read failed for %s", self.namespace)
            raise TransientSystemError("State store unavailable") from exc
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: dict[str, Any], ttl_seconds: float | None = None) -> None:
        payload = json.dumps(value, separators=(",", ":"))
        try:
            if ttl_seconds is not None:
                self._redis.set(self._key(key), payload, px=max(1, int(ttl_seconds * 1000)))
            else:
                self._redis.set(self._key(key), payload)
        except redis.RedisError as exc:
            logger.exception("Redis write failed for %s", self.namespace)
            raise TransientSystemError("State store unavailable") from exc

    def delete(self, key: str) -> bool:
        try:
            return bool(self._redis.delete(self._key(key)))
        except redis.RedisError as exc:
            logger.exception("Redis delete failed for %s", self.namespace)
            raise TransientSystemError("State store unavailable") from exc

    def pop(self, key: str) -> dict[str, Any] | None:
        try:
            raw = self._redis.getdel(self._key(key))
        except redis.RedisError as exc:
            logger.exception("Redis pop failed for %s", self.namespace)
            raise TransientSystemError("State store unavailable") from exc
        return json.loads(raw) if raw is not None else None

    def add(self, key: str, value: dict[str, Any], ttl_seconds: float | None = None) -> bool:
        payload = json.dumps(value, separators=(",", ":"))
        px = max(1, int(ttl_seconds * 1000)) if ttl_seconds is not None else None
        try:
            return bool(self._redis.set(self._key(key), payload, px=px, nx=True))
        except redis.RedisError as exc:
            logger.exception("Redis add failed for %s", self.namespace)
            raise TransientSystemError("State store unavailable") from exc

    def update(
        self, key: str, mutate: Mutator, ttl_seconds: float | None = None
    ) -> dict[str, Any] | None:
        redis_key = self._key(key)

        def apply(pipe: redis.client.Pipeline) -> dict[str, Any] | None:
            raw = pipe.get(redis_key)
            updated = mutate(json.loads(raw) if raw is not None else None)
            pipe.multi()
            if updated is None:
                pipe.delete(redis_key)
                return None
            payload = json.dumps(updated, separators=(",", ":"))
            if ttl_seconds is not None:
                pipe.set(redis_key, payload, px=max(1, int(ttl_seconds * 1000)))
            else:
                pipe.set(redis_key, payload, keepttl=True)
            return updated

        try:
            return self._redis.transaction(apply, redis_key, value_from_callable=True)
        except redis.RedisError as exc:
            logger.exception("Redis update failed for %s", self.namespace)
            raise TransientSystemError("State store unavailable") from exc

    def contains(self, key: str) -> bool:
        try:
            return bool(self._redis.exists(self._key(key)))
        except redis.RedisError as exc:
            raise TransientSystemError("State store unavailable") from exc

    def items(self) -> Iterator[tuple[str, dict[str, Any]]]:
        results: list[tuple[str, dict[str, Any]]] = []
        for raw_key in self._redis.scan_iter(match=self._key("*")):
            raw = self._redis.get(raw_key)
            if raw is not None:
                results.append((self._strip(raw_key), json.loads(raw)))
        return iter(results)

    def sweep(self) -> int:
        return 0

    def clear(self) -> int:
        keys = list(self._redis.scan_iter(match=self._key("*")))
        if not keys:
            return 0
        return int(self._redis.delete(*keys))

    def __len__(self) -> int:
        return sum(1 for _ in self._redis.scan_iter(match=self._key("*")))


_REDIS_CLIENTS: dict[str, redis.Redis] = {}
_CLIENT_LOCK = Lock()


def _redis_client(url: str) -> redis.Redis:
    with _CLIENT_LOCK:
        client = _REDIS_CLIENTS.get(url)
        if client is None:
            client = redis.Redis.from_url(url, decode_responses=True)
            _REDIS_CLIENTS[url] = client
        return client


def create_store(config: Settings, namespace: str, clock: Clock = time.time) -> KeyValueStore:
    """Return the store selected by ``STORE_BACKEND`` for ``namespace``.

    Raises:
        ValueError: If the configured backend is unknown.
    """
    backend = config.store_backend.lower()
    if backend == "memory":
        return MemoryStore(namespace, clock=clock)
    if backend == "redis":
        return RedisStore(_redis_client(config.redis_url), namespace)
    raise ValueError(f"Unsupported STORE_BACKEND: {config.store_backend}")


__all__ = ["Clock", "KeyValueStore", "MemoryStore", "Mutator", "RedisStore", "create_store"]
