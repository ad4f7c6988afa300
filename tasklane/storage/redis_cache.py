from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


def task_list_key(user_id: int) -> str:
    return f"tasks:{user_id}"


def task_item_key(user_id: int, task_id: int) -> str:
    return f"task:{user_id}:{task_id}"


def rate_limit_key(client_ip: str) -> str:
    return f"rl:{client_ip}"


class CacheBackend(ABC):
    """Key layout shared by cache backends.

    Values are opaque serialized snapshots; callers own the encoding.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None:
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> None:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    async def get_task_list(self, user_id: int) -> Optional[str]:
        return await self.get(task_list_key(user_id))

    async def set_task_list(self, user_id: int, payload: str, ttl: int) -> None:
        await self.set(task_list_key(user_id), payload, ttl)

    async def get_task(self, user_id: int, task_id: int) -> Optional[str]:
        return await self.get(task_item_key(user_id, task_id))

    async def set_task(self, user_id: int, task_id: int, payload: str, ttl: int) -> None:
        await self.set(task_item_key(user_id, task_id), payload, ttl)

    async def invalidate_tasks(self, user_id: int, task_id: Optional[int] = None) -> None:
        keys = [task_list_key(user_id)]
        if task_id is not None:
            keys.append(task_item_key(user_id, task_id))
        await self.delete(*keys)

    async def invalidate_task(self, user_id: int, task_id: int) -> None:
        await self.delete(task_item_key(user_id, task_id))

    async def get_rate_count(self, client_ip: str) -> int:
        raw = await self.get(rate_limit_key(client_ip))
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    async def set_rate_count(self, client_ip: str, count: int, ttl: int) -> None:
        await self.set(rate_limit_key(client_ip), str(count), ttl)


class RedisCache(CacheBackend):
    """Thin Redis wrapper for task snapshots and rate-limit counters."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # A short-lived synchronous client keeps the async client from binding
        # to a temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl)))

    async def delete(self, *keys: str) -> None:
        if keys:
            await self.client.delete(*keys)


class MemoryCache(CacheBackend):
    """In-process TTL cache used when Redis is disabled in test/dev.

    Expired entries are dropped on read and swept on write at most once per
    ``sweep_interval`` seconds, so keys that are never read again do not
    accumulate.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 30.0,
    ) -> None:
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + sweep_interval

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            now = self._clock()
            if now >= self._next_sweep:
                self._sweep(now)
            self._entries[key] = (value, now + max(1, int(ttl)))

    def _sweep(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self._sweep_interval

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    async def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)
