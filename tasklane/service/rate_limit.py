from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from tasklane.logging import get_logger

logger = get_logger(__name__)


class CounterStore(Protocol):
    async def get_rate_count(self, client_ip: str) -> int: ...

    async def set_rate_count(self, client_ip: str, count: int, ttl: int) -> None: ...


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    retry_after: int = 0


class RateLimiter:
    """Per-address request counter whose TTL is reset on every admitted request.

    The read and the rewrite are separate calls, so concurrent requests from
    one address may both read the same count (last write wins).
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        max_requests: int = 60,
        window_seconds: int = 60,
        fail_open: bool = True,
    ) -> None:
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.fail_open = fail_open

    async def check(self, client_ip: str) -> RateLimitDecision:
        try:
            count = await self.store.get_rate_count(client_ip)
            if count >= self.max_requests:
                logger.warning("rate_limit_exceeded", ip=client_ip, count=count)
                return RateLimitDecision(
                    allowed=False, count=count, retry_after=self.window_seconds
                )
            await self.store.set_rate_count(client_ip, count + 1, self.window_seconds)
            return RateLimitDecision(allowed=True, count=count + 1)
        except Exception as exc:
            logger.warning(
                "rate_limit_store_unavailable",
                ip=client_ip,
                error=str(exc),
                fail_open=self.fail_open,
            )
            if self.fail_open:
                return RateLimitDecision(allowed=True, count=0)
            return RateLimitDecision(allowed=False, count=0, retry_after=self.window_seconds)
