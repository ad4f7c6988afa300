from __future__ import annotations

import asyncio
import threading
from typing import Dict, Optional, Union
from urllib.parse import urlparse, urlunparse

from tasklane.config import get_settings, reset_settings_cache
from tasklane.logging import get_logger
from tasklane.service.auth import AuthService
from tasklane.service.background import BackgroundSupervisor
from tasklane.service.enrichment import EnrichmentService
from tasklane.service.llm import LLMService
from tasklane.service.rate_limit import RateLimiter
from tasklane.service.tags import TagService
from tasklane.service.tasks import TaskService
from tasklane.storage.memory import MemoryStore
from tasklane.storage.postgres import PostgresStore
from tasklane.storage.redis_cache import MemoryCache, RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the collaborators shared by all requests.

    Nothing here is per-request or per-user state: persistent data lives in
    the store, ephemeral snapshots and counters live in the cache.
    """

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store: Union[MemoryStore, PostgresStore] = (
            MemoryStore()
            if self.settings.use_memory_store
            else PostgresStore(self.settings.database_url)
        )
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
        )

        self.cache = self._build_cache()

        self.llm: Optional[LLMService] = None
        if self.settings.llm_api_key:
            self.llm = LLMService(
                self.settings.llm_model,
                api_key=self.settings.llm_api_key,
                base_url=self.settings.llm_base_url,
                timeout=self.settings.llm_timeout_seconds,
            )
        else:
            logger.info("llm_disabled", reason="LLM_API_KEY not set")

        self.background = BackgroundSupervisor()
        self.auth = AuthService(self.store, self.settings)
        self.enrichment = EnrichmentService(
            self.store,
            self.cache,
            self.llm,
            max_tokens=self.settings.llm_max_tokens,
            max_summary_chars=self.settings.ai_summary_max_chars,
        )
        self.tasks = TaskService(
            self.store,
            self.cache,
            enrichment=self.enrichment,
            spawn=self.background.spawn,
            ttl_seconds=self.settings.cache_ttl_seconds,
        )
        self.tags = TagService(self.store)
        self.rate_limiter = RateLimiter(
            self.cache,
            max_requests=self.settings.rate_limit_max_requests,
            window_seconds=self.settings.rate_limit_window_seconds,
            fail_open=self.settings.rate_limit_fail_open,
        )

    def _build_cache(self) -> Union[RedisCache, MemoryCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for task caching and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; task snapshots and "
                "rate-limit counters are per-process only."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def startup(self) -> None:
        if isinstance(self.store, PostgresStore):
            await self.store.open()
        logger.info("runtime_started")

    async def shutdown(self) -> None:
        if self.background.pending:
            logger.info("background_draining", pending=self.background.pending)
        await self.background.drain(timeout=self.settings.background_drain_timeout_seconds)
        if self.llm is not None:
            await self.llm.close()
        await self.cache.close()
        await self.store.close()
        logger.info("runtime_stopped")

    async def health(self, timeout: Optional[float] = None) -> Dict[str, str]:
        """Probe the store and cache; a probe that errors or times out is ``unavailable``."""
        checks: Dict[str, str] = {}
        for name, component in (("store", self.store), ("cache", self.cache)):
            try:
                healthy = await asyncio.wait_for(component.ping(), timeout=timeout)
                checks[name] = "ok" if healthy else "unavailable"
            except Exception as exc:
                logger.warning("health_check_failed", component=name, error=str(exc))
                checks[name] = "unavailable"
        return checks


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
