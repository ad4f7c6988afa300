"""Tests for the per-user cache-aside layer in TaskService.

Covers hit/miss behavior, which queries are cached, invalidation on every
write, tenant isolation of cache keys, and resilience to cache failures.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from tasklane.service.errors import NotFoundError
from tasklane.service.tasks import TaskService, decode_task, encode_page, encode_task
from tasklane.storage.memory import MemoryStore
from tasklane.storage.models import NewTask, TaskPage, TaskQuery
from tasklane.storage.redis_cache import CacheBackend, MemoryCache, task_item_key, task_list_key


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def spawn():
    def _spawn(coro, *, name="background"):
        # enrichment is not under test here
        coro.close()

    return MagicMock(side_effect=_spawn)


@pytest.fixture
def service(store, cache, spawn):
    enrichment = MagicMock()
    enrichment.enrich = AsyncMock(return_value=False)
    return TaskService(store, cache, enrichment=enrichment, spawn=spawn, ttl_seconds=60)


class TestListCaching:
    async def test_default_list_is_cached(self, service, store, cache):
        await service.create_task(1, NewTask(title="first"))
        page = await service.list_tasks(1, TaskQuery())
        assert page.total == 1
        assert await cache.get(task_list_key(1)) is not None

        store.list_tasks = AsyncMock(side_effect=AssertionError("store should not be hit"))
        cached = await service.list_tasks(1, TaskQuery())
        assert [task.title for task in cached.tasks] == ["first"]

    @pytest.mark.parametrize(
        "query",
        [
            TaskQuery(status="todo"),
            TaskQuery(search="first"),
            TaskQuery(page=2),
            TaskQuery(limit=5),
        ],
    )
    async def test_filtered_or_paged_lists_bypass_cache(self, service, cache, query):
        await service.create_task(1, NewTask(title="first"))
        await service.list_tasks(1, query)
        assert await cache.get(task_list_key(1)) is None

    async def test_create_invalidates_list(self, service, cache):
        await service.list_tasks(1, TaskQuery())
        assert await cache.get(task_list_key(1)) is not None
        await service.create_task(1, NewTask(title="new"))
        assert await cache.get(task_list_key(1)) is None
        page = await service.list_tasks(1, TaskQuery())
        assert page.total == 1

    async def test_cache_keys_are_per_user(self, service, cache):
        await service.create_task(1, NewTask(title="mine"))
        await service.create_task(2, NewTask(title="theirs"))
        mine = await service.list_tasks(1, TaskQuery())
        theirs = await service.list_tasks(2, TaskQuery())
        assert [task.title for task in mine.tasks] == ["mine"]
        assert [task.title for task in theirs.tasks] == ["theirs"]

    async def test_corrupt_snapshot_treated_as_miss(self, service, cache):
        await service.create_task(1, NewTask(title="first"))
        await cache.set(task_list_key(1), "{not json", 60)
        page = await service.list_tasks(1, TaskQuery())
        assert page.total == 1


class TestItemCaching:
    async def test_get_populates_item_snapshot(self, service, cache):
        task = await service.create_task(1, NewTask(title="first"))
        await service.get_task(1, task.id)
        snapshot = await cache.get(task_item_key(1, task.id))
        assert decode_task(snapshot).title == "first"

    async def test_update_invalidates_item_and_list(self, service, cache):
        task = await service.create_task(1, NewTask(title="first"))
        await service.get_task(1, task.id)
        await service.list_tasks(1, TaskQuery())

        updated = await service.update_task(1, task.id, {"status": "done"})
        assert updated.completed_at is not None
        assert await cache.get(task_item_key(1, task.id)) is None
        assert await cache.get(task_list_key(1)) is None
        assert (await service.get_task(1, task.id)).status == "done"

    async def test_delete_invalidates_and_404s(self, service, cache):
        task = await service.create_task(1, NewTask(title="first"))
        await service.get_task(1, task.id)
        await service.delete_task(1, task.id)
        assert await cache.get(task_item_key(1, task.id)) is None
        with pytest.raises(NotFoundError):
            await service.get_task(1, task.id)
        with pytest.raises(NotFoundError) as exc_info:
            await service.delete_task(1, task.id)
        assert exc_info.value.message == f"Task {task.id} not found"

    async def test_other_users_task_is_not_found(self, service):
        task = await service.create_task(1, NewTask(title="private"))
        with pytest.raises(NotFoundError):
            await service.get_task(2, task.id)
        with pytest.raises(NotFoundError):
            await service.update_task(2, task.id, {"title": "hijack"})
        with pytest.raises(NotFoundError):
            await service.delete_task(2, task.id)


class TestCacheFailures:
    @pytest.fixture
    def broken_cache(self):
        cache = MagicMock()
        for name in ("get_task_list", "set_task_list", "get_task", "set_task", "invalidate_tasks"):
            setattr(cache, name, AsyncMock(side_effect=ConnectionError("redis down")))
        return cache

    async def test_reads_and_writes_survive_cache_outage(self, store, broken_cache, spawn):
        enrichment = MagicMock()
        enrichment.enrich = AsyncMock(return_value=False)
        service = TaskService(store, broken_cache, enrichment=enrichment, spawn=spawn)

        task = await service.create_task(1, NewTask(title="resilient"))
        assert (await service.get_task(1, task.id)).title == "resilient"
        assert (await service.list_tasks(1, TaskQuery())).total == 1
        await service.update_task(1, task.id, {"priority": "high"})
        await service.delete_task(1, task.id)


class TestEnrichmentHandoff:
    async def test_create_spawns_enrichment(self, service, spawn):
        task = await service.create_task(1, NewTask(title="T", description="D"))
        service.enrichment.enrich.assert_called_once_with(1, task.id, "T", "D")
        assert spawn.call_args.kwargs["name"] == f"enrich-task-{task.id}"


class TestSnapshotCodec:
    async def test_snapshot_preserves_dates_and_tags(self, store):
        tag = await store.create_tag(1, "work", "#123456")
        task = await store.create_task(
            1, NewTask(title="T", status="done", tag_ids=[tag.id])
        )
        restored = decode_task(encode_task(task))
        assert restored == task

    def test_page_encoding_keeps_totals(self):
        payload = encode_page(TaskPage(tasks=[], total=41, page=1, limit=20))
        assert '"total": 41' in payload


class TestMemoryCacheBackend:
    def test_backend_interface_is_abstract(self):
        with pytest.raises(TypeError):
            CacheBackend()

    async def test_expired_keys_are_swept_on_write(self):
        now = [1000.0]
        cache = MemoryCache(clock=lambda: now[0], sweep_interval=30)
        for index in range(50):
            await cache.set_rate_count(f"10.0.0.{index}", 1, ttl=60)
        assert cache.size() == 50

        now[0] += 61
        await cache.set_rate_count("10.0.1.1", 1, ttl=60)
        assert cache.size() == 1
        assert await cache.get_rate_count("10.0.1.1") == 1

    async def test_live_keys_survive_a_sweep(self):
        now = [1000.0]
        cache = MemoryCache(clock=lambda: now[0], sweep_interval=30)
        await cache.set("short", "a", ttl=10)
        await cache.set("long", "b", ttl=300)
        now[0] += 31
        await cache.set("fresh", "c", ttl=60)
        assert cache.size() == 2
        assert await cache.get("long") == "b"
        assert await cache.get("short") is None
