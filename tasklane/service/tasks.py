from __future__ import annotations

import json
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from tasklane.logging import get_logger
from tasklane.service.enrichment import EnrichmentService
from tasklane.service.errors import NotFoundError
from tasklane.storage.models import NewTask, TagSummary, Task, TaskPage, TaskQuery

logger = get_logger(__name__)

SpawnBackground = Callable[..., Any]


class TaskStore(Protocol):
    async def list_tasks(self, user_id: int, query: TaskQuery) -> Tuple[List[Task], int]: ...

    async def get_task(self, user_id: int, task_id: int) -> Optional[Task]: ...

    async def create_task(self, user_id: int, new_task: NewTask) -> Task: ...

    async def update_task(
        self,
        user_id: int,
        task_id: int,
        changes: Dict[str, Any],
        tag_ids: Optional[List[int]] = None,
    ) -> Optional[Task]: ...

    async def delete_task(self, user_id: int, task_id: int) -> bool: ...


class TaskCache(Protocol):
    async def get_task_list(self, user_id: int) -> Optional[str]: ...

    async def set_task_list(self, user_id: int, payload: str, ttl: int) -> None: ...

    async def get_task(self, user_id: int, task_id: int) -> Optional[str]: ...

    async def set_task(self, user_id: int, task_id: int, payload: str, ttl: int) -> None: ...

    async def invalidate_tasks(self, user_id: int, task_id: Optional[int] = None) -> None: ...


def _json_default(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"unserializable value: {type(value).__name__}")


def _task_to_dict(task: Task) -> Dict[str, Any]:
    return asdict(task)


def _task_from_dict(data: Dict[str, Any]) -> Task:
    fields = dict(data)
    fields["tags"] = [TagSummary(**tag) for tag in fields.get("tags") or []]
    if fields.get("due_date"):
        fields["due_date"] = date.fromisoformat(fields["due_date"])
    for key in ("completed_at", "created_at", "updated_at"):
        if fields.get(key):
            fields[key] = datetime.fromisoformat(fields[key])
    return Task(**fields)


def encode_task(task: Task) -> str:
    return json.dumps(_task_to_dict(task), default=_json_default)


def decode_task(payload: str) -> Task:
    return _task_from_dict(json.loads(payload))


def encode_page(page: TaskPage) -> str:
    return json.dumps(
        {
            "tasks": [_task_to_dict(task) for task in page.tasks],
            "total": page.total,
            "page": page.page,
            "limit": page.limit,
        },
        default=_json_default,
    )


def decode_page(payload: str) -> TaskPage:
    data = json.loads(payload)
    return TaskPage(
        tasks=[_task_from_dict(task) for task in data["tasks"]],
        total=data["total"],
        page=data["page"],
        limit=data["limit"],
    )


class TaskService:
    """Task reads and writes with a per-user cache-aside layer.

    Only the default listing (no filters, first page, default page size)
    and single-task reads are cached. Every successful write drops the
    user's list snapshot, and updates/deletes also drop the item snapshot,
    before returning. Cache failures never fail the request.
    """

    def __init__(
        self,
        store: TaskStore,
        cache: TaskCache,
        *,
        enrichment: EnrichmentService,
        spawn: SpawnBackground,
        ttl_seconds: int = 60,
    ) -> None:
        self.store = store
        self.cache = cache
        self.enrichment = enrichment
        self.spawn = spawn
        self.ttl_seconds = ttl_seconds

    # cache helpers -----------------------------------------------------------
    async def _cache_read(
        self, pending: Awaitable[Optional[str]], **log_fields: Any
    ) -> Optional[str]:
        try:
            return await pending
        except Exception as exc:
            logger.warning("cache_read_failed", error=str(exc), **log_fields)
            return None

    async def _cache_write(self, pending: Awaitable[None], **log_fields: Any) -> None:
        try:
            await pending
        except Exception as exc:
            logger.warning("cache_write_failed", error=str(exc), **log_fields)

    async def _invalidate(self, user_id: int, task_id: Optional[int] = None) -> None:
        try:
            await self.cache.invalidate_tasks(user_id, task_id)
        except Exception as exc:
            logger.warning(
                "cache_invalidate_failed", user_id=user_id, task_id=task_id, error=str(exc)
            )

    # reads -------------------------------------------------------------------
    async def list_tasks(self, user_id: int, query: TaskQuery) -> TaskPage:
        cacheable = query.is_default
        if cacheable:
            cached = await self._cache_read(
                self.cache.get_task_list(user_id), user_id=user_id
            )
            if cached is not None:
                try:
                    return decode_page(cached)
                except (ValueError, KeyError, TypeError):
                    logger.warning("cache_entry_corrupt", user_id=user_id, key="tasks")

        tasks, total = await self.store.list_tasks(user_id, query)
        page = TaskPage(tasks=tasks, total=total, page=query.page, limit=query.limit)
        if cacheable:
            await self._cache_write(
                self.cache.set_task_list(user_id, encode_page(page), self.ttl_seconds),
                user_id=user_id,
            )
        return page

    async def get_task(self, user_id: int, task_id: int) -> Task:
        cached = await self._cache_read(
            self.cache.get_task(user_id, task_id), user_id=user_id, task_id=task_id
        )
        if cached is not None:
            try:
                return decode_task(cached)
            except (ValueError, KeyError, TypeError):
                logger.warning("cache_entry_corrupt", user_id=user_id, task_id=task_id)

        task = await self.store.get_task(user_id, task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        await self._cache_write(
            self.cache.set_task(user_id, task_id, encode_task(task), self.ttl_seconds),
            user_id=user_id,
            task_id=task_id,
        )
        return task

    # writes ------------------------------------------------------------------
    async def create_task(self, user_id: int, new_task: NewTask) -> Task:
        task = await self.store.create_task(user_id, new_task)
        await self._invalidate(user_id)
        self.spawn(
            self.enrichment.enrich(user_id, task.id, task.title, task.description),
            name=f"enrich-task-{task.id}",
        )
        logger.info("task_created", user_id=user_id, task_id=task.id)
        return task

    async def update_task(
        self,
        user_id: int,
        task_id: int,
        changes: Dict[str, Any],
        tag_ids: Optional[List[int]] = None,
    ) -> Task:
        task = await self.store.update_task(user_id, task_id, changes, tag_ids)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        await self._invalidate(user_id, task_id)
        return task

    async def delete_task(self, user_id: int, task_id: int) -> None:
        deleted = await self.store.delete_task(user_id, task_id)
        if not deleted:
            raise NotFoundError(f"Task {task_id} not found")
        await self._invalidate(user_id, task_id)
        logger.info("task_deleted", user_id=user_id, task_id=task_id)
