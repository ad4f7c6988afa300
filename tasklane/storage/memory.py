from __future__ import annotations

import copy
import itertools
import threading
from typing import Any, Dict, List, Optional, Set, Tuple

from tasklane.logging import get_logger
from tasklane.storage.errors import ConstraintViolation
from tasklane.storage.models import (
    NewTask,
    Tag,
    TagSummary,
    Task,
    TaskQuery,
    User,
    resolve_completed_at,
    task_sort_key,
    utcnow,
)

_UPDATABLE_TASK_FIELDS = {"title", "description", "status", "priority", "due_date"}


class MemoryStore:
    """In-process store of record used for tests and local development.

    Mirrors the relational schema: per-user ownership on every query,
    case-insensitive unique emails, unique tag names per user and
    cascading removal of task/tag links.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.tasks: Dict[int, Task] = {}
        self.tags: Dict[int, Tag] = {}
        self.task_tags: Set[Tuple[int, int]] = set()
        self._user_ids = itertools.count(1)
        self._task_ids = itertools.count(1)
        self._tag_ids = itertools.count(1)
        self._data_lock = threading.RLock()

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    # users -----------------------------------------------------------------
    async def create_user(self, email: str, name: str, password_hash: str) -> User:
        with self._data_lock:
            lowered = email.lower()
            if any(existing.email.lower() == lowered for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=next(self._user_ids),
                email=email,
                name=name,
                password_hash=password_hash,
            )
            self.users[user.id] = user
            return copy.deepcopy(user)

    async def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email.lower() == lowered:
                    return copy.deepcopy(user)
        return None

    # tasks -----------------------------------------------------------------
    def _tag_summaries(self, task_id: int) -> List[TagSummary]:
        summaries: List[TagSummary] = []
        for linked_task, tag_id in self.task_tags:
            tag = self.tags.get(tag_id)
            if linked_task == task_id and tag is not None:
                summaries.append(TagSummary(id=tag.id, name=tag.name, color=tag.color))
        return sorted(summaries, key=lambda tag: (tag.name, tag.id))

    def _snapshot(self, task: Task) -> Task:
        snapshot = copy.deepcopy(task)
        snapshot.tags = self._tag_summaries(task.id)
        return snapshot

    def _owned_task(self, user_id: int, task_id: int) -> Optional[Task]:
        task = self.tasks.get(task_id)
        if task is None or task.user_id != user_id:
            return None
        return task

    def _link_tags(self, user_id: int, task_id: int, tag_ids: List[int]) -> None:
        for tag_id in tag_ids:
            tag = self.tags.get(tag_id)
            if tag is not None and tag.user_id == user_id:
                self.task_tags.add((task_id, tag_id))

    async def list_tasks(self, user_id: int, query: TaskQuery) -> Tuple[List[Task], int]:
        with self._data_lock:
            matches = [task for task in self.tasks.values() if task.user_id == user_id]
            if query.status:
                matches = [task for task in matches if task.status == query.status]
            if query.priority:
                matches = [task for task in matches if task.priority == query.priority]
            if query.due_before:
                matches = [
                    task
                    for task in matches
                    if task.due_date is not None and task.due_date <= query.due_before
                ]
            if query.search:
                needle = query.search.casefold()
                matches = [task for task in matches if needle in task.title.casefold()]
            matches.sort(key=task_sort_key)
            page = matches[query.offset : query.offset + query.limit]
            return [self._snapshot(task) for task in page], len(matches)

    async def get_task(self, user_id: int, task_id: int) -> Optional[Task]:
        with self._data_lock:
            task = self._owned_task(user_id, task_id)
            return self._snapshot(task) if task else None

    async def create_task(self, user_id: int, new_task: NewTask) -> Task:
        with self._data_lock:
            now = utcnow()
            task = Task(
                id=next(self._task_ids),
                user_id=user_id,
                title=new_task.title,
                description=new_task.description,
                status=new_task.status,
                priority=new_task.priority,
                due_date=new_task.due_date,
                completed_at=now if new_task.status == "done" else None,
                created_at=now,
                updated_at=now,
            )
            self.tasks[task.id] = task
            self._link_tags(user_id, task.id, new_task.tag_ids)
            return self._snapshot(task)

    async def update_task(
        self,
        user_id: int,
        task_id: int,
        changes: Dict[str, Any],
        tag_ids: Optional[List[int]] = None,
    ) -> Optional[Task]:
        unknown = set(changes) - _UPDATABLE_TASK_FIELDS
        if unknown:
            raise ValueError(f"unsupported task fields: {sorted(unknown)}")
        with self._data_lock:
            task = self._owned_task(user_id, task_id)
            if task is None:
                return None
            now = utcnow()
            task.completed_at = resolve_completed_at(
                task.status, changes.get("status"), task.completed_at, now
            )
            for key, value in changes.items():
                setattr(task, key, value)
            if tag_ids is not None:
                self.task_tags = {link for link in self.task_tags if link[0] != task_id}
                self._link_tags(user_id, task_id, tag_ids)
            task.updated_at = now
            return self._snapshot(task)

    async def delete_task(self, user_id: int, task_id: int) -> bool:
        with self._data_lock:
            if self._owned_task(user_id, task_id) is None:
                return False
            del self.tasks[task_id]
            self.task_tags = {link for link in self.task_tags if link[0] != task_id}
            return True

    async def update_ai_fields(
        self, user_id: int, task_id: int, summary: str, sentiment: str
    ) -> bool:
        with self._data_lock:
            task = self._owned_task(user_id, task_id)
            if task is None:
                return False
            task.ai_summary = summary
            task.ai_sentiment = sentiment
            task.updated_at = utcnow()
            return True

    # tags ------------------------------------------------------------------
    async def list_tags(self, user_id: int) -> List[Tag]:
        with self._data_lock:
            owned = [tag for tag in self.tags.values() if tag.user_id == user_id]
            return [copy.deepcopy(tag) for tag in sorted(owned, key=lambda t: (t.name, t.id))]

    async def create_tag(self, user_id: int, name: str, color: str) -> Tag:
        with self._data_lock:
            if any(
                tag.user_id == user_id and tag.name == name for tag in self.tags.values()
            ):
                raise ConstraintViolation("tag name already exists", {"field": "name"})
            tag = Tag(id=next(self._tag_ids), user_id=user_id, name=name, color=color)
            self.tags[tag.id] = tag
            return copy.deepcopy(tag)

    async def delete_tag(self, user_id: int, tag_id: int) -> bool:
        with self._data_lock:
            tag = self.tags.get(tag_id)
            if tag is None or tag.user_id != user_id:
                return False
            del self.tags[tag_id]
            self.task_tags = {link for link in self.task_tags if link[1] != tag_id}
            return True
