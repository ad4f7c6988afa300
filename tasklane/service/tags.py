from __future__ import annotations

from typing import List, Protocol

from tasklane.logging import get_logger
from tasklane.service.errors import ConflictError, NotFoundError
from tasklane.storage.errors import ConstraintViolation
from tasklane.storage.models import Tag

logger = get_logger(__name__)


class TagStore(Protocol):
    async def list_tags(self, user_id: int) -> List[Tag]: ...

    async def create_tag(self, user_id: int, name: str, color: str) -> Tag: ...

    async def delete_tag(self, user_id: int, tag_id: int) -> bool: ...


class TagService:
    """Per-user tag CRUD; the store's unique (user, name) constraint decides races."""

    def __init__(self, store: TagStore) -> None:
        self.store = store

    async def list_tags(self, user_id: int) -> List[Tag]:
        return await self.store.list_tags(user_id)

    async def create_tag(self, user_id: int, name: str, color: str) -> Tag:
        try:
            tag = await self.store.create_tag(user_id, name, color)
        except ConstraintViolation:
            raise ConflictError(f'Tag "{name}" already exists')
        logger.info("tag_created", user_id=user_id, tag_id=tag.id)
        return tag

    async def delete_tag(self, user_id: int, tag_id: int) -> None:
        if not await self.store.delete_tag(user_id, tag_id):
            raise NotFoundError(f"Tag {tag_id} not found")
        logger.info("tag_deleted", user_id=user_id, tag_id=tag_id)
