from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

TASK_STATUSES: Tuple[str, ...] = ("todo", "in_progress", "done", "cancelled")
TASK_PRIORITIES: Tuple[str, ...] = ("low", "medium", "high", "critical")
AI_SENTIMENTS: Tuple[str, ...] = ("positive", "neutral", "negative")

DEFAULT_TAG_COLOR = "#6366f1"
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# critical sorts first
PRIORITY_RANK: Dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    email: str
    name: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TagSummary:
    id: int
    name: str
    color: str


@dataclass
class Tag:
    id: int
    user_id: int
    name: str
    color: str = DEFAULT_TAG_COLOR
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Task:
    id: int
    user_id: int
    title: str
    description: Optional[str] = None
    status: str = "todo"
    priority: str = "medium"
    due_date: Optional[date] = None
    completed_at: Optional[datetime] = None
    ai_summary: Optional[str] = None
    ai_sentiment: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    tags: List[TagSummary] = field(default_factory=list)


@dataclass
class NewTask:
    """Validated input for task creation."""

    title: str
    description: Optional[str] = None
    status: str = "todo"
    priority: str = "medium"
    due_date: Optional[date] = None
    tag_ids: List[int] = field(default_factory=list)


@dataclass
class TaskQuery:
    """Filters and paging for listing a user's tasks."""

    status: Optional[str] = None
    priority: Optional[str] = None
    search: Optional[str] = None
    due_before: Optional[date] = None
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    @property
    def is_filtered(self) -> bool:
        return any(
            value is not None
            for value in (self.status, self.priority, self.search, self.due_before)
        )

    @property
    def is_default(self) -> bool:
        """Unfiltered first page with the default page size."""
        return not self.is_filtered and self.page == 1 and self.limit == DEFAULT_PAGE_SIZE


def resolve_completed_at(
    previous_status: str,
    new_status: Optional[str],
    previous_completed_at: Optional[datetime],
    now: datetime,
) -> Optional[datetime]:
    """Return the completion timestamp after a status change.

    Entering ``done`` stamps ``now``; leaving ``done`` clears it. A status
    that does not change (including done -> done) keeps the old value.
    """
    if new_status is None or new_status == previous_status:
        return previous_completed_at
    if new_status == "done":
        return now
    if previous_status == "done":
        return None
    return previous_completed_at


def task_sort_key(task: Task) -> Tuple[Any, ...]:
    """Priority first, then due date with undated tasks last, then newest first."""
    return (
        PRIORITY_RANK.get(task.priority, len(PRIORITY_RANK)),
        task.due_date is None,
        task.due_date or date.max,
        -task.created_at.timestamp(),
        -task.id,
    )


@dataclass
class TaskPage:
    tasks: List[Task]
    total: int
    page: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.page * self.limit < self.total


@dataclass
class TaskUpdate:
    """Validated partial update: only provided columns appear in ``changes``."""

    changes: Dict[str, Any] = field(default_factory=dict)
    tag_ids: Optional[List[int]] = None


@dataclass
class NewTag:
    name: str
    color: str = DEFAULT_TAG_COLOR
