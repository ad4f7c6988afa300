"""Request body and query validation.

Validators are pure: they never raise, returning a ``ValidationResult``
holding either the normalized value or the first failure message.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Generic, List, Mapping, Optional, TypeVar

from tasklane.storage.models import (
    DEFAULT_PAGE_SIZE,
    DEFAULT_TAG_COLOR,
    MAX_PAGE_SIZE,
    TASK_PRIORITIES,
    TASK_STATUSES,
    NewTag,
    NewTask,
    TaskQuery,
    TaskUpdate,
)

T = TypeVar("T")

BODY_NOT_OBJECT = "Request body must be a JSON object"
UPDATABLE_TASK_FIELDS = ("title", "description", "status", "priority", "due_date", "tag_ids")

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]{2,}$")
_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")

MAX_NAME_LENGTH = 100
MAX_TITLE_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 5000
MAX_TAG_NAME_LENGTH = 50
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


@dataclass(frozen=True)
class ValidationResult(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: T) -> "ValidationResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "ValidationResult[T]":
        return cls(ok=False, error=error)


@dataclass(frozen=True)
class Registration:
    email: str
    name: str
    password: str


@dataclass(frozen=True)
class Credentials:
    email: str
    password: str


def _validated(body: Any, build: Callable[[Mapping[str, Any]], T]) -> ValidationResult[T]:
    if not isinstance(body, dict):
        return ValidationResult.failure(BODY_NOT_OBJECT)
    try:
        return ValidationResult.success(build(body))
    except ValueError as exc:
        return ValidationResult.failure(str(exc))


# field helpers raise ValueError with the client-facing message ----------------
def _required_string(body: Mapping[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{key} is required")
    return value


def _max_length(value: str, key: str, limit: int) -> str:
    if len(value) > limit:
        raise ValueError(f"{key} must be {limit} characters or less")
    return value


def _validate_email(value: str) -> str:
    normalized = value.strip().lower()
    if not _EMAIL_PATTERN.match(normalized):
        raise ValueError("email format is invalid")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be {MAX_PASSWORD_LENGTH} characters or less")
    return value


def _title(value: Any, message: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(message)
    return _max_length(value.strip(), "title", MAX_TITLE_LENGTH)


def _description(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("description must be a string")
    _max_length(value, "description", MAX_DESCRIPTION_LENGTH)
    return value.strip()


def _choice(value: Any, key: str, allowed: tuple) -> str:
    if not isinstance(value, str) or value not in allowed:
        raise ValueError(f"{key} must be one of: {', '.join(allowed)}")
    return value


def parse_iso_date(value: Any) -> Optional[date]:
    """Parse a strict ``YYYY-MM-DD`` calendar date, or return None."""
    if not isinstance(value, str) or not _DATE_PATTERN.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _due_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    parsed = parse_iso_date(value)
    if parsed is None:
        raise ValueError("due_date must be a valid ISO-8601 date (YYYY-MM-DD)")
    return parsed


def _tag_ids(value: Any) -> List[int]:
    if not isinstance(value, list) or not all(
        isinstance(item, int) and not isinstance(item, bool) and item > 0 for item in value
    ):
        raise ValueError("tag_ids must be an array of positive integers")
    return list(dict.fromkeys(value))


# auth ----------------------------------------------------------------------
def validate_registration(body: Any) -> ValidationResult[Registration]:
    def build(b: Mapping[str, Any]) -> Registration:
        email = _validate_email(_required_string(b, "email"))
        name = _max_length(_required_string(b, "name").strip(), "name", MAX_NAME_LENGTH)
        password = _validate_password_strength(_required_string(b, "password"))
        return Registration(email=email, name=name, password=password)

    return _validated(body, build)


def validate_credentials(body: Any) -> ValidationResult[Credentials]:
    def build(b: Mapping[str, Any]) -> Credentials:
        email = _required_string(b, "email").strip().lower()
        password = _required_string(b, "password")
        return Credentials(email=email, password=password)

    return _validated(body, build)


# tasks ---------------------------------------------------------------------
def validate_new_task(body: Any) -> ValidationResult[NewTask]:
    def build(b: Mapping[str, Any]) -> NewTask:
        title = _title(b.get("title"), "title is required")
        description = _description(b.get("description"))
        status = _choice(b["status"], "status", TASK_STATUSES) if "status" in b else "todo"
        priority = (
            _choice(b["priority"], "priority", TASK_PRIORITIES) if "priority" in b else "medium"
        )
        due_date = _due_date(b.get("due_date"))
        tag_ids = _tag_ids(b["tag_ids"]) if "tag_ids" in b else []
        return NewTask(
            title=title,
            description=description,
            status=status,
            priority=priority,
            due_date=due_date,
            tag_ids=tag_ids,
        )

    return _validated(body, build)


def validate_task_update(body: Any) -> ValidationResult[TaskUpdate]:
    def build(b: Mapping[str, Any]) -> TaskUpdate:
        if not any(key in b for key in UPDATABLE_TASK_FIELDS):
            raise ValueError(f"At least one field required: {', '.join(UPDATABLE_TASK_FIELDS)}")
        changes: dict = {}
        if "title" in b:
            changes["title"] = _title(b["title"], "title must be a non-empty string")
        if "description" in b:
            changes["description"] = _description(b["description"])
        if "status" in b:
            changes["status"] = _choice(b["status"], "status", TASK_STATUSES)
        if "priority" in b:
            changes["priority"] = _choice(b["priority"], "priority", TASK_PRIORITIES)
        if "due_date" in b:
            changes["due_date"] = _due_date(b["due_date"])
        tag_ids = _tag_ids(b["tag_ids"]) if "tag_ids" in b else None
        return TaskUpdate(changes=changes, tag_ids=tag_ids)

    return _validated(body, build)


# tags ----------------------------------------------------------------------
def validate_new_tag(body: Any) -> ValidationResult[NewTag]:
    def build(b: Mapping[str, Any]) -> NewTag:
        name = _max_length(_required_string(b, "name").strip(), "name", MAX_TAG_NAME_LENGTH)
        color = b.get("color", DEFAULT_TAG_COLOR)
        if not isinstance(color, str) or not _HEX_COLOR_PATTERN.match(color):
            raise ValueError("color must be a valid hex color (e.g. #6366f1)")
        return NewTag(name=name.lower(), color=color)

    return _validated(body, build)


# query and path parameters -------------------------------------------------
def parse_positive_int(value: Optional[str], default: int, maximum: Optional[int] = None) -> int:
    """Lenient integer parsing: junk and non-positive values fall back to ``default``."""
    if not value:
        return default
    match = re.match(r"^\s*([+-]?\d+)", value)
    if not match:
        return default
    number = int(match.group(1))
    if number < 1:
        return default
    if maximum is not None and number > maximum:
        return maximum
    return number


def parse_resource_id(value: str) -> Optional[int]:
    """Strictly parse a path identifier; anything but a positive integer is None."""
    if not value.isascii() or not value.isdigit():
        return None
    number = int(value)
    return number if number > 0 else None


def validate_task_query(params: Mapping[str, str]) -> ValidationResult[TaskQuery]:
    status = params.get("status") or None
    if status is not None and status not in TASK_STATUSES:
        return ValidationResult.failure(f"status must be one of: {', '.join(TASK_STATUSES)}")
    priority = params.get("priority") or None
    if priority is not None and priority not in TASK_PRIORITIES:
        return ValidationResult.failure(
            f"priority must be one of: {', '.join(TASK_PRIORITIES)}"
        )
    due_before = None
    raw_due = params.get("due_before")
    if raw_due:
        due_before = parse_iso_date(raw_due)
        if due_before is None:
            return ValidationResult.failure(
                "due_before must be a valid ISO-8601 date (YYYY-MM-DD)"
            )
    search = (params.get("search") or "").strip() or None
    return ValidationResult.success(
        TaskQuery(
            status=status,
            priority=priority,
            search=search,
            due_before=due_before,
            page=parse_positive_int(params.get("page"), 1),
            limit=parse_positive_int(params.get("limit"), DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE),
        )
    )
