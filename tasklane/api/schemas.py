from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tasklane.service.errors import ErrorKind

_VALID_ERROR_CODES = frozenset(kind.value for kind in ErrorKind)


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
    message: str

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class PageMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page: int
    limit: int
    total: int
    has_more: bool = Field(alias="hasMore")


class Envelope(BaseModel):
    """Uniform wrapper for every response body.

    Success: ``{"success": true, "data": ..., "meta": ...?}``.
    Failure: ``{"success": false, "error": {"code": ..., "message": ...}}``.
    """

    success: bool
    data: Optional[Any] = None
    meta: Optional[PageMeta] = None
    error: Optional[ErrorBody] = None

    def to_body(self) -> Dict[str, Any]:
        # only explicitly provided keys are emitted
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: str
    created_at: datetime
    updated_at: datetime


class AuthResponse(BaseModel):
    token: str
    user: UserResponse


class TagSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    color: str


class TagResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    color: str
    created_at: datetime


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: Optional[str] = None
    status: Literal["todo", "in_progress", "done", "cancelled"]
    priority: Literal["low", "medium", "high", "critical"]
    due_date: Optional[date] = None
    completed_at: Optional[datetime] = None
    ai_summary: Optional[str] = None
    ai_sentiment: Optional[Literal["positive", "neutral", "negative"]] = None
    created_at: datetime
    updated_at: datetime
    tags: List[TagSummaryResponse] = Field(default_factory=list)


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    timestamp: datetime
    version: str
    checks: Dict[str, str] = Field(default_factory=dict)
