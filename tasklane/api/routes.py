from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from tasklane.api.responses import created, ok
from tasklane.api.schemas import (
    AuthResponse,
    MessageResponse,
    PageMeta,
    TagResponse,
    TaskResponse,
    UserResponse,
)
from tasklane.api.validation import (
    ValidationResult,
    parse_resource_id,
    validate_credentials,
    validate_new_tag,
    validate_new_task,
    validate_registration,
    validate_task_query,
    validate_task_update,
)
from tasklane.service.auth import AuthContext
from tasklane.service.errors import BadRequestError
from tasklane.service.runtime import get_runtime

router = APIRouter()


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


async def _read_json(request: Request) -> Any:
    body = await request.body()
    if not body:
        return None
    try:
        return await request.json()
    except ValueError:
        raise BadRequestError("Request body must be valid JSON") from None


def _require(result: ValidationResult) -> Any:
    if not result.ok:
        raise BadRequestError(result.error or "Invalid request")
    return result.value


def _task_id(raw: str) -> int:
    task_id = parse_resource_id(raw)
    if task_id is None:
        raise BadRequestError("Task ID must be a positive integer")
    return task_id


def _tag_id(raw: str) -> int:
    tag_id = parse_resource_id(raw)
    if tag_id is None:
        raise BadRequestError("Tag ID must be a positive integer")
    return tag_id


# auth ----------------------------------------------------------------------
@router.post("/auth/register", tags=["auth"])
async def register(request: Request) -> JSONResponse:
    """Create an account and return a bearer token for it."""
    registration = _require(validate_registration(await _read_json(request)))
    runtime = get_runtime()
    user, token = await runtime.auth.register(
        registration.email, registration.name, registration.password
    )
    return created(AuthResponse(token=token, user=UserResponse.model_validate(user)))


@router.post("/auth/login", tags=["auth"])
async def login(request: Request) -> JSONResponse:
    """Exchange email and password for a bearer token.

    Unknown emails and wrong passwords fail identically.
    """
    credentials = _require(validate_credentials(await _read_json(request)))
    runtime = get_runtime()
    user, token = await runtime.auth.login(credentials.email, credentials.password)
    return ok(AuthResponse(token=token, user=UserResponse.model_validate(user)))


@router.get("/auth/me", tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)) -> JSONResponse:
    runtime = get_runtime()
    user = await runtime.auth.get_profile(principal)
    return ok(UserResponse.model_validate(user))


# tasks ---------------------------------------------------------------------
@router.get("/tasks", tags=["tasks"])
async def list_tasks(request: Request, principal: AuthContext = Depends(get_user)) -> JSONResponse:
    """List the caller's tasks, filtered and paginated from the query string."""
    query = _require(validate_task_query(request.query_params))
    runtime = get_runtime()
    page = await runtime.tasks.list_tasks(principal.user_id, query)
    return ok(
        [TaskResponse.model_validate(task) for task in page.tasks],
        meta=PageMeta(page=page.page, limit=page.limit, total=page.total, has_more=page.has_more),
    )


@router.post("/tasks", tags=["tasks"])
async def create_task(request: Request, principal: AuthContext = Depends(get_user)) -> JSONResponse:
    """Create a task; AI enrichment runs after the response is sent."""
    new_task = _require(validate_new_task(await _read_json(request)))
    runtime = get_runtime()
    task = await runtime.tasks.create_task(principal.user_id, new_task)
    return created(TaskResponse.model_validate(task))


@router.get("/tasks/{task_id}", tags=["tasks"])
async def get_task(task_id: str, principal: AuthContext = Depends(get_user)) -> JSONResponse:
    runtime = get_runtime()
    task = await runtime.tasks.get_task(principal.user_id, _task_id(task_id))
    return ok(TaskResponse.model_validate(task))


@router.patch("/tasks/{task_id}", tags=["tasks"])
async def update_task(
    task_id: str, request: Request, principal: AuthContext = Depends(get_user)
) -> JSONResponse:
    """Partially update a task. ``tag_ids``, when given, replaces the tag set."""
    resolved_id = _task_id(task_id)
    update = _require(validate_task_update(await _read_json(request)))
    runtime = get_runtime()
    task = await runtime.tasks.update_task(
        principal.user_id, resolved_id, update.changes, update.tag_ids
    )
    return ok(TaskResponse.model_validate(task))


@router.delete("/tasks/{task_id}", tags=["tasks"])
async def delete_task(task_id: str, principal: AuthContext = Depends(get_user)) -> JSONResponse:
    resolved_id = _task_id(task_id)
    runtime = get_runtime()
    await runtime.tasks.delete_task(principal.user_id, resolved_id)
    return ok(MessageResponse(message=f"Task {resolved_id} deleted successfully"))


# tags ----------------------------------------------------------------------
@router.get("/tags", tags=["tags"])
async def list_tags(principal: AuthContext = Depends(get_user)) -> JSONResponse:
    runtime = get_runtime()
    tags = await runtime.tags.list_tags(principal.user_id)
    return ok([TagResponse.model_validate(tag) for tag in tags])


@router.post("/tags", tags=["tags"])
async def create_tag(request: Request, principal: AuthContext = Depends(get_user)) -> JSONResponse:
    new_tag = _require(validate_new_tag(await _read_json(request)))
    runtime = get_runtime()
    tag = await runtime.tags.create_tag(principal.user_id, new_tag.name, new_tag.color)
    return created(TagResponse.model_validate(tag))


@router.delete("/tags/{tag_id}", tags=["tags"])
async def delete_tag(tag_id: str, principal: AuthContext = Depends(get_user)) -> JSONResponse:
    resolved_id = _tag_id(tag_id)
    runtime = get_runtime()
    await runtime.tags.delete_tag(principal.user_id, resolved_id)
    return ok(MessageResponse(message=f"Tag {resolved_id} deleted successfully"))
