from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status

from app.dependencies import CurrentUser, TaskServiceDep
from app.models import TaskCreate, TaskDeleted, TaskRead
from app.ratelimit.dependencies import RateLimit

router = APIRouter(
    prefix="/api/tasks",
    tags=["tasks"],
    dependencies=[Depends(RateLimit("api"))],
)


@router.get("", response_model=list[TaskRead])
async def get_tasks(current_user: CurrentUser, service: TaskServiceDep):
    """List the caller's tasks, newest first (served from cache when warm)"""
    return await service.get_tasks(current_user.id)


@router.post(
    "",
    response_model=TaskRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(RateLimit("task_create"))],
)
async def create_task(task_data: TaskCreate, current_user: CurrentUser, service: TaskServiceDep):
    """Create a new task, rejecting duplicates with 409"""
    return await service.create_task(task_data, current_user.id)


@router.get("/filter", response_model=list[TaskRead])
async def get_filtered_tasks(
    current_user: CurrentUser,
    service: TaskServiceDep,
    status_filter: str | None = Query(default=None, alias="status"),
    due_date: str | None = Query(default=None, alias="dueDate"),
):
    filters = {"status": status_filter, "dueDate": due_date}
    return await service.get_filtered_tasks(filters, current_user.id)


@router.put("/{task_id}", response_model=TaskRead)
async def update_task(
    task_id: str,
    current_user: CurrentUser,
    service: TaskServiceDep,
    updates: dict[str, Any] = Body(...),
):
    return await service.update_task(task_id, updates, current_user.id)


@router.delete("/{task_id}", response_model=TaskDeleted)
async def delete_task(task_id: str, current_user: CurrentUser, service: TaskServiceDep):
    """Delete a task and return its last state"""
    task = await service.delete_task(task_id, current_user.id)
    return TaskDeleted(task=task)
