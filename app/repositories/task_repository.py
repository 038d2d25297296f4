import uuid
from functools import wraps
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.errors import DataAccessError
from app.models import Task, get_utc_now

import logging

logger = logging.getLogger(__name__)


def translate_errors(message: str):
    """Roll back and re-raise SQLAlchemy failures as DataAccessError."""

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            try:
                return await fn(self, *args, **kwargs)
            except SQLAlchemyError as e:
                logger.error(f"{fn.__name__} failed: {e}")
                await self.session.rollback()
                raise DataAccessError(message) from e

        return wrapper

    return decorator


class TaskRepository:
    """
    Persistence for tasks.

    Filter expressions are SQLAlchemy column clauses, e.g.
    `repo.find_one(Task.id == task_id, Task.owner_id == owner_id)`.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    @translate_errors("Error fetching tasks")
    async def find(self, *clauses) -> list[Task]:
        query = select(Task).where(*clauses).order_by(Task.created_at.desc())
        result = await self.session.exec(query)
        return list(result.all())

    async def find_by_owner(self, owner_id: uuid.UUID) -> list[Task]:
        return await self.find(Task.owner_id == owner_id)

    @translate_errors("Error fetching tasks")
    async def find_one(self, *clauses) -> Task | None:
        result = await self.session.exec(select(Task).where(*clauses).limit(1))
        return result.first()

    @translate_errors("Error creating task")
    async def insert(self, task: Task) -> Task:
        self.session.add(task)
        await self.session.commit()
        await self.session.refresh(task)
        return task

    @translate_errors("Error updating task")
    async def find_one_and_update(self, updates: dict[str, Any], *clauses) -> Task | None:
        result = await self.session.exec(select(Task).where(*clauses).limit(1))
        task = result.first()
        if task is None:
            return None

        task.sqlmodel_update(updates)
        task.updated_at = get_utc_now()
        await self.session.commit()
        await self.session.refresh(task)
        return task

    @translate_errors("Error deleting task")
    async def find_one_and_delete(self, *clauses) -> Task | None:
        result = await self.session.exec(select(Task).where(*clauses).limit(1))
        task = result.first()
        if task is None:
            return None

        await self.session.delete(task)
        await self.session.commit()
        return task
