import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from app.models import Task, TaskStatus
from app.repositories.task_repository import TaskRepository


class DuplicateReason(str, Enum):
    EXACT = "Exact task match"
    SIMILAR = "Same title and timeframe"


@dataclass(frozen=True)
class TaskCandidate:
    title: str
    description: str | None
    due_date: datetime
    status: TaskStatus


@dataclass(frozen=True)
class DuplicateMatch:
    task_id: uuid.UUID
    reason: DuplicateReason


class DuplicatePolicy:
    """
    Pre-insert check against an owner's existing tasks.

    1. Exact match on title, description, due date and status.
    2. Only when there is no exact match: a pending task with the same title
       due within `window` either side of the candidate.

    The check and the later insert are separate statements; two simultaneous
    submissions can both pass.
    """

    def __init__(self, repository: TaskRepository, window: timedelta = timedelta(hours=24)):
        self.repository = repository
        self.window = window

    async def check(self, owner_id: uuid.UUID, candidate: TaskCandidate) -> DuplicateMatch | None:
        exact = await self.repository.find_one(
            Task.owner_id == owner_id,
            Task.title == candidate.title,
            Task.description.is_(None)
            if candidate.description is None
            else Task.description == candidate.description,
            Task.due_date == candidate.due_date,
            Task.status == candidate.status,
        )
        if exact is not None:
            return DuplicateMatch(task_id=exact.id, reason=DuplicateReason.EXACT)

        similar = await self.repository.find_one(
            Task.owner_id == owner_id,
            Task.title == candidate.title,
            Task.status == TaskStatus.PENDING,
            Task.due_date >= candidate.due_date - self.window,
            Task.due_date <= candidate.due_date + self.window,
        )
        if similar is not None:
            return DuplicateMatch(task_id=similar.id, reason=DuplicateReason.SIMILAR)

        return None
