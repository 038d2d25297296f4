import uuid
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError

from app.cache.decorators import invalidates, read_through
from app.cache.layer import CacheStore
from app.core.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
    invalid_date_error,
)
from app.models import Task, TaskCreate, TaskRead, TaskStatus, TaskUpdate
from app.repositories.task_repository import TaskRepository
from app.services.duplicates import DuplicatePolicy, DuplicateReason, TaskCandidate

# Clients send dueDate; Python callers may use the field name
ALLOWED_UPDATES = frozenset({"title", "description", "status", "dueDate", "due_date"})
NON_NULLABLE_UPDATES = ("title", "status", "due_date")

CONFLICT_MESSAGES = {
    DuplicateReason.EXACT: "Duplicate task found",
    DuplicateReason.SIMILAR: "Similar task exists",
}


def task_list_key(owner_id, **_) -> str:
    return f"tasks:{owner_id}"


def parse_due_date(value: Any, field: str = "dueDate") -> datetime:
    """
    Parse an ISO-8601 date or datetime into an aware UTC datetime.

    Date-only values mean midnight UTC; naive datetimes are taken as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise invalid_date_error(field) from None
    else:
        raise invalid_date_error(field)

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_task_id(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError("Invalid task ID format", error_code="INVALID_TASK_ID") from None


def _field_errors(exc: PydanticValidationError) -> list[dict[str, str]]:
    return [
        {"field": ".".join(str(part) for part in err["loc"]) or "updates", "message": err["msg"]}
        for err in exc.errors()
    ]


class TaskService:
    """
    Owner-scoped task operations.

    Every query carries the owner id, so a task owned by someone else looks
    exactly like a missing one. The per-owner list is cached as a whole and
    dropped after any successful write.
    """

    def __init__(
        self,
        repository: TaskRepository,
        cache: CacheStore,
        duplicates: DuplicatePolicy | None = None,
    ):
        self.repository = repository
        self.cache = cache
        self.duplicates = duplicates or DuplicatePolicy(repository)

    @read_through(task_list_key)
    async def get_tasks(self, owner_id: uuid.UUID):
        """All of the owner's tasks, newest first, as JSON-ready dicts."""
        tasks = await self.repository.find_by_owner(owner_id)
        return [TaskRead.model_validate(task) for task in tasks]

    async def invalidate(self, owner_id: uuid.UUID):
        """Drop the owner's cached list; runs after every successful write."""
        await self.cache.delete(task_list_key(owner_id))

    @invalidates()
    async def create_task(self, task_data: TaskCreate, owner_id: uuid.UUID) -> TaskRead:
        due_date = parse_due_date(task_data.due_date)
        candidate = TaskCandidate(
            title=task_data.title,
            description=task_data.description or None,
            due_date=due_date,
            status=task_data.status,
        )

        match = await self.duplicates.check(owner_id, candidate)
        if match is not None:
            raise ConflictError(
                CONFLICT_MESSAGES[match.reason],
                error_code="DUPLICATE_TASK",
                details={
                    "existing_task_id": str(match.task_id),
                    "duplicate_reason": match.reason.value,
                },
            )

        task = await self.repository.insert(
            Task(
                title=candidate.title,
                description=candidate.description,
                status=candidate.status,
                due_date=candidate.due_date,
                owner_id=owner_id,
            )
        )
        return TaskRead.model_validate(task)

    @invalidates()
    async def update_task(
        self, task_id: str | uuid.UUID, updates: Mapping[str, Any], owner_id: uuid.UUID
    ) -> TaskRead:
        invalid = sorted(set(updates) - ALLOWED_UPDATES)
        if invalid:
            raise ValidationError(
                "Invalid updates",
                errors=[{"field": "updates", "message": "Contains invalid update fields"}],
                details={"invalid_fields": invalid},
            )

        task_uuid = parse_task_id(task_id)

        try:
            changes = TaskUpdate.model_validate(dict(updates)).model_dump(exclude_unset=True)
        except PydanticValidationError as e:
            raise ValidationError("Invalid input", errors=_field_errors(e)) from None

        for field in NON_NULLABLE_UPDATES:
            if field in changes and changes[field] is None:
                wire_name = TaskUpdate.model_fields[field].alias or field
                raise ValidationError(
                    "Invalid input",
                    errors=[{"field": wire_name, "message": "Field cannot be null"}],
                )
        if "due_date" in changes:
            changes["due_date"] = parse_due_date(changes["due_date"])
        if "description" in changes:
            changes["description"] = changes["description"] or None

        task = await self.repository.find_one_and_update(
            changes, Task.id == task_uuid, Task.owner_id == owner_id
        )
        if task is None:
            raise NotFoundError("Task not found")
        return TaskRead.model_validate(task)

    @invalidates()
    async def delete_task(self, task_id: str | uuid.UUID, owner_id: uuid.UUID) -> TaskRead:
        task_uuid = parse_task_id(task_id)
        task = await self.repository.find_one_and_delete(
            Task.id == task_uuid, Task.owner_id == owner_id
        )
        if task is None:
            raise NotFoundError("Task not found")
        return TaskRead.model_validate(task)

    async def get_filtered_tasks(
        self, filters: Mapping[str, Any], owner_id: uuid.UUID
    ) -> list[TaskRead]:
        clauses = [Task.owner_id == owner_id]

        status = filters.get("status")
        if status:
            try:
                clauses.append(Task.status == TaskStatus(status))
            except ValueError:
                # Unknown status filters match nothing rather than erroring
                return []

        due_date = filters.get("dueDate") or filters.get("due_date")
        if due_date:
            clauses.append(Task.due_date <= parse_due_date(due_date))

        tasks = await self.repository.find(*clauses)
        return [TaskRead.model_validate(task) for task in tasks]
