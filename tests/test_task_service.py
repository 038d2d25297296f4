# tests/test_task_service.py

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlmodel import SQLModel

from app.cache.layer import CacheStore
from app.core.errors import ConflictError, DataAccessError, NotFoundError, ValidationError
from app.models import Task, TaskCreate, TaskStatus
from app.repositories.task_repository import TaskRepository
from app.services.task_service import TaskService, parse_due_date

from .fakes import FakeClock

DUE = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def task_payload(title: str = "Write report", due: datetime = DUE, **kwargs) -> TaskCreate:
    return TaskCreate(title=title, due_date=due.isoformat(), **kwargs)


# ---------------------------------------------------------------- parsing


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2026-03-01", datetime(2026, 3, 1, tzinfo=timezone.utc)),
        ("2026-03-01T09:00:00Z", DUE),
        ("2026-03-01T10:00:00+01:00", DUE),
        ("2026-03-01T09:00:00", DUE),
    ],
)
def test_parse_due_date_normalizes_to_utc(raw, expected) -> None:
    assert parse_due_date(raw) == expected


@pytest.mark.parametrize("raw", ["tomorrow", "", "2026-13-01", None, 42])
def test_parse_due_date_rejects_garbage(raw) -> None:
    with pytest.raises(ValidationError) as exc_info:
        parse_due_date(raw)
    assert exc_info.value.message == "Invalid due date format"


# ---------------------------------------------------------------- listing and cache


@pytest.mark.asyncio
async def test_get_tasks_is_served_from_cache(
    task_service: TaskService, task_repository: TaskRepository, owner_id, fake_redis
) -> None:
    await task_service.create_task(task_payload(), owner_id)
    assert len(await task_service.get_tasks(owner_id)) == 1
    assert f"test:tasks:{owner_id}" in fake_redis.values

    # Bypass the service so the cached list is not dropped
    await task_repository.insert(Task(title="Sneaky", due_date=DUE, owner_id=owner_id))

    assert len(await task_service.get_tasks(owner_id)) == 1
    await task_service.invalidate(owner_id)
    assert len(await task_service.get_tasks(owner_id)) == 2


@pytest.mark.asyncio
async def test_list_reflects_every_successful_write(task_service: TaskService, owner_id) -> None:
    assert await task_service.get_tasks(owner_id) == []

    created = await task_service.create_task(task_payload(), owner_id)
    tasks = await task_service.get_tasks(owner_id)
    assert [t["id"] for t in tasks] == [str(created.id)]

    await task_service.update_task(created.id, {"status": "completed"}, owner_id)
    tasks = await task_service.get_tasks(owner_id)
    assert tasks[0]["status"] == "completed"

    await task_service.delete_task(created.id, owner_id)
    assert await task_service.get_tasks(owner_id) == []


@pytest.mark.asyncio
async def test_cache_failure_still_lists_from_database(
    task_service: TaskService, owner_id, fake_redis
) -> None:
    await task_service.create_task(task_payload(), owner_id)
    fake_redis.fail_with = RedisConnectionError("redis gone")

    tasks = await task_service.get_tasks(owner_id)
    assert [t["title"] for t in tasks] == ["Write report"]


@pytest.mark.asyncio
async def test_write_after_redis_blip_is_visible_once_reads_resume(
    settings, fake_redis, task_repository: TaskRepository, owner_id
) -> None:
    clock = FakeClock(now=0.0)
    service = TaskService(task_repository, CacheStore(settings, redis=fake_redis, clock=clock))

    await service.create_task(task_payload("A"), owner_id)
    assert [t["title"] for t in await service.get_tasks(owner_id)] == ["A"]

    fake_redis.fail_with = RedisConnectionError("blip")
    await service.get_tasks(owner_id)
    fake_redis.fail_with = None

    await service.create_task(task_payload("B"), owner_id)
    clock.advance(settings.redis_retry_interval_seconds + 1)

    titles = {t["title"] for t in await service.get_tasks(owner_id)}
    assert titles == {"A", "B"}


@pytest.mark.asyncio
async def test_write_during_redis_outage_is_visible_after_recovery(
    settings, fake_redis, task_repository: TaskRepository, owner_id
) -> None:
    clock = FakeClock(now=0.0)
    service = TaskService(task_repository, CacheStore(settings, redis=fake_redis, clock=clock))

    await service.create_task(task_payload("A"), owner_id)
    await service.get_tasks(owner_id)

    fake_redis.fail_with = RedisConnectionError("down")
    await service.create_task(task_payload("B"), owner_id)
    fake_redis.fail_with = None

    clock.advance(settings.redis_retry_interval_seconds + 1)

    titles = {t["title"] for t in await service.get_tasks(owner_id)}
    assert titles == {"A", "B"}


@pytest.mark.asyncio
async def test_owners_do_not_see_each_other(task_service: TaskService, owner_id) -> None:
    other = uuid.uuid4()
    await task_service.create_task(task_payload(), owner_id)

    assert await task_service.get_tasks(other) == []
    # Same content for a different owner is not a duplicate
    await task_service.create_task(task_payload(), other)
    assert len(await task_service.get_tasks(other)) == 1


# ---------------------------------------------------------------- create


@pytest.mark.asyncio
async def test_create_returns_utc_task(task_service: TaskService, owner_id) -> None:
    task = await task_service.create_task(
        task_payload(description="quarterly numbers"), owner_id
    )

    assert task.owner_id == owner_id
    assert task.status == TaskStatus.PENDING
    assert task.due_date == DUE
    assert task.due_date.tzinfo is not None
    assert task.description == "quarterly numbers"


@pytest.mark.asyncio
async def test_empty_description_is_stored_as_null(task_service: TaskService, owner_id) -> None:
    task = await task_service.create_task(task_payload(description=""), owner_id)
    assert task.description is None


@pytest.mark.asyncio
async def test_exact_duplicate_is_rejected(task_service: TaskService, owner_id) -> None:
    original = await task_service.create_task(task_payload(description="notes"), owner_id)

    with pytest.raises(ConflictError) as exc_info:
        await task_service.create_task(task_payload(description="notes"), owner_id)

    error = exc_info.value
    assert error.message == "Duplicate task found"
    assert error.error_code == "DUPLICATE_TASK"
    assert error.details == {
        "existing_task_id": str(original.id),
        "duplicate_reason": "Exact task match",
    }


@pytest.mark.asyncio
async def test_exact_duplicate_without_description(task_service: TaskService, owner_id) -> None:
    await task_service.create_task(task_payload(), owner_id)

    with pytest.raises(ConflictError) as exc_info:
        await task_service.create_task(task_payload(), owner_id)
    assert exc_info.value.details["duplicate_reason"] == "Exact task match"


@pytest.mark.asyncio
async def test_near_duplicate_boundary(task_service: TaskService, owner_id) -> None:
    original = await task_service.create_task(task_payload(), owner_id)

    with pytest.raises(ConflictError) as exc_info:
        await task_service.create_task(task_payload(due=DUE + timedelta(hours=24)), owner_id)
    assert exc_info.value.message == "Similar task exists"
    assert exc_info.value.details == {
        "existing_task_id": str(original.id),
        "duplicate_reason": "Same title and timeframe",
    }

    with pytest.raises(ConflictError):
        await task_service.create_task(task_payload(due=DUE - timedelta(hours=24)), owner_id)

    later = DUE + timedelta(hours=24, milliseconds=1)
    task = await task_service.create_task(task_payload(due=later), owner_id)
    assert task.due_date == later


@pytest.mark.asyncio
async def test_completed_tasks_do_not_block_similar_ones(
    task_service: TaskService, owner_id
) -> None:
    await task_service.create_task(task_payload(status=TaskStatus.COMPLETED), owner_id)

    task = await task_service.create_task(task_payload(due=DUE + timedelta(hours=1)), owner_id)
    assert task.status == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_different_title_is_not_similar(task_service: TaskService, owner_id) -> None:
    await task_service.create_task(task_payload(), owner_id)
    await task_service.create_task(task_payload(title="Review report"), owner_id)

    assert len(await task_service.get_tasks(owner_id)) == 2


@pytest.mark.asyncio
async def test_create_rejects_bad_due_date(task_service: TaskService, owner_id) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await task_service.create_task(TaskCreate(title="x", due_date="someday"), owner_id)
    assert exc_info.value.errors == [{"field": "dueDate", "message": "Date format is invalid"}]


@pytest.mark.asyncio
async def test_rejected_create_keeps_cached_list(
    task_service: TaskService, owner_id, fake_redis
) -> None:
    await task_service.create_task(task_payload(), owner_id)
    await task_service.get_tasks(owner_id)
    fake_redis.calls.clear()

    with pytest.raises(ConflictError):
        await task_service.create_task(task_payload(), owner_id)

    assert "delete" not in fake_redis.calls


# ---------------------------------------------------------------- update


@pytest.mark.asyncio
async def test_update_applies_changes(task_service: TaskService, owner_id) -> None:
    task = await task_service.create_task(task_payload(), owner_id)

    updated = await task_service.update_task(
        str(task.id),
        {"title": "Final report", "due_date": "2026-03-05", "description": "v2"},
        owner_id,
    )

    assert updated.title == "Final report"
    assert updated.description == "v2"
    assert updated.due_date == datetime(2026, 3, 5, tzinfo=timezone.utc)
    assert updated.updated_at is not None


@pytest.mark.asyncio
async def test_update_clears_description(task_service: TaskService, owner_id) -> None:
    task = await task_service.create_task(task_payload(description="old"), owner_id)

    updated = await task_service.update_task(task.id, {"description": ""}, owner_id)
    assert updated.description is None


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields(task_service: TaskService, owner_id) -> None:
    task = await task_service.create_task(task_payload(), owner_id)

    with pytest.raises(ValidationError) as exc_info:
        await task_service.update_task(task.id, {"title": "ok", "owner_id": "x"}, owner_id)

    assert exc_info.value.message == "Invalid updates"
    assert exc_info.value.details == {"invalid_fields": ["owner_id"]}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "updates",
    [
        {"title": ""},
        {"title": None},
        {"status": "archived"},
        {"status": None},
        {"due_date": None},
    ],
)
async def test_update_rejects_invalid_values(task_service: TaskService, owner_id, updates) -> None:
    task = await task_service.create_task(task_payload(), owner_id)

    with pytest.raises(ValidationError) as exc_info:
        await task_service.update_task(task.id, updates, owner_id)
    assert exc_info.value.message == "Invalid input"


@pytest.mark.asyncio
async def test_update_rejects_bad_due_date(task_service: TaskService, owner_id) -> None:
    task = await task_service.create_task(task_payload(), owner_id)

    with pytest.raises(ValidationError) as exc_info:
        await task_service.update_task(task.id, {"due_date": "next week"}, owner_id)
    assert exc_info.value.message == "Invalid due date format"


@pytest.mark.asyncio
async def test_update_rejects_malformed_id(task_service: TaskService, owner_id) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await task_service.update_task("not-a-uuid", {"title": "x"}, owner_id)
    assert exc_info.value.error_code == "INVALID_TASK_ID"


@pytest.mark.asyncio
async def test_update_of_foreign_task_looks_missing(task_service: TaskService, owner_id) -> None:
    task = await task_service.create_task(task_payload(), owner_id)

    with pytest.raises(NotFoundError):
        await task_service.update_task(task.id, {"title": "mine now"}, uuid.uuid4())

    tasks = await task_service.get_tasks(owner_id)
    assert tasks[0]["title"] == "Write report"


# ---------------------------------------------------------------- delete


@pytest.mark.asyncio
async def test_delete_returns_removed_task(task_service: TaskService, owner_id) -> None:
    task = await task_service.create_task(task_payload(), owner_id)

    deleted = await task_service.delete_task(str(task.id), owner_id)

    assert deleted.id == task.id
    with pytest.raises(NotFoundError):
        await task_service.delete_task(task.id, owner_id)


@pytest.mark.asyncio
async def test_delete_of_foreign_task_looks_missing(task_service: TaskService, owner_id) -> None:
    task = await task_service.create_task(task_payload(), owner_id)

    with pytest.raises(NotFoundError):
        await task_service.delete_task(task.id, uuid.uuid4())
    assert len(await task_service.get_tasks(owner_id)) == 1


@pytest.mark.asyncio
async def test_delete_rejects_malformed_id(task_service: TaskService, owner_id) -> None:
    with pytest.raises(ValidationError):
        await task_service.delete_task("123", owner_id)


# ---------------------------------------------------------------- filter


@pytest.fixture()
def seeded(task_service: TaskService, owner_id):
    async def seed():
        early = await task_service.create_task(
            task_payload("Early", due=datetime(2026, 1, 1, tzinfo=timezone.utc)), owner_id
        )
        middle = await task_service.create_task(
            task_payload(
                "Middle",
                due=datetime(2026, 1, 5, tzinfo=timezone.utc),
                status=TaskStatus.COMPLETED,
            ),
            owner_id,
        )
        late = await task_service.create_task(
            task_payload("Late", due=datetime(2026, 1, 10, tzinfo=timezone.utc)), owner_id
        )
        await task_service.create_task(task_payload("Elsewhere"), uuid.uuid4())
        return early, middle, late

    return seed


@pytest.mark.asyncio
async def test_filter_without_criteria_returns_all_owned(
    task_service: TaskService, owner_id, seeded
) -> None:
    await seeded()
    tasks = await task_service.get_filtered_tasks({}, owner_id)
    assert {t.title for t in tasks} == {"Early", "Middle", "Late"}


@pytest.mark.asyncio
async def test_filter_by_status(task_service: TaskService, owner_id, seeded) -> None:
    await seeded()

    pending = await task_service.get_filtered_tasks({"status": "pending"}, owner_id)
    completed = await task_service.get_filtered_tasks({"status": "completed"}, owner_id)

    assert {t.title for t in pending} == {"Early", "Late"}
    assert [t.title for t in completed] == ["Middle"]


@pytest.mark.asyncio
async def test_filter_by_due_date_is_inclusive(task_service: TaskService, owner_id, seeded) -> None:
    await seeded()

    tasks = await task_service.get_filtered_tasks({"due_date": "2026-01-05"}, owner_id)
    assert {t.title for t in tasks} == {"Early", "Middle"}

    tasks = await task_service.get_filtered_tasks(
        {"status": "pending", "due_date": "2026-01-05"}, owner_id
    )
    assert [t.title for t in tasks] == ["Early"]


@pytest.mark.asyncio
async def test_filter_unknown_status_matches_nothing(
    task_service: TaskService, owner_id, seeded
) -> None:
    await seeded()
    assert await task_service.get_filtered_tasks({"status": "archived"}, owner_id) == []


@pytest.mark.asyncio
async def test_filter_rejects_bad_due_date(task_service: TaskService, owner_id) -> None:
    with pytest.raises(ValidationError):
        await task_service.get_filtered_tasks({"due_date": "soon"}, owner_id)


# ---------------------------------------------------------------- storage failures


@pytest.mark.asyncio
async def test_storage_failure_becomes_data_access_error(
    task_service: TaskService, engine, owner_id
) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)

    with pytest.raises(DataAccessError) as exc_info:
        await task_service.get_filtered_tasks({}, owner_id)

    assert exc_info.value.message == "Error fetching tasks"
    assert exc_info.value.__cause__ is not None


@pytest.mark.asyncio
async def test_filter_is_repeatable(task_service: TaskService, owner_id, seeded) -> None:
    await seeded()

    first = await task_service.get_filtered_tasks({"status": "completed"}, owner_id)
    second = await task_service.get_filtered_tasks({"status": "completed"}, owner_id)

    assert [t.model_dump() for t in first] == [t.model_dump() for t in second]


@pytest.mark.asyncio
async def test_same_payload_conflicts_per_owner_only(task_service: TaskService) -> None:
    first_owner, second_owner = uuid.uuid4(), uuid.uuid4()
    payload = TaskCreate(title="Pay rent", due_date="2025-12-31", status="pending")

    created = await task_service.create_task(payload, first_owner)

    with pytest.raises(ConflictError) as exc_info:
        await task_service.create_task(payload, first_owner)
    assert exc_info.value.details["existing_task_id"] == str(created.id)

    other = await task_service.create_task(payload, second_owner)
    assert other.owner_id == second_owner


@pytest.mark.asyncio
async def test_due_date_accepted_under_wire_name(task_service: TaskService, owner_id, seeded) -> None:
    early, _, _ = await seeded()

    updated = await task_service.update_task(early.id, {"dueDate": "2026-01-02"}, owner_id)
    assert updated.due_date == datetime(2026, 1, 2, tzinfo=timezone.utc)

    tasks = await task_service.get_filtered_tasks({"dueDate": "2026-01-05"}, owner_id)
    assert {t.title for t in tasks} == {"Early", "Middle"}


@pytest.mark.asyncio
async def test_every_write_goes_through_invalidate(
    task_service: TaskService, owner_id, monkeypatch
) -> None:
    calls = []
    invalidate = task_service.invalidate

    async def recording_invalidate(owner_id):
        calls.append(owner_id)
        await invalidate(owner_id)

    monkeypatch.setattr(task_service, "invalidate", recording_invalidate)

    task = await task_service.create_task(task_payload(), owner_id)
    await task_service.update_task(task.id, {"title": "Renamed"}, owner_id)
    await task_service.delete_task(task.id, owner_id)
    with pytest.raises(NotFoundError):
        await task_service.delete_task(task.id, owner_id)

    assert calls == [owner_id, owner_id, owner_id]
