import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import EmailStr, field_validator
from sqlalchemy import DateTime, Index
from sqlmodel import Column, Field, SQLModel


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive values (SQLite drops tzinfo on the way out)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


# ---------------------------------------------------------------- users


class UserBase(SQLModel):
    name: str = Field(min_length=1, max_length=100)
    email: EmailStr = Field(unique=True, index=True, max_length=255)


class User(UserBase, table=True):
    """Database model"""

    __tablename__ = "users"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    password_hash: str
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class UserCreate(UserBase):
    """Schema for signing up"""

    password: str = Field(min_length=6, max_length=128)

    model_config = {"str_strip_whitespace": True}


class UserLogin(SQLModel):
    email: EmailStr
    password: str = Field(min_length=1)


class UserRead(UserBase):
    id: uuid.UUID
    created_at: datetime

    model_config = {"from_attributes": True}


class AuthResponse(SQLModel):
    user: UserRead
    token: str


# ---------------------------------------------------------------- tasks


class TaskBase(SQLModel):
    """Base model with shared fields"""

    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None)
    status: TaskStatus = Field(default=TaskStatus.PENDING)


class Task(TaskBase, table=True):
    """Database model"""

    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_owner_status", "owner_id", "status"),
        Index("ix_tasks_owner_title_due_date", "owner_id", "title", "due_date"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    due_date: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    owner_id: uuid.UUID = Field(foreign_key="users.id", nullable=False)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class TaskCreate(SQLModel):
    """Schema for creating a task; dueDate is parsed by the service"""

    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    due_date: str = Field(alias="dueDate")

    model_config = {"str_strip_whitespace": True, "populate_by_name": True}


class TaskUpdate(SQLModel):
    """Schema for updating a task - all fields optional"""

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    status: TaskStatus | None = None
    due_date: str | None = Field(default=None, alias="dueDate")

    model_config = {"extra": "forbid", "str_strip_whitespace": True, "populate_by_name": True}


class TaskRead(TaskBase):
    """Schema for task responses"""

    id: uuid.UUID
    due_date: datetime
    owner_id: uuid.UUID
    created_at: datetime
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("due_date", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


class TaskDeleted(SQLModel):
    message: str = "Task deleted successfully"
    task: TaskRead
