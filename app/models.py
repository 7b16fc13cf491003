import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Generic, TypeVar

from pydantic import BaseModel, field_validator
from sqlalchemy import DateTime, Text
from sqlalchemy.types import TypeDecorator
from sqlmodel import Column, Field, SQLModel

NAME_MAX_LENGTH = 255

T = TypeVar("T")


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise to an aware UTC datetime; naive values are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    DateTime column that always stores and returns UTC.

    SQLite keeps only the wall-clock part of a timestamp, so offsets are
    folded into UTC before binding and UTC is re-attached on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        return as_utc(value)


class TaskState(str, Enum):
    ACTIVE = "active"
    SOFT_DELETED = "soft_deleted"


class TaskBase(SQLModel):
    """Base model with shared fields"""

    name: str = Field(min_length=1, max_length=NAME_MAX_LENGTH)
    description: str | None = Field(default=None, sa_type=Text)
    completed: bool = Field(default=False)
    due_at: datetime | None = Field(default=None, sa_type=UTCDateTime)

    @field_validator("due_at")
    @classmethod
    def due_at_utc(cls, value):
        return as_utc(value)


class Task(TaskBase, table=True):
    """Database model"""

    __tablename__ = "tasks"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(UTCDateTime(), nullable=False, index=True),
    )
    updated_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(UTCDateTime(), nullable=False),
    )
    deleted_at: datetime | None = Field(
        default=None, sa_column=Column(UTCDateTime(), nullable=True)
    )

    @property
    def state(self) -> TaskState:
        if self.deleted_at is None:
            return TaskState.ACTIVE
        return TaskState.SOFT_DELETED


class PurgeJob(SQLModel, table=True):
    """A pending deferred purge. Rows are removed once the job has run."""

    __tablename__ = "purge_jobs"

    id: int | None = Field(default=None, primary_key=True)
    task_id: uuid.UUID = Field(index=True)
    run_at: datetime = Field(
        sa_column=Column(UTCDateTime(), nullable=False, index=True)
    )
    attempts: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(UTCDateTime(), nullable=False),
    )


class TaskCreate(TaskBase):
    """Schema for creating a task"""

    pass


class TaskUpdate(SQLModel):
    """Schema for updating a task - all fields optional"""

    name: str | None = Field(default=None, min_length=1, max_length=NAME_MAX_LENGTH)
    description: str | None = None
    completed: bool | None = None
    due_at: datetime | None = None

    @field_validator("name", "completed")
    @classmethod
    def not_null(cls, value, info):
        # Only runs when the field is sent; an explicit null would wipe a required column.
        if value is None:
            raise ValueError(f"{info.field_name} may be omitted but not null")
        return value

    @field_validator("due_at")
    @classmethod
    def due_at_utc(cls, value):
        return as_utc(value)


class TaskRead(TaskBase):
    """Schema for task responses, also the shape stored in the cache"""

    id: uuid.UUID
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None
    state: TaskState = TaskState.ACTIVE

    model_config = {"from_attributes": True}


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: T | None = None
    message: str = ""
