from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlmodel import Column, Field, SQLModel

# Range of the INTEGER columns the ids live in.
DB_INT_MIN = -(2**31)
DB_INT_MAX = 2**31 - 1


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    CANCELED = "canceled"

    @classmethod
    def values(cls) -> list[str]:
        return [member.value for member in cls]


class TaskBase(SQLModel):
    """Base model with shared fields"""

    title: str = Field(min_length=1, max_length=255, index=True)
    description: str | None = Field(default=None)
    assignee_id: int = Field(ge=DB_INT_MIN, le=DB_INT_MAX, index=True)


class Task(TaskBase, table=True):
    """Database model"""

    __tablename__ = "tasks"

    id: int | None = Field(default=None, primary_key=True)
    status: TaskStatus = Field(
        default=TaskStatus.PENDING,
        sa_column=Column(
            SAEnum(
                TaskStatus,
                name="task_status",
                values_callable=lambda enum: [member.value for member in enum],
            ),
            nullable=False,
            index=True,
        ),
    )
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class TaskCreate(TaskBase):
    """Schema for creating a task. Status is optional and defaults to pending."""

    status: str | None = None


class TaskUpdate(TaskBase):
    """Schema for replacing a task's mutable fields"""

    status: str


class TaskResponse(TaskBase):
    """Schema for task responses"""

    id: int
    status: TaskStatus
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class TaskPage(SQLModel):
    """One page of a listing plus the total matching count. This is what gets cached."""

    items: list[TaskResponse]
    total: int
