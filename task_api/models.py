import re
from datetime import datetime, timezone
from typing import Literal

from pydantic import field_validator
from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlmodel import Column, Field, SQLModel

Priority = Literal["low", "medium", "high", "urgent"]
SortField = Literal["created_at", "due_date", "priority", "title"]
SortOrder = Literal["asc", "desc"]

HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")
DEFAULT_COLOR = "#3B82F6"


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


def _timestamp(nullable: bool = False) -> Column:
    return Column(
        DateTime(timezone=True),
        nullable=nullable,
        server_default=None if nullable else func.now(),
    )


# Tables


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(max_length=255, sa_column_kwargs={"unique": True})
    name: str = Field(max_length=100)
    password_hash: str = Field(default="", max_length=255)
    created_at: datetime = Field(default_factory=get_utc_now, sa_column=_timestamp())


class Category(SQLModel, table=True):
    __tablename__ = "categories"
    __table_args__ = (UniqueConstraint("user_id", "name"),)

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(max_length=100)
    color: str = Field(default=DEFAULT_COLOR, max_length=7)
    user_id: int = Field(
        sa_column=Column(
            Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
        )
    )
    created_at: datetime = Field(default_factory=get_utc_now, sa_column=_timestamp())
    updated_at: datetime | None = Field(default=None, sa_column=_timestamp(nullable=True))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"

    id: int | None = Field(default=None, primary_key=True)
    title: str = Field(max_length=255, index=True)
    description: str | None = Field(default=None)
    completed: bool = Field(default=False)
    priority: str = Field(default="medium", sa_column=Column(String(10), nullable=False))
    due_date: datetime | None = Field(default=None, sa_column=_timestamp(nullable=True))
    category_id: int | None = Field(
        default=None,
        sa_column=Column(
            Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True
        ),
    )
    user_id: int = Field(
        sa_column=Column(
            Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
        )
    )
    created_at: datetime = Field(default_factory=get_utc_now, sa_column=_timestamp())
    updated_at: datetime | None = Field(default=None, sa_column=_timestamp(nullable=True))


# Tasks


class TaskBase(SQLModel):
    """Base model with shared fields"""

    title: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    priority: Priority = "medium"
    due_date: datetime | None = None
    category_id: int | None = Field(default=None, ge=1)


class TaskCreate(TaskBase):
    """Schema for creating a task"""

    pass


class TaskUpdate(SQLModel):
    """Schema for updating a task - all fields optional"""

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    completed: bool | None = None
    priority: Priority | None = None
    due_date: datetime | None = None
    category_id: int | None = Field(default=None, ge=1)


class TaskRead(SQLModel):
    """A task row joined with its category, as returned and cached."""

    id: int
    title: str
    description: str | None = None
    completed: bool
    priority: str
    due_date: datetime | None = None
    category_id: int | None = None
    category_name: str | None = None
    category_color: str | None = None
    created_at: datetime
    updated_at: datetime | None = None
    from_cache: bool = Field(default=False, exclude=True)

    model_config = {"from_attributes": True}


class TaskFilters(SQLModel):
    """Listing filters; sort and order are restricted to fixed allow-lists."""

    completed: bool | None = None
    priority: Priority | None = None
    category_id: int | None = Field(default=None, ge=1)
    sort: SortField = "created_at"
    order: SortOrder = "desc"
    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)

    model_config = {"extra": "forbid"}


class Pagination(SQLModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class TaskPage(SQLModel):
    items: list[TaskRead]
    pagination: Pagination
    from_cache: bool = Field(default=False, exclude=True)


class TaskStats(SQLModel):
    total: int = 0
    completed: int = 0
    pending: int = 0
    urgent: int = 0
    high_priority: int = 0
    overdue: int = 0
    from_cache: bool = Field(default=False, exclude=True)


# Categories


def _check_color(value: str | None) -> str | None:
    if value is not None and not HEX_COLOR.match(value):
        raise ValueError("color must be a #RRGGBB hex value")
    return value


class CategoryCreate(SQLModel):
    name: str = Field(min_length=1, max_length=100)
    color: str = DEFAULT_COLOR

    @field_validator("color")
    @classmethod
    def check_color(cls, value):
        return _check_color(value)


class CategoryUpdate(SQLModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    color: str | None = None

    @field_validator("color")
    @classmethod
    def check_color(cls, value):
        return _check_color(value)


class CategoryRead(SQLModel):
    id: int
    name: str
    color: str
    created_at: datetime
    updated_at: datetime | None = None
    from_cache: bool = Field(default=False, exclude=True)


class CategoryList(SQLModel):
    items: list[CategoryRead]
    from_cache: bool = Field(default=False, exclude=True)


# Users


class UserCreate(SQLModel):
    email: str = Field(min_length=3, max_length=255)
    name: str = Field(min_length=1, max_length=100)
    password_hash: str = ""


class UserRead(SQLModel):
    id: int
    email: str
    name: str
    created_at: datetime
    from_cache: bool = Field(default=False, exclude=True)
