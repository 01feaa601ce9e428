"""SQLModel ORM tables for task storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_claim", "status", "not_before", "created_at"),
        Index("idx_tasks_parent", "parent_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    status: str = Field(index=True)
    command: str
    method: str
    timeout_seconds: int = Field(default=30)
    verbose: bool = Field(default=False)
    parent_id: int | None = Field(
        default=None,
        sa_column=Column(ForeignKey("tasks.id"), nullable=True),
    )
    parallel: bool = Field(default=False)
    not_before: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    data: str | None = Field(default=None, sa_column=Column(Text))
    results: str | None = Field(default=None, sa_column=Column(Text))
    pid: int | None = None
    worker_id: str | None = None
    claim_token: str | None = None
    executed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    time_spent: float | None = None
    description: str | None = Field(default=None, sa_column=Column(Text))
    created_by: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
