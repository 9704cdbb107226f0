"""SQLModel ORM tables for task and memory storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class TaskRecord(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_status_created", "status", "created_at"),)

    task_id: str = Field(primary_key=True)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    task_type: str = Field(index=True)
    priority: str
    status: str
    goal: str = Field(default="", sa_column=Column(Text, nullable=False))
    context_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    agent: str | None = None
    session_id: str | None = None
    model: str | None = None
    model_tier: str | None = None
    external_review_id: int | None = None
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    failure_analysis_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRecord(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MemoryRecord(SQLModel, table=True):
    __tablename__ = "memory_entries"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_memory_entries_relevance", "relevance", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    entry_id: str = Field(unique=True)
    key: str = Field(index=True)
    value_json: str = Field(sa_column=Column(Text, nullable=False))
    memory_type: str = Field(index=True)
    relevance: float = Field(default=1.0)
    agent: str | None = Field(default=None, index=True)
    task_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MemoryTagRecord(SQLModel, table=True):
    __tablename__ = "memory_tags"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_memory_tags_tag", "tag", "memory_id"),)

    id: int | None = Field(default=None, primary_key=True)
    memory_id: int = Field(
        sa_column=Column(
            ForeignKey("memory_entries.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    tag: str
