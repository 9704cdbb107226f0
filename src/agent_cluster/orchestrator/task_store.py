"""Persistent task records with a status state machine, backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import literal_column
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from agent_cluster.orchestrator.models import (
    FailureAnalysis,
    FailureCategory,
    MemoryEntry,
    MemoryType,
    ModelTier,
    Task,
    TaskContext,
    TaskCreate,
    TaskEvent,
    TaskEventView,
    TaskPriority,
    TaskResult,
    TaskStatus,
    TaskType,
)
from agent_cluster.storage.alembic_runner import upgrade_head
from agent_cluster.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    from_iso,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from agent_cluster.storage.sqlmodel_models import TaskEventRecord, TaskRecord

logger = logging.getLogger(__name__)

TASKS_DB_FILENAME = "tasks.db"

TRANSITIONS: dict[tuple[TaskStatus, TaskEvent], TaskStatus] = {
    (TaskStatus.PENDING, TaskEvent.START): TaskStatus.ANALYZING,
    (TaskStatus.ANALYZING, TaskEvent.COMPLETE): TaskStatus.RUNNING,
    (TaskStatus.ANALYZING, TaskEvent.FAIL): TaskStatus.FAILED,
    (TaskStatus.RUNNING, TaskEvent.COMPLETE): TaskStatus.REVIEWING,
    (TaskStatus.RUNNING, TaskEvent.FAIL): TaskStatus.FAILED,
    (TaskStatus.RUNNING, TaskEvent.BLOCK): TaskStatus.BLOCKED,
    (TaskStatus.BLOCKED, TaskEvent.UNBLOCK): TaskStatus.RUNNING,
    (TaskStatus.REVIEWING, TaskEvent.APPROVE): TaskStatus.COMPLETED,
    (TaskStatus.REVIEWING, TaskEvent.REJECT): TaskStatus.FAILED,
    (TaskStatus.FAILED, TaskEvent.RETRY): TaskStatus.PENDING,
}

_UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "type",
        "priority",
        "goal",
        "context",
        "agent",
        "session_id",
        "model",
        "model_tier",
        "external_review_id",
        "attempts",
        "max_attempts",
        "result",
        "failure_analysis",
    },
)


class TaskNotFoundError(LookupError):
    """Raised when a task id does not exist."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskAlreadyExistsError(ValueError):
    """Raised when creating a task with an id that is already taken."""


class InvalidTransitionError(ValueError):
    """Raised when an event is not legal for the task's current status."""

    def __init__(self, task_id: str, status: TaskStatus, event: TaskEvent) -> None:
        super().__init__(
            f"Invalid transition for task {task_id}: event={event.value!r} "
            f"from status={status.value!r}",
        )
        self.task_id = task_id
        self.status = status
        self.event = event


def next_status(status: TaskStatus, event: TaskEvent) -> TaskStatus | None:
    """Target status for ``event`` from ``status``, or None when illegal."""

    return TRANSITIONS.get((status, event))


class TaskStore:
    """Task persistence facade; schema is migrated lazily on first access."""

    def __init__(
        self,
        tasks_dir: Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.tasks_dir = tasks_dir
        self.db_path = tasks_dir / TASKS_DB_FILENAME
        self.busy_timeout_ms = busy_timeout_ms
        self._engine: Engine | None = None
        self._init_lock = threading.Lock()
        self._write_lock = threading.RLock()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            return self.init_schema()
        return self._engine

    def init_schema(self) -> Engine:
        """Run schema migrations and open the engine (idempotent)."""

        with self._init_lock:
            if self._engine is not None:
                return self._engine
            self.tasks_dir.mkdir(parents=True, exist_ok=True)
            upgrade_head(self.db_path, schema="tasks")
            self._engine = build_sqlite_engine(
                db_path=self.db_path,
                busy_timeout_ms=self.busy_timeout_ms,
            )
            logger.debug("Task store ready at %s", self.db_path)
            return self._engine

    def close(self) -> None:
        """Close underlying DB resources."""

        with self._init_lock:
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None

    def create(self, payload: TaskCreate) -> Task:
        """Create a pending task with zero attempts."""

        if payload.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {payload.max_attempts}")
        now = to_db_datetime(utc_now())
        task_id = payload.task_id or str(uuid4())
        with self._write_lock, Session(self.engine) as session:
            existing = session.get(TaskRecord, task_id)
            if existing is not None:
                raise TaskAlreadyExistsError(f"Task already exists: {task_id}")
            row = TaskRecord(
                task_id=task_id,
                title=payload.title,
                description=payload.description,
                task_type=payload.type.value,
                priority=payload.priority.value,
                status=TaskStatus.PENDING.value,
                goal=payload.goal,
                context_json=_context_to_json(payload.context),
                agent=payload.agent,
                attempts=0,
                max_attempts=payload.max_attempts,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            # Events reference the task row; it must be inserted first.
            session.flush()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "type": payload.type.value,
                    "priority": payload.priority.value,
                    "max_attempts": payload.max_attempts,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task(row)

    def get(self, task_id: str) -> Task | None:
        with Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            return _to_task(row) if row is not None else None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        """List tasks newest first, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(TaskRecord).order_by(
                col(TaskRecord.created_at).desc(),
                literal_column("tasks.rowid").desc(),
            )
            if status is not None:
                statement = statement.where(TaskRecord.status == status.value)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_task(row) for row in rows]

    def update(self, task_id: str, **changes: Any) -> Task:
        """Merge the given fields into the task and stamp ``updated_at``.

        Status is not updatable here; use :meth:`transition`.
        """

        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported task fields for update: {sorted(unknown)}")

        with self._write_lock, Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            for name, value in changes.items():
                _apply_field(row, name, value)
            if row.attempts > row.max_attempts:
                raise ValueError(
                    f"attempts ({row.attempts}) cannot exceed max_attempts ({row.max_attempts}) "
                    f"for task {task_id}",
                )
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task(row)

    def delete(self, task_id: str) -> None:
        with self._write_lock, Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            session.delete(row)
            session.commit()

    def transition(
        self,
        task_id: str,
        event: TaskEvent,
        *,
        details: dict[str, object] | None = None,
    ) -> Task:
        """Apply a state-machine event or raise without changing the status."""

        with self._write_lock, Session(self.engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                raise TaskNotFoundError(task_id)
            previous = TaskStatus(row.status)
            target = next_status(previous, event)
            if target is None:
                raise InvalidTransitionError(task_id, previous, event)

            result = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.task_id) == task_id,
                    col(TaskRecord.status) == previous.value,
                )
                .values(status=target.value, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently during transition; "
                    f"please retry (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event.value,
                status_from=previous,
                status_to=target,
                details=details or {},
            )
            session.commit()
            session.refresh(row)
            logger.debug(
                "Task %s: %s -[%s]-> %s",
                task_id,
                previous.value,
                event.value,
                target.value,
            )
            return _to_task(row)

    def list_events(self, task_id: str) -> list[TaskEventView]:
        """Transition audit trail for one task, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEventRecord)
                .where(TaskEventRecord.task_id == task_id)
                .order_by(col(TaskEventRecord.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=(
                        TaskStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware(row.created_at),
                    details=details,
                ),
            )
        return events

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRecord(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _apply_field(row: TaskRecord, name: str, value: Any) -> None:  # noqa: C901, PLR0912
    if name == "type":
        row.task_type = TaskType(value).value
    elif name == "priority":
        row.priority = TaskPriority(value).value
    elif name == "context":
        row.context_json = _context_to_json(value)
    elif name == "model_tier":
        row.model_tier = ModelTier(value).value if value is not None else None
    elif name == "result":
        row.result_json = json.dumps(asdict(value), ensure_ascii=False) if value else None
    elif name == "failure_analysis":
        row.failure_analysis_json = _analysis_to_json(value) if value else None
    elif name == "max_attempts":
        if int(value) < 1:
            raise ValueError(f"max_attempts must be >= 1, got {value}")
        row.max_attempts = int(value)
    elif name == "attempts":
        if int(value) < 0:
            raise ValueError(f"attempts must be >= 0, got {value}")
        row.attempts = int(value)
    else:
        setattr(row, name, value)


def _analysis_to_json(analysis: FailureAnalysis) -> str:
    payload = asdict(analysis)
    payload["category"] = analysis.category.value
    return json.dumps(payload, ensure_ascii=False)


def _analysis_from_json(raw: str | None) -> FailureAnalysis | None:
    if not raw:
        return None
    payload = json.loads(raw)
    return FailureAnalysis(
        reason=payload.get("reason", ""),
        category=FailureCategory(payload.get("category", FailureCategory.UNKNOWN.value)),
        suggestion=payload.get("suggestion", ""),
        adjusted_prompt=payload.get("adjusted_prompt"),
    )


def _result_from_json(raw: str | None) -> TaskResult | None:
    if not raw:
        return None
    payload = json.loads(raw)
    return TaskResult(
        success=bool(payload.get("success")),
        output=payload.get("output"),
        error=payload.get("error"),
        external_review_id=payload.get("external_review_id"),
        duration_seconds=payload.get("duration_seconds"),
    )


def _context_to_json(context: TaskContext) -> str:
    payload = {
        "requirements": list(context.requirements),
        "constraints": list(context.constraints),
        "files": list(context.files),
        "references": list(context.references),
        "area": context.area,
        "history": [
            {
                "id": entry.id,
                "key": entry.key,
                "value": entry.value,
                "type": entry.type.value,
                "tags": list(entry.tags),
                "timestamp": entry.timestamp.isoformat(),
                "relevance": entry.relevance,
                "agent": entry.agent,
                "task_id": entry.task_id,
            }
            for entry in context.history
        ],
    }
    return json.dumps(payload, ensure_ascii=False)


def _context_from_json(raw: str) -> TaskContext:
    payload = json.loads(raw or "{}")
    return TaskContext(
        requirements=list(payload.get("requirements", [])),
        constraints=list(payload.get("constraints", [])),
        files=list(payload.get("files", [])),
        references=list(payload.get("references", [])),
        area=payload.get("area", "general"),
        history=[
            MemoryEntry(
                id=item["id"],
                key=item["key"],
                value=item.get("value"),
                type=MemoryType(item["type"]),
                tags=list(item.get("tags", [])),
                timestamp=from_iso(item["timestamp"]),
                relevance=float(item.get("relevance", 1.0)),
                agent=item.get("agent"),
                task_id=item.get("task_id"),
            )
            for item in payload.get("history", [])
        ],
    )


def _to_task(row: TaskRecord) -> Task:
    return Task(
        id=row.task_id,
        title=row.title,
        description=row.description,
        type=TaskType(row.task_type),
        priority=TaskPriority(row.priority),
        status=TaskStatus(row.status),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        goal=row.goal,
        context=_context_from_json(row.context_json),
        agent=row.agent,
        session_id=row.session_id,
        model=row.model,
        model_tier=ModelTier(row.model_tier) if row.model_tier is not None else None,
        external_review_id=row.external_review_id,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        result=_result_from_json(row.result_json),
        failure_analysis=_analysis_from_json(row.failure_analysis_json),
    )
