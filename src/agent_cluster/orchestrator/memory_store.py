"""Append-only outcome memory queried by tag, type, agent and relevance."""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from agent_cluster.orchestrator.models import (
    CompletionResult,
    FailureAnalysis,
    MemoryEntry,
    MemoryQuery,
    MemoryType,
    Task,
    TaskResult,
)
from agent_cluster.storage.alembic_runner import upgrade_head
from agent_cluster.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from agent_cluster.storage.sqlmodel_models import MemoryRecord, MemoryTagRecord

logger = logging.getLogger(__name__)

MEMORY_DB_FILENAME = "memory.db"
PATTERN_PREVIEW_LINES = 5
PATTERN_PREVIEW_CHARS = 200
RELEVANT_CONTEXT_LIMIT = 5
RELEVANT_CONTEXT_MIN_RELEVANCE = 0.5


class MemoryStore:
    """Accumulate-only memory log.

    Entries are never updated. The only removal path is the optional
    ``max_entries`` cap, which evicts the oldest entries at write time.
    """

    def __init__(
        self,
        memory_dir: Path,
        *,
        max_entries: int = 0,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        if max_entries < 0:
            raise ValueError(f"max_entries must be >= 0, got {max_entries}")
        self.memory_dir = memory_dir
        self.db_path = memory_dir / MEMORY_DB_FILENAME
        self.max_entries = max_entries
        self.busy_timeout_ms = busy_timeout_ms
        self._engine: Engine | None = None
        self._init_lock = threading.Lock()
        self._write_lock = threading.Lock()

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
            self.memory_dir.mkdir(parents=True, exist_ok=True)
            upgrade_head(self.db_path, schema="memory")
            self._engine = build_sqlite_engine(
                db_path=self.db_path,
                busy_timeout_ms=self.busy_timeout_ms,
            )
            return self._engine

    def close(self) -> None:
        with self._init_lock:
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None

    def store(  # noqa: PLR0913
        self,
        key: str,
        value: Any,
        *,
        type: MemoryType = MemoryType.CONTEXT,  # noqa: A002
        tags: list[str] | None = None,
        agent: str | None = None,
        task_id: str | None = None,
        relevance: float = 1.0,
    ) -> MemoryEntry:
        """Append one immutable entry and return it."""

        if not 0.0 <= relevance <= 1.0:
            raise ValueError(f"relevance must be within [0.0, 1.0], got {relevance}")
        entry_tags = list(dict.fromkeys(tag for tag in (tags or []) if tag))
        now = utc_now()
        entry_id = str(uuid4())
        with self._write_lock, Session(self.engine) as session:
            row = MemoryRecord(
                entry_id=entry_id,
                key=key,
                value_json=json.dumps(value, ensure_ascii=False, default=str),
                memory_type=type.value,
                relevance=relevance,
                agent=agent,
                task_id=task_id,
                created_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            for tag in entry_tags:
                session.add(MemoryTagRecord(memory_id=row.id, tag=tag))
            session.commit()
            if self.max_entries:
                self._evict_overflow(session)

        logger.debug("Stored memory %s (%s) key=%s", entry_id, type.value, key)
        return MemoryEntry(
            id=entry_id,
            key=key,
            value=value,
            type=type,
            timestamp=now,
            tags=entry_tags,
            relevance=relevance,
            agent=agent,
            task_id=task_id,
        )

    def query(self, query: MemoryQuery | None = None) -> list[MemoryEntry]:
        """Entries matching every supplied predicate, most relevant first.

        ``key`` matches as a substring; ``tags`` match when any requested tag is
        present. Equal relevance keeps insertion order.
        """

        query = query or MemoryQuery()
        if query.limit is not None and query.limit < 0:
            raise ValueError(f"limit must be >= 0, got {query.limit}")

        statement = select(MemoryRecord)
        if query.key:
            statement = statement.where(func.instr(col(MemoryRecord.key), query.key) > 0)
        if query.type is not None:
            statement = statement.where(MemoryRecord.memory_type == query.type.value)
        if query.agent is not None:
            statement = statement.where(MemoryRecord.agent == query.agent)
        if query.task_id is not None:
            statement = statement.where(MemoryRecord.task_id == query.task_id)
        if query.min_relevance is not None:
            statement = statement.where(col(MemoryRecord.relevance) >= query.min_relevance)
        if query.tags:
            statement = statement.where(
                col(MemoryRecord.id).in_(
                    select(MemoryTagRecord.memory_id).where(
                        col(MemoryTagRecord.tag).in_(query.tags),
                    ),
                ),
            )
        statement = statement.order_by(
            col(MemoryRecord.relevance).desc(),
            col(MemoryRecord.id).asc(),
        )
        if query.limit is not None:
            statement = statement.limit(query.limit)

        with Session(self.engine) as session:
            rows = session.exec(statement).all()
            tags_by_id = self._load_tags(session, [row.id for row in rows if row.id is not None])
        return [_to_entry(row, tags_by_id.get(row.id or 0, [])) for row in rows]

    def count(self) -> int:
        with Session(self.engine) as session:
            return session.exec(select(func.count()).select_from(MemoryRecord)).one()

    def record_success(
        self,
        task: Task,
        prompt: str,
        result: CompletionResult | TaskResult,
    ) -> MemoryEntry:
        """Remember a successful attempt under ``success:<type>:<task id>``."""

        return self.store(
            f"success:{task.type.value}:{task.id}",
            {
                "task": {"id": task.id, "type": task.type.value, "goal": task.goal},
                "prompt": prompt,
                "result": {
                    "success": True,
                    "external_review_id": result.external_review_id,
                },
                "pattern": extract_pattern(prompt),
            },
            type=MemoryType.SUCCESS,
            tags=_task_tags(task),
            agent=task.agent,
            task_id=task.id,
        )

    def record_failure(self, task: Task, error: str, analysis: FailureAnalysis) -> MemoryEntry:
        """Remember a failed attempt under ``failure:<type>:<task id>``."""

        return self.store(
            f"failure:{task.type.value}:{task.id}",
            {
                "task": {"id": task.id, "type": task.type.value, "goal": task.goal},
                "error": error,
                "analysis": {
                    "reason": analysis.reason,
                    "category": analysis.category.value,
                    "suggestion": analysis.suggestion,
                },
                "lesson": analysis.suggestion,
            },
            type=MemoryType.FAILURE,
            tags=_task_tags(task),
            agent=task.agent,
            task_id=task.id,
        )

    def get_relevant_context(
        self,
        task_type: str,
        area: str | None = None,
        *,
        limit: int = RELEVANT_CONTEXT_LIMIT,
    ) -> list[MemoryEntry]:
        tags = [task_type] + ([area] if area else [])
        return self.query(
            MemoryQuery(
                tags=tags,
                min_relevance=RELEVANT_CONTEXT_MIN_RELEVANCE,
                limit=limit,
            ),
        )

    def _evict_overflow(self, session: Session) -> None:
        cutoff = session.exec(
            select(MemoryRecord.id)
            .order_by(col(MemoryRecord.id).desc())
            .offset(self.max_entries)
            .limit(1),
        ).first()
        if cutoff is None:
            return
        result = session.exec(sa_delete(MemoryRecord).where(col(MemoryRecord.id) <= cutoff))
        session.commit()
        logger.info(
            "Memory retention evicted %s entries beyond max_entries=%s",
            result.rowcount,
            self.max_entries,
        )

    @staticmethod
    def _load_tags(session: Session, memory_ids: list[int]) -> dict[int, list[str]]:
        if not memory_ids:
            return {}
        rows = session.exec(
            select(MemoryTagRecord)
            .where(col(MemoryTagRecord.memory_id).in_(memory_ids))
            .order_by(col(MemoryTagRecord.id).asc()),
        ).all()
        tags: dict[int, list[str]] = defaultdict(list)
        for row in rows:
            tags[row.memory_id].append(row.tag)
        return tags


def extract_pattern(prompt: str) -> str:
    """Short reusable summary of a successful prompt."""

    head = "\n".join(prompt.splitlines()[:PATTERN_PREVIEW_LINES])
    return f"Pattern: {head[:PATTERN_PREVIEW_CHARS]}..."


def _task_tags(task: Task) -> list[str]:
    tags = [task.type.value, task.context.area]
    if task.agent:
        tags.append(task.agent)
    return tags


def _to_entry(row: MemoryRecord, tags: list[str]) -> MemoryEntry:
    return MemoryEntry(
        id=row.entry_id,
        key=row.key,
        value=json.loads(row.value_json),
        type=MemoryType(row.memory_type),
        timestamp=to_utc_aware(row.created_at),
        tags=list(tags),
        relevance=row.relevance,
        agent=row.agent,
        task_id=row.task_id,
    )
