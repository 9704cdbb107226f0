"""Domain models for tasks, sessions, memory and the retry loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class TaskType(str, Enum):
    """Kind of work a goal asks for."""

    FEATURE = "feature"
    BUGFIX = "bugfix"
    REFACTOR = "refactor"
    DOCS = "docs"
    TEST = "test"
    DESIGN = "design"
    ANALYSIS = "analysis"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskStatus(str, Enum):
    """Task lifecycle states driven by :class:`TaskEvent` transitions."""

    PENDING = "pending"
    ANALYZING = "analyzing"
    RUNNING = "running"
    BLOCKED = "blocked"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskEvent(str, Enum):
    START = "start"
    COMPLETE = "complete"
    FAIL = "fail"
    BLOCK = "block"
    UNBLOCK = "unblock"
    APPROVE = "approve"
    REJECT = "reject"
    RETRY = "retry"


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ModelTier(str, Enum):
    """Cost/capability bucket chosen independently of the worker."""

    CHEAP = "cheap"
    BALANCED = "balanced"
    SMART = "smart"


class FailureCategory(str, Enum):
    """Why an attempt failed; drives the retry budget and prompt adjustment."""

    CONTEXT = "context"
    DIRECTION = "direction"
    TECHNICAL = "technical"
    UNKNOWN = "unknown"


class SessionStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {SessionStatus.COMPLETED, SessionStatus.FAILED}


class MemoryType(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CONTEXT = "context"
    DECISION = "decision"
    PREFERENCE = "preference"


class NotificationType(str, Enum):
    TASK_COMPLETE = "task_complete"
    TASK_FAILED = "task_failed"
    REVIEW_READY = "review_ready"
    HUMAN_NEEDED = "human_needed"
    DAILY_SUMMARY = "daily_summary"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ReviewStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    REVIEW_REQUIRED = "review_required"
    APPROVED = "approved"
    MERGED = "merged"
    CLOSED = "closed"


class CiStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"


@dataclass(slots=True)
class GoalAnalysis:
    """Structured classification of a free-text goal."""

    title: str
    description: str
    type: TaskType
    priority: TaskPriority
    area: str
    requirements: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    complexity: Complexity = Complexity.LOW
    suggested_files: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MemoryEntry:
    """Immutable fact about a past outcome or decision."""

    id: str
    key: str
    value: Any
    type: MemoryType
    timestamp: datetime
    tags: list[str] = field(default_factory=list)
    relevance: float = 1.0
    agent: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class MemoryQuery:
    """Filter for :meth:`MemoryStore.query`; every supplied predicate must match."""

    key: str | None = None
    type: MemoryType | None = None
    tags: list[str] | None = None
    agent: str | None = None
    task_id: str | None = None
    min_relevance: float | None = None
    limit: int | None = None


@dataclass(slots=True)
class TaskContext:
    requirements: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    references: list[str] = field(default_factory=list)
    history: list[MemoryEntry] = field(default_factory=list)
    area: str = "general"


@dataclass(slots=True)
class TaskResult:
    success: bool
    output: str | None = None
    error: str | None = None
    external_review_id: int | None = None
    duration_seconds: float | None = None


@dataclass(slots=True)
class FailureAnalysis:
    reason: str
    category: FailureCategory
    suggestion: str
    adjusted_prompt: str | None = None


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    title: str
    type: TaskType = TaskType.FEATURE
    priority: TaskPriority = TaskPriority.MEDIUM
    description: str = ""
    goal: str = ""
    context: TaskContext = field(default_factory=TaskContext)
    max_attempts: int = 3
    task_id: str | None = None
    agent: str | None = None


@dataclass(slots=True)
class Task:
    """Readable task snapshot; mutate only through the task store."""

    id: str
    title: str
    description: str
    type: TaskType
    priority: TaskPriority
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    goal: str = ""
    context: TaskContext = field(default_factory=TaskContext)
    agent: str | None = None
    session_id: str | None = None
    model: str | None = None
    model_tier: ModelTier | None = None
    external_review_id: int | None = None
    attempts: int = 0
    max_attempts: int = 3
    result: TaskResult | None = None
    failure_analysis: FailureAnalysis | None = None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentSession:
    """One supervised worker run for a task."""

    id: str
    task_id: str
    agent: str
    status: SessionStatus
    start_time: datetime
    workspace: Path | None = None
    tmux_session: str | None = None
    branch: str | None = None
    end_time: datetime | None = None
    pid: int | None = None
    log_path: Path | None = None
    exit_code: int | None = None


@dataclass(slots=True)
class CompletionResult:
    """Outcome of waiting on a session."""

    success: bool
    output: str | None = None
    error: str | None = None
    external_review_id: int | None = None


@dataclass(slots=True)
class AttemptRecord:
    attempt: int
    prompt: str
    result: CompletionResult
    analysis: FailureAnalysis | None = None


@dataclass(slots=True)
class RalphLoopState:
    """Transient per-task retry state; folded into the task when the loop ends."""

    task_id: str
    max_attempts: int
    prompt: str
    context: TaskContext
    attempt: int = 0
    history: list[AttemptRecord] = field(default_factory=list)


@dataclass(slots=True)
class LoopOutcome:
    success: bool
    attempts: int
    result: CompletionResult | None = None
    analysis: FailureAnalysis | None = None


@dataclass(slots=True)
class Notification:
    type: NotificationType
    title: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    priority: NotificationPriority = NotificationPriority.MEDIUM

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "priority": self.priority.value,
        }


@dataclass(slots=True)
class ReviewInfo:
    """Code review (pull request) status as reported by the review CLI."""

    number: int
    title: str
    url: str
    status: ReviewStatus
    ci_status: CiStatus
    branch: str | None = None


@dataclass(slots=True)
class AgentStatus:
    session_id: str
    status: SessionStatus
    last_output: str
    last_update: datetime
