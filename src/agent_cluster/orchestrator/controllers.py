"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_cluster.config import Settings
from agent_cluster.orchestrator.agent_selector import score_agents
from agent_cluster.orchestrator.goal_analyzer import analyze_goal
from agent_cluster.orchestrator.launcher.reviews import ReviewClient
from agent_cluster.orchestrator.launcher.session_launcher import SessionLauncher
from agent_cluster.orchestrator.launcher.tmux import TmuxClient
from agent_cluster.orchestrator.launcher.workspace import WorkspaceManager
from agent_cluster.orchestrator.memory_store import MemoryStore
from agent_cluster.orchestrator.model_router import get_routed_model
from agent_cluster.orchestrator.models import (
    MemoryQuery,
    MemoryType,
    Task,
    TaskEvent,
    TaskPriority,
    TaskStatus,
    TaskType,
)
from agent_cluster.orchestrator.monitors import AgentWatcher, ReviewChecker
from agent_cluster.orchestrator.notify import build_notifier
from agent_cluster.orchestrator.ralph_loop import RalphLoop
from agent_cluster.orchestrator.scanners import GitHubIssueScanner, TaskScanner
from agent_cluster.orchestrator.services import GoalOptions, LaunchDefaults, OrchestratorService
from agent_cluster.orchestrator.task_store import TaskNotFoundError, TaskStore

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 300
LAUNCH_WAIT_SECONDS = 60.0


@dataclass(slots=True)
class GoalCommand:
    """CLI input for goal submission."""

    state_dir: Path | None
    goal: str
    task_type: str | None
    priority: str | None
    agent: str | None
    model: str | None
    max_attempts: int | None
    wait: bool
    timeout_seconds: float | None


@dataclass(slots=True)
class AnalyzeCommand:
    goal: str


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    state_dir: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskCommand:
    """CLI input for single-task operations (show, delete, retry, terminate)."""

    state_dir: Path | None
    task_id: str
    wait: bool = False
    timeout_seconds: float | None = None


@dataclass(slots=True)
class TransitionCommand:
    state_dir: Path | None
    task_id: str
    event: str


@dataclass(slots=True)
class MemoryQueryCommand:
    """CLI input for memory lookup."""

    state_dir: Path | None
    key: str | None
    memory_type: str | None
    tags: tuple[str, ...]
    agent: str | None
    task_id: str | None
    min_relevance: float | None
    limit: int


@dataclass(slots=True)
class MemoryAddCommand:
    state_dir: Path | None
    key: str
    value: str
    memory_type: str
    tags: tuple[str, ...]
    relevance: float


@dataclass(slots=True)
class SessionSendCommand:
    """CLI input for text injection; ``target`` is a task id or a session id."""

    state_dir: Path | None
    target: str
    text: str


@dataclass(slots=True)
class StateCommand:
    """CLI input for commands that only need the state directory."""

    state_dir: Path | None
    wait: bool = False
    timeout_seconds: float | None = None


@dataclass(slots=True)
class WatchCommand:
    """CLI input for the supervising watch loop."""

    state_dir: Path | None
    once: bool


@dataclass(slots=True)
class Runtime:
    settings: Settings
    tasks: TaskStore
    memory: MemoryStore
    launcher: SessionLauncher
    reviews: ReviewClient
    tmux: TmuxClient
    service: OrchestratorService


class OrchestratorCliController:
    """Runs CLI commands against the stores and the orchestrator service."""

    def submit_goal(self, command: GoalCommand) -> list[str]:
        with _runtime(Settings.from_env(state_dir=command.state_dir)) as runtime:
            _require_detachable(runtime, wait=command.wait)
            task = runtime.service.handle_goal(
                command.goal,
                GoalOptions(
                    type=TaskType(command.task_type) if command.task_type else None,
                    priority=TaskPriority(command.priority) if command.priority else None,
                    agent=command.agent,
                    model=command.model,
                    max_attempts=command.max_attempts,
                ),
            )
            lines = [
                f"Task created: task_id={task.id} type={task.type.value} "
                f"priority={task.priority.value} agent={task.agent} model={task.model}",
            ]
            if not command.wait:
                lines.append(_detach(runtime, task.id))
                return lines
            finished = runtime.service.wait_for_task(task.id, timeout=command.timeout_seconds)
            if not finished:
                lines.append(_stop_waiting(runtime, task.id, command.timeout_seconds))
            lines.extend(_describe_task(runtime.tasks.require(task.id)))
        return lines

    def analyze(self, command: AnalyzeCommand) -> list[str]:
        analysis = analyze_goal(command.goal)
        scores = score_agents(analysis)
        best = scores[0].agent
        routed = get_routed_model(best, command.goal, analysis.type)
        lines = [
            f"Title: {analysis.title}",
            f"Type: {analysis.type.value}",
            f"Priority: {analysis.priority.value}",
            f"Area: {analysis.area}",
            f"Complexity: {analysis.complexity.value}",
            f"Keywords: {', '.join(analysis.keywords) or '-'}",
            f"Requirements: {len(analysis.requirements)}",
            f"Constraints: {len(analysis.constraints)}",
            f"Suggested files: {', '.join(analysis.suggested_files) or '-'}",
            f"Agent: {best}",
            f"Model: {routed.model} ({routed.tier.value}, {routed.provider}) "
            f"savings={routed.cost_savings_percent}%",
        ]
        lines.extend(f"  - {item}" for item in analysis.requirements)
        lines.append("Agent scores:")
        lines.extend(f"  {score.agent}: {score.score:.1f}" for score in scores)
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        status = TaskStatus(command.status) if command.status else None
        with _task_store(Settings.from_env(state_dir=command.state_dir)) as tasks:
            items = tasks.list_tasks(status=status, limit=command.limit)
        lines = [f"Tasks: {len(items)}"]
        for task in items:
            lines.append(
                f"  {task.id} type={task.type.value} status={task.status.value} "
                f"priority={task.priority.value} agent={task.agent or '-'} "
                f"attempts={task.attempts}/{task.max_attempts} title={task.title}",
            )
        return lines

    def show_task(self, command: TaskCommand) -> list[str]:
        with _task_store(Settings.from_env(state_dir=command.state_dir)) as tasks:
            task = tasks.get(command.task_id)
            if task is None:
                raise TaskNotFoundError(command.task_id)
            events = tasks.list_events(command.task_id)
        lines = _describe_task(task)
        lines.append(f"Events: {len(events)}")
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def transition_task(self, command: TransitionCommand) -> list[str]:
        with _task_store(Settings.from_env(state_dir=command.state_dir)) as tasks:
            task = tasks.transition(
                command.task_id,
                TaskEvent(command.event),
                details={"source": "cli"},
            )
        return [f"Task {task.id}: status={task.status.value}"]

    def delete_task(self, command: TaskCommand) -> list[str]:
        with _task_store(Settings.from_env(state_dir=command.state_dir)) as tasks:
            tasks.delete(command.task_id)
        return [f"Task deleted: {command.task_id}"]

    def retry_task(self, command: TaskCommand) -> list[str]:
        with _runtime(Settings.from_env(state_dir=command.state_dir)) as runtime:
            _require_detachable(runtime, wait=command.wait)
            task = runtime.service.retry_task(command.task_id)
            lines = [f"Task re-queued: {task.id} status={task.status.value}"]
            if not command.wait:
                lines.append(_detach(runtime, task.id))
                return lines
            if not runtime.service.wait_for_task(task.id, timeout=command.timeout_seconds):
                lines.append(_stop_waiting(runtime, task.id, command.timeout_seconds))
            lines.extend(_describe_task(runtime.tasks.require(task.id)))
        return lines

    def terminate_task(self, command: TaskCommand) -> list[str]:
        with _runtime(Settings.from_env(state_dir=command.state_dir)) as runtime:
            terminated = runtime.service.terminate_task(command.task_id)
            task = runtime.tasks.require(command.task_id)
        if not terminated:
            return [f"No running session for task {command.task_id} (status={task.status.value})"]
        return [f"Task terminated: {command.task_id} status={task.status.value}"]

    def query_memory(self, command: MemoryQueryCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        with _memory_store(settings) as memory:
            entries = memory.query(
                MemoryQuery(
                    key=command.key,
                    type=MemoryType(command.memory_type) if command.memory_type else None,
                    tags=list(command.tags) or None,
                    agent=command.agent,
                    task_id=command.task_id,
                    min_relevance=command.min_relevance,
                    limit=command.limit,
                ),
            )
        lines = [f"Memories: {len(entries)}"]
        for entry in entries:
            value = json.dumps(entry.value, ensure_ascii=False, default=str)
            lines.append(
                f"  {entry.timestamp.isoformat()} {entry.type.value} key={entry.key} "
                f"relevance={entry.relevance:.2f} tags={','.join(entry.tags) or '-'} "
                f"value={value[:PREVIEW_CHARS]}",
            )
        return lines

    def add_memory(self, command: MemoryAddCommand) -> list[str]:
        try:
            value: object = json.loads(command.value)
        except json.JSONDecodeError:
            value = command.value
        with _memory_store(Settings.from_env(state_dir=command.state_dir)) as memory:
            entry = memory.store(
                command.key,
                value,
                type=MemoryType(command.memory_type),
                tags=list(command.tags),
                relevance=command.relevance,
            )
        return [f"Memory stored: id={entry.id} key={entry.key} type={entry.type.value}"]

    def send_to_session(self, command: SessionSendCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        with _task_store(settings) as tasks:
            task = tasks.get(command.target) or _find_by_session(tasks, command.target)
        if task is None or not task.session_id or not task.agent:
            raise LookupError(f"No session found for {command.target}")
        tmux = TmuxClient()
        name = f"{task.agent}-{task.session_id}"
        if not tmux.send_keys(name, command.text):
            raise RuntimeError(f"Could not send input to session {task.session_id}")
        return [f"Sent to {task.session_id} (task {task.id})"]

    def scan(self, command: StateCommand) -> list[str]:
        with _runtime(Settings.from_env(state_dir=command.state_dir)) as runtime:
            _require_detachable(runtime, wait=command.wait)
            created = runtime.service.proactive_scan()
            lines = [f"Scanned tasks created: {len(created)}"]
            for task in created:
                if not command.wait:
                    detail = _detach(runtime, task.id)
                elif runtime.service.wait_for_task(task.id, timeout=command.timeout_seconds):
                    detail = f"status={runtime.tasks.require(task.id).status.value}"
                else:
                    detail = _stop_waiting(runtime, task.id, command.timeout_seconds)
                lines.append(f"  {task.id} {task.title}: {detail}")
        return lines

    def watch(self, command: WatchCommand) -> list[str]:
        """Supervise sessions and reviews that outlived the commands that started them."""

        settings = Settings.from_env(state_dir=command.state_dir)
        monitors = settings.monitors
        with _runtime(settings) as runtime:
            watcher = AgentWatcher(
                runtime.launcher,
                interval_seconds=monitors.watch_interval_seconds,
            )
            checker = _review_checker(runtime)
            settled: list[Task] = []
            resolved: list[Task] = []
            try:
                settled.extend(runtime.service.reconcile(watcher))
                if command.once:
                    watcher.tick()
                    resolved.extend(checker.check_once())
                else:
                    checker.start()
                    logger.info("Watching sessions and reviews; press Ctrl+C to stop")
                    while True:
                        time.sleep(monitors.watch_interval_seconds)
                        settled.extend(runtime.service.reconcile(watcher))
            except KeyboardInterrupt:
                logger.info("Watch stopped")
            finally:
                still_watched = watcher.active_count()
                checker.stop()
                watcher.stop()
        lines = [
            f"Tasks settled: {len(settled)}",
            f"Sessions still running: {still_watched}",
            f"Reviews resolved: {len(resolved)}",
        ]
        lines.extend(f"  {task.id} status={task.status.value}" for task in settled)
        return lines

    def daily_summary(self, command: StateCommand) -> list[str]:
        with _runtime(Settings.from_env(state_dir=command.state_dir)) as runtime:
            notification = runtime.service.send_daily_summary()
        return [notification.title, *notification.message.splitlines()]

    def check_reviews(self, command: StateCommand) -> list[str]:
        with _runtime(Settings.from_env(state_dir=command.state_dir)) as runtime:
            resolved = _review_checker(runtime).check_once()
        lines = [f"Reviews resolved: {len(resolved)}"]
        lines.extend(f"  {task.id} status={task.status.value}" for task in resolved)
        return lines


def build_runtime(settings: Settings) -> Runtime:
    """Wire stores, launcher, loop and service from settings."""

    settings.validate()
    paths = settings.paths
    tasks = TaskStore(paths.tasks_dir)
    memory = MemoryStore(paths.memory_dir, max_entries=settings.memory.max_entries)
    tmux = TmuxClient()
    reviews = ReviewClient(binary=settings.monitors.review_cli, repo_dir=paths.repo_dir)
    use_tmux = settings.launcher.use_tmux and tmux.available()
    if settings.launcher.use_tmux and not use_tmux:
        logger.warning("tmux not found; sessions run as detached processes")
    launcher = SessionLauncher(
        logs_dir=paths.logs_dir,
        default_cwd=paths.repo_dir,
        workspaces=(
            WorkspaceManager(
                repo_dir=paths.repo_dir,
                workspaces_dir=paths.workspaces_dir,
                default_branch=paths.default_branch,
            )
            if settings.launcher.use_worktree
            else None
        ),
        tmux=tmux if use_tmux else None,
        reviews=reviews,
        command_templates=settings.launcher.command_templates,
        poll_interval_seconds=settings.launcher.poll_interval_seconds,
        default_timeout_seconds=settings.launcher.attempt_timeout_seconds,
    )
    loop = RalphLoop(
        launcher=launcher,
        tasks=tasks,
        memory=memory,
        retry_policy=settings.loop.retry_policy(),
        attempt_timeout_seconds=settings.launcher.attempt_timeout_seconds,
    )
    integrations = settings.integrations
    scanners: list[TaskScanner] = []
    if integrations.github_owner and integrations.github_repo:
        scanners.append(
            GitHubIssueScanner(
                owner=integrations.github_owner,
                repo=integrations.github_repo,
                token=integrations.github_token,
                labels=integrations.github_labels,
            ),
        )
    service = OrchestratorService(
        tasks=tasks,
        memory=memory,
        loop=loop,
        launcher=launcher,
        notifier=build_notifier(integrations.notify_webhook_url, integrations.notify_token),
        scanners=scanners,
        launch_defaults=LaunchDefaults(
            use_worktree=settings.launcher.use_worktree,
            use_tmux=use_tmux,
            models=settings.launcher.models,
        ),
        default_max_attempts=settings.loop.max_attempts,
    )
    return Runtime(
        settings=settings,
        tasks=tasks,
        memory=memory,
        launcher=launcher,
        reviews=reviews,
        tmux=tmux,
        service=service,
    )


def _describe_task(task: Task) -> list[str]:
    analysis = task.failure_analysis
    result = task.result
    return [
        f"Task: {task.id}",
        f"Title: {task.title}",
        f"Type: {task.type.value}",
        f"Priority: {task.priority.value}",
        f"Status: {task.status.value}",
        f"Agent: {task.agent or '-'}",
        f"Model: {task.model or '-'} ({task.model_tier.value if task.model_tier else '-'})",
        f"Attempts: {task.attempts}/{task.max_attempts}",
        f"Session: {task.session_id or '-'}",
        f"Review: {task.external_review_id or '-'}",
        f"Failure: {analysis.category.value + ' - ' + analysis.reason if analysis else '-'}",
        f"Error: {(result.error or '-')[:PREVIEW_CHARS] if result else '-'}",
    ]


def _review_checker(runtime: Runtime) -> ReviewChecker:
    return ReviewChecker(
        tasks=runtime.tasks,
        reviews=runtime.reviews,
        on_update=runtime.service.handle_review_update,
        interval_seconds=runtime.settings.monitors.review_check_interval_seconds,
    )


def _require_detachable(runtime: Runtime, *, wait: bool) -> None:
    if not wait and not runtime.service.launch_defaults.use_tmux:
        raise ValueError(
            "--no-wait needs tmux sessions: without tmux the worker stops when this command exits",
        )


def _detach(runtime: Runtime, task_id: str) -> str:
    runtime.service.wait_for_launch(task_id, timeout=LAUNCH_WAIT_SECONDS)
    return f"Detached {task_id}; run `agent-cluster watch` to supervise it"


def _stop_waiting(runtime: Runtime, task_id: str, timeout: float | None) -> str:
    if task_id in runtime.service.shutdown():
        return f"Still running after {timeout}s in tmux; run `agent-cluster watch` to supervise it"
    return f"Stopped after {timeout}s: {task_id}"


def _find_by_session(tasks: TaskStore, session_id: str) -> Task | None:
    for task in tasks.list_tasks():
        if task.session_id == session_id:
            return task
    return None


@contextmanager
def _runtime(settings: Settings) -> Iterator[Runtime]:
    runtime = build_runtime(settings)
    try:
        yield runtime
    finally:
        runtime.service.shutdown()
        runtime.tasks.close()
        runtime.memory.close()


@contextmanager
def _task_store(settings: Settings) -> Iterator[TaskStore]:
    tasks = TaskStore(settings.paths.tasks_dir)
    tasks.init_schema()
    try:
        yield tasks
    finally:
        tasks.close()


@contextmanager
def _memory_store(settings: Settings) -> Iterator[MemoryStore]:
    memory = MemoryStore(settings.paths.memory_dir, max_entries=settings.memory.max_entries)
    memory.init_schema()
    try:
        yield memory
    finally:
        memory.close()
