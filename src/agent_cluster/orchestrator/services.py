"""Use-case services: the orchestrator façade over analyzer, stores and loop."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from agent_cluster.orchestrator.agent_selector import select_agent
from agent_cluster.orchestrator.agents import (
    DEFAULT_CAPABILITIES,
    AgentCapability,
    normalize_agent,
    validate_supported_agent,
)
from agent_cluster.orchestrator.goal_analyzer import GoalAnalyzerFn, analyze_goal
from agent_cluster.orchestrator.launcher.base import SessionNotFoundError
from agent_cluster.orchestrator.memory_store import MemoryStore
from agent_cluster.orchestrator.model_router import get_routed_model
from agent_cluster.orchestrator.models import (
    AgentSession,
    CompletionResult,
    FailureAnalysis,
    FailureCategory,
    GoalAnalysis,
    LoopOutcome,
    Notification,
    NotificationPriority,
    NotificationType,
    ReviewInfo,
    ReviewStatus,
    Task,
    TaskContext,
    TaskCreate,
    TaskEvent,
    TaskPriority,
    TaskResult,
    TaskStatus,
    TaskType,
)
from agent_cluster.orchestrator.monitors import AgentWatcher, WatchCallbacks
from agent_cluster.orchestrator.notify import LogNotifier, Notifier
from agent_cluster.orchestrator.ralph_loop import (
    ESCALATION_ANALYSIS,
    TERMINATED_ANALYSIS,
    LaunchSettings,
    LoopHooks,
    RalphLoop,
)
from agent_cluster.orchestrator.scanners import TaskScanner
from agent_cluster.orchestrator.task_store import InvalidTransitionError, TaskStore
from agent_cluster.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
SUMMARY_TITLE_LIMIT = 20
SHUTDOWN_JOIN_SECONDS = 10.0

ORPHANED_ANALYSIS = FailureAnalysis(
    reason="Worker session lost with its supervising process",
    category=FailureCategory.UNKNOWN,
    suggestion="Retry the task; its worker ended before an outcome was recorded.",
)


@dataclass(slots=True)
class GoalOptions:
    """Caller overrides for :meth:`OrchestratorService.handle_goal`."""

    type: TaskType | None = None
    priority: TaskPriority | None = None
    agent: str | None = None
    model: str | None = None
    max_attempts: int | None = None
    task_id: str | None = None


@dataclass(slots=True)
class LaunchDefaults:
    """Launcher switches and per-agent model pins applied to every task."""

    use_worktree: bool = True
    use_tmux: bool = True
    models: dict[str, str] = field(default_factory=dict)


class SessionControl(Protocol):
    """Launcher operations the façade passes through."""

    def send_command(self, session_id: str, text: str) -> bool: ...

    def terminate(self, session_id: str) -> AgentSession: ...

    def terminate_by_name(self, tmux_session: str) -> bool: ...

    def adopt(self, *, task_id: str, agent: str, session_id: str) -> AgentSession: ...

    def wait_for_completion(
        self,
        session_id: str,
        *,
        timeout: float | None = None,
    ) -> CompletionResult: ...


class OrchestratorService:
    """Accepts goals, runs each task's retry loop on its own thread, reports outcomes."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        tasks: TaskStore,
        memory: MemoryStore,
        loop: RalphLoop,
        launcher: SessionControl,
        notifier: Notifier | None = None,
        scanners: Sequence[TaskScanner] = (),
        analyzer: GoalAnalyzerFn = analyze_goal,
        capabilities: Mapping[str, AgentCapability] = DEFAULT_CAPABILITIES,
        launch_defaults: LaunchDefaults | None = None,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.tasks = tasks
        self.memory = memory
        self.loop = loop
        self.launcher = launcher
        self.notifier: Notifier = notifier or LogNotifier()
        self.scanners = list(scanners)
        self.analyzer = analyzer
        self.capabilities = dict(capabilities)
        self.launch_defaults = launch_defaults or LaunchDefaults()
        self.default_max_attempts = default_max_attempts
        self._lock = threading.Lock()
        self._threads: dict[str, threading.Thread] = {}
        self._active_sessions: dict[str, str] = {}
        self._cancels: dict[str, threading.Event] = {}
        self._launched: dict[str, threading.Event] = {}

    def analyze(self, goal: str) -> GoalAnalysis:
        return self.analyzer(goal)

    def handle_goal(self, goal: str, options: GoalOptions | None = None) -> Task:
        """Create a task for ``goal`` and start its loop in the background.

        Returns the created task right away (status ``analyzing``); the
        outcome is reported through the task store and the notifier.
        """

        options = options or GoalOptions()
        if options.agent:
            validate_supported_agent(normalize_agent(options.agent))
        analysis = self.analyzer(goal)
        if options.type is not None:
            analysis.type = options.type
        if options.priority is not None:
            analysis.priority = options.priority

        history = self.memory.get_relevant_context(analysis.type.value, analysis.area)
        task = self.tasks.create(
            TaskCreate(
                task_id=options.task_id,
                title=analysis.title,
                description=analysis.description,
                type=analysis.type,
                priority=analysis.priority,
                goal=goal,
                context=TaskContext(
                    requirements=list(analysis.requirements),
                    constraints=list(analysis.constraints),
                    files=list(analysis.suggested_files),
                    history=history,
                    area=analysis.area,
                ),
                max_attempts=options.max_attempts or self.default_max_attempts,
                agent=normalize_agent(options.agent) if options.agent else None,
            ),
        )
        logger.info("Task %s created for goal: %s", task.id, analysis.title)
        return self._dispatch(task, analysis, model_override=options.model)

    def get_task(self, task_id: str) -> Task | None:
        return self.tasks.get(task_id)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        return self.tasks.list_tasks(status=status, limit=limit)

    def retry_task(self, task_id: str) -> Task:
        """Move a failed task back to pending and run a fresh loop."""

        task = self.tasks.transition(task_id, TaskEvent.RETRY, details={"reason": "manual"})
        task = self.tasks.update(
            task_id,
            attempts=0,
            session_id=None,
            result=None,
            failure_analysis=None,
        )
        analysis = self.analyzer(task.goal or task.title)
        analysis.type = task.type
        analysis.priority = task.priority
        return self._dispatch(task, analysis)

    def terminate_task(self, task_id: str) -> bool:
        """Kill the task's active session; the loop observes it on its next poll."""

        task = self.tasks.require(task_id)
        with self._lock:
            cancel = self._cancels.get(task_id)
            if cancel is not None:
                cancel.set()
            session_id = self._active_sessions.get(task_id) or task.session_id
        if cancel is None:
            # No loop in this process owns the task; settle it here.
            self._fail_orphan(task, TERMINATED_ANALYSIS)
        if session_id is None:
            logger.info("Task %s has no session to terminate", task_id)
            return cancel is not None
        try:
            self.launcher.terminate(session_id)
        except SessionNotFoundError:
            killed = bool(task.agent) and self.launcher.terminate_by_name(
                f"{task.agent}-{session_id}",
            )
            if not killed:
                logger.warning("Session %s of task %s is not running", session_id, task_id)
            return killed
        logger.info("Task %s session %s terminated", task_id, session_id)
        return True

    def send_command(self, session_id: str, text: str) -> bool:
        return self.launcher.send_command(session_id, text)

    def proactive_scan(self) -> list[Task]:
        """Pull tasks from every scanner; ids that already exist are skipped."""

        created: list[Task] = []
        for scanner in self.scanners:
            try:
                payloads = scanner.scan()
            except Exception:  # noqa: BLE001
                logger.exception("Scanner %s failed", getattr(scanner, "name", scanner))
                continue
            logger.info("Scanner %s found %s candidate(s)", scanner.name, len(payloads))
            for payload in payloads:
                if payload.task_id and self.tasks.get(payload.task_id) is not None:
                    logger.debug("Task %s already known; skipping", payload.task_id)
                    continue
                analysis = self.analyzer(payload.goal or payload.title)
                analysis.type = payload.type
                analysis.priority = payload.priority
                if not payload.context.files:
                    payload.context.files = list(analysis.suggested_files)
                payload.context.area = analysis.area
                payload.max_attempts = payload.max_attempts or self.default_max_attempts
                task = self.tasks.create(payload)
                created.append(self._dispatch(task, analysis))
        return created

    def send_daily_summary(self) -> Notification:
        today = utc_now().date()
        todays = [task for task in self.tasks.list_tasks() if task.created_at.date() == today]
        completed = [task for task in todays if task.status == TaskStatus.COMPLETED]
        failed = [task for task in todays if task.status == TaskStatus.FAILED]
        in_progress = [
            task for task in todays if task.status not in {TaskStatus.COMPLETED, TaskStatus.FAILED}
        ]
        lines = [
            f"Completed: {len(completed)}",
            f"In progress: {len(in_progress)}",
            f"Failed: {len(failed)}",
        ]
        if completed:
            lines.append("")
            lines.extend(f"- {task.title}" for task in completed[:SUMMARY_TITLE_LIMIT])
        notification = Notification(
            type=NotificationType.DAILY_SUMMARY,
            title="Daily summary",
            message="\n".join(lines),
            data={
                "completed": len(completed),
                "in_progress": len(in_progress),
                "failed": len(failed),
            },
            priority=NotificationPriority.LOW,
        )
        self._notify(notification)
        return notification

    def handle_review_update(self, task_id: str, review: ReviewInfo) -> Task:
        """Resolve a reviewing task from the state of its external review."""

        task = self.tasks.require(task_id)
        if task.status != TaskStatus.REVIEWING:
            return task
        details = {"review": review.number, "review_status": review.status.value}
        if review.status in {ReviewStatus.MERGED, ReviewStatus.APPROVED}:
            task = self.tasks.transition(task_id, TaskEvent.APPROVE, details=details)
            logger.info("Task %s completed via review #%s", task_id, review.number)
        elif review.status == ReviewStatus.CLOSED:
            task = self.tasks.transition(task_id, TaskEvent.REJECT, details=details)
            self._notify(
                Notification(
                    type=NotificationType.TASK_FAILED,
                    title=f"Review closed: {task.title}",
                    message=f"Review #{review.number} was closed without merging.",
                    data={"task_id": task_id, "review": review.number, "url": review.url},
                    priority=NotificationPriority.HIGH,
                ),
            )
        return task

    def wait_for_task(self, task_id: str, timeout: float | None = None) -> bool:
        """Join the task's loop thread; False when it is still running."""

        with self._lock:
            thread = self._threads.get(task_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def wait_for_launch(self, task_id: str, timeout: float | None = None) -> bool:
        """Block until the task's first session starts or its loop ends."""

        with self._lock:
            launched = self._launched.get(task_id)
        if launched is None:
            return True
        return launched.wait(timeout)

    def active_task_ids(self) -> list[str]:
        with self._lock:
            return [task_id for task_id, thread in self._threads.items() if thread.is_alive()]

    def reconcile(self, watcher: AgentWatcher) -> list[Task]:
        """Settle ``analyzing`` and ``running`` tasks that no loop in this process drives.

        Such tasks are left behind when the process that ran their loop exits.
        A task whose tmux session is still alive is handed to ``watcher`` and
        settled when the session ends; a session that already ended is settled
        from its exit status and log. Any other such task fails with the
        "orphaned" analysis. Returns the tasks settled by this call.
        """

        watched = {session.id for session in watcher.sessions()}
        settled: list[Task] = []
        for status in (TaskStatus.ANALYZING, TaskStatus.RUNNING):
            for task in self.tasks.list_tasks(status=status):
                with self._lock:
                    owned = task.id in self._cancels
                if owned or (task.session_id is not None and task.session_id in watched):
                    continue
                session = self._adopt(task)
                if session is None:
                    self._fail_orphan(task, ORPHANED_ANALYSIS)
                    settled.append(self.tasks.require(task.id))
                elif session.status.is_terminal:
                    settled.append(self._settle_session(task.id, session))
                else:
                    watcher.start_monitoring(
                        session,
                        WatchCallbacks(
                            on_complete=self._on_watched_end,
                            on_failure=lambda ended, _output: self._on_watched_end(ended),
                        ),
                    )
                    logger.info("Task %s: watching session %s", task.id, session.id)
        return settled

    def shutdown(self, *, timeout: float = SHUTDOWN_JOIN_SECONDS) -> list[str]:
        """Stop loops before this process exits; returns ids of tasks left running.

        Tmux sessions outlive the process and are left for :meth:`reconcile`.
        Detached child processes do not, so their tasks are terminated and fail
        with a notification.
        """

        detached: list[str] = []
        for task_id in self.active_task_ids():
            if self.launch_defaults.use_tmux:
                logger.warning("Task %s left running in tmux; `watch` will settle it", task_id)
                detached.append(task_id)
                continue
            self.terminate_task(task_id)
            if not self.wait_for_task(task_id, timeout):
                logger.warning("Task %s loop did not stop within %ss", task_id, timeout)
        return detached

    def _dispatch(
        self,
        task: Task,
        analysis: GoalAnalysis,
        *,
        model_override: str | None = None,
    ) -> Task:
        task = self.tasks.transition(task.id, TaskEvent.START)
        agent = task.agent or select_agent(analysis, self.capabilities)
        routed = get_routed_model(agent, task.goal or task.title, task.type)
        model = model_override or self.launch_defaults.models.get(agent) or routed.model
        task = self.tasks.update(
            task.id,
            agent=agent,
            model=model,
            model_tier=routed.tier,
        )
        logger.info(
            "Task %s assigned to %s using %s (%s tier): %s",
            task.id,
            agent,
            model,
            routed.tier.value,
            routed.reasoning,
        )

        cancel = threading.Event()
        launched = threading.Event()
        thread = threading.Thread(
            target=self._run_task,
            args=(task.id, model, cancel, launched),
            name=f"ralph-{task.id}",
            daemon=True,
        )
        with self._lock:
            self._threads[task.id] = thread
            self._cancels[task.id] = cancel
            self._launched[task.id] = launched
            self._active_sessions.pop(task.id, None)
        thread.start()
        return task

    def _run_task(
        self,
        task_id: str,
        model: str,
        cancel: threading.Event,
        launched: threading.Event,
    ) -> None:
        started = time.monotonic()
        try:
            task = self.tasks.transition(task_id, TaskEvent.COMPLETE, details={"phase": "analysis"})
            outcome = self.loop.run(
                task,
                launch=LaunchSettings(
                    model=model,
                    use_worktree=self.launch_defaults.use_worktree,
                    use_tmux=self.launch_defaults.use_tmux,
                ),
                hooks=LoopHooks(on_attempt=self._on_attempt),
                cancel=cancel,
            )
            self._finish(task_id, outcome, duration=time.monotonic() - started)
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s orchestration failed", task_id)
            self._fail_unexpectedly(task_id, error)
        finally:
            launched.set()
            with self._lock:
                # A retry may already have dispatched a new loop for this task.
                if self._cancels.get(task_id) is cancel:
                    del self._cancels[task_id]
                    self._launched.pop(task_id, None)
                    self._active_sessions.pop(task_id, None)

    def _on_attempt(self, attempt: int, prompt: str, session: AgentSession) -> None:
        del prompt
        with self._lock:
            self._active_sessions[session.task_id] = session.id
            launched = self._launched.get(session.task_id)
        if launched is not None:
            launched.set()
        logger.info("Task %s attempt %s running in %s", session.task_id, attempt, session.id)

    def _finish(self, task_id: str, outcome: LoopOutcome, *, duration: float) -> None:
        result = outcome.result or CompletionResult(success=outcome.success)
        task_result = TaskResult(
            success=outcome.success,
            output=result.output,
            error=result.error,
            external_review_id=result.external_review_id,
            duration_seconds=round(duration, 3),
        )
        if outcome.success:
            self._finish_success(task_id, task_result)
        else:
            self._finish_failure(task_id, task_result, outcome.analysis)

    def _finish_success(self, task_id: str, result: TaskResult) -> None:
        self.tasks.update(task_id, result=result, external_review_id=result.external_review_id)
        task = self.tasks.transition(task_id, TaskEvent.COMPLETE, details={"phase": "execution"})
        review_id = result.external_review_id
        if review_id is None:
            task = self.tasks.transition(task_id, TaskEvent.APPROVE, details={"review": None})
            self._notify(
                Notification(
                    type=NotificationType.TASK_COMPLETE,
                    title=f"Task complete: {task.title}",
                    message="Task completed successfully.",
                    data={"task_id": task_id, "attempts": task.attempts},
                    priority=NotificationPriority.MEDIUM,
                ),
            )
            return
        self._notify(
            Notification(
                type=NotificationType.REVIEW_READY,
                title=f"Review ready: {task.title}",
                message=f"Review #{review_id} is open for task {task_id}.",
                data={"task_id": task_id, "review": review_id, "attempts": task.attempts},
                priority=NotificationPriority.MEDIUM,
            ),
        )

    def _finish_failure(
        self,
        task_id: str,
        result: TaskResult,
        analysis: FailureAnalysis | None,
    ) -> None:
        self.tasks.update(task_id, result=result, failure_analysis=analysis)
        task = self.tasks.transition(
            task_id,
            TaskEvent.FAIL,
            details={"category": analysis.category.value if analysis else None},
        )
        reason = analysis.reason if analysis else (result.error or "unknown")
        suggestion = analysis.suggestion if analysis else "Escalate to a human."
        self._notify(
            Notification(
                type=NotificationType.TASK_FAILED,
                title=f"Task failed: {task.title}",
                message=f"Reason: {reason}\nSuggestion: {suggestion}",
                data={
                    "task_id": task_id,
                    "attempts": task.attempts,
                    "category": analysis.category.value if analysis else None,
                },
                priority=NotificationPriority.HIGH,
            ),
        )

    def _fail_orphan(self, task: Task, analysis: FailureAnalysis) -> None:
        if task.status not in {TaskStatus.ANALYZING, TaskStatus.RUNNING}:
            return
        self._finish_failure(
            task.id,
            TaskResult(success=False, error=analysis.reason),
            analysis,
        )

    def _adopt(self, task: Task) -> AgentSession | None:
        if task.status != TaskStatus.RUNNING or not task.session_id or not task.agent:
            return None
        try:
            return self.launcher.adopt(
                task_id=task.id,
                agent=task.agent,
                session_id=task.session_id,
            )
        except SessionNotFoundError:
            return None

    def _settle_session(self, task_id: str, session: AgentSession) -> Task:
        """Record the outcome of a finished session that no loop is waiting on."""

        result = self.launcher.wait_for_completion(session.id, timeout=0)
        task = self.tasks.require(task_id)
        if task.status != TaskStatus.RUNNING:
            return task
        task_result = TaskResult(
            success=result.success,
            output=result.output,
            error=result.error,
            external_review_id=result.external_review_id,
        )
        try:
            if result.success:
                self._finish_success(task_id, task_result)
            else:
                analysis = self.loop.classify(task, result.error or "Unknown error")
                self._finish_failure(task_id, task_result, analysis)
        except InvalidTransitionError:
            logger.info("Task %s was settled concurrently", task_id)
        return self.tasks.require(task_id)

    def _on_watched_end(self, session: AgentSession) -> None:
        task = self._settle_session(session.task_id, session)
        logger.info(
            "Watched session %s ended; task %s is %s",
            session.id,
            task.id,
            task.status.value,
        )

    def _fail_unexpectedly(self, task_id: str, error: Exception) -> None:
        task = self.tasks.get(task_id)
        if task is None or task.status not in {TaskStatus.ANALYZING, TaskStatus.RUNNING}:
            return
        try:
            self._finish_failure(
                task_id,
                TaskResult(success=False, error=str(error)),
                FailureAnalysis(
                    reason=f"Orchestration error: {error}",
                    category=ESCALATION_ANALYSIS.category,
                    suggestion=ESCALATION_ANALYSIS.suggestion,
                ),
            )
        except Exception:  # noqa: BLE001
            logger.exception("Task %s could not be marked failed", task_id)

    def _notify(self, notification: Notification) -> None:
        try:
            self.notifier.send(notification)
        except Exception:  # noqa: BLE001
            logger.exception("Notifier raised for %s", notification.type.value)
