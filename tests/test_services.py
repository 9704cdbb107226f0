from __future__ import annotations

import threading

import allure
import pytest

from agent_cluster.orchestrator.launcher.base import LaunchRequest, SessionNotFoundError
from agent_cluster.orchestrator.models import (
    AgentSession,
    CiStatus,
    CompletionResult,
    FailureCategory,
    Notification,
    NotificationPriority,
    NotificationType,
    ReviewInfo,
    ReviewStatus,
    SessionStatus,
    TaskCreate,
    TaskEvent,
    TaskPriority,
    TaskStatus,
    TaskType,
)
from agent_cluster.orchestrator.ralph_loop import TERMINATED_ANALYSIS, RalphLoop
from agent_cluster.orchestrator.retry_policy import RetryPolicy
from agent_cluster.orchestrator.monitors import AgentWatcher
from agent_cluster.orchestrator.services import (
    ORPHANED_ANALYSIS,
    GoalOptions,
    LaunchDefaults,
    OrchestratorService,
)
from agent_cluster.orchestrator.task_store import TaskNotFoundError
from agent_cluster.storage.common import utc_now

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Orchestrator Service"),
]

JOIN_SECONDS = 10.0


class _FakeLauncher:
    """Scripted launcher; with ``block`` a wait past the results lasts until terminate()."""

    def __init__(self, results: list[CompletionResult] | None = None, *, block: bool = False):
        self.results = list(results or [])
        self.block = block
        self.requests: list[LaunchRequest] = []
        self.terminated: list[str] = []
        self.killed_names: list[str] = []
        self.sent: list[tuple[str, str]] = []
        self.waiting = threading.Event()
        self.released = threading.Event()

    def launch(self, request: LaunchRequest) -> AgentSession:
        self.requests.append(request)
        return AgentSession(
            id=f"session-{len(self.requests)}",
            task_id=request.task_id,
            agent=request.agent,
            status=SessionStatus.RUNNING,
            start_time=utc_now(),
        )

    def wait_for_completion(self, session_id, *, timeout=None, on_progress=None):
        if self.results or not self.block:
            return self.results.pop(0)
        self.waiting.set()
        self.released.wait(JOIN_SECONDS)
        return CompletionResult(success=False, error="Session terminated")

    def terminate(self, session_id: str) -> AgentSession:
        if not self.block:
            raise SessionNotFoundError(session_id)
        self.terminated.append(session_id)
        self.released.set()
        return AgentSession(
            id=session_id,
            task_id="",
            agent="codex",
            status=SessionStatus.FAILED,
            start_time=utc_now(),
        )

    def send_command(self, session_id: str, text: str) -> bool:
        self.sent.append((session_id, text))
        return True

    def terminate_by_name(self, tmux_session: str) -> bool:
        self.killed_names.append(tmux_session)
        return True


class _RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> bool:
        self.sent.append(notification)
        return True

    def types(self) -> list[NotificationType]:
        return [notification.type for notification in self.sent]


class _StaticScanner:
    name = "static"

    def __init__(self, payloads: list[TaskCreate]) -> None:
        self.payloads = payloads

    def scan(self) -> list[TaskCreate]:
        return list(self.payloads)


class _BrokenScanner:
    name = "broken"

    def scan(self) -> list[TaskCreate]:
        raise RuntimeError("tracker down")


@pytest.fixture()
def notifier() -> _RecordingNotifier:
    return _RecordingNotifier()


@pytest.fixture()
def make_service(task_store, memory_store, notifier):
    def _make(launcher: _FakeLauncher, **kwargs) -> OrchestratorService:
        loop = RalphLoop(
            launcher=launcher,
            tasks=task_store,
            memory=memory_store,
            retry_policy=kwargs.pop("retry_policy", RetryPolicy()),
        )
        return OrchestratorService(
            tasks=task_store,
            memory=memory_store,
            loop=loop,
            launcher=launcher,
            notifier=notifier,
            launch_defaults=LaunchDefaults(use_worktree=False, use_tmux=False),
            **kwargs,
        )

    return _make


def _run(service: OrchestratorService, goal: str, **options):
    task = service.handle_goal(goal, GoalOptions(**options))
    assert service.wait_for_task(task.id, timeout=JOIN_SECONDS) is True
    return service.tasks.require(task.id)


def test_goal_without_review_completes_and_notifies(make_service, notifier) -> None:
    launcher = _FakeLauncher([CompletionResult(success=True, output="patched")])
    service = make_service(launcher)

    task = _run(service, "Fix the login bug in the auth service", agent="codex")

    assert task.status == TaskStatus.COMPLETED
    assert task.type == TaskType.BUGFIX
    assert task.agent == "codex"
    assert task.model
    assert task.attempts == 1
    assert task.result is not None
    assert task.result.output == "patched"
    assert launcher.requests[0].agent == "codex"
    assert launcher.requests[0].use_tmux is False
    assert notifier.types() == [NotificationType.TASK_COMPLETE]
    events = [event.event_type for event in service.tasks.list_events(task.id)]
    assert events == ["created", "start", "complete", "complete", "approve"]


def test_goal_with_review_waits_in_reviewing(make_service, notifier) -> None:
    launcher = _FakeLauncher([CompletionResult(success=True, external_review_id=7)])
    service = make_service(launcher)

    task = _run(service, "Add a dark mode toggle to the settings page", agent="pixel")

    assert task.status == TaskStatus.REVIEWING
    assert task.external_review_id == 7
    assert notifier.types() == [NotificationType.REVIEW_READY]
    assert notifier.sent[0].data["review"] == 7


def test_review_merge_completes_silently(make_service, notifier) -> None:
    launcher = _FakeLauncher([CompletionResult(success=True, external_review_id=7)])
    service = make_service(launcher)
    task = _run(service, "Add a dark mode toggle", agent="pixel")
    review = ReviewInfo(
        number=7,
        title="Dark mode",
        url="https://example.test/pr/7",
        status=ReviewStatus.MERGED,
        ci_status=CiStatus.PASSED,
    )

    updated = service.handle_review_update(task.id, review)

    assert updated.status == TaskStatus.COMPLETED
    assert notifier.types() == [NotificationType.REVIEW_READY]
    # Already resolved tasks are left alone.
    assert service.handle_review_update(task.id, review).status == TaskStatus.COMPLETED


def test_closed_review_fails_task_loudly(make_service, notifier) -> None:
    launcher = _FakeLauncher([CompletionResult(success=True, external_review_id=8)])
    service = make_service(launcher)
    task = _run(service, "Refactor the billing module", agent="codex")
    review = ReviewInfo(
        number=8,
        title="Billing",
        url="https://example.test/pr/8",
        status=ReviewStatus.CLOSED,
        ci_status=CiStatus.FAILED,
    )

    updated = service.handle_review_update(task.id, review)

    assert updated.status == TaskStatus.FAILED
    assert notifier.types() == [NotificationType.REVIEW_READY, NotificationType.TASK_FAILED]
    assert notifier.sent[-1].priority == NotificationPriority.HIGH


def test_failed_loop_marks_task_failed(make_service, notifier) -> None:
    launcher = _FakeLauncher(
        [
            CompletionResult(success=False, error="Build failed"),
            CompletionResult(success=False, error="Build failed again"),
        ],
    )
    service = make_service(launcher)

    task = _run(service, "Fix the flaky payment test", agent="codex", max_attempts=4)

    assert task.status == TaskStatus.FAILED
    assert task.attempts == 2
    assert task.failure_analysis is not None
    assert task.failure_analysis.category == FailureCategory.TECHNICAL
    assert notifier.types() == [NotificationType.TASK_FAILED]
    assert notifier.sent[0].data["category"] == "technical"
    assert notifier.sent[0].priority == NotificationPriority.HIGH


def test_retry_runs_a_fresh_loop(make_service) -> None:
    launcher = _FakeLauncher(
        [
            CompletionResult(success=False, error="Build failed"),
            CompletionResult(success=False, error="Build failed"),
            CompletionResult(success=True),
        ],
    )
    service = make_service(launcher)
    failed = _run(service, "Fix the flaky payment test", agent="codex")
    assert failed.status == TaskStatus.FAILED

    retried = service.retry_task(failed.id)
    assert service.wait_for_task(retried.id, timeout=JOIN_SECONDS) is True

    task = service.tasks.require(failed.id)
    assert task.status == TaskStatus.COMPLETED
    assert task.attempts == 1
    assert task.failure_analysis is None
    assert len(launcher.requests) == 3


def test_retry_requires_a_failed_task(make_service) -> None:
    service = make_service(_FakeLauncher([CompletionResult(success=True)]))
    task = _run(service, "Write docs for the API", agent="quill")

    with pytest.raises(ValueError):
        service.retry_task(task.id)


def test_unknown_agent_override_is_rejected(make_service) -> None:
    service = make_service(_FakeLauncher())

    with pytest.raises(ValueError):
        service.handle_goal("Fix it", GoalOptions(agent="nobody"))
    assert service.list_tasks() == []


def test_option_overrides_win_over_analysis(make_service) -> None:
    launcher = _FakeLauncher([CompletionResult(success=True)])
    service = make_service(launcher)

    task = _run(
        service,
        "Fix the login bug",
        type=TaskType.DOCS,
        priority=TaskPriority.CRITICAL,
        agent="codex",
        model="pinned-model",
        task_id="goal-1",
    )

    assert task.id == "goal-1"
    assert task.type == TaskType.DOCS
    assert task.priority == TaskPriority.CRITICAL
    assert task.model == "pinned-model"
    assert launcher.requests[0].model == "pinned-model"


def test_terminate_cancels_running_loop(make_service, notifier) -> None:
    launcher = _FakeLauncher(block=True)
    service = make_service(launcher)
    task = service.handle_goal("Fix the login bug", GoalOptions(agent="codex"))
    assert launcher.waiting.wait(JOIN_SECONDS)

    assert service.terminate_task(task.id) is True
    assert service.wait_for_task(task.id, timeout=JOIN_SECONDS) is True

    stored = service.tasks.require(task.id)
    assert launcher.terminated == ["session-1"]
    assert stored.status == TaskStatus.FAILED
    assert stored.failure_analysis == TERMINATED_ANALYSIS
    assert len(launcher.requests) == 1
    assert notifier.types() == [NotificationType.TASK_FAILED]
    assert service.active_task_ids() == []


def test_terminate_settles_orphaned_task(make_service, task_store, notifier) -> None:
    launcher = _FakeLauncher()
    service = make_service(launcher)
    task = task_store.create(TaskCreate(title="Orphan", task_id="orphan-1", agent="codex"))
    task_store.transition(task.id, TaskEvent.START)
    task_store.transition(task.id, TaskEvent.COMPLETE)
    task_store.update(task.id, session_id="s-9")

    assert service.terminate_task(task.id) is True

    stored = task_store.require(task.id)
    assert stored.status == TaskStatus.FAILED
    assert stored.failure_analysis == TERMINATED_ANALYSIS
    assert launcher.killed_names == ["codex-s-9"]
    assert notifier.types() == [NotificationType.TASK_FAILED]


def test_terminate_unknown_task_raises(make_service) -> None:
    service = make_service(_FakeLauncher())

    with pytest.raises(TaskNotFoundError):
        service.terminate_task("missing")


def test_retry_from_failure_notice_keeps_the_new_loop_terminable(task_store, memory_store) -> None:
    launcher = _FakeLauncher([CompletionResult(success=False, error="Build failed")], block=True)
    finished_loops: list[threading.Thread] = []

    class _RetryingNotifier(_RecordingNotifier):
        def send(self, notification: Notification) -> bool:
            super().send(notification)
            if self.types() == [NotificationType.TASK_FAILED]:
                finished_loops.append(threading.current_thread())
                service.retry_task(notification.data["task_id"])
            return True

    notifier = _RetryingNotifier()
    service = OrchestratorService(
        tasks=task_store,
        memory=memory_store,
        loop=RalphLoop(launcher=launcher, tasks=task_store, memory=memory_store),
        launcher=launcher,
        notifier=notifier,
        launch_defaults=LaunchDefaults(use_worktree=False, use_tmux=False),
    )
    task = service.handle_goal("Fix the login bug", GoalOptions(agent="codex", max_attempts=1))
    assert launcher.waiting.wait(JOIN_SECONDS)
    finished_loops[0].join(JOIN_SECONDS)

    assert service.active_task_ids() == [task.id]
    assert service.terminate_task(task.id) is True
    assert service.wait_for_task(task.id, timeout=JOIN_SECONDS) is True

    stored = task_store.require(task.id)
    assert launcher.terminated == ["session-2"]
    assert stored.status == TaskStatus.FAILED
    assert stored.failure_analysis == TERMINATED_ANALYSIS
    assert stored.result is not None
    assert stored.result.error == "Session terminated"
    assert notifier.types() == [NotificationType.TASK_FAILED, NotificationType.TASK_FAILED]
    assert service.active_task_ids() == []


class _AdoptingLauncher(_FakeLauncher):
    """Serves sessions left behind by an earlier process."""

    def __init__(self, sessions: dict[str, AgentSession]) -> None:
        super().__init__()
        self.sessions = sessions

    def adopt(self, *, task_id: str, agent: str, session_id: str) -> AgentSession:
        if session_id not in self.sessions:
            raise SessionNotFoundError(session_id)
        return self.sessions[session_id]

    def refresh(self, session_id: str) -> AgentSession:
        return self.sessions[session_id]

    def read_log_tail(self, session_id: str, *, max_chars: int = 500) -> str:
        return "all tests pass"

    def wait_for_completion(self, session_id, *, timeout=None, on_progress=None):
        if self.sessions[session_id].status == SessionStatus.COMPLETED:
            return CompletionResult(success=True, output="all tests pass")
        return CompletionResult(success=False, error="Process exited with code 1")


def _seed_running(task_store, task_id: str, session_id: str | None) -> None:
    task_store.create(TaskCreate(title=task_id, task_id=task_id, agent="codex"))
    task_store.transition(task_id, TaskEvent.START)
    task_store.transition(task_id, TaskEvent.COMPLETE)
    task_store.update(task_id, session_id=session_id)


def _session(session_id: str, task_id: str, status: SessionStatus) -> AgentSession:
    return AgentSession(
        id=session_id,
        task_id=task_id,
        agent="codex",
        status=status,
        start_time=utc_now(),
    )


def test_reconcile_settles_and_watches_tasks_left_by_another_process(
    make_service,
    task_store,
    notifier,
) -> None:
    launcher = _AdoptingLauncher(
        {
            "s-done": _session("s-done", "done-1", SessionStatus.COMPLETED),
            "s-live": _session("s-live", "live-1", SessionStatus.RUNNING),
        },
    )
    service = make_service(launcher)
    task_store.create(TaskCreate(title="analyzing-1", task_id="analyzing-1"))
    task_store.transition("analyzing-1", TaskEvent.START)
    _seed_running(task_store, "lost-1", "gone")
    _seed_running(task_store, "done-1", "s-done")
    _seed_running(task_store, "live-1", "s-live")
    watcher = AgentWatcher(launcher)

    try:
        settled = service.reconcile(watcher)

        assert sorted(task.id for task in settled) == ["analyzing-1", "done-1", "lost-1"]
        assert task_store.require("analyzing-1").failure_analysis == ORPHANED_ANALYSIS
        assert task_store.require("lost-1").failure_analysis == ORPHANED_ANALYSIS
        assert task_store.require("done-1").status == TaskStatus.COMPLETED
        assert task_store.require("live-1").status == TaskStatus.RUNNING
        assert [session.id for session in watcher.sessions()] == ["s-live"]
        assert service.reconcile(watcher) == []

        launcher.sessions["s-live"].status = SessionStatus.COMPLETED
        watcher.tick()
    finally:
        watcher.stop()

    assert task_store.require("live-1").status == TaskStatus.COMPLETED
    assert watcher.active_count() == 0
    assert sorted(notifier.types()) == sorted(
        [
            NotificationType.TASK_FAILED,
            NotificationType.TASK_FAILED,
            NotificationType.TASK_COMPLETE,
            NotificationType.TASK_COMPLETE,
        ],
    )


def test_shutdown_terminates_process_mode_loops(make_service, notifier) -> None:
    launcher = _FakeLauncher(block=True)
    service = make_service(launcher)
    task = service.handle_goal("Fix the login bug", GoalOptions(agent="codex"))
    assert service.wait_for_launch(task.id, timeout=JOIN_SECONDS) is True
    assert launcher.waiting.wait(JOIN_SECONDS)

    assert service.shutdown(timeout=JOIN_SECONDS) == []

    stored = service.tasks.require(task.id)
    assert stored.status == TaskStatus.FAILED
    assert stored.failure_analysis == TERMINATED_ANALYSIS
    assert launcher.terminated == ["session-1"]
    assert notifier.types() == [NotificationType.TASK_FAILED]


def test_shutdown_leaves_tmux_loops_for_watch(make_service, notifier) -> None:
    launcher = _FakeLauncher(block=True)
    service = make_service(launcher)
    task = service.handle_goal("Fix the login bug", GoalOptions(agent="codex"))
    assert launcher.waiting.wait(JOIN_SECONDS)
    service.launch_defaults = LaunchDefaults(use_worktree=False, use_tmux=True)

    try:
        assert service.shutdown(timeout=JOIN_SECONDS) == [task.id]
        assert launcher.terminated == []
        assert service.tasks.require(task.id).status == TaskStatus.RUNNING
        assert notifier.types() == []
    finally:
        service.terminate_task(task.id)
        service.wait_for_task(task.id, timeout=JOIN_SECONDS)


def test_send_command_passes_through(make_service) -> None:
    launcher = _FakeLauncher()
    service = make_service(launcher)

    assert service.send_command("session-1", "continue") is True
    assert launcher.sent == [("session-1", "continue")]


def test_proactive_scan_skips_known_ids_and_broken_scanners(make_service, task_store) -> None:
    launcher = _FakeLauncher([CompletionResult(success=True)])
    scanner = _StaticScanner(
        [
            TaskCreate(
                title="Crash on login",
                goal="Fix the crash on login",
                type=TaskType.BUGFIX,
                priority=TaskPriority.HIGH,
                task_id="github-1",
                agent="codex",
            ),
            TaskCreate(title="Known", task_id="github-2", agent="codex"),
        ],
    )
    task_store.create(TaskCreate(title="Known", task_id="github-2"))
    service = make_service(launcher, scanners=[_BrokenScanner(), scanner])

    created = service.proactive_scan()

    assert [task.id for task in created] == ["github-1"]
    assert service.wait_for_task("github-1", timeout=JOIN_SECONDS) is True
    stored = task_store.require("github-1")
    assert stored.status == TaskStatus.COMPLETED
    assert stored.priority == TaskPriority.HIGH
    assert stored.max_attempts == 3


def test_daily_summary_counts_todays_tasks(make_service, task_store, notifier) -> None:
    service = make_service(_FakeLauncher([CompletionResult(success=True)]))
    _run(service, "Write docs for the API", agent="quill")
    task_store.create(TaskCreate(title="Still pending", task_id="pending-1"))
    notifier.sent.clear()

    summary = service.send_daily_summary()

    assert summary.type == NotificationType.DAILY_SUMMARY
    assert summary.priority == NotificationPriority.LOW
    assert summary.data == {"completed": 1, "in_progress": 1, "failed": 0}
    assert summary.message.startswith("Completed: 1\nIn progress: 1\nFailed: 0")
    assert notifier.sent == [summary]


def test_notifier_errors_do_not_fail_tasks(task_store, memory_store) -> None:
    class _Exploding:
        def send(self, notification: Notification) -> bool:
            raise RuntimeError("smtp down")

    launcher = _FakeLauncher([CompletionResult(success=True)])
    service = OrchestratorService(
        tasks=task_store,
        memory=memory_store,
        loop=RalphLoop(launcher=launcher, tasks=task_store, memory=memory_store),
        launcher=launcher,
        notifier=_Exploding(),
        launch_defaults=LaunchDefaults(use_worktree=False, use_tmux=False),
    )

    assert _run(service, "Write docs", agent="quill").status == TaskStatus.COMPLETED
