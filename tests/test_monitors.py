from __future__ import annotations

import subprocess

import allure

from agent_cluster.orchestrator.launcher.base import SessionNotFoundError
from agent_cluster.orchestrator.launcher.reviews import MergeCheck, ReviewClientError
from agent_cluster.orchestrator.models import (
    AgentSession,
    AgentStatus,
    CiStatus,
    ReviewInfo,
    ReviewStatus,
    SessionStatus,
    TaskCreate,
    TaskEvent,
    TaskStatus,
)
from agent_cluster.orchestrator.monitors import AgentWatcher, ReviewChecker, WatchCallbacks
from agent_cluster.storage.common import utc_now

pytestmark = [
    allure.epic("Monitoring"),
    allure.feature("Monitors"),
]


def _session(session_id: str, status: SessionStatus = SessionStatus.RUNNING) -> AgentSession:
    return AgentSession(
        id=session_id,
        task_id=f"task-{session_id}",
        agent="codex",
        status=status,
        start_time=utc_now(),
    )


class _FakeSessions:
    def __init__(self) -> None:
        self.statuses: dict[str, SessionStatus] = {}
        self.errors: dict[str, Exception] = {}

    def refresh(self, session_id: str) -> AgentSession:
        if session_id in self.errors:
            raise self.errors[session_id]
        return _session(session_id, self.statuses.get(session_id, SessionStatus.RUNNING))

    def read_log_tail(self, session_id: str, *, max_chars: int = 500) -> str:
        return f"tail of {session_id}"[-max_chars:]


class _Events:
    def __init__(self) -> None:
        self.progress: list[AgentStatus] = []
        self.completed: list[str] = []
        self.failed: list[tuple[str, str]] = []

    def callbacks(self) -> WatchCallbacks:
        return WatchCallbacks(
            on_progress=self.progress.append,
            on_complete=lambda session: self.completed.append(session.id),
            on_failure=lambda session, error: self.failed.append((session.id, error)),
        )


def _watcher(sessions: _FakeSessions) -> AgentWatcher:
    # A long interval keeps the background thread idle; tests drive tick().
    return AgentWatcher(sessions, interval_seconds=3_600)


def test_tick_dispatches_progress_then_completion() -> None:
    sessions = _FakeSessions()
    events = _Events()
    watcher = _watcher(sessions)
    try:
        watcher.start_monitoring(_session("s1"), events.callbacks())

        watcher.tick()
        assert [status.last_output for status in events.progress] == ["tail of s1"]

        sessions.statuses["s1"] = SessionStatus.COMPLETED
        watcher.tick()

        assert events.completed == ["s1"]
        assert watcher.active_count() == 0
    finally:
        watcher.stop()


def test_failed_session_reports_output_and_stops_watching() -> None:
    sessions = _FakeSessions()
    sessions.statuses["s2"] = SessionStatus.FAILED
    events = _Events()
    watcher = _watcher(sessions)
    try:
        watcher.start_monitoring(_session("s2"), events.callbacks())
        watcher.tick()
        watcher.tick()
    finally:
        watcher.stop()

    assert events.failed == [("s2", "tail of s2")]


def test_forgotten_session_counts_as_failed() -> None:
    sessions = _FakeSessions()
    sessions.errors["s3"] = SessionNotFoundError("s3")
    events = _Events()
    watcher = _watcher(sessions)
    try:
        watcher.start_monitoring(_session("s3"), events.callbacks())
        watcher.tick()
    finally:
        watcher.stop()

    assert events.failed == [("s3", "Session is no longer tracked")]


def test_finished_session_is_reported_once_across_overlapping_ticks() -> None:
    sessions = _FakeSessions()
    sessions.statuses["s5"] = SessionStatus.COMPLETED
    completed: list[str] = []
    watcher = _watcher(sessions)

    def _on_complete(session: AgentSession) -> None:
        completed.append(session.id)
        watcher.tick()

    try:
        watcher.start_monitoring(_session("s5"), WatchCallbacks(on_complete=_on_complete))
        watcher.tick()
    finally:
        watcher.stop()

    assert completed == ["s5"]


def test_status_read_outage_keeps_last_known_status() -> None:
    sessions = _FakeSessions()
    watcher = _watcher(sessions)
    try:
        watcher.start_monitoring(_session("s4"))
        first = watcher.check_status("s4")
        sessions.errors["s4"] = subprocess.TimeoutExpired(cmd="tmux", timeout=1)

        second = watcher.check_status("s4")

        assert second is first
        assert watcher.active_count() == 1
    finally:
        watcher.stop()


def test_unknown_session_status_is_failed() -> None:
    watcher = _watcher(_FakeSessions())

    status = watcher.check_status("never-watched")

    assert status.status == SessionStatus.FAILED


def test_callback_errors_are_contained() -> None:
    sessions = _FakeSessions()
    watcher = _watcher(sessions)

    def _explode(_status: AgentStatus) -> None:
        raise RuntimeError("callback bug")

    try:
        watcher.start_monitoring(_session("s5"), WatchCallbacks(on_progress=_explode))
        watcher.start_monitoring(_session("s6"))
        watcher.tick()
        assert {session.id for session in watcher.sessions()} == {"s5", "s6"}
        watcher.stop_monitoring("s5")
        assert watcher.active_count() == 1
    finally:
        watcher.stop()
    assert watcher.active_count() == 0


class _Reviews:
    def __init__(self, reviews: dict[int, ReviewInfo | Exception]) -> None:
        self.reviews = reviews
        self.merged: list[tuple[int, str]] = []

    def get_review(self, number: int) -> ReviewInfo:
        review = self.reviews[number]
        if isinstance(review, Exception):
            raise review
        return review

    def can_merge(self, number: int) -> MergeCheck:
        return MergeCheck(can_merge=number == 1)

    def merge(self, number: int, *, method: str = "squash") -> None:
        if number != 1:
            raise ReviewClientError("not mergeable")
        self.merged.append((number, method))


def _review(number: int, status: ReviewStatus) -> ReviewInfo:
    return ReviewInfo(
        number=number,
        title=f"Review {number}",
        url=f"https://example.test/pr/{number}",
        status=status,
        ci_status=CiStatus.PASSED,
    )


def _reviewing_task(task_store, task_id: str, review_id: int | None) -> None:
    task_store.create(TaskCreate(title=task_id, task_id=task_id))
    for event in (TaskEvent.START, TaskEvent.COMPLETE, TaskEvent.COMPLETE):
        task_store.transition(task_id, event)
    task_store.update(task_id, external_review_id=review_id)


def test_check_once_resolves_changed_reviews(task_store) -> None:
    _reviewing_task(task_store, "merged", 1)
    _reviewing_task(task_store, "open", 2)
    _reviewing_task(task_store, "flaky", 3)
    _reviewing_task(task_store, "no-review", None)
    reviews = _Reviews(
        {
            1: _review(1, ReviewStatus.MERGED),
            2: _review(2, ReviewStatus.OPEN),
            3: ReviewClientError("gh offline"),
        },
    )
    seen: list[tuple[str, int]] = []

    def _on_update(task_id: str, review: ReviewInfo):
        seen.append((task_id, review.number))
        if review.status == ReviewStatus.MERGED:
            return task_store.transition(task_id, TaskEvent.APPROVE)
        return task_store.require(task_id)

    checker = ReviewChecker(tasks=task_store, reviews=reviews, on_update=_on_update)

    resolved = checker.check_once()

    assert [task.id for task in resolved] == ["merged"]
    assert resolved[0].status == TaskStatus.COMPLETED
    assert sorted(seen) == [("merged", 1), ("open", 2)]
    assert task_store.require("flaky").status == TaskStatus.REVIEWING


def test_merge_helpers_delegate_to_review_client(task_store) -> None:
    reviews = _Reviews({})
    checker = ReviewChecker(
        tasks=task_store,
        reviews=reviews,
        on_update=lambda task_id, _review: task_store.require(task_id),
    )

    assert checker.can_merge(1).can_merge is True
    assert checker.merge(1) is True
    assert checker.merge(2, method="rebase") is False
    assert reviews.merged == [(1, "squash")]


def test_review_checker_thread_starts_and_stops(task_store) -> None:
    checker = ReviewChecker(
        tasks=task_store,
        reviews=_Reviews({}),
        on_update=lambda task_id, _review: task_store.require(task_id),
        interval_seconds=3_600,
    )

    checker.start()
    checker.start()
    checker.stop()
    checker.stop()
