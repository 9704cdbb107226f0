"""Fixed-interval monitors for worker sessions and external reviews.

Both monitors treat a transiently unavailable source (tmux, process table,
review CLI) as "no change" and try again on the next tick.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from agent_cluster.orchestrator.launcher.base import SessionNotFoundError
from agent_cluster.orchestrator.launcher.reviews import MergeCheck, ReviewClient, ReviewClientError
from agent_cluster.orchestrator.models import (
    AgentSession,
    AgentStatus,
    ReviewInfo,
    SessionStatus,
    Task,
    TaskStatus,
)
from agent_cluster.orchestrator.task_store import TaskStore
from agent_cluster.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_WATCH_INTERVAL_SECONDS = 60.0
DEFAULT_REVIEW_CHECK_INTERVAL_SECONDS = 300.0
WATCH_OUTPUT_CHARS = 500

_READ_ERRORS = (OSError, subprocess.SubprocessError)


class SessionReader(Protocol):
    def refresh(self, session_id: str) -> AgentSession: ...

    def read_log_tail(self, session_id: str, *, max_chars: int = ...) -> str: ...


@dataclass(slots=True)
class WatchCallbacks:
    on_progress: Callable[[AgentStatus], None] | None = None
    on_complete: Callable[[AgentSession], None] | None = None
    on_failure: Callable[[AgentSession, str], None] | None = None


class AgentWatcher:
    """Polls watched sessions from one background thread."""

    def __init__(
        self,
        reader: SessionReader,
        *,
        interval_seconds: float = DEFAULT_WATCH_INTERVAL_SECONDS,
    ) -> None:
        self.reader = reader
        self.interval_seconds = interval_seconds
        self._lock = threading.Lock()
        self._sessions: dict[str, AgentSession] = {}
        self._callbacks: dict[str, WatchCallbacks] = {}
        self._last_status: dict[str, AgentStatus] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start_monitoring(
        self,
        session: AgentSession,
        callbacks: WatchCallbacks | None = None,
        interval_seconds: float | None = None,
    ) -> None:
        """Watch ``session``; the interval only applies when the thread starts."""

        with self._lock:
            self._sessions[session.id] = session
            self._callbacks[session.id] = callbacks or WatchCallbacks()
            if self._thread is not None and self._thread.is_alive():
                return
            if interval_seconds is not None:
                self.interval_seconds = interval_seconds
            self._stop = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop,),
                name="agent-watcher",
                daemon=True,
            )
            self._thread.start()
        logger.debug("Watching session %s every %ss", session.id, self.interval_seconds)

    def stop_monitoring(self, session_id: str) -> None:
        with self._lock:
            self._forget(session_id)

    def stop(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._callbacks.clear()
            self._last_status.clear()
            self._stop.set()
            thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def sessions(self) -> list[AgentSession]:
        with self._lock:
            return list(self._sessions.values())

    def check_status(self, session_id: str) -> AgentStatus:
        with self._lock:
            known = self._sessions.get(session_id)
            previous = self._last_status.get(session_id)
        if known is None:
            return AgentStatus(
                session_id=session_id,
                status=SessionStatus.FAILED,
                last_output="",
                last_update=utc_now(),
            )

        try:
            session = self.reader.refresh(session_id)
            output = self.reader.read_log_tail(session_id, max_chars=WATCH_OUTPUT_CHARS)
        except SessionNotFoundError:
            session = known
            output = ""
            status = AgentStatus(
                session_id=session_id,
                status=SessionStatus.FAILED,
                last_output="Session is no longer tracked",
                last_update=utc_now(),
            )
        except _READ_ERRORS as error:
            logger.debug("Reading %s failed, assuming no change: %s", session_id, error)
            if previous is not None:
                return previous
            return AgentStatus(
                session_id=session_id,
                status=known.status,
                last_output="",
                last_update=utc_now(),
            )
        else:
            status = AgentStatus(
                session_id=session_id,
                status=session.status,
                last_output=output,
                last_update=utc_now(),
            )

        with self._lock:
            if session_id in self._sessions:
                self._sessions[session_id] = session
                self._last_status[session_id] = status
        return status

    def check_all_sessions(self) -> list[AgentStatus]:
        with self._lock:
            session_ids = list(self._sessions)
        return [self.check_status(session_id) for session_id in session_ids]

    def tick(self) -> None:
        """Check every watched session once and dispatch callbacks."""

        for status in self.check_all_sessions():
            finished = status.status in {SessionStatus.COMPLETED, SessionStatus.FAILED}
            with self._lock:
                session = self._sessions.get(status.session_id)
                callbacks = self._callbacks.get(status.session_id)
                if finished:
                    self._forget(status.session_id)
            if session is None or callbacks is None:
                continue
            try:
                if status.status == SessionStatus.COMPLETED:
                    if callbacks.on_complete is not None:
                        callbacks.on_complete(session)
                elif status.status == SessionStatus.FAILED:
                    if callbacks.on_failure is not None:
                        callbacks.on_failure(session, status.last_output or "Unknown error")
                elif callbacks.on_progress is not None:
                    callbacks.on_progress(status)
            except Exception:  # noqa: BLE001
                logger.exception("Watcher callback failed for session %s", status.session_id)

    def _forget(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._callbacks.pop(session_id, None)
        self._last_status.pop(session_id, None)
        if not self._sessions:
            self._stop.set()
            self._thread = None

    def _run(self, stop: threading.Event) -> None:
        while not stop.wait(self.interval_seconds):
            try:
                self.tick()
            except Exception:  # noqa: BLE001
                logger.exception("Agent watcher tick failed")


ReviewUpdateHandler = Callable[[str, ReviewInfo], Task]


class ReviewChecker:
    """Resolves reviewing tasks from the state of their external review."""

    def __init__(
        self,
        *,
        tasks: TaskStore,
        reviews: ReviewClient,
        on_update: ReviewUpdateHandler,
        interval_seconds: float = DEFAULT_REVIEW_CHECK_INTERVAL_SECONDS,
    ) -> None:
        self.tasks = tasks
        self.reviews = reviews
        self.on_update = on_update
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def check_once(self) -> list[Task]:
        """Poll every reviewing task once; returns the tasks that left ``reviewing``."""

        resolved: list[Task] = []
        for task in self.tasks.list_tasks(status=TaskStatus.REVIEWING):
            if task.external_review_id is None:
                continue
            try:
                review = self.reviews.get_review(task.external_review_id)
            except (ReviewClientError, *_READ_ERRORS) as error:
                logger.debug(
                    "Review #%s of task %s unavailable, assuming no change: %s",
                    task.external_review_id,
                    task.id,
                    error,
                )
                continue
            updated = self.on_update(task.id, review)
            if updated.status != TaskStatus.REVIEWING:
                logger.info(
                    "Task %s left review as %s (review #%s %s)",
                    task.id,
                    updated.status.value,
                    review.number,
                    review.status.value,
                )
                resolved.append(updated)
        return resolved

    def can_merge(self, number: int) -> MergeCheck:
        return self.reviews.can_merge(number)

    def merge(self, number: int, *, method: str = "squash") -> bool:
        try:
            self.reviews.merge(number, method=method)
        except ReviewClientError as error:
            logger.warning("Merge of review #%s failed: %s", number, error)
            return False
        return True

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            args=(self._stop,),
            name="review-checker",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    def _run(self, stop: threading.Event) -> None:
        while not stop.wait(self.interval_seconds):
            try:
                self.check_once()
            except Exception:  # noqa: BLE001
                logger.exception("Review checker pass failed")
