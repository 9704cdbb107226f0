"""Start, supervise, poll and terminate worker sessions.

A session runs one worker CLI either as a detached child process (output
redirected to the session log) or inside a named tmux session whose output is
tee'd into the same log. The session map is shared by every concurrent retry
loop and is guarded by a lock.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import replace
from pathlib import Path
from uuid import uuid4

from agent_cluster.orchestrator.agents import default_command_template
from agent_cluster.orchestrator.launcher.base import (
    LaunchError,
    LaunchRequest,
    ProgressCallback,
    SessionNotFoundError,
)
from agent_cluster.orchestrator.launcher.reviews import ReviewClient, ReviewClientError
from agent_cluster.orchestrator.launcher.tmux import TmuxClient
from agent_cluster.orchestrator.launcher.workspace import (
    WorkspaceError,
    WorkspaceManager,
    branch_name,
)
from agent_cluster.orchestrator.models import AgentSession, CompletionResult, SessionStatus
from agent_cluster.orchestrator.prompt_builder import build_task_trailer
from agent_cluster.orchestrator.sanitization import sanitize_tail
from agent_cluster.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_TIMEOUT_SECONDS = 30 * 60
PROGRESS_TAIL_CHARS = 500
OUTPUT_TAIL_CHARS = 4_000
TIMEOUT_ERROR = "Timeout"


class SessionLauncher:
    """Owns every worker session started by this controller process."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        logs_dir: Path,
        default_cwd: Path | None = None,
        workspaces: WorkspaceManager | None = None,
        tmux: TmuxClient | None = None,
        reviews: ReviewClient | None = None,
        command_templates: dict[str, str] | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.logs_dir = logs_dir
        self.default_cwd = default_cwd or Path.cwd()
        self.workspaces = workspaces
        self.tmux = tmux
        self.reviews = reviews
        self.command_templates = dict(command_templates or {})
        self.poll_interval_seconds = poll_interval_seconds
        self.default_timeout_seconds = default_timeout_seconds

        self._lock = threading.Lock()
        self._sessions: dict[str, AgentSession] = {}
        self._processes: dict[str, subprocess.Popen[bytes]] = {}
        self._exit_files: dict[str, Path] = {}
        self._end_reasons: dict[str, str] = {}

    def launch(self, request: LaunchRequest) -> AgentSession:
        """Start a worker session; spawn failures raise :class:`LaunchError`."""

        active = self.active_session_for_task(request.task_id)
        if active is not None:
            raise LaunchError(
                f"Task {request.task_id} already has active session {active.id}",
                transient=False,
            )

        session_id = f"session-{uuid4().hex[:12]}"
        cwd = self.default_cwd
        branch: str | None = None
        workspace: Path | None = None
        if request.use_worktree and self.workspaces is not None:
            try:
                created = self.workspaces.ensure_worktree(request.agent, request.task_id)
            except WorkspaceError as error:
                raise LaunchError(f"Workspace setup failed: {error}", transient=False) from error
            cwd = workspace = created.path
            branch = created.branch

        self.logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.logs_dir / f"{session_id}.log"
        prompt_file = self.logs_dir / f"{session_id}.prompt.md"
        full_prompt = build_full_prompt(request.prompt, request.task_id)
        prompt_file.write_text(full_prompt, "utf-8")
        log_path.touch()

        template = (
            request.command_template
            or self.command_templates.get(request.agent)
            or default_command_template(request.agent)
        )
        argv = build_run_args(
            command_template=template,
            model=request.model,
            prompt=full_prompt,
            prompt_file=prompt_file,
            task_id=request.task_id,
        )
        worker_env = {
            "AGENT_CLUSTER_TASK_ID": request.task_id,
            "AGENT_CLUSTER_SESSION_ID": session_id,
            "AGENT_CLUSTER_AGENT": request.agent,
            "AGENT_CLUSTER_MODEL": request.model,
            **request.env,
        }

        session = AgentSession(
            id=session_id,
            task_id=request.task_id,
            agent=request.agent,
            status=SessionStatus.STARTING,
            start_time=utc_now(),
            workspace=workspace,
            branch=branch,
            log_path=log_path,
        )
        with self._lock:
            self._sessions[session_id] = session

        tmux = self.tmux if request.use_tmux else None
        try:
            if tmux is not None:
                self._spawn_tmux(
                    session,
                    tmux=tmux,
                    argv=argv,
                    cwd=cwd,
                    env=worker_env,
                    log_path=log_path,
                )
            else:
                self._spawn_process(
                    session,
                    argv=argv,
                    cwd=cwd,
                    env=worker_env,
                    log_path=log_path,
                )
        except LaunchError as error:
            self._finalize(session_id, exit_code=None, reason=f"Spawn failed: {error}")
            raise

        logger.info(
            "Launched %s session %s for task %s (%s)",
            request.agent,
            session_id,
            request.task_id,
            "tmux" if tmux is not None else "process",
        )
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> AgentSession:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session not found: {session_id}")
            return replace(session)

    def list_sessions(self, *, task_id: str | None = None) -> list[AgentSession]:
        with self._lock:
            sessions = [replace(s) for s in self._sessions.values()]
        if task_id is not None:
            sessions = [s for s in sessions if s.task_id == task_id]
        return sessions

    def active_session_for_task(self, task_id: str) -> AgentSession | None:
        for session in self.list_sessions(task_id=task_id):
            if not session.status.is_terminal:
                return session
        return None

    def refresh(self, session_id: str) -> AgentSession:
        """Re-check the underlying process or tmux session and return a snapshot."""

        session = self.get_session(session_id)
        if session.status.is_terminal:
            return session

        with self._lock:
            process = self._processes.get(session_id)
            exit_file = self._exit_files.get(session_id)

        if process is not None:
            code = process.poll()
            if code is not None:
                self._finalize(session_id, exit_code=code)
        elif exit_file is not None:
            self._refresh_tmux(session, exit_file)
        return self.get_session(session_id)

    def read_log_tail(self, session_id: str, *, max_chars: int = PROGRESS_TAIL_CHARS) -> str:
        """Last ``max_chars`` of session output; live tmux panes back an empty log."""

        session = self.get_session(session_id)
        tail = _read_tail(session.log_path, max_chars=max_chars) if session.log_path else ""
        if tail or session.status.is_terminal or session.tmux_session is None or self.tmux is None:
            return tail
        try:
            return self.tmux.capture_pane(session.tmux_session)[-max_chars:]
        except (OSError, subprocess.SubprocessError) as error:
            logger.debug("tmux capture failed for %s: %s", session_id, error)
            return ""

    def wait_for_completion(
        self,
        session_id: str,
        *,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
        poll_interval: float | None = None,
    ) -> CompletionResult:
        """Block until the session is terminal or ``timeout`` elapses.

        Each poll delivers the last ~500 chars of the session log to
        ``on_progress``. A timeout returns ``success=False, error="Timeout"``
        without stopping the session.
        """

        timeout_seconds = self.default_timeout_seconds if timeout is None else timeout
        interval = self.poll_interval_seconds if poll_interval is None else poll_interval
        deadline = time.monotonic() + timeout_seconds

        while True:
            session = self.refresh(session_id)
            if on_progress is not None:
                tail = self.read_log_tail(session_id)
                if tail:
                    try:
                        on_progress(tail)
                    except Exception:  # noqa: BLE001
                        logger.exception("Progress callback failed for session %s", session_id)
            if session.status.is_terminal:
                return self._completion_result(session)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Session %s timed out after %.0fs", session_id, timeout_seconds)
                return CompletionResult(success=False, error=TIMEOUT_ERROR)
            time.sleep(max(0.0, min(interval, remaining)))

    def send_command(self, session_id: str, text: str) -> bool:
        """Best-effort text injection; only tmux sessions accept input."""

        session = self.get_session(session_id)
        if session.status.is_terminal:
            logger.warning("Session %s is %s; command dropped", session_id, session.status.value)
            return False
        if session.tmux_session is None or self.tmux is None:
            logger.warning("Session %s has no terminal; command dropped", session_id)
            return False
        return self.tmux.send_keys(session.tmux_session, text)

    def terminate(self, session_id: str) -> AgentSession:
        """Kill the tmux session and/or process, force ``failed`` and stamp end time."""

        session = self.get_session(session_id)
        with self._lock:
            if not session.status.is_terminal:
                # The reaper may record the exit before _finalize below runs.
                self._end_reasons.setdefault(session_id, "Session terminated")
            process = self._processes.get(session_id)
        if session.tmux_session is not None and self.tmux is not None:
            self.tmux.kill_session(session.tmux_session)
        if process is not None:
            _terminate_process(process)
        self._finalize(session_id, exit_code=None, reason="Session terminated")
        logger.info("Terminated session %s of task %s", session_id, session.task_id)
        return self.get_session(session_id)

    def terminate_by_name(self, tmux_session: str) -> bool:
        """Kill a tmux session that this process does not track (e.g. after restart)."""

        if self.tmux is None:
            return False
        return self.tmux.kill_session(tmux_session)

    def adopt(self, *, task_id: str, agent: str, session_id: str) -> AgentSession:
        """Track a tmux session started by an earlier process and refresh it.

        Only tmux sessions outlive their launcher, so without tmux this raises
        :class:`SessionNotFoundError`. Already tracked sessions are refreshed as is.
        """

        with self._lock:
            known = session_id in self._sessions
        if not known:
            if self.tmux is None:
                raise SessionNotFoundError(f"Session not found: {session_id}")
            log_path = self.logs_dir / f"{session_id}.log"
            session = AgentSession(
                id=session_id,
                task_id=task_id,
                agent=agent,
                status=SessionStatus.RUNNING,
                start_time=utc_now(),
                tmux_session=f"{agent}-{session_id}",
                log_path=log_path,
            )
            if self.workspaces is not None:
                session.workspace = self.workspaces.workspace_path(agent, task_id)
                session.branch = branch_name(agent, task_id)
            with self._lock:
                self._sessions.setdefault(session_id, session)
                self._exit_files.setdefault(session_id, log_path.with_suffix(".exit"))
            logger.info("Adopted tmux session %s of task %s", session.tmux_session, task_id)
        return self.refresh(session_id)

    def _spawn_process(
        self,
        session: AgentSession,
        *,
        argv: list[str],
        cwd: Path,
        env: dict[str, str],
        log_path: Path,
    ) -> None:
        process_env = os.environ.copy()
        process_env.update(env)
        try:
            with log_path.open("ab") as log_handle:
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    cwd=cwd,
                    env=process_env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except FileNotFoundError as error:
            raise LaunchError(f"Worker command not found: {argv[0]}", transient=False) from error
        except OSError as error:
            raise LaunchError(f"Worker failed to start: {error}", transient=True) from error

        with self._lock:
            self._processes[session.id] = process
            current = self._sessions[session.id]
            current.pid = process.pid
            if current.status == SessionStatus.STARTING:
                current.status = SessionStatus.RUNNING

        reaper = threading.Thread(
            target=self._reap,
            args=(session.id, process),
            name=f"reaper-{session.id}",
            daemon=True,
        )
        reaper.start()

    def _spawn_tmux(
        self,
        session: AgentSession,
        *,
        tmux: TmuxClient,
        argv: list[str],
        cwd: Path,
        env: dict[str, str],
        log_path: Path,
    ) -> None:
        name = f"{session.agent}-{session.id}"
        exit_file = log_path.with_suffix(".exit")
        exit_file.unlink(missing_ok=True)
        command_line = shlex.join(["env", *(f"{k}={v}" for k, v in env.items()), *argv])
        shell_command = (
            f"( {command_line}; echo $? > {shlex.quote(str(exit_file))} ) 2>&1 "
            f"| tee -a {shlex.quote(str(log_path))}"
        )
        tmux.new_session(name, cwd=cwd, command=shell_command)
        with self._lock:
            self._exit_files[session.id] = exit_file
            current = self._sessions[session.id]
            current.tmux_session = name
            if current.status == SessionStatus.STARTING:
                current.status = SessionStatus.RUNNING

    def _refresh_tmux(self, session: AgentSession, exit_file: Path) -> None:
        code = _read_exit_code(exit_file)
        if code is not None:
            self._finalize(session.id, exit_code=code)
            return
        if session.tmux_session is None or self.tmux is None:
            return
        try:
            alive = self.tmux.has_session(session.tmux_session)
        except (OSError, subprocess.SubprocessError) as error:
            logger.debug("tmux check failed for %s, assuming no change: %s", session.id, error)
            return
        if alive:
            return
        # The exit file may land just after the session closes.
        code = _read_exit_code(exit_file)
        self._finalize(
            session.id,
            exit_code=code,
            reason=None if code is not None else "tmux session ended without exit status",
        )

    def _reap(self, session_id: str, process: subprocess.Popen[bytes]) -> None:
        code = process.wait()
        self._finalize(session_id, exit_code=code)

    def _finalize(
        self,
        session_id: str,
        *,
        exit_code: int | None,
        reason: str | None = None,
    ) -> None:
        """Set the terminal status exactly once; later calls only stamp a missing end time."""

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return
            self._processes.pop(session_id, None)
            if session.status.is_terminal:
                if session.end_time is None:
                    session.end_time = utc_now()
                return
            session.exit_code = exit_code
            session.status = (
                SessionStatus.COMPLETED
                if exit_code == 0 and reason is None
                else SessionStatus.FAILED
            )
            session.end_time = utc_now()
            if reason is not None:
                self._end_reasons[session_id] = reason
            status = session.status
        logger.info("Session %s finished: %s (exit=%s)", session_id, status.value, exit_code)

    def _completion_result(self, session: AgentSession) -> CompletionResult:
        output = ""
        if session.log_path is not None:
            output = sanitize_tail(
                _read_tail(session.log_path, max_chars=OUTPUT_TAIL_CHARS),
                max_chars=OUTPUT_TAIL_CHARS,
            )

        if session.status == SessionStatus.COMPLETED:
            return CompletionResult(
                success=True,
                output=output,
                external_review_id=self._discover_review(session),
            )

        with self._lock:
            reason = self._end_reasons.get(session.id)
        if reason is None:
            reason = f"Worker exited with code {session.exit_code}"
        tail = output[-PROGRESS_TAIL_CHARS:]
        error = f"{reason}: {tail}" if tail else reason
        return CompletionResult(success=False, output=output, error=error)

    def _discover_review(self, session: AgentSession) -> int | None:
        if self.reviews is None or not session.branch:
            return None
        try:
            return self.reviews.find_open_review(session.branch)
        except ReviewClientError as error:
            logger.warning("Review lookup failed for branch %s: %s", session.branch, error)
            return None


def build_full_prompt(prompt: str, task_id: str) -> str:
    return f"{prompt}\n\n{build_task_trailer(task_id)}"


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    task_id: str,
) -> list[str]:
    """Render a worker command template into argv with shell-safe quoting."""

    stripped = command_template.strip()
    if not stripped:
        raise LaunchError("Worker command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise LaunchError(
            "Worker command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            task_id=shlex.quote(task_id),
        )
    except (KeyError, IndexError) as error:
        raise LaunchError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise LaunchError("Worker command template rendered empty command.", transient=False)
    return argv


def _read_tail(path: Path, *, max_chars: int) -> str:
    try:
        with path.open("rb") as handle:
            handle.seek(0, os.SEEK_END)
            size = handle.tell()
            # UTF-8 needs at most 4 bytes per char.
            handle.seek(max(0, size - max_chars * 4))
            data = handle.read()
    except FileNotFoundError:
        return ""
    return data.decode("utf-8", errors="replace")[-max_chars:]


def _read_exit_code(exit_file: Path) -> int | None:
    try:
        raw = exit_file.read_text("utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGTERM)
        else:
            process.terminate()
    except (OSError, ProcessLookupError):
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except (OSError, ProcessLookupError):
            return
        process.wait(timeout=2)
