"""Adaptive retry controller ("Ralph Loop") driving one task's attempts."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from agent_cluster.orchestrator.agents import DEFAULT_AGENT
from agent_cluster.orchestrator.failure_classifier import (
    FailureClassifier,
    KeywordFailureClassifier,
    unknown_failure,
)
from agent_cluster.orchestrator.launcher.base import LaunchRequest, ProgressCallback
from agent_cluster.orchestrator.launcher.session_launcher import TIMEOUT_ERROR
from agent_cluster.orchestrator.memory_store import MemoryStore
from agent_cluster.orchestrator.models import (
    AgentSession,
    AttemptRecord,
    CompletionResult,
    FailureAnalysis,
    FailureCategory,
    LoopOutcome,
    RalphLoopState,
    Task,
    TaskContext,
)
from agent_cluster.orchestrator.prompt_builder import adjust_prompt, build_prompt
from agent_cluster.orchestrator.retry_policy import RetryDecision, RetryPolicy
from agent_cluster.orchestrator.task_store import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPT_TIMEOUT_SECONDS = 30 * 60

ESCALATION_ANALYSIS = FailureAnalysis(
    reason="Max attempts reached",
    category=FailureCategory.UNKNOWN,
    suggestion="Escalate to a human.",
)

TERMINATED_ANALYSIS = FailureAnalysis(
    reason="Terminated by operator",
    category=FailureCategory.UNKNOWN,
    suggestion="Retry the task when ready.",
)


class SessionRunner(Protocol):
    """The part of :class:`SessionLauncher` the loop depends on."""

    def launch(self, request: LaunchRequest) -> AgentSession: ...

    def wait_for_completion(
        self,
        session_id: str,
        *,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> CompletionResult: ...

    def terminate(self, session_id: str) -> AgentSession: ...


@dataclass(slots=True)
class LoopHooks:
    """Optional callbacks; exactly one of success/failure fires per loop."""

    on_attempt: Callable[[int, str, AgentSession], None] | None = None
    on_success: Callable[[CompletionResult], None] | None = None
    on_failure: Callable[[str, FailureAnalysis], None] | None = None


@dataclass(slots=True)
class LaunchSettings:
    """Per-loop worker launch switches."""

    model: str = ""
    use_worktree: bool = True
    use_tmux: bool = True
    command_template: str | None = None
    env: dict[str, str] = field(default_factory=dict)


class RalphLoop:
    """Run attempts until success or the retry policy gives up.

    Worker and session errors never escape past one attempt: they are folded
    into a :class:`FailureAnalysis` and go through the same retry decision.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        launcher: SessionRunner,
        tasks: TaskStore,
        memory: MemoryStore,
        classifier: FailureClassifier | None = None,
        retry_policy: RetryPolicy | None = None,
        attempt_timeout_seconds: float = DEFAULT_ATTEMPT_TIMEOUT_SECONDS,
    ) -> None:
        self.launcher = launcher
        self.tasks = tasks
        self.memory = memory
        self.classifier = classifier or KeywordFailureClassifier()
        self.retry_policy = retry_policy or RetryPolicy()
        self.attempt_timeout_seconds = attempt_timeout_seconds

    def run(
        self,
        task: Task,
        *,
        context: TaskContext | None = None,
        prompt: str | None = None,
        launch: LaunchSettings | None = None,
        hooks: LoopHooks | None = None,
        cancel: threading.Event | None = None,
    ) -> LoopOutcome:
        """Run up to ``task.max_attempts`` attempts.

        Setting ``cancel`` stops the loop before its next attempt; the failure
        hook then fires with a "terminated" analysis.
        """

        hooks = hooks or LoopHooks()
        launch = launch or LaunchSettings()
        context = context or task.context
        state = RalphLoopState(
            task_id=task.id,
            max_attempts=task.max_attempts,
            prompt=prompt or build_prompt(task, context),
            context=context,
        )
        previous_categories: list[FailureCategory] = []
        last_result: CompletionResult | None = None
        last_analysis: FailureAnalysis | None = None

        while state.attempt < state.max_attempts:
            if cancel is not None and cancel.is_set():
                error_text = (last_result.error if last_result else None) or "Cancelled"
                _fire(hooks.on_failure, error_text, TERMINATED_ANALYSIS)
                return LoopOutcome(
                    success=False,
                    attempts=state.attempt,
                    result=last_result,
                    analysis=TERMINATED_ANALYSIS,
                )
            state.attempt += 1
            self.tasks.update(task.id, attempts=state.attempt)
            logger.info(
                "Task %s attempt %s/%s",
                task.id,
                state.attempt,
                state.max_attempts,
            )

            analysis: FailureAnalysis | None = None
            try:
                result = self._run_attempt(task, state, launch=launch, hooks=hooks)
            except Exception as error:  # noqa: BLE001
                logger.exception("Task %s attempt %s raised", task.id, state.attempt)
                result = CompletionResult(success=False, error=f"Attempt raised: {error}")
                analysis = unknown_failure(str(error) or type(error).__name__)

            last_result = result
            if result.success:
                state.history.append(
                    AttemptRecord(attempt=state.attempt, prompt=state.prompt, result=result),
                )
                self._remember_success(task, state.prompt, result)
                _fire(hooks.on_success, result)
                return LoopOutcome(success=True, attempts=state.attempt, result=result)

            error_text = result.error or "Unknown error"
            if analysis is None:
                analysis = self.classify(task, error_text)
            last_analysis = analysis
            state.history.append(
                AttemptRecord(
                    attempt=state.attempt,
                    prompt=state.prompt,
                    result=result,
                    analysis=analysis,
                ),
            )
            self._remember_failure(task, error_text, analysis)

            decision = self.retry_policy.decide(
                category=analysis.category,
                attempt=state.attempt,
                max_attempts=state.max_attempts,
                previous_categories=previous_categories,
            )
            previous_categories.append(analysis.category)
            logger.info(
                "Task %s attempt %s failed (%s): %s",
                task.id,
                state.attempt,
                analysis.category.value,
                decision.reason,
            )
            if cancel is not None and cancel.is_set():
                analysis = TERMINATED_ANALYSIS
                decision = RetryDecision(should_retry=False, reason="Loop cancelled.")
            if not decision.should_retry:
                _fire(hooks.on_failure, error_text, analysis)
                return LoopOutcome(
                    success=False,
                    attempts=state.attempt,
                    result=result,
                    analysis=analysis,
                )
            state.prompt = adjust_prompt(state.prompt, analysis)

        final = last_analysis or ESCALATION_ANALYSIS
        error_text = (last_result.error if last_result else None) or final.reason
        _fire(hooks.on_failure, error_text, final)
        return LoopOutcome(
            success=False,
            attempts=state.attempt,
            result=last_result,
            analysis=final,
        )

    def _run_attempt(
        self,
        task: Task,
        state: RalphLoopState,
        *,
        launch: LaunchSettings,
        hooks: LoopHooks,
    ) -> CompletionResult:
        session = self.launcher.launch(
            LaunchRequest(
                agent=task.agent or DEFAULT_AGENT,
                task_id=task.id,
                prompt=state.prompt,
                model=launch.model,
                use_worktree=launch.use_worktree,
                use_tmux=launch.use_tmux,
                command_template=launch.command_template,
                env=dict(launch.env),
            ),
        )
        self.tasks.update(task.id, session_id=session.id)
        _fire(hooks.on_attempt, state.attempt, state.prompt, session)

        def _progress(tail: str) -> None:
            logger.debug("Task %s progress: %s", task.id, tail[-200:])

        result = self.launcher.wait_for_completion(
            session.id,
            timeout=self.attempt_timeout_seconds,
            on_progress=_progress,
        )
        if not result.success and result.error == TIMEOUT_ERROR:
            # A timed-out session must not outlive its attempt.
            try:
                self.launcher.terminate(session.id)
            except LookupError:
                logger.warning("Timed-out session %s already gone", session.id)
        return result

    def classify(self, task: Task, error: str) -> FailureAnalysis:
        try:
            return self.classifier.classify(task, error)
        except Exception:  # noqa: BLE001
            logger.exception("Failure classifier raised for task %s", task.id)
            return unknown_failure(error)

    def _remember_success(self, task: Task, prompt: str, result: CompletionResult) -> None:
        try:
            self.memory.record_success(task, prompt, result)
        except Exception:  # noqa: BLE001
            logger.exception("Could not record success memory for task %s", task.id)

    def _remember_failure(self, task: Task, error: str, analysis: FailureAnalysis) -> None:
        try:
            self.memory.record_failure(task, error, analysis)
        except Exception:  # noqa: BLE001
            logger.exception("Could not record failure memory for task %s", task.id)


def _fire(callback: Callable[..., None] | None, *args: object) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:  # noqa: BLE001
        logger.exception("Loop hook %s raised", getattr(callback, "__name__", callback))
