"""CLI entrypoint for agent-cluster."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click
from rich.logging import RichHandler

from agent_cluster import __version__
from agent_cluster.orchestrator.agents import SUPPORTED_AGENTS
from agent_cluster.orchestrator.controllers import (
    AnalyzeCommand,
    GoalCommand,
    ListTasksCommand,
    MemoryAddCommand,
    MemoryQueryCommand,
    OrchestratorCliController,
    SessionSendCommand,
    StateCommand,
    TaskCommand,
    TransitionCommand,
    WatchCommand,
)
from agent_cluster.orchestrator.models import (
    MemoryType,
    TaskEvent,
    TaskPriority,
    TaskStatus,
    TaskType,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OrchestratorCliController()

STATE_DIR_OPTION = click.option(
    "--state-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="State directory; defaults to AGENT_CLUSTER_STATE_DIR or .agent-cluster.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-cluster")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def agent_cluster(verbose: bool) -> None:
    """Turn natural-language goals into supervised coding-agent sessions."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


@agent_cluster.command("goal")
@click.argument("goal")
@STATE_DIR_OPTION
@click.option("--type", "task_type", type=click.Choice([t.value for t in TaskType]))
@click.option("--priority", type=click.Choice([p.value for p in TaskPriority]))
@click.option("--agent", type=click.Choice(list(SUPPORTED_AGENTS)), default=None)
@click.option("--model", default=None, help="Model override for the worker.")
@click.option("--max-attempts", type=click.IntRange(min=1), default=None)
@click.option(
    "--wait/--no-wait",
    default=True,
    show_default=True,
    help="Block until the task leaves the running state.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=1),
    default=None,
    help="Give up waiting after this many seconds.",
)
def submit_goal(  # noqa: PLR0913
    goal: str,
    state_dir: Path | None,
    task_type: str | None,
    priority: str | None,
    agent: str | None,
    model: str | None,
    max_attempts: int | None,
    wait: bool,
    timeout_seconds: float | None,
) -> None:
    """Analyze GOAL, create a task and run it through the retry loop.

    `--no-wait` needs tmux sessions; `agent-cluster watch` settles detached tasks.
    """

    _invoke(
        lambda: CONTROLLER.submit_goal(
            GoalCommand(
                state_dir=state_dir,
                goal=goal,
                task_type=task_type,
                priority=priority,
                agent=agent,
                model=model,
                max_attempts=max_attempts,
                wait=wait,
                timeout_seconds=timeout_seconds,
            ),
        ),
    )


@agent_cluster.command("analyze")
@click.argument("goal")
def analyze(goal: str) -> None:
    """Show the analysis, agent choice and model routing for GOAL without running it."""

    _invoke(lambda: CONTROLLER.analyze(AnalyzeCommand(goal=goal)))


@agent_cluster.group()
def tasks() -> None:
    """Task inspection and control."""


@tasks.command("list")
@STATE_DIR_OPTION
@click.option("--status", type=click.Choice([s.value for s in TaskStatus]), default=None)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
)
def tasks_list(state_dir: Path | None, status: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _invoke(
        lambda: CONTROLLER.list_tasks(
            ListTasksCommand(state_dir=state_dir, status=status, limit=limit),
        ),
    )


@tasks.command("show")
@click.argument("task_id")
@STATE_DIR_OPTION
def tasks_show(task_id: str, state_dir: Path | None) -> None:
    """Show one task with its event history."""

    _invoke(lambda: CONTROLLER.show_task(TaskCommand(state_dir=state_dir, task_id=task_id)))


@tasks.command("transition")
@click.argument("task_id")
@click.argument("event", type=click.Choice([e.value for e in TaskEvent]))
@STATE_DIR_OPTION
def tasks_transition(task_id: str, event: str, state_dir: Path | None) -> None:
    """Apply a lifecycle EVENT to a task by hand."""

    _invoke(
        lambda: CONTROLLER.transition_task(
            TransitionCommand(state_dir=state_dir, task_id=task_id, event=event),
        ),
    )


@tasks.command("delete")
@click.argument("task_id")
@STATE_DIR_OPTION
def tasks_delete(task_id: str, state_dir: Path | None) -> None:
    """Delete a task and its events."""

    _invoke(lambda: CONTROLLER.delete_task(TaskCommand(state_dir=state_dir, task_id=task_id)))


@tasks.command("retry")
@click.argument("task_id")
@STATE_DIR_OPTION
@click.option("--wait/--no-wait", default=True, show_default=True)
@click.option("--timeout", "timeout_seconds", type=click.FloatRange(min=1), default=None)
def tasks_retry(
    task_id: str,
    state_dir: Path | None,
    wait: bool,
    timeout_seconds: float | None,
) -> None:
    """Re-run a failed task with a fresh attempt budget."""

    _invoke(
        lambda: CONTROLLER.retry_task(
            TaskCommand(
                state_dir=state_dir,
                task_id=task_id,
                wait=wait,
                timeout_seconds=timeout_seconds,
            ),
        ),
    )


@tasks.command("terminate")
@click.argument("task_id")
@STATE_DIR_OPTION
def tasks_terminate(task_id: str, state_dir: Path | None) -> None:
    """Kill the task's worker session and mark the task failed."""

    _invoke(lambda: CONTROLLER.terminate_task(TaskCommand(state_dir=state_dir, task_id=task_id)))


@agent_cluster.group()
def memory() -> None:
    """Learning memory commands."""


@memory.command("query")
@STATE_DIR_OPTION
@click.option("--key", default=None)
@click.option("--type", "memory_type", type=click.Choice([m.value for m in MemoryType]))
@click.option("--tag", "tags", multiple=True, help="Required tag. Can be repeated.")
@click.option("--agent", default=None)
@click.option("--task-id", default=None)
@click.option("--min-relevance", type=click.FloatRange(min=0.0, max=1.0), default=None)
@click.option("--limit", type=click.IntRange(min=1), default=20, show_default=True)
def memory_query(  # noqa: PLR0913
    state_dir: Path | None,
    key: str | None,
    memory_type: str | None,
    tags: tuple[str, ...],
    agent: str | None,
    task_id: str | None,
    min_relevance: float | None,
    limit: int,
) -> None:
    """Query stored memories, most relevant first."""

    _invoke(
        lambda: CONTROLLER.query_memory(
            MemoryQueryCommand(
                state_dir=state_dir,
                key=key,
                memory_type=memory_type,
                tags=tags,
                agent=agent,
                task_id=task_id,
                min_relevance=min_relevance,
                limit=limit,
            ),
        ),
    )


@memory.command("add")
@click.argument("key")
@click.argument("value")
@STATE_DIR_OPTION
@click.option(
    "--type",
    "memory_type",
    type=click.Choice([m.value for m in MemoryType]),
    default=MemoryType.CONTEXT.value,
    show_default=True,
)
@click.option("--tag", "tags", multiple=True, help="Tag. Can be repeated.")
@click.option(
    "--relevance",
    type=click.FloatRange(min=0.0, max=1.0),
    default=1.0,
    show_default=True,
)
def memory_add(  # noqa: PLR0913
    key: str,
    value: str,
    state_dir: Path | None,
    memory_type: str,
    tags: tuple[str, ...],
    relevance: float,
) -> None:
    """Store a memory entry; VALUE is parsed as JSON when possible."""

    _invoke(
        lambda: CONTROLLER.add_memory(
            MemoryAddCommand(
                state_dir=state_dir,
                key=key,
                value=value,
                memory_type=memory_type,
                tags=tags,
                relevance=relevance,
            ),
        ),
    )


@agent_cluster.group()
def session() -> None:
    """Worker session commands."""


@session.command("send")
@click.argument("target")
@click.argument("text")
@STATE_DIR_OPTION
def session_send(target: str, text: str, state_dir: Path | None) -> None:
    """Type TEXT into the tmux session of TARGET (a task id or session id)."""

    _invoke(
        lambda: CONTROLLER.send_to_session(
            SessionSendCommand(state_dir=state_dir, target=target, text=text),
        ),
    )


@agent_cluster.command("scan")
@STATE_DIR_OPTION
@click.option("--wait/--no-wait", default=True, show_default=True)
@click.option("--timeout", "timeout_seconds", type=click.FloatRange(min=1), default=None)
def scan(state_dir: Path | None, wait: bool, timeout_seconds: float | None) -> None:
    """Create and run tasks from configured issue trackers."""

    _invoke(
        lambda: CONTROLLER.scan(
            StateCommand(state_dir=state_dir, wait=wait, timeout_seconds=timeout_seconds),
        ),
    )


@agent_cluster.command("summary")
@STATE_DIR_OPTION
def summary(state_dir: Path | None) -> None:
    """Send the daily summary notification for today's tasks."""

    _invoke(lambda: CONTROLLER.daily_summary(StateCommand(state_dir=state_dir)))


@agent_cluster.group()
def reviews() -> None:
    """External review commands."""


@reviews.command("check")
@STATE_DIR_OPTION
def reviews_check(state_dir: Path | None) -> None:
    """Poll reviews of tasks in the reviewing state once."""

    _invoke(lambda: CONTROLLER.check_reviews(StateCommand(state_dir=state_dir)))


@agent_cluster.command("watch")
@STATE_DIR_OPTION
@click.option("--once", is_flag=True, help="Run a single reconcile and check pass, then exit.")
def watch(state_dir: Path | None, once: bool) -> None:
    """Supervise worker sessions and reviews left behind by earlier commands.

    Tasks stuck in `analyzing` or `running` with no live session are failed and
    notified. Live tmux sessions are watched until they end.
    """

    _invoke(lambda: CONTROLLER.watch(WatchCommand(state_dir=state_dir, once=once)))


def _invoke(call: Callable[[], list[str]]) -> None:
    try:
        lines = call()
    except (LookupError, ValueError, RuntimeError, OSError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_cluster()
