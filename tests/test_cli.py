from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_cluster.main import agent_cluster
from agent_cluster.orchestrator.models import TaskCreate
from agent_cluster.orchestrator.task_store import TaskStore

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Commands"),
]


@pytest.fixture()
def cli_env(clean_env, demo_template, tmp_path: Path) -> pytest.MonkeyPatch:
    clean_env.setenv("AGENT_CLUSTER_USE_TMUX", "0")
    clean_env.setenv("AGENT_CLUSTER_USE_WORKTREE", "0")
    clean_env.setenv("AGENT_CLUSTER_POLL_INTERVAL_SECONDS", "0.05")
    clean_env.setenv("AGENT_CLUSTER_REPO_DIR", str(tmp_path))
    clean_env.setenv("AGENT_CLUSTER_CODEX_COMMAND_TEMPLATE", demo_template("success"))
    clean_env.setenv("AGENT_CLUSTER_QUILL_COMMAND_TEMPLATE", demo_template("technical"))
    return clean_env


def _invoke(*args: str):
    return CliRunner().invoke(agent_cluster, list(args), catch_exceptions=False)


def _seed(state_dir: Path, task_id: str, title: str) -> None:
    store = TaskStore(state_dir / "tasks")
    try:
        store.create(TaskCreate(title=title, task_id=task_id))
    finally:
        store.close()


def test_analyze_prints_classification_and_routing() -> None:
    result = _invoke("analyze", "Fix the login bug in the auth service")

    assert result.exit_code == 0, result.output
    assert "Type: bugfix" in result.output
    assert "Agent: " in result.output
    assert "Agent scores:" in result.output


def test_goal_runs_worker_to_completion(cli_env, tmp_path) -> None:
    state_dir = tmp_path / "state"

    result = _invoke(
        "goal",
        "Fix the login bug",
        "--state-dir",
        str(state_dir),
        "--agent",
        "codex",
        "--timeout",
        "60",
    )

    assert result.exit_code == 0, result.output
    match = re.search(r"Task created: task_id=(\S+)", result.output)
    assert match is not None
    assert "Status: completed" in result.output
    assert "Attempts: 1/3" in result.output

    shown = _invoke("tasks", "show", match.group(1), "--state-dir", str(state_dir))
    assert "Events: 5" in shown.output
    listed = _invoke("tasks", "list", "--state-dir", str(state_dir), "--status", "completed")
    assert "Tasks: 1" in listed.output
    memories = _invoke("memory", "query", "--state-dir", str(state_dir), "--type", "success")
    assert "Memories: 1" in memories.output


def test_failing_goal_can_be_retried(cli_env, demo_template, tmp_path) -> None:
    state_dir = tmp_path / "state"

    result = _invoke(
        "goal",
        "Document the API",
        "--state-dir",
        str(state_dir),
        "--agent",
        "quill",
        "--max-attempts",
        "2",
        "--timeout",
        "60",
    )

    assert result.exit_code == 0, result.output
    assert "Status: failed" in result.output
    assert "Failure: technical" in result.output
    task_id = re.search(r"task_id=(\S+)", result.output).group(1)

    cli_env.setenv("AGENT_CLUSTER_QUILL_COMMAND_TEMPLATE", demo_template("success"))
    retried = _invoke("tasks", "retry", task_id, "--state-dir", str(state_dir), "--timeout", "60")

    assert retried.exit_code == 0, retried.output
    assert "Status: completed" in retried.output


def test_task_management_commands(clean_env, tmp_path) -> None:
    state_dir = tmp_path / "state"
    _seed(state_dir, "manual-1", "Manual task")

    started = _invoke("tasks", "transition", "manual-1", "start", "--state-dir", str(state_dir))
    assert "status=analyzing" in started.output

    bad = CliRunner().invoke(
        agent_cluster,
        ["tasks", "transition", "manual-1", "approve", "--state-dir", str(state_dir)],
    )
    assert bad.exit_code == 1
    assert "approve" in bad.output

    deleted = _invoke("tasks", "delete", "manual-1", "--state-dir", str(state_dir))
    assert "Task deleted: manual-1" in deleted.output
    assert "Tasks: 0" in _invoke("tasks", "list", "--state-dir", str(state_dir)).output


def test_memory_add_and_query(clean_env, tmp_path) -> None:
    state_dir = str(tmp_path / "state")

    added = _invoke(
        "memory",
        "add",
        "pref:style",
        '{"indent": 4}',
        "--state-dir",
        state_dir,
        "--type",
        "preference",
        "--tag",
        "style",
    )
    _invoke("memory", "add", "note", "plain text", "--state-dir", state_dir)

    assert "Memory stored: id=" in added.output
    queried = _invoke("memory", "query", "--state-dir", state_dir, "--tag", "style")
    assert "Memories: 1" in queried.output
    assert 'value={"indent": 4}' in queried.output
    everything = _invoke("memory", "query", "--state-dir", state_dir)
    assert "Memories: 2" in everything.output
    assert 'value="plain text"' in everything.output


def test_unknown_task_is_a_click_error(clean_env, tmp_path) -> None:
    result = CliRunner().invoke(
        agent_cluster,
        ["tasks", "show", "missing", "--state-dir", str(tmp_path / "state")],
    )

    assert result.exit_code == 1
    assert "missing" in result.output


def test_session_send_requires_a_known_session(clean_env, tmp_path) -> None:
    state_dir = tmp_path / "state"
    _seed(state_dir, "no-session", "Idle task")

    result = CliRunner().invoke(
        agent_cluster,
        ["session", "send", "no-session", "hello", "--state-dir", str(state_dir)],
    )

    assert result.exit_code == 1
    assert "No session found for no-session" in result.output


def test_summary_and_reviews_on_empty_state(cli_env, tmp_path) -> None:
    state_dir = str(tmp_path / "state")

    summary = _invoke("summary", "--state-dir", state_dir)
    reviews = _invoke("reviews", "check", "--state-dir", state_dir)
    scan = _invoke("scan", "--state-dir", state_dir)

    assert "Daily summary" in summary.output
    assert "Completed: 0" in summary.output
    assert "Reviews resolved: 0" in reviews.output
    assert "Scanned tasks created: 0" in scan.output


def test_no_wait_without_tmux_is_refused(cli_env, tmp_path) -> None:
    state_dir = tmp_path / "state"

    result = CliRunner().invoke(
        agent_cluster,
        ["goal", "Fix the login bug", "--state-dir", str(state_dir), "--no-wait"],
    )

    assert result.exit_code == 1
    assert "--no-wait needs tmux" in result.output
    assert "Tasks: 0" in _invoke("tasks", "list", "--state-dir", str(state_dir)).output


def test_goal_timeout_stops_process_worker(cli_env, demo_template, tmp_path) -> None:
    state_dir = tmp_path / "state"
    sleeper = demo_template("sleep", "--seconds", "30")
    cli_env.setenv("AGENT_CLUSTER_CODEX_COMMAND_TEMPLATE", sleeper)

    result = _invoke(
        "goal",
        "Fix the login bug",
        "--state-dir",
        str(state_dir),
        "--agent",
        "codex",
        "--timeout",
        "1",
    )

    assert result.exit_code == 0, result.output
    assert "Stopped after" in result.output
    assert "Status: failed" in result.output
    listed = _invoke("tasks", "list", "--state-dir", str(state_dir), "--status", "running")
    assert "Tasks: 0" in listed.output


def test_watch_once_fails_tasks_without_a_live_session(cli_env, tmp_path) -> None:
    state_dir = tmp_path / "state"
    _seed(state_dir, "stuck-1", "Stuck task")
    for event in ("start", "complete"):
        _invoke("tasks", "transition", "stuck-1", event, "--state-dir", str(state_dir))

    result = _invoke("watch", "--once", "--state-dir", str(state_dir))

    assert result.exit_code == 0, result.output
    assert "Tasks settled: 1" in result.output
    assert "Sessions still running: 0" in result.output
    assert "stuck-1 status=failed" in result.output
    assert "Tasks settled: 0" in _invoke("watch", "--once", "--state-dir", str(state_dir)).output
