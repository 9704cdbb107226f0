"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from agent_cluster.orchestrator.memory_store import MemoryStore
from agent_cluster.orchestrator.models import Task, TaskPriority, TaskStatus, TaskType
from agent_cluster.orchestrator.task_store import TaskStore
from agent_cluster.storage.common import utc_now

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
DEMO_WORKER = f"{shlex.quote(sys.executable)} -m agent_cluster.orchestrator.launcher.demo_worker"


@pytest.fixture()
def demo_template() -> Callable[..., str]:
    """Command template running the deterministic demo worker for one scenario."""

    def _template(case: str, *extra: str) -> str:
        return " ".join([DEMO_WORKER, "--prompt-file", "{prompt_file}", "--case", case, *extra])

    return _template


@pytest.fixture()
def task_factory() -> Callable[..., Task]:
    def _make(**overrides: Any) -> Task:
        now = utc_now()
        values: dict[str, Any] = {
            "id": "task-1",
            "title": "Fix the login bug",
            "description": "Fix the login bug",
            "goal": "Fix the login bug",
            "type": TaskType.BUGFIX,
            "priority": TaskPriority.MEDIUM,
            "status": TaskStatus.RUNNING,
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        return Task(**values)

    return _make


@pytest.fixture()
def task_store(tmp_path: Path):
    store = TaskStore(tmp_path / "tasks")
    store.init_schema()
    yield store
    store.close()


@pytest.fixture()
def memory_store(tmp_path: Path):
    store = MemoryStore(tmp_path / "memory")
    store.init_schema()
    yield store
    store.close()


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Drop every AGENT_CLUSTER_* variable inherited from the outer environment."""

    for name in list(os.environ):
        if name.startswith("AGENT_CLUSTER_"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture(autouse=True)
def _worker_pythonpath(monkeypatch: pytest.MonkeyPatch) -> None:
    """Let spawned demo workers import the package from a source checkout."""

    existing = os.environ.get("PYTHONPATH")
    value = str(SRC_DIR) if not existing else f"{SRC_DIR}{os.pathsep}{existing}"
    monkeypatch.setenv("PYTHONPATH", value)
