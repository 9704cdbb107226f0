"""Isolated per-session git worktrees on a ``<agent>/<task id>`` branch."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from agent_cluster.orchestrator.launcher.base import CommandResult, CommandRunner, run_command

logger = logging.getLogger(__name__)


class WorkspaceError(RuntimeError):
    """Raised when a worktree cannot be created."""


@dataclass(slots=True)
class Workspace:
    path: Path
    branch: str
    reused: bool = False


def branch_name(agent: str, task_id: str) -> str:
    return f"{agent}/{task_id}"


class WorkspaceManager:
    """Creates or reuses ``<workspaces_dir>/<agent>/<task id>`` worktrees of ``repo_dir``."""

    def __init__(
        self,
        *,
        repo_dir: Path,
        workspaces_dir: Path,
        default_branch: str = "origin/main",
        runner: CommandRunner = run_command,
    ) -> None:
        self.repo_dir = repo_dir
        self.workspaces_dir = workspaces_dir
        self.default_branch = default_branch
        self._runner = runner

    def workspace_path(self, agent: str, task_id: str) -> Path:
        return self.workspaces_dir / branch_name(agent, task_id)

    def ensure_worktree(self, agent: str, task_id: str) -> Workspace:
        """Return the task's worktree, creating branch and checkout when missing."""

        branch = branch_name(agent, task_id)
        path = self.workspace_path(agent, task_id)
        if path.is_dir() and any(path.iterdir()):
            logger.debug("Reusing worktree %s on branch %s", path, branch)
            return Workspace(path=path, branch=branch, reused=True)

        path.parent.mkdir(parents=True, exist_ok=True)
        result = self._git(["worktree", "add", str(path), "-b", branch, self.default_branch])
        if not result.ok and "already exists" in result.stderr:
            # Branch survives from an earlier attempt whose checkout was removed.
            result = self._git(["worktree", "add", str(path), branch])
        if not result.ok:
            raise WorkspaceError(
                f"git worktree add failed for {branch} (exit {result.returncode}): "
                f"{result.stderr.strip()}",
            )
        logger.info("Created worktree %s on branch %s", path, branch)
        return Workspace(path=path, branch=branch)

    def _git(self, args: list[str]) -> CommandResult:
        try:
            return self._runner(["git", "-C", str(self.repo_dir), *args], timeout=120.0)
        except FileNotFoundError as error:
            raise WorkspaceError("git executable not found") from error
        except (OSError, subprocess.SubprocessError) as error:
            raise WorkspaceError(f"git {' '.join(args[:2])} failed: {error}") from error
