"""Thin wrapper over the tmux CLI for detached worker sessions."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from agent_cluster.orchestrator.launcher.base import CommandRunner, LaunchError, run_command

logger = logging.getLogger(__name__)


class TmuxClient:
    """Named detached tmux sessions and the commands that drive them."""

    def __init__(self, *, binary: str = "tmux", runner: CommandRunner = run_command) -> None:
        self.binary = binary
        self._runner = runner

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def new_session(self, name: str, *, cwd: Path, command: str) -> None:
        """Start ``command`` (a shell string) in a new detached session."""

        try:
            result = self._runner(
                [self.binary, "new-session", "-d", "-s", name, "-c", str(cwd), command],
            )
        except FileNotFoundError as error:
            raise LaunchError(f"tmux not found: {self.binary}", transient=False) from error
        except (OSError, subprocess.SubprocessError) as error:
            raise LaunchError(
                f"tmux failed to start session {name}: {error}",
                transient=True,
            ) from error
        if not result.ok:
            raise LaunchError(
                f"tmux new-session failed for {name} (exit {result.returncode}): "
                f"{result.stderr.strip()}",
                transient=False,
            )

    def has_session(self, name: str) -> bool:
        """True when the session exists; tool errors propagate to the caller."""

        return self._runner([self.binary, "has-session", "-t", name]).ok

    def capture_pane(self, name: str, *, lines: int = 200) -> str:
        result = self._runner(
            [self.binary, "capture-pane", "-p", "-t", name, "-S", f"-{max(1, lines)}"],
        )
        if not result.ok:
            return ""
        return result.stdout

    def send_keys(self, name: str, text: str) -> bool:
        result = self._runner([self.binary, "send-keys", "-t", name, text, "Enter"])
        if not result.ok:
            logger.warning("tmux send-keys to %s failed: %s", name, result.stderr.strip())
        return result.ok

    def kill_session(self, name: str) -> bool:
        try:
            result = self._runner([self.binary, "kill-session", "-t", name])
        except (OSError, subprocess.SubprocessError) as error:
            logger.warning("tmux kill-session %s failed: %s", name, error)
            return False
        return result.ok
