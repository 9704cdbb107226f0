"""Launcher contracts and a subprocess helper for external CLIs."""

from __future__ import annotations

import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


class LaunchError(RuntimeError):
    """Session spawn error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class SessionNotFoundError(LookupError):
    """Raised when a session id is unknown to the launcher."""


@dataclass(slots=True)
class LaunchRequest:
    """Everything needed to start one worker session."""

    agent: str
    task_id: str
    prompt: str
    model: str = ""
    use_worktree: bool = True
    use_tmux: bool = True
    command_template: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    def __call__(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult: ...


ProgressCallback = Callable[[str], None]


def run_command(
    args: list[str],
    *,
    cwd: Path | None = None,
    timeout: float | None = 30.0,
) -> CommandResult:
    """Run a short-lived CLI command and capture its output.

    ``FileNotFoundError`` propagates when the executable is missing.
    """

    completed = subprocess.run(  # noqa: S603
        args,
        cwd=cwd,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )
    return CommandResult(
        args=list(args),
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )
