"""Runtime configuration for the orchestrator, launcher and monitors."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from agent_cluster.orchestrator.agents import SUPPORTED_AGENTS
from agent_cluster.orchestrator.models import FailureCategory
from agent_cluster.orchestrator.retry_policy import UNLIMITED, RetryPolicy

ENV_PREFIX = "AGENT_CLUSTER_"
DEFAULT_STATE_DIR = ".agent-cluster"


@dataclass(slots=True)
class PathSettings:
    """Where state lives; unset subdirectories default to ``state_dir/<name>``."""

    state_dir: Path = Path(DEFAULT_STATE_DIR)
    workspaces_dir: Path = Path(DEFAULT_STATE_DIR) / "workspaces"
    logs_dir: Path = Path(DEFAULT_STATE_DIR) / "logs"
    memory_dir: Path = Path(DEFAULT_STATE_DIR) / "memory"
    tasks_dir: Path = Path(DEFAULT_STATE_DIR) / "tasks"
    repo_dir: Path = Path()
    default_branch: str = "origin/main"


@dataclass(slots=True)
class LauncherSettings:
    """Worker session settings."""

    poll_interval_seconds: float = 5.0
    attempt_timeout_seconds: float = 1_800.0
    use_worktree: bool = True
    use_tmux: bool = True
    command_templates: dict[str, str] = field(default_factory=dict)
    models: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class LoopSettings:
    """Retry loop settings; a budget of -1 retries a category until the attempt limit."""

    max_attempts: int = 3
    retry_budgets: dict[FailureCategory, int] = field(
        default_factory=lambda: dict(RetryPolicy().budgets),
    )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(budgets=dict(self.retry_budgets))


@dataclass(slots=True)
class MemorySettings:
    max_entries: int = 0


@dataclass(slots=True)
class MonitorSettings:
    watch_interval_seconds: float = 60.0
    review_check_interval_seconds: float = 300.0
    review_cli: str = "gh"


@dataclass(slots=True)
class IntegrationSettings:
    """Optional external credentials; absence disables the integration."""

    notify_webhook_url: str | None = None
    notify_token: str | None = None
    github_owner: str | None = None
    github_repo: str | None = None
    github_token: str | None = None
    github_labels: tuple[str, ...] = ()


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    paths: PathSettings = field(default_factory=PathSettings)
    launcher: LauncherSettings = field(default_factory=LauncherSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    memory: MemorySettings = field(default_factory=MemorySettings)
    monitors: MonitorSettings = field(default_factory=MonitorSettings)
    integrations: IntegrationSettings = field(default_factory=IntegrationSettings)

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        root = state_dir or Path(_env("STATE_DIR", DEFAULT_STATE_DIR))
        return cls(
            paths=PathSettings(
                state_dir=root,
                workspaces_dir=Path(_env("WORKSPACES_DIR", str(root / "workspaces"))),
                logs_dir=Path(_env("LOGS_DIR", str(root / "logs"))),
                memory_dir=Path(_env("MEMORY_DIR", str(root / "memory"))),
                tasks_dir=Path(_env("TASKS_DIR", str(root / "tasks"))),
                repo_dir=Path(_env("REPO_DIR", ".")),
                default_branch=_env("DEFAULT_BRANCH", "origin/main"),
            ),
            launcher=LauncherSettings(
                poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 5.0),
                attempt_timeout_seconds=_env_float("ATTEMPT_TIMEOUT_SECONDS", 1_800.0),
                use_worktree=_env_bool("USE_WORKTREE", default=True),
                use_tmux=_env_bool("USE_TMUX", default=True),
                command_templates=_collect_per_agent("COMMAND_TEMPLATE"),
                models=_collect_per_agent("MODEL"),
            ),
            loop=LoopSettings(
                max_attempts=_env_int("MAX_ATTEMPTS", 3),
                retry_budgets=_collect_retry_budgets(),
            ),
            memory=MemorySettings(max_entries=_env_int("MEMORY_MAX_ENTRIES", 0)),
            monitors=MonitorSettings(
                watch_interval_seconds=_env_float("WATCH_INTERVAL_SECONDS", 60.0),
                review_check_interval_seconds=_env_float("REVIEW_CHECK_INTERVAL_SECONDS", 300.0),
                review_cli=_env("REVIEW_CLI", "gh"),
            ),
            integrations=IntegrationSettings(
                notify_webhook_url=_env_optional("NOTIFY_WEBHOOK_URL"),
                notify_token=_env_optional("NOTIFY_TOKEN"),
                github_owner=_env_optional("GITHUB_OWNER"),
                github_repo=_env_optional("GITHUB_REPO"),
                github_token=_env_optional("GITHUB_TOKEN"),
                github_labels=_env_list("GITHUB_LABELS"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.launcher.poll_interval_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}POLL_INTERVAL_SECONDS must be > 0.")
        if self.launcher.attempt_timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}ATTEMPT_TIMEOUT_SECONDS must be > 0.")
        if self.loop.max_attempts < 1:
            raise ValueError(f"{ENV_PREFIX}MAX_ATTEMPTS must be >= 1.")
        for category, budget in self.loop.retry_budgets.items():
            if budget < UNLIMITED:
                raise ValueError(
                    f"{ENV_PREFIX}RETRY_{category.value.upper()}_BUDGET must be >= -1.",
                )
        if self.memory.max_entries < 0:
            raise ValueError(f"{ENV_PREFIX}MEMORY_MAX_ENTRIES must be >= 0.")
        if self.monitors.watch_interval_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}WATCH_INTERVAL_SECONDS must be > 0.")
        if self.monitors.review_check_interval_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}REVIEW_CHECK_INTERVAL_SECONDS must be > 0.")
        webhook = self.integrations.notify_webhook_url
        if webhook:
            parsed = urlparse(webhook)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    f"Invalid {ENV_PREFIX}NOTIFY_WEBHOOK_URL: {webhook!r}. "
                    "Expected an absolute URL with http:// or https:// scheme.",
                )
        for agent, template in self.launcher.command_templates.items():
            if "{prompt}" not in template and "{prompt_file}" not in template:
                raise ValueError(
                    f"{ENV_PREFIX}{agent.upper()}_COMMAND_TEMPLATE must include "
                    "{prompt} or {prompt_file}.",
                )


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_optional(name: str) -> str | None:
    value = os.getenv(f"{ENV_PREFIX}{name}", "").strip()
    return value or None


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(f"{ENV_PREFIX}{name}", "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {ENV_PREFIX}{name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {ENV_PREFIX}{name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(f"{ENV_PREFIX}{name}")
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {ENV_PREFIX}{name}: {value!r}")


def _collect_per_agent(suffix: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for agent in SUPPORTED_AGENTS:
        value = _env_optional(f"{agent.upper()}_{suffix}")
        if value:
            values[agent] = value
    return values


def _collect_retry_budgets() -> dict[FailureCategory, int]:
    budgets = dict(RetryPolicy().budgets)
    for category in FailureCategory:
        budgets[category] = _env_int(f"RETRY_{category.value.upper()}_BUDGET", budgets[category])
    return budgets
