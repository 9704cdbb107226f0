"""Proactive task sources polled by :meth:`OrchestratorService.proactive_scan`."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from agent_cluster.http.client import HttpClient
from agent_cluster.orchestrator.models import TaskContext, TaskCreate, TaskPriority, TaskType

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
DEFAULT_ISSUE_LIMIT = 5

_TYPE_LABELS: tuple[tuple[frozenset[str], TaskType], ...] = (
    (frozenset({"bug"}), TaskType.BUGFIX),
    (frozenset({"enhancement", "feature"}), TaskType.FEATURE),
    (frozenset({"documentation", "docs"}), TaskType.DOCS),
    (frozenset({"refactor"}), TaskType.REFACTOR),
    (frozenset({"test"}), TaskType.TEST),
    (frozenset({"design"}), TaskType.DESIGN),
)
_PRIORITY_LABELS: tuple[tuple[frozenset[str], TaskPriority], ...] = (
    (frozenset({"critical", "urgent", "p0"}), TaskPriority.CRITICAL),
    (frozenset({"high", "p1"}), TaskPriority.HIGH),
    (frozenset({"medium", "p2"}), TaskPriority.MEDIUM),
)
_BULLET = re.compile(r"^[-*]\s*(?:\[[ xX]?\]\s*)?")
_NUMBERED = re.compile(r"^\d+\.\s+")


class TaskScanner(Protocol):
    name: str

    def scan(self) -> list[TaskCreate]: ...


@dataclass(slots=True)
class GitHubIssueScanner:
    """Turn open GitHub issues into task payloads with stable ids."""

    owner: str
    repo: str
    token: str | None = None
    labels: tuple[str, ...] = ()
    limit: int = DEFAULT_ISSUE_LIMIT
    client: HttpClient = field(default_factory=HttpClient)
    name: str = "github"

    def scan(self) -> list[TaskCreate]:
        if not self.owner or not self.repo:
            logger.debug("GitHub scanner not configured; skipping")
            return []
        params = {
            "state": "open",
            "sort": "updated",
            "direction": "desc",
            "per_page": str(self.limit),
        }
        if self.labels:
            # GitHub matches issues carrying every listed label.
            params["labels"] = ",".join(self.labels)
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        result = self.client.get_json(
            f"{GITHUB_API_URL}/repos/{self.owner}/{self.repo}/issues",
            params=params,
            headers=headers,
        )
        if not result.is_success:
            logger.warning("GitHub issue scan failed: %s", result.error)
            return []
        if not isinstance(result.payload, list):
            logger.warning("GitHub issue scan returned unexpected payload")
            return []

        # The issues endpoint also lists pull requests.
        return [
            self._to_task(issue)
            for issue in result.payload
            if isinstance(issue, dict) and "pull_request" not in issue
        ]

    def _to_task(self, issue: dict[str, Any]) -> TaskCreate:
        number = issue.get("number")
        title = str(issue.get("title") or "")
        labels = [
            str(label.get("name", "")) if isinstance(label, dict) else str(label)
            for label in issue.get("labels") or []
        ]
        body = issue.get("body") or ""
        url = issue.get("html_url")
        return TaskCreate(
            task_id=f"gh-{self.owner}-{self.repo}-{number}",
            title=f"GitHub #{number}: {title}",
            description=body,
            type=infer_type_from_labels(labels),
            priority=infer_priority_from_labels(labels),
            goal=f"Fix or implement GitHub issue #{number}: {title}",
            context=TaskContext(
                requirements=extract_issue_requirements(body),
                references=[url] if url else [],
            ),
        )


def infer_type_from_labels(labels: list[str]) -> TaskType:
    label_set = {label.lower() for label in labels}
    for names, task_type in _TYPE_LABELS:
        if label_set & names:
            return task_type
    return TaskType.FEATURE


def infer_priority_from_labels(labels: list[str]) -> TaskPriority:
    label_set = {label.lower() for label in labels}
    for names, priority in _PRIORITY_LABELS:
        if label_set & names:
            return priority
    return TaskPriority.LOW


def extract_issue_requirements(body: str | None) -> list[str]:
    """Bullet, checkbox and numbered-list lines of an issue body."""

    if not body:
        return []
    requirements: list[str] = []
    for line in body.splitlines():
        stripped = line.strip()
        if _BULLET.match(stripped):
            text = _BULLET.sub("", stripped, count=1)
        elif _NUMBERED.match(stripped):
            text = _NUMBERED.sub("", stripped, count=1)
        else:
            continue
        if text:
            requirements.append(text)
    return requirements
