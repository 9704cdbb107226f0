from __future__ import annotations

import json
import logging

import allure
import httpx

from agent_cluster.http.client import HttpClient
from agent_cluster.orchestrator.models import (
    Notification,
    NotificationPriority,
    NotificationType,
    TaskPriority,
    TaskType,
)
from agent_cluster.orchestrator.notify import LogNotifier, WebhookNotifier, build_notifier
from agent_cluster.orchestrator.scanners import (
    GitHubIssueScanner,
    extract_issue_requirements,
    infer_priority_from_labels,
    infer_type_from_labels,
)

pytestmark = [
    allure.epic("Integrations"),
    allure.feature("Notifications and Scanners"),
]


def _client(handler) -> HttpClient:
    return HttpClient(transport=httpx.MockTransport(handler))


def _notification() -> Notification:
    return Notification(
        type=NotificationType.TASK_FAILED,
        title="Task failed: Fix login",
        message="Reason: Build failed",
        data={"task_id": "t1"},
        priority=NotificationPriority.HIGH,
    )


def test_webhook_posts_json_payload_with_token() -> None:
    requests: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(204)

    notifier = WebhookNotifier(
        "https://hooks.example.test/notify",
        token="secret",
        client=_client(_handler),
    )

    assert notifier.send(_notification()) is True

    body = json.loads(requests[0].content)
    assert body["type"] == "task_failed"
    assert body["title"] == "Task failed: Fix login"
    assert body["data"] == {"task_id": "t1"}
    assert body["priority"] == "high"
    assert requests[0].headers["Authorization"] == "Bearer secret"
    notifier.close()


def test_webhook_failures_return_false() -> None:
    rejected = WebhookNotifier(
        "https://hooks.example.test/notify",
        client=_client(lambda _request: httpx.Response(500, json={"error": "down"})),
    )

    def _unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    offline = WebhookNotifier("https://hooks.example.test/notify", client=_client(_unreachable))

    assert rejected.send(_notification()) is False
    assert offline.send(_notification()) is False


def test_log_notifier_logs_by_priority(caplog) -> None:
    with caplog.at_level(logging.DEBUG, logger="agent_cluster.orchestrator.notify"):
        assert LogNotifier().send(_notification()) is True

    assert caplog.records[-1].levelno == logging.WARNING
    assert "Task failed: Fix login" in caplog.records[-1].getMessage()


def test_build_notifier_picks_channel() -> None:
    assert isinstance(build_notifier(None), LogNotifier)
    assert isinstance(build_notifier("https://hooks.example.test"), WebhookNotifier)


def test_github_scanner_turns_issues_into_tasks() -> None:
    seen: list[httpx.Request] = []
    issues = [
        {
            "number": 12,
            "title": "Login crashes",
            "body": "Steps:\n- open the app\n- [ ] press login\n1. see crash",
            "labels": [{"name": "bug"}, {"name": "P1"}],
            "html_url": "https://github.com/acme/app/issues/12",
        },
        {"number": 13, "title": "A pull request", "pull_request": {"url": "x"}},
    ]

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=issues)

    scanner = GitHubIssueScanner(owner="acme", repo="app", token="t0k", client=_client(_handler))

    tasks = scanner.scan()

    assert len(tasks) == 1
    task = tasks[0]
    assert task.task_id == "gh-acme-app-12"
    assert task.title == "GitHub #12: Login crashes"
    assert task.type == TaskType.BUGFIX
    assert task.priority == TaskPriority.HIGH
    assert task.context.requirements == ["open the app", "press login", "see crash"]
    assert task.context.references == ["https://github.com/acme/app/issues/12"]
    request = seen[0]
    assert request.url.path == "/repos/acme/app/issues"
    assert "labels" not in request.url.params
    assert request.url.params["per_page"] == "5"
    assert request.headers["Authorization"] == "Bearer t0k"


def test_github_scanner_degrades_to_empty() -> None:
    failing = GitHubIssueScanner(
        owner="acme",
        repo="app",
        client=_client(lambda _request: httpx.Response(403, json={"message": "rate limited"})),
    )
    odd = GitHubIssueScanner(
        owner="acme",
        repo="app",
        client=_client(lambda _request: httpx.Response(200, json={"not": "a list"})),
    )
    unconfigured = GitHubIssueScanner(owner="", repo="app")

    assert failing.scan() == []
    assert odd.scan() == []
    assert unconfigured.scan() == []


def test_label_inference_defaults() -> None:
    assert infer_type_from_labels(["Documentation"]) == TaskType.DOCS
    assert infer_type_from_labels(["question"]) == TaskType.FEATURE
    assert infer_priority_from_labels(["urgent", "p2"]) == TaskPriority.CRITICAL
    assert infer_priority_from_labels([]) == TaskPriority.LOW


def test_requirements_ignore_prose() -> None:
    assert extract_issue_requirements(None) == []
    assert extract_issue_requirements("Just prose.\n* keep sessions\n-\n2. add tests") == [
        "keep sessions",
        "add tests",
    ]


def test_github_scanner_sends_configured_labels_only() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    scanner = GitHubIssueScanner(
        owner="acme",
        repo="app",
        labels=("agent-ready",),
        client=_client(_handler),
    )

    assert scanner.scan() == []
    assert seen[0].url.params["labels"] == "agent-ready"
