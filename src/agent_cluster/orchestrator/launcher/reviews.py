"""Code review system adapter built on the ``gh`` CLI."""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_cluster.orchestrator.launcher.base import CommandRunner, run_command
from agent_cluster.orchestrator.models import CiStatus, ReviewInfo, ReviewStatus

logger = logging.getLogger(__name__)

REVIEW_JSON_FIELDS = "number,title,url,state,isDraft,reviewDecision,statusCheckRollup,headRefName"
MERGE_METHODS = ("merge", "squash", "rebase")


class ReviewClientError(RuntimeError):
    """Review CLI unavailable or returned an unusable answer."""


@dataclass(slots=True)
class MergeCheck:
    can_merge: bool
    reasons: list[str] = field(default_factory=list)


class ReviewClient:
    """Pull request adapter for the repository at ``repo_dir``."""

    def __init__(
        self,
        *,
        binary: str = "gh",
        repo_dir: Path | None = None,
        runner: CommandRunner = run_command,
    ) -> None:
        self.binary = binary
        self.repo_dir = repo_dir
        self._runner = runner

    def find_open_review(self, branch: str) -> int | None:
        """Number of the open review whose head is ``branch``, if any."""

        payload = self._run_json(
            ["pr", "list", "--head", branch, "--state", "open", "--json", "number", "--limit", "1"],
        )
        if isinstance(payload, list) and payload:
            number = payload[0].get("number")
            return int(number) if number is not None else None
        return None

    def list_open_reviews(
        self,
        *,
        branch: str | None = None,
        limit: int = 30,
    ) -> list[ReviewInfo]:
        args = ["pr", "list", "--state", "open", "--json", REVIEW_JSON_FIELDS]
        args.extend(["--limit", str(limit)])
        if branch:
            args.extend(["--head", branch])
        payload = self._run_json(args)
        if not isinstance(payload, list):
            raise ReviewClientError("Unexpected review list payload")
        return [_to_review_info(item) for item in payload]

    def get_review(self, number: int) -> ReviewInfo:
        payload = self._run_json(["pr", "view", str(number), "--json", REVIEW_JSON_FIELDS])
        if not isinstance(payload, dict):
            raise ReviewClientError(f"Unexpected payload for review #{number}")
        return _to_review_info(payload)

    def can_merge(self, number: int) -> MergeCheck:
        """Merge readiness with human-readable blocking reasons."""

        try:
            review = self.get_review(number)
        except ReviewClientError as error:
            return MergeCheck(can_merge=False, reasons=[f"Review #{number} unavailable: {error}"])

        reasons: list[str] = []
        if review.status == ReviewStatus.DRAFT:
            reasons.append("Review is a draft")
        if review.status in {ReviewStatus.CLOSED, ReviewStatus.MERGED}:
            reasons.append(f"Review is already {review.status.value}")
        if review.ci_status == CiStatus.FAILED:
            reasons.append("CI checks failed")
        if review.ci_status in {CiStatus.PENDING, CiStatus.RUNNING}:
            reasons.append("CI checks still in progress")
        if review.status == ReviewStatus.REVIEW_REQUIRED:
            reasons.append("Code review required")
        return MergeCheck(can_merge=not reasons, reasons=reasons)

    def merge(self, number: int, *, method: str = "squash") -> None:
        if method not in MERGE_METHODS:
            raise ValueError(
                f"Unsupported merge method {method!r}; expected one of {MERGE_METHODS}",
            )
        self._run(["pr", "merge", str(number), f"--{method}", "--delete-branch"])
        logger.info("Merged review #%s (%s)", number, method)

    def _run(self, args: list[str]) -> str:
        try:
            result = self._runner([self.binary, *args], cwd=self.repo_dir)
        except FileNotFoundError as error:
            raise ReviewClientError(f"Review CLI not found: {self.binary}") from error
        except (OSError, subprocess.SubprocessError) as error:
            raise ReviewClientError(f"Review CLI failed: {error}") from error
        if not result.ok:
            raise ReviewClientError(
                f"{self.binary} {' '.join(args[:2])} exited with code {result.returncode}: "
                f"{result.stderr.strip()}",
            )
        return result.stdout

    def _run_json(self, args: list[str]) -> Any:
        output = self._run(args)
        try:
            return json.loads(output or "null")
        except json.JSONDecodeError as error:
            raise ReviewClientError(f"Invalid JSON from {self.binary}: {error}") from error


def map_review_status(
    state: str | None,
    review_decision: str | None,
    is_draft: bool,
) -> ReviewStatus:
    normalized = (state or "").upper()
    if normalized == "CLOSED":
        return ReviewStatus.CLOSED
    if normalized == "MERGED":
        return ReviewStatus.MERGED
    if is_draft:
        return ReviewStatus.DRAFT
    if review_decision == "APPROVED":
        return ReviewStatus.APPROVED
    if review_decision in {"CHANGES_REQUESTED", "REVIEW_REQUIRED"}:
        return ReviewStatus.REVIEW_REQUIRED
    return ReviewStatus.OPEN


def map_ci_status(checks: list[dict[str, Any]] | None) -> CiStatus:
    if not checks:
        return CiStatus.PENDING
    conclusions = [str(check.get("conclusion") or "").upper() for check in checks]
    statuses = [str(check.get("status") or "").upper() for check in checks]
    if any(conclusion in {"FAILURE", "TIMED_OUT", "CANCELLED"} for conclusion in conclusions):
        return CiStatus.FAILED
    if any(status in {"IN_PROGRESS", "QUEUED"} for status in statuses):
        return CiStatus.RUNNING
    if all(conclusion in {"SUCCESS", "SKIPPED", "NEUTRAL"} for conclusion in conclusions):
        return CiStatus.PASSED
    return CiStatus.PENDING


def _to_review_info(payload: dict[str, Any]) -> ReviewInfo:
    return ReviewInfo(
        number=int(payload["number"]),
        title=str(payload.get("title") or ""),
        url=str(payload.get("url") or ""),
        status=map_review_status(
            payload.get("state"),
            payload.get("reviewDecision"),
            bool(payload.get("isDraft")),
        ),
        ci_status=map_ci_status(payload.get("statusCheckRollup")),
        branch=payload.get("headRefName"),
    )
