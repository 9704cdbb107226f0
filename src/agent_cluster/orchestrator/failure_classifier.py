"""Deterministic attempt failure classification for the retry loop."""

from __future__ import annotations

import logging
from typing import Protocol

from agent_cluster.orchestrator.models import FailureAnalysis, FailureCategory, Task

logger = logging.getLogger(__name__)

FAILURE_CLASSIFIER_VERSION = 1
ERROR_EXCERPT_CHARS = 200

_CONTEXT_PATTERNS: tuple[str, ...] = (
    "context",
    "not found",
    "未找到",
)
_DIRECTION_PATTERNS: tuple[str, ...] = (
    "direction",
    "mismatch",
    "不符合",
)
_TECHNICAL_PATTERNS: tuple[str, ...] = (
    "error",
    "failed",
    "失败",
)


class FailureClassifier(Protocol):
    """Maps an attempt's error text to a failure category and next-step suggestion."""

    def classify(self, task: Task, error: str) -> FailureAnalysis: ...


class KeywordFailureClassifier:
    """Substring rules checked in order: context, direction, technical, else unknown."""

    def classify(self, task: Task, error: str) -> FailureAnalysis:
        haystack = _normalize_text(error)

        pattern = _first_match(haystack, _CONTEXT_PATTERNS)
        if pattern is not None:
            logger.debug("Task %s failure matched context pattern %r", task.id, pattern)
            return FailureAnalysis(
                reason="Not enough context to complete the task",
                category=FailureCategory.CONTEXT,
                suggestion=(
                    f"Gather more context for this {task.type.value} task first: "
                    "locate the relevant files, modules and data structures."
                ),
            )

        pattern = _first_match(haystack, _DIRECTION_PATTERNS)
        if pattern is not None:
            logger.debug("Task %s failure matched direction pattern %r", task.id, pattern)
            return FailureAnalysis(
                reason="Execution diverged from the expected direction",
                category=FailureCategory.DIRECTION,
                suggestion=f"The goal is: {task.goal or task.title}. Stay on that goal.",
            )

        pattern = _first_match(haystack, _TECHNICAL_PATTERNS)
        if pattern is not None:
            logger.debug("Task %s failure matched technical pattern %r", task.id, pattern)
            return FailureAnalysis(
                reason="Technical problem during execution",
                category=FailureCategory.TECHNICAL,
                suggestion=(
                    "Resolve this technical problem: "
                    f"{error.strip()[:ERROR_EXCERPT_CHARS]}"
                ),
            )

        return unknown_failure(error or "Unknown error")


def unknown_failure(reason: str) -> FailureAnalysis:
    return FailureAnalysis(
        reason=reason,
        category=FailureCategory.UNKNOWN,
        suggestion="Check the session log; a human may need to step in.",
    )


def _normalize_text(error: str) -> str:
    return (error or "").lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
