"""Retry eligibility policy for failed attempts."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from agent_cluster.orchestrator.models import FailureCategory

UNLIMITED = -1


@dataclass(slots=True)
class RetryDecision:
    """Decision returned by retry policy."""

    should_retry: bool
    reason: str


@dataclass(slots=True)
class RetryPolicy:
    """How many retries each failure category may trigger within one loop.

    A budget of ``UNLIMITED`` (-1) means the category is retried until the
    attempt limit; ``0`` means it is never retried.
    """

    budgets: dict[FailureCategory, int] = field(
        default_factory=lambda: {
            FailureCategory.CONTEXT: UNLIMITED,
            FailureCategory.DIRECTION: 1,
            FailureCategory.TECHNICAL: 1,
            FailureCategory.UNKNOWN: 1,
        },
    )

    def budget_for(self, category: FailureCategory) -> int:
        return self.budgets.get(category, 0)

    def decide(
        self,
        *,
        category: FailureCategory,
        attempt: int,
        max_attempts: int,
        previous_categories: Iterable[FailureCategory],
    ) -> RetryDecision:
        """Decide whether the failure of ``attempt`` earns another attempt.

        ``previous_categories`` lists the categories of earlier failed attempts
        in this loop, excluding the current one.
        """

        if attempt >= max_attempts:
            return RetryDecision(should_retry=False, reason="Attempt limit reached.")

        budget = self.budget_for(category)
        if budget == UNLIMITED:
            return RetryDecision(
                should_retry=True,
                reason=f"{category.value} failures are retried until the attempt limit.",
            )

        occurrences = 1 + sum(1 for previous in previous_categories if previous == category)
        if occurrences > budget:
            return RetryDecision(
                should_retry=False,
                reason=(
                    f"{category.value} failure #{occurrences} exceeds retry budget of {budget}."
                ),
            )
        return RetryDecision(
            should_retry=True,
            reason=f"{category.value} failure #{occurrences} is within retry budget of {budget}.",
        )
