"""Worker instruction assembly from task, context and past outcomes."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from agent_cluster.orchestrator.models import (
    FailureAnalysis,
    FailureCategory,
    MemoryEntry,
    MemoryType,
    Task,
    TaskContext,
)

DEFAULT_MAX_PROMPT_CHARS = 8000
MAX_SUCCESS_EXAMPLES = 3
MAX_FAILURE_EXAMPLES = 2
TRUNCATION_NOTE = "[Prompt truncated; the most important context was kept above.]"

_OUTPUT_REQUIREMENTS = (
    "## Output requirements\n"
    "1. Make sure the code builds and existing checks pass.\n"
    "2. Add the tests the change needs.\n"
    "3. Update related documentation.\n"
    "4. Use a clear commit message."
)

_REVIEW_FOCUS = {
    "codex": "edge cases, logic errors, exception handling, race conditions",
    "claude": "code style, readability, idiomatic usage",
    "gemini": "security, scalability, performance",
}


@dataclass(slots=True)
class PromptOptions:
    include_context: bool = True
    include_constraints: bool = True
    include_history: bool = True
    max_length: int = DEFAULT_MAX_PROMPT_CHARS


def build_prompt(task: Task, context: TaskContext, options: PromptOptions | None = None) -> str:
    """Assemble the full first-attempt prompt, truncated to ``options.max_length``."""

    options = options or PromptOptions()
    sections = [
        f"## Goal\n{task.goal or task.description or task.title}\n\n"
        "### Task details\n"
        f"- Type: {task.type.value}\n"
        f"- Priority: {task.priority.value}\n"
        f"- Title: {task.title}",
    ]

    if options.include_context and context.requirements:
        sections.append("## Requirements\n" + _numbered(context.requirements))

    if options.include_constraints and context.constraints:
        sections.append("## Constraints\n" + _numbered(context.constraints))

    if context.files:
        sections.append("## Related files\n" + "\n".join(f"- `{path}`" for path in context.files))

    if options.include_history and context.history:
        successes = [m for m in context.history if m.type == MemoryType.SUCCESS]
        successes = successes[:MAX_SUCCESS_EXAMPLES]
        if successes:
            examples = "\n\n".join(
                f"### Experience {index}\n{_describe_memory(entry)}"
                for index, entry in enumerate(successes, start=1)
            )
            sections.append("## What worked before\n" + examples)

        failures = [m for m in context.history if m.type == MemoryType.FAILURE]
        failures = failures[:MAX_FAILURE_EXAMPLES]
        if failures:
            sections.append(
                "## Mistakes to avoid\n" + _numbered([_describe_memory(m) for m in failures]),
            )

    sections.append(_OUTPUT_REQUIREMENTS)

    prompt = "\n\n".join(sections)
    if len(prompt) > options.max_length:
        prompt = prompt[: options.max_length] + "\n\n" + TRUNCATION_NOTE
    return prompt


def adjust_prompt(prompt: str, analysis: FailureAnalysis) -> str:
    """Append a correction block keyed by the failure category."""

    if analysis.category == FailureCategory.CONTEXT:
        block = (
            "## Additional context\n"
            f"{analysis.suggestion}\n\n"
            "Make sure you fully understand the task context before you start."
        )
    elif analysis.category == FailureCategory.DIRECTION:
        block = (
            "## Direction correction\n"
            f"{analysis.suggestion}\n\n"
            "Redo the task following the corrected direction."
        )
    elif analysis.category == FailureCategory.TECHNICAL:
        block = (
            "## Technical issue\n"
            f"{analysis.suggestion}\n\n"
            "Resolve the technical problem above, then continue."
        )
    else:
        block = (
            "## Feedback from the previous attempt\n"
            f"Problem: {analysis.reason}\n"
            f"Suggestion: {analysis.suggestion}"
        )
    if analysis.adjusted_prompt:
        block += f"\n\n{analysis.adjusted_prompt}"
    return f"{prompt}\n\n{block}"


def build_review_prompt(description: str, diff: str, reviewer: str) -> str:
    """Prompt asking a reviewer worker to comment on a change set."""

    focus = _REVIEW_FOCUS.get(reviewer, _REVIEW_FOCUS["claude"])
    return (
        "## Code review task\n\n"
        f"### Change description\n{description}\n\n"
        f"### Diff\n```diff\n{diff}\n```\n\n"
        f"### Review focus\nConcentrate on: {focus}\n\n"
        "### Output format\n"
        "- Leave findings as review comments.\n"
        "- Mark severity: critical / suggestion / optional.\n"
        "- Give a concrete fix for each finding."
    )


def build_task_trailer(task_id: str) -> str:
    """Trailer appended to every worker prompt."""

    return (
        "---\n"
        f"Task ID: {task_id}\n"
        "When complete, commit your work, push the branch and open a pull request "
        "that references this task id. Exit with a non-zero status if you cannot finish."
    )


def _numbered(items: list[str]) -> str:
    return "\n".join(f"{index}. {item}" for index, item in enumerate(items, start=1))


def _describe_memory(entry: MemoryEntry) -> str:
    value: Any = entry.value
    if isinstance(value, dict):
        for field_name in ("pattern", "lesson", "summary", "error"):
            text = value.get(field_name)
            if isinstance(text, str) and text.strip():
                return text.strip()
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    return str(value)
