from __future__ import annotations

import allure

from agent_cluster.orchestrator.models import (
    FailureAnalysis,
    FailureCategory,
    MemoryEntry,
    MemoryType,
    TaskContext,
)
from agent_cluster.orchestrator.prompt_builder import (
    TRUNCATION_NOTE,
    PromptOptions,
    adjust_prompt,
    build_prompt,
    build_review_prompt,
    build_task_trailer,
)
from agent_cluster.storage.common import utc_now

pytestmark = [
    allure.epic("Retry Loop"),
    allure.feature("Prompt Construction"),
]


def _memory(memory_type: MemoryType, value: object, key: str = "k") -> MemoryEntry:
    return MemoryEntry(id=key, key=key, value=value, type=memory_type, timestamp=utc_now())


def test_prompt_lists_goal_details_and_numbered_context(task_factory) -> None:
    context = TaskContext(
        requirements=["must keep sessions alive"],
        constraints=["do not change the schema"],
        files=["src/lib/auth/"],
    )

    prompt = build_prompt(task_factory(), context)

    assert prompt.startswith("## Goal\nFix the login bug")
    assert "- Type: bugfix" in prompt
    assert "## Requirements\n1. must keep sessions alive" in prompt
    assert "## Constraints\n1. do not change the schema" in prompt
    assert "- `src/lib/auth/`" in prompt
    assert prompt.rstrip().endswith("4. Use a clear commit message.")


def test_history_sections_are_capped(task_factory) -> None:
    history = [_memory(MemoryType.SUCCESS, {"pattern": f"win {i}"}, f"s{i}") for i in range(5)]
    history += [_memory(MemoryType.FAILURE, {"error": f"oops {i}"}, f"f{i}") for i in range(4)]

    prompt = build_prompt(task_factory(), TaskContext(history=history))

    assert "### Experience 3\nwin 2" in prompt
    assert "win 3" not in prompt
    assert "## Mistakes to avoid\n1. oops 0\n2. oops 1" in prompt
    assert "oops 2" not in prompt


def test_sections_can_be_switched_off(task_factory) -> None:
    context = TaskContext(
        requirements=["must keep sessions alive"],
        constraints=["do not change the schema"],
        history=[_memory(MemoryType.SUCCESS, "plain text lesson")],
    )
    options = PromptOptions(include_context=False, include_constraints=False, include_history=False)

    prompt = build_prompt(task_factory(), context, options)

    assert "## Requirements" not in prompt
    assert "## Constraints" not in prompt
    assert "What worked before" not in prompt


def test_over_long_prompt_is_truncated_with_note(task_factory) -> None:
    context = TaskContext(requirements=["x" * 500])

    prompt = build_prompt(task_factory(), context, PromptOptions(max_length=200))

    assert prompt.endswith(TRUNCATION_NOTE)
    assert len(prompt) == 200 + len("\n\n") + len(TRUNCATION_NOTE)


def test_adjust_prompt_appends_category_specific_block() -> None:
    context_fix = adjust_prompt(
        "base",
        FailureAnalysis(reason="r", category=FailureCategory.CONTEXT, suggestion="read api.py"),
    )
    direction_fix = adjust_prompt(
        "base",
        FailureAnalysis(reason="r", category=FailureCategory.DIRECTION, suggestion="stay"),
    )
    unknown_fix = adjust_prompt(
        "base",
        FailureAnalysis(
            reason="gave up",
            category=FailureCategory.UNKNOWN,
            suggestion="ask",
            adjusted_prompt="Extra hint.",
        ),
    )

    assert context_fix.startswith("base\n\n## Additional context\nread api.py")
    assert "## Direction correction\nstay" in direction_fix
    assert "Problem: gave up\nSuggestion: ask" in unknown_fix
    assert unknown_fix.endswith("Extra hint.")


def test_adjustments_accumulate_across_attempts() -> None:
    analysis = FailureAnalysis(reason="r", category=FailureCategory.TECHNICAL, suggestion="fix it")

    prompt = adjust_prompt(adjust_prompt("base", analysis), analysis)

    assert prompt.count("## Technical issue") == 2


def test_review_prompt_uses_reviewer_focus_with_fallback() -> None:
    assert "security, scalability" in build_review_prompt("d", "+x", "gemini")
    assert "code style" in build_review_prompt("d", "+x", "unknown-reviewer")


def test_trailer_carries_task_id() -> None:
    assert "Task ID: task-42" in build_task_trailer("task-42")
