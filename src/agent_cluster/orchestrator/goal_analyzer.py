"""Keyword classifier turning a free-text goal into a structured task analysis.

The analyzer is deterministic and never raises: unknown input yields a
best-effort classification (``feature``/``medium``/``general``). English terms
are matched on word boundaries, Chinese terms as plain substrings.
"""

from __future__ import annotations

import re
from collections.abc import Callable

from agent_cluster.orchestrator.models import Complexity, GoalAnalysis, TaskPriority, TaskType

GoalAnalyzerFn = Callable[[str], GoalAnalysis]

TITLE_MAX_CHARS = 50
DEFAULT_AREA = "general"

_STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "shall", "can", "need", "to", "of",
        "in", "for", "on", "with", "at", "by", "from", "as", "into", "through",
        "during", "before", "after", "above", "below", "between", "under",
        "again", "further", "then", "once", "and", "or", "it", "this", "that",
        "的", "了", "是", "在", "有", "和", "与", "或", "等", "这", "那",
        "我", "你", "他", "她", "它", "们",
    },
)  # fmt: skip


def _keyword_pattern(english: tuple[str, ...], chinese: tuple[str, ...] = ()) -> re.Pattern[str]:
    alternatives = [rf"\b{re.escape(word)}\b" for word in english]
    alternatives.extend(re.escape(word) for word in chinese)
    return re.compile("|".join(alternatives), re.IGNORECASE)


# Order matters: the first matching rule wins.
_TYPE_RULES: tuple[tuple[TaskType, re.Pattern[str]], ...] = (
    (
        TaskType.BUGFIX,
        _keyword_pattern(
            ("bug", "fix", "error", "crash", "broken", "issue"),
            ("问题", "修复", "错误"),
        ),
    ),
    (
        TaskType.REFACTOR,
        _keyword_pattern(
            ("refactor", "cleanup", "optimize", "improve"),
            ("重构", "优化", "清理"),
        ),
    ),
    (
        TaskType.DOCS,
        _keyword_pattern(
            ("doc", "docs", "documentation", "readme", "comment"),
            ("文档", "说明", "注释"),
        ),
    ),
    (TaskType.TEST, _keyword_pattern(("test", "tests", "testing", "spec"), ("测试",))),
    (
        TaskType.DESIGN,
        _keyword_pattern(("design", "ui", "ux", "style", "css"), ("设计", "样式")),
    ),
    (
        TaskType.ANALYSIS,
        _keyword_pattern(
            ("analyze", "analysis", "research", "investigate"),
            ("分析", "研究", "调查"),
        ),
    ),
)

_PRIORITY_RULES: tuple[tuple[TaskPriority, re.Pattern[str]], ...] = (
    (
        TaskPriority.CRITICAL,
        _keyword_pattern(
            ("urgent", "critical", "asap", "emergency", "blocker"),
            ("紧急", "严重", "立即", "马上"),
        ),
    ),
    (
        TaskPriority.HIGH,
        _keyword_pattern(("important", "high", "priority"), ("重要", "优先", "尽快")),
    ),
    (
        TaskPriority.LOW,
        _keyword_pattern(("low", "minor", "nice to have", "later"), ("次要", "以后", "有空")),
    ),
)

# "login" and "user" alone do not pin the auth area.
_AREA_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "backend",
        _keyword_pattern(("api", "backend", "server", "database"), ("后端", "服务", "数据库")),
    ),
    (
        "frontend",
        _keyword_pattern(("ui", "frontend", "component", "page"), ("前端", "组件", "页面")),
    ),
    (
        "auth",
        _keyword_pattern(
            ("auth", "authentication", "authorization", "oauth", "permission", "permissions"),
            ("认证", "权限"),
        ),
    ),
    ("testing", _keyword_pattern(("test", "tests", "testing", "spec"), ("测试",))),
    ("docs", _keyword_pattern(("doc", "docs", "documentation", "readme"), ("文档",))),
    ("devops", _keyword_pattern(("deploy", "ci", "cd", "build"), ("部署", "构建"))),
)

_HIGH_COMPLEXITY_PATTERN = _keyword_pattern(
    (
        "integrate",
        "integration",
        "migrate",
        "migration",
        "refactor",
        "rewrite",
    ),
    ("集成", "迁移", "重构", "重写"),
)

_REQUIREMENT_PATTERN = re.compile(
    r"(?:\bmust\b|\bshould\b|需要|(?<![不需])要)[\s:：]*[^.。,，!！?？]+",
    re.IGNORECASE,
)
_CONSTRAINT_PATTERN = re.compile(
    r"(?:\bdon't\b|\bdo not\b|\bcannot\b|\bnever\b|不能|不要|禁止|避免)[\s:：]*[^.。,，!！?？]+",
    re.IGNORECASE,
)

_AREA_FILE_HINTS: dict[str, tuple[str, ...]] = {
    "frontend": ("src/components/", "src/app/", "src/views/", "src/hooks/"),
    "backend": ("src/app/api/", "src/lib/", "src/services/"),
    "auth": ("src/lib/auth/", "src/middleware/", "src/app/api/auth/"),
    "testing": ("tests/", "e2e/"),
    "docs": ("README.md", "docs/", "CHANGELOG.md"),
    "devops": (".github/workflows/", "Dockerfile"),
}

_KEYWORD_FILE_HINTS: dict[str, tuple[str, ...]] = {
    "agent": ("src/launcher/", "src/orchestrator/"),
    "task": ("src/tasks/", "src/orchestrator/"),
    "memory": ("src/memory/",),
    "api": ("src/app/api/", "src/lib/"),
    "ui": ("src/components/ui/", "src/components/"),
    "button": ("src/components/ui/button.tsx",),
    "modal": ("src/components/ui/dialog.tsx",),
    "form": ("src/components/ui/form.tsx",),
    "test": ("tests/",),
    "auth": ("src/lib/auth/", "src/middleware.ts"),
    "database": ("migrations/", "src/db/"),
    "notify": ("src/notify/",),
    "scanner": ("src/orchestrator/scanners/",),
}


def analyze_goal(goal: str) -> GoalAnalysis:
    """Classify a free-text goal into type, priority, area, complexity and hints."""

    text = goal or ""
    keywords = extract_keywords(text)
    area = infer_area(text)
    return GoalAnalysis(
        title=generate_title(text),
        description=text,
        type=infer_task_type(text),
        priority=infer_priority(text),
        area=area,
        requirements=extract_requirements(text),
        constraints=extract_constraints(text),
        complexity=estimate_complexity(text, keywords),
        suggested_files=suggest_files(keywords, area),
        keywords=keywords,
    )


def extract_keywords(goal: str) -> list[str]:
    normalized = re.sub(r"[^\w\s]", " ", goal.lower())
    return [word for word in normalized.split() if len(word) > 1 and word not in _STOP_WORDS]


def infer_task_type(goal: str) -> TaskType:
    for task_type, pattern in _TYPE_RULES:
        if pattern.search(goal):
            return task_type
    return TaskType.FEATURE


def infer_priority(goal: str) -> TaskPriority:
    for priority, pattern in _PRIORITY_RULES:
        if pattern.search(goal):
            return priority
    return TaskPriority.MEDIUM


def infer_area(goal: str) -> str:
    for area, pattern in _AREA_RULES:
        if pattern.search(goal):
            return area
    return DEFAULT_AREA


def extract_requirements(goal: str) -> list[str]:
    return [match.group(0).strip() for match in _REQUIREMENT_PATTERN.finditer(goal)]


def extract_constraints(goal: str) -> list[str]:
    return [match.group(0).strip() for match in _CONSTRAINT_PATTERN.finditer(goal)]


def estimate_complexity(goal: str, keywords: list[str]) -> Complexity:
    """Escalate with migration-style wording, then with goal length and keyword count."""

    if _HIGH_COMPLEXITY_PATTERN.search(goal):
        return Complexity.HIGH
    word_count = len(goal.split())
    keyword_count = len(keywords)
    if word_count > 50 or keyword_count > 10:
        return Complexity.HIGH
    if word_count > 20 or keyword_count > 5:
        return Complexity.MEDIUM
    return Complexity.LOW


def generate_title(goal: str) -> str:
    title = goal.strip()
    if len(title) > TITLE_MAX_CHARS:
        return title[: TITLE_MAX_CHARS - 3] + "..."
    return title


def suggest_files(keywords: list[str], area: str) -> list[str]:
    suggestions: list[str] = list(_AREA_FILE_HINTS.get(area, ()))
    for keyword in keywords:
        for hint_key, files in _KEYWORD_FILE_HINTS.items():
            if keyword == hint_key or keyword.startswith(hint_key):
                suggestions.extend(files)
    return list(dict.fromkeys(suggestions))
