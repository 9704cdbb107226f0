"""Static worker tables: capabilities, scoring bonuses, providers and command templates."""

from __future__ import annotations

from dataclasses import dataclass

from agent_cluster.orchestrator.models import Complexity, TaskType

SUPPORTED_AGENTS = ("pop", "codex", "claude", "quill", "echo", "scout", "pixel")
DEFAULT_AGENT = "pop"


@dataclass(slots=True, frozen=True)
class AgentCapability:
    """What a worker is good at and how often it historically succeeds."""

    name: str
    display_name: str
    capabilities: tuple[TaskType, ...]
    success_rate: float
    provider: str


DEFAULT_CAPABILITIES: dict[str, AgentCapability] = {
    "pop": AgentCapability(
        name="pop",
        display_name="Pop",
        capabilities=tuple(TaskType),
        success_rate=0.92,
        provider="zai",
    ),
    "codex": AgentCapability(
        name="codex",
        display_name="Codex",
        capabilities=(TaskType.FEATURE, TaskType.BUGFIX, TaskType.REFACTOR, TaskType.TEST),
        success_rate=0.90,
        provider="openai",
    ),
    "claude": AgentCapability(
        name="claude",
        display_name="Claude Code",
        capabilities=(TaskType.FEATURE, TaskType.BUGFIX, TaskType.DOCS),
        success_rate=0.88,
        provider="anthropic",
    ),
    "quill": AgentCapability(
        name="quill",
        display_name="Quill",
        capabilities=(TaskType.DOCS,),
        success_rate=0.85,
        provider="anthropic",
    ),
    "echo": AgentCapability(
        name="echo",
        display_name="Echo",
        capabilities=(),
        success_rate=0.80,
        provider="anthropic",
    ),
    "scout": AgentCapability(
        name="scout",
        display_name="Scout",
        capabilities=(TaskType.ANALYSIS,),
        success_rate=0.85,
        provider="openai",
    ),
    "pixel": AgentCapability(
        name="pixel",
        display_name="Pixel",
        capabilities=(TaskType.DESIGN,),
        success_rate=0.75,
        provider="anthropic",
    ),
}

AREA_BONUSES: dict[str, dict[str, int]] = {
    "pop": {
        "general": 20,
        "docs": 15,
        "frontend": 10,
        "backend": 10,
        "testing": 5,
        "devops": 5,
        "auth": 5,
    },
    "codex": {
        "backend": 20,
        "devops": 15,
        "testing": 10,
        "frontend": 5,
        "auth": 15,
        "general": 10,
    },
    "claude": {
        "frontend": 20,
        "docs": 15,
        "backend": 10,
        "testing": 10,
        "devops": 5,
        "auth": 10,
        "general": 15,
    },
    "quill": {"docs": 30, "general": 10, "frontend": 5},
    "echo": {"general": 10, "docs": 5},
    "scout": {"general": 15, "docs": 10, "backend": 5},
    "pixel": {"frontend": 25, "docs": 5, "general": 5},
}

COMPLEXITY_BONUSES: dict[str, dict[Complexity, int]] = {
    "pop": {Complexity.HIGH: 10, Complexity.MEDIUM: 15, Complexity.LOW: 10},
    "codex": {Complexity.HIGH: 15, Complexity.MEDIUM: 10, Complexity.LOW: 5},
    "claude": {Complexity.HIGH: 10, Complexity.MEDIUM: 15, Complexity.LOW: 10},
    "quill": {Complexity.HIGH: 0, Complexity.MEDIUM: 5, Complexity.LOW: 10},
    "echo": {Complexity.HIGH: 0, Complexity.MEDIUM: 5, Complexity.LOW: 10},
    "scout": {Complexity.HIGH: 5, Complexity.MEDIUM: 10, Complexity.LOW: 5},
    "pixel": {Complexity.HIGH: 0, Complexity.MEDIUM: 10, Complexity.LOW: 15},
}

# Worker CLI invocation per provider. Placeholders: {model}, {prompt}, {prompt_file}, {task_id}.
PROVIDER_COMMAND_TEMPLATES: dict[str, str] = {
    "anthropic": "claude --model {model} --dangerously-skip-permissions -p {prompt}",
    "openai": "codex --model {model} --dangerously-bypass-approvals-and-sandbox -p {prompt}",
    "google": "gemini --model {model} -p {prompt}",
    "zai": "openclaw agent run {prompt}",
}


def default_command_template(agent: str) -> str:
    """Default command template for a worker, derived from its provider."""

    capability = DEFAULT_CAPABILITIES.get(normalize_agent(agent))
    provider = capability.provider if capability is not None else "anthropic"
    return PROVIDER_COMMAND_TEMPLATES[provider]


def normalize_agent(value: str) -> str:
    return value.strip().lower()


def validate_supported_agent(agent: str) -> None:
    if agent not in SUPPORTED_AGENTS:
        raise ValueError(
            f"Unsupported agent={agent!r}. Supported agents: {', '.join(SUPPORTED_AGENTS)}",
        )
