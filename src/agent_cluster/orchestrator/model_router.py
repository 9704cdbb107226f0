"""Cost-tier routing: pick cheap/balanced/smart model independently of the worker."""

from __future__ import annotations

import re
from dataclasses import dataclass

from agent_cluster.orchestrator.agents import DEFAULT_CAPABILITIES, normalize_agent
from agent_cluster.orchestrator.models import ModelTier, TaskType

SHORT_GOAL_CHARS = 50


@dataclass(slots=True, frozen=True)
class ProviderModels:
    """Model ids and input cost (USD per 1M tokens) per tier for one provider."""

    models: dict[ModelTier, str]
    costs: dict[ModelTier, float]


PROVIDERS: dict[str, ProviderModels] = {
    "anthropic": ProviderModels(
        models={
            ModelTier.CHEAP: "claude-haiku-4",
            ModelTier.BALANCED: "claude-sonnet-4-5",
            ModelTier.SMART: "claude-opus-4-5",
        },
        costs={ModelTier.CHEAP: 0.25, ModelTier.BALANCED: 3.0, ModelTier.SMART: 15.0},
    ),
    "openai": ProviderModels(
        models={
            ModelTier.CHEAP: "gpt-4.1-nano",
            ModelTier.BALANCED: "gpt-4.1-mini",
            ModelTier.SMART: "gpt-4.1",
        },
        costs={ModelTier.CHEAP: 0.10, ModelTier.BALANCED: 0.40, ModelTier.SMART: 2.0},
    ),
    "google": ProviderModels(
        models={
            ModelTier.CHEAP: "gemini-2.0-flash",
            ModelTier.BALANCED: "gemini-2.5-flash",
            ModelTier.SMART: "gemini-2.5-pro",
        },
        costs={ModelTier.CHEAP: 0.075, ModelTier.BALANCED: 0.15, ModelTier.SMART: 1.25},
    ),
    "zai": ProviderModels(
        models={
            ModelTier.CHEAP: "zai/glm-4-flash",
            ModelTier.BALANCED: "zai/glm-5",
            ModelTier.SMART: "zai/glm-5",
        },
        costs={ModelTier.CHEAP: 0.01, ModelTier.BALANCED: 0.05, ModelTier.SMART: 0.05},
    ),
}
DEFAULT_PROVIDER = "anthropic"

_COMMUNICATION_KEYWORDS = (
    "hi", "hey", "hello", "yo", "sup", "thanks", "thank", "thx", "ok", "okay",
    "sure", "got it", "understood", "yes", "yeah", "yep", "no", "nope",
    "good", "great", "nice", "cool", "awesome",
)  # fmt: skip
_BACKGROUND_KEYWORDS = (
    "heartbeat", "cron", "scheduled", "periodic", "reminder", "parse", "extract",
    "read log", "scan", "process csv", "process json", "monitor", "poll", "check status",
)  # fmt: skip
_SMART_KEYWORDS = ("complex", "architect", "comprehensive", "deep", "design system", "multi-agent")
_CHEAP_KEYWORDS = ("simple", "quick", "basic", "minor", "small")

TASK_TIER_DEFAULTS: dict[TaskType, ModelTier] = {
    TaskType.ANALYSIS: ModelTier.CHEAP,
    TaskType.DOCS: ModelTier.BALANCED,
    TaskType.TEST: ModelTier.CHEAP,
    TaskType.DESIGN: ModelTier.SMART,
    TaskType.FEATURE: ModelTier.BALANCED,
    TaskType.BUGFIX: ModelTier.BALANCED,
    TaskType.REFACTOR: ModelTier.BALANCED,
}


@dataclass(slots=True)
class TierDecision:
    tier: ModelTier
    confidence: float
    reasoning: str


@dataclass(slots=True)
class RoutedModel:
    model: str
    tier: ModelTier
    provider: str
    cost_savings_percent: int
    reasoning: str


@dataclass(slots=True)
class CostComparison:
    original_cost: float
    routed_cost: float
    savings: float
    savings_percent: int


def classify_task_complexity(goal: str, task_type: TaskType) -> TierDecision:
    """Choose a model tier from short-circuit keyword rules, then the task-type default."""

    text = goal.lower()

    if len(text) < SHORT_GOAL_CHARS:
        for keyword in _COMMUNICATION_KEYWORDS:
            if _contains_phrase(text, keyword):
                return TierDecision(
                    tier=ModelTier.CHEAP,
                    confidence=1.0,
                    reasoning="Simple communication - use cheapest model",
                )

    for keyword in _BACKGROUND_KEYWORDS:
        if keyword in text:
            return TierDecision(
                tier=ModelTier.CHEAP,
                confidence=1.0,
                reasoning="Background task - use cheapest model",
            )

    for keyword in _SMART_KEYWORDS:
        if keyword in text:
            return TierDecision(
                tier=ModelTier.SMART,
                confidence=0.8,
                reasoning=f'Complex task detected: "{keyword}"',
            )

    for keyword in _CHEAP_KEYWORDS:
        if keyword in text:
            return TierDecision(
                tier=ModelTier.CHEAP,
                confidence=0.8,
                reasoning=f'Simple task detected: "{keyword}"',
            )

    return TierDecision(
        tier=TASK_TIER_DEFAULTS.get(task_type, ModelTier.BALANCED),
        confidence=0.6,
        reasoning=f"Default tier for task type: {task_type.value}",
    )


def provider_for_agent(agent: str) -> str:
    capability = DEFAULT_CAPABILITIES.get(normalize_agent(agent))
    if capability is None or capability.provider not in PROVIDERS:
        return DEFAULT_PROVIDER
    return capability.provider


def get_routed_model(agent: str, goal: str, task_type: TaskType) -> RoutedModel:
    """Resolve the concrete model for a worker, with savings against the balanced tier."""

    decision = classify_task_complexity(goal, task_type)
    provider = provider_for_agent(agent)
    provider_models = PROVIDERS[provider]
    base_cost = provider_models.costs[ModelTier.BALANCED]
    tier_cost = provider_models.costs[decision.tier]
    savings = round((1 - tier_cost / base_cost) * 100) if base_cost > 0 else 0
    return RoutedModel(
        model=provider_models.models[decision.tier],
        tier=decision.tier,
        provider=provider,
        cost_savings_percent=max(0, savings),
        reasoning=decision.reasoning,
    )


def calculate_cost_savings(
    original_model: str,
    routed_model: str,
    estimated_tokens: int,
) -> CostComparison:
    """Compare input cost of two model ids for the same token volume."""

    original_cost = _cost_per_million(original_model) * estimated_tokens / 1_000_000
    routed_cost = _cost_per_million(routed_model) * estimated_tokens / 1_000_000
    savings = original_cost - routed_cost
    savings_percent = round(savings / original_cost * 100) if original_cost > 0 else 0
    return CostComparison(
        original_cost=original_cost,
        routed_cost=routed_cost,
        savings=savings,
        savings_percent=savings_percent,
    )


def _cost_per_million(model: str) -> float:
    for provider_models in PROVIDERS.values():
        for tier, model_id in provider_models.models.items():
            if model_id == model:
                return provider_models.costs[tier]
    lowered = model.lower()
    if "opus" in lowered:
        return 15.0
    if "sonnet" in lowered:
        return 3.0
    if "haiku" in lowered:
        return 0.25
    if "glm-4-flash" in lowered:
        return 0.01
    if "glm" in lowered:
        return 0.05
    if "nano" in lowered or "flash" in lowered:
        return 0.10
    if "mini" in lowered:
        return 0.40
    if "gpt-4.1" in lowered or "pro" in lowered:
        return 2.0
    return 3.0


def _contains_phrase(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None
