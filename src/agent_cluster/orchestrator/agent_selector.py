"""Deterministic worker selection from a goal analysis."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from agent_cluster.orchestrator.agents import (
    AREA_BONUSES,
    COMPLEXITY_BONUSES,
    DEFAULT_CAPABILITIES,
    AgentCapability,
)
from agent_cluster.orchestrator.models import GoalAnalysis

CAPABILITY_WEIGHT = 50
SUCCESS_RATE_WEIGHT = 30


@dataclass(slots=True)
class AgentScore:
    agent: str
    score: float
    capability_match: bool
    area_bonus: int
    complexity_bonus: int


def score_agents(
    analysis: GoalAnalysis,
    capabilities: Mapping[str, AgentCapability] = DEFAULT_CAPABILITIES,
) -> list[AgentScore]:
    """Score every candidate, best first; ties keep capability table order."""

    scores: list[AgentScore] = []
    for agent, capability in capabilities.items():
        matched = analysis.type in capability.capabilities
        area_bonus = AREA_BONUSES.get(agent, {}).get(analysis.area, 0)
        complexity_bonus = COMPLEXITY_BONUSES.get(agent, {}).get(analysis.complexity, 0)
        score = (
            (CAPABILITY_WEIGHT if matched else 0)
            + SUCCESS_RATE_WEIGHT * capability.success_rate
            + area_bonus
            + complexity_bonus
        )
        scores.append(
            AgentScore(
                agent=agent,
                score=score,
                capability_match=matched,
                area_bonus=area_bonus,
                complexity_bonus=complexity_bonus,
            ),
        )
    # sorted() is stable, so equal scores stay in table order.
    return sorted(scores, key=lambda item: item.score, reverse=True)


def select_agent(
    analysis: GoalAnalysis,
    capabilities: Mapping[str, AgentCapability] = DEFAULT_CAPABILITIES,
) -> str:
    """Pick the highest scoring worker for the analysis."""

    if not capabilities:
        raise ValueError("Capability table is empty; at least one agent is required.")
    return score_agents(analysis, capabilities)[0].agent
