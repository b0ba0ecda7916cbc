"""
Tool: Reward Calculator
Purpose: Turn feedback and measured change into a bounded scalar reward

Two strategies exist and callers pick one explicitly. They answer the
same question from different evidence and are not merged:

    impact     Feedback kind plus before/after deltas of momentum,
               overdue ratio and 7-day habit rate. The total is scaled by
               clamp(data_quality, 0.25, 1) so sparse data cannot produce
               a confident reward.

    immediate  Accepted or not, completed, an aggregate metric delta,
               explicit helpful/not_helpful, and a penalty that grows with
               time-to-action when the suggestion was not accepted.

Either way the result is clamped to [-5, 5].

Usage:
    from sage_engine.learning.reward import RewardStrategy, ImpactRewardInput, compute_reward

    reward = compute_reward(
        RewardStrategy.IMPACT,
        ImpactRewardInput(accepted=True, metrics_before=before, metrics_after=after,
                          data_quality=0.8),
    )
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from sage_engine.config import ImmediateRewardWeights, ImpactRewardWeights
from sage_engine.learning import EXPLICIT_FEEDBACK, REWARD_MAX, REWARD_MIN


class RewardStrategy(str, Enum):
    IMPACT = "impact"
    IMMEDIATE = "immediate"


@dataclass
class ImpactRewardInput:
    accepted: bool = False
    rejected: bool = False
    ignored: bool = False
    completed: bool = False
    metrics_before: Optional[Mapping[str, Any]] = None
    metrics_after: Optional[Mapping[str, Any]] = None
    data_quality: float = 1.0


@dataclass
class ImmediateRewardInput:
    accepted: bool = False
    completed: bool = False
    metric_delta: float = 0.0
    time_to_action: float = 0.0  # seconds
    explicit: Optional[str] = None

    def __post_init__(self):
        if self.explicit is not None and self.explicit not in EXPLICIT_FEEDBACK:
            raise ValueError(f"explicit must be one of {EXPLICIT_FEEDBACK} or None")


RewardInput = Union[ImpactRewardInput, ImmediateRewardInput]


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _delta(before: Mapping[str, Any], after: Mapping[str, Any], key: str) -> float:
    return float(after.get(key) or 0.0) - float(before.get(key) or 0.0)


def compute_impact_reward(
    inp: ImpactRewardInput, weights: ImpactRewardWeights | None = None
) -> float:
    """Feedback plus measured impact, scaled by data quality."""
    w = weights or ImpactRewardWeights()
    reward = 0.0

    if inp.accepted:
        reward += w.accepted
    if inp.completed:
        reward += w.completed
    if inp.rejected:
        reward += w.rejected
    if inp.ignored:
        reward += w.ignored

    if inp.metrics_before is not None and inp.metrics_after is not None:
        before, after = inp.metrics_before, inp.metrics_after
        reward += clamp(_delta(before, after, "momentum_index"), -1, 1) * w.momentum_delta
        reward += clamp(_delta(before, after, "task_overdue_ratio"), -1, 1) * w.overdue_ratio_delta
        reward += clamp(_delta(before, after, "habits_rate_7d"), -1, 1) * w.habits_rate_delta

    reward *= clamp(inp.data_quality, w.min_quality_factor, 1.0)
    return clamp(reward, REWARD_MIN, REWARD_MAX)


def compute_immediate_reward(
    inp: ImmediateRewardInput, weights: ImmediateRewardWeights | None = None
) -> float:
    """Feedback, explicit helpfulness and response time."""
    w = weights or ImmediateRewardWeights()
    reward = w.accepted if inp.accepted else w.not_accepted

    if inp.completed:
        reward += w.completed

    reward += inp.metric_delta * w.metric_delta

    if inp.explicit == "helpful":
        reward += w.explicit_helpful
    elif inp.explicit == "not_helpful":
        reward += w.explicit_not_helpful

    if not inp.accepted:
        waited = clamp(inp.time_to_action / w.slow_response_seconds, 0.0, 1.0)
        reward += w.slow_response_penalty * waited

    return clamp(reward, REWARD_MIN, REWARD_MAX)


_STRATEGIES = {
    RewardStrategy.IMPACT: (ImpactRewardInput, compute_impact_reward),
    RewardStrategy.IMMEDIATE: (ImmediateRewardInput, compute_immediate_reward),
}


def compute_reward(
    strategy: RewardStrategy | str,
    inputs: RewardInput,
    weights: ImpactRewardWeights | ImmediateRewardWeights | None = None,
) -> float:
    """
    Compute a reward with an explicitly chosen strategy.

    Raises:
        ValueError: Unknown strategy name
        TypeError: Inputs or weights do not belong to the strategy
    """
    strategy = RewardStrategy(strategy)
    input_type, func = _STRATEGIES[strategy]

    if not isinstance(inputs, input_type):
        raise TypeError(
            f"{strategy.value} reward expects {input_type.__name__}, got {type(inputs).__name__}"
        )

    weight_type = ImpactRewardWeights if strategy is RewardStrategy.IMPACT else ImmediateRewardWeights
    if weights is not None and not isinstance(weights, weight_type):
        raise TypeError(
            f"{strategy.value} reward expects {weight_type.__name__}, got {type(weights).__name__}"
        )

    return func(inputs, weights)


__all__ = [
    "ImmediateRewardInput",
    "ImpactRewardInput",
    "RewardStrategy",
    "clamp",
    "compute_immediate_reward",
    "compute_impact_reward",
    "compute_reward",
]
