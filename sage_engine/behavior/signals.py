"""
Tool: Signal Detector
Purpose: Map a behavior context to zero or more scored signals

Rules are independent, may co-fire, and have no side effects:

    fatigue        consistency < 0.4 and recent_completions < 3   score = 1 - consistency
    overload       overdue_count > 5                              score = min(overdue / 10, 1)
    disengagement  days_inactive > 3                              score = min(days / 7, 1)
    momentum       consistency > 0.8 and recent_completions > 5   score = consistency
    relapse_risk   churn_risk > 0.6                               score = churn_risk

Thresholds come from SignalThresholds (args/sage.yaml, section signals).

Usage:
    from sage_engine.behavior.signals import BehaviorContext, detect_signals

    context = BehaviorContext(consistency=0.3, overdue_count=7, days_inactive=0,
                              churn_risk=0.1, recent_completions=1)
    signals = detect_signals(context)   # [fatigue, overload]
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from sage_engine.behavior.metrics import FeatureSnapshot
from sage_engine.config import SignalThresholds


class SignalType(str, Enum):
    """Behavior signal, declared from highest to lowest arbitration priority."""

    RELAPSE_RISK = "relapse_risk"
    OVERLOAD = "overload"
    FATIGUE = "fatigue"
    DISENGAGEMENT = "disengagement"
    MOMENTUM = "momentum"

    @property
    def priority(self) -> int:
        """0 is the most urgent."""
        return list(SignalType).index(self)


@dataclass(frozen=True)
class Signal:
    type: SignalType
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "score": self.score, "metadata": dict(self.metadata)}


@dataclass(frozen=True)
class BehaviorContext:
    """Reduced view of a snapshot, the only input the rules look at."""

    consistency: float
    overdue_count: int
    days_inactive: int
    churn_risk: float
    recent_completions: int

    @property
    def streak_status(self) -> str:
        return "active" if self.consistency > 0.7 else "broken"

    @classmethod
    def from_snapshot(cls, snapshot: FeatureSnapshot) -> BehaviorContext:
        return cls(
            consistency=snapshot.habits_rate_7d,
            overdue_count=snapshot.overdue_tasks,
            days_inactive=snapshot.days_since_last_activity,
            churn_risk=snapshot.churn_risk,
            recent_completions=snapshot.recent_completions,
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["streak_status"] = self.streak_status
        return d


def _unit(score: float) -> float:
    return max(0.0, min(1.0, score))


def detect_signals(
    context: BehaviorContext, thresholds: SignalThresholds | None = None
) -> list[Signal]:
    """
    Run every rule against the context.

    Args:
        context: Behavior context
        thresholds: Rule thresholds (defaults when None)

    Returns:
        Signals in rule order; empty when nothing fires
    """
    t = thresholds or SignalThresholds()
    signals: list[Signal] = []

    if context.consistency < t.fatigue_consistency and context.recent_completions < t.fatigue_completions:
        signals.append(
            Signal(
                type=SignalType.FATIGUE,
                score=_unit(1 - context.consistency),
                metadata={
                    "consistency": context.consistency,
                    "completions": context.recent_completions,
                },
            )
        )

    if context.overdue_count > t.overload_overdue:
        signals.append(
            Signal(
                type=SignalType.OVERLOAD,
                score=_unit(context.overdue_count / t.overload_scale),
                metadata={"overdue_count": context.overdue_count},
            )
        )

    if context.days_inactive > t.disengagement_days:
        signals.append(
            Signal(
                type=SignalType.DISENGAGEMENT,
                score=_unit(context.days_inactive / t.disengagement_scale),
                metadata={"days_inactive": context.days_inactive},
            )
        )

    if context.consistency > t.momentum_consistency and context.recent_completions > t.momentum_completions:
        signals.append(
            Signal(
                type=SignalType.MOMENTUM,
                score=_unit(context.consistency),
                metadata={
                    "streak": context.streak_status,
                    "completions": context.recent_completions,
                },
            )
        )

    if context.churn_risk > t.relapse_churn:
        signals.append(
            Signal(
                type=SignalType.RELAPSE_RISK,
                score=_unit(context.churn_risk),
                metadata={
                    "risk_level": "critical" if context.churn_risk > t.relapse_critical else "high"
                },
            )
        )

    return signals
