"""Behavior - Observe, detect, decide whether to step in

Philosophy:
    Most of the time the right intervention is none.
    Signals are observations, not judgments. An intervention is only
    surfaced when a rule fires, and never twice for the same reason
    in the same day.

Components:
    metrics.py: Build a normalized FeatureSnapshot per user
        - Five source categories: habits, tasks, journal, finance, streak
        - Missing sources fall back to neutral values
        - data_quality = fraction of sources present
        - vectorize() turns a snapshot into the 18-float context vector

    signals.py: Stateless rules over a small behavior context
        - fatigue, overload, disengagement, momentum, relapse_risk
        - Rules co-fire independently, scores in [0, 1]

    arbiter.py: Resolve signals to at most one intervention
        - Fixed priority, not highest score
        - 24h dedup per (user, intervention type), enforced by the store
        - Signals are always kept for audit

    safety.py: Gate in front of the policy
        - quiet hours, daily limit, minimum data quality, nudge streak
        - Failing any rule blocks the decision, recorded with its reasons

Data flow:
    get_feature_snapshot -> BehaviorContext -> detect_signals -> arbitrate
"""

# Signal types, highest priority first
SIGNAL_TYPES = (
    "relapse_risk",
    "overload",
    "fatigue",
    "disengagement",
    "momentum",
)

# Intervention type produced by each signal
INTERVENTION_TYPES = (
    "warning",
    "restructure",
    "motivation",
    "challenge",
    "praise",
)

INTERVENTION_STATUSES = ("pending", "applied", "ignored", "rejected")
TERMINAL_STATUSES = ("applied", "ignored", "rejected")

# Source categories that feed data_quality
SOURCE_CATEGORIES = ("habits", "tasks", "journal", "finance", "streak")

__all__ = [
    "INTERVENTION_STATUSES",
    "INTERVENTION_TYPES",
    "SIGNAL_TYPES",
    "SOURCE_CATEGORIES",
    "TERMINAL_STATUSES",
]
