"""Learning - Choose an action, watch what happens, adjust

Philosophy:
    Learn from behavior, not configuration forms.
    Nothing is learned without consent. A decision that was never
    learned from costs nothing; a decision learned from without
    permission costs trust.

Core Principle:
    Every feedback becomes an experience. Experiences are scored later,
    once the effect on behavior can be measured, and each one is scored
    exactly once.

Components:
    policy_engine.py: Epsilon-greedy linear contextual bandit
        - One weight vector per action, score = dot(weights, context)
        - Exploration with probability epsilon
        - Online update: w += lr * reward * context

    reward.py: Two reward strategies, chosen explicitly
        - impact: feedback plus measured metric deltas, scaled by data quality
        - immediate: feedback, time to action, explicit helpfulness

    experience_store.py: Experience lifecycle (created -> processed, once)
    weights_store.py: Per-user weight rows with compare-and-swap writes

    learning_loop.py: Orchestration under consent gating
        - record_feedback: snapshot "before", experience with reward = NULL
        - process_delayed_learning: snapshot "after", reward, weight update
        - process_pending_experiences: nightly batch

Database: data/sage.db
    - sage_runs: Decisions made by the policy, and safety-blocked attempts
    - sage_feedback: User reactions to decisions
    - sage_experiences: (context, action, before, after, reward)
    - sage_policy_weights: Per-user, per-action weight vectors

Configuration: args/sage.yaml
    - policy: learning rate, epsilon, init scale
    - reward: strategy and weights
    - learning: nightly batch size and deadlines
"""

from sage_engine.behavior.metrics import CONTEXT_VECTOR_LENGTH, VECTOR_VERSION

# Closed action set; order breaks score ties
ACTIONS = (
    "nudge",
    "reframe",
    "challenge",
    "celebrate",
    "protect",
    "observe",
    "suggest_task",
    "suggest_break",
    "weekly_review",
    "silent",
)

# Names stored by older releases
LEGACY_ACTION_MAPPING = {
    "create_task": "suggest_task",
    "reduce_load": "protect",
    "suggest_reflection": "reframe",
    "schedule_break": "suggest_break",
}

FEEDBACK_TYPES = ("accepted", "rejected", "ignored")
EXPLICIT_FEEDBACK = ("helpful", "not_helpful")

# Reward is always clamped to this range
REWARD_MIN = -5.0
REWARD_MAX = 5.0


def normalize_action(name: str) -> str:
    """Resolve legacy action names; unknown names raise ValueError."""
    action = LEGACY_ACTION_MAPPING.get(name, name)
    if action not in ACTIONS:
        raise ValueError(f"Unknown action: {name}")
    return action


__all__ = [
    "ACTIONS",
    "CONTEXT_VECTOR_LENGTH",
    "EXPLICIT_FEEDBACK",
    "FEEDBACK_TYPES",
    "LEGACY_ACTION_MAPPING",
    "REWARD_MAX",
    "REWARD_MIN",
    "VECTOR_VERSION",
    "normalize_action",
]
