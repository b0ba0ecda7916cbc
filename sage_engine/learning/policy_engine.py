"""
Tool: Policy Engine
Purpose: Epsilon-greedy linear contextual bandit over the closed action set

One weight vector per action. For a context vector x the score of action a
is dot(w[a], x). With probability epsilon a uniformly random action is
returned (exploration); otherwise the highest-scoring action, ties broken
by ACTIONS order.

Learning is a single online step per experience:

    w[a][i] += learning_rate * reward * x[i]

Only the rewarded action's vector moves.

Randomness (weight initialization and exploration) comes from one
injectable random.Random, so a seeded engine fed the same calls produces
the same decisions and weights.

Usage:
    from sage_engine.learning.policy_engine import PolicyEngine

    engine = PolicyEngine(seed=42)
    decision = engine.choose_action(vector)
    engine.update_weights(vector, decision.action, reward=2.0)
    blob = engine.export_weights()

Dependencies:
    - math, random (stdlib)
"""

from __future__ import annotations

import copy
import json
import math
import random
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from typing import Any

from sage_engine.behavior.metrics import FEATURE_NAMES, VECTOR_VERSION
from sage_engine.config import PolicyConfig
from sage_engine.learning import ACTIONS, CONTEXT_VECTOR_LENGTH, normalize_action

EXPLORATION_REASONING = "exploration"
REASONING_FACTORS = 3


@dataclass
class ActionDecision:
    action: str
    score: float
    confidence: float
    reasoning: str
    explored: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PolicyEngine:
    """Linear contextual bandit with lazily initialized weights."""

    def __init__(
        self,
        learning_rate: float = 0.05,
        epsilon: float = 0.1,
        vector_size: int = CONTEXT_VECTOR_LENGTH,
        rng: random.Random | None = None,
        seed: int | None = None,
        init_scale: float = 0.1,
        confidence_scale: float = 1.0,
    ):
        if not 0.0 <= epsilon <= 1.0:
            raise ValueError(f"epsilon must be in [0, 1], got {epsilon}")
        if vector_size < 1:
            raise ValueError(f"vector_size must be positive, got {vector_size}")

        self.learning_rate = learning_rate
        self.epsilon = epsilon
        self.vector_size = vector_size
        self.init_scale = init_scale
        self.confidence_scale = confidence_scale
        self.rng = rng if rng is not None else random.Random(seed)
        self._weights: dict[str, list[float]] = {}

    @classmethod
    def from_config(cls, config: PolicyConfig, rng: random.Random | None = None) -> PolicyEngine:
        return cls(
            learning_rate=config.learning_rate,
            epsilon=config.epsilon,
            rng=rng,
            seed=config.seed,
            init_scale=config.init_scale,
            confidence_scale=config.confidence_scale,
        )

    # ─── Weights ────────────────────────────────────────────────────────────

    def _init_vector(self) -> list[float]:
        half = self.init_scale / 2
        return [self.rng.uniform(-half, half) for _ in range(self.vector_size)]

    def _weights_for(self, action: str) -> list[float]:
        w = self._weights.get(action)
        if w is None:
            w = self._init_vector()
            self._weights[action] = w
        return w

    def _ensure_all(self) -> None:
        for action in ACTIONS:
            self._weights_for(action)

    def _validate_context(self, context: Iterable[float]) -> list[float]:
        vector = [float(x) for x in context]
        if len(vector) != self.vector_size:
            raise ValueError(
                f"Context vector length {len(vector)} does not match {self.vector_size}"
            )
        return vector

    def _validate_weights(self, weights: Mapping[str, Any]) -> dict[str, list[float]]:
        if not isinstance(weights, Mapping):
            raise ValueError("Weights must be a mapping of action to vector")

        validated: dict[str, list[float]] = {}
        for name, vector in weights.items():
            action = normalize_action(name)
            if not isinstance(vector, (list, tuple)):
                raise ValueError(f"Weights for {name} must be a list")
            if len(vector) != self.vector_size:
                raise ValueError(
                    f"Weights for {name} have length {len(vector)}, expected {self.vector_size}"
                )
            try:
                validated[action] = [float(x) for x in vector]
            except (TypeError, ValueError) as e:
                raise ValueError(f"Weights for {name} must be numeric") from e
        return validated

    def get_weights(self) -> dict[str, list[float]]:
        """Deep copy of every action's weights (initializing missing ones)."""
        self._ensure_all()
        return copy.deepcopy(self._weights)

    def load_weights(self, weights: Mapping[str, Any]) -> None:
        """Replace all weights. Actions missing from the mapping are re-initialized lazily."""
        self._weights = self._validate_weights(weights)

    def export_weights(self) -> str:
        self._ensure_all()
        return json.dumps(
            {
                "version": VECTOR_VERSION,
                "vector_size": self.vector_size,
                "weights": self._weights,
            }
        )

    def import_weights(self, blob: str) -> None:
        """
        Load weights from export_weights() output.

        A bare {action: vector} mapping is accepted too. Nothing changes
        unless the whole blob validates.

        Raises:
            ValueError: Malformed JSON, unknown action or wrong vector length
        """
        try:
            data = json.loads(blob)
        except (TypeError, json.JSONDecodeError) as e:
            raise ValueError(f"Invalid weights blob: {e}") from e

        if not isinstance(data, dict):
            raise ValueError("Weights blob must be a JSON object")

        if "weights" in data:
            size = data.get("vector_size", self.vector_size)
            if size != self.vector_size:
                raise ValueError(f"Blob vector_size {size} does not match {self.vector_size}")
            data = data["weights"]

        self._weights = self._validate_weights(data)

    # ─── Scoring ────────────────────────────────────────────────────────────

    @staticmethod
    def _dot(a: list[float], b: list[float]) -> float:
        return sum(x * y for x, y in zip(a, b))

    def _scores(self, vector: list[float]) -> dict[str, float]:
        return {action: self._dot(self._weights_for(action), vector) for action in ACTIONS}

    def _confidence(self, margin: float) -> float:
        return math.tanh(max(margin, 0.0) / self.confidence_scale)

    @staticmethod
    def _feature_name(index: int) -> str:
        return FEATURE_NAMES[index] if index < len(FEATURE_NAMES) else f"feature_{index}"

    def _reasoning(self, vector: list[float], action: str) -> str:
        w = self._weights_for(action)
        contributions = [
            (self._feature_name(i), vector[i] * w[i]) for i in range(self.vector_size)
        ]
        contributions.sort(key=lambda item: abs(item[1]), reverse=True)
        return ", ".join(
            f"{name}: {value:+.2f}" for name, value in contributions[:REASONING_FACTORS]
        )

    def get_all_scores(self, context: Iterable[float]) -> dict[str, float]:
        vector = self._validate_context(context)
        return self._scores(vector)

    def get_top_actions(self, context: Iterable[float], n: int = 3) -> list[ActionDecision]:
        """Best n actions by score, descending."""
        vector = self._validate_context(context)
        scores = self._scores(vector)
        ranked = sorted(ACTIONS, key=lambda a: scores[a], reverse=True)

        decisions = []
        for action in ranked[:n]:
            best_other = max(s for a, s in scores.items() if a != action)
            decisions.append(
                ActionDecision(
                    action=action,
                    score=scores[action],
                    confidence=self._confidence(scores[action] - best_other),
                    reasoning=self._reasoning(vector, action),
                )
            )
        return decisions

    def choose_action(self, context: Iterable[float]) -> ActionDecision:
        """
        Pick an action for a context vector.

        Raises:
            ValueError: Context of the wrong length
        """
        vector = self._validate_context(context)

        if self.rng.random() < self.epsilon:
            return ActionDecision(
                action=self.rng.choice(ACTIONS),
                score=0.0,
                confidence=0.0,
                reasoning=EXPLORATION_REASONING,
                explored=True,
            )

        scores = self._scores(vector)
        # sorted() is stable, so equal scores keep ACTIONS order
        ranked = sorted(ACTIONS, key=lambda a: scores[a], reverse=True)
        best, runner_up = ranked[0], ranked[1]

        return ActionDecision(
            action=best,
            score=scores[best],
            confidence=self._confidence(scores[best] - scores[runner_up]),
            reasoning=self._reasoning(vector, best),
        )

    # ─── Learning ───────────────────────────────────────────────────────────

    def gradient_step(
        self, weights: list[float], context: Iterable[float], reward: float
    ) -> list[float]:
        """New vector for w + learning_rate * reward * context. Inputs are not modified."""
        vector = self._validate_context(context)
        if len(weights) != self.vector_size:
            raise ValueError(f"Weights length {len(weights)} does not match {self.vector_size}")
        step = self.learning_rate * float(reward)
        return [w + step * x for w, x in zip(weights, vector)]

    def update_weights(self, context: Iterable[float], action: str, reward: float) -> None:
        """One gradient step on the given action only."""
        action = normalize_action(action)
        self._weights[action] = self.gradient_step(self._weights_for(action), context, reward)

    def batch_update(self, experiences: Iterable[Any]) -> int:
        """
        Apply update_weights for each experience, in order.

        Experiences may be mappings or objects exposing context_vector
        (or context), action (or action_type) and reward.

        Returns:
            Number of updates applied
        """
        count = 0
        for exp in experiences:
            context, action, reward = _experience_fields(exp)
            self.update_weights(context, action, reward)
            count += 1
        return count

    def get_stats(self) -> dict[str, Any]:
        all_weights = [x for w in self._weights.values() for x in w]
        if not all_weights:
            return {
                "total_actions": len(ACTIONS),
                "initialized_actions": 0,
                "average_weight": 0.0,
                "average_weight_magnitude": 0.0,
                "weight_range": {"min": 0.0, "max": 0.0},
            }

        return {
            "total_actions": len(ACTIONS),
            "initialized_actions": len(self._weights),
            "average_weight": sum(all_weights) / len(all_weights),
            "average_weight_magnitude": sum(abs(x) for x in all_weights) / len(all_weights),
            "weight_range": {"min": min(all_weights), "max": max(all_weights)},
        }


def _experience_fields(exp: Any) -> tuple[list[float], str, float]:
    if isinstance(exp, Mapping):
        context = exp.get("context_vector", exp.get("context"))
        action = exp.get("action", exp.get("action_type"))
        reward = exp.get("reward")
    else:
        context = getattr(exp, "context_vector", None) or getattr(exp, "context", None)
        action = getattr(exp, "action", None) or getattr(exp, "action_type", None)
        reward = getattr(exp, "reward", None)

    if context is None or action is None or reward is None:
        raise ValueError("Experience needs a context vector, an action and a reward")
    return context, action, reward
