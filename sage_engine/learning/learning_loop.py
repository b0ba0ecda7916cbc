"""
Tool: Learning Loop
Purpose: Decide, record feedback, and learn from it later, under consent

Experience lifecycle:

    record_feedback()            process_delayed_learning()
    ─────────────────            ──────────────────────────
    consent check                consent re-check
    decision lookup              experience lookup (processed -> no-op)
    snapshot "before"            snapshot "after"
    feedback + experience        linked feedback
      (reward = NULL)            reward (configured strategy)
                                 mark processed (exactly once)
                                 weight update (compare-and-swap)

Feedback is recorded right away; the reward is computed later (nightly)
so that the effect of an intervention on behavior can be measured.
Consent is read at the moment of use: withdrawing it between the two
steps leaves the experience unprocessed rather than learning from it.

Usage:
    from sage_engine.learning.learning_loop import LearningLoop, process_pending_experiences

    loop = LearningLoop("alice")
    decision = loop.decide()
    fb = loop.record_feedback(decision["decision_id"], "accepted")
    loop.process_delayed_learning(fb["experience_id"])

    # Nightly
    process_pending_experiences()

Output:
    dict results with success status and data
"""

from __future__ import annotations

import json
import random
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from typing import Any

from sage_engine import store
from sage_engine.behavior.metrics import FeatureSnapshot, get_feature_snapshot, vectorize
from sage_engine.behavior.safety import SafetyCheck, check_safety
from sage_engine.compliance.consent import ConsentSnapshot, get_consent_snapshot
from sage_engine.config import SageConfig, load_config
from sage_engine.errors import (
    ALREADY_PROCESSED,
    NotAuthenticated,
    NotFound,
    SAFETY_BLOCKED,
    SageError,
    error_result,
    skipped_result,
)
from sage_engine.learning import CONTEXT_VECTOR_LENGTH, EXPLICIT_FEEDBACK, FEEDBACK_TYPES
from sage_engine.learning import experience_store, weights_store
from sage_engine.learning.policy_engine import PolicyEngine
from sage_engine.learning.reward import (
    ImmediateRewardInput,
    ImpactRewardInput,
    RewardStrategy,
    compute_reward,
)
from sage_engine.logging_config import get_logger

logger = get_logger(__name__)

# Metrics whose before/after change feeds the immediate strategy's metric_delta.
# Sign: +1 when an increase is an improvement.
IMPACT_METRICS = {
    "momentum_index": 1,
    "task_overdue_ratio": -1,
    "habits_rate_7d": 1,
}


def _aggregate_metric_delta(before: dict[str, Any] | None, after: dict[str, Any]) -> float:
    if not before:
        return 0.0
    deltas = [
        sign * (float(after.get(key) or 0.0) - float(before.get(key) or 0.0))
        for key, sign in IMPACT_METRICS.items()
    ]
    return sum(deltas) / len(deltas)


def _seconds_between(start: str | None, end: str | None) -> float:
    if not start or not end:
        return 0.0
    return max(0.0, (store.from_db_time(end) - store.from_db_time(start)).total_seconds())


class LearningLoop:
    """Per-user orchestration of decisions, feedback and delayed learning."""

    def __init__(
        self,
        user_id: str,
        config: SageConfig | None = None,
        engine: PolicyEngine | None = None,
        reward_strategy: RewardStrategy | str | None = None,
        rng: random.Random | None = None,
    ):
        self.user_id = user_id
        self.config = config or load_config()
        self.reward_strategy = RewardStrategy(reward_strategy or self.config.reward.strategy)
        self.rng = rng
        self.engine = engine or PolicyEngine.from_config(self.config.policy, rng=rng)

    def _auth_error(self) -> dict[str, Any] | None:
        if not self.user_id:
            return error_result(NotAuthenticated("user_id is required"))
        return None

    def _consent(self) -> ConsentSnapshot:
        return get_consent_snapshot(self.user_id)

    # ─── Decide ─────────────────────────────────────────────────────────────

    def _recent_runs(self, now: datetime) -> list[dict[str, Any]]:
        """Unblocked decisions of the last day, newest first."""
        since = store.to_db_time(now - timedelta(days=1))
        with store.connect() as conn:
            rows = conn.execute(
                """
                SELECT action_type, created_at FROM sage_runs
                WHERE user_id = ? AND safety_blocked = 0 AND created_at >= ? AND created_at <= ?
                ORDER BY created_at DESC
                """,
                (self.user_id, since, store.to_db_time(now)),
            ).fetchall()
        return [dict(row) for row in rows]

    def _record_blocked(self, check: SafetyCheck, vector: list[float], now: datetime) -> str:
        decision_id = store.generate_id()
        with store.connect() as conn:
            conn.execute(
                """
                INSERT INTO sage_runs
                (id, user_id, action_type, context_vector, safety_blocked, safety_reason, created_at)
                VALUES (?, ?, 'blocked', ?, 1, ?, ?)
                """,
                (decision_id, self.user_id, json.dumps(vector), check.reason, store.to_db_time(now)),
            )
            conn.commit()
        return decision_id

    def decide(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Choose an action for the user's current state and record the decision.

        The safety gate runs before the policy and again on the chosen
        action. A blocked decision is recorded for audit but cannot receive
        feedback.

        Returns:
            dict with decision_id, the ActionDecision fields and the context vector,
            or a skipped result with reason safety_blocked
        """
        err = self._auth_error()
        if err is not None:
            return err

        now = now or store.utcnow()
        safety = self.config.safety

        try:
            snapshot = get_feature_snapshot(self.user_id, now)
            vector = vectorize(snapshot)
            recent_runs = self._recent_runs(now) if safety.enabled else []

            check = check_safety(snapshot, recent_runs, config=safety)
            if check.allowed:
                self.engine.load_weights(weights_store.load_user_weights(self.user_id))
                decision = self.engine.choose_action(vector)
                check = check_safety(snapshot, recent_runs, proposed_action=decision.action, config=safety)

            if not check.allowed:
                decision_id = self._record_blocked(check, vector, now)
                logger.info(
                    "decision_blocked",
                    user_id=self.user_id,
                    decision_id=decision_id,
                    constraints=check.constraints,
                )
                return skipped_result(
                    reason=SAFETY_BLOCKED,
                    decision_id=decision_id,
                    safety_reason=check.reason,
                    constraints=check.constraints,
                    data_quality=snapshot.data_quality,
                )

            decision_id = store.generate_id()
            with store.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sage_runs
                    (id, user_id, action_type, score, confidence, reasoning, explored,
                     context_vector, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        decision_id,
                        self.user_id,
                        decision.action,
                        decision.score,
                        decision.confidence,
                        decision.reasoning,
                        1 if decision.explored else 0,
                        json.dumps(vector),
                        store.to_db_time(now),
                    ),
                )
                conn.commit()
        except SageError as e:
            logger.error("decision_failed", user_id=self.user_id, error=str(e))
            return error_result(e)

        logger.info(
            "decision_made",
            user_id=self.user_id,
            decision_id=decision_id,
            action=decision.action,
            explored=decision.explored,
        )
        return {
            "success": True,
            "decision_id": decision_id,
            **decision.to_dict(),
            "context_vector": vector,
            "data_quality": snapshot.data_quality,
        }

    # ─── Feedback ───────────────────────────────────────────────────────────

    def _get_decision(self, decision_id: str) -> dict[str, Any]:
        with store.connect() as conn:
            row = conn.execute(
                "SELECT * FROM sage_runs WHERE id = ? AND user_id = ? AND safety_blocked = 0",
                (decision_id, self.user_id),
            ).fetchone()
        if row is None:
            raise NotFound(f"Decision not found: {decision_id}")
        return dict(row)

    def record_feedback(
        self,
        decision_id: str,
        feedback: str,
        explicit: str | None = None,
        completed: bool | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Record the user's reaction to a decision and open an experience.

        Args:
            decision_id: Decision the feedback is about
            feedback: accepted, rejected or ignored
            explicit: Optional helpful / not_helpful label
            completed: Whether the suggested action was carried out
                (defaults to feedback == "accepted")
            now: Reference time

        Returns:
            dict with feedback_id and experience_id, or a consent_denied skip.
            Nothing is written when consent is missing.
        """
        err = self._auth_error()
        if err is not None:
            return err

        if feedback not in FEEDBACK_TYPES:
            return {
                "success": False,
                "error": f"Invalid feedback. Must be one of: {list(FEEDBACK_TYPES)}",
            }
        if explicit is not None and explicit not in EXPLICIT_FEEDBACK:
            return {
                "success": False,
                "error": f"Invalid explicit feedback. Must be one of: {list(EXPLICIT_FEEDBACK)}",
            }

        now = now or store.utcnow()
        if completed is None:
            completed = feedback == "accepted"

        try:
            if not self._consent().learning_enabled:
                logger.info("feedback_skipped_no_consent", user_id=self.user_id)
                return skipped_result(decision_id=decision_id)

            decision = self._get_decision(decision_id)
            before = get_feature_snapshot(self.user_id, now)

            context_vector = (
                json.loads(decision["context_vector"]) if decision["context_vector"] else None
            )
            if not context_vector or len(context_vector) != CONTEXT_VECTOR_LENGTH:
                context_vector = vectorize(before)

            feedback_id = store.generate_id()
            created_at = store.to_db_time(now)

            with store.connect() as conn:
                with store.transaction(conn):
                    conn.execute(
                        """
                        INSERT INTO sage_feedback
                        (id, user_id, run_id, feedback_type, helpful, ignored, completed,
                         explicit, action_type, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            feedback_id,
                            self.user_id,
                            decision_id,
                            feedback,
                            1 if feedback == "accepted" else 0,
                            1 if feedback == "ignored" else 0,
                            1 if completed else 0,
                            explicit,
                            decision["action_type"],
                            created_at,
                        ),
                    )
                    experience_id = experience_store.create_experience(
                        self.user_id,
                        context_vector,
                        decision["action_type"],
                        before.to_dict(),
                        decision_id=decision_id,
                        feedback_id=feedback_id,
                        now=now,
                        conn=conn,
                    )
        except SageError as e:
            logger.error(
                "feedback_record_failed", user_id=self.user_id, decision_id=decision_id, error=str(e)
            )
            return error_result(e, decision_id=decision_id)

        logger.info(
            "feedback_recorded",
            user_id=self.user_id,
            decision_id=decision_id,
            feedback=feedback,
            experience_id=experience_id,
        )
        return {
            "success": True,
            "decision_id": decision_id,
            "feedback_id": feedback_id,
            "experience_id": experience_id,
        }

    # ─── Delayed learning ───────────────────────────────────────────────────

    def _get_feedback(self, conn: sqlite3.Connection, feedback_id: str | None) -> dict[str, Any] | None:
        """The experience's own feedback, else the user's most recent one."""
        row = None
        if feedback_id:
            row = conn.execute(
                "SELECT * FROM sage_feedback WHERE id = ? AND user_id = ?",
                (feedback_id, self.user_id),
            ).fetchone()
        if row is None:
            row = conn.execute(
                """
                SELECT * FROM sage_feedback WHERE user_id = ?
                ORDER BY created_at DESC LIMIT 1
                """,
                (self.user_id,),
            ).fetchone()
        return store.row_to_dict(row)

    def _decision_time(self, conn: sqlite3.Connection, decision_id: str | None) -> str | None:
        if not decision_id:
            return None
        row = conn.execute(
            "SELECT created_at FROM sage_runs WHERE id = ?", (decision_id,)
        ).fetchone()
        return row["created_at"] if row else None

    def compute_experience_reward(
        self,
        experience: dict[str, Any],
        feedback: dict[str, Any] | None,
        after: FeatureSnapshot,
        decided_at: str | None = None,
    ) -> float:
        """Reward for one experience under the configured strategy."""
        feedback = feedback or {}
        kind = feedback.get("feedback_type")
        accepted = kind == "accepted"
        completed = bool(feedback.get("completed"))
        after_metrics = after.to_dict()

        if self.reward_strategy is RewardStrategy.IMPACT:
            inputs = ImpactRewardInput(
                accepted=accepted,
                rejected=kind == "rejected",
                ignored=kind == "ignored",
                completed=completed,
                metrics_before=experience.get("metrics_before"),
                metrics_after=after_metrics,
                data_quality=after.data_quality,
            )
            weights = self.config.reward.impact
        else:
            inputs = ImmediateRewardInput(
                accepted=accepted,
                completed=completed,
                metric_delta=_aggregate_metric_delta(experience.get("metrics_before"), after_metrics),
                time_to_action=_seconds_between(decided_at, feedback.get("created_at")),
                explicit=feedback.get("explicit"),
            )
            weights = self.config.reward.immediate

        return compute_reward(self.reward_strategy, inputs, weights)

    def process_delayed_learning(
        self, experience_id: str, now: datetime | None = None
    ) -> dict[str, Any]:
        """
        Score one experience and update the policy weights.

        Idempotent: an experience that already has a reward is a successful
        no-op. Without consent the experience is left untouched so it can be
        retried once consent is given again.

        The reward is committed before the weights are written. If the
        weight write still fails after its retries, the result carries
        weights_applied=False and the update is not retried: that
        experience's contribution to the policy is dropped, its reward is
        kept for stats.
        """
        err = self._auth_error()
        if err is not None:
            return err

        now = now or store.utcnow()

        try:
            if not self._consent().learning_enabled:
                logger.info(
                    "learning_skipped_no_consent", user_id=self.user_id, experience_id=experience_id
                )
                return skipped_result(experience_id=experience_id)

            experience = experience_store.get_experience(experience_id, self.user_id)
            if experience is None:
                raise NotFound(f"Experience not found: {experience_id}")

            if experience["reward"] is not None:
                return {
                    "success": True,
                    ALREADY_PROCESSED: True,
                    "experience_id": experience_id,
                    "reward": experience["reward"],
                }

            after = get_feature_snapshot(self.user_id, now)
            with store.connect() as conn:
                feedback = self._get_feedback(conn, experience["feedback_id"])
                decided_at = self._decision_time(conn, experience["decision_id"])

            reward = self.compute_experience_reward(experience, feedback, after, decided_at)

            if not experience_store.mark_processed(experience_id, after.to_dict(), reward, now=now):
                logger.info("experience_already_processed", experience_id=experience_id)
                return {"success": True, ALREADY_PROCESSED: True, "experience_id": experience_id}
        except SageError as e:
            logger.error(
                "learning_failed", user_id=self.user_id, experience_id=experience_id, error=str(e)
            )
            return error_result(e, experience_id=experience_id)

        context_vector = experience["context_vector"]
        action = experience["action"]

        try:
            row = weights_store.apply_update(
                self.user_id,
                action,
                lambda w: self.engine.gradient_step(w, context_vector, reward),
                max_attempts=self.config.store.max_retries,
                retry_delay=self.config.store.retry_delay,
                init_scale=self.engine.init_scale,
                rng=self.engine.rng,
            )
        except SageError as e:
            # The experience is already marked processed, so no later batch
            # picks it up again. The reward stays in sage_experiences.
            logger.error(
                "weight_update_failed",
                user_id=self.user_id,
                experience_id=experience_id,
                action=action,
                reward=reward,
                reward_recorded=True,
                weights_applied=False,
                error=str(e),
            )
            return error_result(
                e, experience_id=experience_id, reward=reward, weights_applied=False
            )

        logger.info(
            "learning_processed",
            user_id=self.user_id,
            experience_id=experience_id,
            action=action,
            reward=reward,
            weights_version=row.version,
        )
        return {
            "success": True,
            "experience_id": experience_id,
            "action": action,
            "reward": reward,
            "weights_version": row.version,
            "weights_applied": True,
        }

    # ─── Stats ──────────────────────────────────────────────────────────────

    def get_learning_stats(self) -> dict[str, Any]:
        """Read-only aggregate of the user's learning state."""
        err = self._auth_error()
        if err is not None:
            return err

        try:
            consent = self._consent()
            stats = experience_store.get_experience_stats(self.user_id)
            self.engine.load_weights(weights_store.load_user_weights(self.user_id))
        except SageError as e:
            return error_result(e)

        return {
            "success": True,
            "user_id": self.user_id,
            **stats,
            "learning_enabled": consent.learning_enabled,
            "consent": consent.to_dict(),
            "reward_strategy": self.reward_strategy.value,
            "policy": self.engine.get_stats(),
        }


# =============================================================================
# Nightly batch
# =============================================================================


def _process_one(experience: dict[str, Any], config: SageConfig, now: datetime | None) -> dict[str, Any]:
    loop = LearningLoop(experience["user_id"], config=config)
    return loop.process_delayed_learning(experience["id"], now=now)


def process_pending_experiences(
    limit: int | None = None,
    item_timeout: float | None = None,
    config: SageConfig | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Process unprocessed experiences, oldest first.

    One failing or slow item never stops the batch: each item runs in a
    worker thread and is abandoned after item_timeout seconds. An abandoned
    item is still processed at most once, since marking is conditional.
    After the pass, processed experiences beyond keep_last_experiences are
    pruned for every user touched.

    Returns:
        dict with counts per outcome
    """
    config = config or load_config()
    limit = limit or config.learning.batch_size
    item_timeout = item_timeout or config.learning.item_timeout_seconds

    counts = {
        "processed": 0,
        "skipped": 0,
        "already_processed": 0,
        "failed": 0,
        "timed_out": 0,
    }

    try:
        pending = experience_store.list_unprocessed(limit=limit)
    except SageError as e:
        return error_result(e, **counts)

    executor = ThreadPoolExecutor(max_workers=config.learning.max_workers)
    try:
        futures = [(exp, executor.submit(_process_one, exp, config, now)) for exp in pending]

        for exp, future in futures:
            try:
                result = future.result(timeout=item_timeout)
            except FutureTimeout:
                counts["timed_out"] += 1
                logger.warning("experience_timed_out", experience_id=exp["id"], timeout=item_timeout)
                continue
            except Exception as e:
                counts["failed"] += 1
                logger.warning("experience_failed", experience_id=exp["id"], error=str(e))
                continue

            if result.get("skipped"):
                counts["skipped"] += 1
            elif result.get(ALREADY_PROCESSED):
                counts["already_processed"] += 1
            elif result.get("success"):
                counts["processed"] += 1
            else:
                counts["failed"] += 1
                logger.warning(
                    "experience_failed", experience_id=exp["id"], error=result.get("error")
                )
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    pruned = 0
    for user_id in sorted({exp["user_id"] for exp in pending}):
        try:
            pruned += experience_store.prune_old_experiences(
                user_id, keep_last=config.learning.keep_last_experiences
            )
        except SageError as e:
            logger.warning("prune_failed", user_id=user_id, error=str(e))

    logger.info("nightly_learning_done", total=len(pending), pruned=pruned, **counts)
    return {"success": True, "total": len(pending), "pruned": pruned, **counts}
