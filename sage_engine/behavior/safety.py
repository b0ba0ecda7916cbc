"""
Tool: Safety Gate
Purpose: Decide whether the engine may act for a user right now

Checked by LearningLoop.decide() before and after the policy picks an
action. Every rule that fails adds a reason and a constraint tag:

    quiet_hours       hour >= quiet_hours_start or hour < quiet_hours_end (UTC)
    daily_limit       decisions already made today >= max_actions_per_day
    data_quality      snapshot.data_quality < min_data_quality
    anti_harassment   proposed nudge after max_consecutive_nudges nudges in a row

Recent runs are the user's earlier unblocked decisions, newest first, as
dicts with at least action_type and created_at. Blocked runs never count
towards the daily limit or the nudge streak.

Usage:
    from sage_engine.behavior.safety import check_safety

    check = check_safety(snapshot, recent_runs)
    if check.allowed:
        check = check_safety(snapshot, recent_runs, proposed_action="nudge")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from sage_engine import store
from sage_engine.behavior.metrics import FeatureSnapshot
from sage_engine.config import SafetyConfig


@dataclass
class SafetyCheck:
    allowed: bool
    reasons: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)

    @property
    def reason(self) -> Optional[str]:
        return "; ".join(self.reasons) if self.reasons else None

    def to_dict(self) -> dict[str, Any]:
        return {"allowed": self.allowed, "reason": self.reason, "constraints": list(self.constraints)}


def is_quiet_hour(hour: int, config: SafetyConfig) -> bool:
    """Equal start and end means no quiet window."""
    start, end = config.quiet_hours_start, config.quiet_hours_end
    if start == end:
        return False
    if start > end:
        return hour >= start or hour < end
    return start <= hour < end


def _runs_today(snapshot: FeatureSnapshot, recent_runs: list[dict[str, Any]]) -> int:
    today = snapshot.timestamp.date()
    return sum(1 for run in recent_runs if store.from_db_time(run["created_at"]).date() == today)


def _nudge_streak(recent_runs: list[dict[str, Any]]) -> int:
    streak = 0
    for run in recent_runs:
        if run["action_type"] != "nudge":
            break
        streak += 1
    return streak


def check_safety(
    snapshot: FeatureSnapshot,
    recent_runs: list[dict[str, Any]],
    proposed_action: Optional[str] = None,
    config: Optional[SafetyConfig] = None,
) -> SafetyCheck:
    """
    Run every safety rule and collect the ones that fail.

    Args:
        snapshot: Current features, supplies hour_of_day, timestamp and data_quality
        recent_runs: Earlier unblocked decisions, newest first
        proposed_action: Action the policy wants to take, None for the pre-check

    Returns:
        SafetyCheck, allowed only when no rule failed
    """
    config = config or SafetyConfig()
    check = SafetyCheck(allowed=True)

    if not config.enabled:
        return check

    if is_quiet_hour(snapshot.hour_of_day, config):
        check.reasons.append(
            f"Quiet hours ({config.quiet_hours_start}h-{config.quiet_hours_end}h UTC)"
        )
        check.constraints.append("quiet_hours")

    made_today = _runs_today(snapshot, recent_runs)
    if made_today >= config.max_actions_per_day:
        check.reasons.append(f"Daily limit reached ({made_today}/{config.max_actions_per_day})")
        check.constraints.append("daily_limit")

    if snapshot.data_quality < config.min_data_quality:
        check.reasons.append(
            f"Data quality too low ({snapshot.data_quality:.2f} < {config.min_data_quality:.2f})"
        )
        check.constraints.append("data_quality")

    if proposed_action == "nudge" and _nudge_streak(recent_runs) >= config.max_consecutive_nudges:
        check.reasons.append(f"Too many consecutive nudges (max {config.max_consecutive_nudges})")
        check.constraints.append("anti_harassment")

    check.allowed = not check.constraints
    return check


__all__ = ["SafetyCheck", "check_safety", "is_quiet_hour"]
