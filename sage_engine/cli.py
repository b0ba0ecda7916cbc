#!/usr/bin/env python3
"""
Sage Command Line Interface

Main entry point for the `sage` command. Every command prints a JSON
result and exits non-zero when the result is not successful.

Usage:
    sage detect --user alice                       # Signals + intervention
    sage decide --user alice                       # Choose and record an action
    sage feedback --user alice --decision ID --type accepted [--explicit helpful]
    sage process --user alice --experience ID      # Delayed learning for one experience
    sage nightly [--limit 200]                     # Process all pending experiences
    sage stats --user alice                        # Learning stats
    sage interventions --user alice [--status pending]
    sage interventions --user alice --resolve ID --status applied
    sage consent --user alice --grant ai_profiling policy_learning
    sage consent --user alice                      # Show consent
    sage --version
"""

import argparse
import json
import sys

from sage_engine import __version__
from sage_engine.logging_config import setup_logging


def _emit(result) -> int:
    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("success") else 1


def cmd_detect(args):
    """Run a detection pass and arbitrate an intervention."""
    from sage_engine.behavior.arbiter import run_detection

    return _emit(run_detection(args.user))


def cmd_decide(args):
    """Choose an action for the user and record the decision."""
    from sage_engine.learning.learning_loop import LearningLoop

    return _emit(LearningLoop(args.user, reward_strategy=args.strategy).decide())


def cmd_feedback(args):
    """Record feedback on a decision."""
    from sage_engine.learning.learning_loop import LearningLoop

    loop = LearningLoop(args.user, reward_strategy=args.strategy)
    return _emit(
        loop.record_feedback(
            args.decision,
            args.type,
            explicit=args.explicit,
            completed=args.completed,
        )
    )


def cmd_process(args):
    """Delayed learning for one experience."""
    from sage_engine.learning.learning_loop import LearningLoop

    loop = LearningLoop(args.user, reward_strategy=args.strategy)
    return _emit(loop.process_delayed_learning(args.experience))


def cmd_nightly(args):
    """Process pending experiences for every user."""
    from sage_engine.learning.learning_loop import process_pending_experiences

    return _emit(process_pending_experiences(limit=args.limit, item_timeout=args.timeout))


def cmd_stats(args):
    from sage_engine.learning.learning_loop import LearningLoop

    return _emit(LearningLoop(args.user, reward_strategy=args.strategy).get_learning_stats())


def cmd_interventions(args):
    """List interventions, or resolve one with --resolve."""
    from sage_engine.behavior.arbiter import list_interventions, update_intervention_status

    if args.resolve:
        if not args.status:
            return _emit({"success": False, "error": "--status is required with --resolve"})
        return _emit(update_intervention_status(args.resolve, args.user, args.status))

    return _emit(list_interventions(args.user, status=args.status, limit=args.limit))


def cmd_consent(args):
    """Show, grant or withdraw consent."""
    from sage_engine.compliance.consent import (
        get_consent_snapshot,
        grant_consent,
        withdraw_consent,
    )
    from sage_engine.errors import SageError, error_result

    results = []
    for purpose in args.grant or []:
        results.append(grant_consent(args.user, purpose))
    for purpose in args.withdraw or []:
        results.append(withdraw_consent(args.user, purpose))

    try:
        snapshot = get_consent_snapshot(args.user)
    except SageError as e:
        return _emit(error_result(e))

    return _emit(
        {
            "success": all(r["success"] for r in results),
            "changes": results,
            "consent": snapshot.to_dict(),
            "learning_enabled": snapshot.learning_enabled,
        }
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sage",
        description="Sage - behavioral decision engine",
    )
    parser.add_argument(
        "--version", "-V", action="store_true", help="Show version and exit"
    )
    parser.add_argument("--log-level", default=None, help="Override SAGE_LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def user_parser(name, help_text, func):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("--user", required=True, help="User ID")
        p.set_defaults(func=func)
        return p

    user_parser("detect", "Detect signals and arbitrate an intervention", cmd_detect)

    strategy_help = "Reward strategy (default: from args/sage.yaml)"

    decide_parser = user_parser("decide", "Choose an action for the user", cmd_decide)
    decide_parser.add_argument("--strategy", choices=["impact", "immediate"], help=strategy_help)

    feedback_parser = user_parser("feedback", "Record feedback on a decision", cmd_feedback)
    feedback_parser.add_argument("--decision", required=True, help="Decision ID")
    feedback_parser.add_argument(
        "--type", required=True, choices=["accepted", "rejected", "ignored"], help="Feedback kind"
    )
    feedback_parser.add_argument(
        "--explicit", choices=["helpful", "not_helpful"], help="Explicit feedback label"
    )
    feedback_parser.add_argument(
        "--completed",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Whether the suggestion was carried out",
    )
    feedback_parser.add_argument("--strategy", choices=["impact", "immediate"], help=strategy_help)

    process_parser = user_parser("process", "Delayed learning for one experience", cmd_process)
    process_parser.add_argument("--experience", required=True, help="Experience ID")
    process_parser.add_argument("--strategy", choices=["impact", "immediate"], help=strategy_help)

    nightly_parser = subparsers.add_parser("nightly", help="Process all pending experiences")
    nightly_parser.add_argument("--limit", type=int, default=None, help="Max experiences")
    nightly_parser.add_argument(
        "--timeout", type=float, default=None, help="Per-experience deadline in seconds"
    )
    nightly_parser.set_defaults(func=cmd_nightly)

    stats_parser = user_parser("stats", "Learning statistics", cmd_stats)
    stats_parser.add_argument("--strategy", choices=["impact", "immediate"], help=strategy_help)

    interventions_parser = user_parser(
        "interventions", "List or resolve interventions", cmd_interventions
    )
    interventions_parser.add_argument(
        "--status", choices=["pending", "applied", "ignored", "rejected"], help="Status filter / new status"
    )
    interventions_parser.add_argument("--resolve", metavar="ID", help="Intervention to resolve")
    interventions_parser.add_argument("--limit", type=int, default=20)

    consent_parser = user_parser("consent", "Show or change consent", cmd_consent)
    consent_parser.add_argument("--grant", nargs="+", metavar="PURPOSE")
    consent_parser.add_argument("--withdraw", nargs="+", metavar="PURPOSE")

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"sage {__version__}")
        return 0

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(level=args.log_level)

    from sage_engine import store
    from sage_engine.config import load_config

    store_config = load_config().store
    store.configure(
        busy_timeout_ms=store_config.busy_timeout_ms,
        max_retries=store_config.max_retries,
        retry_delay=store_config.retry_delay,
    )
    return args.func(args) or 0


if __name__ == "__main__":
    sys.exit(main())
