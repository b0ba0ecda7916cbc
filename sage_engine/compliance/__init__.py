"""Compliance - Nothing learns without a yes

Philosophy:
    Consent is checked at the moment of use, not remembered.
    A missing answer is a no. Withdrawing consent stops learning
    immediately, including work that was already queued.

Components:
    consent.py: Per-purpose consent records with an append-only audit trail
        - ConsentSnapshot: the four purposes at one point in time
        - Learning runs only with ai_profiling AND policy_learning

Database: data/sage.db
    - user_consents: Current state per (user, purpose)
    - consent_audit: Every grant and withdrawal
"""

CONSENT_PURPOSES = (
    "ai_profiling",
    "behavioral_tracking",
    "policy_learning",
    "data_export",
)

# Both must be granted for feedback recording and policy updates
LEARNING_PURPOSES = ("ai_profiling", "policy_learning")

CONSENT_VERSION = "1.0"

__all__ = ["CONSENT_PURPOSES", "CONSENT_VERSION", "LEARNING_PURPOSES"]
