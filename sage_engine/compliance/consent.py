"""
Tool: Consent
Purpose: Read and change per-purpose consent, with an audit trail

Usage:
    from sage_engine.compliance.consent import get_consent_snapshot, grant_consent

    grant_consent("alice", "ai_profiling")
    grant_consent("alice", "policy_learning")
    get_consent_snapshot("alice").learning_enabled   # True

Output:
    grant/withdraw return dict results with success status
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from sage_engine import store
from sage_engine.compliance import CONSENT_PURPOSES, CONSENT_VERSION, LEARNING_PURPOSES
from sage_engine.errors import NotAuthenticated, SageError, error_result
from sage_engine.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConsentSnapshot:
    ai_profiling: bool = False
    behavioral_tracking: bool = False
    policy_learning: bool = False
    data_export: bool = False

    @property
    def learning_enabled(self) -> bool:
        return all(getattr(self, purpose) for purpose in LEARNING_PURPOSES)

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


def get_consent_snapshot(user_id: str) -> ConsentSnapshot:
    """
    Current consent for every purpose. Purposes without a record are False.

    Raises:
        StoreFailure: The consent table could not be read
    """
    with store.connect() as conn:
        rows = conn.execute(
            "SELECT purpose, granted FROM user_consents WHERE user_id = ?",
            (user_id,),
        ).fetchall()

    granted = {row["purpose"]: bool(row["granted"]) for row in rows}
    return ConsentSnapshot(**{p: granted.get(p, False) for p in CONSENT_PURPOSES})


def is_learning_enabled(snapshot: ConsentSnapshot) -> bool:
    return snapshot.learning_enabled


def _set_consent(
    user_id: str, purpose: str, granted: bool, now: datetime | None = None
) -> dict[str, Any]:
    if not user_id:
        return error_result(NotAuthenticated("user_id is required"))
    if purpose not in CONSENT_PURPOSES:
        return {
            "success": False,
            "error": f"Invalid purpose. Must be one of: {list(CONSENT_PURPOSES)}",
        }

    timestamp = store.to_db_time(now or store.utcnow())

    try:
        with store.connect() as conn:
            with store.transaction(conn):
                if granted:
                    conn.execute(
                        """
                        INSERT INTO user_consents
                        (user_id, purpose, granted, granted_at, withdrawn_at, consent_version)
                        VALUES (?, ?, 1, ?, NULL, ?)
                        ON CONFLICT(user_id, purpose) DO UPDATE SET
                            granted = 1,
                            granted_at = excluded.granted_at,
                            withdrawn_at = NULL,
                            consent_version = excluded.consent_version
                        """,
                        (user_id, purpose, timestamp, CONSENT_VERSION),
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO user_consents
                        (user_id, purpose, granted, withdrawn_at, consent_version)
                        VALUES (?, ?, 0, ?, ?)
                        ON CONFLICT(user_id, purpose) DO UPDATE SET
                            granted = 0,
                            withdrawn_at = excluded.withdrawn_at
                        """,
                        (user_id, purpose, timestamp, CONSENT_VERSION),
                    )
                conn.execute(
                    """
                    INSERT INTO consent_audit (user_id, purpose, granted, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (user_id, purpose, 1 if granted else 0, timestamp),
                )
    except SageError as e:
        return error_result(e)

    logger.info(
        "consent_granted" if granted else "consent_withdrawn",
        user_id=user_id,
        purpose=purpose,
    )
    return {"success": True, "user_id": user_id, "purpose": purpose, "granted": granted}


def grant_consent(user_id: str, purpose: str, now: datetime | None = None) -> dict[str, Any]:
    return _set_consent(user_id, purpose, True, now)


def withdraw_consent(user_id: str, purpose: str, now: datetime | None = None) -> dict[str, Any]:
    """Withdraw consent. Takes effect on the next learning operation."""
    return _set_consent(user_id, purpose, False, now)


def get_consent_history(user_id: str, limit: int = 50) -> list[dict[str, Any]]:
    """Audit trail for a user, newest first."""
    with store.connect() as conn:
        rows = conn.execute(
            """
            SELECT purpose, granted, created_at FROM consent_audit
            WHERE user_id = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()
    return [
        {"purpose": r["purpose"], "granted": bool(r["granted"]), "created_at": r["created_at"]}
        for r in rows
    ]
