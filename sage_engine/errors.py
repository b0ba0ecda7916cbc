"""
Error taxonomy for the decision engine.

Only hard failures are exceptions. Consent denial and already-processed
experiences are ordinary outcomes and come back as result dicts:

    {"success": False, "skipped": True, "reason": "consent_denied"}
    {"success": True, "already_processed": True}

Public operations catch SageError subclasses and convert them with
error_result(), so callers see {"success": False, "error": ..., "error_type": ...}.
"""

from __future__ import annotations

from typing import Any


class SageError(Exception):
    """Base class for engine errors."""


class NotAuthenticated(SageError):
    """No usable caller identity was supplied."""


class NotFound(SageError):
    """A referenced decision, experience or intervention does not exist."""


class StoreFailure(SageError):
    """I/O error against the behavioral data store."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class WeightConflict(StoreFailure):
    """A weight row changed between read and compare-and-swap write."""

    def __init__(self, message: str):
        super().__init__(message, transient=True)


# Outcome markers, never raised past the public API
CONSENT_DENIED = "consent_denied"
ALREADY_PROCESSED = "already_processed"
SAFETY_BLOCKED = "safety_blocked"


def error_result(exc: SageError, **extra: Any) -> dict[str, Any]:
    """Convert an engine error into the standard failure result."""
    result = {
        "success": False,
        "error": str(exc),
        "error_type": type(exc).__name__,
    }
    result.update(extra)
    return result


def skipped_result(reason: str = CONSENT_DENIED, **extra: Any) -> dict[str, Any]:
    """Distinguishable no-op result for expected, non-error paths."""
    result = {"success": False, "skipped": True, "reason": reason}
    result.update(extra)
    return result


__all__ = [
    "ALREADY_PROCESSED",
    "CONSENT_DENIED",
    "NotAuthenticated",
    "NotFound",
    "SAFETY_BLOCKED",
    "SageError",
    "StoreFailure",
    "WeightConflict",
    "error_result",
    "skipped_result",
]
