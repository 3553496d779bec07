"""
Error types for the conflict lifecycle.

Raised by the engine and repository; the API maps them to HTTP responses.
Mediation failures are not in this list as exceptions the caller sees: the
mediator logs them as degraded and returns fallback text instead.
"""

from typing import Optional


class SquashieError(Exception):
    """Base class for service errors."""

    code = "error"
    retryable = False

    def __init__(self, message: str, rule: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.rule = rule


class ValidationError(SquashieError):
    """Action does not fit the conflict's phase or the acting party."""

    code = "validation_error"


class InvariantViolation(SquashieError):
    """Attempt to mutate a conflict that can no longer change."""

    code = "invariant_violation"


class ConflictNotFound(SquashieError):
    code = "not_found"

    def __init__(self, conflict_id: str):
        super().__init__(f"Conflict not found: {conflict_id}", rule="conflict_exists")
        self.conflict_id = conflict_id


class PersistenceConflict(SquashieError):
    """The record changed between read and conditional write."""

    code = "persistence_conflict"
    retryable = True


class PersistenceFailure(SquashieError):
    """Storage is unreachable or the write failed; nothing was applied."""

    code = "persistence_failure"
    retryable = True


class ExternalServiceDegraded(SquashieError):
    """Mediation/translation call failed; used internally to trigger fallback."""

    code = "external_service_degraded"


class BusBusy(SquashieError):
    """Another subscriber is already draining this notification channel."""

    code = "bus_busy"
    retryable = True
