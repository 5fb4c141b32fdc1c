"""
Exception hierarchy for lexprep.

Every error carries an HTTP status hint so the API layer can map it without
knowing which subsystem raised it.
"""

from __future__ import annotations


class LexprepError(Exception):
    """Base class for all lexprep errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LexprepError):
    """Input rejected before any state was touched."""

    status_code = 422


class NotFoundError(LexprepError):
    """Referenced record does not exist."""

    status_code = 404


class AuthorityUnavailableError(LexprepError):
    """External authority source could not be reached or timed out."""

    status_code = 503


class JobExecutionError(LexprepError):
    """
    A job handler failed.

    transient=True lets the queue schedule another attempt; transient=False
    fails the job immediately regardless of remaining attempts.
    """

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class ConcurrencyConflictError(LexprepError):
    """Another writer changed the record between read and conditional update."""

    status_code = 409


class JobGuardError(LexprepError):
    """Admin action not permitted from the job's current status."""

    status_code = 400


class IllegalTransitionError(LexprepError):
    """Status change not allowed by the entity's state machine."""

    status_code = 409
