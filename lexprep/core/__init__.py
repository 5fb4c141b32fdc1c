"""Core types shared by every subsystem: errors, results and status machines."""

from .errors import (
    AuthorityUnavailableError,
    ConcurrencyConflictError,
    IllegalTransitionError,
    JobExecutionError,
    JobGuardError,
    LexprepError,
    NotFoundError,
    ValidationError,
)
from .result import Result

__all__ = [
    "AuthorityUnavailableError",
    "ConcurrencyConflictError",
    "IllegalTransitionError",
    "JobExecutionError",
    "JobGuardError",
    "LexprepError",
    "NotFoundError",
    "Result",
    "ValidationError",
]
