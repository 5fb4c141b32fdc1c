"""API routers for lexprep."""

from lexprep.api.routers import (
    admin_jobs_router,
    mastery_router,
    missing_authority_router,
    study_router,
)

__all__ = [
    "admin_jobs_router",
    "missing_authority_router",
    "mastery_router",
    "study_router",
]
