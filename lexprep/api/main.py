"""
FastAPI application for lexprep.

Provides REST API for:
- Admin job monitoring (list, stats, retry, cancel)
- Missing-authority backlog review
- Mastery initialization and attempt recording
- Daily study planning and session status
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from lexprep import __version__
from lexprep.api.routers import (
    admin_jobs_router,
    mastery_router,
    missing_authority_router,
    study_router,
)
from lexprep.container import ServiceContainer, build_container
from lexprep.core.errors import LexprepError
from lexprep.db.database import dispose_engine, init_db
from lexprep.db.models import utcnow


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    owns_container = getattr(app.state, "container", None) is None
    if owns_container:
        logger.info("Starting lexprep service...")
        await init_db()
        app.state.container = build_container()
        settings = app.state.container.settings
        logger.info(f"Service started on {settings.api_host}:{settings.api_port}")

    yield

    if owns_container:
        logger.info("Shutting down lexprep service...")
        await dispose_engine()


async def _lexprep_error_handler(request: Request, exc: LexprepError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """Build the app. Tests pass a container wired to their own database."""
    app = FastAPI(
        title="lexprep",
        description="""
        Grounded study engine for bar-exam preparation.

        ## Features

        - **Mastery**: per-skill knowledge state seeded at onboarding and updated by attempts
        - **Planning**: daily sessions with four generated study assets
        - **Jobs**: durable background queue with retry/cancel for admins
        - **Grounding**: every claim cited to a verified source, or replaced by a logged fallback
        """,
        version=__version__,
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    # CORS middleware for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Restrict in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LexprepError, _lexprep_error_handler)

    # ========================================
    # Health & Status Endpoints
    # ========================================

    @app.get("/", tags=["Health"])
    def root() -> dict[str, str]:
        """Root endpoint returning service info."""
        return {"service": "lexprep", "version": __version__, "status": "ok"}

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request) -> dict[str, Any]:
        """Health check with an actual database round trip."""
        container: ServiceContainer = request.app.state.container
        try:
            async with container.session_factory() as session:
                await session.execute(text("SELECT 1"))
            db_status, db_error = "ok", None
        except SQLAlchemyError as e:
            db_status, db_error = "error", str(e)

        result = {
            "status": "healthy" if db_status == "ok" else "unhealthy",
            "timestamp": utcnow().isoformat(),
            "components": {
                "database": db_status,
                "authority_search": "configured"
                if container.retriever.fetcher is not None
                else "not_configured",
            },
        }
        if db_error:
            result["errors"] = {"database": db_error}
        return result

    # ========================================
    # Routers
    # ========================================

    app.include_router(admin_jobs_router.router, prefix="/api/admin/jobs", tags=["Admin Jobs"])
    app.include_router(
        missing_authority_router.router,
        prefix="/api/admin/missing-authorities",
        tags=["Missing Authorities"],
    )
    app.include_router(mastery_router.router, prefix="/api/mastery", tags=["Mastery"])
    app.include_router(study_router.router, prefix="/api/study", tags=["Study"])
    return app


app = create_app()
