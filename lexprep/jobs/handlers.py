"""Job handlers: one coroutine per job type, bound to the services they drive."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from lexprep.core.states import JobType
from lexprep.grounding.retriever import GroundingRetriever
from lexprep.learning.asset_generator import AssetGenerator
from lexprep.learning.session_planner import SessionPlanner

from .payloads import (
    GenerateSessionAssetPayload,
    JobPayload,
    PrecomputeTodayPayload,
    ResolveMissingAuthoritiesPayload,
    RetrieveAuthoritiesPayload,
    parse_payload,
)
from .queue import QueuedJob

JobHandler = Callable[[JobPayload, QueuedJob], Awaitable[dict[str, Any]]]


class JobHandlers:
    """Handler registry keyed by job type."""

    def __init__(
        self,
        planner: SessionPlanner,
        asset_generator: AssetGenerator,
        retriever: GroundingRetriever,
    ):
        self.planner = planner
        self.asset_generator = asset_generator
        self.retriever = retriever

    def registry(self) -> dict[JobType, JobHandler]:
        return {
            JobType.PRECOMPUTE_TODAY: self.precompute_today,
            JobType.GENERATE_SESSION_ASSET: self.generate_session_asset,
            JobType.RETRIEVE_AUTHORITIES: self.retrieve_authorities,
            JobType.RESOLVE_MISSING_AUTHORITIES: self.resolve_missing_authorities,
        }

    async def precompute_today(self, payload: PrecomputeTodayPayload, job: QueuedJob) -> dict[str, Any]:
        plan = await self.planner.plan_daily_sessions(payload.user_id, payload.study_date)
        return {
            "study_date": plan.study_date.isoformat(),
            "created": plan.created,
            "exam_phase": plan.exam_phase.value,
            "session_ids": [str(s) for s in plan.session_ids],
            "failed_assets": {str(k): v for k, v in plan.failed_assets.items()},
        }

    async def generate_session_asset(
        self, payload: GenerateSessionAssetPayload, job: QueuedJob
    ) -> dict[str, Any]:
        return await self.asset_generator.generate(payload.asset_id)

    async def retrieve_authorities(
        self, payload: RetrieveAuthoritiesPayload, job: QueuedJob
    ) -> dict[str, Any]:
        refreshed = await self.retriever.refresh_authorities(
            payload.skill_id,
            concept=payload.concept,
            jurisdiction=payload.jurisdiction,
        )
        closed = 0
        if refreshed.value:
            closed = await self.retriever.resolve_open_entries_for_skill(
                payload.skill_id, resolved_by="authority-refresh"
            )
        return {
            "stored": len(refreshed.value),
            "resolved_entries": closed,
            "warnings": refreshed.warnings,
        }

    async def resolve_missing_authorities(
        self, payload: ResolveMissingAuthoritiesPayload, job: QueuedJob
    ) -> dict[str, Any]:
        closed = await self.retriever.resolve_open_entries_for_skill(payload.skill_id)
        return {"resolved_entries": closed}

    async def on_terminal_failure(self, job: QueuedJob) -> None:
        """Reflect a permanently failed generation job on its asset."""
        if job.job_type != JobType.GENERATE_SESSION_ASSET:
            return
        payload = parse_payload(job.job_type, job.payload)
        await self.planner.mark_asset_failed(payload.asset_id, job.last_error or "Generation failed")
        logger.warning("Asset {} marked FAILED after job {} gave up", payload.asset_id, job.id)
