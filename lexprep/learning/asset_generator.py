"""
Study asset generation.

retrieve -> draft -> ground -> validate -> persist. The asset ends READY with
either grounding refs or the fallback placeholder, or FAILED with the error.
"""

from __future__ import annotations

import asyncio
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lexprep.config import Settings
from lexprep.core.errors import JobExecutionError, NotFoundError
from lexprep.core.states import AssetStatus, AssetType, transition_asset
from lexprep.db.models import Skill, StudyAsset, StudySession, utcnow
from lexprep.grounding.content import (
    ContentItem,
    GroundingRefs,
    build_asset_content,
    content_is_fallback_only,
    fallback_item,
)
from lexprep.grounding.retriever import GroundingContext, GroundingRetriever
from lexprep.grounding.validator import GroundingValidator
from lexprep.integrations.capabilities import ContentGenerator, DraftRequest, call_with_timeout

from .session_planner import SessionPlanner

ASSET_TITLES = {
    AssetType.NOTES: "Study Notes",
    AssetType.CHECKPOINT: "Checkpoint",
    AssetType.PRACTICE_SET: "Practice Set",
    AssetType.RUBRIC: "Marking Rubric",
}

# Fixed instruction text added by this builder only. Generators never supply
# instruction items; every drafted claim goes through grounding.
ASSET_INSTRUCTIONS = {
    AssetType.CHECKPOINT: "Answer each question on {skill} before moving to practice.",
}


def refs_from_content(content) -> GroundingRefs:
    refs = GroundingRefs()
    for item in content.items:
        for citation in item.citations:
            bucket = {
                "OUTLINE_TOPIC": refs.outline_topic_ids,
                "LECTURE_CHUNK": refs.lecture_chunk_ids,
                "AUTHORITY": refs.authority_ids,
            }[citation.source_type.value]
            if citation.source_id not in bucket:
                bucket.append(citation.source_id)
    return refs


class AssetGenerator:
    """Generate one StudyAsset end to end."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retriever: GroundingRetriever,
        validator: GroundingValidator,
        generator: ContentGenerator,
        planner: SessionPlanner,
        settings: Settings,
    ):
        self._session_factory = session_factory
        self.retriever = retriever
        self.validator = validator
        self.generator = generator
        self.planner = planner
        self.settings = settings

    async def _start(self, asset_id: UUID) -> tuple[StudyAsset, StudySession, Skill] | None:
        async with self._session_factory() as session:
            async with session.begin():
                asset = await session.get(StudyAsset, asset_id, with_for_update=True)
                if asset is None:
                    raise NotFoundError(f"Asset {asset_id} not found")
                if asset.status == AssetStatus.READY:
                    return None
                study_session = await session.get(StudySession, asset.session_id)
                skill = await session.get(Skill, study_session.skill_id)
                if skill is None:
                    raise NotFoundError(f"Skill {study_session.skill_id} not found")
                if asset.status != AssetStatus.GENERATING:
                    asset.status = transition_asset(asset.status, AssetStatus.GENERATING)
                asset.generation_started_at = utcnow()
                asset.generation_error = None
        return asset, study_session, skill

    async def generate(self, asset_id: UUID) -> dict[str, Any]:
        """
        Generate and store an asset's content.

        Re-running on a READY asset is a no-op. Any failure marks the asset
        FAILED and is re-raised for the job queue to retry.
        """
        started = await self._start(asset_id)
        if started is None:
            logger.info("Asset {} already READY, skipping", asset_id)
            return {"asset_id": str(asset_id), "skipped": True}
        asset, study_session, skill = started

        try:
            return await self._generate(asset, study_session, skill)
        except Exception as exc:
            await self.planner.mark_asset_failed(asset_id, str(exc) or exc.__class__.__name__)
            raise

    async def _generate(self, asset: StudyAsset, study_session: StudySession, skill: Skill) -> dict[str, Any]:
        context = GroundingContext(skill_id=skill.id, session_id=study_session.id, asset_id=asset.id)
        retrieval = await self.retriever.retrieve_grounding_for_skill(skill.id, context=context)

        request = DraftRequest(
            skill_id=str(skill.id),
            skill_name=skill.name,
            asset_type=asset.asset_type,
            exam_phase=study_session.exam_phase,
            sources=retrieval.sources,
        )
        try:
            drafts = await call_with_timeout(
                lambda: self.generator.draft_claims(request),
                timeout=self.settings.external_call_timeout_seconds,
                retries=self.settings.external_call_retries,
                label=f"content generation for {asset.asset_type.value}",
            )
        except asyncio.TimeoutError as exc:
            raise JobExecutionError(f"Content generation timed out for asset {asset.id}") from exc

        grounded = await self.retriever.generate_grounded_content(drafts, retrieval, context)
        items = list(grounded.items) or [fallback_item(ASSET_TITLES[asset.asset_type])]
        instruction = ASSET_INSTRUCTIONS.get(asset.asset_type)
        if instruction and any(item.citations for item in items):
            items.insert(
                0,
                ContentItem(
                    section="Instructions",
                    text=instruction.format(skill=skill.name),
                    is_instruction_only=True,
                ),
            )
        content = build_asset_content(
            asset.asset_type,
            f"{ASSET_TITLES[asset.asset_type]}: {skill.name}",
            items,
        )
        content, report, was_fixed = await self.validator.validate_and_fix(content, context=context)
        refs = refs_from_content(content)
        if refs.is_empty():
            content = content.model_copy(
                update={"items": [item for item in content.items if not item.is_instruction_only]}
            )
        used_fallback = any(item.is_fallback for item in content.items)

        if refs.is_empty() and not content_is_fallback_only(content):
            raise JobExecutionError(
                f"Asset {asset.id} has no grounding and is not a fallback", transient=False
            )

        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(StudyAsset, asset.id, with_for_update=True)
                row.status = transition_asset(row.status, AssetStatus.READY)
                row.content = content.model_dump(mode="json", by_alias=True)
                row.grounding_refs = refs.model_dump(by_alias=True)
                row.used_fallback = used_fallback
                row.generation_error = None
                row.generation_completed_at = utcnow()

        await self.planner.refresh_session_status(study_session.id)

        logger.info(
            "Asset {} {} READY: {} ({} fallback)",
            asset.asset_type.value,
            asset.id,
            refs.summary(),
            report.fallback_items,
        )
        return {
            "asset_id": str(asset.id),
            "asset_type": asset.asset_type.value,
            "total_items": report.total_items,
            "cited_items": report.cited_items,
            "fallback_items": report.fallback_items,
            "used_fallback": used_fallback,
            "was_fixed": was_fixed,
            "evidence_spans": len(grounded.evidence_span_ids),
            "missing_authorities": len(grounded.missing_log_ids),
        }
