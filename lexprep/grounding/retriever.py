"""
Grounding retriever.

Collects evidence for a skill (outline topics, approved lecture chunks, vetted
authorities) and turns claim drafts into content items. A claim is asserted only
when a verified source backs it; anything else becomes the fallback placeholder
and a MissingAuthorityLog entry. Nothing unverified is ever stated.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from uuid import UUID

import httpx
from loguru import logger
from sqlalchemy import String, cast, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lexprep.config import Settings
from lexprep.core.errors import AuthorityUnavailableError, NotFoundError, ValidationError
from lexprep.core.result import Result
from lexprep.core.states import MissingAuthorityTag, SourceType
from lexprep.db.models import (
    AuthorityRecord,
    EvidenceSpan,
    LectureChunk,
    MissingAuthorityLog,
    OutlineTopic,
    Skill,
    SkillChunkMap,
    SkillOutlineMap,
    utcnow,
)
from lexprep.integrations.capabilities import AuthorityFetcher, AuthorityQuery, call_with_timeout

from .authority_store import AuthorityStore
from .content import (
    Citation,
    ClaimDraft,
    ContentItem,
    GroundingRefs,
    GroundingSource,
    fallback_item,
)
from .governance import GROUNDING_RULES, can_quote_verbatim, truncate_quote

MIN_SOURCE_CONFIDENCE = 0.5


def _requests_skill(skill_id: UUID):
    """Match log entries whose requested_skill_ids JSON array holds skill_id."""
    return cast(MissingAuthorityLog.requested_skill_ids, String).contains(f'"{skill_id}"')


@dataclass
class GroundingContext:
    """Where generated content will land; used for evidence spans and log entries."""

    skill_id: UUID
    session_id: UUID | None = None
    asset_id: UUID | None = None
    target_type: str = "STUDY_ASSET"

    @property
    def target_id(self) -> UUID | None:
        return self.asset_id


@dataclass
class RetrievalResult:
    skill_id: UUID
    skill_name: str
    unit_id: str
    search_query: str
    sources: list[GroundingSource] = field(default_factory=list)
    refs: GroundingRefs = field(default_factory=GroundingRefs)
    warnings: list[str] = field(default_factory=list)

    def of_type(self, source_type: SourceType) -> list[GroundingSource]:
        return [s for s in self.sources if s.source_type == source_type]

    def find(self, key: str) -> GroundingSource | None:
        for source in self.sources:
            if key in (source.key, source.id):
                return source
        return None

    def counts(self) -> dict[str, int]:
        return {
            "outline_topics": len(self.refs.outline_topic_ids),
            "lecture_chunks": len(self.refs.lecture_chunk_ids),
            "authorities": len(self.refs.authority_ids),
        }


@dataclass
class GroundedContent:
    """Output of generate_grounded_content."""

    items: list[ContentItem]
    refs: GroundingRefs
    evidence_span_ids: list[UUID] = field(default_factory=list)
    missing_log_ids: list[UUID] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return any(item.is_fallback for item in self.items)

    @property
    def stats(self) -> dict[str, int]:
        return {
            "total_items": len(self.items),
            "cited_items": sum(1 for i in self.items if i.citations),
            "fallback_items": sum(1 for i in self.items if i.is_fallback),
        }


class GroundingRetriever:
    """Retrieve evidence for a skill and ground generated claims against it."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: AuthorityStore,
        settings: Settings,
        fetcher: AuthorityFetcher | None = None,
    ):
        self._session_factory = session_factory
        self.store = store
        self.settings = settings
        self.fetcher = fetcher

    # ========================================
    # Retrieval
    # ========================================

    async def retrieve_grounding_for_skill(
        self,
        skill_id: UUID,
        context: GroundingContext | None = None,
        fetch_external: bool = False,
    ) -> RetrievalResult:
        """
        Gather sources for a skill: outline topics, approved lecture chunks,
        then verified authorities for the skill's unit and the skill itself.

        With fetch_external, an empty authority set triggers a bounded external
        search first. If that search is unavailable the result carries a warning
        and a MissingAuthorityLog entry; local sources are still returned.
        """
        async with self._session_factory() as session:
            skill = await session.get(Skill, skill_id)
            if skill is None:
                raise NotFoundError(f"Skill {skill_id} not found")

            topic_rows = await session.execute(
                select(OutlineTopic, SkillOutlineMap.coverage_strength)
                .join(SkillOutlineMap, SkillOutlineMap.topic_id == OutlineTopic.id)
                .where(SkillOutlineMap.skill_id == skill_id)
                .order_by(SkillOutlineMap.coverage_strength.desc(), OutlineTopic.topic_number)
            )
            topics = topic_rows.all()

            chunk_rows = await session.execute(
                select(LectureChunk, SkillChunkMap.confidence)
                .join(SkillChunkMap, SkillChunkMap.chunk_id == LectureChunk.id)
                .where(SkillChunkMap.skill_id == skill_id, SkillChunkMap.is_approved.is_(True))
                .order_by(SkillChunkMap.confidence.desc(), LectureChunk.chunk_index)
            )
            chunks = chunk_rows.all()

        result = RetrievalResult(
            skill_id=skill.id,
            skill_name=skill.name,
            unit_id=skill.unit_id,
            search_query=f"{skill.code} {skill.name}",
        )

        for topic, strength in topics:
            result.sources.append(
                GroundingSource(
                    source_type=SourceType.OUTLINE_TOPIC,
                    id=str(topic.id),
                    title=topic.title,
                    text=topic.grounding_text,
                    confidence=1.0 if strength is None else float(strength),
                    locator={"topic_number": topic.topic_number} if topic.topic_number else {},
                )
            )

        for chunk, confidence in chunks:
            result.sources.append(
                GroundingSource(
                    source_type=SourceType.LECTURE_CHUNK,
                    id=str(chunk.id),
                    title=chunk.lecture_title or chunk.lecture_id,
                    text=chunk.text,
                    confidence=float(confidence or 0.0),
                    locator={
                        "lecture_id": chunk.lecture_id,
                        "chunk_index": chunk.chunk_index,
                        "start_seconds": chunk.start_seconds,
                    },
                )
            )

        authorities = await self._local_authorities(skill)
        if not authorities and fetch_external and self.fetcher is not None:
            refreshed = await self.refresh_authorities(skill.id, context=context)
            result.warnings.extend(refreshed.warnings)
            authorities = await self._local_authorities(skill)

        for record in authorities:
            for passage in record.verified_passages:
                result.sources.append(
                    GroundingSource(
                        source_type=SourceType.AUTHORITY,
                        id=str(record.id),
                        title=record.title,
                        text=passage.text,
                        tier=record.tier,
                        citation=record.citation,
                        passage_id=str(passage.id),
                        locator=dict(passage.locator or {}),
                    )
                )

        for source in result.sources:
            result.refs.add(source)

        logger.debug(
            "Retrieved grounding for {}: {}",
            skill.code,
            result.refs.summary(),
        )
        return result

    async def _local_authorities(self, skill: Skill) -> list[AuthorityRecord]:
        by_id: dict[UUID, AuthorityRecord] = {}
        for record in await self.store.get_authorities_for_unit(skill.unit_id):
            by_id[record.id] = record
        for record in await self.store.get_authorities_for_skill(skill.id):
            by_id.setdefault(record.id, record)
        return list(by_id.values())

    async def refresh_authorities(
        self,
        skill_id: UUID,
        concept: str | None = None,
        jurisdiction: str | None = None,
        context: GroundingContext | None = None,
    ) -> Result[list[AuthorityRecord]]:
        """
        Search the external fetcher for a skill and store what governance allows.

        Returns a Result whose warnings name rejected sources. An unavailable
        fetcher is recorded as an AUTHORITY_UNAVAILABLE log entry.
        """
        result: Result[list[AuthorityRecord]] = Result(value=[])
        if self.fetcher is None:
            result.warn("No authority fetcher configured")
            return result

        async with self._session_factory() as session:
            skill = await session.get(Skill, skill_id)
        if skill is None:
            raise NotFoundError(f"Skill {skill_id} not found")

        query = AuthorityQuery(
            concept=concept or skill.name,
            jurisdiction=jurisdiction or self.settings.authority_jurisdiction,
            skill_id=str(skill.id),
            unit_id=skill.unit_id,
        )
        try:
            fetched = await self._search(query)
        except AuthorityUnavailableError as exc:
            result.warn(str(exc))
            await self.log_missing_authority(
                claim_text=f"Authorities for {skill.name}",
                skill_ids=[skill.id],
                search_query=f"{query.concept} ({query.jurisdiction})",
                search_results={"error": str(exc)},
                error_tag=MissingAuthorityTag.AUTHORITY_UNAVAILABLE,
                context=context,
            )
            return result

        for item in fetched:
            tagged = item.model_copy(
                update={
                    "skill_ids": sorted(set(item.skill_ids) | {str(skill.id)}),
                    "unit_ids": sorted(set(item.unit_ids) | {skill.unit_id}),
                }
            )
            try:
                result.value.append(await self.store.upsert_authority(tagged))
            except ValidationError as exc:
                result.warn(exc.message)
        logger.info(
            "Authority refresh for {}: {} stored, {} rejected",
            skill.code,
            len(result.value),
            len(result.warnings),
        )
        return result

    async def _search(self, query: AuthorityQuery):
        try:
            return await call_with_timeout(
                lambda: self.fetcher.search(query),
                timeout=self.settings.external_call_timeout_seconds,
                retries=self.settings.external_call_retries,
                label=f"authority search '{query.concept}'",
            )
        except asyncio.TimeoutError as exc:
            raise AuthorityUnavailableError(f"Authority search timed out for '{query.concept}'") from exc
        except httpx.HTTPError as exc:
            raise AuthorityUnavailableError(f"Authority search failed: {exc}") from exc

    # ========================================
    # Grounded generation
    # ========================================

    async def generate_grounded_content(
        self,
        claims: list[ClaimDraft],
        retrieval: RetrievalResult,
        context: GroundingContext,
    ) -> GroundedContent:
        """
        Turn claim drafts into content items backed by verified evidence.

        Unsupported claims become the fallback placeholder plus a log entry.
        Tier B text is never quoted; Tier A quotes are cut to the tier limit.
        Evidence spans are written for every asserted claim.
        """
        items: list[ContentItem] = []
        refs = GroundingRefs()
        spans: list[EvidenceSpan] = []
        logs: list[MissingAuthorityLog] = []

        for claim in claims:
            cited = [s for s in (retrieval.find(k) for k in claim.source_ids) if s is not None]
            backing = [s for s in cited if s.verified and s.confidence >= MIN_SOURCE_CONFIDENCE]

            if not backing:
                items.append(fallback_item(claim.section))
                logs.append(
                    self._missing_entry(
                        claim,
                        retrieval,
                        context,
                        tag=self._missing_tag(claim, cited),
                    )
                )
                continue

            quote = self._allowed_quote(claim.quote, backing[0])
            items.append(
                ContentItem(
                    section=claim.section,
                    text=claim.text,
                    quote=quote,
                    citations=[self._citation(s) for s in backing],
                )
            )
            for source in backing:
                refs.add(source)
                if context.target_id is not None:
                    spans.append(self._evidence_span(claim, source, quote, context))

        async with self._session_factory() as session:
            async with session.begin():
                session.add_all(spans)
                session.add_all(logs)

        if logs:
            logger.warning(
                "{} claim(s) for skill {} not grounded; served fallback",
                len(logs),
                retrieval.skill_name,
            )
        return GroundedContent(
            items=items,
            refs=refs,
            evidence_span_ids=[s.id for s in spans],
            missing_log_ids=[entry.id for entry in logs],
        )

    @staticmethod
    def _missing_tag(claim: ClaimDraft, cited: list[GroundingSource]) -> MissingAuthorityTag:
        if cited:
            return MissingAuthorityTag.LOW_CONFIDENCE_SOURCE
        if claim.section == "Lecture Insights":
            return MissingAuthorityTag.MISSING_TRANSCRIPT_SUPPORT
        return MissingAuthorityTag.MISSING_AUTHORITY

    @staticmethod
    def _allowed_quote(quote: str | None, source: GroundingSource) -> str | None:
        if not quote:
            return None
        if source.source_type == SourceType.AUTHORITY:
            return truncate_quote(quote, source.tier)
        if source.source_type == SourceType.LECTURE_CHUNK:
            return quote[: GROUNDING_RULES.lecture_excerpt_chars]
        return quote

    @staticmethod
    def _citation(source: GroundingSource) -> Citation:
        return Citation(
            source_type=source.source_type,
            source_id=source.id,
            passage_id=source.passage_id,
            label=source.citation or source.title,
            locator=source.locator,
        )

    @staticmethod
    def _evidence_span(
        claim: ClaimDraft,
        source: GroundingSource,
        quote: str | None,
        context: GroundingContext,
    ) -> EvidenceSpan:
        verbatim_allowed = source.source_type != SourceType.AUTHORITY or can_quote_verbatim(source.tier)
        return EvidenceSpan(
            target_type=context.target_type,
            target_id=context.target_id,
            source_type=source.source_type,
            source_id=UUID(source.id),
            passage_id=UUID(source.passage_id) if source.passage_id else None,
            claim_text=claim.text,
            quoted_text=quote,
            confidence_score=source.confidence,
            is_verified=source.verified,
            verbatim_allowed=verbatim_allowed,
        )

    def _missing_entry(
        self,
        claim: ClaimDraft,
        retrieval: RetrievalResult,
        context: GroundingContext,
        tag: MissingAuthorityTag,
    ) -> MissingAuthorityLog:
        return MissingAuthorityLog(
            claim_text=claim.text,
            requested_skill_ids=[str(context.skill_id)],
            search_query=retrieval.search_query,
            search_results={**retrieval.counts(), "cited_source_ids": list(claim.source_ids)},
            error_tag=tag,
            session_id=context.session_id,
            asset_id=context.asset_id,
        )

    async def log_missing_authority(
        self,
        claim_text: str,
        skill_ids: list[UUID],
        search_query: str | None,
        search_results: dict | None,
        error_tag: MissingAuthorityTag,
        context: GroundingContext | None = None,
    ) -> MissingAuthorityLog:
        entry = MissingAuthorityLog(
            claim_text=claim_text,
            requested_skill_ids=[str(s) for s in skill_ids],
            search_query=search_query,
            search_results=search_results,
            error_tag=error_tag,
            session_id=context.session_id if context else None,
            asset_id=context.asset_id if context else None,
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(entry)
        logger.warning("Missing authority logged ({}): {}", error_tag.value, claim_text)
        return entry

    # ========================================
    # Missing-authority backlog
    # ========================================

    async def list_missing_authorities(
        self,
        open_only: bool = True,
        skill_id: UUID | None = None,
        limit: int = 100,
    ) -> list[MissingAuthorityLog]:
        stmt = select(MissingAuthorityLog).order_by(MissingAuthorityLog.created_at.desc())
        if open_only:
            stmt = stmt.where(MissingAuthorityLog.resolved_at.is_(None))
        if skill_id is not None:
            stmt = stmt.where(_requests_skill(skill_id))
        async with self._session_factory() as session:
            return list((await session.execute(stmt.limit(limit))).scalars().all())

    async def handle_missing_authority(
        self,
        entry_id: UUID,
        resolved_by: str,
        note: str | None = None,
    ) -> MissingAuthorityLog:
        """Close one backlog entry. Closing an already closed entry changes nothing."""
        async with self._session_factory() as session:
            async with session.begin():
                entry = await session.get(MissingAuthorityLog, entry_id)
                if entry is None:
                    raise NotFoundError(f"Missing authority entry {entry_id} not found")
                if not entry.is_open:
                    return entry
                entry.resolved_at = utcnow()
                entry.resolved_by = resolved_by
                entry.resolution_note = note
        logger.info("Missing authority entry {} resolved by {}", entry_id, resolved_by)
        return entry

    async def resolve_open_entries_for_skill(
        self,
        skill_id: UUID,
        resolved_by: str = "system",
    ) -> int:
        """
        Close open entries for a skill once matching grounding exists.

        Transcript entries close when approved lecture chunks exist; all other
        tags close when verified authorities exist. Content already served is
        not regenerated.
        """
        retrieval = await self.retrieve_grounding_for_skill(skill_id)
        has_authorities = bool(retrieval.refs.authority_ids)
        has_transcripts = bool(retrieval.refs.lecture_chunk_ids)
        if not (has_authorities or has_transcripts):
            return 0

        closed = 0
        now = utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                stmt = select(MissingAuthorityLog).where(
                    MissingAuthorityLog.resolved_at.is_(None), _requests_skill(skill_id)
                )
                for entry in (await session.execute(stmt)).scalars():
                    if entry.error_tag == MissingAuthorityTag.MISSING_TRANSCRIPT_SUPPORT:
                        if not has_transcripts:
                            continue
                    elif not has_authorities:
                        continue
                    entry.resolved_at = now
                    entry.resolved_by = resolved_by
                    entry.resolution_note = retrieval.refs.summary()
                    closed += 1
        if closed:
            logger.info("Resolved {} missing authority entries for skill {}", closed, skill_id)
        return closed
