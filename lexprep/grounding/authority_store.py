"""Repository for vetted legal authorities and their passages."""

from __future__ import annotations

from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lexprep.core.errors import NotFoundError, ValidationError
from lexprep.core.states import AuthorityTier
from lexprep.db.models import AuthorityPassage, AuthorityRecord, utcnow
from lexprep.integrations.capabilities import FetchedAuthority

from .governance import get_domain_info, validate_source


class AuthorityStore:
    """
    Read-mostly store of AuthorityRecords.

    Only Tier A and B records are ever written; Tier C and unlisted domains are
    rejected at upsert time. Reads return verified records only.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _verified_records(self) -> list[AuthorityRecord]:
        async with self._session_factory() as session:
            stmt = (
                select(AuthorityRecord)
                .where(
                    AuthorityRecord.is_verified.is_(True),
                    AuthorityRecord.tier.in_([AuthorityTier.A, AuthorityTier.B]),
                )
                .order_by(AuthorityRecord.tier, AuthorityRecord.title)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def get_authorities_for_skill(self, skill_id: UUID | str) -> list[AuthorityRecord]:
        """Verified authorities tagged with the skill."""
        wanted = str(skill_id)
        return [r for r in await self._verified_records() if wanted in (r.skill_ids or [])]

    async def get_authorities_for_unit(self, unit_id: str) -> list[AuthorityRecord]:
        """Verified authorities tagged with the curriculum unit."""
        return [r for r in await self._verified_records() if unit_id in (r.unit_ids or [])]

    async def get_verified_passages(self, authority_id: UUID) -> list[AuthorityPassage]:
        async with self._session_factory() as session:
            stmt = (
                select(AuthorityPassage)
                .where(
                    AuthorityPassage.authority_id == authority_id,
                    AuthorityPassage.is_verified.is_(True),
                )
                .order_by(AuthorityPassage.created_at)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def get(self, authority_id: UUID) -> AuthorityRecord:
        async with self._session_factory() as session:
            record = await session.get(AuthorityRecord, authority_id)
            if record is None:
                raise NotFoundError(f"Authority {authority_id} not found")
            return record

    async def upsert_authority(
        self,
        fetched: FetchedAuthority,
        verified: bool | None = None,
    ) -> AuthorityRecord:
        """
        Insert or refresh an authority keyed by source URL.

        The tier always comes from the domain allowlist, never from the caller.
        Tier A passages are stored verified; Tier B passages wait for review
        unless verified is given explicitly.

        Raises:
            ValidationError: domain not allowlisted or Tier C
        """
        check = validate_source(fetched.url)
        if not check.valid:
            raise ValidationError(f"Rejected authority {fetched.url}: {check.reason}")
        info = get_domain_info(fetched.url)
        passage_verified = check.tier == AuthorityTier.A if verified is None else verified

        async with self._session_factory() as session:
            async with session.begin():
                stmt = select(AuthorityRecord).where(AuthorityRecord.source_url == fetched.url)
                record = (await session.execute(stmt)).scalar_one_or_none()
                if record is None:
                    record = AuthorityRecord(
                        source_url=fetched.url,
                        domain=info.domain,
                        tier=check.tier,
                        title=fetched.title,
                    )
                    session.add(record)
                    existing_texts: set[str] = set()
                else:
                    existing_texts = {p.text for p in record.passages}

                record.title = fetched.title
                record.citation = fetched.citation
                record.authority_type = fetched.authority_type
                record.jurisdiction = fetched.jurisdiction
                record.license_tag = fetched.license_tag or info.license
                record.unit_ids = sorted(set(record.unit_ids or []) | set(fetched.unit_ids))
                record.skill_ids = sorted(set(record.skill_ids or []) | set(fetched.skill_ids))
                record.fetched_at = utcnow()

                for passage in fetched.passages:
                    if passage.text in existing_texts:
                        continue
                    record.passages.append(
                        AuthorityPassage(
                            text=passage.text,
                            locator=dict(passage.locator),
                            is_verified=passage_verified,
                        )
                    )
                if passage_verified and record.passages:
                    record.is_verified = True

            logger.info("Upserted authority {} (tier {})", fetched.url, check.tier.value)
            return record

    async def add_passage(
        self,
        authority_id: UUID,
        text: str,
        locator: dict | None = None,
        is_verified: bool = False,
    ) -> AuthorityPassage:
        async with self._session_factory() as session:
            async with session.begin():
                record = await session.get(AuthorityRecord, authority_id)
                if record is None:
                    raise NotFoundError(f"Authority {authority_id} not found")
                passage = AuthorityPassage(
                    authority_id=authority_id,
                    text=text,
                    locator=locator or {},
                    is_verified=is_verified,
                )
                session.add(passage)
                if is_verified:
                    record.is_verified = True
            return passage

    async def set_passage_verified(self, passage_id: UUID, verified: bool = True) -> AuthorityPassage:
        """Admin review of a passage. Verifying a passage also verifies its authority."""
        async with self._session_factory() as session:
            async with session.begin():
                passage = await session.get(AuthorityPassage, passage_id)
                if passage is None:
                    raise NotFoundError(f"Passage {passage_id} not found")
                passage.is_verified = verified
                if verified:
                    record = await session.get(AuthorityRecord, passage.authority_id)
                    record.is_verified = True
            logger.info("Passage {} verified={}", passage_id, verified)
            return passage
