"""
Grounding validator: the last gate before an asset is stored as READY.

Rules for every item that is neither instruction-only nor the fallback:
1. at least one citation
2. authority citations reference an existing AuthorityRecord
3. authority citations carry a passage or a locator
"""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lexprep.core.errors import ValidationError
from lexprep.core.states import MissingAuthorityTag, SourceType
from lexprep.db.models import AuthorityRecord, MissingAuthorityLog

from .content import fallback_item, is_fallback_text
from .retriever import GroundingContext


@dataclass
class GroundingIssue:
    code: str  # MISSING_CITATION | INVALID_AUTHORITY | MISSING_LOCATOR
    message: str
    item_index: int


@dataclass
class ValidationReport:
    errors: list[GroundingIssue] = field(default_factory=list)
    total_items: int = 0
    cited_items: int = 0
    fallback_items: int = 0

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict:
        return {
            "total_items": self.total_items,
            "cited_items": self.cited_items,
            "fallback_items": self.fallback_items,
            "errors": [issue.message for issue in self.errors[:10]],
        }


class GroundingValidator:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def assert_grounded(self, content) -> ValidationReport:
        """Check every substantive item of an asset body against the grounding rules."""
        report = ValidationReport(total_items=len(content.items))

        authority_ids: set[str] = {
            c.source_id
            for item in content.items
            for c in item.citations
            if c.source_type == SourceType.AUTHORITY
        }
        known: set[str] = set()
        if authority_ids:
            async with self._session_factory() as session:
                rows = await session.execute(
                    select(AuthorityRecord.id).where(
                        AuthorityRecord.id.in_([UUID(a) for a in authority_ids])
                    )
                )
                known = {str(row[0]) for row in rows}

        for index, item in enumerate(content.items):
            if item.is_instruction_only:
                continue
            if item.is_fallback or is_fallback_text(item.text):
                report.fallback_items += 1
                continue
            if not item.citations:
                report.errors.append(
                    GroundingIssue("MISSING_CITATION", f"Item {index + 1} ({item.section}) has no citations", index)
                )
                continue
            report.cited_items += 1
            for citation in item.citations:
                if citation.source_type != SourceType.AUTHORITY:
                    continue
                if citation.source_id not in known:
                    report.errors.append(
                        GroundingIssue(
                            "INVALID_AUTHORITY",
                            f"Item {index + 1} references unknown authority {citation.source_id}",
                            index,
                        )
                    )
                if not (citation.passage_id or citation.locator):
                    report.errors.append(
                        GroundingIssue("MISSING_LOCATOR", f"Item {index + 1} citation has no locator", index)
                    )
        return report

    async def validate_and_fix(
        self,
        content,
        context: GroundingContext | None = None,
        strict: bool = False,
    ):
        """
        Validate an asset body and replace failing items with the fallback.

        Returns (content, report, was_fixed). In strict mode a failing body
        raises ValidationError instead of being fixed.
        """
        report = await self.assert_grounded(content)
        if report.is_valid:
            return content, report, False

        if strict:
            raise ValidationError(
                "Grounding validation failed: " + "; ".join(issue.message for issue in report.errors)
            )

        bad = {issue.item_index for issue in report.errors}
        items = [
            fallback_item(item.section) if index in bad else item
            for index, item in enumerate(content.items)
        ]
        fixed = content.model_copy(update={"items": items})

        if context is not None:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        MissingAuthorityLog(
                            claim_text=f"Grounding validation failed for {fixed.asset_type}",
                            requested_skill_ids=[str(context.skill_id)],
                            search_query=f"Validation for session {context.session_id}",
                            search_results=report.as_dict(),
                            error_tag=MissingAuthorityTag.VALIDATION_FAILED,
                            session_id=context.session_id,
                            asset_id=context.asset_id,
                        )
                    )
        logger.warning("Replaced {} ungrounded item(s) with fallback", len(bad))
        return fixed, await self.assert_grounded(fixed), True
