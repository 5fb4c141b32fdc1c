"""
External capabilities the engine consumes but does not implement.

Both are injected at construction time (see lexprep.container) so tests can
swap in fakes.
- ContentGenerator: phrases claim drafts for an asset from retrieved sources
- AuthorityFetcher: searches outside databases for legal authorities
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from loguru import logger
from pydantic import BaseModel, Field

from lexprep.core.states import AssetType, AuthorityType, ExamPhase
from lexprep.grounding.content import ClaimDraft, GroundingSource

T = TypeVar("T")


# ========================================
# Authority fetching
# ========================================

class FetchedPassage(BaseModel):
    text: str
    locator: dict[str, Any] = Field(default_factory=dict)


class FetchedAuthority(BaseModel):
    """An authority as returned by an external search, before governance checks."""

    title: str
    url: str
    citation: str | None = None
    authority_type: AuthorityType = AuthorityType.OTHER
    jurisdiction: str | None = None
    license_tag: str | None = None
    unit_ids: list[str] = Field(default_factory=list)
    skill_ids: list[str] = Field(default_factory=list)
    passages: list[FetchedPassage] = Field(default_factory=list)


@dataclass
class AuthorityQuery:
    concept: str
    jurisdiction: str
    skill_id: str | None = None
    unit_id: str | None = None
    limit: int = 5


class AuthorityFetcher(Protocol):
    async def search(self, query: AuthorityQuery) -> list[FetchedAuthority]: ...


# ========================================
# Content generation
# ========================================

@dataclass
class DraftRequest:
    skill_id: str
    skill_name: str
    asset_type: AssetType
    exam_phase: ExamPhase
    sources: list[GroundingSource] = field(default_factory=list)


class ContentGenerator(Protocol):
    async def draft_claims(self, request: DraftRequest) -> list[ClaimDraft]: ...


# ========================================
# Timeout-bounded calls
# ========================================

async def call_with_timeout(
    call: Callable[[], Awaitable[T]],
    timeout: float,
    retries: int = 1,
    label: str = "external call",
) -> T:
    """
    Run an external call under asyncio.wait_for, retrying timeouts.

    These retries are local to the call and independent of job-level retries.
    Raises TimeoutError once every attempt has timed out.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except asyncio.TimeoutError:
            if attempt > retries:
                logger.warning("{} timed out after {} attempt(s)", label, attempt)
                raise
            logger.info("{} timed out (attempt {}), retrying", label, attempt)
