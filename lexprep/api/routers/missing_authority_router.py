"""
Missing-authority backlog API.

Every claim the grounding pipeline refused to assert lands in this backlog.
Admins review open entries and close them once a source has been added.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from lexprep.api.dependencies import get_container
from lexprep.container import ServiceContainer
from lexprep.core.errors import NotFoundError
from lexprep.core.states import MissingAuthorityTag
from lexprep.db.models import MissingAuthorityLog

router = APIRouter()


# ========================================
# Request/Response Models
# ========================================


class MissingAuthorityEntry(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: UUID
    claim_text: str
    requested_skill_ids: list[str]
    search_query: str | None = None
    search_results: dict[str, Any] | None = None
    error_tag: MissingAuthorityTag
    session_id: UUID | None = None
    asset_id: UUID | None = None
    created_at: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_note: str | None = None

    @classmethod
    def from_row(cls, row: MissingAuthorityLog) -> MissingAuthorityEntry:
        return cls(
            id=row.id,
            claim_text=row.claim_text,
            requested_skill_ids=list(row.requested_skill_ids or []),
            search_query=row.search_query,
            search_results=row.search_results,
            error_tag=row.error_tag,
            session_id=row.session_id,
            asset_id=row.asset_id,
            created_at=row.created_at,
            resolved_at=row.resolved_at,
            resolved_by=row.resolved_by,
            resolution_note=row.resolution_note,
        )


class ResolveRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    resolved_by: str = Field(..., min_length=1)
    note: str | None = None


# ========================================
# Endpoints
# ========================================


@router.get(
    "",
    response_model=list[MissingAuthorityEntry],
    response_model_by_alias=True,
    summary="List missing-authority entries",
)
async def list_entries(
    open_only: bool = Query(True, alias="openOnly"),
    skill_id: UUID | None = Query(None, alias="skillId"),
    limit: int = Query(100, ge=1, le=500),
    container: ServiceContainer = Depends(get_container),
) -> list[MissingAuthorityEntry]:
    rows = await container.retriever.list_missing_authorities(
        open_only=open_only, skill_id=skill_id, limit=limit
    )
    return [MissingAuthorityEntry.from_row(row) for row in rows]


@router.post(
    "/{entry_id}/resolve",
    response_model=MissingAuthorityEntry,
    response_model_by_alias=True,
    summary="Close a missing-authority entry",
)
async def resolve_entry(
    entry_id: UUID,
    request: ResolveRequest,
    container: ServiceContainer = Depends(get_container),
) -> MissingAuthorityEntry:
    """Closing an entry does not regenerate content already served."""
    try:
        row = await container.retriever.handle_missing_authority(
            entry_id, resolved_by=request.resolved_by, note=request.note
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return MissingAuthorityEntry.from_row(row)
