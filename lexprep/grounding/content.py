"""
Typed shapes for grounding: retrieved sources, source refs, and asset bodies.

Asset bodies are a discriminated union on asset_type, one schema per variant,
stored as JSON on StudyAsset.content.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from lexprep.core.states import AssetType, AuthorityTier, SourceType

from .governance import GROUNDING_RULES


@dataclass
class GroundingSource:
    """One retrieved piece of evidence."""

    source_type: SourceType
    id: str
    title: str
    text: str
    confidence: float = 1.0
    verified: bool = True
    tier: AuthorityTier | None = None
    citation: str | None = None
    passage_id: str | None = None
    locator: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Unique handle for claim drafts; authorities are cited per passage."""
        return self.passage_id or self.id


class GroundingRefs(BaseModel):
    """Source ids actually used by a generated target."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    outline_topic_ids: list[str] = Field(default_factory=list)
    lecture_chunk_ids: list[str] = Field(default_factory=list)
    authority_ids: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.outline_topic_ids or self.lecture_chunk_ids or self.authority_ids)

    def add(self, source: GroundingSource) -> None:
        bucket = {
            SourceType.OUTLINE_TOPIC: self.outline_topic_ids,
            SourceType.LECTURE_CHUNK: self.lecture_chunk_ids,
            SourceType.AUTHORITY: self.authority_ids,
        }[source.source_type]
        if source.id not in bucket:
            bucket.append(source.id)

    def total(self) -> int:
        return len(self.outline_topic_ids) + len(self.lecture_chunk_ids) + len(self.authority_ids)

    def summary(self) -> str:
        parts = []
        if self.outline_topic_ids:
            parts.append(f"{len(self.outline_topic_ids)} outline topic(s)")
        if self.lecture_chunk_ids:
            parts.append(f"{len(self.lecture_chunk_ids)} lecture segment(s)")
        if self.authority_ids:
            parts.append(f"{len(self.authority_ids)} legal authority(ies)")
        if not parts:
            return "No verified sources"
        return "Grounded in: " + ", ".join(parts)


@dataclass
class ClaimDraft:
    """A statement proposed by the content generator, with the sources it leans on."""

    section: str
    text: str
    source_ids: list[str] = field(default_factory=list)
    quote: str | None = None


# ========================================
# Asset bodies
# ========================================

class Citation(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    source_type: SourceType
    source_id: str
    passage_id: str | None = None
    label: str
    locator: dict[str, Any] = Field(default_factory=dict)


class ContentItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    section: str
    text: str
    citations: list[Citation] = Field(default_factory=list)
    quote: str | None = None
    is_fallback: bool = False
    is_instruction_only: bool = False


class _AssetBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    title: str
    items: list[ContentItem] = Field(default_factory=list)


class NotesContent(_AssetBody):
    asset_type: Literal["NOTES"] = "NOTES"


class CheckpointContent(_AssetBody):
    asset_type: Literal["CHECKPOINT"] = "CHECKPOINT"
    pass_threshold: float = 0.7


class PracticeSetContent(_AssetBody):
    asset_type: Literal["PRACTICE_SET"] = "PRACTICE_SET"
    time_limit_minutes: int | None = None


class RubricContent(_AssetBody):
    asset_type: Literal["RUBRIC"] = "RUBRIC"
    max_score: int = 10


AssetContent = Annotated[
    Union[NotesContent, CheckpointContent, PracticeSetContent, RubricContent],
    Field(discriminator="asset_type"),
]

_ASSET_CONTENT_ADAPTER: TypeAdapter[AssetContent] = TypeAdapter(AssetContent)

_CONTENT_CLASSES: dict[AssetType, type[_AssetBody]] = {
    AssetType.NOTES: NotesContent,
    AssetType.CHECKPOINT: CheckpointContent,
    AssetType.PRACTICE_SET: PracticeSetContent,
    AssetType.RUBRIC: RubricContent,
}


def build_asset_content(asset_type: AssetType, title: str, items: list[ContentItem]) -> AssetContent:
    return _CONTENT_CLASSES[AssetType(asset_type)](title=title, items=items)


def parse_asset_content(data: dict[str, Any]) -> AssetContent:
    return _ASSET_CONTENT_ADAPTER.validate_python(data)


# ========================================
# Fallback placeholder
# ========================================

def is_fallback_text(text: str | None) -> bool:
    return bool(text) and GROUNDING_RULES.fallback_message.lower() in text.lower()


def fallback_item(section: str) -> ContentItem:
    return ContentItem(section=section, text=GROUNDING_RULES.fallback_message, is_fallback=True)


def content_is_fallback_only(content: _AssetBody) -> bool:
    """True when every item, instructions included, is the fallback placeholder."""
    return bool(content.items) and all(
        item.is_fallback and item.text == GROUNDING_RULES.fallback_message for item in content.items
    )
