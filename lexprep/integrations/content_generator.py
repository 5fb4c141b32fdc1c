"""
Deterministic ContentGenerator.

Builds claim drafts straight from retrieved sources without a language model.
Used when no model-backed generator is configured and in tests. Sections with
no sources still get a draft, with no source ids, so the grounding step turns
it into the fallback placeholder and logs it.
"""

from __future__ import annotations

from lexprep.core.states import AssetType, ExamPhase, SourceType
from lexprep.grounding.content import ClaimDraft, GroundingSource
from lexprep.grounding.governance import GROUNDING_RULES

from .capabilities import DraftRequest

QUESTIONS_PER_PHASE = {
    ExamPhase.DISTANT: 3,
    ExamPhase.APPROACHING: 4,
    ExamPhase.CRITICAL: 5,
}


def _excerpt(text: str, limit: int = 240) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3].rstrip() + "..."


def _authority_label(source: GroundingSource) -> str:
    return source.citation or source.title


class TemplateContentGenerator:
    """ContentGenerator that phrases each source as one claim."""

    async def draft_claims(self, request: DraftRequest) -> list[ClaimDraft]:
        builder = {
            AssetType.NOTES: self._notes,
            AssetType.CHECKPOINT: self._checkpoint,
            AssetType.PRACTICE_SET: self._practice_set,
            AssetType.RUBRIC: self._rubric,
        }[AssetType(request.asset_type)]
        return builder(request)

    @staticmethod
    def _split(request: DraftRequest) -> tuple[list[GroundingSource], list[GroundingSource], list[GroundingSource]]:
        outline = [s for s in request.sources if s.source_type == SourceType.OUTLINE_TOPIC]
        lectures = [s for s in request.sources if s.source_type == SourceType.LECTURE_CHUNK]
        authorities = [s for s in request.sources if s.source_type == SourceType.AUTHORITY]
        return outline, lectures, authorities

    def _notes(self, request: DraftRequest) -> list[ClaimDraft]:
        outline, lectures, authorities = self._split(request)
        drafts: list[ClaimDraft] = []

        for topic in outline:
            drafts.append(ClaimDraft("Key Concepts", f"{topic.title}: {_excerpt(topic.text)}", [topic.key]))
        if not outline:
            drafts.append(ClaimDraft("Key Concepts", f"Key concepts of {request.skill_name}"))

        for chunk in lectures[: GROUNDING_RULES.lecture_excerpts_per_asset]:
            drafts.append(
                ClaimDraft(
                    "Lecture Insights",
                    f"From {chunk.title}: {_excerpt(chunk.text)}",
                    [chunk.key],
                    quote=chunk.text,
                )
            )
        if not lectures:
            drafts.append(ClaimDraft("Lecture Insights", f"Lecture guidance on {request.skill_name}"))

        for authority in authorities:
            drafts.append(
                ClaimDraft(
                    "Legal Authorities",
                    f"{_authority_label(authority)}: {_excerpt(authority.text)}",
                    [authority.key],
                    quote=authority.text,
                )
            )
        if not authorities:
            drafts.append(ClaimDraft("Legal Authorities", f"Governing legal authorities for {request.skill_name}"))
        return drafts

    def _checkpoint(self, request: DraftRequest) -> list[ClaimDraft]:
        outline, _, authorities = self._split(request)
        drafts: list[ClaimDraft] = []
        for topic in outline[:2]:
            drafts.append(ClaimDraft("Question", f"Explain the rule on {topic.title}.", [topic.key]))
        for authority in authorities[:1]:
            drafts.append(
                ClaimDraft("Question", f"What principle does {_authority_label(authority)} establish?", [authority.key])
            )
        if not drafts:
            drafts.append(ClaimDraft("Question", f"Core rule of {request.skill_name}"))
        return drafts

    def _practice_set(self, request: DraftRequest) -> list[ClaimDraft]:
        outline, lectures, authorities = self._split(request)
        wanted = QUESTIONS_PER_PHASE[ExamPhase(request.exam_phase)]
        pool = authorities + outline + lectures
        drafts = [
            ClaimDraft(
                "Question",
                f"Apply {_authority_label(source) if source.source_type == SourceType.AUTHORITY else source.title} "
                f"to a client scenario involving {request.skill_name}.",
                [source.key],
            )
            for source in pool[:wanted]
        ]
        if not drafts:
            drafts.append(ClaimDraft("Question", f"Practice scenario on {request.skill_name}"))
        return drafts

    def _rubric(self, request: DraftRequest) -> list[ClaimDraft]:
        outline, _, authorities = self._split(request)
        statutes = [a for a in authorities if a.citation and "act" in a.citation.lower()]
        criteria = [
            ("Legal Analysis", [t.key for t in outline[:2]]),
            ("Authority Citation", [a.key for a in authorities[:2]]),
            ("Statutory Framework", [s.key for s in statutes[:1]]),
            ("Practical Application", [t.key for t in outline[:1]]),
        ]
        return [
            ClaimDraft(name, f"{name} for {request.skill_name}", keys)
            for name, keys in criteria
        ]
