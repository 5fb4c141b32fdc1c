# SQLAlchemy models
from .authority import (
    AuthorityPassage,
    AuthorityRecord,
    EvidenceSpan,
    MissingAuthorityLog,
)
from .base import Base, utcnow
from .curriculum import (
    LectureChunk,
    OutlineTopic,
    Skill,
    SkillChunkMap,
    SkillOutlineMap,
)
from .jobs import BackgroundJob
from .mastery import Attempt, ExamProfile, MasteryState
from .study import StudyAsset, StudySession

__all__ = [
    "Attempt",
    "AuthorityPassage",
    "AuthorityRecord",
    "BackgroundJob",
    "Base",
    "EvidenceSpan",
    "ExamProfile",
    "LectureChunk",
    "MasteryState",
    "MissingAuthorityLog",
    "OutlineTopic",
    "Skill",
    "SkillChunkMap",
    "SkillOutlineMap",
    "StudyAsset",
    "StudySession",
    "utcnow",
]
