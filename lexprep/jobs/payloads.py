"""
Job payloads: one pydantic model per job type, joined as a tagged union.

The job_type field is the discriminator. Each payload names the entity it acts
on so the queue can derive an idempotency key (job_type, target_id).
"""

from __future__ import annotations

from datetime import date
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from lexprep.core.errors import ValidationError
from lexprep.core.states import AssetType, JobType


class _Payload(BaseModel):
    def target_id(self) -> str:
        raise NotImplementedError

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class PrecomputeTodayPayload(_Payload):
    job_type: Literal["PRECOMPUTE_TODAY"] = "PRECOMPUTE_TODAY"
    user_id: str
    study_date: date | None = None

    def target_id(self) -> str:
        return f"{self.user_id}:{self.study_date.isoformat() if self.study_date else 'today'}"


class GenerateSessionAssetPayload(_Payload):
    job_type: Literal["GENERATE_SESSION_ASSET"] = "GENERATE_SESSION_ASSET"
    session_id: UUID
    asset_id: UUID
    asset_type: AssetType
    skill_id: UUID

    def target_id(self) -> str:
        return str(self.asset_id)


class RetrieveAuthoritiesPayload(_Payload):
    job_type: Literal["RETRIEVE_AUTHORITIES"] = "RETRIEVE_AUTHORITIES"
    skill_id: UUID
    concept: str | None = None
    jurisdiction: str | None = None

    def target_id(self) -> str:
        return str(self.skill_id)


class ResolveMissingAuthoritiesPayload(_Payload):
    job_type: Literal["RESOLVE_MISSING_AUTHORITIES"] = "RESOLVE_MISSING_AUTHORITIES"
    skill_id: UUID

    def target_id(self) -> str:
        return str(self.skill_id)


JobPayload = Annotated[
    Union[
        PrecomputeTodayPayload,
        GenerateSessionAssetPayload,
        RetrieveAuthoritiesPayload,
        ResolveMissingAuthoritiesPayload,
    ],
    Field(discriminator="job_type"),
]

_PAYLOAD_ADAPTER: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_payload(job_type: JobType | str, data: dict[str, Any]) -> JobPayload:
    """
    Validate raw payload data against the schema for job_type.

    Raises:
        ValidationError: unknown job type or payload not matching its schema
    """
    try:
        job_type = JobType(job_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown job type: {job_type}") from exc
    try:
        return _PAYLOAD_ADAPTER.validate_python({**data, "job_type": job_type.value})
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {job_type.value} payload: {exc.errors()[0]['msg']}") from exc


def idempotency_key(payload: JobPayload) -> str:
    return f"{payload.job_type}:{payload.target_id()}"
