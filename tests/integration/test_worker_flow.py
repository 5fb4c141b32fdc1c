"""
End-to-end worker tests: plan a day, drain the queue, inspect the assets.

Every READY asset must either carry grounding refs or consist solely of the
fallback placeholder.
"""

from datetime import date

import pytest
from sqlalchemy import select

from lexprep.container import build_container
from lexprep.core.errors import JobExecutionError
from lexprep.core.states import AssetStatus, JobStatus, JobType, MissingAuthorityTag, SessionStatus
from lexprep.db.models import EvidenceSpan, StudyAsset, StudySession
from lexprep.grounding.content import GroundingRefs, content_is_fallback_only, parse_asset_content
from lexprep.integrations.capabilities import FetchedAuthority, FetchedPassage
from lexprep.integrations.content_generator import TemplateContentGenerator

STUDY_DATE = date(2026, 3, 2)


class BrokenGenerator:
    async def draft_claims(self, request):
        raise JobExecutionError("content model rejected the prompt", transient=False)


class FlakyGenerator(TemplateContentGenerator):
    def __init__(self, failures: int):
        self.failures = failures

    async def draft_claims(self, request):
        if self.failures:
            self.failures -= 1
            raise JobExecutionError("content model overloaded")
        return await super().draft_claims(request)


class StaticFetcher:
    async def search(self, query):
        return [
            FetchedAuthority(
                title="Criminal Procedure Code",
                url="https://kenyalaw.org/kl/fileadmin/pdfdownloads/Acts/CriminalProcedureCode.pdf",
                citation="Criminal Procedure Code (Cap. 75), s. 123",
                passages=[
                    FetchedPassage(
                        text="A person accused of an offence may be released on bail.",
                        locator={"section": "123"},
                    )
                ],
            )
        ]


async def assets_by_skill(session_factory):
    async with session_factory() as session:
        rows = await session.execute(
            select(StudyAsset, StudySession.skill_id).join(StudySession, StudySession.id == StudyAsset.session_id)
        )
        grouped = {}
        for asset, skill_id in rows.all():
            grouped.setdefault(skill_id, []).append(asset)
        return grouped


def is_grounded_or_fallback(asset: StudyAsset) -> bool:
    refs = GroundingRefs.model_validate(asset.grounding_refs or {})
    return not refs.is_empty() or content_is_fallback_only(parse_asset_content(asset.content))


class TestDrainAfterPlanning:
    @pytest.mark.asyncio
    async def test_every_asset_ends_ready_and_grounded(self, container, session_factory, curriculum):
        plan = await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        processed = await container.build_worker(concurrency=1).drain()

        assert processed == 10
        grouped = await assets_by_skill(session_factory)
        assets = [a for group in grouped.values() for a in group]
        assert len(assets) == 8
        assert all(a.status == AssetStatus.READY for a in assets)
        assert all(is_grounded_or_fallback(a) for a in assets)

        for session_id in plan.session_ids:
            view = await container.planner.describe_session(session_id)
            assert view.status == SessionStatus.READY

        jobs = await container.queue.list_jobs()
        assert {j.status for j in jobs} == {JobStatus.COMPLETED}

    @pytest.mark.asyncio
    async def test_grounded_skill_gets_citations_and_evidence(self, container, session_factory, curriculum):
        await container.planner.plan_daily_sessions("u1", STUDY_DATE)
        await container.build_worker(concurrency=1).drain()

        civil_assets = (await assets_by_skill(session_factory))[curriculum.civil.id]

        assert not any(a.used_fallback for a in civil_assets)
        notes = [a for a in civil_assets if a.asset_type.value == "NOTES"][0]
        refs = GroundingRefs.model_validate(notes.grounding_refs)
        assert refs.authority_ids == [str(curriculum.authority.id)]
        async with session_factory() as session:
            spans = list((await session.execute(select(EvidenceSpan))).scalars())
        assert {s.target_id for s in spans} == {a.id for a in civil_assets}

    @pytest.mark.asyncio
    async def test_ungrounded_skill_falls_back_and_is_logged(self, container, session_factory, curriculum):
        await container.planner.plan_daily_sessions("u1", STUDY_DATE)
        await container.build_worker(concurrency=1).drain()

        bail_assets = (await assets_by_skill(session_factory))[curriculum.bail.id]

        assert all(a.used_fallback for a in bail_assets)
        assert all(content_is_fallback_only(parse_asset_content(a.content)) for a in bail_assets)
        entries = await container.retriever.list_missing_authorities(skill_id=curriculum.bail.id)
        assert {e.asset_id for e in entries} == {a.id for a in bail_assets}
        assert MissingAuthorityTag.MISSING_AUTHORITY in {e.error_tag for e in entries}

    @pytest.mark.asyncio
    async def test_refresh_runs_before_generation(self, settings, session_factory, curriculum):
        container = build_container(settings=settings, session_factory=session_factory, authority_fetcher=StaticFetcher())
        await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        await container.build_worker(concurrency=1).drain()

        bail_assets = (await assets_by_skill(session_factory))[curriculum.bail.id]
        notes = [a for a in bail_assets if a.asset_type.value == "NOTES"][0]
        assert GroundingRefs.model_validate(notes.grounding_refs).authority_ids
        refresh = await container.queue.list_jobs(job_type=JobType.RETRIEVE_AUTHORITIES)
        assert all(j.result["stored"] == 1 for j in refresh)


class TestPrecompute:
    @pytest.mark.asyncio
    async def test_precompute_job_plans_and_generates(self, container, curriculum):
        await container.queue.enqueue(JobType.PRECOMPUTE_TODAY, {"user_id": "u1", "study_date": STUDY_DATE})

        await container.build_worker(concurrency=1).drain()

        [precompute] = await container.queue.list_jobs(job_type=JobType.PRECOMPUTE_TODAY)
        assert precompute.status == JobStatus.COMPLETED
        assert precompute.result["created"] is True
        assert len(precompute.result["session_ids"]) == 2
        generated = await container.queue.list_jobs(job_type=JobType.GENERATE_SESSION_ASSET)
        assert len(generated) == 8
        assert all(j.status == JobStatus.COMPLETED for j in generated)


class TestGenerationFailures:
    @pytest.mark.asyncio
    async def test_permanent_failure_marks_asset_failed(self, settings, session_factory, curriculum):
        container = build_container(settings=settings, session_factory=session_factory, content_generator=BrokenGenerator())
        await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        await container.build_worker(concurrency=1).drain()

        generated = await container.queue.list_jobs(job_type=JobType.GENERATE_SESSION_ASSET)
        assert all(j.status == JobStatus.FAILED for j in generated)
        assert all(j.attempts == 1 for j in generated)
        grouped = await assets_by_skill(session_factory)
        assets = [a for group in grouped.values() for a in group]
        assert all(a.status == AssetStatus.FAILED for a in assets)
        assert all("content model rejected the prompt" in a.generation_error for a in assets)

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, settings, session_factory, curriculum):
        container = build_container(settings=settings, session_factory=session_factory, content_generator=FlakyGenerator(1))
        await container.planner.plan_daily_sessions("u1", STUDY_DATE)

        await container.build_worker(concurrency=1).drain()

        generated = await container.queue.list_jobs(job_type=JobType.GENERATE_SESSION_ASSET)
        assert all(j.status == JobStatus.COMPLETED for j in generated)
        assert sorted(j.attempts for j in generated) == [1] * 7 + [2]
        grouped = await assets_by_skill(session_factory)
        assert all(a.status == AssetStatus.READY for group in grouped.values() for a in group)
