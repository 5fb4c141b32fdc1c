"""
Service wiring.

Capabilities (content generator, authority fetcher) are built once here and
passed down; nothing below this module constructs its own collaborators.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lexprep.config import Settings, get_settings
from lexprep.db.database import get_session_factory
from lexprep.grounding.authority_store import AuthorityStore
from lexprep.grounding.retriever import GroundingRetriever
from lexprep.grounding.validator import GroundingValidator
from lexprep.integrations.authority_fetcher import HttpAuthorityFetcher
from lexprep.integrations.capabilities import AuthorityFetcher, ContentGenerator
from lexprep.integrations.content_generator import TemplateContentGenerator
from lexprep.jobs.handlers import JobHandlers
from lexprep.jobs.queue import JobQueue
from lexprep.jobs.worker import JobWorker
from lexprep.learning.asset_generator import AssetGenerator
from lexprep.learning.mastery_model import MasteryModel, MasteryParams
from lexprep.learning.onboarding import OnboardingService
from lexprep.learning.session_planner import SessionPlanner


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    queue: JobQueue
    mastery: MasteryModel
    store: AuthorityStore
    retriever: GroundingRetriever
    validator: GroundingValidator
    planner: SessionPlanner
    asset_generator: AssetGenerator
    onboarding: OnboardingService
    handlers: JobHandlers

    @property
    def stats_window(self) -> timedelta:
        return timedelta(hours=self.settings.job_stats_window_hours)

    @property
    def failure_window(self) -> timedelta:
        return timedelta(hours=self.settings.job_failure_window_hours)

    def build_worker(self, concurrency: int | None = None) -> JobWorker:
        config = self.settings.get_worker_config()
        return JobWorker(
            self.queue,
            self.handlers.registry(),
            concurrency=concurrency or config["concurrency"],
            poll_interval=config["poll_interval"],
            job_timeout=config["job_timeout"],
            on_terminal_failure=self.handlers.on_terminal_failure,
        )


def build_container(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    content_generator: ContentGenerator | None = None,
    authority_fetcher: AuthorityFetcher | None = None,
) -> ServiceContainer:
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    if authority_fetcher is None and settings.has_authority_search():
        authority_fetcher = HttpAuthorityFetcher(
            settings.authority_search_url,
            timeout_seconds=settings.external_call_timeout_seconds,
        )

    queue = JobQueue(session_factory, **settings.get_queue_config())
    mastery = MasteryModel(
        session_factory,
        MasteryParams.from_settings(settings),
        weak_threshold=settings.mastery_weak_threshold,
    )
    store = AuthorityStore(session_factory)
    retriever = GroundingRetriever(session_factory, store, settings, fetcher=authority_fetcher)
    validator = GroundingValidator(session_factory)
    planner = SessionPlanner(session_factory, mastery, queue, settings)
    asset_generator = AssetGenerator(
        session_factory,
        retriever,
        validator,
        content_generator or TemplateContentGenerator(),
        planner,
        settings,
    )
    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        queue=queue,
        mastery=mastery,
        store=store,
        retriever=retriever,
        validator=validator,
        planner=planner,
        asset_generator=asset_generator,
        onboarding=OnboardingService(session_factory, mastery, queue),
        handlers=JobHandlers(planner, asset_generator, retriever),
    )
