"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
Integration tests run against a throwaway SQLite file through aiosqlite.
"""
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from lexprep.config import Settings  # noqa: E402
from lexprep.container import build_container  # noqa: E402
from lexprep.db.database import create_session_factory  # noqa: E402
from lexprep.db.models import (  # noqa: E402
    AuthorityPassage,
    AuthorityRecord,
    Base,
    LectureChunk,
    OutlineTopic,
    Skill,
    SkillChunkMap,
    SkillOutlineMap,
)
from lexprep.core.states import AuthorityTier, AuthorityType  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (require database)")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a temp database, with no retry delay."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'lexprep.db'}",
        job_backoff_base_seconds=0,
        worker_concurrency=1,
        worker_poll_interval_seconds=0.05,
        external_call_timeout_seconds=2.0,
        _env_file=None,
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_async_engine(settings.database_url)

    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def container(settings, session_factory):
    return build_container(settings=settings, session_factory=session_factory)


@pytest_asyncio.fixture
async def curriculum(session_factory):
    """
    Three active skills:
    - civil: outline topic, approved lecture chunk and a Tier A authority
    - bail: an unapproved lecture chunk only (no usable sources)
    - probate: nothing at all
    """
    civil = Skill(code="ATP100-JUR", name="Jurisdiction of civil courts", unit_id="atp-100", exam_weight=3.0)
    bail = Skill(code="ATP101-BAIL", name="Bail pending trial", unit_id="atp-101", exam_weight=2.0)
    probate = Skill(code="ATP102-GRANT", name="Grants of representation", unit_id="atp-102", exam_weight=1.0)

    topic = OutlineTopic(
        unit_id="atp-100",
        topic_number="1.2",
        title="Pecuniary and territorial jurisdiction",
        description="Suits are instituted in the court of the lowest grade competent to try them.",
    )
    chunk = LectureChunk(
        lecture_id="atp100-lec-03",
        lecture_title="Civil Litigation Lecture 3",
        chunk_index=4,
        text="Always confirm the pecuniary limit of the magistrate's court before filing a plaint.",
        start_seconds=610,
        end_seconds=655,
    )
    stray_chunk = LectureChunk(
        lecture_id="atp101-lec-01",
        lecture_title="Criminal Litigation Lecture 1",
        chunk_index=0,
        text="Unreviewed transcript text about bail terms.",
    )
    authority = AuthorityRecord(
        title="Civil Procedure Act",
        citation="Civil Procedure Act (Cap. 21), s. 11",
        authority_type=AuthorityType.STATUTE,
        source_url="https://kenyalaw.org/kl/fileadmin/pdfdownloads/Acts/CivilProcedureAct.pdf",
        domain="kenyalaw.org",
        tier=AuthorityTier.A,
        jurisdiction="Kenya",
        unit_ids=["atp-100"],
        skill_ids=[],
        is_verified=True,
    )
    authority.passages = [
        AuthorityPassage(
            text="Every suit shall be instituted in the court of the lowest grade competent to try it.",
            locator={"section": "11"},
            is_verified=True,
        )
    ]

    async with session_factory() as session:
        async with session.begin():
            session.add_all([civil, bail, probate, topic, chunk, stray_chunk, authority])
            await session.flush()
            session.add_all(
                [
                    SkillOutlineMap(skill_id=civil.id, topic_id=topic.id, coverage_strength=1.0),
                    SkillChunkMap(skill_id=civil.id, chunk_id=chunk.id, confidence=0.9, is_approved=True),
                    SkillChunkMap(skill_id=bail.id, chunk_id=stray_chunk.id, confidence=0.8, is_approved=False),
                ]
            )

    return SimpleNamespace(
        civil=civil,
        bail=bail,
        probate=probate,
        topic=topic,
        chunk=chunk,
        authority=authority,
        passage=authority.passages[0],
    )
