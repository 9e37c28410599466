"""
Shared fixtures for guidance-video tests.
"""

import os
from pathlib import Path
from typing import Generator

# ============================================================================
# Set test environment BEFORE any guidance_video imports
# ============================================================================
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["WORKSPACE_REAPER_INTERVAL_SECONDS"] = "0"

import guidance_video.core.config
guidance_video.core.config.get_settings.cache_clear()

import pytest
from faker import Faker
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from guidance_video.api.main import create_app
from guidance_video.core.config import Settings
from guidance_video.models import Base
from guidance_video.services import JobStore
from fakes import FakeTranscoder, media_bytes, write_media

fake = Faker()

E2E_BASE_URL = os.getenv("E2E_BASE_URL")


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture(scope="function")
def db_engine():
    """Create in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a database session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def store(session_factory) -> JobStore:
    return JobStore(session_factory)


# ============================================================================
# Settings and media fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a per-test directory."""
    return Settings(
        base_dir=tmp_path / "guidance-videos",
        database_url="sqlite:///:memory:",
        worker_concurrency=1,
        workspace_reaper_interval_seconds=0,
        max_file_size_mb=1,
        max_duration_seconds=120,
    )


@pytest.fixture
def transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def challenge_id() -> str:
    """Random challenge id in the accepted alphabet."""
    return f"challenge-{fake.pystr(min_chars=6, max_chars=10)}"


@pytest.fixture
def raw_video(settings: Settings) -> Path:
    """A 10 second raw upload already saved under raw/."""
    return write_media(settings.raw_dir / f"{fake.uuid4()}.webm", duration=10.0)


# ============================================================================
# API Fixtures
# ============================================================================


@pytest.fixture
def client(settings: Settings, transcoder: FakeTranscoder, db_engine) -> Generator[TestClient, None, None]:
    """Full app with the fake transcoder and the in-memory database."""
    app = create_app(settings=settings, transcoder=transcoder, engine=db_engine)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def wait_for_jobs(client: TestClient):
    """Block until the app's transcode pool has handled everything submitted so far."""

    def _wait() -> None:
        client.app.state.pool.join()

    return _wait


@pytest.fixture
def upload(client: TestClient, challenge_id: str):
    """POST a guidance video; keyword arguments override the form fields."""

    def _upload(
        content: bytes | None = None,
        content_type: str = "video/webm",
        filename: str = "recording.webm",
        headers: dict | None = None,
        **fields,
    ):
        data = {"challengeId": challenge_id, "questId": "quest-1"}
        data.update(fields)
        data = {k: v for k, v in data.items() if v is not None}
        files = {"video": (filename, content if content is not None else media_bytes(), content_type)}
        return client.post("/api/guidance/videos", data=data, files=files, headers=headers or {})

    return _upload


# ============================================================================
# E2E Fixtures
# ============================================================================


@pytest.fixture
def base_url() -> str:
    """Base URL of a running service; E2E tests skip when it is not configured."""
    if not E2E_BASE_URL:
        pytest.skip("E2E_BASE_URL not set")
    return E2E_BASE_URL
