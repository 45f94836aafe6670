"""
Shared test fixtures for docsite-ingest.

Provides:
- db_session: In-memory SQLite session with all tables created
- file_session_factory: sessionmaker over a throwaway SQLite file, for
  tests that need several independent sessions (claim races, worker)
- client: FastAPI TestClient with DB dependency override
- cfg: Settings tuned for tests (no backoff sleeps, example CDN host)
- fake_storage, fake_downloader: see fakes.py
"""

import os

# Force sqlite for tests; must be set before any docsite_ingest imports.
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from docsite_ingest.core.config import Settings
from docsite_ingest.entities.base import Base
from fakes import FakeDownloader, FakeStorage

# Import ALL entity modules so Base.metadata.create_all() registers them.
import docsite_ingest.entities.page  # noqa: F401
import docsite_ingest.entities.image  # noqa: F401
import docsite_ingest.entities.scrape_job  # noqa: F401


def _enable_foreign_keys(engine):
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _enable_foreign_keys(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """In-memory SQLite for unit tests. Never hits production DB."""
    TestSession = sessionmaker(bind=db_engine)
    session = TestSession()
    yield session
    session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """Independent sessions over one SQLite file."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'jobs.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    _enable_foreign_keys(engine)
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


@pytest.fixture
def client(db_session: Session):
    """FastAPI TestClient with DB dependency overridden to use in-memory SQLite."""
    from fastapi.testclient import TestClient
    from docsite_ingest.core.database import get_db
    from docsite_ingest.main import app
    from docsite_ingest.routers.pages import get_storage

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_storage] = lambda: None
    with TestClient(app, raise_server_exceptions=False) as tc:
        yield tc
    app.dependency_overrides.clear()


@pytest.fixture
def cfg():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite:///:memory:",
        SITE_PROJECT_URL="https://docs.example.com",
        IMAGE_NORMALIZE_HOSTS="cdn.example.com",
        IMAGE_UPLOAD_BACKOFF_SECONDS=0,
        COMMIT_BACKOFF_SECONDS=0,
        COMMIT_MAX_BACKOFF_SECONDS=0,
        STORAGE_URL="https://storage.example.com",
        STORAGE_SERVICE_KEY="service-key",
        JOB_POLL_INTERVAL_MS=10,
    )


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def fake_downloader():
    return FakeDownloader()
