"""Shared test fixtures."""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from flaglab.database import Base, get_db
from flaglab.api.dependencies import get_evaluation_cache
from flaglab.services.evaluation_cache import EvaluationCache
import flaglab.models  # noqa: F401


@pytest.fixture
def engine():
    """In-memory SQLite shared by every connection of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    """Create test database session."""
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()

    yield session

    session.close()


@pytest.fixture
def cache():
    """Fresh in-process evaluation cache."""
    return EvaluationCache(ttl_seconds=60)


@pytest.fixture
def client(db, cache):
    """API client bound to the test session and cache."""
    from flaglab.main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_evaluation_cache] = lambda: cache

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def tenant_headers():
    return {"X-Tenant-ID": "tenant_a"}
