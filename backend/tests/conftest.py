"""Pytest configuration and fixtures"""
import os

# Keep the app's module-level engine off the real data directory
os.environ.setdefault("PERMAVID_DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from permavid.main import app
from permavid.models.database import Base
from permavid.repository import QueueRepository
from permavid.routers.queue import get_process_registry, get_repository
from permavid.services.extractor import ProcessRegistry

# Use in-memory SQLite for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db():
    """Create test database"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def repo(db):
    """Repository over the test database (each call opens its own session)"""
    return QueueRepository(TestingSessionLocal)


@pytest.fixture
def registry():
    return ProcessRegistry()


@pytest.fixture
def client(repo, registry):
    """Create test client"""
    app.dependency_overrides[get_repository] = lambda: repo
    app.dependency_overrides[get_process_registry] = lambda: registry
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def download_dir(tmp_path):
    path = tmp_path / "downloads"
    path.mkdir()
    return path
