"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- In-memory SQLite session factory (alias/preference store, session logs)
- SQL-backed memory service
- Catalog credential and fake catalog
"""

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from meallog.db.models import Base
from meallog.orchestrator.models import CatalogCredential
from meallog.services.memory_service import SqlUserMemoryService
from tests.helpers import FakeCatalog

# ============================================================================
# Pytest Markers
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: tests that drive several components together"
    )


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    """In-memory SQLite shared by every session from the factory."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def memory(session_factory) -> SqlUserMemoryService:
    """SQL-backed alias/preference store on the in-memory database."""
    return SqlUserMemoryService(session_factory)


# ============================================================================
# Catalog Fixtures
# ============================================================================


@pytest.fixture
def credential() -> CatalogCredential:
    return CatalogCredential(user_id=1001, token="tok-abc")


@pytest.fixture
def fake_catalog() -> FakeCatalog:
    return FakeCatalog()
