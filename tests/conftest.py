"""Shared test fixtures."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from abtest.database import Base
from abtest.middleware.logging import configure_logging
from abtest.schemas.experiment import AudienceFilter, CreateExperimentRequest, VariantSpec
from abtest.services.experiments import ExperimentService
from abtest.services.sql_store import SqlExperimentStore
from abtest.services.store import InMemoryExperimentStore
import abtest.models  # noqa: F401

configure_logging("WARNING")


def make_request(*allocations, controls=None, audience=None, name="Checkout test", **kwargs):
    """
    Build a CreateExperimentRequest with one variant per allocation.

    ``controls`` lists the indexes flagged as control (default: first).
    """
    allocations = allocations or (50, 50)
    controls = (0,) if controls is None else controls
    return CreateExperimentRequest(
        name=name,
        variants=[
            VariantSpec(
                name=f"variant_{i}",
                allocation=allocation,
                is_control=i in controls,
                config={"index": i}
            )
            for i, allocation in enumerate(allocations)
        ],
        audience=AudienceFilter(**audience) if audience else None,
        **kwargs
    )


@pytest.fixture
def memory_store():
    """Fresh in-memory store."""
    return InMemoryExperimentStore()


@pytest.fixture
def sql_engine():
    """In-memory SQLite engine shared across threads via a single connection."""
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
def sql_store(sql_engine):
    """SQL store over the in-memory SQLite engine."""
    return SqlExperimentStore(sessionmaker(autoflush=False, bind=sql_engine))


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Each store implementation in turn."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def service(store):
    """Service over each store implementation."""
    return ExperimentService(store)


@pytest.fixture
def memory_service(memory_store):
    """Service over the in-memory store (for large simulated populations)."""
    return ExperimentService(memory_store)
