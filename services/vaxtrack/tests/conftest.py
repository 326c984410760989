import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from services.vaxtrack import models
from services.vaxtrack.lifecycle import ScheduleLifecycle
from services.vaxtrack.store import SqlRecordStore
from services.vaxtrack.vaccinations import VaccinationRecords


@pytest.fixture
def anyio_backend():
    # Force asyncio backend so tests don't require trio.
    return "asyncio"


@pytest.fixture
def test_db_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    models.Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    db = Session()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def store(test_db_session):
    return SqlRecordStore(test_db_session)


@pytest.fixture
def lifecycle(store):
    return ScheduleLifecycle(store)


@pytest.fixture
def vaccinations(lifecycle):
    return VaccinationRecords(lifecycle.store, lifecycle.guard, lifecycle)
