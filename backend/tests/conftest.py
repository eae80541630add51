import os

# Keep app startup (init_db) off the on-disk database during tests.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from typing import Callable, List, Optional, Sequence

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from app.config import QueueReorderOptions
from app.database import get_session
from app.main import app
from app.models.event import Event
from app.models.queue_entry import QueueEntry
from app.models.reorder_audit import ReorderAudit  # noqa: F401
from app.services.queue_optimizer import CpSatQueueOptimizer
from app.services.queue_reorder import QueueReorderCoordinator
from app.services.reorder_plan_cache import InMemoryReorderPlanCache

TEST_DATABASE_URL = "sqlite:///:memory:"

# Small, reproducible solver settings for every test that builds a coordinator.
TEST_OPTIONS = QueueReorderOptions(
    mature_policy_default="Defer",
    plan_ttl_seconds=600,
    default_movement_cap=0,
    confirmation_threshold=6,
    frozen_head_count=0,
    solver_time_seconds=5.0,
    solver_num_workers=1,
    solver_random_seed=1,
)


@pytest.fixture(name="session", scope="function")
def session_fixture():
    """Fresh in-memory database per test.

    StaticPool keeps a single connection so every Session sees the same
    :memory: database (the TestClient runs requests on another thread).
    """
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)

    with Session(engine) as session:
        yield session


@pytest.fixture(name="options")
def options_fixture() -> QueueReorderOptions:
    return TEST_OPTIONS


@pytest.fixture(name="coordinator")
def coordinator_fixture(options: QueueReorderOptions) -> QueueReorderCoordinator:
    return QueueReorderCoordinator(CpSatQueueOptimizer(), InMemoryReorderPlanCache(), options)


@pytest.fixture(name="client")
def client_fixture(session: Session, coordinator: QueueReorderCoordinator):
    """Test client with the database session and coordinator overridden.

    The override MUST be in place before TestClient() is created.
    """

    def get_session_override():
        return session

    app.dependency_overrides[get_session] = get_session_override
    previous = app.state.reorder_coordinator
    app.state.reorder_coordinator = coordinator

    with TestClient(app) as client:
        yield client

    app.state.reorder_coordinator = previous
    app.dependency_overrides.clear()


@pytest.fixture(name="make_queue")
def make_queue_fixture(session: Session) -> Callable[..., List[QueueEntry]]:
    """Create an event with one live entry per requestor, positions 1..N.

    Returns the entries in play order; entries[0].event_id is the event.
    """

    def _make_queue(
        requestors: Sequence[str],
        mature: Optional[Sequence[bool]] = None,
        event_name: str = "Friday Night Karaoke",
    ) -> List[QueueEntry]:
        event = Event(name=event_name, venue="Main Stage")
        session.add(event)
        session.commit()
        session.refresh(event)

        entries = []
        for index, name in enumerate(requestors):
            entry = QueueEntry(
                event_id=event.id,
                requestor_user_name=name,
                song_title=f"Song {index + 1}",
                song_artist=f"Artist {index + 1}",
                is_mature=bool(mature[index]) if mature else False,
                position=index + 1,
            )
            session.add(entry)
            entries.append(entry)
        session.commit()
        for entry in entries:
            session.refresh(entry)
        return entries

    return _make_queue


@pytest.fixture(name="make_event")
def make_event_fixture(session: Session) -> Callable[[], Event]:
    def _make_event() -> Event:
        event = Event(name="Empty Night")
        session.add(event)
        session.commit()
        session.refresh(event)
        return event

    return _make_event
