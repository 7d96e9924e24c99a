"""
Shared fixtures: in-memory database, deterministic clock, recording event bus
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("EVENTS_PUBLISH_TO_REDIS", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app.database import create_session_factory, session_scope
from app.models import Base, ClinicalSession, User
from app.modules.sync_engine import SyncEngine
from app.modules.workflow import WorkflowStateMachine
from app.schemas import ReferralPolicy
from app.services.clock import FixedClock
from app.services.event_bus import EventBus


class RecordingEventBus(EventBus):
    """Event bus that remembers everything published"""

    def __init__(self):
        super().__init__()
        self.published = []

    def publish(self, event):
        self.published.append(event)
        return super().publish(event)

    def names(self):
        return [event.event_name for event in self.published]


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def clock():
    """Starts 2024-03-01 09:00 and advances one second per read"""
    return FixedClock(datetime(2024, 3, 1, 9, 0, 0), step=timedelta(seconds=1))


@pytest.fixture
def event_bus():
    return RecordingEventBus()


@pytest.fixture
def sync_engine(session_factory, clock, event_bus):
    return SyncEngine(session_factory, clock=clock, event_bus=event_bus, referral_policy=ReferralPolicy.DISABLED)


@pytest.fixture
def workflow(session_factory, clock, event_bus):
    return WorkflowStateMachine(
        session_factory,
        clock=clock,
        event_bus=event_bus,
        reason_required=["*->REFERRED", "*->CLOSED"],
    )


@pytest.fixture
def make_session(session_factory):
    """Insert a clinical session directly and return its id"""

    def _make(state="NEW", triage="unknown", **fields):
        couch_id = fields.pop("couch_id", f"session:{uuid.uuid4().hex[:12]}")
        with session_scope(session_factory) as db:
            row = ClinicalSession(
                couch_id=couch_id,
                session_uuid=couch_id.split(":")[-1],
                workflow_state=state,
                triage_priority=triage,
                stage="assessment",
                status="open",
                **fields
            )
            db.add(row)
            db.flush()
            return row.id

    return _make


@pytest.fixture
def users(session_factory):
    """A small user directory"""
    with session_scope(session_factory) as db:
        db.add_all([
            User(id=7, uuid="3f0c2a9e-8b1d-4c5e-9f6a-1b2c3d4e5f60", email="Nurse.Jane@clinic.org",
                 username="nurse.jane", name="Jane Moyo", role="nurse"),
            User(id=12, uuid="a1b2c3d4-e5f6-4a7b-8c9d-0e1f2a3b4c5d", email="dr.banda@clinic.org",
                 username="dr.banda", name="Dr Banda", role="doctor"),
        ])
    return {"nurse": 7, "doctor": 12}
