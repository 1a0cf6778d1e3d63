"""
pytest fixtures for the rota service.

Every test gets its own in-memory SQLite database, a ChangeFeed with an
event recorder attached, and a fixed clock: Monday 19 October 2026, 10:00
in America/Toronto (day_of_week 1, minute 600).
"""
from datetime import date, datetime
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from rota import models  # noqa: F401
from rota.feed import ChangeFeed
from rota.machine import Holder, ResourceStateMachine
from rota.models import BlockCreate, ResourceCreate
from rota.schedule import ScheduleService

TZ = ZoneInfo("America/Toronto")
MONDAY_10AM = datetime(2026, 10, 19, 10, 0, tzinfo=TZ)
MONDAY = 1

ALICE = Holder("alice", "Alice")
BOB = Holder("bob", "Bob")
ADMIN = Holder("root", "Admin", is_admin=True)


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def tables(self):
        return [(e.table, e.operation) for e in self.events]


def new_resource(name="Tech Sourcing", remaining_tokens=100):
    return ResourceCreate(
        name=name,
        remaining_tokens=remaining_tokens,
        replenish_amount=150,
        next_refresh_date=date(2026, 11, 1),
        username="sourcing@example.com",
        password="hunter2",
    )


def new_block(resource_id, holder=ALICE, day=MONDAY, start=540, end=1020, token_limit=20):
    return BlockCreate(
        resource_id=resource_id,
        holder_id=holder.id,
        holder_name=holder.name,
        day_of_week=day,
        start_time=start,
        end_time=end,
        token_limit=token_limit,
    )


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def events(feed):
    recorder = Recorder()
    feed.subscribe("*", recorder)
    return recorder


@pytest.fixture
def machine(session, feed):
    return ResourceStateMachine(session, feed, bootstrap_open=True, tz=TZ, clock=lambda: MONDAY_10AM)


@pytest.fixture
def schedule(session, feed):
    return ScheduleService(session, feed)


@pytest.fixture
def resource(machine):
    return machine.create_resource(new_resource())
