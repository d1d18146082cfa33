"""
Shared fixtures: an in-memory SQLite database per test, a controllable
clock, and small helpers to seed buses and students.

StaticPool is required so that create_all and every session use the same
single connection; otherwise each pool checkout gets a new in-memory DB
that has no tables.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base, Bus, Student


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 3, 2, 7, 30, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


def add_bus(session, bus_id, capacity=50, shift_mode="Both", morning=0, evening=0,
            route_id=None, stop_ids=None, bus_number=None):
    bus = Bus(
        bus_id=bus_id,
        bus_number=bus_number,
        capacity=capacity,
        shift_mode=shift_mode,
        route_id=route_id or f"route-{bus_id}",
        stop_ids=stop_ids or [],
        morning_count=morning,
        evening_count=evening,
        total_count=morning + evening,
        status="active",
    )
    session.add(bus)
    return bus


def add_student(session, uid, bus_id, shift="Morning", stop_id="stop-1", route_id=None, name=None):
    student = Student(
        uid=uid,
        name=name or f"Student {uid}",
        bus_id=bus_id,
        route_id=route_id or f"route-{bus_id}",
        stop_id=stop_id,
        shift=shift,
        status="active",
    )
    session.add(student)
    return student


@pytest.fixture
def fleet(db_session):
    """
    Bus A (cap 50, Both, 10/5), bus B (cap 50, Both, 20/0),
    bus C (cap 10, Morning, 10/0), bus M (cap 30, Morning, 0/0).

    s1, s2 ride A in the morning; e1 rides A in the evening; b1 rides B in
    the morning.
    """
    add_bus(db_session, "A", morning=10, evening=5)
    add_bus(db_session, "B", morning=20, evening=0)
    add_bus(db_session, "C", capacity=10, shift_mode="Morning", morning=10)
    add_bus(db_session, "M", capacity=30, shift_mode="Morning")
    add_student(db_session, "s1", "A")
    add_student(db_session, "s2", "A")
    add_student(db_session, "e1", "A", shift="Evening")
    add_student(db_session, "b1", "B")
    db_session.commit()
    return db_session
