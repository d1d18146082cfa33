"""
SQLAlchemy ORM models for the fleet: buses, students and the reassignment
audit trail.

Bus and Student carry a `version` column wired into SQLAlchemy's
version_id_col, so every UPDATE is conditional on the version that was read.
A concurrent commit in between makes the flush raise StaleDataError, which
the reassignment executor treats as a retryable conflict.

Timestamps are stored as ISO 8601 strings.
"""

from sqlalchemy import (
    JSON, Column, ForeignKey, Integer, String, Text
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

SHIFT_MORNING = "Morning"
SHIFT_EVENING = "Evening"
SHIFT_BOTH = "Both"


class Bus(Base):
    __tablename__ = "buses"

    bus_id = Column(String, primary_key=True)
    bus_number = Column(String, nullable=True)
    capacity = Column(Integer, nullable=False)
    shift_mode = Column(String, nullable=False, default=SHIFT_BOTH)  # Morning | Evening | Both
    route_id = Column(String, index=True, nullable=True)
    status = Column(String, default="active")
    stop_ids = Column(JSON, default=list)  # stops served by the bus's route

    # Capacity ledger, mutated only inside a reassignment transaction
    morning_count = Column(Integer, nullable=False, default=0)
    evening_count = Column(Integer, nullable=False, default=0)
    total_count = Column(Integer, nullable=False, default=0)

    version = Column(Integer, nullable=False)
    updated_at = Column(String)  # ISO 8601 timestamp

    students = relationship("Student", back_populates="bus")

    __mapper_args__ = {"version_id_col": version}

    @property
    def label(self) -> str:
        return self.bus_number or self.bus_id


class Student(Base):
    __tablename__ = "students"

    uid = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    bus_id = Column(String, ForeignKey("buses.bus_id"), index=True, nullable=True)
    route_id = Column(String, nullable=True)
    stop_id = Column(String, nullable=True)
    shift = Column(String, nullable=False)  # Morning | Evening
    status = Column(String, default="active", index=True)

    version = Column(Integer, nullable=False)
    updated_at = Column(String)

    bus = relationship("Bus", back_populates="students")

    __mapper_args__ = {"version_id_col": version}


class ReassignmentLog(Base):
    """Append-only audit record of one committed or reverted batch."""
    __tablename__ = "reassignment_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    operation_id = Column(String, unique=True, index=True, nullable=False)
    type = Column(String, index=True, nullable=False)  # "reassignment" | "revert"
    actor_id = Column(String, index=True)
    actor_name = Column(String)
    reason = Column(Text)
    summary = Column(Text)
    plans = Column(JSON, default=list)    # studentId/name/from/to/shift per passenger
    changes = Column(JSON, default=list)  # before/after per touched document
    rollback_of = Column(String, nullable=True, index=True)
    timestamp = Column(String, index=True)  # ISO 8601 timestamp
