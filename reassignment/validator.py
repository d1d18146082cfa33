"""
Batch validation against fresh ledger state.

Deltas are computed per batch, not per move: moving one Morning student off
bus A and another onto bus A nets to zero for A, so swaps between full
buses validate even though a move-by-move check would reject them.

Rules, for every bus touched by the batch (source or target):
  - The bus must exist.
  - new_count = max(0, current_count + delta) per shift.
  - A shift whose delta is positive must not push its counter above
    capacity, and a bus gaining passengers must keep
    morning + evening <= capacity.
  - A positive morning delta needs a Morning or Both bus; a positive
    evening delta needs a Both bus.
  - Decreases are never rejected.

Every touched student is re-read as well: it must exist, still sit on the
plan's source bus, and ride the plan's shift.

validate() must run inside the same transaction as the writes that follow
it; the executor is its only production caller.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from allocation.ledger import is_shift_compatible, normalize_shift, normalize_shift_mode
from allocation.planner import ReassignmentPlan
from db.models import SHIFT_EVENING, SHIFT_MORNING, Bus, Student
from reassignment.errors import (
    BusNotFoundError,
    CapacityExceededError,
    ShiftIncompatibleError,
    StalePlanError,
    StudentNotFoundError,
)

logger = logging.getLogger(__name__)


@dataclass
class BusDelta:
    morning_delta: int = 0
    evening_delta: int = 0

    def add(self, shift: str, amount: int) -> None:
        if shift == SHIFT_MORNING:
            self.morning_delta += amount
        else:
            self.evening_delta += amount


@dataclass
class BusCheck:
    """Fresh counters for one bus and what the batch would turn them into."""
    bus: Bus
    delta: BusDelta
    morning_before: int
    evening_before: int
    morning_after: int
    evening_after: int


@dataclass
class ValidationResult:
    buses: dict[str, BusCheck] = field(default_factory=dict)
    students: dict[str, Student] = field(default_factory=dict)


def compute_deltas(plans: list[ReassignmentPlan]) -> dict[str, BusDelta]:
    """Net signed per-shift change for every bus the batch touches."""
    deltas: dict[str, BusDelta] = {}
    for p in plans:
        shift = normalize_shift(p.shift)
        deltas.setdefault(p.from_bus_id, BusDelta()).add(shift, -1)
        deltas.setdefault(p.to_bus_id, BusDelta()).add(shift, +1)
    return deltas


def check_bus(bus: Bus, delta: BusDelta) -> BusCheck:
    """
    Apply `delta` to the bus's current counters and enforce the capacity and
    shift-mode rules.  Does not mutate the bus.
    """
    morning = bus.morning_count or 0
    evening = bus.evening_count or 0
    capacity = bus.capacity or 0
    new_morning = max(0, morning + delta.morning_delta)
    new_evening = max(0, evening + delta.evening_delta)

    if delta.morning_delta > 0 and new_morning > capacity:
        raise CapacityExceededError(bus.label, SHIFT_MORNING, new_morning, capacity)
    if delta.evening_delta > 0 and new_evening > capacity:
        raise CapacityExceededError(bus.label, SHIFT_EVENING, new_evening, capacity)
    if (delta.morning_delta > 0 or delta.evening_delta > 0) \
            and new_morning + new_evening > capacity:
        raise CapacityExceededError(bus.label, "total", new_morning + new_evening, capacity)

    for shift, gained in ((SHIFT_MORNING, delta.morning_delta), (SHIFT_EVENING, delta.evening_delta)):
        if gained <= 0:
            continue
        try:
            mode = normalize_shift_mode(bus.shift_mode)
        except ValueError:
            # unrecognised stored mode accepts nobody
            raise ShiftIncompatibleError(bus.label, str(bus.shift_mode), shift) from None
        if not is_shift_compatible(shift, mode):
            raise ShiftIncompatibleError(bus.label, mode, shift)

    return BusCheck(
        bus=bus,
        delta=delta,
        morning_before=morning,
        evening_before=evening,
        morning_after=new_morning,
        evening_after=new_evening,
    )


def _check_student(student: Student, p: ReassignmentPlan) -> None:
    if student.bus_id != p.from_bus_id:
        raise StalePlanError(
            f"Student {p.student_id} is on bus {student.bus_id}, not {p.from_bus_id}"
        )
    try:
        stored_shift = normalize_shift(student.shift)
    except ValueError:
        raise StalePlanError(
            f"Student {p.student_id} has an unrecognised shift {student.shift!r}"
        ) from None
    if stored_shift != normalize_shift(p.shift):
        raise StalePlanError(
            f"Student {p.student_id} rides the {student.shift} shift, plan says {p.shift}"
        )


def validate(session: Session, plans: list[ReassignmentPlan]) -> ValidationResult:
    """
    Read every touched bus and student fresh and check the batch.

    Rows are loaded with SELECT ... FOR UPDATE (a no-op on SQLite) and
    populate_existing() so counters cached in the session's identity map are
    overwritten by what is in the database right now.  Buses are locked in
    sorted id order so overlapping batches cannot deadlock each other.

    Raises:
        ValidationError subclasses; nothing is written either way.
    """
    deltas = compute_deltas(plans)
    bus_ids = sorted(deltas)

    rows = (
        session.query(Bus)
        .filter(Bus.bus_id.in_(bus_ids))
        .order_by(Bus.bus_id)
        .with_for_update()
        .populate_existing()
        .all()
    )
    buses = {bus.bus_id: bus for bus in rows}

    result = ValidationResult()
    # Bus checks run in batch order (source of the first plan first) so the
    # first offending bus named in an error is the one the actor expects.
    for bus_id in deltas:
        bus = buses.get(bus_id)
        if bus is None:
            raise BusNotFoundError(bus_id)
        result.buses[bus_id] = check_bus(bus, deltas[bus_id])

    student_ids = [p.student_id for p in plans]
    students = {
        s.uid: s
        for s in (
            session.query(Student)
            .filter(Student.uid.in_(student_ids))
            .with_for_update()
            .populate_existing()
            .all()
        )
    }
    for p in plans:
        student = students.get(p.student_id)
        if student is None:
            raise StudentNotFoundError(p.student_id)
        _check_student(student, p)
        result.students[p.student_id] = student

    logger.debug("Validated batch of %d moves across %d buses.", len(plans), len(result.buses))
    return result
