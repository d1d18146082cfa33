"""
Reassignment planner: turns passenger selections into proposed moves.

Pure computation: nothing here reads or writes the database.  The planner
does not enforce capacity; a plan it produces can still be rejected by the
validator when checked against fresh ledger state.

Two entry points:
  plan():    the actor already picked a target bus per passenger.
  suggest(): greedy load-balanced distribution of selected passengers
             across candidate buses that serve their stop and shift.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from allocation.ledger import is_shift_compatible, normalize_shift
from reassignment.errors import PlanError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReassignmentPlan:
    student_id: str
    student_name: str
    from_bus_id: str
    to_bus_id: str
    to_route_id: str
    shift: str                        # Morning | Evening
    from_route_id: str = ""
    to_bus_number: str = ""
    stop_id: str = ""                 # empty = keep the student's current stop


@dataclass(frozen=True)
class StudentSelection:
    """One passenger picked off the source bus, with an explicit target."""
    student_id: str
    student_name: str
    shift: str
    to_bus_id: str
    to_route_id: str
    from_route_id: str = ""
    to_bus_number: str = ""
    stop_id: str = ""


@dataclass(frozen=True)
class SelectedStudent:
    """A passenger on the source bus waiting for a suggested target."""
    student_id: str
    student_name: str
    shift: str
    stop_id: str
    route_id: str = ""


@dataclass
class BusCandidate:
    bus_id: str
    capacity: int
    shift_mode: str
    route_id: str = ""
    bus_number: str = ""
    morning_count: int = 0
    evening_count: int = 0
    stop_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Unassignable:
    student_id: str
    student_name: str
    reason: str


@dataclass
class Suggestion:
    plans: list[ReassignmentPlan]
    unassignable: list[Unassignable]


def normalize_stop_id(value: str) -> str:
    """'ADTU Campus' / 'adtu_campus' / 'adtu-campus' all compare equal."""
    return re.sub(r"[^a-z0-9]", "", (value or "").lower())


def check_batch(plans: list[ReassignmentPlan]) -> None:
    """Raise PlanError unless `plans` is a non-empty batch with unique students."""
    if not plans:
        raise PlanError("No reassignment plans provided")
    seen: set[str] = set()
    for p in plans:
        if p.student_id in seen:
            raise PlanError(f"Duplicate student {p.student_id} in reassignment plans")
        seen.add(p.student_id)
        if not p.to_bus_id:
            raise PlanError(f"No target bus for student {p.student_id}")
        if p.from_bus_id == p.to_bus_id:
            raise PlanError(f"Student {p.student_id} is already on bus {p.to_bus_id}")
        try:
            normalize_shift(p.shift)
        except ValueError as exc:
            raise PlanError(str(exc)) from exc


def _coerce_shift(value: str) -> str:
    try:
        return normalize_shift(value)
    except ValueError:
        return value  # check_batch reports it


def plan(source_bus_id: str, selections: list[StudentSelection]) -> list[ReassignmentPlan]:
    """
    Build one ReassignmentPlan per selection, all leaving `source_bus_id`.

    Raises:
        PlanError: empty selection, duplicate student, target equal to the
                   source, or an unknown shift.
    """
    plans = [
        ReassignmentPlan(
            student_id=s.student_id,
            student_name=s.student_name,
            from_bus_id=source_bus_id,
            from_route_id=s.from_route_id,
            to_bus_id=s.to_bus_id,
            to_route_id=s.to_route_id,
            to_bus_number=s.to_bus_number,
            stop_id=s.stop_id,
            shift=_coerce_shift(s.shift),
        )
        for s in selections
    ]
    check_batch(plans)
    return plans


def _serves_stop(bus: BusCandidate, stop_id: str) -> bool:
    target = normalize_stop_id(stop_id)
    return bool(target) and any(normalize_stop_id(s) == target for s in bus.stop_ids)


def suggest(
    source_bus_id: str,
    students: list[SelectedStudent],
    candidates: list[BusCandidate],
) -> Suggestion:
    """
    Distribute `students` across `candidates`, lowest projected load first.

    A bus is eligible for a student when it is not the source bus, accepts
    the student's shift and serves the student's stop.  Students are taken
    in input order; each goes to the eligible bus with the smallest
    load/capacity ratio for that shift that still has a free seat, and the
    projection is bumped before the next student is placed.

    Students with no eligible bus, or whose eligible buses are all full,
    come back in `unassignable` with a reason.
    """
    others = [b for b in candidates if b.bus_id != source_bus_id]
    projected = {b.bus_id: {"Morning": b.morning_count, "Evening": b.evening_count} for b in others}

    plans: list[ReassignmentPlan] = []
    unassignable: list[Unassignable] = []

    for student in students:
        try:
            shift = normalize_shift(student.shift)
        except ValueError as exc:
            unassignable.append(Unassignable(student.student_id, student.student_name, str(exc)))
            continue

        eligible = [
            b for b in others
            if is_shift_compatible(shift, b.shift_mode) and _serves_stop(b, student.stop_id)
        ]
        if not eligible:
            if not any(_serves_stop(b, student.stop_id) for b in others):
                reason = "Only current bus serves this stop"
            elif not any(is_shift_compatible(shift, b.shift_mode) for b in others):
                reason = f"No other buses support {shift} shift"
            else:
                reason = "No alternative buses available"
            unassignable.append(Unassignable(student.student_id, student.student_name, reason))
            continue

        def _ratio(bus: BusCandidate) -> float:
            return projected[bus.bus_id][shift] / bus.capacity if bus.capacity else float("inf")

        target: Optional[BusCandidate] = None
        for bus in sorted(eligible, key=_ratio):
            if projected[bus.bus_id][shift] < bus.capacity:
                target = bus
                break
        if target is None:
            unassignable.append(Unassignable(
                student.student_id, student.student_name,
                f"All compatible buses are full for the {shift} shift",
            ))
            continue

        projected[target.bus_id][shift] += 1
        plans.append(ReassignmentPlan(
            student_id=student.student_id,
            student_name=student.student_name,
            from_bus_id=source_bus_id,
            from_route_id=student.route_id,
            to_bus_id=target.bus_id,
            to_route_id=target.route_id,
            to_bus_number=target.bus_number,
            stop_id=student.stop_id,
            shift=shift,
        ))

    logger.debug(
        "Suggested %d moves off bus %s (%d unassignable).",
        len(plans), source_bus_id, len(unassignable),
    )
    return Suggestion(plans=plans, unassignable=unassignable)
