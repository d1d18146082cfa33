"""
Capacity ledger: per-bus, per-shift occupancy counters.

Each Bus row carries morning_count / evening_count (and a derived
total_count).  Invariant after every committed transaction:

  morning_count >= 0, evening_count >= 0,
  morning_count + evening_count <= capacity

Shift compatibility:
  Morning students ride Morning or Both buses.
  Evening students ride Both buses only.

Only the reassignment executor and sync_counts() write the counters; both
do so inside a single transaction.
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from config import LOAD_WARNING_RATIO
from db.models import SHIFT_BOTH, SHIFT_EVENING, SHIFT_MORNING, Bus, Student

logger = logging.getLogger(__name__)

_SHIFTS = {"morning": SHIFT_MORNING, "evening": SHIFT_EVENING}
_SHIFT_MODES = {"morning": SHIFT_MORNING, "evening": SHIFT_EVENING, "both": SHIFT_BOTH}


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_shift(value: str) -> str:
    """'morning' / 'MORNING' / ' Morning ' → 'Morning'.  Raises ValueError otherwise."""
    shift = _SHIFTS.get((value or "").strip().lower())
    if shift is None:
        raise ValueError(f"Unknown shift {value!r}; expected Morning or Evening")
    return shift


def normalize_shift_mode(value: Optional[str]) -> str:
    """Bus shift mode, defaulting to Both when unset (matches legacy bus records)."""
    if not value:
        return SHIFT_BOTH
    mode = _SHIFT_MODES.get(value.strip().lower())
    if mode is None:
        raise ValueError(f"Unknown shift mode {value!r}; expected Morning, Evening or Both")
    return mode


def is_shift_compatible(shift: str, shift_mode: Optional[str]) -> bool:
    mode = normalize_shift_mode(shift_mode)
    if normalize_shift(shift) == SHIFT_MORNING:
        return mode in (SHIFT_MORNING, SHIFT_BOTH)
    return mode == SHIFT_BOTH


def shift_load(bus: Bus, shift: str) -> int:
    if normalize_shift(shift) == SHIFT_MORNING:
        return bus.morning_count or 0
    return bus.evening_count or 0


def set_load(bus: Bus, morning: int, evening: int, updated_at: Optional[str] = None) -> None:
    """Write both shift counters and the derived total onto a bus row."""
    bus.morning_count = morning
    bus.evening_count = evening
    bus.total_count = morning + evening
    bus.updated_at = updated_at or utcnow_iso()


def capacity_info(bus: Bus, shift: Optional[str] = None) -> dict[str, Any]:
    """
    Capacity summary for one bus.

    With a shift, availability is measured against that shift's counter;
    without one, against the combined total.
    """
    morning = bus.morning_count or 0
    evening = bus.evening_count or 0
    occupied = shift_load(bus, shift) if shift else morning + evening
    capacity = bus.capacity or 0
    available = max(0, capacity - occupied)
    return {
        "bus_id": bus.bus_id,
        "bus_number": bus.bus_number,
        "route_id": bus.route_id,
        "shift_mode": normalize_shift_mode(bus.shift_mode),
        "capacity": capacity,
        "morning_count": morning,
        "evening_count": evening,
        "total_count": morning + evening,
        "shift": normalize_shift(shift) if shift else None,
        "available_seats": available,
        "is_full": occupied >= capacity,
        "is_near_capacity": capacity > 0 and occupied / capacity >= LOAD_WARNING_RATIO,
    }


def sync_counts(session: Session) -> dict[str, Any]:
    """
    Recompute every bus's shift counters from its active students.

    Writes all buses in one commit.  Students pointing at a bus that does
    not exist are reported, not counted.  A recount above the bus's
    capacity is still written; the bus is flagged and a warning logged.

    Returns:
        {"buses": [{bus_id, before, after, changed, over_capacity}],
         "unknown_bus_students": [...]}
    """
    buses = session.query(Bus).order_by(Bus.bus_id).populate_existing().all()
    counts: dict[str, dict[str, int]] = defaultdict(lambda: {SHIFT_MORNING: 0, SHIFT_EVENING: 0})
    known = {bus.bus_id for bus in buses}
    unknown: list[dict[str, str]] = []

    students = session.query(Student).filter(Student.status == "active").all()
    for student in students:
        if not student.bus_id:
            continue
        if student.bus_id not in known:
            logger.warning("Student %s references unknown bus %s.", student.uid, student.bus_id)
            unknown.append({"uid": student.uid, "bus_id": student.bus_id})
            continue
        try:
            counts[student.bus_id][normalize_shift(student.shift)] += 1
        except ValueError:
            logger.warning("Student %s has unknown shift %r; not counted.", student.uid, student.shift)

    now = utcnow_iso()
    report = []
    for bus in buses:
        before = {"morning_count": bus.morning_count or 0, "evening_count": bus.evening_count or 0}
        after = {
            "morning_count": counts[bus.bus_id][SHIFT_MORNING],
            "evening_count": counts[bus.bus_id][SHIFT_EVENING],
        }
        changed = before != after
        if changed:
            set_load(bus, after["morning_count"], after["evening_count"], now)
        total = after["morning_count"] + after["evening_count"]
        over_capacity = total > (bus.capacity or 0)
        if over_capacity:
            logger.warning("Bus %s recount %d exceeds capacity %d.", bus.bus_id, total, bus.capacity or 0)
        report.append({
            "bus_id": bus.bus_id,
            "before": before,
            "after": after,
            "changed": changed,
            "over_capacity": over_capacity,
        })

    session.commit()
    logger.info(
        "Ledger sync complete: %d buses, %d changed, %d students on unknown buses.",
        len(report), sum(1 for r in report if r["changed"]), len(unknown),
    )
    return {"buses": report, "unknown_bus_students": unknown}
