"""
Transaction executor: applies a reassignment batch (or its reversal) as one
all-or-nothing unit.

Concurrency model:
  Every attempt re-reads buses and students inside the transaction
  (validator.validate uses SELECT ... FOR UPDATE + populate_existing), then
  writes.  Bus and Student rows are versioned, so if another batch committed
  a change to one of them between our read and our flush, SQLAlchemy raises
  StaleDataError.  That, and driver-level OperationalError (SQLite "database
  is locked", PostgreSQL serialization failures), roll back the attempt and
  retry from the fresh read, up to COMMIT_MAX_ATTEMPTS.  Callers only ever
  see the final outcome.

  ValidationError / UndoError are never retried: the fresh state itself
  rejects the batch.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from allocation.ledger import normalize_shift, set_load, utcnow_iso
from allocation.planner import ReassignmentPlan, check_batch
from config import COMMIT_MAX_ATTEMPTS
from db.models import Bus, Student
from reassignment.errors import CommitError, ReassignmentError, UndoConflictError
from reassignment.validator import validate

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StudentUpdate:
    uid: str
    old_bus_id: str
    new_bus_id: str
    old_route_id: Optional[str]
    new_route_id: str
    stop_id: Optional[str]
    shift: str
    old_stop_id: Optional[str] = None


@dataclass(frozen=True)
class BusUpdate:
    bus_id: str
    morning_count_before: int
    morning_count_after: int
    evening_count_before: int
    evening_count_after: int


@dataclass
class CommitResult:
    updated_students: list[StudentUpdate] = field(default_factory=list)
    bus_updates: list[BusUpdate] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "updated_students": [asdict(s) for s in self.updated_students],
            "bus_updates": [asdict(b) for b in self.bus_updates],
        }


def run_atomic(
    session: Session,
    work: Callable[[Session], T],
    *,
    label: str,
    max_attempts: int = COMMIT_MAX_ATTEMPTS,
) -> T:
    """
    Run `work(session)` and commit, retrying on write conflicts.

    Raises:
        ReassignmentError: raised by `work`; rolled back, never retried.
        CommitError:       storage failure, or conflicts on every attempt.
    """
    last_exc: Optional[Exception] = None
    for attempt in range(1, max_attempts + 1):
        try:
            outcome = work(session)
            session.commit()
        except ReassignmentError:
            session.rollback()
            raise
        except (StaleDataError, OperationalError) as exc:
            session.rollback()
            last_exc = exc
            logger.warning(
                "%s conflicted on attempt %d/%d: %s", label, attempt, max_attempts, exc,
            )
            continue
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("%s failed: %s", label, exc, exc_info=True)
            raise CommitError(f"{label} failed: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        if attempt > 1:
            logger.info("%s committed after %d attempts.", label, attempt)
        return outcome

    raise CommitError(
        f"{label} kept conflicting after {max_attempts} attempts: {last_exc}"
    ) from last_exc


def _apply_batch(session: Session, plans: list[ReassignmentPlan]) -> CommitResult:
    checked = validate(session, plans)
    now = utcnow_iso()
    result = CommitResult()

    for bus_id, check in checked.buses.items():
        set_load(check.bus, check.morning_after, check.evening_after, now)
        result.bus_updates.append(BusUpdate(
            bus_id=bus_id,
            morning_count_before=check.morning_before,
            morning_count_after=check.morning_after,
            evening_count_before=check.evening_before,
            evening_count_after=check.evening_after,
        ))

    for p in plans:
        student = checked.students[p.student_id]
        # raw stored values, so a revert writes back exactly what was there
        old_route_id = student.route_id
        old_stop_id = student.stop_id
        # stop only moves when the plan names a different one
        new_stop_id = p.stop_id or old_stop_id

        student.bus_id = p.to_bus_id
        student.route_id = p.to_route_id
        student.stop_id = new_stop_id
        student.updated_at = now

        result.updated_students.append(StudentUpdate(
            uid=p.student_id,
            old_bus_id=p.from_bus_id,
            new_bus_id=p.to_bus_id,
            old_route_id=old_route_id,
            new_route_id=p.to_route_id,
            stop_id=new_stop_id,
            old_stop_id=old_stop_id,
            shift=normalize_shift(p.shift),
        ))

    session.flush()
    return result


def commit(
    session: Session,
    plans: list[ReassignmentPlan],
    max_attempts: int = COMMIT_MAX_ATTEMPTS,
) -> CommitResult:
    """
    Validate and apply a reassignment batch atomically.

    Raises:
        PlanError:       empty batch, duplicate student.
        ValidationError: capacity, shift mode, unknown bus/student, stale plan.
        CommitError:     storage failure or unresolved write conflict.
    """
    check_batch(plans)
    result = run_atomic(
        session,
        lambda s: _apply_batch(s, plans),
        label="Reassignment commit",
        max_attempts=max_attempts,
    )
    logger.info(
        "Committed reassignment of %d students across %d buses.",
        len(result.updated_students), len(result.bus_updates),
    )
    return result


def find_revert_conflicts(
    session: Session,
    students: list[StudentUpdate],
    buses: list[BusUpdate],
) -> list[str]:
    """
    Differences between the database and the state a batch left behind.

    An empty list means the batch's `*_before` values can be written back
    without clobbering anything committed since.
    """
    conflicts: list[str] = []
    bus_rows = {
        b.bus_id: b
        for b in (
            session.query(Bus)
            .filter(Bus.bus_id.in_([u.bus_id for u in buses]))
            .with_for_update()
            .populate_existing()
            .all()
        )
    }
    for u in buses:
        bus = bus_rows.get(u.bus_id)
        if bus is None:
            conflicts.append(f"Bus {u.bus_id} no longer exists")
            continue
        if (bus.morning_count or 0) != u.morning_count_after:
            conflicts.append(
                f"buses/{u.bus_id}.morning_count: expected {u.morning_count_after}, found {bus.morning_count}"
            )
        if (bus.evening_count or 0) != u.evening_count_after:
            conflicts.append(
                f"buses/{u.bus_id}.evening_count: expected {u.evening_count_after}, found {bus.evening_count}"
            )

    student_rows = {
        s.uid: s
        for s in (
            session.query(Student)
            .filter(Student.uid.in_([u.uid for u in students]))
            .with_for_update()
            .populate_existing()
            .all()
        )
    }
    for u in students:
        student = student_rows.get(u.uid)
        if student is None:
            conflicts.append(f"Student {u.uid} no longer exists")
        elif student.bus_id != u.new_bus_id:
            conflicts.append(
                f"students/{u.uid}.bus_id: expected {u.new_bus_id}, found {student.bus_id}"
            )
    return conflicts


def _apply_revert(
    session: Session,
    action_id: str,
    students: list[StudentUpdate],
    buses: list[BusUpdate],
) -> None:
    conflicts = find_revert_conflicts(session, students, buses)
    if conflicts:
        raise UndoConflictError(action_id, conflicts)

    now = utcnow_iso()
    for u in buses:
        bus = session.get(Bus, u.bus_id)
        set_load(bus, u.morning_count_before, u.evening_count_before, now)
    for u in students:
        student = session.get(Student, u.uid)
        student.bus_id = u.old_bus_id
        student.route_id = u.old_route_id
        student.stop_id = u.old_stop_id
        student.updated_at = now
    session.flush()


def revert(
    session: Session,
    action_id: str,
    students: list[StudentUpdate],
    buses: list[BusUpdate],
    max_attempts: int = COMMIT_MAX_ATTEMPTS,
) -> None:
    """
    Write a committed batch's `before` values back in one transaction.

    Raises:
        UndoConflictError: a later change touched the same rows.
        CommitError:       storage failure or unresolved write conflict.
    """
    run_atomic(
        session,
        lambda s: _apply_revert(s, action_id, students, buses),
        label=f"Revert of {action_id}",
        max_attempts=max_attempts,
    )
    logger.info(
        "Reverted action %s: %d students, %d buses restored.",
        action_id, len(students), len(buses),
    )
