"""
Append-only audit trail of committed and reverted reassignment batches.

Rows are only ever inserted.  A revert does not touch the row of the batch
it undoes; it appends a "revert" row whose rollback_of points at it.

Audit writes happen after the primary commit, on their own session, through
the side-effect queue; a failing write is retried there and never rolls back
or blocks the reassignment it describes.
"""

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session, sessionmaker

from allocation.ledger import utcnow_iso
from allocation.planner import ReassignmentPlan
from db.models import ReassignmentLog
from db.session import SessionLocal, session_scope
from reassignment.executor import BusUpdate, StudentUpdate
from reassignment.undo import Actor

logger = logging.getLogger(__name__)

TYPE_REASSIGNMENT = "reassignment"
TYPE_REVERT = "revert"


def summarize_plans(plans: list[ReassignmentPlan]) -> list[dict[str, str]]:
    return [
        {
            "student_id": p.student_id,
            "student_name": p.student_name,
            "from_bus_id": p.from_bus_id,
            "to_bus_id": p.to_bus_id,
            "to_bus_number": p.to_bus_number,
            "shift": p.shift,
        }
        for p in plans
    ]


def build_summary(plans: list[ReassignmentPlan]) -> str:
    """'Reassigned 3 student(s) from bus-1 to Bus 7, bus-9'"""
    sources = list(dict.fromkeys(p.from_bus_id for p in plans))
    targets = list(dict.fromkeys(p.to_bus_number or p.to_bus_id for p in plans))
    return (
        f"Reassigned {len(plans)} student(s) from {', '.join(sources)} "
        f"to {', '.join(targets)}"
    )


def build_changes(
    students: list[StudentUpdate],
    buses: list[BusUpdate],
    reverse: bool = False,
) -> list[dict[str, Any]]:
    """Before/after record per touched document.  `reverse` swaps the two for revert rows."""
    changes: list[dict[str, Any]] = []
    for s in students:
        before = {"bus_id": s.old_bus_id, "route_id": s.old_route_id, "stop_id": s.old_stop_id}
        after = {"bus_id": s.new_bus_id, "route_id": s.new_route_id, "stop_id": s.stop_id}
        if reverse:
            before, after = after, before
        changes.append({
            "doc_path": f"students/{s.uid}",
            "collection": "students",
            "doc_id": s.uid,
            "shift": s.shift,
            "before": before,
            "after": after,
        })
    for b in buses:
        before = {"morning_count": b.morning_count_before, "evening_count": b.evening_count_before,
                  "total_count": b.morning_count_before + b.evening_count_before}
        after = {"morning_count": b.morning_count_after, "evening_count": b.evening_count_after,
                 "total_count": b.morning_count_after + b.evening_count_after}
        if reverse:
            before, after = after, before
        changes.append({
            "doc_path": f"buses/{b.bus_id}",
            "collection": "buses",
            "doc_id": b.bus_id,
            "before": before,
            "after": after,
        })
    return changes


class AuditLogger:
    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    def _append(self, entry: ReassignmentLog) -> None:
        with session_scope(self.session_factory) as session:
            session.add(entry)
            session.commit()

    def record(
        self,
        operation_id: str,
        plans: list[ReassignmentPlan],
        actor: Actor,
        reason: str,
        students: list[StudentUpdate],
        buses: list[BusUpdate],
        timestamp: Optional[str] = None,
    ) -> None:
        """
        Append the audit row for one committed batch.

        Raises whatever the database raises; callers run this through the
        side-effect queue, which logs and retries.
        """
        self._append(ReassignmentLog(
            operation_id=operation_id,
            type=TYPE_REASSIGNMENT,
            actor_id=actor.actor_id,
            actor_name=actor.actor_name,
            reason=reason,
            summary=build_summary(plans),
            plans=summarize_plans(plans),
            changes=build_changes(students, buses),
            timestamp=timestamp or utcnow_iso(),
        ))
        logger.info("Audit entry %s written (%d students).", operation_id, len(plans))

    def record_revert(
        self,
        action_id: str,
        plans: list[ReassignmentPlan],
        actor: Actor,
        reason: str,
        students: list[StudentUpdate],
        buses: list[BusUpdate],
    ) -> None:
        """Append a revert row referencing the batch it undid."""
        self._append(ReassignmentLog(
            operation_id=f"rollback_{action_id}",
            type=TYPE_REVERT,
            actor_id=actor.actor_id,
            actor_name=actor.actor_name,
            reason=reason,
            summary=f"Rollback of operation {action_id}",
            plans=summarize_plans(plans),
            changes=build_changes(students, buses, reverse=True),
            rollback_of=action_id,
            timestamp=utcnow_iso(),
        ))
        logger.info("Audit revert entry written for %s.", action_id)


def list_logs(
    session: Session,
    limit: int = 50,
    log_type: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> list[ReassignmentLog]:
    """Most recent audit rows first."""
    query = session.query(ReassignmentLog)
    if log_type:
        query = query.filter(ReassignmentLog.type == log_type)
    if actor_id:
        query = query.filter(ReassignmentLog.actor_id == actor_id)
    return query.order_by(ReassignmentLog.id.desc()).limit(limit).all()
