"""
Tests for reassignment.audit.
"""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from allocation.planner import ReassignmentPlan
from db.models import ReassignmentLog
from reassignment.audit import (
    TYPE_REASSIGNMENT,
    TYPE_REVERT,
    AuditLogger,
    build_changes,
    build_summary,
    list_logs,
)
from reassignment.executor import BusUpdate, StudentUpdate
from reassignment.undo import Actor

ADMIN = Actor(actor_id="admin-1", actor_name="Asha")

PLANS = [
    ReassignmentPlan(student_id="s1", student_name="Student s1", from_bus_id="A",
                     to_bus_id="B", to_route_id="route-B", to_bus_number="Bus 7", shift="Morning"),
    ReassignmentPlan(student_id="s2", student_name="Student s2", from_bus_id="A",
                     to_bus_id="C", to_route_id="route-C", shift="Morning"),
]
STUDENTS = [
    StudentUpdate(uid="s1", old_bus_id="A", new_bus_id="B", old_route_id="route-A",
                  new_route_id="route-B", stop_id="stop-1", old_stop_id="stop-1", shift="Morning"),
]
BUSES = [
    BusUpdate(bus_id="A", morning_count_before=10, morning_count_after=9,
              evening_count_before=5, evening_count_after=5),
]


class TestSummary:
    def test_counts_sources_and_targets(self):
        assert build_summary(PLANS) == "Reassigned 2 student(s) from A to Bus 7, C"


class TestBuildChanges:
    def test_forward_records_before_and_after(self):
        changes = build_changes(STUDENTS, BUSES)
        student, bus = changes
        assert student["doc_path"] == "students/s1"
        assert student["before"]["bus_id"] == "A"
        assert student["after"]["bus_id"] == "B"
        assert bus["doc_path"] == "buses/A"
        assert bus["before"] == {"morning_count": 10, "evening_count": 5, "total_count": 15}
        assert bus["after"]["total_count"] == 14

    def test_reverse_swaps_before_and_after(self):
        forward = build_changes(STUDENTS, BUSES)
        reverse = build_changes(STUDENTS, BUSES, reverse=True)
        for f, r in zip(forward, reverse):
            assert f["before"] == r["after"]
            assert f["after"] == r["before"]


class TestAuditLogger:
    def test_record_appends_reassignment_row(self, session_factory, db_session):
        AuditLogger(session_factory).record("reassign_1", PLANS, ADMIN, "Route 4 breakdown", STUDENTS, BUSES)

        row = db_session.query(ReassignmentLog).one()
        assert row.operation_id == "reassign_1"
        assert row.type == TYPE_REASSIGNMENT
        assert row.actor_id == "admin-1"
        assert row.reason == "Route 4 breakdown"
        assert row.summary.startswith("Reassigned 2 student(s)")
        assert len(row.plans) == 2
        assert row.rollback_of is None
        assert row.timestamp

    def test_record_revert_references_reverted_batch(self, session_factory, db_session):
        audit = AuditLogger(session_factory)
        audit.record("reassign_1", PLANS, ADMIN, "Route 4 breakdown", STUDENTS, BUSES)
        audit.record_revert("reassign_1", PLANS, ADMIN, "Revert of: Route 4 breakdown", STUDENTS, BUSES)

        rows = db_session.query(ReassignmentLog).order_by(ReassignmentLog.id).all()
        assert [r.type for r in rows] == [TYPE_REASSIGNMENT, TYPE_REVERT]
        assert rows[1].operation_id == "rollback_reassign_1"
        assert rows[1].rollback_of == "reassign_1"
        assert rows[1].changes[0]["after"]["bus_id"] == "A"
        # the reassignment row is never touched
        assert rows[0].rollback_of is None

    def test_database_failure_propagates(self, session_factory):
        audit = AuditLogger(session_factory)
        with patch.object(audit, "_append", side_effect=OperationalError("INSERT", {}, Exception("locked"))):
            with pytest.raises(OperationalError):
                audit.record("reassign_1", PLANS, ADMIN, "Route 4 breakdown", STUDENTS, BUSES)


class TestListLogs:
    def test_newest_first_with_filters(self, session_factory, db_session):
        audit = AuditLogger(session_factory)
        audit.record("reassign_1", PLANS, ADMIN, "Route 4 breakdown", STUDENTS, BUSES)
        audit.record("reassign_2", PLANS, Actor("admin-2", "Ravi"), "Driver unavailable", STUDENTS, BUSES)
        audit.record_revert("reassign_1", PLANS, ADMIN, "Revert of: Route 4 breakdown", STUDENTS, BUSES)

        assert [r.operation_id for r in list_logs(db_session)] == [
            "rollback_reassign_1", "reassign_2", "reassign_1",
        ]
        assert [r.operation_id for r in list_logs(db_session, log_type=TYPE_REVERT)] == ["rollback_reassign_1"]
        assert [r.operation_id for r in list_logs(db_session, actor_id="admin-2")] == ["reassign_2"]
        assert len(list_logs(db_session, limit=1)) == 1
