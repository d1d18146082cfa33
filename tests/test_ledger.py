"""
Tests for allocation.ledger.
"""

import logging

import pytest

from allocation.ledger import (
    capacity_info,
    is_shift_compatible,
    normalize_shift,
    normalize_shift_mode,
    set_load,
    sync_counts,
)
from db.models import Bus
from conftest import add_bus, add_student


class TestShifts:
    @pytest.mark.parametrize("raw", ["morning", "MORNING", " Morning "])
    def test_normalize_shift(self, raw):
        assert normalize_shift(raw) == "Morning"

    def test_unknown_shift_raises(self):
        with pytest.raises(ValueError):
            normalize_shift("Night")

    def test_missing_shift_mode_defaults_to_both(self):
        assert normalize_shift_mode(None) == "Both"
        assert normalize_shift_mode("") == "Both"

    @pytest.mark.parametrize("shift,mode,expected", [
        ("Morning", "Morning", True),
        ("Morning", "Both", True),
        ("Morning", "Evening", False),
        ("Evening", "Both", True),
        ("Evening", "Morning", False),
        ("Evening", "Evening", False),
    ])
    def test_compatibility(self, shift, mode, expected):
        assert is_shift_compatible(shift, mode) is expected


class TestCapacityInfo:
    def test_per_shift_availability(self):
        bus = Bus(bus_id="A", capacity=50, shift_mode="Both", morning_count=46, evening_count=5)
        info = capacity_info(bus, "morning")
        assert info["shift"] == "Morning"
        assert info["available_seats"] == 4
        assert info["is_near_capacity"] is True
        assert info["is_full"] is False

    def test_total_availability_without_shift(self):
        bus = Bus(bus_id="A", capacity=10, morning_count=6, evening_count=4)
        info = capacity_info(bus)
        assert info["total_count"] == 10
        assert info["available_seats"] == 0
        assert info["is_full"] is True
        assert info["shift_mode"] == "Both"

    def test_set_load_keeps_total_in_step(self):
        bus = Bus(bus_id="A", capacity=10)
        set_load(bus, 3, 2, "2026-03-02T07:30:00+00:00")
        assert (bus.morning_count, bus.evening_count, bus.total_count) == (3, 2, 5)
        assert bus.updated_at == "2026-03-02T07:30:00+00:00"


class TestSyncCounts:
    def test_recounts_from_active_students(self, fleet):
        # fixture counters are seeded, not derived: A says 10/5 but has 2/1 riders
        report = sync_counts(fleet)

        by_bus = {r["bus_id"]: r for r in report["buses"]}
        assert by_bus["A"]["before"] == {"morning_count": 10, "evening_count": 5}
        assert by_bus["A"]["after"] == {"morning_count": 2, "evening_count": 1}
        assert by_bus["A"]["changed"] is True
        assert by_bus["M"]["changed"] is False

        fleet.expire_all()
        bus = fleet.get(Bus, "A")
        assert (bus.morning_count, bus.evening_count, bus.total_count) == (2, 1, 3)

    def test_inactive_students_are_not_counted(self, db_session):
        add_bus(db_session, "A")
        add_student(db_session, "s1", "A")
        add_student(db_session, "s2", "A").status = "inactive"
        db_session.commit()

        report = sync_counts(db_session)
        assert report["buses"][0]["after"]["morning_count"] == 1

    def test_students_on_unknown_bus_are_reported(self, db_session):
        add_bus(db_session, "A")
        add_student(db_session, "ghost", "Z")
        db_session.commit()

        report = sync_counts(db_session)
        assert report["unknown_bus_students"] == [{"uid": "ghost", "bus_id": "Z"}]
        assert report["buses"][0]["after"] == {"morning_count": 0, "evening_count": 0}

    def test_recount_above_capacity_is_flagged(self, db_session, caplog):
        add_bus(db_session, "A", capacity=1)
        add_student(db_session, "s1", "A")
        add_student(db_session, "s2", "A")
        db_session.commit()

        with caplog.at_level(logging.WARNING, logger="allocation.ledger"):
            report = sync_counts(db_session)

        entry = report["buses"][0]
        assert entry["after"] == {"morning_count": 2, "evening_count": 0}
        assert entry["over_capacity"] is True
        assert "Bus A recount 2 exceeds capacity 1" in caplog.text
        db_session.expire_all()
        assert db_session.get(Bus, "A").morning_count == 2

    def test_within_capacity_is_not_flagged(self, fleet):
        report = sync_counts(fleet)
        assert not any(r["over_capacity"] for r in report["buses"])
