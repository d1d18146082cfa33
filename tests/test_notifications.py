"""
Tests for the side-effect queue and the notification dispatcher.

HTTP is never hit: the dispatcher takes an httpx.MockTransport.
"""

import json
import logging

import httpx
import pytest

from allocation.planner import ReassignmentPlan
from notifications.dispatcher import (
    REASSIGNMENT_TITLE,
    NotificationDispatcher,
    build_reassignment_notifications,
)
from notifications.outbox import SideEffectQueue


# ---------------------------------------------------------------------------
# SideEffectQueue
# ---------------------------------------------------------------------------

class TestSideEffectQueue:
    def test_drain_runs_jobs_with_their_arguments(self):
        calls = []
        queue = SideEffectQueue()
        queue.enqueue("a", lambda x, y=0: calls.append((x, y)), 1, y=2)
        queue.enqueue("b", lambda: calls.append("b"))

        assert queue.drain() == 2
        assert calls == [(1, 2), "b"]
        assert len(queue) == 0

    def test_failed_job_is_retried_on_next_drain(self):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("push service down")

        queue = SideEffectQueue(max_attempts=3)
        queue.enqueue("flaky", flaky)

        assert queue.drain() == 0
        assert len(queue) == 1
        assert queue.pending()[0].last_error == "push service down"
        assert queue.drain() == 1
        assert len(queue) == 0

    def test_job_dropped_after_max_attempts(self, caplog):
        def broken():
            raise RuntimeError("nope")

        queue = SideEffectQueue(max_attempts=2)
        queue.enqueue("broken", broken)

        with caplog.at_level(logging.WARNING, logger="notifications.outbox"):
            queue.drain()
            queue.drain()

        assert len(queue) == 0
        assert queue.dropped == 1
        assert any(r.levelno == logging.ERROR and "broken" in r.getMessage() for r in caplog.records)

    def test_failure_does_not_stop_other_jobs(self):
        ran = []
        queue = SideEffectQueue()
        queue.enqueue("bad", lambda: 1 / 0)
        queue.enqueue("good", lambda: ran.append(True))

        assert queue.drain() == 1
        assert ran == [True]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

PLAN = ReassignmentPlan(
    student_id="s1", student_name="Student s1", from_bus_id="A", to_bus_id="B",
    to_route_id="route-B", to_bus_number="Bus 7", shift="Morning",
)


class TestBuildNotifications:
    def test_one_per_student(self):
        [n] = build_reassignment_notifications([PLAN], "Route 4 breakdown")
        assert n.recipient_id == "s1"
        assert n.title == REASSIGNMENT_TITLE
        assert n.body == "You have been reassigned to Bus 7. Reason: Route 4 breakdown"
        assert n.metadata == {
            "type": "reassignment", "fromBusId": "A", "toBusId": "B", "reason": "Route 4 breakdown",
        }


class TestDispatcher:
    def test_posts_json_with_bearer_token(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        dispatcher = NotificationDispatcher(
            webhook_url="https://push.example.test/notify",
            api_key="secret",
            transport=httpx.MockTransport(handler),
        )
        [n] = build_reassignment_notifications([PLAN], "Route 4 breakdown")
        dispatcher.send(n)

        assert len(seen) == 1
        assert seen[0].headers["Authorization"] == "Bearer secret"
        payload = json.loads(seen[0].content)
        assert payload["recipient_id"] == "s1"
        assert payload["metadata"]["toBusId"] == "B"

    def test_error_status_raises_for_retry(self):
        dispatcher = NotificationDispatcher(
            webhook_url="https://push.example.test/notify",
            api_key="",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        [n] = build_reassignment_notifications([PLAN], "Route 4 breakdown")
        with pytest.raises(httpx.HTTPStatusError):
            dispatcher.send(n)

    def test_without_webhook_only_logs(self, caplog):
        def handler(request):
            raise AssertionError("no request expected")

        dispatcher = NotificationDispatcher(webhook_url="", transport=httpx.MockTransport(handler))
        [n] = build_reassignment_notifications([PLAN], "Route 4 breakdown")
        with caplog.at_level(logging.INFO, logger="notifications.dispatcher"):
            dispatcher.send(n)
        assert "s1" in caplog.text
