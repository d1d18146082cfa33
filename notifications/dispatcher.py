"""
Notification dispatcher: tells each moved student about their new bus.

Delivery goes to an external push service as a JSON POST to
NOTIFICATION_WEBHOOK_URL (one request per recipient).  With no URL
configured, notifications are only logged, which is what local dev and the
test suite use.

The engine never awaits delivery: sends run from the side-effect queue and a
failure there is logged and retried, never surfaced to the actor.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

import httpx

from allocation.planner import ReassignmentPlan
from config import NOTIFICATION_API_KEY, NOTIFICATION_TIMEOUT_SECONDS, NOTIFICATION_WEBHOOK_URL

logger = logging.getLogger(__name__)

REASSIGNMENT_TITLE = "🚌 Bus Reassignment"


@dataclass(frozen=True)
class Notification:
    recipient_id: str
    title: str
    body: str
    metadata: dict[str, Any] = field(default_factory=dict)


def build_reassignment_notifications(
    plans: list[ReassignmentPlan],
    reason: str,
) -> list[Notification]:
    """One notification per moved student."""
    return [
        Notification(
            recipient_id=p.student_id,
            title=REASSIGNMENT_TITLE,
            body=f"You have been reassigned to {p.to_bus_number or p.to_bus_id}. Reason: {reason}",
            metadata={
                "type": "reassignment",
                "fromBusId": p.from_bus_id,
                "toBusId": p.to_bus_id,
                "reason": reason,
            },
        )
        for p in plans
    ]


class NotificationDispatcher:
    def __init__(
        self,
        webhook_url: str = NOTIFICATION_WEBHOOK_URL,
        api_key: str = NOTIFICATION_API_KEY,
        timeout: float = NOTIFICATION_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport  # tests inject httpx.MockTransport

    def send(self, notification: Notification) -> None:
        """
        Deliver one notification.  Raises httpx errors on transport failure or
        a non-2xx response so the queue can retry.
        """
        if not self.webhook_url:
            logger.info(
                "Notification (no webhook configured) to %s: %s",
                notification.recipient_id, notification.body,
            )
            return

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            response = client.post(self.webhook_url, json=asdict(notification), headers=headers)
            response.raise_for_status()
        logger.debug("Notification delivered to %s.", notification.recipient_id)
