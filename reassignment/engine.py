"""
Reassignment engine: the single entry point the API talks to.

reassign():
  1. Reject a missing/short justification and malformed batches (PlanError).
  2. Validate + write everything in one transaction (executor.commit).
  3. Register the revert buffer under a fresh action id (undo window starts).
  4. Queue the audit row and one notification per student.  These run after
     the caller has its answer; their failures are logged and retried only.

revert():
  Runs the compensating transaction through the undo manager, then queues a
  "revert" audit row.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from allocation.ledger import utcnow_iso
from allocation.planner import ReassignmentPlan, check_batch
from config import COMMIT_MAX_ATTEMPTS, MIN_REASON_LENGTH
from notifications.dispatcher import NotificationDispatcher, build_reassignment_notifications
from notifications.outbox import SideEffectQueue
from reassignment import executor
from reassignment.audit import AuditLogger
from reassignment.errors import PlanError
from reassignment.executor import CommitResult
from reassignment.undo import Actor, UndoHistoryEntry, UndoManager, new_action_id

logger = logging.getLogger(__name__)


@dataclass
class ReassignmentOutcome:
    action_id: str
    result: CommitResult
    expires_at: datetime


class ReassignmentEngine:
    def __init__(
        self,
        undo: Optional[UndoManager] = None,
        audit: Optional[AuditLogger] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        outbox: Optional[SideEffectQueue] = None,
        max_attempts: int = COMMIT_MAX_ATTEMPTS,
    ):
        self.undo = undo or UndoManager()
        self.audit = audit or AuditLogger()
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.outbox = outbox or SideEffectQueue()
        self.max_attempts = max_attempts

    def reassign(
        self,
        session: Session,
        plans: list[ReassignmentPlan],
        actor: Actor,
        reason: str,
    ) -> ReassignmentOutcome:
        """
        Commit a batch and open its undo window.

        Raises:
            PlanError, ValidationError, CommitError; nothing is written.
        """
        reason = (reason or "").strip()
        if len(reason) < MIN_REASON_LENGTH:
            raise PlanError(f"A reason of at least {MIN_REASON_LENGTH} characters is required")
        check_batch(plans)

        logger.info(
            "Starting reassignment: %d students by %s (%s).",
            len(plans), actor.actor_name, actor.actor_id,
        )
        result = executor.commit(session, plans, max_attempts=self.max_attempts)
        action_id = new_action_id()
        action = self.undo.register(result, plans, actor, reason, action_id=action_id)

        self.outbox.enqueue(
            f"audit:{action_id}",
            self.audit.record,
            action_id, plans, actor, reason,
            result.updated_students, result.bus_updates,
            timestamp=utcnow_iso(),
        )
        for notification in build_reassignment_notifications(plans, reason):
            self.outbox.enqueue(
                f"notify:{action_id}:{notification.recipient_id}",
                self.dispatcher.send,
                notification,
            )

        return ReassignmentOutcome(action_id=action_id, result=result, expires_at=action.expires_at)

    def revert(self, session: Session, action_id: str, actor: Optional[Actor] = None) -> bool:
        """
        Undo a committed batch inside its window.

        Raises:
            UndoError subclasses, CommitError.
        """
        action = self.undo.get(action_id)
        buffer = action.buffer
        self.undo.revert(session, action_id)

        by = actor or action.actor
        self.outbox.enqueue(
            f"audit:revert:{action_id}",
            self.audit.record_revert,
            action_id, action.plans, by, f"Revert of: {action.reason}",
            buffer.affected_students, buffer.bus_updates,
        )
        logger.info("Action %s reverted by %s.", action_id, by.actor_name)
        return True

    def check_revert(self, session: Session, action_id: str) -> list[str]:
        return self.undo.check_revert(session, action_id)

    def list_active(self, actor_id: Optional[str] = None) -> list[UndoHistoryEntry]:
        return self.undo.list_active(actor_id)

    def finalize(self, action_id: str) -> None:
        self.undo.finalize(action_id)

    def clear(self, action_id: str) -> bool:
        return self.undo.clear(action_id)
