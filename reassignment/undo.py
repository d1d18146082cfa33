"""
Undo manager: time-boxed compensating reversal of committed batches.

Each committed batch registers one action, keyed by a generated action id:

    ActiveUndo ──revert()──▶ Reverting ──ok──▶ Reverted
        │                        └──fail──▶ ActiveUndo (retry allowed)
        ├──finalize() / clear()──▶ Finalized
        └──window elapsed──────▶ Finalized

The revert buffer (before/after snapshot) lives only while the action is
ActiveUndo or Reverting; any consumed action drops it, so a second revert
fails with UndoConsumedError instead of re-applying.  Expiry is checked
lazily on every call and eagerly by sweep_expired(), which the API runs on
a schedule.  The clock is injectable for tests.

State is process-local: a restart finalizes every open action.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session

from allocation.planner import ReassignmentPlan
from config import UNDO_WINDOW_SECONDS
from reassignment import executor
from reassignment.errors import (
    UndoConsumedError,
    UndoExpiredError,
    UndoNotFoundError,
)
from reassignment.executor import BusUpdate, CommitResult, StudentUpdate

logger = logging.getLogger(__name__)

# Consumed actions stay visible in history() this long after creation.
HISTORY_RETENTION = timedelta(hours=24)


class ActionState(str, Enum):
    ACTIVE = "ActiveUndo"
    REVERTING = "Reverting"
    REVERTED = "Reverted"
    FINALIZED = "Finalized"


@dataclass(frozen=True)
class Actor:
    actor_id: str
    actor_name: str
    role: Optional[str] = None


@dataclass
class RevertBuffer:
    affected_students: list[StudentUpdate]
    bus_updates: list[BusUpdate]
    timestamp: datetime


@dataclass
class UndoAction:
    action_id: str
    plans: list[ReassignmentPlan]
    actor: Actor
    reason: str
    created_at: datetime
    expires_at: datetime
    state: ActionState = ActionState.ACTIVE
    buffer: Optional[RevertBuffer] = None
    consumed_at: Optional[datetime] = None


@dataclass(frozen=True)
class UndoHistoryEntry:
    id: str
    plans: list[ReassignmentPlan]
    actor: Actor
    reason: str
    timestamp: datetime
    expires_at: datetime
    seconds_remaining: int
    state: str
    student_count: int = 0
    bus_ids: list[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_action_id() -> str:
    return f"reassign_{uuid.uuid4().hex[:16]}"


class UndoManager:
    def __init__(
        self,
        window_seconds: int = UNDO_WINDOW_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.window = timedelta(seconds=window_seconds)
        self.now = clock
        self._actions: dict[str, UndoAction] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registration & lookup
    # ------------------------------------------------------------------

    def register(
        self,
        result: CommitResult,
        plans: list[ReassignmentPlan],
        actor: Actor,
        reason: str,
        action_id: Optional[str] = None,
    ) -> UndoAction:
        """Store the revert buffer for a freshly committed batch and start its window."""
        now = self.now()
        action = UndoAction(
            action_id=action_id or new_action_id(),
            plans=list(plans),
            actor=actor,
            reason=reason,
            created_at=now,
            expires_at=now + self.window,
            buffer=RevertBuffer(
                affected_students=list(result.updated_students),
                bus_updates=list(result.bus_updates),
                timestamp=now,
            ),
        )
        with self._lock:
            self._prune(now)
            self._actions[action.action_id] = action
        logger.info(
            "Undo action %s registered for %d students (expires %s).",
            action.action_id, len(action.plans), action.expires_at.isoformat(),
        )
        return action

    def get(self, action_id: str) -> UndoAction:
        with self._lock:
            action = self._actions.get(action_id)
            if action is None:
                raise UndoNotFoundError(action_id)
            self._expire_if_due(action, self.now())
            return action

    def _entry(self, action: UndoAction, now: datetime) -> UndoHistoryEntry:
        remaining = 0
        if action.state == ActionState.ACTIVE:
            remaining = max(0, int((action.expires_at - now).total_seconds()))
        return UndoHistoryEntry(
            id=action.action_id,
            plans=action.plans,
            actor=action.actor,
            reason=action.reason,
            timestamp=action.created_at,
            expires_at=action.expires_at,
            seconds_remaining=remaining,
            state=action.state.value,
            student_count=len(action.plans),
            bus_ids=sorted({p.from_bus_id for p in action.plans} | {p.to_bus_id for p in action.plans}),
        )

    def list_active(self, actor_id: Optional[str] = None) -> list[UndoHistoryEntry]:
        """Actions still inside their window, newest first, optionally for one actor."""
        now = self.now()
        with self._lock:
            for action in self._actions.values():
                self._expire_if_due(action, now)
            active = [
                a for a in self._actions.values()
                if a.state == ActionState.ACTIVE
                and (actor_id is None or a.actor.actor_id == actor_id)
            ]
            return [self._entry(a, now) for a in sorted(active, key=lambda a: a.created_at, reverse=True)]

    def history(self, actor_id: Optional[str] = None) -> list[UndoHistoryEntry]:
        """Every retained action in any state, newest first."""
        now = self.now()
        with self._lock:
            for action in self._actions.values():
                self._expire_if_due(action, now)
            actions = [
                a for a in self._actions.values()
                if actor_id is None or a.actor.actor_id == actor_id
            ]
            return [self._entry(a, now) for a in sorted(actions, key=lambda a: a.created_at, reverse=True)]

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _consume(self, action: UndoAction, state: ActionState, now: datetime) -> None:
        action.state = state
        action.buffer = None
        action.consumed_at = now

    def _expire_if_due(self, action: UndoAction, now: datetime) -> bool:
        if action.state == ActionState.ACTIVE and now >= action.expires_at:
            self._consume(action, ActionState.FINALIZED, now)
            logger.info("Undo window for action %s elapsed; finalized.", action.action_id)
            return True
        return False

    def finalize(self, action_id: str) -> UndoAction:
        """Actor confirmed the batch: drop the buffer, no revert possible afterwards."""
        now = self.now()
        with self._lock:
            action = self._actions.get(action_id)
            if action is None:
                raise UndoNotFoundError(action_id)
            if self._expire_if_due(action, now):
                return action
            if action.state != ActionState.ACTIVE:
                raise UndoConsumedError(action_id, action.state.value)
            self._consume(action, ActionState.FINALIZED, now)
        logger.info("Action %s finalized by actor.", action_id)
        return action

    def clear(self, action_id: str) -> bool:
        """
        Discard an action's buffer if it still has one.

        Returns False for unknown or already-consumed ids instead of raising,
        so UI cleanup paths can call it unconditionally.
        """
        now = self.now()
        with self._lock:
            action = self._actions.get(action_id)
            if action is None or action.state != ActionState.ACTIVE:
                return False
            self._consume(action, ActionState.FINALIZED, now)
        logger.debug("Action %s cleared.", action_id)
        return True

    def sweep_expired(self) -> int:
        """Finalize every action whose window has elapsed.  Returns how many."""
        now = self.now()
        with self._lock:
            expired = sum(1 for a in self._actions.values() if self._expire_if_due(a, now))
            self._prune(now)
        if expired:
            logger.info("Undo sweep finalized %d expired actions.", expired)
        return expired

    def _prune(self, now: datetime) -> None:
        stale = [
            action_id for action_id, a in self._actions.items()
            if a.state != ActionState.ACTIVE and a.state != ActionState.REVERTING
            and now - a.created_at > HISTORY_RETENTION
        ]
        for action_id in stale:
            del self._actions[action_id]

    # ------------------------------------------------------------------
    # Revert
    # ------------------------------------------------------------------

    @staticmethod
    def _unavailable(action: UndoAction) -> Exception:
        if action.state == ActionState.FINALIZED and action.consumed_at \
                and action.consumed_at >= action.expires_at:
            return UndoExpiredError(action.action_id)
        return UndoConsumedError(action.action_id, action.state.value)

    def _claim(self, action_id: str) -> UndoAction:
        """Move an action to Reverting so no second caller can take it."""
        now = self.now()
        with self._lock:
            action = self._actions.get(action_id)
            if action is None:
                raise UndoNotFoundError(action_id)
            if self._expire_if_due(action, now):
                raise UndoExpiredError(action_id)
            if action.state != ActionState.ACTIVE:
                raise self._unavailable(action)
            action.state = ActionState.REVERTING
            return action

    def revert(self, session: Session, action_id: str) -> bool:
        """
        Restore the exact pre-commit state of an active action.

        Returns True on success.  On any failure the action goes back to
        ActiveUndo (if its window is still open) and the error propagates.

        Raises:
            UndoNotFoundError / UndoExpiredError / UndoConsumedError,
            UndoConflictError, CommitError.
        """
        action = self._claim(action_id)
        buffer = action.buffer
        try:
            executor.revert(session, action_id, buffer.affected_students, buffer.bus_updates)
        except Exception:
            with self._lock:
                action.state = ActionState.ACTIVE
                self._expire_if_due(action, self.now())
            raise
        with self._lock:
            self._consume(action, ActionState.REVERTED, self.now())
        return True

    def check_revert(self, session: Session, action_id: str) -> list[str]:
        """
        Conflicts that would block reverting `action_id` right now.

        Read-only; the revert itself repeats the check inside its transaction.
        """
        action = self.get(action_id)
        if action.state != ActionState.ACTIVE or action.buffer is None:
            raise self._unavailable(action)
        conflicts = executor.find_revert_conflicts(
            session, action.buffer.affected_students, action.buffer.bus_updates,
        )
        session.rollback()  # release FOR UPDATE locks
        return conflicts
