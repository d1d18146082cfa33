"""
Error taxonomy for the reassignment engine.

  PlanError:       the batch itself is malformed (empty, duplicates).
                   Caller-fixable before submission.
  ValidationError: the batch is well-formed but violates a ledger or
                   passenger invariant when checked against fresh state.
  CommitError:     the storage layer failed or kept conflicting after the
                   bounded retry.  Transient; the caller may resubmit.
  UndoError:       the undo action is unknown, expired, already consumed,
                   or the state moved on since the commit.  Non-fatal.

The API maps the first two to HTTP 400 and CommitError to 500 so callers
can tell a rejected batch from a failed one.
"""


class ReassignmentError(Exception):
    """Base class for every error raised by the reassignment engine."""


class PlanError(ReassignmentError):
    pass


class ValidationError(ReassignmentError):
    pass


class BusNotFoundError(ValidationError):
    def __init__(self, bus_id: str):
        self.bus_id = bus_id
        super().__init__(f"Bus {bus_id} not found")


class StudentNotFoundError(ValidationError):
    def __init__(self, student_id: str):
        self.student_id = student_id
        super().__init__(f"Student {student_id} not found")


class StalePlanError(ValidationError):
    """The passenger's stored assignment no longer matches the plan."""


class CapacityExceededError(ValidationError):
    def __init__(self, bus_label: str, shift: str, requested: int, capacity: int):
        self.bus_label = bus_label
        self.shift = shift
        self.requested = requested
        self.capacity = capacity
        super().__init__(
            f"Bus {bus_label} would exceed {shift.lower()} capacity ({requested}/{capacity})"
        )


class ShiftIncompatibleError(ValidationError):
    def __init__(self, bus_label: str, shift_mode: str, shift: str):
        self.bus_label = bus_label
        self.shift_mode = shift_mode
        self.shift = shift
        detail = ' - only "Both" buses allowed' if shift == "Evening" else ""
        super().__init__(
            f"Bus {bus_label} ({shift_mode}) cannot accept {shift.lower()} students{detail}"
        )


class CommitError(ReassignmentError):
    retryable = True


class UndoError(ReassignmentError):
    pass


class UndoNotFoundError(UndoError):
    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"No undo action {action_id}")


class UndoExpiredError(UndoError):
    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"Undo window for action {action_id} has expired")


class UndoConsumedError(UndoError):
    def __init__(self, action_id: str, state: str):
        self.action_id = action_id
        self.state = state
        super().__init__(f"Action {action_id} is already {state.lower()}")


class UndoConflictError(UndoError):
    def __init__(self, action_id: str, conflicts: list[str]):
        self.action_id = action_id
        self.conflicts = conflicts
        super().__init__(
            f"Cannot revert action {action_id}: state changed since commit ({'; '.join(conflicts)})"
        )
