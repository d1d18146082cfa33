from __future__ import annotations
from typing import Literal
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Shared building blocks
# ---------------------------------------------------------------------------

Shift = Literal["Morning", "Evening"]


class CamelModel(BaseModel):
    """snake_case in Python, camelCase on the wire; either accepted on input."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PlanIn(CamelModel):
    student_id: str
    student_name: str = ""
    from_bus_id: str
    from_route_id: str = ""
    to_bus_id: str
    to_route_id: str = ""
    to_bus_number: str = ""
    stop_id: str = ""
    shift: Shift


class StudentUpdateOut(CamelModel):
    uid: str
    old_bus_id: str
    new_bus_id: str
    old_route_id: str | None
    new_route_id: str
    stop_id: str | None
    old_stop_id: str | None
    shift: Shift


class BusUpdateOut(CamelModel):
    bus_id: str
    morning_count_before: int
    morning_count_after: int
    evening_count_before: int
    evening_count_after: int


class ErrorResponse(CamelModel):
    success: Literal[False] = False
    error: str
    retryable: bool = False


# ---------------------------------------------------------------------------
# POST /reassign
# ---------------------------------------------------------------------------

class ReassignRequest(CamelModel):
    plans: list[PlanIn] = Field(..., min_length=1)
    # length is checked after stripping, by the engine
    reason: str
    actor_id: str = Field(..., min_length=1)
    actor_name: str = Field(..., min_length=1)


class ReassignResponse(CamelModel):
    success: Literal[True] = True
    action_id: str
    expires_at: str
    updated_students: list[StudentUpdateOut]
    bus_updates: list[BusUpdateOut]


# ---------------------------------------------------------------------------
# POST /plan/suggest
# ---------------------------------------------------------------------------

class SuggestRequest(CamelModel):
    source_bus_id: str
    student_ids: list[str] = Field(..., min_length=1)


class UnassignableOut(CamelModel):
    student_id: str
    student_name: str
    reason: str


class SuggestResponse(CamelModel):
    plans: list[PlanIn]
    unassignable: list[UnassignableOut]


# ---------------------------------------------------------------------------
# POST /revert, undo history
# ---------------------------------------------------------------------------

class RevertRequest(CamelModel):
    action_id: str
    actor_id: str | None = None
    actor_name: str | None = None


class SuccessResponse(CamelModel):
    success: Literal[True] = True
    message: str | None = None


class RevertCheckResponse(CamelModel):
    action_id: str
    can_revert: bool
    conflicts: list[str]


class UndoHistoryEntryOut(CamelModel):
    id: str
    plans: list[PlanIn]
    actor_id: str
    actor_name: str
    reason: str
    timestamp: str
    expires_at: str
    seconds_remaining: int
    state: str


# ---------------------------------------------------------------------------
# Audit log, ledger
# ---------------------------------------------------------------------------

class ReassignmentLogOut(CamelModel):
    operation_id: str
    type: str
    actor_id: str | None
    actor_name: str | None
    reason: str | None
    summary: str | None
    plans: list[dict]
    changes: list[dict]
    rollback_of: str | None
    timestamp: str | None


class CapacityResponse(CamelModel):
    bus_id: str
    bus_number: str | None
    route_id: str | None
    shift_mode: str
    capacity: int
    morning_count: int
    evening_count: int
    total_count: int
    shift: Shift | None
    available_seats: int
    is_full: bool
    is_near_capacity: bool


class LedgerSyncBus(CamelModel):
    bus_id: str
    before: dict[str, int]
    after: dict[str, int]
    changed: bool
    over_capacity: bool = False


class LedgerSyncResponse(CamelModel):
    status: Literal["ok"]
    buses: list[LedgerSyncBus]
    unknown_bus_students: list[dict[str, str]]


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------

class LedgerStats(CamelModel):
    buses: int
    students: int
    audit_entries: int


class UndoStats(CamelModel):
    active_actions: int
    window_seconds: int
    sweep_active: bool


class SideEffectStats(CamelModel):
    pending: int
    dropped: int


class HealthResponse(CamelModel):
    status: Literal["ok"]
    timestamp: str
    ledger: LedgerStats
    undo: UndoStats
    side_effects: SideEffectStats
