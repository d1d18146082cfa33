"""
FastAPI application entry point.

On startup:
  1. Initialise the database schema.
  2. Start the APScheduler:
       - Undo sweep every UNDO_SWEEP_SECONDS: finalizes actions whose undo
         window elapsed (expiry is also checked lazily on every call).
       - Side-effect drain every SIDE_EFFECT_RETRY_SECONDS: retries queued
         audit rows and notifications that failed after a commit.

Endpoints (v1):
  POST /reassign
  POST /revert
  GET  /revert/check?actionId=<id>
  POST /undo/{action_id}/finalize
  GET  /undo-history?actorId=<id>&includeConsumed=<bool>
  POST /plan/suggest
  GET  /reassignment-logs?limit=<n>&type=<type>&actorId=<id>
  GET  /buses/{bus_id}/capacity?shift=<Morning|Evening>
  POST /ledger/sync
  GET  /health

Mutating endpoints are synchronous handlers so FastAPI runs each in its own
worker thread; the reassignment transaction blocks that thread only.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Literal

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from sqlalchemy import func
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from allocation.ledger import capacity_info, sync_counts
from allocation.planner import BusCandidate, ReassignmentPlan, SelectedStudent, suggest
from api.schemas import (
    CapacityResponse,
    HealthResponse,
    LedgerSyncResponse,
    ReassignmentLogOut,
    ReassignRequest,
    ReassignResponse,
    RevertCheckResponse,
    RevertRequest,
    SuccessResponse,
    SuggestRequest,
    SuggestResponse,
    UndoHistoryEntryOut,
)
from config import (
    ADMIN_API_KEY,
    API_HOST,
    API_PORT,
    CORS_ORIGINS,
    SIDE_EFFECT_RETRY_SECONDS,
    UNDO_SWEEP_SECONDS,
    UNDO_WINDOW_SECONDS,
)
from db.models import Bus, ReassignmentLog, Student
from db.session import get_session, init_db
from reassignment.audit import list_logs
from reassignment.engine import ReassignmentEngine
from reassignment.errors import (
    CommitError,
    ReassignmentError,
    UndoError,
    UndoNotFoundError,
)
from reassignment.undo import Actor, UndoHistoryEntry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_admin_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _require_admin_key(key: str | None = Security(_admin_key_header)) -> None:
    """
    Optional API-key guard for mutating endpoints.

    If ADMIN_API_KEY is not set the endpoints are open (local dev / testing).
    Actor identity itself comes from the upstream identity check and is
    passed in the request body.
    """
    if not ADMIN_API_KEY:
        return  # no key configured → open
    if key != ADMIN_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing X-API-Key header.")


scheduler = AsyncIOScheduler()

# Process-wide engine: owns the undo table and the side-effect queue.
reassignment_engine = ReassignmentEngine()


def get_engine() -> ReassignmentEngine:
    """Dependency hook so tests can swap in an engine with a fake clock."""
    return reassignment_engine


def _sweep_undo_windows() -> None:
    """Scheduled job: finalize undo actions whose window has elapsed."""
    try:
        reassignment_engine.undo.sweep_expired()
    except Exception as exc:
        logger.error("Undo sweep failed: %s", exc, exc_info=True)


def _drain_side_effects() -> None:
    """Scheduled job: retry queued audit rows and notifications."""
    drained = reassignment_engine.outbox.drain()
    if drained:
        logger.info("Side-effect drain: %d jobs completed.", drained)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_db()
    logger.info("Database initialised.")

    if UNDO_SWEEP_SECONDS > 0:
        scheduler.add_job(
            _sweep_undo_windows,
            "interval",
            seconds=UNDO_SWEEP_SECONDS,
            id="undo_sweep",
            replace_existing=True,
        )
        logger.info("Undo sweep scheduled (every %ds).", UNDO_SWEEP_SECONDS)
    else:
        logger.info("Undo sweep disabled (UNDO_SWEEP_SECONDS=0); lazy expiry only.")

    scheduler.add_job(
        _drain_side_effects,
        "interval",
        seconds=SIDE_EFFECT_RETRY_SECONDS,
        id="side_effect_drain",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started. Undo window %ds, side-effect retry every %ds.",
        UNDO_WINDOW_SECONDS, SIDE_EFFECT_RETRY_SECONDS,
    )

    yield

    # Shutdown
    if scheduler.running:
        scheduler.shutdown()
    _drain_side_effects()


app = FastAPI(
    title="Fleet Reassignment Service",
    description="Atomic student-to-bus reassignment with capacity checks and time-boxed undo.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.exception_handler(ReassignmentError)
async def _reassignment_error_handler(request: Request, exc: ReassignmentError) -> JSONResponse:
    """
    PlanError / ValidationError / UndoError → 400 (404 for unknown action ids),
    CommitError → 500 with retryable=true.
    """
    if isinstance(exc, CommitError):
        status_code = 500
        logger.error("Commit failure on %s: %s", request.url.path, exc)
    elif isinstance(exc, UndoNotFoundError):
        status_code = 404
    else:
        status_code = 400
        if not isinstance(exc, UndoError):
            logger.info("Rejected request on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": str(exc), "retryable": isinstance(exc, CommitError)},
    )


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies get the same envelope as rejected plans, as a 400."""
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg", ""))
    logger.info("Invalid request on %s: %s", request.url.path, messages)
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "; ".join(messages) or "Invalid request", "retryable": False},
    )


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail), "retryable": False},
        headers=getattr(exc, "headers", None),
    )


def _plan_from_request(p) -> ReassignmentPlan:
    return ReassignmentPlan(
        student_id=p.student_id,
        student_name=p.student_name,
        from_bus_id=p.from_bus_id,
        from_route_id=p.from_route_id,
        to_bus_id=p.to_bus_id,
        to_route_id=p.to_route_id,
        to_bus_number=p.to_bus_number,
        stop_id=p.stop_id,
        shift=p.shift,
    )


def _plan_out(p: ReassignmentPlan) -> dict:
    return {
        "student_id": p.student_id,
        "student_name": p.student_name,
        "from_bus_id": p.from_bus_id,
        "from_route_id": p.from_route_id,
        "to_bus_id": p.to_bus_id,
        "to_route_id": p.to_route_id,
        "to_bus_number": p.to_bus_number,
        "stop_id": p.stop_id,
        "shift": p.shift,
    }


def _history_out(entry: UndoHistoryEntry) -> dict:
    return {
        "id": entry.id,
        "plans": [_plan_out(p) for p in entry.plans],
        "actor_id": entry.actor.actor_id,
        "actor_name": entry.actor.actor_name,
        "reason": entry.reason,
        "timestamp": entry.timestamp.isoformat(),
        "expires_at": entry.expires_at.isoformat(),
        "seconds_remaining": entry.seconds_remaining,
        "state": entry.state,
    }


@app.get("/health", response_model=HealthResponse)
def health(
    session: Session = Depends(get_session),
    engine: ReassignmentEngine = Depends(get_engine),
) -> HealthResponse:
    """Liveness check plus ledger, undo and side-effect queue stats."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "ledger": {
            "buses": session.query(func.count(Bus.bus_id)).scalar() or 0,
            "students": session.query(func.count(Student.uid)).scalar() or 0,
            "audit_entries": session.query(func.count(ReassignmentLog.id)).scalar() or 0,
        },
        "undo": {
            "active_actions": len(engine.list_active()),
            "window_seconds": int(engine.undo.window.total_seconds()),
            "sweep_active": UNDO_SWEEP_SECONDS > 0 and scheduler.running,
        },
        "side_effects": {
            "pending": len(engine.outbox),
            "dropped": engine.outbox.dropped,
        },
    }


@app.post("/reassign", response_model=ReassignResponse)
def reassign(
    body: ReassignRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    engine: ReassignmentEngine = Depends(get_engine),
    _: None = Depends(_require_admin_key),
) -> ReassignResponse:
    """
    Move a batch of students between buses as one atomic unit.

    On success the batch can be reverted through POST /revert until the undo
    window closes.  Audit and notification delivery happen after the
    response is sent.
    """
    outcome = engine.reassign(
        session,
        [_plan_from_request(p) for p in body.plans],
        Actor(actor_id=body.actor_id, actor_name=body.actor_name),
        body.reason,
    )
    background_tasks.add_task(engine.outbox.drain)
    return {
        "success": True,
        "action_id": outcome.action_id,
        "expires_at": outcome.expires_at.isoformat(),
        **outcome.result.as_dict(),
    }


@app.post("/revert", response_model=SuccessResponse)
def revert(
    body: RevertRequest,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
    engine: ReassignmentEngine = Depends(get_engine),
    _: None = Depends(_require_admin_key),
) -> SuccessResponse:
    """Restore the exact pre-commit state of a batch still inside its undo window."""
    actor = None
    if body.actor_id:
        actor = Actor(actor_id=body.actor_id, actor_name=body.actor_name or body.actor_id)
    engine.revert(session, body.action_id, actor)
    background_tasks.add_task(engine.outbox.drain)
    return {"success": True, "message": "Reassignment reverted successfully"}


@app.get("/revert/check", response_model=RevertCheckResponse)
def check_revert(
    action_id: str = Query(..., alias="actionId"),
    session: Session = Depends(get_session),
    engine: ReassignmentEngine = Depends(get_engine),
) -> RevertCheckResponse:
    """Report whether a revert would succeed right now, and why not if it would not."""
    conflicts = engine.check_revert(session, action_id)
    return {"action_id": action_id, "can_revert": not conflicts, "conflicts": conflicts}


@app.post("/undo/{action_id}/finalize", response_model=SuccessResponse)
def finalize(
    action_id: str,
    engine: ReassignmentEngine = Depends(get_engine),
    _: None = Depends(_require_admin_key),
) -> SuccessResponse:
    """Confirm a batch early; it can no longer be reverted."""
    engine.finalize(action_id)
    return {"success": True, "message": f"Action {action_id} finalized"}


@app.get("/undo-history", response_model=list[UndoHistoryEntryOut])
def undo_history(
    actor_id: str | None = Query(None, alias="actorId", description="Only this actor's actions"),
    include_consumed: bool = Query(
        False, alias="includeConsumed",
        description="Also return reverted / finalized actions still held in memory",
    ),
    engine: ReassignmentEngine = Depends(get_engine),
) -> list[UndoHistoryEntryOut]:
    """Actions that can still be reverted, newest first."""
    entries = engine.undo.history(actor_id) if include_consumed else engine.list_active(actor_id)
    return [_history_out(e) for e in entries]


@app.post("/plan/suggest", response_model=SuggestResponse)
def suggest_plan(
    body: SuggestRequest,
    session: Session = Depends(get_session),
) -> SuggestResponse:
    """
    Propose a load-balanced target bus for each selected student.

    Nothing is written; submit the returned plans to POST /reassign.
    """
    source = session.get(Bus, body.source_bus_id)
    if source is None:
        raise HTTPException(status_code=404, detail=f"Bus {body.source_bus_id} not found")

    students = (
        session.query(Student)
        .filter(Student.uid.in_(body.student_ids), Student.bus_id == body.source_bus_id)
        .all()
    )
    found = {s.uid for s in students}
    missing = [sid for sid in body.student_ids if sid not in found]
    if missing:
        raise HTTPException(
            status_code=404,
            detail=f"Students not on bus {body.source_bus_id}: {', '.join(missing)}",
        )
    by_id = {s.uid: s for s in students}

    candidates = [
        BusCandidate(
            bus_id=b.bus_id,
            capacity=b.capacity,
            shift_mode=b.shift_mode,
            route_id=b.route_id or "",
            bus_number=b.bus_number or "",
            morning_count=b.morning_count or 0,
            evening_count=b.evening_count or 0,
            stop_ids=list(b.stop_ids or []),
        )
        for b in session.query(Bus).filter(Bus.status == "active").order_by(Bus.bus_id).all()
    ]
    result = suggest(
        body.source_bus_id,
        [
            SelectedStudent(
                student_id=by_id[sid].uid,
                student_name=by_id[sid].name,
                shift=by_id[sid].shift,
                stop_id=by_id[sid].stop_id or "",
                route_id=by_id[sid].route_id or "",
            )
            for sid in body.student_ids
        ],
        candidates,
    )
    return {
        "plans": [_plan_out(p) for p in result.plans],
        "unassignable": [
            {"student_id": u.student_id, "student_name": u.student_name, "reason": u.reason}
            for u in result.unassignable
        ],
    }


@app.get("/reassignment-logs", response_model=list[ReassignmentLogOut])
def reassignment_logs(
    limit: int = Query(50, ge=1, le=500),
    log_type: Literal["reassignment", "revert"] | None = Query(None, alias="type"),
    actor_id: str | None = Query(None, alias="actorId"),
    session: Session = Depends(get_session),
) -> list[ReassignmentLogOut]:
    """Audit trail, most recent first."""
    return [
        {
            "operation_id": row.operation_id,
            "type": row.type,
            "actor_id": row.actor_id,
            "actor_name": row.actor_name,
            "reason": row.reason,
            "summary": row.summary,
            "plans": row.plans or [],
            "changes": row.changes or [],
            "rollback_of": row.rollback_of,
            "timestamp": row.timestamp,
        }
        for row in list_logs(session, limit=limit, log_type=log_type, actor_id=actor_id)
    ]


@app.get("/buses/{bus_id}/capacity", response_model=CapacityResponse)
def bus_capacity(
    bus_id: str,
    shift: Literal["Morning", "Evening"] | None = Query(None),
    session: Session = Depends(get_session),
) -> CapacityResponse:
    """Seats taken and free on one bus, overall or for one shift."""
    bus = session.get(Bus, bus_id)
    if bus is None:
        raise HTTPException(status_code=404, detail=f"Bus {bus_id} not found")
    return capacity_info(bus, shift)


@app.post("/ledger/sync", response_model=LedgerSyncResponse)
def ledger_sync(
    session: Session = Depends(get_session),
    _: None = Depends(_require_admin_key),
) -> LedgerSyncResponse:
    """Recompute every bus's shift counters from its active students."""
    report = sync_counts(session)
    return {"status": "ok", **report}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host=API_HOST, port=API_PORT)
