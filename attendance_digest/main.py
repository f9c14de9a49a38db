import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from attendance_digest.db import SessionLocal, engine
from attendance_digest.errors import register_exception_handlers
from attendance_digest.logging_utils import setup_json_logging
from attendance_digest.routers import admin
from attendance_digest.routers.admin import build_scheduler_status
from attendance_digest.services.daily_summary_job import (
    DailyAttendanceSummaryJob,
    build_daily_summary_job,
    next_run_at_utc,
)
from attendance_digest.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from attendance_digest.services.time_window import attendance_timezone
from attendance_digest.settings import get_attendance_summary_run_time, get_cors_origins, get_settings

setup_json_logging()
logger = logging.getLogger("app.request")
scheduler_logger = logging.getLogger("app.scheduler")
settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.state.daily_summary_job = build_daily_summary_job(SessionLocal)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "system")
    request.state.actor_id = getattr(request.state, "actor_id", "system")

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                "actor": getattr(request.state, "actor", "system"),
                "actor_id": getattr(request.state, "actor_id", "system"),
            },
        )


register_exception_handlers(app, logger)
app.include_router(admin.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


async def _daily_summary_scheduler_loop(stop_event: asyncio.Event, job: DailyAttendanceSummaryJob) -> None:
    tz = job.tz or attendance_timezone()
    run_time = get_attendance_summary_run_time()
    while not stop_event.is_set():
        now_utc = datetime.now(timezone.utc)
        run_at_utc = next_run_at_utc(now_utc, run_time, tz)
        delay_seconds = max(1.0, (run_at_utc - now_utc).total_seconds())
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_seconds)
        except asyncio.TimeoutError:
            pass
        else:
            return

        try:
            result = await asyncio.to_thread(job.run)
        except Exception:
            scheduler_logger.exception("daily_summary_tick_failed")
            continue
        scheduler_logger.info(
            "daily_summary_tick",
            extra={
                "status": result.status.value,
                "period_key": result.period_key,
                "created_count": result.created_count,
            },
        )


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        scheduler_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    scheduler_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        raise RuntimeError(f"Runtime schema guard failed: {'; '.join(result.issues)}")


@app.on_event("startup")
async def start_daily_summary_scheduler() -> None:
    if not settings.attendance_summary_enabled:
        return
    if getattr(app.state, "daily_summary_scheduler_task", None) is not None:
        return

    job: DailyAttendanceSummaryJob = app.state.daily_summary_job
    stop_event = asyncio.Event()
    app.state.daily_summary_scheduler_stop_event = stop_event
    app.state.daily_summary_scheduler_task = asyncio.create_task(_daily_summary_scheduler_loop(stop_event, job))
    scheduler_logger.info(
        "daily_summary_scheduler_started",
        extra={
            "run_time_local": get_attendance_summary_run_time().isoformat(timespec="minutes"),
            "timezone": (job.tz or attendance_timezone()).key,
            "target_roles": list(job.target_roles),
        },
    )


@app.on_event("shutdown")
async def stop_daily_summary_scheduler() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "daily_summary_scheduler_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "daily_summary_scheduler_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.daily_summary_scheduler_stop_event = None
    app.state.daily_summary_scheduler_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "daily_summary": build_scheduler_status(app.state.daily_summary_job),
    }
