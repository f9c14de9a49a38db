from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from attendance_digest.audit import log_audit
from attendance_digest.db import get_db
from attendance_digest.errors import ApiError
from attendance_digest.models import AuditActorType
from attendance_digest.schemas import SchedulerStatusRead, SummaryRunResultRead
from attendance_digest.security import require_admin_permission
from attendance_digest.services.daily_summary_job import DailyAttendanceSummaryJob, next_run_at_utc
from attendance_digest.settings import get_attendance_summary_run_time, get_settings

router = APIRouter(tags=["admin"])

DAILY_SUMMARY_JOB_NAME = "attendance-daily-summary"


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def get_daily_summary_job(request: Request) -> DailyAttendanceSummaryJob:
    job = getattr(request.app.state, "daily_summary_job", None)
    if job is None:
        raise ApiError(status_code=503, code="JOB_UNAVAILABLE", message="Daily summary job is not initialized.")
    return job


def build_scheduler_status(job: DailyAttendanceSummaryJob, *, now_utc: datetime | None = None) -> dict[str, Any]:
    settings = get_settings()
    run_time = get_attendance_summary_run_time()
    tz_name = job.tz.key if job.tz is not None else settings.attendance_timezone
    next_run = None
    if settings.attendance_summary_enabled and job.tz is not None:
        next_run = next_run_at_utc(now_utc or datetime.now(timezone.utc), run_time, job.tz)
    return {
        "job": DAILY_SUMMARY_JOB_NAME,
        "enabled": bool(settings.attendance_summary_enabled),
        "is_running": job.is_running,
        "run_time_local": run_time.isoformat(timespec="minutes"),
        "timezone": tz_name,
        "next_run_at_utc": next_run,
        "last_result": job.last_result.to_dict() if job.last_result is not None else None,
    }


@router.get(
    "/api/admin/schedulers/attendance-daily-summary",
    response_model=SchedulerStatusRead,
    dependencies=[Depends(require_admin_permission("notifications"))],
)
def get_daily_summary_status(
    job: DailyAttendanceSummaryJob = Depends(get_daily_summary_job),
) -> dict[str, Any]:
    return build_scheduler_status(job)


@router.post(
    "/api/admin/schedulers/attendance-daily-summary",
    response_model=SummaryRunResultRead,
)
def trigger_daily_summary(
    request: Request,
    claims: dict[str, Any] = Depends(require_admin_permission("notifications", write=True)),
    job: DailyAttendanceSummaryJob = Depends(get_daily_summary_job),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    result = job.run()
    payload = result.to_dict()
    actor_id = str(claims.get("username") or claims.get("sub") or "admin")
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=actor_id,
        action="ATTENDANCE_DAILY_SUMMARY_TRIGGERED",
        success=payload["status"] != "FAILED",
        entity_type="scheduler",
        entity_id=DAILY_SUMMARY_JOB_NAME,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
        details={
            "status": payload["status"],
            "period_key": payload["period_key"],
            "record_count": payload["record_count"],
            "created_count": payload["created_count"],
        },
        request_id=getattr(request.state, "request_id", None),
    )
    return payload
