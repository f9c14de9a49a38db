from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
import enum
import logging
import threading
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from attendance_digest.services.attendance_summary import (
    fetch_attendance_records,
    render_summary_message,
    summarize_attendance_records,
)
from attendance_digest.services.notification_log import (
    NOTIFICATION_KIND_DAILY_ATTENDANCE_SUMMARY,
    NotificationWriteOutcome,
    deliver_summary_notification,
)
from attendance_digest.services.recipients import DroppedAssignment, resolve_summary_recipients
from attendance_digest.services.time_window import (
    ReportingWindow,
    attendance_timezone,
    compute_reporting_window,
    normalize_utc,
)
from attendance_digest.settings import get_attendance_summary_target_roles, get_settings

logger = logging.getLogger("app.attendance_summary")

MAX_ERROR_LENGTH = 500


class RunStatus(str, enum.Enum):
    COMPLETED = "COMPLETED"
    NO_RECORDS = "NO_RECORDS"
    NO_RECIPIENTS = "NO_RECIPIENTS"
    SKIPPED_RUNNING = "SKIPPED_RUNNING"
    FAILED = "FAILED"


@dataclass(frozen=True, slots=True)
class SummaryRunResult:
    status: RunStatus
    started_at_utc: datetime
    finished_at_utc: datetime
    period_key: str | None = None
    window_start_utc: datetime | None = None
    window_end_utc: datetime | None = None
    record_count: int = 0
    recipient_count: int = 0
    created_count: int = 0
    already_notified_count: int = 0
    duplicate_rejected_count: int = 0
    failed_count: int = 0
    dropped_assignments: list[DroppedAssignment] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "period_key": self.period_key,
            "window_start_utc": self.window_start_utc.isoformat() if self.window_start_utc else None,
            "window_end_utc": self.window_end_utc.isoformat() if self.window_end_utc else None,
            "record_count": self.record_count,
            "recipient_count": self.recipient_count,
            "created_count": self.created_count,
            "already_notified_count": self.already_notified_count,
            "duplicate_rejected_count": self.duplicate_rejected_count,
            "failed_count": self.failed_count,
            "dropped_assignments": [item.to_dict() for item in self.dropped_assignments],
            "started_at_utc": self.started_at_utc.isoformat(),
            "finished_at_utc": self.finished_at_utc.isoformat(),
            "error": self.error,
        }


class RunGuard:
    """Single-flight flag for one job instance.

    Only guards against overlap inside this process; duplicate delivery across
    processes is rejected by the notification log's unique key.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self) -> Iterator[bool]:
        acquired = self._lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._lock.release()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DailyAttendanceSummaryJob:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        target_roles: Sequence[str],
        day_offset: int = -1,
        tz: ZoneInfo | None = None,
        clock: Callable[[], datetime] = _utcnow,
        kind: str = NOTIFICATION_KIND_DAILY_ATTENDANCE_SUMMARY,
    ) -> None:
        self._session_factory = session_factory
        self.target_roles = tuple(target_roles)
        self.day_offset = day_offset
        self.tz = tz
        self.kind = kind
        self._clock = clock
        self.run_guard = RunGuard()
        self.last_result: SummaryRunResult | None = None

    @property
    def is_running(self) -> bool:
        return self.run_guard.is_running

    def run(self, now_utc: datetime | None = None) -> SummaryRunResult:
        started_at_utc = self._clock()
        with self.run_guard.hold() as acquired:
            if not acquired:
                logger.warning("attendance_summary_skipped_already_running")
                return SummaryRunResult(
                    status=RunStatus.SKIPPED_RUNNING,
                    started_at_utc=started_at_utc,
                    finished_at_utc=self._clock(),
                )

            try:
                result = self._execute(normalize_utc(now_utc or started_at_utc), started_at_utc)
            except Exception as exc:
                logger.exception(
                    "attendance_summary_failed",
                    extra={"day_offset": self.day_offset, "kind": self.kind},
                )
                result = SummaryRunResult(
                    status=RunStatus.FAILED,
                    started_at_utc=started_at_utc,
                    finished_at_utc=self._clock(),
                    error=f"{exc.__class__.__name__}: {exc}"[:MAX_ERROR_LENGTH],
                )
            self.last_result = result
            return result

    def _finish(
        self,
        status: RunStatus,
        *,
        window: ReportingWindow,
        started_at_utc: datetime,
        **counts: Any,
    ) -> SummaryRunResult:
        result = SummaryRunResult(
            status=status,
            started_at_utc=started_at_utc,
            finished_at_utc=self._clock(),
            period_key=window.period_key,
            window_start_utc=window.start_utc,
            window_end_utc=window.end_utc,
            **counts,
        )
        logger.info("attendance_summary_finished", extra=result.to_dict())
        return result

    def _execute(self, reference_utc: datetime, started_at_utc: datetime) -> SummaryRunResult:
        window = compute_reporting_window(reference_utc, self.day_offset, self.tz)
        logger.info(
            "attendance_summary_started",
            extra={
                "period_key": window.period_key,
                "window_start_utc": window.start_utc.isoformat(),
                "window_end_utc": window.end_utc.isoformat(),
                "timezone": window.timezone_name,
            },
        )

        with self._session_factory() as session:
            records = fetch_attendance_records(session, window)
            if not records:
                return self._finish(RunStatus.NO_RECORDS, window=window, started_at_utc=started_at_utc)

            summary = summarize_attendance_records(records, window)
            resolution = resolve_summary_recipients(session, self.target_roles)
            if not resolution.recipients:
                logger.warning(
                    "attendance_summary_no_recipients",
                    extra={
                        "period_key": window.period_key,
                        "assignment_count": resolution.assignment_count,
                        "dropped_count": len(resolution.dropped),
                    },
                )
                return self._finish(
                    RunStatus.NO_RECIPIENTS,
                    window=window,
                    started_at_utc=started_at_utc,
                    record_count=summary.total_records,
                    dropped_assignments=list(resolution.dropped),
                )

            message = render_summary_message(summary)
            outcomes: Counter[NotificationWriteOutcome] = Counter()
            for recipient in resolution.recipients:
                try:
                    outcome = deliver_summary_notification(
                        session,
                        recipient_id=recipient.profile_id,
                        message=message,
                        period_key=window.period_key,
                        record_count=summary.total_records,
                        generated_at_utc=self._clock(),
                        kind=self.kind,
                    )
                except Exception:
                    session.rollback()
                    logger.exception(
                        "attendance_summary_recipient_failed",
                        extra={"recipient_id": recipient.profile_id, "period_key": window.period_key},
                    )
                    outcome = NotificationWriteOutcome.FAILED
                if outcome is NotificationWriteOutcome.CREATED:
                    logger.info(
                        "attendance_summary_notification_created",
                        extra={"recipient_id": recipient.profile_id, "period_key": window.period_key},
                    )
                outcomes[outcome] += 1

        return self._finish(
            RunStatus.COMPLETED,
            window=window,
            started_at_utc=started_at_utc,
            record_count=summary.total_records,
            recipient_count=len(resolution.recipients),
            created_count=outcomes[NotificationWriteOutcome.CREATED],
            already_notified_count=outcomes[NotificationWriteOutcome.ALREADY_NOTIFIED],
            duplicate_rejected_count=outcomes[NotificationWriteOutcome.DUPLICATE_REJECTED],
            failed_count=outcomes[NotificationWriteOutcome.FAILED],
            dropped_assignments=list(resolution.dropped),
        )


def next_run_at_utc(now_utc: datetime, run_at_local: time, tz: ZoneInfo) -> datetime:
    reference_utc = normalize_utc(now_utc)
    local_day = reference_utc.astimezone(tz).date()
    candidate_utc = datetime.combine(local_day, run_at_local, tzinfo=tz).astimezone(timezone.utc)
    if candidate_utc <= reference_utc:
        candidate_utc = datetime.combine(
            local_day + timedelta(days=1),
            run_at_local,
            tzinfo=tz,
        ).astimezone(timezone.utc)
    return candidate_utc


def build_daily_summary_job(session_factory: Callable[[], Session]) -> DailyAttendanceSummaryJob:
    return DailyAttendanceSummaryJob(
        session_factory,
        target_roles=get_attendance_summary_target_roles(),
        day_offset=int(get_settings().attendance_summary_day_offset),
        tz=attendance_timezone(),
    )
