from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_digest.models import AttendanceRecord
from attendance_digest.services.time_window import ReportingWindow

logger = logging.getLogger("app.attendance_summary")

STATUS_UNKNOWN = "UNKNOWN"
STATUS_LATE = "LATE"
STATUS_EARLY_DEPARTURE = "EARLY_DEPARTURE"
STATUS_BREAKDOWN_SEPARATOR = ", "
STATUS_BREAKDOWN_PLACEHOLDER = "N/A"


@dataclass(frozen=True, slots=True)
class AttendanceSummary:
    period_key: str
    local_date: date
    total_records: int
    unique_employees: int
    late_arrivals: int
    early_departures: int
    status_counts: dict[str, int] = field(default_factory=dict)


def fetch_attendance_records(session: Session, window: ReportingWindow) -> list[AttendanceRecord]:
    try:
        return list(
            session.scalars(
                select(AttendanceRecord)
                .where(
                    AttendanceRecord.created_at >= window.start_utc,
                    AttendanceRecord.created_at <= window.end_utc,
                )
                .order_by(AttendanceRecord.created_at.asc(), AttendanceRecord.id.asc())
            ).all()
        )
    except SQLAlchemyError:
        logger.exception(
            "attendance_summary_records_fetch_failed",
            extra={"period_key": window.period_key},
        )
        return []


def _status_label(record: AttendanceRecord) -> str:
    raw = (record.status or "").strip()
    return raw or STATUS_UNKNOWN


def _classify_exception(record: AttendanceRecord) -> str | None:
    """Return the single sub-metric a record is counted under, if any."""
    if record.is_late is True:
        return STATUS_LATE
    if record.is_early_departure is True:
        return STATUS_EARLY_DEPARTURE
    status = _status_label(record)
    if status in (STATUS_LATE, STATUS_EARLY_DEPARTURE):
        return status
    return None


def summarize_attendance_records(
    records: Sequence[AttendanceRecord],
    window: ReportingWindow,
) -> AttendanceSummary:
    status_counter: Counter[str] = Counter()
    exception_counter: Counter[str] = Counter()
    employee_ids: set[int] = set()

    for record in records:
        status_counter[_status_label(record)] += 1
        if record.employee_id is not None:
            employee_ids.add(record.employee_id)
        exception_kind = _classify_exception(record)
        if exception_kind is not None:
            exception_counter[exception_kind] += 1

    return AttendanceSummary(
        period_key=window.period_key,
        local_date=window.local_date,
        total_records=len(records),
        unique_employees=len(employee_ids),
        late_arrivals=exception_counter[STATUS_LATE],
        early_departures=exception_counter[STATUS_EARLY_DEPARTURE],
        status_counts={label: status_counter[label] for label in sorted(status_counter)},
    )


def _format_long_date(value: date) -> str:
    return f"{value.strftime('%A')}, {value.strftime('%B')} {value.day}, {value.year}"


def format_status_breakdown(status_counts: dict[str, int]) -> str:
    items: Iterable[str] = (f"{label}: {count}" for label, count in status_counts.items())
    return STATUS_BREAKDOWN_SEPARATOR.join(items) or STATUS_BREAKDOWN_PLACEHOLDER


def render_summary_message(summary: AttendanceSummary) -> str:
    return (
        f"Daily Attendance Summary for {_format_long_date(summary.local_date)}\n\n"
        f"Total Records: {summary.total_records}\n"
        f"Unique Employees: {summary.unique_employees}\n"
        f"Late Arrivals: {summary.late_arrivals}\n"
        f"Early Departures: {summary.early_departures}\n\n"
        f"Status Breakdown:\n{format_status_breakdown(summary.status_counts)}"
    )
