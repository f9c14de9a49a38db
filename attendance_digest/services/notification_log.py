from __future__ import annotations

from datetime import datetime
import enum
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_digest.models import NotificationLog

logger = logging.getLogger("app.attendance_summary")

NOTIFICATION_KIND_DAILY_ATTENDANCE_SUMMARY = "DAILY_ATTENDANCE_SUMMARY"


class NotificationWriteOutcome(str, enum.Enum):
    CREATED = "CREATED"
    ALREADY_NOTIFIED = "ALREADY_NOTIFIED"
    DUPLICATE_REJECTED = "DUPLICATE_REJECTED"
    FAILED = "FAILED"


def build_notification_metadata(
    *,
    record_count: int,
    period_key: str,
    generated_at_utc: datetime,
) -> dict[str, object]:
    return {
        "recordCount": record_count,
        "periodKey": period_key,
        "generatedAt": generated_at_utc.isoformat(),
    }


def has_notification_for_period(
    session: Session,
    *,
    recipient_id: int,
    kind: str,
    period_key: str,
) -> bool:
    existing = session.scalar(
        select(NotificationLog.id).where(
            NotificationLog.to_employee_id == recipient_id,
            NotificationLog.kind == kind,
            NotificationLog.period_key == period_key,
        )
    )
    return existing is not None


def create_summary_notification(
    session: Session,
    *,
    recipient_id: int,
    kind: str,
    message: str,
    period_key: str,
    record_count: int,
    generated_at_utc: datetime,
) -> NotificationWriteOutcome:
    entry = NotificationLog(
        to_employee_id=recipient_id,
        kind=kind,
        message=message,
        details=build_notification_metadata(
            record_count=record_count,
            period_key=period_key,
            generated_at_utc=generated_at_utc,
        ),
        period_key=period_key,
    )
    session.add(entry)
    try:
        session.commit()
    except IntegrityError:
        # Another writer inserted the same (recipient, kind, period) first.
        session.rollback()
        logger.info(
            "attendance_summary_duplicate_rejected",
            extra={"recipient_id": recipient_id, "kind": kind, "period_key": period_key},
        )
        return NotificationWriteOutcome.DUPLICATE_REJECTED
    except SQLAlchemyError:
        session.rollback()
        logger.exception(
            "attendance_summary_notification_write_failed",
            extra={"recipient_id": recipient_id, "kind": kind, "period_key": period_key},
        )
        return NotificationWriteOutcome.FAILED
    return NotificationWriteOutcome.CREATED


def deliver_summary_notification(
    session: Session,
    *,
    recipient_id: int,
    message: str,
    period_key: str,
    record_count: int,
    generated_at_utc: datetime,
    kind: str = NOTIFICATION_KIND_DAILY_ATTENDANCE_SUMMARY,
) -> NotificationWriteOutcome:
    try:
        already_notified = has_notification_for_period(
            session,
            recipient_id=recipient_id,
            kind=kind,
            period_key=period_key,
        )
    except SQLAlchemyError:
        session.rollback()
        logger.exception(
            "attendance_summary_dedup_check_failed",
            extra={"recipient_id": recipient_id, "kind": kind, "period_key": period_key},
        )
        return NotificationWriteOutcome.FAILED

    if already_notified:
        logger.info(
            "attendance_summary_already_notified",
            extra={"recipient_id": recipient_id, "kind": kind, "period_key": period_key},
        )
        return NotificationWriteOutcome.ALREADY_NOTIFIED

    return create_summary_notification(
        session,
        recipient_id=recipient_id,
        kind=kind,
        message=message,
        period_key=period_key,
        record_count=record_count,
        generated_at_utc=generated_at_utc,
    )
