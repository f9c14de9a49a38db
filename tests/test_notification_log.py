from __future__ import annotations

import unittest
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, OperationalError

from attendance_digest.models import NotificationLog
from attendance_digest.services.notification_log import (
    NOTIFICATION_KIND_DAILY_ATTENDANCE_SUMMARY,
    NotificationWriteOutcome,
    create_summary_notification,
    deliver_summary_notification,
    has_notification_for_period,
)

GENERATED_AT = datetime(2024, 3, 2, 2, 0, 5, tzinfo=timezone.utc)


class _FakeNotificationLogSession:
    def __init__(
        self,
        *,
        existing_id: int | None = None,
        commit_error: Exception | None = None,
        scalar_error: Exception | None = None,
    ):
        self._existing_id = existing_id
        self._commit_error = commit_error
        self._scalar_error = scalar_error
        self.added: list[NotificationLog] = []
        self.statements: list[object] = []
        self.commit_count = 0
        self.rollback_count = 0

    def scalar(self, statement):  # type: ignore[no-untyped-def]
        self.statements.append(statement)
        if self._scalar_error is not None:
            raise self._scalar_error
        return self._existing_id

    def add(self, obj: NotificationLog) -> None:
        self.added.append(obj)

    def commit(self) -> None:
        if self._commit_error is not None:
            raise self._commit_error
        self.commit_count += 1

    def rollback(self) -> None:
        self.rollback_count += 1


class NotificationLogTests(unittest.TestCase):
    def test_existence_check_filters_on_recipient_kind_and_period(self) -> None:
        session = _FakeNotificationLogSession(existing_id=41)

        found = has_notification_for_period(
            session,  # type: ignore[arg-type]
            recipient_id=7,
            kind=NOTIFICATION_KIND_DAILY_ATTENDANCE_SUMMARY,
            period_key="2024-03-01",
        )

        self.assertTrue(found)
        params = session.statements[0].compile().params
        self.assertIn(7, params.values())
        self.assertIn("DAILY_ATTENDANCE_SUMMARY", params.values())
        self.assertIn("2024-03-01", params.values())

    def test_create_appends_entry_with_metadata(self) -> None:
        session = _FakeNotificationLogSession()

        outcome = create_summary_notification(
            session,  # type: ignore[arg-type]
            recipient_id=7,
            kind=NOTIFICATION_KIND_DAILY_ATTENDANCE_SUMMARY,
            message="Daily Attendance Summary",
            period_key="2024-03-01",
            record_count=5,
            generated_at_utc=GENERATED_AT,
        )

        self.assertEqual(outcome, NotificationWriteOutcome.CREATED)
        self.assertEqual(session.commit_count, 1)
        entry = session.added[0]
        self.assertEqual(entry.to_employee_id, 7)
        self.assertEqual(entry.kind, "DAILY_ATTENDANCE_SUMMARY")
        self.assertEqual(entry.period_key, "2024-03-01")
        self.assertEqual(
            entry.details,
            {
                "recordCount": 5,
                "periodKey": "2024-03-01",
                "generatedAt": "2024-03-02T02:00:05+00:00",
            },
        )

    def test_unique_key_violation_is_a_benign_duplicate(self) -> None:
        session = _FakeNotificationLogSession(
            commit_error=IntegrityError("INSERT", {}, Exception("uq_notification_logs_recipient_kind_period")),
        )

        outcome = create_summary_notification(
            session,  # type: ignore[arg-type]
            recipient_id=7,
            kind=NOTIFICATION_KIND_DAILY_ATTENDANCE_SUMMARY,
            message="summary",
            period_key="2024-03-01",
            record_count=5,
            generated_at_utc=GENERATED_AT,
        )

        self.assertEqual(outcome, NotificationWriteOutcome.DUPLICATE_REJECTED)
        self.assertEqual(session.rollback_count, 1)

    def test_store_failure_on_write_is_reported_not_raised(self) -> None:
        session = _FakeNotificationLogSession(commit_error=OperationalError("INSERT", {}, Exception("timeout")))

        outcome = create_summary_notification(
            session,  # type: ignore[arg-type]
            recipient_id=7,
            kind=NOTIFICATION_KIND_DAILY_ATTENDANCE_SUMMARY,
            message="summary",
            period_key="2024-03-01",
            record_count=5,
            generated_at_utc=GENERATED_AT,
        )

        self.assertEqual(outcome, NotificationWriteOutcome.FAILED)
        self.assertEqual(session.rollback_count, 1)

    def test_deliver_skips_recipient_already_notified_for_period(self) -> None:
        session = _FakeNotificationLogSession(existing_id=41)

        outcome = deliver_summary_notification(
            session,  # type: ignore[arg-type]
            recipient_id=7,
            message="summary",
            period_key="2024-03-01",
            record_count=5,
            generated_at_utc=GENERATED_AT,
        )

        self.assertEqual(outcome, NotificationWriteOutcome.ALREADY_NOTIFIED)
        self.assertEqual(session.added, [])

    def test_deliver_writes_when_no_prior_entry(self) -> None:
        session = _FakeNotificationLogSession(existing_id=None)

        outcome = deliver_summary_notification(
            session,  # type: ignore[arg-type]
            recipient_id=7,
            message="summary",
            period_key="2024-03-01",
            record_count=5,
            generated_at_utc=GENERATED_AT,
        )

        self.assertEqual(outcome, NotificationWriteOutcome.CREATED)
        self.assertEqual(len(session.added), 1)

    def test_deliver_reports_failed_existence_check(self) -> None:
        session = _FakeNotificationLogSession(scalar_error=OperationalError("SELECT", {}, Exception("down")))

        outcome = deliver_summary_notification(
            session,  # type: ignore[arg-type]
            recipient_id=7,
            message="summary",
            period_key="2024-03-01",
            record_count=5,
            generated_at_utc=GENERATED_AT,
        )

        self.assertEqual(outcome, NotificationWriteOutcome.FAILED)
        self.assertEqual(session.added, [])


if __name__ == "__main__":
    unittest.main()
