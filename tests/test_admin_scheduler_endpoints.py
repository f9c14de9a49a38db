from __future__ import annotations

import unittest
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from zoneinfo import ZoneInfo

from fastapi.testclient import TestClient
from jose import jwt

from attendance_digest.db import get_db
from attendance_digest.main import app
from attendance_digest.models import AuditActorType, AuditLog
from attendance_digest.routers.admin import get_daily_summary_job
from attendance_digest.security import require_admin
from attendance_digest.services.daily_summary_job import RunStatus, SummaryRunResult
from attendance_digest.settings import Settings

RUN_AT = datetime(2024, 3, 2, 2, 0, 5, tzinfo=timezone.utc)


def _override_get_db(fake_db):
    def _override() -> Generator[object, None, None]:
        yield fake_db

    return _override


class _FakeAuditDB:
    def __init__(self) -> None:
        self.rows: list[object] = []
        self.commit_count = 0

    def add(self, obj: object) -> None:
        self.rows.append(obj)

    def commit(self) -> None:
        self.commit_count += 1

    def rollback(self) -> None:
        return


class _StubSummaryJob:
    def __init__(self, result: SummaryRunResult) -> None:
        self._result = result
        self.tz = ZoneInfo("UTC")
        self.target_roles = ("HR Manager",)
        self.is_running = False
        self.last_result: SummaryRunResult | None = None
        self.run_count = 0

    def run(self, now_utc: datetime | None = None) -> SummaryRunResult:
        self.run_count += 1
        self.last_result = self._result
        return self._result


def _completed_result() -> SummaryRunResult:
    return SummaryRunResult(
        status=RunStatus.COMPLETED,
        started_at_utc=RUN_AT,
        finished_at_utc=RUN_AT + timedelta(seconds=2),
        period_key="2024-03-01",
        window_start_utc=datetime(2024, 3, 1, tzinfo=timezone.utc),
        window_end_utc=datetime(2024, 3, 1, 23, 59, 59, 999999, tzinfo=timezone.utc),
        record_count=5,
        recipient_count=2,
        created_count=1,
        already_notified_count=1,
    )


def _notifications_claims(*, write: bool) -> dict[str, object]:
    return {
        "sub": "ops",
        "username": "ops",
        "role": "admin",
        "is_super_admin": False,
        "permissions": {"notifications": {"read": True, "write": write}},
    }


class AdminSchedulerEndpointTests(unittest.TestCase):
    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def test_manual_trigger_returns_run_result_and_writes_audit(self) -> None:
        fake_db = _FakeAuditDB()
        job = _StubSummaryJob(_completed_result())
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        app.dependency_overrides[require_admin] = lambda: _notifications_claims(write=True)
        app.dependency_overrides[get_daily_summary_job] = lambda: job
        client = TestClient(app)

        response = client.post("/api/admin/schedulers/attendance-daily-summary")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "COMPLETED")
        self.assertEqual(body["period_key"], "2024-03-01")
        self.assertEqual(body["created_count"], 1)
        self.assertEqual(body["already_notified_count"], 1)
        self.assertEqual(job.run_count, 1)

        audit_rows = [row for row in fake_db.rows if isinstance(row, AuditLog)]
        self.assertEqual(len(audit_rows), 1)
        self.assertEqual(audit_rows[0].action, "ATTENDANCE_DAILY_SUMMARY_TRIGGERED")
        self.assertEqual(audit_rows[0].actor_type, AuditActorType.ADMIN)
        self.assertEqual(audit_rows[0].actor_id, "ops")
        self.assertTrue(audit_rows[0].success)
        self.assertEqual(audit_rows[0].details["created_count"], 1)

    def test_failed_run_is_audited_as_unsuccessful(self) -> None:
        fake_db = _FakeAuditDB()
        job = _StubSummaryJob(
            SummaryRunResult(
                status=RunStatus.FAILED,
                started_at_utc=RUN_AT,
                finished_at_utc=RUN_AT,
                error="OperationalError: timeout",
            )
        )
        app.dependency_overrides[get_db] = _override_get_db(fake_db)
        app.dependency_overrides[require_admin] = lambda: _notifications_claims(write=True)
        app.dependency_overrides[get_daily_summary_job] = lambda: job
        client = TestClient(app)

        response = client.post("/api/admin/schedulers/attendance-daily-summary")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "FAILED")
        self.assertFalse(fake_db.rows[0].success)

    def test_trigger_requires_write_permission(self) -> None:
        job = _StubSummaryJob(_completed_result())
        app.dependency_overrides[get_db] = _override_get_db(_FakeAuditDB())
        app.dependency_overrides[require_admin] = lambda: _notifications_claims(write=False)
        app.dependency_overrides[get_daily_summary_job] = lambda: job
        client = TestClient(app)

        response = client.post("/api/admin/schedulers/attendance-daily-summary")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")
        self.assertEqual(job.run_count, 0)

    def test_missing_token_returns_error_envelope(self) -> None:
        client = TestClient(app)

        response = client.post("/api/admin/schedulers/attendance-daily-summary")

        self.assertEqual(response.status_code, 401)
        body = response.json()
        self.assertEqual(body["error"]["code"], "INVALID_TOKEN")
        self.assertEqual(body["error"]["request_id"], response.headers["X-Request-Id"])

    def test_signed_token_with_read_permission_can_view_status(self) -> None:
        settings = Settings(jwt_secret="unit-test-secret")
        token = jwt.encode(
            {
                **_notifications_claims(write=False),
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
                "exp": int((datetime.now(timezone.utc) + timedelta(minutes=5)).timestamp()),
            },
            settings.jwt_secret,
            algorithm="HS256",
        )
        job = _StubSummaryJob(_completed_result())
        job.last_result = _completed_result()
        app.dependency_overrides[get_daily_summary_job] = lambda: job
        client = TestClient(app)

        with patch("attendance_digest.security.get_settings", return_value=settings):
            response = client.get(
                "/api/admin/schedulers/attendance-daily-summary",
                headers={"Authorization": f"Bearer {token}"},
            )
            forged = client.get(
                "/api/admin/schedulers/attendance-daily-summary",
                headers={"Authorization": f"Bearer {token}x"},
            )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["job"], "attendance-daily-summary")
        self.assertFalse(body["is_running"])
        self.assertEqual(body["timezone"], "UTC")
        self.assertEqual(body["last_result"]["period_key"], "2024-03-01")
        self.assertIsNotNone(body["next_run_at_utc"])
        self.assertEqual(forged.status_code, 401)

    def test_uninitialized_job_returns_service_unavailable(self) -> None:
        app.dependency_overrides[require_admin] = lambda: _notifications_claims(write=False)
        original_job = app.state.daily_summary_job
        app.state.daily_summary_job = None
        try:
            response = TestClient(app).get("/api/admin/schedulers/attendance-daily-summary")
        finally:
            app.state.daily_summary_job = original_job

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error"]["code"], "JOB_UNAVAILABLE")

    def test_health_reports_scheduler_state(self) -> None:
        response = TestClient(app).get("/health")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["daily_summary"]["job"], "attendance-daily-summary")
        self.assertIn("schema_guard", body)


if __name__ == "__main__":
    unittest.main()
