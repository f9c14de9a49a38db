from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class DroppedAssignmentRead(BaseModel):
    profile_id: int
    assignment_id: int | None = None
    reason: str


class SummaryRunResultRead(BaseModel):
    status: Literal["COMPLETED", "NO_RECORDS", "NO_RECIPIENTS", "SKIPPED_RUNNING", "FAILED"]
    period_key: str | None = None
    window_start_utc: datetime | None = None
    window_end_utc: datetime | None = None
    record_count: int = 0
    recipient_count: int = 0
    created_count: int = 0
    already_notified_count: int = 0
    duplicate_rejected_count: int = 0
    failed_count: int = 0
    dropped_assignments: list[DroppedAssignmentRead] = Field(default_factory=list)
    started_at_utc: datetime
    finished_at_utc: datetime
    error: str | None = None


class SchedulerStatusRead(BaseModel):
    job: str
    enabled: bool
    is_running: bool
    run_time_local: str
    timezone: str
    next_run_at_utc: datetime | None = None
    last_result: SummaryRunResultRead | None = None
