from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from attendance_digest.settings import get_settings

logger = logging.getLogger("app.attendance_summary")

# Stored timestamps have microsecond resolution; the window end is the last
# representable instant of the local day and is compared inclusively.
WINDOW_END_RESOLUTION = timedelta(microseconds=1)


@dataclass(frozen=True, slots=True)
class ReportingWindow:
    start_utc: datetime
    end_utc: datetime
    period_key: str
    local_date: date
    timezone_name: str

    @property
    def start_local(self) -> datetime:
        return self.start_utc.astimezone(ZoneInfo(self.timezone_name))

    @property
    def end_local(self) -> datetime:
        return self.end_utc.astimezone(ZoneInfo(self.timezone_name))


def normalize_utc(ts_utc: datetime) -> datetime:
    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)
    return ts_utc.astimezone(timezone.utc)


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or "UTC"
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("attendance_timezone_invalid", extra={"timezone": raw_name})
        return ZoneInfo("UTC")


def _local_midnight_utc(local_day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(local_day, time.min, tzinfo=tz).astimezone(timezone.utc)


def compute_reporting_window(
    now_utc: datetime,
    day_offset: int = -1,
    tz: ZoneInfo | None = None,
) -> ReportingWindow:
    zone = tz or attendance_timezone()
    local_day = normalize_utc(now_utc).astimezone(zone).date() + timedelta(days=day_offset)

    # Wall-clock midnight to midnight, so 23h and 25h DST days keep their length.
    start_utc = _local_midnight_utc(local_day, zone)
    next_start_utc = _local_midnight_utc(local_day + timedelta(days=1), zone)

    return ReportingWindow(
        start_utc=start_utc,
        end_utc=next_start_utc - WINDOW_END_RESOLUTION,
        period_key=local_day.isoformat(),
        local_date=local_day,
        timezone_name=zone.key,
    )
