#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from attendance_digest.db import SessionLocal
from attendance_digest.logging_utils import setup_json_logging
from attendance_digest.services.daily_summary_job import RunStatus, build_daily_summary_job


def _parse_now(raw: str) -> datetime:
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid ISO timestamp: {raw}") from exc


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the daily attendance summary job once and print the run result as JSON.",
    )
    parser.add_argument(
        "--now",
        type=_parse_now,
        default=None,
        help="Reference time (ISO 8601, naive values are UTC). Defaults to the current time.",
    )
    parser.add_argument(
        "--day-offset",
        type=int,
        default=None,
        help="Day offset from the reference day (default: ATTENDANCE_SUMMARY_DAY_OFFSET, usually -1).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_json_logging()
    job = build_daily_summary_job(SessionLocal)
    if args.day_offset is not None:
        job.day_offset = args.day_offset
    result = job.run(now_utc=args.now)
    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    return 1 if result.status is RunStatus.FAILED else 0


if __name__ == "__main__":
    raise SystemExit(main())
