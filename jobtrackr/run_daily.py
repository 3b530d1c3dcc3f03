"""
Run the reminder sweep every day at REMINDER_HOUR in REMINDER_TIMEZONE.

Usage:
  - Cron (recommended): install with: python setup_cron.py
      Entry: 0 18 * * * TZ=Europe/Istanbul cd /path/to/project && .venv/bin/python -m jobtrackr.run_daily --once
  - Or run this module in background: python -m jobtrackr.run_daily
"""
from __future__ import annotations

import sys
import time
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from jobtrackr.config import Settings, load_settings
from jobtrackr.log import get_logger
from jobtrackr.runtime import build_runtime

log = get_logger(__name__)

TARGET_MINUTE = 0


def next_run(settings: Settings, now: datetime | None = None) -> datetime:
    tz = ZoneInfo(settings.reminder_timezone)
    now = now or datetime.now(tz)
    target = now.replace(hour=settings.reminder_hour, minute=TARGET_MINUTE, second=0, microsecond=0)
    if now >= target:
        target = target + timedelta(days=1)
    return target


def run_sweep(settings: Settings) -> int:
    runtime = build_runtime(settings)
    try:
        sent = runtime.scheduler.run_once()
        if runtime.queue is not None:
            runtime.queue.prune(
                completed_max_age=timedelta(hours=settings.completed_retention_hours),
                failed_max_age=timedelta(hours=settings.failed_retention_hours),
            )
    finally:
        runtime.close()
    log.info("Reminders sent: %d", sent)
    return sent


def main() -> None:
    settings = load_settings()
    tz = ZoneInfo(settings.reminder_timezone)
    log.info("Scheduler: reminder sweep daily at %d:%02d %s",
             settings.reminder_hour, TARGET_MINUTE, settings.reminder_timezone)
    while True:
        target = next_run(settings)
        wait_secs = (target - datetime.now(tz)).total_seconds()
        log.info("Next sweep at %s (in %.1f hours)", target, wait_secs / 3600)
        time.sleep(max(0.0, min(wait_secs, 86400)))
        now = datetime.now(tz)
        if now.hour == settings.reminder_hour and now.minute < 30:
            log.info("Running reminder sweep...")
            try:
                run_sweep(settings)
            except Exception:
                log.exception("Reminder sweep crashed")
            log.info("Done. Next sweep tomorrow.")


if __name__ == "__main__":
    if "--once" in sys.argv:
        run_sweep(load_settings())
        sys.exit(0)
    main()
