"""
Daily follow-up reminder sweep.

A sweep picks applications whose reminder date is tomorrow in the reference
time zone, e-mails each owner once, and records a sent marker. It only fires
once the local clock has reached the gate hour, and the marker is written
with insert-if-absent, so running it many times in the same evening never
sends a reminder twice. A lease row in the database keeps sweeps started by
different processes (cron, the daily loop, the console) from overlapping.

Nights the sweep did not run are not caught up: an application whose
reminder date passed without a sweep simply never becomes due again.
"""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable
from zoneinfo import ZoneInfo

from jobtrackr.db import new_id
from jobtrackr.log import get_logger
from jobtrackr.models import ReminderRecord, SweepReport
from jobtrackr.notifier import Notifier, reminder_message
from jobtrackr.repository import Repository

log = get_logger(__name__)

SWEEP_LOCK = "reminder-sweep"


class SweepState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    NOTIFYING = "notifying"


class ReminderScheduler:
    def __init__(
        self,
        repo: Repository,
        notifier: Notifier,
        *,
        timezone: str = "Europe/Istanbul",
        hour: int = 18,
        frontend_url: str = "http://localhost:5173",
        max_workers: int = 1,
        lease_seconds: float = 600.0,
        now: Callable[[ZoneInfo], datetime] | None = None,
    ):
        if not 0 <= hour <= 23:
            raise ValueError(f"hour must be 0..23, got {hour}")
        self.repo = repo
        self.notifier = notifier
        self.tz = ZoneInfo(timezone)
        self.hour = hour
        self.frontend_url = frontend_url
        self.max_workers = max(1, max_workers)
        self.lease_seconds = lease_seconds
        self._now = now or (lambda tz: datetime.now(tz))

        self._lock = threading.Lock()
        self.state = SweepState.IDLE
        self.last_report: SweepReport | None = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def local_now(self) -> datetime:
        return self._now(self.tz)

    def target_date(self, now: datetime | None = None) -> date:
        return (now or self.local_now()).date() + timedelta(days=1)

    def due_reminders(self) -> list[ReminderRecord]:
        """Applications that a sweep started now would notify."""
        now = self.local_now()
        if now.hour < self.hour:
            return []
        return self.repo.due_reminders(self.target_date(now))

    def run_once(self) -> int:
        """One sweep. Returns how many applications were notified."""
        if not self._lock.acquire(blocking=False):
            log.info("Reminder sweep already running — skipping")
            return 0
        try:
            holder = new_id()
            if not self.repo.acquire_sweep_lock(SWEEP_LOCK, holder, self.lease_seconds):
                log.info("Reminder sweep held by another process — skipping")
                return 0
            try:
                report = self._sweep()
            finally:
                self.repo.release_sweep_lock(SWEEP_LOCK, holder)
        finally:
            self.state = SweepState.IDLE
            self._lock.release()
        self.last_report = report
        return report.notified

    def _sweep(self) -> SweepReport:
        report = SweepReport()
        self.state = SweepState.SCANNING
        now = self.local_now()
        if now.hour < self.hour:
            log.info("Reminder sweep: %02d:%02d is before the %02d:00 gate — nothing due",
                     now.hour, now.minute, self.hour)
            return report

        target = self.target_date(now)
        due = self.repo.due_reminders(target)
        report.due = len(due)
        if not due:
            log.info("Reminder sweep: no reminders due for %s", target)
            return report

        self.state = SweepState.NOTIFYING
        log.info("Reminder sweep: %d application(s) due for %s", len(due), target)
        if self.max_workers > 1 and len(due) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="reminder") as pool:
                outcomes = list(pool.map(self._notify_one, due))
        else:
            outcomes = [self._notify_one(rec) for rec in due]

        for rec, ok in zip(due, outcomes):
            if ok:
                report.notified += 1
            else:
                report.failed.append(rec.application_id)
        log.info("Reminder sweep done: %d/%d notified", report.notified, report.due)
        return report

    def _notify_one(self, rec: ReminderRecord) -> bool:
        try:
            subject, template, data = reminder_message(
                rec.company_name, rec.position, rec.reminder_date, self.frontend_url, self.hour,
            )
            if not self.notifier.send(rec.owner_email, subject, template, data):
                log.warning("Reminder for application %s not delivered", rec.application_id)
                return False
            self.repo.mark_reminder_sent(rec.application_id)
        except Exception as exc:
            log.error("Reminder for application %s failed: %s", rec.application_id, exc)
            return False
        log.info("Reminder sent to %s for %s at %s", rec.owner_email, rec.position, rec.company_name)
        return True

    def reminder_status(self, application_id: str) -> dict[str, Any]:
        return self.repo.reminder_status(application_id)
