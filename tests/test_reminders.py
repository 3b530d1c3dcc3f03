"""Tests for jobtrackr/reminders.py — due filter, hour gate, idempotence."""
import threading
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from jobtrackr.db import utcnow
from jobtrackr.reminders import SWEEP_LOCK, ReminderScheduler, SweepState

ISTANBUL = ZoneInfo("Europe/Istanbul")
TODAY = date(2026, 3, 10)
TOMORROW = TODAY + timedelta(days=1)


def istanbul_at(day, hour, minute=0):
    """A fixed ``now`` for the scheduler: *day* at *hour*:*minute* Istanbul time."""
    fixed = datetime(day.year, day.month, day.day, hour, minute, tzinfo=ISTANBUL)
    return lambda tz: fixed.astimezone(tz)


def _scheduler(repo, notifier, now=None, **kwargs):
    return ReminderScheduler(repo, notifier, now=now or istanbul_at(TODAY, 19), **kwargs)


@pytest.fixture
def owner(make_user):
    return make_user("owner@example.com")


# =========================================================================
# Idempotence and due-date filter
# =========================================================================

class TestSweep:
    def test_repeated_sweeps_send_once(self, repo, notifier, owner, make_application):
        for i in range(4):
            make_application(owner, reminder_date=TOMORROW, company_name=f"Co{i}")
        sched = _scheduler(repo, notifier)

        assert sched.run_once() == 4
        assert sched.run_once() == 0
        assert sched.run_once() == 0
        assert notifier.send.call_count == 4

    def test_future_and_past_dates_never_selected(self, repo, notifier, owner, make_application):
        make_application(owner, reminder_date=TODAY + timedelta(days=3))
        make_application(owner, reminder_date=TODAY - timedelta(days=2))
        make_application(owner, reminder_date=TODAY)
        make_application(owner, reminder_date=None)
        due = make_application(owner, reminder_date=TOMORROW)

        sched = _scheduler(repo, notifier)
        assert [r.application_id for r in sched.due_reminders()] == [due]
        assert sched.run_once() == 1

    def test_example_scenario(self, repo, notifier, owner, make_application):
        for i in range(3):
            make_application(owner, reminder_date=TOMORROW, company_name=f"Soon{i}")
        later = TODAY + timedelta(days=5)
        for i in range(2):
            make_application(owner, reminder_date=later, company_name=f"Later{i}")

        sched = _scheduler(repo, notifier)
        assert sched.run_once() == 3
        assert notifier.send.call_count == 3
        assert sched.run_once() == 0

        four_days_on = _scheduler(repo, notifier, now=istanbul_at(later - timedelta(days=1), 18))
        assert four_days_on.run_once() == 2
        assert notifier.send.call_count == 5

    def test_reminder_content(self, repo, notifier, owner, make_application):
        make_application(owner, reminder_date=TOMORROW, company_name="Initech", position="SRE")
        _scheduler(repo, notifier, frontend_url="https://app.example.com/").run_once()

        to_email, subject, template, data = notifier.send.call_args.args
        assert to_email == "owner@example.com"
        assert "Initech" in subject
        assert data["position"] == "SRE"
        assert data["reminder_date"] == TOMORROW.isoformat()
        assert data["frontend_url"] == "https://app.example.com"


# =========================================================================
# Hour gate and time zone
# =========================================================================

class TestHourGate:
    def test_before_gate_sends_nothing(self, repo, notifier, owner, make_application):
        make_application(owner, reminder_date=TOMORROW)
        sched = _scheduler(repo, notifier, now=istanbul_at(TODAY, 17, 59))
        assert sched.due_reminders() == []
        assert sched.run_once() == 0
        notifier.send.assert_not_called()

    def test_at_gate_sends(self, repo, notifier, owner, make_application):
        make_application(owner, reminder_date=TOMORROW)
        assert _scheduler(repo, notifier, now=istanbul_at(TODAY, 18, 0)).run_once() == 1

    def test_tomorrow_is_computed_in_reference_zone(self, repo, notifier, owner, make_application):
        # 23:30 in Istanbul is still "today" there while UTC is already 20:30
        make_application(owner, reminder_date=TOMORROW)
        sched = _scheduler(repo, notifier, now=istanbul_at(TODAY, 23, 30))
        assert sched.target_date() == TOMORROW
        assert sched.run_once() == 1

    def test_custom_gate_hour(self, repo, notifier, owner, make_application):
        make_application(owner, reminder_date=TOMORROW)
        sched = _scheduler(repo, notifier, now=istanbul_at(TODAY, 19), hour=20)
        assert sched.run_once() == 0

    def test_invalid_hour_rejected(self, repo, notifier):
        with pytest.raises(ValueError):
            ReminderScheduler(repo, notifier, hour=24)


# =========================================================================
# Marker uniqueness and failure isolation
# =========================================================================

class TestMarkers:
    def test_second_marker_is_noop(self, repo, owner, make_application):
        app_id = make_application(owner, reminder_date=TOMORROW)
        assert repo.mark_reminder_sent(app_id) is True
        assert repo.mark_reminder_sent(app_id) is False
        assert repo.reminder_status(app_id)["sent"] is True

    def test_existing_marker_prevents_send(self, repo, notifier, owner, make_application):
        app_id = make_application(owner, reminder_date=TOMORROW)
        repo.mark_reminder_sent(app_id)
        assert _scheduler(repo, notifier).run_once() == 0
        notifier.send.assert_not_called()

    def test_failed_send_is_retried_next_run(self, repo, notifier, owner, make_application):
        app_id = make_application(owner, reminder_date=TOMORROW)
        notifier.send.return_value = False
        sched = _scheduler(repo, notifier)

        assert sched.run_once() == 0
        assert sched.last_report.failed == [app_id]
        assert sched.reminder_status(app_id) == {"sent": False}

        notifier.send.return_value = True
        assert sched.run_once() == 1
        assert sched.reminder_status(app_id)["sent"] is True

    def test_one_failure_does_not_stop_the_sweep(self, repo, notifier, owner, make_application):
        bad = make_application(owner, reminder_date=TOMORROW, company_name="Broken")
        make_application(owner, reminder_date=TOMORROW, company_name="Fine1")
        make_application(owner, reminder_date=TOMORROW, company_name="Fine2")

        def send(to_email, subject, template, data):
            if data["company_name"] == "Broken":
                raise RuntimeError("transport exploded")
            return True

        notifier.send.side_effect = send
        sched = _scheduler(repo, notifier)
        assert sched.run_once() == 2
        assert sched.last_report.failed == [bad]

    def test_parallel_sends(self, repo, notifier, owner, make_application):
        for i in range(5):
            make_application(owner, reminder_date=TOMORROW, company_name=f"Co{i}")
        sched = _scheduler(repo, notifier, max_workers=3)
        assert sched.run_once() == 5
        assert sched.run_once() == 0
        assert notifier.send.call_count == 5


class TestOverlap:
    def test_concurrent_run_is_refused(self, repo, owner, make_application):
        make_application(owner, reminder_date=TOMORROW)
        entered = threading.Event()
        release = threading.Event()

        class SlowNotifier:
            def send(self, *args):
                entered.set()
                release.wait(5)
                return True

        sched = _scheduler(repo, SlowNotifier())
        results = []
        t = threading.Thread(target=lambda: results.append(sched.run_once()))
        t.start()
        assert entered.wait(5)
        assert sched.state is SweepState.NOTIFYING
        assert sched.run_once() == 0
        release.set()
        t.join(5)
        assert results == [1]
        assert sched.state is SweepState.IDLE

    def test_lease_held_elsewhere_blocks_sweep(self, repo, notifier, owner, make_application):
        make_application(owner, reminder_date=TOMORROW)
        assert repo.acquire_sweep_lock(SWEEP_LOCK, "other-host", ttl_seconds=600) is True

        sched = _scheduler(repo, notifier)
        assert sched.run_once() == 0
        notifier.send.assert_not_called()

        repo.release_sweep_lock(SWEEP_LOCK, "other-host")
        assert sched.run_once() == 1

    def test_expired_lease_is_taken_over(self, repo, notifier, owner, make_application):
        make_application(owner, reminder_date=TOMORROW)
        long_ago = utcnow() - timedelta(hours=1)
        assert repo.acquire_sweep_lock(SWEEP_LOCK, "crashed-host", ttl_seconds=60, now=long_ago) is True

        assert _scheduler(repo, notifier).run_once() == 1

    def test_separate_schedulers_send_once(self, repo, owner, make_application):
        make_application(owner, reminder_date=TOMORROW)
        entered = threading.Event()
        release = threading.Event()
        sends = []

        class SlowNotifier:
            def send(self, *args):
                sends.append(args)
                entered.set()
                release.wait(5)
                return True

        first = _scheduler(repo, SlowNotifier())
        second = _scheduler(repo, SlowNotifier())
        results = []
        t = threading.Thread(target=lambda: results.append(first.run_once()))
        t.start()
        assert entered.wait(5)
        assert second.run_once() == 0
        release.set()
        t.join(5)

        assert results == [1]
        assert len(sends) == 1
        assert not second.running
