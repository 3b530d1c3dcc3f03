#!/usr/bin/env python3
"""
Install cron job for the daily reminder sweep at REMINDER_HOUR (from .env).
Uses TZ=REMINDER_TIMEZONE so the sweep runs at the correct local hour.
Run once: python setup_cron.py
"""
from __future__ import annotations

import subprocess
from pathlib import Path

from jobtrackr.config import load_settings

# Project root
ROOT = Path(__file__).resolve().parent
settings = load_settings()
venv_python = ROOT / ".venv" / "bin" / "python"
entry = (
    f"0 {settings.reminder_hour} * * * TZ={settings.reminder_timezone} "
    f"cd {ROOT} && {venv_python} -m jobtrackr.run_daily --once"
)


def main():
    if not venv_python.exists():
        print("Error: .venv not found. Run: python -m venv .venv && .venv/bin/pip install -e .")
        return 1
    try:
        out = subprocess.run(
            ["crontab", "-l"],
            capture_output=True,
            text=True,
            timeout=5,
        )
        existing = (out.stdout or "").strip() if out.returncode == 0 else ""
        if entry in existing:
            print("Cron entry already present. No change.")
            return 0
        new_crontab = (existing + "\n" + entry).strip() if existing else entry
        proc = subprocess.run(
            ["crontab", "-"],
            input=new_crontab,
            capture_output=True,
            text=True,
            timeout=5,
        )
        if proc.returncode != 0:
            _write_crontab_file(new_crontab)
            print("Could not install crontab automatically. Run manually:")
            print(f"  crontab {ROOT / 'crontab.txt'}")
            return 1
        print(f"Cron installed: reminder sweep daily at {settings.reminder_hour:02d}:00 {settings.reminder_timezone}")
        print(f"  Entry: {entry}")
        return 0
    except subprocess.TimeoutExpired:
        _write_crontab_file(entry)
        print("Crontab timed out. To install manually, run:")
        print(f"  crontab {ROOT / 'crontab.txt'}")
        return 1
    except FileNotFoundError:
        print("crontab not found. On Windows use Task Scheduler; on Mac/Linux ensure cron is available.")
        _write_crontab_file(entry)
        return 1


def _write_crontab_file(content: str) -> None:
    path = ROOT / "crontab.txt"
    path.write_text(content + "\n", encoding="utf-8")
    print(f"Wrote {path}")


if __name__ == "__main__":
    raise SystemExit(main())
