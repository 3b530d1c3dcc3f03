#!/usr/bin/env python3
"""Entry point to run the background worker pools until SIGINT/SIGTERM."""
from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from jobtrackr.log import get_logger
from jobtrackr.runtime import build_runtime

log = get_logger(__name__)


if __name__ == "__main__":
    runtime = build_runtime()
    if runtime.queue is None:
        log.error("QUEUE_ENABLED is false — nothing to run")
        sys.exit(1)
    if not runtime.settings.ai_configured:
        log.warning("GROQ_API_KEY not set — analysis tasks will fail")

    supervisor = runtime.supervisor()
    supervisor.install_signal_handlers()
    supervisor.start()
    log.info("Workers running. Press Ctrl+C to stop.")
    try:
        supervisor.wait()
    finally:
        runtime.close()
    log.info("Workers stopped.")
