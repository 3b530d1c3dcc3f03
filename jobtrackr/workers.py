"""
Worker pools that drain the task queue with bounded parallelism.

Each pool runs N threads for one task kind; every thread has its own
claim loop, so a slow AI call only ever ties up the thread running it.
Handler errors fail the task and the loop moves on. Store errors while
claiming or publishing are logged and backed off; they never end a thread.

Shutdown: ``stop()`` sets the stop event, waits up to the drain timeout for
in-flight tasks, then abandons whatever is still running. Abandoned tasks
are redelivered once their lease expires.
"""
from __future__ import annotations

import signal
import threading
import time
from typing import Any, Callable, Iterable

from jobtrackr.errors import JobTrackrError, failure_reason
from jobtrackr.log import get_logger
from jobtrackr.models import Task
from jobtrackr.retry import backoff_delay
from jobtrackr.task_queue import TaskQueue

log = get_logger(__name__)

Handler = Callable[[Task, Callable[[int], None]], dict[str, Any]]

START_PROGRESS = 10


class WorkerPool:
    def __init__(
        self,
        queue: TaskQueue,
        kind: str,
        handler: Handler,
        *,
        concurrency: int = 2,
        poll_interval: float = 1.0,
        drain_timeout: float = 30.0,
        name: str | None = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.kind = kind
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.drain_timeout = drain_timeout
        self.name = name or f"{kind}-worker"

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._stats_lock = threading.Lock()
        self.processed = 0
        self.failed = 0

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            log.info("%s already running", self.name)
            return
        self._stop.clear()
        self._threads = []
        for i in range(self.concurrency):
            worker_id = f"{self.name}-{i + 1}"
            t = threading.Thread(target=self._run_loop, args=(worker_id,), name=worker_id, daemon=True)
            t.start()
            self._threads.append(t)
        log.info("%s started (concurrency: %d)", self.name, self.concurrency)

    def request_stop(self) -> None:
        """Stop claiming new tasks; in-flight tasks keep running."""
        self._stop.set()

    def stop(self, timeout: float | None = None) -> bool:
        """Stop claiming, drain in-flight tasks. Returns True if all threads exited."""
        self.request_stop()
        deadline = time.monotonic() + (self.drain_timeout if timeout is None else timeout)
        for t in self._threads:
            t.join(timeout=max(0.0, deadline - time.monotonic()))
        stuck = [t.name for t in self._threads if t.is_alive()]
        if stuck:
            log.warning("%s: %d worker(s) still busy after drain timeout, abandoning: %s",
                        self.name, len(stuck), ", ".join(stuck))
        else:
            log.info("%s stopped", self.name)
        self._threads = [t for t in self._threads if t.is_alive()]
        return not stuck

    # ── Execution ────────────────────────────────────────────────────────

    def _run_loop(self, worker_id: str) -> None:
        errors = 0
        while not self._stop.is_set():
            try:
                worked = self.process_next(worker_id)
                errors = 0
            except Exception as exc:
                # Queue unreachable or similar: keep the thread alive
                errors += 1
                delay = backoff_delay(errors, base_delay=self.poll_interval, max_delay=30.0)
                log.error("[%s] queue error (%s), backing off %.1fs", worker_id, exc, delay)
                self._stop.wait(delay)
                continue
            if not worked:
                self._stop.wait(self.poll_interval)

    def process_next(self, worker_id: str = "inline") -> bool:
        """Claim and execute one task. Returns False if nothing was available."""
        task = self.queue.claim(self.kind, worker_id)
        if task is None:
            return False
        self._execute(task, worker_id)
        return True

    def _execute(self, task: Task, worker_id: str) -> None:
        log.info("[%s] processing %s task %s", worker_id, task.kind, task.id)
        started = time.monotonic()

        def report(percent: int) -> None:
            try:
                self.queue.update_progress(task.id, percent, worker_id)
            except JobTrackrError as exc:
                log.debug("[%s] progress update for %s ignored: %s", worker_id, task.id, exc)

        try:
            report(max(START_PROGRESS, task.progress))
            result = self.handler(task, report)
        except Exception as exc:
            with self._stats_lock:
                self.failed += 1
            if isinstance(exc, JobTrackrError):
                log.warning("[%s] task %s failed: %s", worker_id, task.id, exc)
            else:
                log.exception("[%s] task %s crashed", worker_id, task.id)
            self._publish(self.queue.fail, task.id, failure_reason(exc), worker_id)
            return

        with self._stats_lock:
            self.processed += 1
        self._publish(self.queue.complete, task.id, result or {}, worker_id)
        log.info("[%s] task %s completed in %.1fs", worker_id, task.id, time.monotonic() - started)

    def _publish(self, fn: Callable[..., bool], task_id: str, value: Any, worker_id: str) -> None:
        try:
            fn(task_id, value, worker_id)
        except Exception as exc:
            # Lease will expire and the task will be redelivered
            log.error("[%s] could not record outcome of task %s: %s", worker_id, task_id, exc)

    def run_until_idle(self, worker_id: str = "inline", max_tasks: int | None = None) -> int:
        """Process tasks on the calling thread until the queue has none left."""
        n = 0
        while max_tasks is None or n < max_tasks:
            if not self.process_next(worker_id):
                break
            n += 1
        return n


class WorkerSupervisor:
    """Owns several pools; starts them together and drains them on a signal."""

    def __init__(self, pools: Iterable[WorkerPool]):
        self.pools = list(pools)
        self._stopped = threading.Event()

    def start(self) -> None:
        log.info("Starting %d worker pool(s)...", len(self.pools))
        for pool in self.pools:
            pool.start()

    def stop(self, timeout: float | None = None) -> bool:
        log.info("Stopping worker pools...")
        clean = True
        for pool in self.pools:
            pool.request_stop()
        for pool in self.pools:
            clean = pool.stop(timeout) and clean
        self._stopped.set()
        return clean

    def install_signal_handlers(self) -> None:
        def _handle(signum, _frame) -> None:
            log.info("%s received — draining workers", signal.Signals(signum).name)
            self._stopped.set()

        signal.signal(signal.SIGTERM, _handle)
        signal.signal(signal.SIGINT, _handle)

    def wait(self, tick: float = 1.0) -> None:
        """Block until a stop signal arrives, then drain."""
        while not self._stopped.wait(tick):
            pass
        self.stop()
