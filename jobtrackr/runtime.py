"""Wire settings into the queue, analyzers, reminder sweep and worker pools."""
from __future__ import annotations

from dataclasses import dataclass, field

from jobtrackr.ai_client import build_ai_client
from jobtrackr.analysis import CVAnalyzer, FitScoreAnalyzer
from jobtrackr.config import Settings, ensure_dirs, load_settings
from jobtrackr.db import Database
from jobtrackr.log import get_logger
from jobtrackr.models import TaskKind
from jobtrackr.notifier import Notifier, build_notifier, make_email_handler
from jobtrackr.reminders import ReminderScheduler
from jobtrackr.repository import Repository
from jobtrackr.task_queue import TaskQueue
from jobtrackr.workers import WorkerPool, WorkerSupervisor

log = get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    db: Database
    repo: Repository
    queue: TaskQueue | None
    notifier: Notifier
    analyzer: CVAnalyzer
    fit_analyzer: FitScoreAnalyzer
    scheduler: ReminderScheduler
    pools: list[WorkerPool] = field(default_factory=list)

    def supervisor(self) -> WorkerSupervisor:
        return WorkerSupervisor(self.pools)

    def close(self) -> None:
        self.db.dispose()


def build_runtime(settings: Settings | None = None, *, notifier: Notifier | None = None,
                  ai=None) -> Runtime:
    settings = settings or load_settings()
    if settings.database_url.startswith("sqlite:///"):
        ensure_dirs()

    db = Database(settings.database_url)
    db.create_all()
    repo = Repository(db)

    notifier = notifier or build_notifier(settings)
    ai = ai or build_ai_client(settings)
    analyzer = CVAnalyzer(repo, ai)
    fit_analyzer = FitScoreAnalyzer(repo, ai)
    scheduler = ReminderScheduler(
        repo,
        notifier,
        timezone=settings.reminder_timezone,
        hour=settings.reminder_hour,
        frontend_url=settings.frontend_url,
        max_workers=settings.reminder_workers,
    )

    queue = None
    pools: list[WorkerPool] = []
    if settings.queue_enabled:
        queue = TaskQueue(db, visibility_timeout=settings.visibility_timeout)
        common = dict(poll_interval=settings.poll_interval, drain_timeout=settings.drain_timeout)
        pools = [
            WorkerPool(queue, TaskKind.ANALYSIS.value, analyzer.run_task,
                       concurrency=settings.analysis_concurrency, **common),
            WorkerPool(queue, TaskKind.FIT_SCORE.value, fit_analyzer.run_task,
                       concurrency=settings.analysis_concurrency, **common),
            WorkerPool(queue, TaskKind.EMAIL.value, make_email_handler(notifier),
                       concurrency=settings.email_concurrency, **common),
        ]
    else:
        log.warning("Queue disabled — analyses will run synchronously")

    return Runtime(
        settings=settings,
        db=db,
        repo=repo,
        queue=queue,
        notifier=notifier,
        analyzer=analyzer,
        fit_analyzer=fit_analyzer,
        scheduler=scheduler,
        pools=pools,
    )
