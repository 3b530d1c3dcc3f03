"""Entry points used by request handlers: submit an analysis, poll a task."""
from __future__ import annotations

from jobtrackr.analysis import CVAnalyzer, validate_job_description
from jobtrackr.errors import QueueUnavailableError
from jobtrackr.log import get_logger
from jobtrackr.models import AnalysisRequest, Submission, TaskKind, TaskStatus
from jobtrackr.task_queue import TaskQueue

log = get_logger(__name__)


def submit_analysis(request: AnalysisRequest, queue: TaskQueue | None,
                    analyzer: CVAnalyzer) -> Submission:
    """Queue a CV analysis, or run it inline when no queue is reachable.

    Short job descriptions are rejected before either path.
    """
    validate_job_description(request.job_description)

    if queue is not None:
        try:
            task_id = queue.enqueue(TaskKind.ANALYSIS.value, request.to_payload())
            return Submission(queued=True, task_id=task_id)
        except QueueUnavailableError as exc:
            log.warning("Queue unavailable (%s) — running analysis synchronously", exc)

    result = analyzer.analyze_request(request)
    return Submission(queued=False, result=result)


def get_task_status(queue: TaskQueue | None, task_id: str) -> TaskStatus:
    if queue is None:
        raise QueueUnavailableError("Queue service is not available")
    return queue.get_status(task_id)
