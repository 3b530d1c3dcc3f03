"""Durable task queue over the ``tasks`` table.

Delivery is at-least-once: a claim sets a lease, and a task whose lease runs
out while still active (worker died or hung) is claimable again. All state
changes are single-row conditional UPDATEs, so two workers can never both win
the same claim and a terminal task is never overwritten.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import SQLAlchemyError

from jobtrackr.db import Database, TaskRow, new_id, utcnow
from jobtrackr.errors import (
    FatalError,
    NotFoundError,
    QueueUnavailableError,
    TaskStateError,
    ValidationError,
)
from jobtrackr.log import get_logger
from jobtrackr.models import Task, TaskState, TaskStatus

log = get_logger(__name__)

_CLAIM_CANDIDATES = 5


class TaskQueue:
    def __init__(
        self,
        db: Database,
        *,
        visibility_timeout: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.visibility_timeout = visibility_timeout
        self._clock = clock

    # ── Producers ────────────────────────────────────────────────────────

    def enqueue(self, kind: str, payload: dict[str, Any]) -> str:
        task_id = new_id()
        now = self._clock()
        try:
            with self.db.session_scope() as s:
                s.add(TaskRow(
                    id=task_id,
                    kind=kind,
                    payload=payload,
                    state=TaskState.QUEUED.value,
                    progress=0,
                    attempts=0,
                    created_at=now,
                    updated_at=now,
                ))
        except (FatalError, SQLAlchemyError) as exc:
            raise QueueUnavailableError(f"Task not queued: {exc}") from exc
        log.info("Queued %s task %s", kind, task_id)
        return task_id

    def get_status(self, task_id: str) -> TaskStatus:
        with self.db.session_scope() as s:
            row = s.get(TaskRow, task_id)
            if row is None:
                raise NotFoundError(f"Task {task_id} not found")
            state = TaskState(row.state)
            return TaskStatus(
                task_id=row.id,
                kind=row.kind,
                state=state,
                progress=row.progress,
                result=row.result if state is TaskState.COMPLETED else None,
                failure_reason=row.failure_reason if state is TaskState.FAILED else None,
                created_at=row.created_at,
            )

    # ── Consumers ────────────────────────────────────────────────────────

    def _claimable(self, now: datetime):
        return or_(
            TaskRow.state == TaskState.QUEUED.value,
            and_(TaskRow.state == TaskState.ACTIVE.value, TaskRow.lease_expires_at < now),
        )

    def claim(self, kind: str, worker_id: str) -> Task | None:
        """Claim the oldest available task of *kind*, or return None."""
        now = self._clock()
        while True:
            with self.db.session_scope() as s:
                candidates = [
                    row_id for (row_id,) in (
                        s.query(TaskRow.id)
                        .filter(TaskRow.kind == kind, self._claimable(now))
                        .order_by(TaskRow.created_at.asc(), TaskRow.id.asc())
                        .limit(_CLAIM_CANDIDATES)
                        .all()
                    )
                ]
            if not candidates:
                return None
            # Lost candidates now belong to other workers; select again
            for task_id in candidates:
                task = self._try_claim(task_id, worker_id, now)
                if task is not None:
                    return task

    def _try_claim(self, task_id: str, worker_id: str, now: datetime) -> Task | None:
        lease = now + timedelta(seconds=self.visibility_timeout)
        with self.db.session_scope() as s:
            won = (
                s.query(TaskRow)
                .filter(TaskRow.id == task_id, self._claimable(now))
                .update(
                    {
                        TaskRow.state: TaskState.ACTIVE.value,
                        TaskRow.claimed_by: worker_id,
                        TaskRow.lease_expires_at: lease,
                        TaskRow.attempts: TaskRow.attempts + 1,
                        TaskRow.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            if won != 1:
                return None
            row = s.get(TaskRow, task_id)
            if row.attempts > 1:
                log.warning("Redelivering task %s (attempt %d) to %s", task_id, row.attempts, worker_id)
            return Task(
                id=row.id,
                kind=row.kind,
                payload=dict(row.payload or {}),
                state=TaskState.ACTIVE,
                progress=row.progress,
                attempts=row.attempts,
                claimed_by=row.claimed_by,
                created_at=row.created_at,
            )

    def update_progress(self, task_id: str, percent: int, worker_id: str | None = None) -> None:
        """Record progress and extend the lease. With *worker_id*, only the current holder may."""
        if isinstance(percent, bool) or not isinstance(percent, int) or not 0 <= percent <= 100:
            raise ValidationError(f"Progress must be an integer between 0 and 100, got {percent!r}")
        now = self._clock()
        with self.db.session_scope() as s:
            updated = (
                self._active(s, task_id, worker_id)
                .update(
                    {
                        # Never regress a stored value
                        TaskRow.progress: func.max(TaskRow.progress, percent)
                        if self.db.dialect == "sqlite"
                        else func.greatest(TaskRow.progress, percent),
                        TaskRow.lease_expires_at: now + timedelta(seconds=self.visibility_timeout),
                        TaskRow.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
        if updated != 1:
            state, holder = self._holder_of(task_id)
            if state is TaskState.ACTIVE:
                raise TaskStateError(f"Task {task_id} is now held by {holder}, not {worker_id}")
            raise TaskStateError(f"Cannot update progress of task {task_id} in state {state.value}")

    def complete(self, task_id: str, result: dict[str, Any], worker_id: str | None = None) -> bool:
        return self._finish(task_id, TaskState.COMPLETED, {
            TaskRow.result: result,
            TaskRow.progress: 100,
        }, worker_id)

    def fail(self, task_id: str, reason: str, worker_id: str | None = None) -> bool:
        return self._finish(task_id, TaskState.FAILED, {
            TaskRow.failure_reason: (reason or "").strip() or "Task failed",
        }, worker_id)

    def _active(self, session, task_id: str, worker_id: str | None):
        q = session.query(TaskRow).filter(TaskRow.id == task_id, TaskRow.state == TaskState.ACTIVE.value)
        if worker_id is not None:
            q = q.filter(TaskRow.claimed_by == worker_id)
        return q

    def _finish(self, task_id: str, state: TaskState, values: dict, worker_id: str | None) -> bool:
        """active -> terminal. Returns False (no-op) if already terminal or re-claimed by another worker."""
        now = self._clock()
        with self.db.session_scope() as s:
            updated = (
                self._active(s, task_id, worker_id)
                .update(
                    {
                        **values,
                        TaskRow.state: state.value,
                        TaskRow.lease_expires_at: None,
                        TaskRow.updated_at: now,
                        TaskRow.finished_at: now,
                    },
                    synchronize_session=False,
                )
            )
        if updated == 1:
            log.info("Task %s %s", task_id, state.value)
            return True
        current, holder = self._holder_of(task_id)
        if current.terminal:
            log.info("Task %s already %s — ignoring %s", task_id, current.value, state.value)
            return False
        if current is TaskState.ACTIVE:
            log.warning("Task %s was re-claimed by %s — dropping %s outcome from %s",
                        task_id, holder, state.value, worker_id)
            return False
        raise TaskStateError(f"Task {task_id} is {current.value}; only active tasks can be {state.value}")

    def _holder_of(self, task_id: str) -> tuple[TaskState, str | None]:
        with self.db.session_scope() as s:
            row = s.get(TaskRow, task_id)
            if row is None:
                raise NotFoundError(f"Task {task_id} not found")
            return TaskState(row.state), row.claimed_by

    # ── Maintenance ──────────────────────────────────────────────────────

    def counts(self) -> dict[str, int]:
        with self.db.session_scope() as s:
            rows = s.query(TaskRow.state, func.count(TaskRow.id)).group_by(TaskRow.state).all()
        counts = {state.value: 0 for state in TaskState}
        counts.update({state: n for state, n in rows})
        return counts

    def list_tasks(self, kind: str | None = None, limit: int = 50) -> list[TaskStatus]:
        with self.db.session_scope() as s:
            q = s.query(TaskRow)
            if kind:
                q = q.filter(TaskRow.kind == kind)
            rows = q.order_by(TaskRow.created_at.desc()).limit(limit).all()
            return [
                TaskStatus(
                    task_id=r.id,
                    kind=r.kind,
                    state=TaskState(r.state),
                    progress=r.progress,
                    result=r.result,
                    failure_reason=r.failure_reason,
                    created_at=r.created_at,
                )
                for r in rows
            ]

    def prune(
        self,
        completed_max_age: timedelta = timedelta(hours=24),
        failed_max_age: timedelta = timedelta(days=7),
    ) -> int:
        """Delete terminal tasks older than their retention window."""
        now = self._clock()
        with self.db.session_scope() as s:
            removed = (
                s.query(TaskRow)
                .filter(or_(
                    and_(TaskRow.state == TaskState.COMPLETED.value,
                         TaskRow.finished_at < now - completed_max_age),
                    and_(TaskRow.state == TaskState.FAILED.value,
                         TaskRow.finished_at < now - failed_max_age),
                ))
                .delete(synchronize_session=False)
            )
        if removed:
            log.info("Pruned %d finished task(s)", removed)
        return removed
