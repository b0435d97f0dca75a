"""Durable job queue backed by the ``job`` table.

Delivery is at-least-once:
  * ``enqueue`` adds a row inside the caller's transaction, so a job becomes
    visible only when the work that scheduled it commits. An existing
    ``idempotency_tag`` returns the existing row instead of a second job.
  * ``run_pending`` claims due rows one at a time with a conditional
    ``queued -> running`` update, runs the registered handler and records the
    outcome. Failures are retried with exponential backoff until
    ``max_attempts``, after which the job is dead-lettered.
  * Rows left ``running`` by a crashed worker are handed back to the queue
    once their lock is older than the visibility timeout.

Handlers must be idempotent; the tag only prevents duplicate scheduling.
"""

from __future__ import annotations

import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import update

from pbm import db
from pbm.logging_utils import get_logger
from pbm.models.job import JOB_DEAD, JOB_QUEUED, JOB_RUNNING, JOB_SUCCEEDED, Job
from pbm.utils.clock import utcnow

log = get_logger("pbm.jobs")

ADVANCE_IF_READY = "advance-if-ready"
RENDER_SHEET = "render-sheet"
JOIN_PLAYER = "join-player"
CHECK_DEADLINES = "check-deadlines"

MAX_BACKOFF_SECONDS = 3600

Handler = Callable[[Dict[str, Any]], Any]


class JobQueue:
    def __init__(self, max_attempts: int = 8, backoff_base: float = 2.0, visibility_timeout: float = 600.0) -> None:
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.visibility_timeout = visibility_timeout
        self._handlers: Dict[str, Handler] = {}

    # --- registration -----------------------------------------------------
    def worker(self, kind: str, handler: Optional[Handler] = None):
        """Register ``handler`` for ``kind``; usable as ``@queue.worker(kind)``."""

        def register(fn: Handler) -> Handler:
            self._handlers[kind] = fn
            return fn

        if handler is not None:
            return register(handler)
        return register

    def handler_for(self, kind: str) -> Optional[Handler]:
        return self._handlers.get(kind)

    # --- producing --------------------------------------------------------
    def enqueue(
        self,
        kind: str,
        payload: Dict[str, Any],
        idempotency_tag: str,
        run_after: Optional[datetime.datetime] = None,
    ) -> Job:
        """Schedule a job in the current transaction. The caller commits."""
        existing = Job.query.filter_by(idempotency_tag=idempotency_tag).first()
        if existing is not None:
            log.debug(event="job_enqueue_duplicate", kind=kind, tag=idempotency_tag, job_id=existing.id)
            return existing
        job = Job(
            kind=kind,
            payload=payload,
            idempotency_tag=idempotency_tag,
            status=JOB_QUEUED,
            attempts=0,
            max_attempts=self.max_attempts,
            run_after=run_after or utcnow(),
        )
        db.session.add(job)
        log.info(event="job_enqueued", kind=kind, tag=idempotency_tag)
        return job

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** max(attempt - 1, 0)), MAX_BACKOFF_SECONDS)

    # --- consuming --------------------------------------------------------
    def run_pending(self, limit: int = 50, now: Optional[datetime.datetime] = None) -> int:
        """Run up to ``limit`` due jobs; return how many were attempted."""
        now = now or utcnow()
        self._reclaim_stale(now)
        due = (
            Job.query.filter(Job.status == JOB_QUEUED, Job.run_after <= now)
            .order_by(Job.run_after, Job.created_at)
            .limit(limit)
            .all()
        )
        job_ids = [job.id for job in due]
        db.session.commit()

        ran = 0
        for job_id in job_ids:
            job = self._claim(job_id, now)
            if job is None:
                continue
            ran += 1
            self._execute(job, now)
        return ran

    def drain(self, now: Optional[datetime.datetime] = None, max_rounds: int = 20) -> int:
        """Run due jobs, including ones they schedule, until none are left."""
        total = 0
        for _ in range(max_rounds):
            ran = self.run_pending(now=now)
            if not ran:
                break
            total += ran
        return total

    def _claim(self, job_id: str, now: datetime.datetime) -> Optional[Job]:
        result = db.session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JOB_QUEUED)
            .values(status=JOB_RUNNING, locked_at=now, attempts=Job.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if result.rowcount != 1:
            # Another worker took it
            return None
        return db.session.get(Job, job_id, populate_existing=True)

    def _execute(self, job: Job, now: datetime.datetime):
        handler = self._handlers.get(job.kind)
        if handler is None:
            self._dead_letter(job, f"no worker registered for {job.kind!r}")
            return
        log.info(event="job_started", kind=job.kind, job_id=job.id, attempt=job.attempts)
        try:
            handler(dict(job.payload or {}))
        except Exception as exc:  # the worker loop outlives any single job
            db.session.rollback()
            self._record_failure(job, exc, now)
            return
        job = db.session.get(Job, job.id, populate_existing=True)
        job.status = JOB_SUCCEEDED
        job.finished_at = utcnow()
        job.locked_at = None
        job.last_error = None
        db.session.commit()
        log.info(event="job_succeeded", kind=job.kind, job_id=job.id, attempt=job.attempts)

    def _record_failure(self, job: Job, exc: Exception, now: datetime.datetime):
        job = db.session.get(Job, job.id, populate_existing=True)
        error = f"{type(exc).__name__}: {exc}"
        if job.attempts >= job.max_attempts:
            self._dead_letter(job, error)
            return
        delay = self.backoff(job.attempts)
        job.status = JOB_QUEUED
        job.locked_at = None
        job.last_error = error
        job.run_after = now + datetime.timedelta(seconds=delay)
        db.session.commit()
        log.warn(
            event="job_retry_scheduled",
            kind=job.kind,
            job_id=job.id,
            attempt=job.attempts,
            delay_seconds=delay,
            error=error,
        )

    def _dead_letter(self, job: Job, error: str):
        job.status = JOB_DEAD
        job.locked_at = None
        job.last_error = error
        job.finished_at = utcnow()
        db.session.commit()
        log.error(event="job_dead_lettered", kind=job.kind, job_id=job.id, attempts=job.attempts, error=error)

    def _reclaim_stale(self, now: datetime.datetime):
        cutoff = now - datetime.timedelta(seconds=self.visibility_timeout)
        result = db.session.execute(
            update(Job)
            .where(Job.status == JOB_RUNNING, Job.locked_at < cutoff)
            .values(status=JOB_QUEUED, locked_at=None, run_after=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if result.rowcount:
            log.warn(event="job_reclaimed", count=result.rowcount)
