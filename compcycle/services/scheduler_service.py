"""
Compensation Cycle Platform
Scheduler Service.

Persisted job queue plus recurring interval jobs, drained by a worker loop
(``flask run-worker``). No external broker: the ``queued_jobs`` table is the
queue.

Architecture:
    - Handlers register by name via ``@register_job``; signature ``fn(app, payload)``
    - Recurring jobs get a ScheduledJob row carrying interval and run history
    - One-off work (escalations, monitor runs) is a QueuedJob row with ``run_at``
    - Failed queued jobs are retried with linear backoff until ``max_attempts``
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from datetime import timedelta
from typing import Callable

from flask import Flask, current_app, has_app_context

from compcycle.core.exceptions import ValidationError
from compcycle.models import db
from compcycle.models.scheduling import (
    JOB_DONE,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    RECURRING_ACTIVE,
    RECURRING_PAUSED,
    QueuedJob,
    ScheduledJob,
)
from compcycle.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
# job name -> config key holding its interval in seconds
_recurring_jobs: dict[str, str] = {}


def register_job(name: str, *, interval_config: str | None = None):
    """Decorator to register a job handler.

    Usage:
        @register_job("run-monitors")
        def run_monitors_job(app, payload):
            ...

        @register_job("check-active-cycles", interval_config="MONITOR_INTERVAL_SECONDS")
        def check_active_cycles(app, payload):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        if interval_config:
            _recurring_jobs[name] = interval_config
        return fn
    return decorator


def _as_result(value) -> dict | None:
    """Handlers may return anything; JSON columns store dicts."""
    if value is None or isinstance(value, dict):
        return value
    return {"output": str(value)}


class SchedulerService:
    """
    Job queue and recurring scheduler.

    Jobs execute within the current app context when one is active, otherwise
    inside a fresh context of the app bound by ``init_app``.
    """

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Bind the scheduler to a Flask app."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def _context(cls):
        if has_app_context():
            return nullcontext()
        if not cls._app:
            raise RuntimeError("Scheduler not initialized")
        return cls._app.app_context()

    @classmethod
    def _config(cls, key: str, default):
        return current_app.config.get(key, default)

    # ── Recurring jobs ────────────────────────────────────────────────────

    @staticmethod
    def _record(job_name: str) -> ScheduledJob | None:
        return ScheduledJob.query.filter_by(job_name=job_name).one_or_none()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Insert a ScheduledJob row for each recurring handler that lacks one."""
        with cls._context():
            missing = [name for name in _recurring_jobs if cls._record(name) is None]
            created = [
                ScheduledJob(
                    job_name=name,
                    description=(_job_registry[name].__doc__ or name).strip().splitlines()[0],
                    schedule_type="interval",
                    schedule_config={"seconds": int(cls._config(_recurring_jobs[name], 3600))},
                    status=RECURRING_ACTIVE,
                    is_enabled=True,
                )
                for name in missing
            ]
            if created:
                db.session.add_all(created)
                db.session.commit()
                logger.info("Registered recurring jobs: %s", ", ".join(missing))
        return created

    @classmethod
    def run_job(cls, job_name: str, payload: dict | None = None, *, now=None) -> dict:
        """
        Call a handler synchronously and book the run on its ScheduledJob row.

        Handler exceptions are caught and reported in the returned dict
        (``status``, ``duration_ms``, ``result``, ``error``).
        """
        fn = _job_registry.get(job_name)
        if fn is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}

        outcome = {"job_name": job_name, "status": "success", "result": None, "error": None}
        started = time.monotonic()
        with cls._context():
            try:
                outcome["result"] = fn(current_app._get_current_object(), payload or {})
            except Exception as exc:
                db.session.rollback()
                outcome.update(status="failed", error=str(exc))
                logger.exception("Recurring job %s raised", job_name, extra={"job_name": job_name})
            outcome["duration_ms"] = int((time.monotonic() - started) * 1000)

            record = cls._record(job_name)
            if record is not None:
                try:
                    record.record_run(
                        status=outcome["status"],
                        duration_ms=outcome["duration_ms"],
                        result=_as_result(outcome["result"]),
                        error=outcome["error"],
                        at=now,
                    )
                    db.session.commit()
                except Exception:
                    db.session.rollback()
                    logger.exception("Could not book run of %s", job_name, extra={"job_name": job_name})
        return outcome

    # ── Queue ─────────────────────────────────────────────────────────────

    @classmethod
    def enqueue(
        cls,
        job_name: str,
        payload: dict | None = None,
        *,
        delay_ms: int = 0,
        dedupe_key: str | None = None,
        commit: bool = True,
    ) -> QueuedJob:
        """
        Persist a unit of deferred work.

        A pending job with the same name and ``dedupe_key`` is returned
        instead of creating a duplicate.
        """
        if job_name not in _job_registry:
            raise ValidationError(f"Unknown job: {job_name}")

        if dedupe_key:
            existing = QueuedJob.query.filter_by(
                job_name=job_name, dedupe_key=dedupe_key, status=JOB_PENDING,
            ).first()
            if existing:
                logger.debug("Job %s already queued (dedupe_key=%s)", job_name, dedupe_key)
                return existing

        job = QueuedJob(
            job_name=job_name,
            payload=payload or {},
            dedupe_key=dedupe_key,
            status=JOB_PENDING,
            run_at=utcnow() + timedelta(milliseconds=max(int(delay_ms or 0), 0)),
            attempts=0,
            max_attempts=int(cls._config("JOB_MAX_ATTEMPTS", 3)),
        )
        db.session.add(job)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        logger.info("Enqueued job %s id=%s delay_ms=%s", job_name, job.id, delay_ms,
                    extra={"job_name": job_name, "job_id": job.id})
        return job

    @classmethod
    def run_queued(cls, job: QueuedJob) -> dict:
        """Execute one queued job, applying retry bookkeeping on failure."""
        fn = _job_registry.get(job.job_name)
        job.status = JOB_RUNNING
        job.attempts = (job.attempts or 0) + 1
        db.session.commit()

        app = current_app._get_current_object()

        if fn is None:
            job.status = JOB_FAILED
            job.last_error = f"Unknown job: {job.job_name}"
            job.finished_at = utcnow()
            db.session.commit()
            logger.error("Dropping queued job %s: no handler registered", job.id,
                         extra={"job_name": job.job_name, "job_id": job.id})
            return job.to_dict()

        try:
            result = fn(app, dict(job.payload or {}))
        except Exception as exc:
            db.session.rollback()
            job.last_error = str(exc)
            if job.attempts < job.max_attempts:
                backoff = int(cls._config("JOB_RETRY_BACKOFF_SECONDS", 60)) * job.attempts
                job.status = JOB_PENDING
                job.run_at = utcnow() + timedelta(seconds=backoff)
            else:
                job.status = JOB_FAILED
                job.finished_at = utcnow()
            db.session.commit()
            logger.exception("Queued job %s failed (attempt %d/%d)",
                             job.job_name, job.attempts, job.max_attempts,
                             extra={"job_name": job.job_name, "job_id": job.id})
            return job.to_dict()

        job.status = JOB_DONE
        job.result = _as_result(result)
        job.last_error = None
        job.finished_at = utcnow()
        db.session.commit()
        return job.to_dict()

    @classmethod
    def run_due_jobs(cls, now=None) -> dict:
        """
        Run every due recurring job, then every pending queued job whose
        ``run_at`` has passed, oldest first.

        Returns:
            {"recurring": [job_name...], "queued": [job dicts...]}
        """
        with cls._context():
            now = as_utc(now) or utcnow()
            cls.ensure_jobs_registered()

            recurring = []
            for record in ScheduledJob.query.order_by(ScheduledJob.job_name).all():
                if record.job_name in _recurring_jobs and record.is_due(now):
                    cls.run_job(record.job_name, now=now)
                    recurring.append(record.job_name)

            due_ids = [
                job_id for (job_id,) in db.session.query(QueuedJob.id)
                .filter(QueuedJob.status == JOB_PENDING, QueuedJob.run_at <= now)
                .order_by(QueuedJob.run_at.asc(), QueuedJob.id.asc())
                .all()
            ]
            queued = []
            for job_id in due_ids:
                job = db.session.get(QueuedJob, job_id)
                # Another worker may have claimed it since the scan
                if job is None or job.status != JOB_PENDING:
                    continue
                queued.append(cls.run_queued(job))

        if recurring or queued:
            logger.info("Worker pass: %d recurring, %d queued", len(recurring), len(queued))
        return {"recurring": recurring, "queued": queued}

    @classmethod
    def run_worker(cls, *, once: bool = False, poll_seconds: int | None = None) -> None:
        """Drain the queue forever (or once), sleeping between passes."""
        with cls._context():
            interval = poll_seconds or int(cls._config("WORKER_POLL_SECONDS", 5))
            logger.info("Worker started (poll=%ss, once=%s)", interval, once)
            while True:
                cls.run_due_jobs()
                if once:
                    return
                time.sleep(interval)

    # ── Inspection ────────────────────────────────────────────────────────

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """Every registered handler, with its ScheduledJob row if it is recurring."""
        jobs = []
        for name in _job_registry:
            record = cls._record(name)
            jobs.append({
                "job_name": name,
                "recurring": name in _recurring_jobs,
                "db_record": record.to_dict() if record else None,
            })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        record = cls._record(job_name)
        return record.to_dict() if record else None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Pause or resume a recurring job. Returns None for unknown names."""
        record = cls._record(job_name)
        if record is None:
            return None
        record.is_enabled = enabled
        record.status = RECURRING_ACTIVE if enabled else RECURRING_PAUSED
        db.session.commit()
        logger.info("Recurring job %s %s", job_name, record.status, extra={"job_name": job_name})
        return record.to_dict()
