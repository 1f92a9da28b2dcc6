"""
Job scheduling tables.

ScheduledJob  one row per recurring job (interval, run bookkeeping)
QueuedJob     one row per deferred call: escalation sweeps, monitor runs
"""

from datetime import datetime, timedelta, timezone

from compcycle.models import db
from compcycle.models.base import _utcnow

RECURRING_ACTIVE = "active"
RECURRING_PAUSED = "paused"

JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_DONE = "done"
JOB_FAILED = "failed"


def _iso(value):
    return value.isoformat() if value else None


class ScheduledJob(db.Model):
    """Recurring job definition; ``schedule_config`` is ``{"seconds": N}``."""

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    schedule_type = db.Column(db.String(30), default="interval")
    schedule_config = db.Column(db.JSON, default=dict)
    status = db.Column(db.String(20), default=RECURRING_ACTIVE)
    is_enabled = db.Column(db.Boolean, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True))
    last_run_status = db.Column(db.String(20))
    last_run_duration_ms = db.Column(db.Integer)
    last_run_result = db.Column(db.JSON)
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=int((self.schedule_config or {}).get("seconds", 3600)))

    def is_due(self, now: datetime) -> bool:
        if not self.is_enabled or self.status != RECURRING_ACTIVE:
            return False
        if self.last_run_at is None:
            return True
        last = self.last_run_at
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return now >= last + self.interval

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None, at=None):
        self.last_run_at = at or _utcnow()
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        data = {
            c: getattr(self, c)
            for c in ("id", "job_name", "description", "schedule_type", "schedule_config",
                      "status", "is_enabled", "last_run_status", "last_run_duration_ms",
                      "last_run_result", "run_count", "error_count", "last_error")
        }
        data["last_run_at"] = _iso(self.last_run_at)
        return data

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} {self.status}>"


class QueuedJob(db.Model):
    """
    Deferred call to a registered job handler.

    The worker claims rows whose ``run_at`` has passed. Failures are retried
    with backoff until ``max_attempts``; handlers must tolerate reruns.
    """

    __tablename__ = "queued_jobs"
    __table_args__ = (db.Index("ix_queued_jobs_status_run_at", "status", "run_at"),)

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), nullable=False, index=True)
    payload = db.Column(db.JSON, default=dict)
    # At most one pending row per key
    dedupe_key = db.Column(db.String(200), index=True)
    status = db.Column(db.String(20), nullable=False, default=JOB_PENDING)
    run_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=3)
    result = db.Column(db.JSON)
    last_error = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    finished_at = db.Column(db.DateTime(timezone=True))

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "payload": self.payload or {},
            "dedupe_key": self.dedupe_key,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "result": self.result,
            "last_error": self.last_error,
            "run_at": _iso(self.run_at),
            "finished_at": _iso(self.finished_at),
        }

    def __repr__(self):
        return f"<QueuedJob {self.id} {self.job_name} {self.status}>"
