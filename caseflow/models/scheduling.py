"""
caseflow — Scheduling model.

Models:
    - ScheduledJob: one row per registered SLA sweep, holding its cadence and
      the outcome of its most recent tick
"""

from datetime import timedelta

from caseflow.models import db
from caseflow.utils.helpers import as_utc, iso, utcnow


class ScheduledJob(db.Model):
    """
    Persisted state of a periodic job.

    ``last_as_of`` is the instant the last tick evaluated clocks against
    (the ``now`` handed to the job), which is what due-ness is measured
    from. ``last_run_at`` is the wall-clock time the tick actually ran.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    interval_minutes = db.Column(db.Integer, nullable=False, default=60)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_as_of = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True,
                                comment="success, failed")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    run_count = db.Column(db.Integer, nullable=False, default=0)
    error_count = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def next_due_at(self):
        if self.last_as_of is None:
            return None
        return as_utc(self.last_as_of) + timedelta(minutes=self.interval_minutes)

    def is_due(self, now) -> bool:
        if not self.is_enabled:
            return False
        due = self.next_due_at()
        return due is None or due <= now

    def record_run(self, *, as_of, status, duration_ms, result=None, error=None):
        self.last_run_at = utcnow()
        self.last_as_of = as_of
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = error

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "interval_minutes": self.interval_minutes,
            "is_enabled": self.is_enabled,
            "last_run_at": iso(self.last_run_at),
            "last_as_of": iso(self.last_as_of),
            "next_due_at": iso(self.next_due_at()),
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} every {self.interval_minutes}m>"
