"""
caseflow
Scheduler Service.

Job registry for the periodic SLA sweeps. The service is multi-instance and
request-driven, so nothing here runs a timer: a single cron entry calling
``flask run-due-jobs`` every few minutes (or the admin API, or
``flask run-job <name>``) triggers the ticks, and every tick re-evaluates
from current data.

    @register_job("sla_breach_sweep", every_minutes=15)
    def sla_breach_sweep(app, now=None): ...

    SchedulerService.run_due_jobs()          # runs whatever is due
    SchedulerService.run_job("sla_breach_sweep", now=...)

A job's cadence is declared where it is registered and copied into its
``ScheduledJob`` row on first sight; after that the row is authoritative, so
an administrator can pause a sweep without a deploy.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from flask import Flask
from sqlalchemy import select

from caseflow.core.exceptions import NotFoundError
from caseflow.models import db
from caseflow.models.scheduling import ScheduledJob
from caseflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class JobSpec:
    name: str
    fn: Callable
    every_minutes: int

    @property
    def description(self) -> str:
        doc = (self.fn.__doc__ or "").strip()
        return doc.splitlines()[0] if doc else f"Scheduled job: {self.name}"


_job_registry: dict[str, JobSpec] = {}


def register_job(name: str, *, every_minutes: int = 60):
    """Decorator registering ``fn(app, now=None, **kwargs) -> dict`` as a job."""
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = JobSpec(name=name, fn=fn, every_minutes=every_minutes)
        return fn
    return decorator


def get_registered_jobs() -> dict[str, JobSpec]:
    return dict(_job_registry)


def _job_record(job_name: str) -> ScheduledJob | None:
    return db.session.execute(
        select(ScheduledJob).where(ScheduledJob.job_name == job_name)
    ).scalar_one_or_none()


class SchedulerService:
    """Persists job state and executes ticks inside a Flask app context."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        created = []
        for spec in _job_registry.values():
            if _job_record(spec.name) is None:
                job = ScheduledJob(
                    job_name=spec.name,
                    description=spec.description,
                    interval_minutes=spec.every_minutes,
                    is_enabled=True,
                )
                db.session.add(job)
                created.append(job)
        if created:
            db.session.commit()
            logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str, now=None, **kwargs) -> dict:
        """
        Execute one tick of a job, then record its outcome.

        The job body commits its own work; a failure inside it is logged and
        reported in the returned dict, never raised.

        Returns:
            Dict with job_name, status, as_of, duration_ms, result, error.
        """
        spec = _job_registry.get(job_name)
        if spec is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if cls._app is None:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        as_of = now or utcnow()
        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = spec.fn(cls._app, now=as_of, **kwargs)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed", job_name, extra={"job_name": job_name})

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with cls._app.app_context():
                cls.ensure_jobs_registered()
                _job_record(job_name).record_run(
                    as_of=as_of,
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else None,
                    error=error,
                )
                db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name)

        logger.info(
            "Job %s %s in %dms", job_name, status, duration_ms,
            extra={"job_name": job_name, "status": status, "duration_ms": duration_ms},
        )
        return {
            "job_name": job_name,
            "status": status,
            "as_of": as_of.isoformat(),
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def run_due_jobs(cls, now=None) -> list[dict]:
        """Run every enabled job whose interval has elapsed since its last tick."""
        now = now or utcnow()
        with cls._app.app_context():
            cls.ensure_jobs_registered()
            due = [name for name in _job_registry if _job_record(name).is_due(now)]
        return [cls.run_job(name, now=now) for name in due]

    @classmethod
    def set_enabled(cls, job_name: str, enabled: bool) -> ScheduledJob:
        if job_name not in _job_registry:
            raise NotFoundError("ScheduledJob", job_name)
        cls.ensure_jobs_registered()
        job = _job_record(job_name)
        job.is_enabled = enabled
        db.session.commit()
        logger.info("Job %s %s", job_name, "enabled" if enabled else "paused")
        return job

    @classmethod
    def list_jobs(cls) -> list[dict]:
        jobs = []
        for spec in _job_registry.values():
            job_record = _job_record(spec.name)
            jobs.append({
                "job_name": spec.name,
                "every_minutes": spec.every_minutes,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs
