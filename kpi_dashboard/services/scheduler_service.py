"""
KPI Dashboard Backend
Scheduler Service.

Lightweight background job scheduler: jobs register through a decorator,
their schedule is persisted in the ScheduledJob model, and a single daemon
thread fires each enabled job when its cron expression comes due.

Architecture:
    - SchedulerService: Manages job registration, persistence and execution
    - Jobs are stored in ScheduledJob model for persistence
    - Manual trigger API for development and testing
    - Pluggable job functions registered via decorator
    - Cron evaluation via croniter (standard 5-field expressions)
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from croniter import croniter
from flask import Flask

from kpi_dashboard.models import db
from kpi_dashboard.models.scheduling import RUN_STATUSES, ScheduledJob

logger = logging.getLogger(__name__)

DEFAULT_CRON = "0 0 * * *"


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_job_cron_settings: dict[str, str] = {}


def register_job(name: str, cron_setting: str | None = None):
    """Decorator to register a job function.

    Args:
        name: Unique job name.
        cron_setting: App config key holding the job's cron expression.

    Usage:
        @register_job("hierarchy_sync", cron_setting="HIERARCHY_SYNC_CRON")
        def sync_hierarchy(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        if cron_setting:
            _job_cron_settings[name] = cron_setting
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


def compute_next_run(cron_expr: str, after: datetime | None = None) -> datetime:
    """Next fire time of a cron expression strictly after ``after`` (UTC).

    Raises:
        ValueError: invalid cron expression.
    """
    if not croniter.is_valid(cron_expr):
        raise ValueError(f"Invalid cron expression: {cron_expr!r}")
    base = after or datetime.now(timezone.utc)
    return croniter(cron_expr, base).get_next(datetime)


class SchedulerService:
    """
    Lightweight scheduler service.

    Manages job registration, persistence, and execution.
    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None
    _running: bool = False
    _thread: threading.Thread | None = None
    _stop_event: threading.Event | None = None
    _next_runs: dict[str, datetime] = {}
    _scheduled_crons: dict[str, str] = {}

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with the configured cron expression and
        refreshes the stored schedule of existing ones when config changed.

        Returns:
            The newly created records.
        """
        if not cls._app:
            return []

        created = []
        refreshed = 0
        with cls._app.app_context():
            for name, fn in _job_registry.items():
                schedule = _get_default_schedule(cls._app, name)
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip(),
                        schedule_type="cron",
                        schedule_config=schedule,
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
                elif existing.schedule_config != schedule:
                    logger.info("Schedule of %s changed: %s -> %s", name,
                                (existing.schedule_config or {}).get("cron"), schedule["cron"],
                                extra={"job_name": name})
                    existing.schedule_config = schedule
                    refreshed += 1
            if created or refreshed:
                db.session.commit()
            if created:
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        A job may report its own outcome by returning a dict whose ``status``
        is one of RUN_STATUSES; otherwise a clean return counts as success.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc)

        if isinstance(result, dict) and result.get("status") in RUN_STATUSES:
            status = result["status"]
            error = error or result.get("error")

        duration_ms = int((time.monotonic() - start) * 1000)

        # Update DB record
        try:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name)

        logger.info("Job %s finished: %s", job_name, status,
                    extra={"job_name": job_name, "duration_ms": duration_ms})
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            next_run = cls._next_runs.get(name)
            jobs.append({
                "job_name": name,
                "registered": True,
                "next_run_at": next_run.isoformat() if next_run else None,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        """Get status of a specific job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job_record:
            return job_record.to_dict()
        return None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()

    # ── Background thread ────────────────────────────────────────────────

    @classmethod
    def start(cls, poll_seconds: float = 30.0) -> bool:
        """Start the daemon thread that fires due jobs. Idempotent."""
        if not cls._app:
            raise RuntimeError("Scheduler not initialized")
        if cls._running:
            return False

        cls.ensure_jobs_registered()
        cls._stop_event = threading.Event()
        cls._running = True
        cls._thread = threading.Thread(
            target=cls._loop, args=(poll_seconds,), name="job-scheduler", daemon=True,
        )
        cls._thread.start()
        logger.info("Scheduler thread started (poll=%ss)", poll_seconds)
        return True

    @classmethod
    def stop(cls, timeout: float = 5.0) -> None:
        """Signal the daemon thread to exit and wait for it."""
        if not cls._running:
            return
        cls._running = False
        if cls._stop_event:
            cls._stop_event.set()
        if cls._thread and cls._thread.is_alive():
            cls._thread.join(timeout)
        cls._thread = None
        logger.info("Scheduler thread stopped")

    @classmethod
    def is_running(cls) -> bool:
        return cls._running

    @classmethod
    def tick(cls, now: datetime | None = None) -> list[str]:
        """Run every enabled job whose next fire time has passed.

        Returns:
            Names of the jobs that were run.
        """
        now = now or datetime.now(timezone.utc)
        fired = []
        for name, cron_expr in cls._enabled_schedules().items():
            next_run = cls._next_runs.get(name)
            previous_cron = cls._scheduled_crons.get(name)
            cls._scheduled_crons[name] = cron_expr
            if previous_cron not in (None, cron_expr):
                logger.info("Job %s rescheduled for cron %s", name, cron_expr,
                            extra={"job_name": name})
                next_run = None
            if next_run is None:
                try:
                    cls._next_runs[name] = compute_next_run(cron_expr, now)
                except ValueError as exc:
                    logger.error("Job %s has an invalid schedule: %s", name, exc,
                                 extra={"job_name": name})
                continue
            if now >= next_run:
                cls.run_job(name)
                fired.append(name)
                cls._next_runs[name] = compute_next_run(cron_expr, now)
        return fired

    @classmethod
    def _enabled_schedules(cls) -> dict[str, str]:
        schedules = {}
        with cls._app.app_context():
            for name in _job_registry:
                record = ScheduledJob.query.filter_by(job_name=name).first()
                if record is not None and not record.is_enabled:
                    continue
                # App config wins over the stored copy for config-bound jobs.
                if _job_cron_settings.get(name) or not record:
                    config = _get_default_schedule(cls._app, name)
                else:
                    config = record.schedule_config or {}
                schedules[name] = config.get("cron") or DEFAULT_CRON
        return schedules

    @classmethod
    def _loop(cls, poll_seconds: float) -> None:
        while cls._running and not cls._stop_event.is_set():
            try:
                cls.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            cls._stop_event.wait(poll_seconds)


def _get_default_schedule(app: Flask, job_name: str) -> dict:
    """Return default schedule config for a job, read from app config."""
    setting = _job_cron_settings.get(job_name)
    cron_expr = app.config.get(setting, DEFAULT_CRON) if setting else DEFAULT_CRON
    return {"cron": cron_expr, "setting": setting}
