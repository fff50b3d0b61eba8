"""
Onboarding Engine
Scheduler Service.

Lightweight job registry for periodic onboarding work (KYC polling,
overdue-document scans).  Jobs are plain functions registered with
``@register_job`` and executed inside the Flask app context, either from
an external cron via ``flask run-job <name>`` or directly in tests.

Architecture:
    - Job functions registered via decorator into a module registry
    - SchedulerService bound to the app (``app.extensions["scheduler"]``)
    - Last run of each job kept in memory for the metrics endpoint
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable

from flask import Flask

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("kyc_status_poll")
        def poll_kyc(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Runs registered jobs within the Flask app context and remembers the
    outcome of the last run per job.
    """

    _app: Flask | None = None
    _last_runs: dict[str, dict] = {}

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        cls._last_runs = {}
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

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

        outcome = {
            "job_name": job_name,
            "status": status,
            "duration_ms": int((time.monotonic() - start) * 1000),
            "result": result,
            "error": error,
            "finished_at": datetime.now(timezone.utc).isoformat(),
        }
        cls._last_runs[job_name] = outcome
        return outcome

    @classmethod
    def last_runs(cls) -> dict[str, dict]:
        return dict(cls._last_runs)
