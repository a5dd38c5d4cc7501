"""Celery configuration for the pipeline's periodic jobs."""

from __future__ import annotations

import os

from celery import Celery

from dealpilot.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

celery_app = Celery("dealpilot", broker=broker_url, backend=backend_url, include=["dealpilot.jobs.publish"])
celery_app.conf.timezone = timezone_name()
celery_app.conf.beat_schedule = {
    "publish-scheduled-deals": {
        "task": "dealpilot.jobs.publish.run_publish_cycle",
        "schedule": float(os.environ.get("PUBLISH_INTERVAL_SECONDS", 60)),
    },
    "sweep-tracking-ids": {
        "task": "dealpilot.jobs.publish.run_pool_sweep",
        "schedule": float(os.environ.get("TRACKING_SWEEP_INTERVAL_SECONDS", 300)),
    },
    "cleanup-stale-deals": {
        "task": "dealpilot.jobs.publish.run_stale_cleanup",
        "schedule": float(os.environ.get("STALE_CLEANUP_INTERVAL_SECONDS", 3600)),
    },
    "check-deal-validity": {
        "task": "dealpilot.jobs.publish.run_validity_check",
        "schedule": float(os.environ.get("VALIDITY_CHECK_INTERVAL_SECONDS", 1800)),
    },
}


@celery_app.task(name="dealpilot.jobs.publish.run_publish_cycle")
def run_publish_cycle_task():  # pragma: no cover - executed by worker
    import asyncio

    from dealpilot.jobs.publish import run_publish_cycle

    stats = asyncio.run(run_publish_cycle())
    return {"processed": stats.processed, "published": stats.published, "failed": stats.failed}


@celery_app.task(name="dealpilot.jobs.publish.run_pool_sweep")
def run_pool_sweep_task():  # pragma: no cover - executed by worker
    import asyncio

    from dealpilot.jobs.publish import run_pool_sweep

    return asyncio.run(run_pool_sweep())


@celery_app.task(name="dealpilot.jobs.publish.run_stale_cleanup")
def run_stale_cleanup_task():  # pragma: no cover - executed by worker
    import asyncio

    from dealpilot.jobs.publish import run_stale_cleanup

    return asyncio.run(run_stale_cleanup())


@celery_app.task(name="dealpilot.jobs.publish.run_validity_check")
def run_validity_check_task():  # pragma: no cover - executed by worker
    import asyncio

    from dealpilot.jobs.publish import run_validity_check

    return asyncio.run(run_validity_check())
