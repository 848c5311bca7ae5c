from __future__ import annotations

import json
import time

from celery import shared_task
from flask import current_app

from iskahomes.jobs.cleanup_runner import cleanup_incomplete_listings as run_cleanup
from iskahomes.jobs.subscription_runner import sweep_subscriptions as run_sweep
from iskahomes.utils.clock import utcnow


def _task_log(task_name: str, *, status: str, started_at: float, **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "timestamp": utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


@shared_task(bind=True, name="iskahomes.tasks.maintenance_tasks.cleanup_incomplete_listings", max_retries=3)
def cleanup_incomplete_listings(self, max_age_hours: int = 48):
    started = time.perf_counter()
    _task_log("cleanup_incomplete_listings", status="started", started_at=started)
    try:
        result = run_cleanup(max_age_hours=int(max_age_hours))
    except Exception as exc:
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log("cleanup_incomplete_listings", status="retrying", started_at=started, error=str(exc), countdown=countdown)
        raise self.retry(exc=exc, countdown=countdown)
    _task_log("cleanup_incomplete_listings", status="ok", started_at=started, **result)
    return result


@shared_task(bind=True, name="iskahomes.tasks.maintenance_tasks.sweep_subscriptions", max_retries=3)
def sweep_subscriptions(self):
    started = time.perf_counter()
    _task_log("sweep_subscriptions", status="started", started_at=started)
    try:
        result = run_sweep()
    except Exception as exc:
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log("sweep_subscriptions", status="retrying", started_at=started, error=str(exc), countdown=countdown)
        raise self.retry(exc=exc, countdown=countdown)
    _task_log("sweep_subscriptions", status="ok", started_at=started, **result)
    return result
