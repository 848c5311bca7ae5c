from __future__ import annotations

import logging
from datetime import datetime

from iskahomes.extensions import db
from iskahomes.services import subscription_service
from iskahomes.utils.clock import utcnow
from iskahomes.utils.job_runs import record_job_run

logger = logging.getLogger(__name__)

JOB_NAME = "sweep_subscriptions"


def sweep_subscriptions(now: datetime | None = None) -> dict:
    started = utcnow()
    try:
        result = subscription_service.sweep_subscriptions(now=now)
    except Exception as exc:
        db.session.rollback()
        logger.exception("sweep_subscriptions_failed")
        record_job_run(job_name=JOB_NAME, ok=False, started_at=started, error=str(exc))
        raise
    record_job_run(job_name=JOB_NAME, ok=True, started_at=started)
    return result
