from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from iskahomes.extensions import db
from iskahomes.models import JobRun
from iskahomes.utils.clock import utcnow

logger = logging.getLogger(__name__)


def record_job_run(*, job_name: str, ok: bool, started_at: datetime, error: str | None = None) -> JobRun | None:
    duration_ms = max(0, int((utcnow() - started_at).total_seconds() * 1000))
    try:
        row = JobRun(
            job_name=(job_name or "unknown").strip()[:64],
            ran_at=utcnow(),
            ok=bool(ok),
            duration_ms=duration_ms,
            error=(error or "")[:1000] or None,
        )
        db.session.add(row)
        db.session.commit()
        return row
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("job_run_record_failed job=%s", job_name)
        return None
