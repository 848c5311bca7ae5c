from __future__ import annotations

import logging
from datetime import datetime, timedelta

from iskahomes.extensions import db
from iskahomes.models import Listing
from iskahomes.services.listing_service import remove_listing_files
from iskahomes.utils.clock import utcnow
from iskahomes.utils.events import log_event
from iskahomes.utils.job_runs import record_job_run

logger = logging.getLogger(__name__)

JOB_NAME = "cleanup_incomplete_listings"


def cleanup_incomplete_listings(max_age_hours: int = 48, *, now: datetime | None = None) -> dict:
    """Delete abandoned wizard drafts and their stored files."""
    started = utcnow()
    cutoff = (now or started) - timedelta(hours=max(1, int(max_age_hours)))
    try:
        rows = Listing.query.filter(
            Listing.listing_status == "draft",
            Listing.upload_status == "incomplete",
            Listing.created_at < cutoff,
        ).all()
        deleted_files = 0
        deleted_ids = []
        for listing in rows:
            deleted_files += remove_listing_files(listing)
            deleted_ids.append(int(listing.id))
            db.session.delete(listing)
        if deleted_ids:
            log_event(
                "incomplete_listings_cleaned",
                subject_type="listing",
                metadata={"ids": deleted_ids[:200], "files": deleted_files, "cutoff": cutoff},
            )
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        logger.exception("cleanup_incomplete_listings_failed")
        record_job_run(job_name=JOB_NAME, ok=False, started_at=started, error=str(exc))
        raise
    record_job_run(job_name=JOB_NAME, ok=True, started_at=started)
    return {"deletedCount": len(deleted_ids), "deletedFiles": deleted_files}
