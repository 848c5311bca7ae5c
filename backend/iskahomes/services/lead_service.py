from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from iskahomes.extensions import db
from iskahomes.models import Lead, Listing, User
from iskahomes.models.lead import LEAD_STATUSES
from iskahomes.services.errors import ServiceError
from iskahomes.utils.auth import LISTER_TYPES
from iskahomes.utils.clock import utcnow
from iskahomes.utils.events import log_event

logger = logging.getLogger(__name__)


def create_lead(seeker: User, *, listing_id: int | None = None, lister_id: int | None = None, message: str | None = None) -> tuple[Lead, bool]:
    """Create a lead or reuse the open one for the same seeker/lister/context."""
    listing = None
    if listing_id is not None:
        listing = db.session.get(Listing, int(listing_id))
        if listing is None:
            raise ServiceError("NOT_FOUND", "Listing not found", 404)
        lister = db.session.get(User, int(listing.user_id))
    elif lister_id is not None:
        lister = db.session.get(User, int(lister_id))
    else:
        raise ServiceError("VALIDATION_FAILED", "listingId or listerId is required", 400)

    if lister is None or (lister.user_type or "") not in LISTER_TYPES:
        raise ServiceError("NOT_FOUND", "Lister not found", 404)
    if int(lister.id) == int(seeker.id):
        raise ServiceError("VALIDATION_FAILED", "Cannot create a lead for yourself", 400)

    q = Lead.query.filter(
        Lead.seeker_id == int(seeker.id),
        Lead.lister_id == int(lister.id),
        Lead.status != "closed",
    )
    if listing is not None:
        q = q.filter(Lead.listing_id == int(listing.id))
    else:
        q = q.filter(Lead.listing_id.is_(None))
    existing = q.order_by(Lead.id.desc()).first()
    if existing:
        return existing, False

    lead = Lead(
        seeker_id=int(seeker.id),
        lister_id=int(lister.id),
        lister_type=lister.user_type,
        listing_id=int(listing.id) if listing is not None else None,
        context_type="listing" if listing is not None else "profile",
        status="new",
        message=(message or "").strip()[:2000] or None,
    )
    db.session.add(lead)
    db.session.flush()
    log_event("lead_created", actor_user_id=seeker.id, subject_type="lead", subject_id=lead.id)
    db.session.commit()
    return lead, True


def list_leads(lister: User, *, status: str | None = None) -> list[Lead]:
    q = Lead.query.filter(Lead.lister_id == int(lister.id))
    if status:
        if status not in LEAD_STATUSES:
            raise ServiceError("VALIDATION_FAILED", "Invalid status", 400)
        q = q.filter(Lead.status == status)
    return q.order_by(Lead.created_at.desc(), Lead.id.desc()).all()


def promote_leads_on_contact(*, lister_id: int, seeker_id: int, listing_id: int | None) -> int:
    """Move matching ``new`` leads to ``contacted``. Never raises."""
    try:
        q = Lead.query.filter(
            Lead.lister_id == int(lister_id),
            Lead.seeker_id == int(seeker_id),
            Lead.status == "new",
        )
        if listing_id is not None:
            q = q.filter(Lead.listing_id == int(listing_id))
        else:
            q = q.filter(Lead.listing_id.is_(None))
        rows = q.all()
        now = utcnow()
        for lead in rows:
            lead.status = "contacted"
            lead.updated_at = now
        if rows:
            db.session.commit()
        return len(rows)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("lead_promotion_failed lister=%s seeker=%s", lister_id, seeker_id)
        return 0
