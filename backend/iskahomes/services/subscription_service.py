from __future__ import annotations

import calendar
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from iskahomes.extensions import db
from iskahomes.models import (
    BillingInformation,
    Invoice,
    Subscription,
    SubscriptionHistory,
    SubscriptionPackage,
    SubscriptionRequest,
    User,
)
from iskahomes.models.subscription import CURRENT_SUBSCRIPTION_STATUSES, REQUEST_STATUSES
from iskahomes.services.errors import ServiceError
from iskahomes.utils.auth import LISTER_TYPES
from iskahomes.utils.clock import utcnow
from iskahomes.utils.events import log_event

logger = logging.getLogger(__name__)

FREE_PLAN_MONTHS = 1200
GRACE_PERIOD_DAYS = 7
ADMIN_ACTIONS = ("approve", "reject", "cancel")
PACKAGE_AUDIENCES = {"developer": "developers", "agent": "agents", "agency": "agencies"}


@dataclass(frozen=True)
class PlanQuote:
    package_id: int
    currency: str
    monthly_price: float
    is_free: bool
    duration_months: int
    amount: float
    start_date: datetime
    end_date: datetime
    grace_period_end_date: datetime

    def to_dict(self) -> dict:
        return {
            "package_id": self.package_id,
            "currency": self.currency,
            "monthly_price": self.monthly_price,
            "is_free": self.is_free,
            "duration_months": self.duration_months,
            "amount": self.amount,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "grace_period_end_date": self.grace_period_end_date.isoformat(),
        }


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month addition; the day is clamped to the target month's length."""
    total = value.month - 1 + int(months)
    year = value.year + total // 12
    month = total % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _currency_code(raw) -> str:
    if raw is None:
        return ""
    if isinstance(raw, dict):
        return str(raw.get("code") or "").strip().upper()
    text = str(raw).strip()
    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            return str(parsed.get("code") or "").strip().upper()
    return text.upper()


def resolve_currency(user: User) -> str:
    """GHS for developers based in Ghana (or billing in GHS), USD otherwise."""
    if (user.user_type or "") != "developer":
        return "USD"
    primary = None
    for loc in user.locations():
        if isinstance(loc, dict) and (loc.get("primary_location") is True or loc.get("is_primary") is True):
            primary = loc
            break
    if primary is not None:
        country = str(primary.get("country") or "").strip().lower()
        if country == "ghana" or str(primary.get("currency") or "").strip().upper() == "GHS":
            return "GHS"
        return "USD"
    if "GHS" in _currency_code(user.default_currency):
        return "GHS"
    return "USD"


def is_free_package(package: SubscriptionPackage, monthly_price: float) -> bool:
    return (package.name or "").strip().lower() == "free" or float(monthly_price) == 0.0


def package_duration_months(package: SubscriptionPackage) -> int:
    if package.ideal_duration and int(package.ideal_duration) > 0:
        return int(package.ideal_duration)
    if package.duration and package.span:
        span = package.span.strip().lower()
        if span in ("month", "months"):
            return int(package.duration)
        if span in ("year", "years"):
            return int(package.duration) * 12
    return 1


def quote_plan(package: SubscriptionPackage, currency: str, *, now: datetime | None = None) -> PlanQuote:
    start = now or utcnow()
    monthly = float(package.local_currency_price or 0.0) if currency == "GHS" else float(package.international_currency_price or 0.0)
    free = is_free_package(package, monthly)
    if free:
        months = FREE_PLAN_MONTHS
        amount = 0.0
    else:
        months = package_duration_months(package)
        total = package.total_amount_ghs if currency == "GHS" else package.total_amount_usd
        amount = float(total) if total else monthly * months
    end = add_months(start, months)
    return PlanQuote(
        package_id=int(package.id),
        currency=currency,
        monthly_price=monthly,
        is_free=free,
        duration_months=months,
        amount=round(amount, 2),
        start_date=start,
        end_date=end,
        grace_period_end_date=end + timedelta(days=GRACE_PERIOD_DAYS),
    )


def package_matches_user(package: SubscriptionPackage, user: User) -> bool:
    return not package.user_type or package.user_type == PACKAGE_AUDIENCES.get(user.user_type or "")


def current_subscription(user: User) -> Subscription | None:
    return (
        Subscription.query.filter(
            Subscription.user_id == int(user.id),
            Subscription.status.in_(CURRENT_SUBSCRIPTION_STATUSES),
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )


def record_history(
    subscription: Subscription | None,
    *,
    user_id: int,
    user_type: str | None,
    event_type: str,
    from_package_id: int | None = None,
    to_package_id: int | None = None,
    from_status: str | None = None,
    to_status: str | None = None,
    reason: str | None = None,
    changed_by: str = "user",
    changed_by_user_id: int | None = None,
    metadata: dict | None = None,
    event_date: datetime | None = None,
) -> SubscriptionHistory:
    row = SubscriptionHistory(
        subscription_id=subscription.id if subscription is not None else None,
        user_id=int(user_id),
        user_type=user_type,
        event_type=event_type,
        from_package_id=from_package_id,
        to_package_id=to_package_id,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        changed_by=changed_by,
        changed_by_user_id=changed_by_user_id,
        metadata_json=json.dumps(metadata, separators=(",", ":"), default=str) if metadata else None,
        event_date=event_date or utcnow(),
    )
    db.session.add(row)
    return row


def generate_invoice_number(now: datetime | None = None) -> str:
    """``INV-<year>-<6 digits>``, the digits taken from the millisecond clock."""
    stamp = now or utcnow()
    seq = int(time.time() * 1000) % 1_000_000
    for _ in range(1_000_000):
        number = f"INV-{stamp.year}-{seq:06d}"
        if not Invoice.query.filter_by(invoice_number=number).first():
            return number
        seq = (seq + 1) % 1_000_000
    raise ServiceError("INVOICE_NUMBER_EXHAUSTED", "No invoice numbers left for this year", 500)


def _create_invoice(subscription: Subscription, quote: PlanQuote, *, paid: bool) -> Invoice:
    invoice = Invoice(
        invoice_number=generate_invoice_number(quote.start_date),
        subscription_id=subscription.id,
        user_id=subscription.user_id,
        user_type=subscription.user_type,
        currency=quote.currency,
        amount=quote.amount,
        tax_amount=0.0,
        total_amount=quote.amount,
        payment_status="paid" if paid else "pending",
        billing_period_start=quote.start_date,
        billing_period_end=quote.end_date,
        invoice_date=quote.start_date,
        due_date=quote.end_date,
        paid_at=quote.start_date if paid else None,
    )
    db.session.add(invoice)
    db.session.flush()
    return invoice


def primary_billing(user: User) -> BillingInformation | None:
    return BillingInformation.query.filter_by(user_id=int(user.id), is_primary=True, is_active=True).first()


def _apply_quote(sub: Subscription, quote: PlanQuote, status: str) -> None:
    sub.package_id = quote.package_id
    sub.status = status
    sub.currency = quote.currency
    sub.amount = quote.amount
    sub.duration_months = quote.duration_months
    sub.start_date = quote.start_date
    sub.end_date = quote.end_date
    sub.grace_period_end_date = quote.grace_period_end_date
    sub.activated_at = quote.start_date if status == "active" else None
    sub.paid_status = "paid" if status == "active" and not quote.is_free else ("free" if quote.is_free else "unpaid")
    sub.updated_at = utcnow()


def subscribe(user: User, package_id, *, payment_method: str | None = None) -> dict:
    if (user.user_type or "") not in LISTER_TYPES:
        raise ServiceError("FORBIDDEN", "Subscriptions are available to developers, agents and agencies", 403)
    try:
        pid = int(package_id)
    except (TypeError, ValueError):
        raise ServiceError("VALIDATION_FAILED", "package_id is required", 400)
    package = SubscriptionPackage.query.filter_by(id=pid, is_active=True).first()
    if package is None:
        raise ServiceError("NOT_FOUND", "Package not found or inactive", 404)
    if not package_matches_user(package, user):
        raise ServiceError("VALIDATION_FAILED", "This package is not available for your user type", 400)

    currency = resolve_currency(user)
    quote = quote_plan(package, currency)
    method = (payment_method or "").strip().lower()
    status = "active" if quote.is_free or method == "free" else "pending"

    existing = current_subscription(user)
    if existing is not None:
        from_package, from_status = existing.package_id, existing.status
        sub = existing
        _apply_quote(sub, quote, status)
        changed = from_package != pid
        record_history(
            sub,
            user_id=user.id,
            user_type=user.user_type,
            event_type="upgraded" if changed else "renewed",
            from_package_id=from_package,
            to_package_id=pid,
            from_status=from_status,
            to_status=status,
            reason="User changed subscription plan" if changed else "User renewed subscription",
            changed_by_user_id=user.id,
        )
    else:
        sub = Subscription(user_id=int(user.id), user_type=user.user_type, auto_renew=False)
        _apply_quote(sub, quote, status)
        db.session.add(sub)
        db.session.flush()
        record_history(
            sub,
            user_id=user.id,
            user_type=user.user_type,
            event_type="activated" if status == "active" else "created",
            to_package_id=pid,
            to_status=status,
            reason="User selected free plan" if quote.is_free else "User selected subscription package",
            changed_by_user_id=user.id,
        )
    db.session.flush()

    invoice = None
    if not quote.is_free:
        invoice = _create_invoice(sub, quote, paid=status == "active")

    request_row = None
    if method == "manual" and not quote.is_free:
        billing = primary_billing(user)
        request_row = SubscriptionRequest(
            subscription_id=sub.id,
            invoice_id=invoice.id if invoice else None,
            user_id=int(user.id),
            user_type=user.user_type,
            package_id=pid,
            billing_information_id=billing.id if billing else None,
            currency=quote.currency,
            amount=quote.amount,
            payment_method=(billing.preferred_payment_method if billing and billing.preferred_payment_method else "other"),
            request_type="subscribe",
            status="pending",
        )
        db.session.add(request_row)
        db.session.flush()

    log_event(
        "subscription_selected",
        actor_user_id=user.id,
        subject_type="subscription",
        subject_id=sub.id,
        metadata={"package_id": pid, "status": status, "currency": quote.currency, "amount": quote.amount},
    )
    db.session.commit()

    if quote.is_free:
        message = "Free plan activated successfully!"
    elif method == "manual":
        message = "Subscription request created. Please submit payment proof for admin review."
    else:
        message = "Subscription created successfully. Payment pending admin confirmation."
    return {
        "subscription": sub,
        "invoice": invoice,
        "subscription_request": request_row,
        "message": message,
    }


def _free_package_for(user: User) -> SubscriptionPackage | None:
    rows = SubscriptionPackage.query.filter_by(is_active=True).order_by(SubscriptionPackage.id.asc()).all()
    for package in rows:
        if not package_matches_user(package, user):
            continue
        if (package.name or "").strip().lower() == "free":
            return package
    for package in rows:
        if package_matches_user(package, user) and float(package.international_currency_price or 0) == 0 and float(package.local_currency_price or 0) == 0:
            return package
    return None


def request_cancellation(user: User, *, reason: str | None = None) -> SubscriptionRequest:
    sub = current_subscription(user)
    if sub is None:
        raise ServiceError("NOT_FOUND", "No active subscription found", 404)
    free = _free_package_for(user)
    if free is None:
        raise ServiceError("NOT_FOUND", "Free plan not found", 404)
    currency = resolve_currency(user)
    row = SubscriptionRequest(
        subscription_id=None,
        previous_subscription_id=sub.id,
        user_id=int(user.id),
        user_type=user.user_type,
        package_id=free.id,
        currency=currency,
        amount=0.0,
        payment_method="free",
        request_type="cancellation",
        status="pending",
        cancellation_reason=(reason or "").strip()[:2000] or None,
    )
    db.session.add(row)
    record_history(
        sub,
        user_id=user.id,
        user_type=user.user_type,
        event_type="cancelled",
        from_package_id=sub.package_id,
        to_package_id=free.id,
        from_status=sub.status,
        to_status=sub.status,
        reason=row.cancellation_reason or "User requested cancellation",
        changed_by_user_id=user.id,
    )
    db.session.flush()
    log_event("subscription_cancellation_requested", actor_user_id=user.id, subject_type="subscription", subject_id=sub.id)
    db.session.commit()
    return row


def list_requests(user: User) -> list[SubscriptionRequest]:
    return (
        SubscriptionRequest.query.filter_by(user_id=int(user.id))
        .order_by(SubscriptionRequest.requested_at.desc(), SubscriptionRequest.id.desc())
        .all()
    )


def cancel_own_request(user: User, request_id) -> SubscriptionRequest:
    row = SubscriptionRequest.query.filter_by(id=int(request_id), user_id=int(user.id)).first()
    if row is None:
        raise ServiceError("NOT_FOUND", "Request not found", 404)
    if row.status != "pending":
        raise ServiceError("VALIDATION_FAILED", "Only pending requests can be cancelled", 400)
    row.status = "cancelled"
    if row.invoice_id:
        invoice = db.session.get(Invoice, row.invoice_id)
        if invoice is not None and invoice.payment_status == "pending":
            invoice.payment_status = "cancelled"
    db.session.commit()
    return row


def _activate_for_request(req: SubscriptionRequest, admin: User, now: datetime) -> Subscription:
    user = db.session.get(User, req.user_id)
    package = db.session.get(SubscriptionPackage, req.package_id)
    if user is None or package is None:
        raise ServiceError("NOT_FOUND", "Package not found", 404)
    quote = quote_plan(package, req.currency or resolve_currency(user), now=now)
    metadata = {
        "request_id": req.id,
        "previous_subscription_id": req.previous_subscription_id,
        "currency": quote.currency,
        "amount": quote.amount,
        "duration_months": quote.duration_months,
    }

    if req.request_type == "cancellation":
        previous = db.session.get(Subscription, req.previous_subscription_id) if req.previous_subscription_id else None
        if previous is not None and previous.status in CURRENT_SUBSCRIPTION_STATUSES:
            from_status = previous.status
            previous.status = "cancelled"
            record_history(
                previous,
                user_id=user.id,
                user_type=user.user_type,
                event_type="cancelled",
                from_package_id=previous.package_id,
                to_package_id=package.id,
                from_status=from_status,
                to_status="cancelled",
                reason=req.cancellation_reason or "Admin approved cancellation",
                changed_by="admin",
                changed_by_user_id=admin.id,
                metadata=metadata,
            )
        sub = Subscription(user_id=user.id, user_type=user.user_type, auto_renew=False)
        _apply_quote(sub, quote, "active")
        db.session.add(sub)
        db.session.flush()
        record_history(
            sub,
            user_id=user.id,
            user_type=user.user_type,
            event_type="activated",
            to_package_id=package.id,
            to_status="active",
            reason="Moved to free plan after cancellation",
            changed_by="admin",
            changed_by_user_id=admin.id,
            metadata=metadata,
        )
        return sub

    existing = db.session.get(Subscription, req.subscription_id) if req.subscription_id else None
    if existing is None or existing.status not in CURRENT_SUBSCRIPTION_STATUSES:
        existing = current_subscription(user)
    if existing is not None:
        from_package, from_status = existing.package_id, existing.status
        _apply_quote(existing, quote, "active")
        record_history(
            existing,
            user_id=user.id,
            user_type=user.user_type,
            event_type="approved",
            from_package_id=from_package,
            to_package_id=package.id,
            from_status=from_status,
            to_status="active",
            reason="Admin approved subscription request",
            changed_by="admin",
            changed_by_user_id=admin.id,
            metadata=metadata,
        )
        sub = existing
    else:
        sub = Subscription(user_id=user.id, user_type=user.user_type, auto_renew=False)
        _apply_quote(sub, quote, "active")
        db.session.add(sub)
        db.session.flush()
        record_history(
            sub,
            user_id=user.id,
            user_type=user.user_type,
            event_type="activated",
            to_package_id=package.id,
            to_status="active",
            reason="Admin approved subscription request",
            changed_by="admin",
            changed_by_user_id=admin.id,
            metadata=metadata,
        )

    invoice = db.session.get(Invoice, req.invoice_id) if req.invoice_id else None
    if invoice is None and not quote.is_free:
        invoice = _create_invoice(sub, quote, paid=True)
        req.invoice_id = invoice.id
    if invoice is not None:
        invoice.subscription_id = sub.id
        invoice.payment_status = "paid"
        invoice.paid_at = now
    return sub


def review_request(admin: User, request_id, action: str, *, rejection_reason: str | None = None, admin_notes: str | None = None) -> SubscriptionRequest:
    verb = (action or "").strip().lower()
    if verb not in ADMIN_ACTIONS:
        raise ServiceError("VALIDATION_FAILED", "Invalid action. Must be approve, reject, or cancel", 400)
    try:
        rid = int(request_id)
    except (TypeError, ValueError):
        raise ServiceError("VALIDATION_FAILED", "request_id is required", 400)
    req = db.session.get(SubscriptionRequest, rid)
    if req is None:
        raise ServiceError("NOT_FOUND", "Request not found", 404)
    if req.status != "pending":
        raise ServiceError("VALIDATION_FAILED", "Request has already been processed", 400)

    now = utcnow()
    if admin_notes is not None:
        req.admin_notes = admin_notes.strip()[:2000] or None

    if verb == "approve":
        sub = _activate_for_request(req, admin, now)
        req.subscription_id = sub.id
        req.status = "approved"
        req.approved_at = now
        req.approved_by = admin.id
    elif verb == "reject":
        req.status = "rejected"
        req.rejection_reason = (rejection_reason or "").strip()[:2000] or None
        record_history(
            db.session.get(Subscription, req.subscription_id) if req.subscription_id else None,
            user_id=req.user_id,
            user_type=req.user_type,
            event_type="rejected",
            to_package_id=req.package_id,
            reason=req.rejection_reason or "Admin rejected subscription request",
            changed_by="admin",
            changed_by_user_id=admin.id,
            metadata={"request_id": req.id},
        )
    else:
        req.status = "cancelled"

    if verb != "approve" and req.invoice_id:
        invoice = db.session.get(Invoice, req.invoice_id)
        if invoice is not None and invoice.payment_status == "pending":
            invoice.payment_status = "cancelled"

    log_event(
        f"subscription_request_{req.status}",
        actor_user_id=admin.id,
        subject_type="subscription_request",
        subject_id=req.id,
        metadata={"user_id": req.user_id, "package_id": req.package_id},
    )
    db.session.commit()
    return req


def admin_list_requests(*, status: str | None = None) -> list[SubscriptionRequest]:
    q = SubscriptionRequest.query
    if status:
        if status not in REQUEST_STATUSES:
            raise ServiceError("VALIDATION_FAILED", "Invalid status", 400)
        q = q.filter(SubscriptionRequest.status == status)
    return q.order_by(SubscriptionRequest.requested_at.desc(), SubscriptionRequest.id.desc()).all()


def history_for(*, user_id: int | None = None) -> list[SubscriptionHistory]:
    q = SubscriptionHistory.query
    if user_id is not None:
        q = q.filter(SubscriptionHistory.user_id == int(user_id))
    return q.order_by(SubscriptionHistory.event_date.desc(), SubscriptionHistory.id.desc()).all()


def sweep_subscriptions(now: datetime | None = None) -> dict:
    """active past end_date -> grace_period; grace_period past its end -> expired."""
    moment = now or utcnow()
    to_grace = Subscription.query.filter(
        Subscription.status == "active",
        Subscription.end_date.isnot(None),
        Subscription.end_date < moment,
    ).all()
    for sub in to_grace:
        sub.status = "grace_period"
        record_history(
            sub,
            user_id=sub.user_id,
            user_type=sub.user_type,
            event_type="grace_period",
            from_package_id=sub.package_id,
            to_package_id=sub.package_id,
            from_status="active",
            to_status="grace_period",
            reason="Subscription period ended",
            changed_by="system",
            event_date=moment,
        )

    to_expire = Subscription.query.filter(
        Subscription.status == "grace_period",
        Subscription.grace_period_end_date.isnot(None),
        Subscription.grace_period_end_date < moment,
    ).all()
    for sub in to_expire:
        sub.status = "expired"
        record_history(
            sub,
            user_id=sub.user_id,
            user_type=sub.user_type,
            event_type="expired",
            from_package_id=sub.package_id,
            to_package_id=sub.package_id,
            from_status="grace_period",
            to_status="expired",
            reason="Grace period ended",
            changed_by="system",
            event_date=moment,
        )
    db.session.commit()
    return {"gracePeriod": len(to_grace), "expired": len(to_expire)}
