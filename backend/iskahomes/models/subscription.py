import json

from iskahomes.extensions import db
from iskahomes.utils.clock import utcnow


SUBSCRIPTION_STATUSES = ("pending", "active", "grace_period", "expired", "cancelled", "suspended")
CURRENT_SUBSCRIPTION_STATUSES = ("pending", "active", "grace_period")
REQUEST_STATUSES = ("pending", "approved", "rejected", "cancelled")


def _iso(value):
    return value.isoformat() if value else None


class SubscriptionPackage(db.Model):
    __tablename__ = "subscription_packages"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    features = db.Column(db.JSON, nullable=True)

    # developers | agents | agencies, NULL for any lister
    user_type = db.Column(db.String(32), nullable=True, index=True)

    local_currency_price = db.Column(db.Float, nullable=False, default=0.0)  # GHS / month
    international_currency_price = db.Column(db.Float, nullable=False, default=0.0)  # USD / month
    duration = db.Column(db.Integer, nullable=True)
    span = db.Column(db.String(16), nullable=True)  # month(s) | year(s)
    ideal_duration = db.Column(db.Integer, nullable=True)  # months
    total_amount_ghs = db.Column(db.Float, nullable=True)
    total_amount_usd = db.Column(db.Float, nullable=True)
    display_text = db.Column(db.String(200), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description or "",
            "features": self.features or [],
            "user_type": self.user_type,
            "local_currency_price": float(self.local_currency_price or 0.0),
            "international_currency_price": float(self.international_currency_price or 0.0),
            "duration": self.duration,
            "span": self.span,
            "ideal_duration": self.ideal_duration,
            "total_amount_ghs": self.total_amount_ghs,
            "total_amount_usd": self.total_amount_usd,
            "display_text": self.display_text or "",
            "is_active": bool(self.is_active),
        }


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    user_type = db.Column(db.String(32), nullable=False)
    package_id = db.Column(db.Integer, db.ForeignKey("subscription_packages.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    paid_status = db.Column(db.String(16), nullable=False, default="unpaid")
    currency = db.Column(db.String(8), nullable=False, default="USD")
    amount = db.Column(db.Float, nullable=False, default=0.0)
    duration_months = db.Column(db.Integer, nullable=False, default=1)

    start_date = db.Column(db.DateTime, nullable=True)
    end_date = db.Column(db.DateTime, nullable=True, index=True)
    grace_period_end_date = db.Column(db.DateTime, nullable=True, index=True)
    activated_at = db.Column(db.DateTime, nullable=True)
    auto_renew = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    package = db.relationship("SubscriptionPackage", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_type": self.user_type,
            "package_id": self.package_id,
            "package": self.package.to_dict() if self.package else None,
            "status": self.status,
            "paid_status": self.paid_status,
            "currency": self.currency,
            "amount": float(self.amount or 0.0),
            "duration_months": int(self.duration_months or 0),
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "grace_period_end_date": _iso(self.grace_period_end_date),
            "activated_at": _iso(self.activated_at),
            "auto_renew": bool(self.auto_renew),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class SubscriptionHistory(db.Model):
    __tablename__ = "subscription_history"

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    user_type = db.Column(db.String(32), nullable=True)

    # created | activated | upgraded | renewed | cancelled | approved | rejected | expired | grace_period
    event_type = db.Column(db.String(24), nullable=False, index=True)
    from_package_id = db.Column(db.Integer, nullable=True)
    to_package_id = db.Column(db.Integer, nullable=True)
    from_status = db.Column(db.String(16), nullable=True)
    to_status = db.Column(db.String(16), nullable=True)
    reason = db.Column(db.Text, nullable=True)

    changed_by = db.Column(db.String(16), nullable=False, default="user")  # user | admin | system
    changed_by_user_id = db.Column(db.Integer, nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)
    event_date = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def metadata_dict(self) -> dict:
        raw = (self.metadata_json or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "user_id": self.user_id,
            "user_type": self.user_type,
            "event_type": self.event_type,
            "from_package_id": self.from_package_id,
            "to_package_id": self.to_package_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "reason": self.reason or "",
            "changed_by": self.changed_by,
            "changed_by_user_id": self.changed_by_user_id,
            "metadata": self.metadata_dict(),
            "event_date": _iso(self.event_date),
        }


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(32), nullable=False, unique=True, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    user_type = db.Column(db.String(32), nullable=True)

    currency = db.Column(db.String(8), nullable=False, default="USD")
    amount = db.Column(db.Float, nullable=False, default=0.0)
    tax_amount = db.Column(db.Float, nullable=False, default=0.0)
    total_amount = db.Column(db.Float, nullable=False, default=0.0)
    payment_status = db.Column(db.String(16), nullable=False, default="pending")  # pending | paid | cancelled

    billing_period_start = db.Column(db.DateTime, nullable=True)
    billing_period_end = db.Column(db.DateTime, nullable=True)
    invoice_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    due_date = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "subscription_id": self.subscription_id,
            "user_id": self.user_id,
            "currency": self.currency,
            "amount": float(self.amount or 0.0),
            "tax_amount": float(self.tax_amount or 0.0),
            "total_amount": float(self.total_amount or 0.0),
            "payment_status": self.payment_status,
            "billing_period_start": _iso(self.billing_period_start),
            "billing_period_end": _iso(self.billing_period_end),
            "invoice_date": _iso(self.invoice_date),
            "due_date": _iso(self.due_date),
            "paid_at": _iso(self.paid_at),
        }


class BillingInformation(db.Model):
    __tablename__ = "billing_information"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    user_type = db.Column(db.String(32), nullable=True)

    billing_name = db.Column(db.String(160), nullable=False)
    billing_email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    address = db.Column(db.Text, nullable=True)
    preferred_payment_method = db.Column(db.String(32), nullable=True)

    is_primary = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "billing_name": self.billing_name,
            "billing_email": self.billing_email or "",
            "phone": self.phone or "",
            "address": self.address or "",
            "preferred_payment_method": self.preferred_payment_method or "",
            "is_primary": bool(self.is_primary),
            "is_active": bool(self.is_active),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class SubscriptionRequest(db.Model):
    __tablename__ = "subscription_requests"

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True)
    previous_subscription_id = db.Column(db.Integer, nullable=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    user_type = db.Column(db.String(32), nullable=True)
    package_id = db.Column(db.Integer, db.ForeignKey("subscription_packages.id"), nullable=False)
    billing_information_id = db.Column(db.Integer, db.ForeignKey("billing_information.id", ondelete="SET NULL"), nullable=True)

    currency = db.Column(db.String(8), nullable=False, default="USD")
    amount = db.Column(db.Float, nullable=False, default=0.0)
    payment_method = db.Column(db.String(32), nullable=True)
    # subscribe | cancellation
    request_type = db.Column(db.String(16), nullable=False, default="subscribe")

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    requested_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    approved_by = db.Column(db.Integer, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    admin_notes = db.Column(db.Text, nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    package = db.relationship("SubscriptionPackage", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "invoice_id": self.invoice_id,
            "previous_subscription_id": self.previous_subscription_id,
            "user_id": self.user_id,
            "user_type": self.user_type,
            "package_id": self.package_id,
            "package": self.package.to_dict() if self.package else None,
            "billing_information_id": self.billing_information_id,
            "currency": self.currency,
            "amount": float(self.amount or 0.0),
            "payment_method": self.payment_method or "",
            "request_type": self.request_type,
            "status": self.status,
            "requested_at": _iso(self.requested_at),
            "approved_at": _iso(self.approved_at),
            "approved_by": self.approved_by,
            "rejection_reason": self.rejection_reason or "",
            "admin_notes": self.admin_notes or "",
            "cancellation_reason": self.cancellation_reason or "",
        }
