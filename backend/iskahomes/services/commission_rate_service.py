from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from iskahomes.extensions import db
from iskahomes.models import CommissionRate, User
from iskahomes.services.errors import ServiceError
from iskahomes.utils.clock import utcnow
from iskahomes.utils.events import log_event


@dataclass(frozen=True)
class CommissionRateInput:
    id: int | None
    purpose_id: int
    purpose_name: str
    type_id: int | None
    type_name: str
    commission_rate: float

    @property
    def scope(self) -> tuple[int, int | None]:
        return self.purpose_id, self.type_id


@dataclass(frozen=True)
class CommissionResolution:
    rate_id: int | None
    purpose_id: int | None
    type_id: int | None
    commission_rate: float
    amount: float | None
    commission_amount: float | None
    source: str

    def to_dict(self) -> dict:
        return {
            "rate_id": self.rate_id,
            "purpose_id": self.purpose_id,
            "type_id": self.type_id,
            "commission_rate": float(self.commission_rate),
            "amount": self.amount,
            "commission_amount": self.commission_amount,
            "source": self.source,
        }


def _ref(value, label: str, *, required: bool) -> tuple[int | None, str]:
    if value is None or value == "":
        if required:
            raise ServiceError("VALIDATION_FAILED", f"{label} is required", 400)
        return None, ""
    if not isinstance(value, dict):
        raise ServiceError("VALIDATION_FAILED", f"{label} must be an object with id and name", 400)
    raw_id = value.get("id")
    try:
        ref_id = int(raw_id)
    except (TypeError, ValueError):
        raise ServiceError("VALIDATION_FAILED", f"{label}.id must be an integer", 400)
    return ref_id, str(value.get("name") or "").strip()[:80]


def parse_rate(value) -> float:
    if isinstance(value, bool):
        raise ServiceError("VALIDATION_FAILED", "commission_rate must be a number between 0 and 100", 400)
    try:
        rate = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ServiceError("VALIDATION_FAILED", "commission_rate must be a number between 0 and 100", 400)
    if not rate.is_finite() or rate < 0 or rate > 100:
        raise ServiceError("VALIDATION_FAILED", "commission_rate must be a number between 0 and 100", 400)
    return float(rate)


def parse_rate_input(payload) -> CommissionRateInput:
    if not isinstance(payload, dict):
        raise ServiceError("VALIDATION_FAILED", "Each commission rate must be an object", 400)
    purpose_id, purpose_name = _ref(payload.get("purpose"), "purpose", required=True)
    type_id, type_name = _ref(payload.get("type"), "type", required=False)
    raw_id = payload.get("id")
    try:
        rate_id = int(raw_id) if raw_id not in (None, "") else None
    except (TypeError, ValueError):
        raise ServiceError("VALIDATION_FAILED", "id must be an integer", 400)
    return CommissionRateInput(
        id=rate_id,
        purpose_id=int(purpose_id),
        purpose_name=purpose_name,
        type_id=type_id,
        type_name=type_name,
        commission_rate=parse_rate(payload.get("commission_rate")),
    )


def list_rates(agency: User) -> list[CommissionRate]:
    return (
        CommissionRate.query.filter_by(agency_id=int(agency.id))
        .order_by(CommissionRate.purpose_id.asc(), CommissionRate.type_id.asc(), CommissionRate.id.asc())
        .all()
    )


def _scope_query(agency_id: int, purpose_id: int, type_id: int | None):
    q = CommissionRate.query.filter(
        CommissionRate.agency_id == agency_id,
        CommissionRate.purpose_id == purpose_id,
    )
    if type_id is None:
        return q.filter(CommissionRate.type_id.is_(None))
    return q.filter(CommissionRate.type_id == type_id)


def _apply(row: CommissionRate, item: CommissionRateInput) -> None:
    row.purpose_id = item.purpose_id
    row.purpose_name = item.purpose_name or row.purpose_name
    row.type_id = item.type_id
    row.type_name = item.type_name or (row.type_name if item.type_id is not None else None)
    row.commission_rate = item.commission_rate
    row.updated_at = utcnow()


def upsert_rate(agency: User, payload) -> tuple[CommissionRate, bool]:
    item = parse_rate_input(payload)
    agency_id = int(agency.id)
    clash = _scope_query(agency_id, item.purpose_id, item.type_id).first()

    if item.id is not None:
        row = CommissionRate.query.filter_by(id=item.id, agency_id=agency_id).first()
        if row is None:
            raise ServiceError("NOT_FOUND", "Commission rate not found", 404)
        if clash is not None and int(clash.id) != int(row.id):
            raise ServiceError("CONFLICT", "A rate for this purpose and type already exists", 409)
        _apply(row, item)
        created = False
    elif clash is not None:
        row = clash
        _apply(row, item)
        created = False
    else:
        row = CommissionRate(agency_id=agency_id)
        _apply(row, item)
        db.session.add(row)
        created = True

    db.session.flush()
    log_event(
        "commission_rate_saved",
        actor_user_id=agency_id,
        subject_type="commission_rate",
        subject_id=row.id,
        metadata={"purpose_id": item.purpose_id, "type_id": item.type_id, "rate": item.commission_rate},
    )
    db.session.commit()
    return row, created


def replace_rates(agency: User, payload) -> list[CommissionRate]:
    """Bulk save: the submitted list becomes the agency's full rate table."""
    if not isinstance(payload, list):
        raise ServiceError("VALIDATION_FAILED", "rates must be a list", 400)
    items = [parse_rate_input(p) for p in payload]
    seen = set()
    for item in items:
        if item.scope in seen:
            raise ServiceError("VALIDATION_FAILED", "Duplicate purpose/type combination", 400)
        seen.add(item.scope)

    agency_id = int(agency.id)
    existing = {(r.purpose_id, r.type_id): r for r in CommissionRate.query.filter_by(agency_id=agency_id).all()}
    for scope, row in existing.items():
        if scope not in seen:
            db.session.delete(row)
    db.session.flush()

    for item in items:
        row = existing.get(item.scope)
        if row is None:
            row = CommissionRate(agency_id=agency_id)
            db.session.add(row)
        _apply(row, item)

    db.session.flush()
    log_event("commission_rates_replaced", actor_user_id=agency_id, subject_type="agency", subject_id=agency_id, metadata={"count": len(items)})
    db.session.commit()
    return list_rates(agency)


def delete_rate(agency: User, rate_id: int) -> None:
    row = CommissionRate.query.filter_by(id=int(rate_id), agency_id=int(agency.id)).first()
    if row is None:
        raise ServiceError("NOT_FOUND", "Commission rate not found", 404)
    db.session.delete(row)
    db.session.commit()


def commission_amount(amount, rate) -> float:
    value = (Decimal(str(amount)) * Decimal(str(rate))) / Decimal("100")
    return float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def resolve_rate(agency_id: int, *, purpose_id: int | None, type_id: int | None = None, amount=None) -> CommissionResolution:
    """Exact purpose+type beats purpose-only, which beats no rate at all."""
    row = None
    source = "none"
    if purpose_id is not None:
        if type_id is not None:
            row = _scope_query(int(agency_id), int(purpose_id), int(type_id)).first()
            if row is not None:
                source = "purpose_type"
        if row is None:
            row = _scope_query(int(agency_id), int(purpose_id), None).first()
            if row is not None:
                source = "purpose"
    rate = float(row.commission_rate) if row is not None else 0.0

    amount_value = None
    commission_value = None
    if amount not in (None, ""):
        try:
            parsed = Decimal(str(amount).strip())
        except (InvalidOperation, ValueError):
            raise ServiceError("VALIDATION_FAILED", "amount must be a number", 400)
        if not parsed.is_finite():
            raise ServiceError("VALIDATION_FAILED", "amount must be a finite number", 400)
        amount_value = float(parsed)
        commission_value = commission_amount(amount_value, rate)

    return CommissionResolution(
        rate_id=int(row.id) if row is not None else None,
        purpose_id=purpose_id,
        type_id=type_id,
        commission_rate=rate,
        amount=amount_value,
        commission_amount=commission_value,
        source=source,
    )
