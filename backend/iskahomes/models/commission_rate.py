from iskahomes.extensions import db
from iskahomes.utils.clock import utcnow


class CommissionRate(db.Model):
    __tablename__ = "commission_rates"
    __table_args__ = (
        db.UniqueConstraint("agency_id", "purpose_id", "type_id", name="uq_commission_rates_scope"),
    )

    id = db.Column(db.Integer, primary_key=True)
    agency_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    purpose_id = db.Column(db.Integer, nullable=False)
    purpose_name = db.Column(db.String(80), nullable=True)
    # NULL type applies to every property type under the purpose.
    type_id = db.Column(db.Integer, nullable=True)
    type_name = db.Column(db.String(80), nullable=True)

    commission_rate = db.Column(db.Float, nullable=False, default=0.0)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "agency_id": self.agency_id,
            "purpose": {"id": self.purpose_id, "name": self.purpose_name or ""},
            "type": {"id": self.type_id, "name": self.type_name or ""} if self.type_id is not None else None,
            "commission_rate": float(self.commission_rate or 0.0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
