from iskahomes.extensions import db
from iskahomes.utils.clock import utcnow


LEAD_STATUSES = ("new", "contacted", "qualified", "closed")


class Lead(db.Model):
    __tablename__ = "leads"

    id = db.Column(db.Integer, primary_key=True)
    seeker_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    lister_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    lister_type = db.Column(db.String(32), nullable=False)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id", ondelete="SET NULL"), nullable=True, index=True)

    context_type = db.Column(db.String(16), nullable=False, default="listing")  # listing | profile
    status = db.Column(db.String(16), nullable=False, default="new", index=True)
    message = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seeker_id": self.seeker_id,
            "lister_id": self.lister_id,
            "lister_type": self.lister_type,
            "listing_id": self.listing_id,
            "context_type": self.context_type,
            "status": self.status,
            "message": self.message or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
