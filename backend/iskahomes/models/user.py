import json

from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from iskahomes.extensions import db
from iskahomes.utils.clock import utcnow


class User(db.Model, UserMixin):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)

    phone = db.Column(db.String(32), nullable=True)
    profile_image_url = db.Column(db.String(1024), nullable=True)

    password_hash = db.Column(db.String(255), nullable=False)

    # property_seeker | developer | agent | agency | admin
    user_type = db.Column(db.String(32), nullable=False, default="property_seeker", index=True)
    slug = db.Column(db.String(160), nullable=True, unique=True, index=True)

    # JSON list of {country, currency, is_primary, ...}
    company_locations = db.Column(db.Text, nullable=True)
    default_currency = db.Column(db.String(8), nullable=True)

    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def set_password(self, raw_password: str) -> None:
        self.password_hash = generate_password_hash(raw_password)

    def check_password(self, raw_password: str) -> bool:
        return check_password_hash(self.password_hash, raw_password)

    def locations(self) -> list:
        raw = (self.company_locations or "").strip()
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError:
            return []
        return data if isinstance(data, list) else []

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name or "",
            "email": self.email,
            "profile_image": self.profile_image_url or None,
            "slug": self.slug or "",
            "type": self.user_type or "property_seeker",
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "profile_image_url": self.profile_image_url or "",
            "user_type": self.user_type or "property_seeker",
            "slug": self.slug or "",
            "company_locations": self.locations(),
            "default_currency": self.default_currency or None,
            "is_verified": bool(self.is_verified),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
