from iskahomes.extensions import db
from iskahomes.utils.clock import utcnow


LISTING_STATUSES = ("draft", "active", "sold", "rented", "archived")
PUBLIC_LISTING_STATUSES = ("active", "sold", "rented")


def _iso(value):
    return value.isoformat() if value else None


class Listing(db.Model):
    __tablename__ = "listings"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    account_type = db.Column(db.String(32), nullable=False, default="developer")
    development_id = db.Column(db.Integer, nullable=True, index=True)

    title = db.Column(db.String(200), nullable=False, default="")
    slug = db.Column(db.String(240), nullable=True, unique=True, index=True)
    description = db.Column(db.Text, nullable=True)
    size = db.Column(db.String(64), nullable=True)

    # Free text shown to buyers: Available, Sold, Rented Out, Taken ...
    status = db.Column(db.String(64), nullable=True)
    listing_type = db.Column(db.String(16), nullable=False, default="property", index=True)
    listing_status = db.Column(db.String(16), nullable=False, default="draft", index=True)
    upload_status = db.Column(db.String(16), nullable=False, default="incomplete", index=True)

    purposes = db.Column(db.JSON, nullable=True)
    types = db.Column(db.JSON, nullable=True)
    categories = db.Column(db.JSON, nullable=True)
    listing_types = db.Column(db.JSON, nullable=True)
    specifications = db.Column(db.JSON, nullable=True)

    country = db.Column(db.String(80), nullable=True)
    state = db.Column(db.String(80), nullable=True)
    city = db.Column(db.String(80), nullable=True)
    town = db.Column(db.String(80), nullable=True)
    full_address = db.Column(db.String(400), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    price = db.Column(db.Float, nullable=True, index=True)
    currency = db.Column(db.String(8), nullable=True)
    price_type = db.Column(db.String(16), nullable=True, index=True)
    duration = db.Column(db.String(32), nullable=True)
    ideal_duration = db.Column(db.Integer, nullable=True)
    time_span = db.Column(db.String(32), nullable=True)

    amenities = db.Column(db.JSON, nullable=True)
    media = db.Column(db.JSON, nullable=True)
    model_3d = db.Column(db.JSON, nullable=True)
    virtual_tour_link = db.Column(db.String(1024), nullable=True)
    floor_plan = db.Column(db.JSON, nullable=True)
    additional_files = db.Column(db.JSON, nullable=True)
    additional_information = db.Column(db.Text, nullable=True)

    estimated_revenue = db.Column(db.Float, nullable=True)
    views_count = db.Column(db.Integer, nullable=False, default=0)
    last_modified_by = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def summary_dict(self) -> dict:
        media = self.media or {}
        banner = media.get("banner") if isinstance(media, dict) else None
        return {
            "id": self.id,
            "title": self.title or "",
            "slug": self.slug or "",
            "price": self.price,
            "currency": self.currency or "",
            "city": self.city or "",
            "listing_type": self.listing_type,
            "banner": banner,
        }

    def to_dict(self, *, include_private: bool = False) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "account_type": self.account_type,
            "development_id": self.development_id,
            "title": self.title or "",
            "slug": self.slug or "",
            "description": self.description or "",
            "size": self.size,
            "status": self.status,
            "listing_type": self.listing_type,
            "listing_status": self.listing_status,
            "upload_status": self.upload_status,
            "purposes": self.purposes or [],
            "types": self.types or [],
            "categories": self.categories or [],
            "listing_types": self.listing_types or {},
            "specifications": self.specifications or {},
            "country": self.country,
            "state": self.state,
            "city": self.city,
            "town": self.town,
            "full_address": self.full_address,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "price": self.price,
            "currency": self.currency,
            "price_type": self.price_type,
            "duration": self.duration,
            "ideal_duration": self.ideal_duration,
            "time_span": self.time_span,
            "amenities": self.amenities or {},
            "media": self.media or {},
            "model_3d": self.model_3d,
            "virtual_tour_link": self.virtual_tour_link,
            "floor_plan": self.floor_plan,
            "additional_files": self.additional_files or [],
            "additional_information": self.additional_information or "",
            "views_count": int(self.views_count or 0),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_private:
            data["estimated_revenue"] = self.estimated_revenue
            data["last_modified_by"] = self.last_modified_by
        return data
