from __future__ import annotations

import io
import json
import os
import shutil
import tempfile
import time
import unittest

from iskahomes import create_app
from iskahomes.extensions import db
from iskahomes.models import Listing, User
from iskahomes.services.listing_service import estimate_revenue, listing_status_for
from iskahomes.utils.jwt_utils import create_token


class ListingWizardTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        cls.upload_dir = tempfile.mkdtemp(prefix="iska-listings-")
        cls.app = create_app({"TESTING": True, "REALTIME_BACKEND": "memory", "UPLOAD_DIR": cls.upload_dir})
        with cls.app.app_context():
            db.create_all()
            cls.dev_id, cls.dev_token = cls._seed_user("developer")
            cls.agent_id, cls.agent_token = cls._seed_user("agent")
            _, cls.seeker_token = cls._seed_user("property_seeker")
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.upload_dir, ignore_errors=True)
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri

    @staticmethod
    def _seed_user(user_type: str):
        u = User(name=f"{user_type} lister", email=f"{user_type}-{time.time_ns()}@iskahomes.dev", user_type=user_type)
        u.set_password("password123")
        db.session.add(u)
        db.session.commit()
        return int(u.id), create_token(int(u.id), user_type)

    def _auth(self, token):
        return {"Authorization": f"Bearer {token}"}

    def _draft(self, title="East Legon Villa", token=None, **extra):
        payload = {"title": title, "listing_type": "property"}
        payload.update(extra)
        res = self.client.post("/api/listings/steps/basic-info", headers=self._auth(token or self.dev_token), json={"data": payload})
        self.assertEqual(res.status_code, 201, res.get_json())
        return res.get_json()["data"]

    def _step(self, listing_id, step, data, token=None):
        return self.client.put(f"/api/listings/{listing_id}/steps/{step}", headers=self._auth(token or self.dev_token), json={"data": data})

    def _published(self, title, **pricing):
        listing = self._draft(title)
        self._step(listing["id"], "categories", {"purposes": ["Rent"], "categories": ["Residential"]})
        self._step(listing["id"], "location", {"country": "Ghana", "city": "Accra"})
        self._step(listing["id"], "pricing", {"price": 1000, "currency": "ghs", "price_type": "rent", **pricing})
        res = self.client.post(f"/api/listings/{listing['id']}/publish", headers=self._auth(self.dev_token))
        self.assertEqual(res.status_code, 200, res.get_json())
        return res.get_json()["data"]

    def test_basic_info_creates_draft_with_slug(self):
        data = self._draft("Luxury 3-Bed, Cantonments!")
        self.assertEqual(data["listing_status"], "draft")
        self.assertEqual(data["upload_status"], "incomplete")
        self.assertEqual(data["slug"], "luxury-3-bed-cantonments")
        self.assertEqual(data["account_type"], "developer")

        again = self._draft("Luxury 3-Bed, Cantonments!")
        self.assertEqual(again["slug"], "luxury-3-bed-cantonments-2")

    def test_new_listing_must_start_with_basic_info(self):
        res = self.client.post("/api/listings/steps/pricing", headers=self._auth(self.dev_token), json={"data": {"price": 10}})
        self.assertEqual(res.status_code, 400)

        res = self.client.post("/api/listings/steps/basic-info", headers=self._auth(self.dev_token), json={"data": {}})
        self.assertEqual(res.status_code, 400)

    def test_seekers_cannot_create_listings(self):
        res = self.client.post("/api/listings/steps/basic-info", headers=self._auth(self.seeker_token), json={"data": {"title": "x"}})
        self.assertEqual(res.status_code, 403)

    def test_step_updates_and_ownership(self):
        listing = self._draft("Airport Residential Flat")
        res = self._step(listing["id"], "unknown-step", {})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_STEP")

        res = self._step(listing["id"], "location", {"city": "Accra"}, token=self.agent_token)
        self.assertEqual(res.status_code, 403)

        res = self._step(999999, "location", {"city": "Accra"})
        self.assertEqual(res.status_code, 404)

        res = self._step(listing["id"], "pricing", {"price": 2500, "price_type": "rent", "ideal_duration": 12, "currency": "usd"})
        self.assertEqual(res.status_code, 200)
        data = res.get_json()["data"]
        self.assertEqual(data["currency"], "USD")
        self.assertEqual(data["estimated_revenue"], 30000.0)

        res = self._step(listing["id"], "pricing", {"price": -1})
        self.assertEqual(res.status_code, 400)

        res = self._step(listing["id"], "amenities", {"amenities": {"general": ["pool"]}})
        self.assertEqual(res.get_json()["data"]["amenities"], {"general": ["pool"]})

    def test_pricing_status_maps_listing_status(self):
        self.assertEqual(listing_status_for("Rented Out", "active"), "rented")
        self.assertEqual(listing_status_for("Taken", "active"), "sold")
        self.assertEqual(listing_status_for("Available", "sold"), "active")
        self.assertEqual(listing_status_for("Available", "draft"), "draft")
        self.assertEqual(estimate_revenue(100.0, "sale", 12), 100.0)
        self.assertIsNone(estimate_revenue(None, "rent", 12))

    def test_media_step_accepts_multipart_uploads(self):
        listing = self._draft("Media Listing")
        res = self.client.put(
            f"/api/listings/{listing['id']}/steps/media",
            headers=self._auth(self.dev_token),
            data={
                "data": json.dumps({"media": {"virtualTourUrl": "https://tour.example/1"}}),
                "mediaFiles_0": (io.BytesIO(b"\x00" * 32), "a.jpg", "image/jpeg"),
            },
            content_type="multipart/form-data",
        )
        self.assertEqual(res.status_code, 200, res.get_json())
        media = res.get_json()["data"]["media"]
        self.assertEqual(len(media["albums"]), 1)
        self.assertEqual(len(media["albums"][0]["images"]), 1)
        self.assertEqual(media["banner"]["path"], media["albums"][0]["images"][0]["path"])
        self.assertEqual(res.get_json()["data"]["virtual_tour_link"], "https://tour.example/1")

        deleted = self.client.delete(f"/api/listings/{listing['id']}", headers=self._auth(self.dev_token))
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(deleted.get_json()["deletedFiles"], 1)

    def test_publish_requires_core_fields(self):
        listing = self._draft("Incomplete Listing")
        res = self.client.post(f"/api/listings/{listing['id']}/publish", headers=self._auth(self.dev_token))
        self.assertEqual(res.status_code, 400)
        self.assertIn("price", res.get_json()["message"])

        published = self._published("Spintex Townhouse")
        self.assertEqual(published["listing_status"], "active")
        self.assertEqual(published["upload_status"], "completed")

    def test_public_reads_and_search(self):
        first = self._published("Search Alpha Duplex", price=500)
        second = self._published("Search Beta Duplex", price=5000)
        self._draft("Search Gamma Draft")

        res = self.client.get("/api/listings", query_string={"search": "Search", "limit": 1})
        body = res.get_json()
        self.assertEqual(res.status_code, 200)
        self.assertEqual(body["pagination"]["total"], 2)
        self.assertEqual(body["pagination"]["pages"], 2)
        self.assertEqual(len(body["data"]), 1)

        res = self.client.get("/api/listings", query_string={"search": "Search", "price_min": 1000})
        self.assertEqual([r["id"] for r in res.get_json()["data"]], [second["id"]])

        res = self.client.get("/api/listings", query_string={"search": "Search", "purpose": "Rent", "location": "accra"})
        self.assertEqual(res.get_json()["pagination"]["total"], 2)

        res = self.client.get("/api/listings", query_string={"page": "x"})
        self.assertEqual(res.status_code, 400)

        res = self.client.get(f"/api/listings/{first['id']}")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["data"]["views_count"], 1)
        self.assertNotIn("estimated_revenue", res.get_json()["data"])

        res = self.client.get(f"/api/listings/slug/{second['slug']}")
        self.assertEqual(res.get_json()["data"]["id"], second["id"])

    def test_drafts_are_hidden_from_public_reads(self):
        draft = self._draft("Hidden Draft")
        self.assertEqual(self.client.get(f"/api/listings/{draft['id']}").status_code, 404)
        self.assertEqual(self.client.get(f"/api/listings/slug/{draft['slug']}").status_code, 404)

    def test_user_listings_filters_by_status(self):
        self._draft("Agent Draft", token=self.agent_token)
        res = self.client.get("/api/user-listings", headers=self._auth(self.agent_token), query_string={"listing_status": "draft"})
        self.assertEqual(res.status_code, 200)
        rows = res.get_json()["data"]
        self.assertTrue(rows)
        self.assertTrue(all(r["user_id"] == self.agent_id and r["listing_status"] == "draft" for r in rows))

        res = self.client.get("/api/user-listings", headers=self._auth(self.agent_token), query_string={"listing_status": "bogus"})
        self.assertEqual(res.status_code, 400)

    def test_delete_listing(self):
        listing = self._draft("Doomed Listing")
        res = self.client.delete(f"/api/listings/{listing['id']}", headers=self._auth(self.agent_token))
        self.assertEqual(res.status_code, 403)
        res = self.client.delete(f"/api/listings/{listing['id']}", headers=self._auth(self.dev_token))
        self.assertEqual(res.status_code, 200)
        with self.app.app_context():
            self.assertIsNone(db.session.get(Listing, listing["id"]))


if __name__ == "__main__":
    unittest.main()
