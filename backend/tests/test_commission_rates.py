from __future__ import annotations

import os
import time
import unittest

from iskahomes import create_app
from iskahomes.extensions import db
from iskahomes.models import User
from iskahomes.services.commission_rate_service import commission_amount, parse_rate
from iskahomes.services.errors import ServiceError
from iskahomes.utils.jwt_utils import create_token

BASE = "/api/agencies/commission-rates"


class CommissionRatesTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        cls.app = create_app({"TESTING": True, "REALTIME_BACKEND": "memory"})
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri

    def _token(self, user_type="agency"):
        with self.app.app_context():
            u = User(name="Prime Realty", email=f"{user_type}-{time.time_ns()}@iskahomes.dev", user_type=user_type)
            u.set_password("password123")
            db.session.add(u)
            db.session.commit()
            return create_token(int(u.id), user_type)

    def _auth(self, token):
        return {"Authorization": f"Bearer {token}"}

    def test_upsert_creates_then_updates_same_scope(self):
        token = self._token()
        body = {"purpose": {"id": 1, "name": "Sale"}, "type": {"id": 4, "name": "Apartment"}, "commission_rate": "5"}
        res = self.client.post(BASE, headers=self._auth(token), json=body)
        self.assertEqual(res.status_code, 201)
        first = res.get_json()["data"]
        self.assertTrue(res.get_json()["created"])

        body["commission_rate"] = 6.5
        res = self.client.post(BASE, headers=self._auth(token), json=body)
        self.assertEqual(res.status_code, 200)
        self.assertFalse(res.get_json()["created"])
        self.assertEqual(res.get_json()["data"]["id"], first["id"])

        rows = self.client.get(BASE, headers=self._auth(token)).get_json()["data"]
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["commission_rate"], 6.5)

    def test_update_by_id_cannot_collide_with_other_scope(self):
        token = self._token()
        a = self.client.post(BASE, headers=self._auth(token), json={"purpose": {"id": 1, "name": "Sale"}, "commission_rate": 3}).get_json()["data"]
        self.client.post(BASE, headers=self._auth(token), json={"purpose": {"id": 2, "name": "Rent"}, "commission_rate": 8})
        res = self.client.post(BASE, headers=self._auth(token), json={"id": a["id"], "purpose": {"id": 2, "name": "Rent"}, "commission_rate": 4})
        self.assertEqual(res.status_code, 409)

    def test_rejects_invalid_rates(self):
        token = self._token()
        for rate in (-1, 101, "abc", True, None):
            res = self.client.post(BASE, headers=self._auth(token), json={"purpose": {"id": 1, "name": "Sale"}, "commission_rate": rate})
            self.assertEqual(res.status_code, 400, rate)
        res = self.client.post(BASE, headers=self._auth(token), json={"commission_rate": 2})
        self.assertEqual(res.status_code, 400)

    def test_replace_rejects_duplicates_and_replaces_table(self):
        token = self._token()
        self.client.post(BASE, headers=self._auth(token), json={"purpose": {"id": 9, "name": "Lease"}, "commission_rate": 1})
        dup = [
            {"purpose": {"id": 1, "name": "Sale"}, "commission_rate": 2},
            {"purpose": {"id": 1, "name": "Sale"}, "commission_rate": 3},
        ]
        res = self.client.put(BASE, headers=self._auth(token), json={"rates": dup})
        self.assertEqual(res.status_code, 400)

        table = [
            {"purpose": {"id": 1, "name": "Sale"}, "commission_rate": 2},
            {"purpose": {"id": 1, "name": "Sale"}, "type": {"id": 4, "name": "Apartment"}, "commission_rate": 3},
        ]
        res = self.client.put(BASE, headers=self._auth(token), json={"rates": table})
        self.assertEqual(res.status_code, 200)
        rows = res.get_json()["data"]
        self.assertEqual({(r["purpose"]["id"], (r["type"] or {}).get("id")) for r in rows}, {(1, None), (1, 4)})

    def test_resolve_prefers_exact_scope(self):
        token = self._token()
        self.client.put(BASE, headers=self._auth(token), json={"rates": [
            {"purpose": {"id": 1, "name": "Sale"}, "commission_rate": 2},
            {"purpose": {"id": 1, "name": "Sale"}, "type": {"id": 4, "name": "Apartment"}, "commission_rate": 3},
        ]})

        exact = self.client.get(f"{BASE}/resolve", headers=self._auth(token), query_string={"purpose_id": 1, "type_id": 4, "amount": "1000"}).get_json()["data"]
        self.assertEqual(exact["source"], "purpose_type")
        self.assertEqual(exact["commission_amount"], 30.0)

        fallback = self.client.get(f"{BASE}/resolve", headers=self._auth(token), query_string={"purpose_id": 1, "type_id": 7}).get_json()["data"]
        self.assertEqual(fallback["source"], "purpose")
        self.assertEqual(fallback["commission_rate"], 2.0)
        self.assertIsNone(fallback["commission_amount"])

        none = self.client.get(f"{BASE}/resolve", headers=self._auth(token), query_string={"purpose_id": 5, "amount": 100}).get_json()["data"]
        self.assertEqual(none["source"], "none")
        self.assertEqual(none["commission_amount"], 0.0)

        res = self.client.get(f"{BASE}/resolve", headers=self._auth(token))
        self.assertEqual(res.status_code, 400)

    def test_resolve_rejects_non_finite_amounts(self):
        token = self._token()
        self.client.post(BASE, headers=self._auth(token), json={"purpose": {"id": 1, "name": "Sale"}, "commission_rate": 2})
        for raw in ("inf", "-Infinity", "nan", "abc"):
            res = self.client.get(f"{BASE}/resolve", headers=self._auth(token), query_string={"purpose_id": 1, "amount": raw})
            self.assertEqual(res.status_code, 400, raw)
            self.assertEqual(res.get_json()["error"], "VALIDATION_FAILED")

    def test_delete_and_ownership(self):
        owner = self._token()
        other = self._token()
        row = self.client.post(BASE, headers=self._auth(owner), json={"purpose": {"id": 3, "name": "Short stay"}, "commission_rate": 10}).get_json()["data"]
        self.assertEqual(self.client.delete(f"{BASE}/{row['id']}", headers=self._auth(other)).status_code, 404)
        self.assertEqual(self.client.delete(f"{BASE}/{row['id']}", headers=self._auth(owner)).status_code, 200)
        self.assertEqual(self.client.get(BASE, headers=self._auth(owner)).get_json()["data"], [])

    def test_non_agency_is_forbidden(self):
        token = self._token("developer")
        self.assertEqual(self.client.get(BASE, headers=self._auth(token)).status_code, 403)

    def test_amount_rounding_is_half_up(self):
        self.assertEqual(commission_amount(0.5, 5), 0.03)
        self.assertEqual(commission_amount(1234.5, 2.5), 30.86)
        self.assertEqual(parse_rate("12.5"), 12.5)
        with self.assertRaises(ServiceError):
            parse_rate("NaN")


if __name__ == "__main__":
    unittest.main()
