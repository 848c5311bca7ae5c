from __future__ import annotations

import os
import time
import unittest

from iskahomes import create_app
from iskahomes.extensions import db
from iskahomes.models import User
from iskahomes.utils.rate_limit import _reset_rate_limit_state_for_tests


class AuthEndpointsTestCase(unittest.TestCase):
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

    def setUp(self):
        _reset_rate_limit_state_for_tests()

    def _signup(self, **overrides):
        payload = {
            "name": "Ama Mensah",
            "email": f"ama-{time.time_ns()}@iskahomes.dev",
            "password": "secret-pass-1",
            "user_type": "developer",
        }
        payload.update(overrides)
        return payload, self.client.post("/api/auth/signup", json=payload)

    def test_signup_returns_token_and_user(self):
        payload, res = self._signup()
        self.assertEqual(res.status_code, 201)
        body = res.get_json()
        self.assertTrue(body.get("ok"))
        self.assertTrue(body.get("token"))
        self.assertEqual(body["user"]["email"], payload["email"])
        self.assertEqual(body["user"]["user_type"], "developer")
        self.assertTrue(body["user"]["slug"].startswith("ama-mensah"))

        me = self.client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
        self.assertEqual(me.status_code, 200)
        self.assertEqual(me.get_json()["user"]["id"], body["user"]["id"])

    def test_duplicate_email_is_conflict(self):
        payload, res = self._signup()
        self.assertEqual(res.status_code, 201)
        _, again = self._signup(email=payload["email"])
        self.assertEqual(again.status_code, 409)

    def test_same_name_gets_distinct_slugs(self):
        _, first = self._signup(name="Kofi Boateng")
        _, second = self._signup(name="Kofi Boateng")
        self.assertNotEqual(first.get_json()["user"]["slug"], second.get_json()["user"]["slug"])

    def test_signup_validation(self):
        _, short = self._signup(password="short")
        self.assertEqual(short.status_code, 400)
        _, admin = self._signup(user_type="admin")
        self.assertEqual(admin.status_code, 403)
        _, bogus = self._signup(user_type="landlord")
        self.assertEqual(bogus.status_code, 400)

    def test_signin_and_bad_credentials(self):
        payload, _ = self._signup()
        ok = self.client.post("/api/auth/signin", json={"email": payload["email"], "password": payload["password"]})
        self.assertEqual(ok.status_code, 200)
        self.assertTrue(ok.get_json().get("token"))

        bad = self.client.post("/api/auth/signin", json={"email": payload["email"], "password": "wrong-password"})
        self.assertEqual(bad.status_code, 401)
        self.assertEqual(bad.get_json().get("error"), "INVALID_CREDENTIALS")

    def test_change_password(self):
        payload, res = self._signup()
        headers = {"Authorization": f"Bearer {res.get_json()['token']}"}
        wrong = self.client.post("/api/auth/change-password", headers=headers, json={"current_password": "nope-nope", "new_password": "another-pass-2"})
        self.assertEqual(wrong.status_code, 400)
        ok = self.client.post(
            "/api/auth/change-password",
            headers=headers,
            json={"current_password": payload["password"], "new_password": "another-pass-2"},
        )
        self.assertEqual(ok.status_code, 200)
        with self.app.app_context():
            u = User.query.filter_by(email=payload["email"]).first()
            self.assertTrue(u.check_password("another-pass-2"))

    def test_signin_is_rate_limited_per_ip(self):
        codes = []
        for _ in range(11):
            res = self.client.post("/api/auth/signin", json={"email": "nobody@iskahomes.dev", "password": "whatever-1"})
            codes.append(res.status_code)
        self.assertEqual(codes[:10], [401] * 10)
        self.assertEqual(codes[10], 429)


if __name__ == "__main__":
    unittest.main()
