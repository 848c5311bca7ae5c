from __future__ import annotations

import os
import time
import unittest

from iskahomes import create_app
from iskahomes.extensions import db
from iskahomes.models import User
from iskahomes.utils.jwt_utils import create_token
from iskahomes.utils.rate_limit import _reset_rate_limit_state_for_tests


class ApiErrorContractTestCase(unittest.TestCase):
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

    def _headers(self, user_type: str, rid: str) -> dict:
        with self.app.app_context():
            u = User(name="Contract Check", email=f"{user_type}-{time.time_ns()}@iskahomes.dev", user_type=user_type)
            u.set_password("password123")
            db.session.add(u)
            db.session.commit()
            token = create_token(int(u.id), user_type)
        return {"Authorization": f"Bearer {token}", "X-Request-ID": rid}

    def _assert_envelope(self, res, status: int, code: str, rid: str):
        self.assertEqual(res.status_code, status)
        body = res.get_json() or {}
        self.assertIs(body.get("ok"), False)
        self.assertEqual(body.get("error"), code)
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(body.get("status"), status)
        self.assertEqual(body.get("trace_id"), rid)
        self.assertEqual(res.headers.get("X-Request-ID"), rid)
        return body

    def test_missing_token_is_401_envelope(self):
        res = self.client.get("/api/agencies/commission-rates", headers={"X-Request-ID": "rid-401"})
        self._assert_envelope(res, 401, "UNAUTHORIZED", "rid-401")

    def test_wrong_account_type_is_403_envelope(self):
        res = self.client.get("/api/agencies/commission-rates", headers=self._headers("agent", "rid-403"))
        self._assert_envelope(res, 403, "FORBIDDEN", "rid-403")

    def test_service_not_found_is_404_envelope(self):
        res = self.client.delete("/api/agencies/commission-rates/999999", headers=self._headers("agency", "rid-404"))
        self._assert_envelope(res, 404, "NOT_FOUND", "rid-404")

    def test_route_validation_is_400_envelope(self):
        res = self.client.get("/api/agencies/commission-rates/resolve", headers=self._headers("agency", "rid-400"))
        self._assert_envelope(res, 400, "VALIDATION_FAILED", "rid-400")

    def test_rate_limited_is_429_envelope(self):
        headers = {"X-Request-ID": "rid-429"}
        for _ in range(10):
            self.client.post("/api/auth/signin", headers=headers, json={})
        res = self.client.post("/api/auth/signin", headers=headers, json={})
        body = self._assert_envelope(res, 429, "RATE_LIMITED", "rid-429")
        self.assertGreaterEqual(int(body.get("retry_after") or 0), 1)
        self.assertTrue(res.headers.get("Retry-After"))

        limiter = self.client.get("/api/health").get_json()["rate_limiter"]
        self.assertTrue(limiter["enabled"])
        self.assertEqual(limiter["memory_hits"], 1)

    def test_global_write_guard_uses_same_envelope(self):
        prev = os.environ.get("RATE_LIMIT_IN_TESTS")
        os.environ["RATE_LIMIT_IN_TESTS"] = "1"
        try:
            headers = {"X-Request-ID": "rid-guard"}
            codes = [self.client.post("/api/no-such-route", headers=headers, json={}).status_code for _ in range(60)]
            res = self.client.post("/api/no-such-route", headers=headers, json={})
        finally:
            if prev is None:
                os.environ.pop("RATE_LIMIT_IN_TESTS", None)
            else:
                os.environ["RATE_LIMIT_IN_TESTS"] = prev
        self.assertEqual(set(codes), {404})
        body = self._assert_envelope(res, 429, "RATE_LIMITED", "rid-guard")
        self.assertGreaterEqual(int(body.get("retry_after_seconds") or 0), 1)


if __name__ == "__main__":
    unittest.main()
