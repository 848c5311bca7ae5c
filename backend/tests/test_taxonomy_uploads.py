from __future__ import annotations

import io
import os
import shutil
import tempfile
import time
import unittest

from PIL import Image

from iskahomes import create_app
from iskahomes.extensions import db
from iskahomes.models import User
from iskahomes.services.errors import ServiceError
from iskahomes.services.storage import normalize_object_path
from iskahomes.utils.jwt_utils import create_token


def _png_bytes(width=4, height=3) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


class TaxonomyAndUploadsTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        cls.upload_dir = tempfile.mkdtemp(prefix="iska-uploads-")
        cls.app = create_app({"TESTING": True, "REALTIME_BACKEND": "memory", "UPLOAD_DIR": cls.upload_dir})
        with cls.app.app_context():
            db.create_all()
            cls.admin_token = cls._seed_user("admin")
            cls.dev_token = cls._seed_user("developer")
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.upload_dir, ignore_errors=True)
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri

    @staticmethod
    def _seed_user(user_type: str) -> str:
        u = User(name=f"{user_type} user", email=f"{user_type}-{time.time_ns()}@iskahomes.dev", user_type=user_type)
        u.set_password("password123")
        db.session.add(u)
        db.session.commit()
        return create_token(int(u.id), user_type)

    def _auth(self, token):
        return {"Authorization": f"Bearer {token}"}

    def test_admin_creates_taxonomy_entries(self):
        res = self.client.post("/api/admin/property-purposes", headers=self._auth(self.admin_token), json={"name": "Rent"})
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.get_json()["data"]["slug"], "rent")

        dup = self.client.post("/api/admin/property-purposes", headers=self._auth(self.admin_token), json={"name": "rent"})
        self.assertEqual(dup.status_code, 409)

        self.client.post("/api/admin/property-types", headers=self._auth(self.admin_token), json={"name": "Apartment"})
        tax = self.client.get("/api/property-taxonomy").get_json()
        self.assertIn("Rent", [p["name"] for p in tax["purposes"]])
        self.assertIn("Apartment", [t["name"] for t in tax["types"]])

    def test_non_admin_cannot_create_taxonomy(self):
        res = self.client.post("/api/admin/property-types", headers=self._auth(self.dev_token), json={"name": "Villa"})
        self.assertEqual(res.status_code, 403)

    def test_upload_serve_and_delete_image(self):
        res = self.client.post(
            "/api/upload",
            headers=self._auth(self.dev_token),
            data={"file": (io.BytesIO(_png_bytes()), "front.png", "image/png"), "folder": "listings", "subfolder": "media"},
            content_type="multipart/form-data",
        )
        self.assertEqual(res.status_code, 201)
        body = res.get_json()
        self.assertTrue(body["path"].startswith("listings/media/"))
        self.assertTrue(body["url"].startswith("/api/uploads/listings/media/"))
        self.assertEqual((body.get("width"), body.get("height")), (4, 3))
        self.assertEqual(body["originalName"], "front.png")

        served = self.client.get(body["url"])
        self.assertEqual(served.status_code, 200)
        self.assertEqual(served.data, _png_bytes())
        served.close()

        deleted = self.client.delete("/api/upload", headers=self._auth(self.dev_token), json={"filePath": body["path"]})
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(deleted.get_json()["deleted"], 1)
        self.assertEqual(self.client.get(body["url"]).status_code, 404)

    def test_upload_rejects_unknown_type(self):
        res = self.client.post(
            "/api/upload",
            headers=self._auth(self.dev_token),
            data={"file": (io.BytesIO(b"#!/bin/sh"), "run.sh", "text/x-shellscript")},
            content_type="multipart/form-data",
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_FILE_TYPE")

    def test_delete_rejects_path_traversal(self):
        res = self.client.delete("/api/upload", headers=self._auth(self.dev_token), json={"filePath": "../secrets.txt"})
        self.assertEqual(res.status_code, 400)

    def test_normalize_object_path(self):
        self.assertEqual(normalize_object_path("a//b\\c.png"), "a/b/c.png")
        for bad in ("", "/etc/passwd", "a/../b", "C:/x.png"):
            with self.assertRaises(ServiceError):
                normalize_object_path(bad)


if __name__ == "__main__":
    unittest.main()
