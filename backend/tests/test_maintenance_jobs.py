from __future__ import annotations

import os
import shutil
import tempfile
import time
import unittest
from datetime import timedelta

from iskahomes import create_app
from iskahomes.extensions import db
from iskahomes.jobs.cleanup_runner import JOB_NAME as CLEANUP_JOB
from iskahomes.jobs.cleanup_runner import cleanup_incomplete_listings
from iskahomes.jobs.subscription_runner import JOB_NAME as SWEEP_JOB
from iskahomes.jobs.subscription_runner import sweep_subscriptions
from iskahomes.models import JobRun, Listing, PlatformEvent, User
from iskahomes.services.storage import get_object_store
from iskahomes.tasks.maintenance_tasks import _retry_countdown
from iskahomes.utils.clock import utcnow


class MaintenanceJobsTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        cls.upload_dir = tempfile.mkdtemp(prefix="iska-jobs-")
        cls.app = create_app({"TESTING": True, "REALTIME_BACKEND": "memory", "UPLOAD_DIR": cls.upload_dir})
        with cls.app.app_context():
            db.create_all()
            u = User(name="Draft Owner", email=f"owner-{time.time_ns()}@iskahomes.dev", user_type="developer")
            u.set_password("password123")
            db.session.add(u)
            db.session.commit()
            cls.owner_id = int(u.id)

    @classmethod
    def tearDownClass(cls):
        shutil.rmtree(cls.upload_dir, ignore_errors=True)
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri

    def _listing(self, *, age_hours, status="draft", upload="incomplete", media=None):
        row = Listing(
            user_id=self.owner_id,
            title="Draft",
            listing_status=status,
            upload_status=upload,
            media=media,
            created_at=utcnow() - timedelta(hours=age_hours),
        )
        db.session.add(row)
        db.session.commit()
        return int(row.id)

    def test_cleanup_removes_stale_drafts_and_files(self):
        with self.app.app_context():
            store = get_object_store()
            stored = store.put("listings-1/media/old.jpg", b"jpeg-bytes", "image/jpeg")
            stale = self._listing(age_hours=72, media={"albums": [{"images": [stored.to_dict()]}], "banner": stored.to_dict()})
            fresh = self._listing(age_hours=1)
            published = self._listing(age_hours=72, status="active", upload="completed")

            result = cleanup_incomplete_listings(48)

            self.assertEqual(result, {"deletedCount": 1, "deletedFiles": 1})
            self.assertIsNone(db.session.get(Listing, stale))
            self.assertIsNotNone(db.session.get(Listing, fresh))
            self.assertIsNotNone(db.session.get(Listing, published))
            self.assertFalse(os.path.exists(os.path.join(self.upload_dir, "listings-1", "media", "old.jpg")))

            run = JobRun.query.filter_by(job_name=CLEANUP_JOB).order_by(JobRun.id.desc()).first()
            self.assertTrue(run.ok)
            self.assertIsNotNone(PlatformEvent.query.filter_by(event_type="incomplete_listings_cleaned").first())

    def test_sweep_runner_records_job_run(self):
        with self.app.app_context():
            result = sweep_subscriptions(utcnow())
            self.assertEqual(set(result), {"gracePeriod", "expired"})
            self.assertEqual(JobRun.query.filter_by(job_name=SWEEP_JOB, ok=True).count(), 1)

    def test_cli_cleanup_command(self):
        runner = self.app.test_cli_runner()
        result = runner.invoke(args=["cleanup-drafts", "--max-age-hours", "24"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("cleanup_drafts_ok", result.output)

    def test_retry_countdown_is_capped(self):
        self.assertEqual(_retry_countdown(0), 5)
        self.assertEqual(_retry_countdown(2), 20)
        self.assertEqual(_retry_countdown(10), 900)


if __name__ == "__main__":
    unittest.main()
