import shutil
import sqlite3
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from metadata import ImageStore, cleanup_old_files


class TestImageStore(unittest.TestCase):

    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.store = ImageStore(self.tmp / "db" / "images.db")

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def add(self, **overrides):
        fields = dict(
            original_name="cat.jpg",
            original_path="uploads/1-cat.jpg",
            mimetype="image/jpeg",
            size_bytes=1234,
            processed_name="cartoon-x.png",
            processed_path="processed/cartoon-x.png",
            processed_url="http://localhost:5050/static/processed/cartoon-x.png",
        )
        fields.update(overrides)
        return self.store.create(**fields)

    def test_create_and_get(self):
        record = self.add()
        self.assertRegex(record["id"], r"^[0-9a-f]{32}$")
        self.assertEqual(record["style"], "cartoon")
        self.assertEqual(record["created_at"], record["updated_at"])

        loaded = self.store.get(record["id"])
        self.assertEqual(loaded, record)

    def test_get_missing(self):
        self.assertIsNone(self.store.get("nope"))

    def test_unknown_fields_are_rejected(self):
        with self.assertRaises(ValueError):
            self.add(colour="blue")

    def test_required_fields(self):
        with self.assertRaises(sqlite3.IntegrityError):
            self.store.create(original_name="cat.jpg", size_bytes=1)

    def test_schema_survives_reopen(self):
        record = self.add(style="pixar_3d")
        reopened = ImageStore(self.store.db_path)
        self.assertEqual(reopened.get(record["id"])["style"], "pixar_3d")

    def test_older_than_and_delete(self):
        old = self.add()
        cutoff = datetime.now(timezone.utc) + timedelta(seconds=1)
        self.assertEqual([r["id"] for r in self.store.older_than(cutoff)], [old["id"]])
        self.assertEqual(self.store.older_than(cutoff - timedelta(days=1)), [])

        self.store.delete(old["id"])
        self.assertIsNone(self.store.get(old["id"]))


class TestCleanup(unittest.TestCase):

    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp())
        self.store = ImageStore(self.tmp / "images.db")
        for rel in ("uploads/1-cat.jpg", "processed/cartoon-x.png"):
            path = self.tmp / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"x")
        self.record = self.store.create(
            original_name="cat.jpg",
            original_path="uploads/1-cat.jpg",
            mimetype="image/jpeg",
            size_bytes=1,
            processed_name="cartoon-x.png",
            processed_path="processed/cartoon-x.png",
        )

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_recent_records_are_kept(self):
        self.assertEqual(cleanup_old_files(self.store, self.tmp, max_age_hours=1), 0)
        self.assertIsNotNone(self.store.get(self.record["id"]))
        self.assertTrue((self.tmp / "uploads/1-cat.jpg").exists())

    def test_old_records_and_files_are_removed(self):
        later = datetime.now(timezone.utc) + timedelta(days=8)
        with patch("metadata._now", return_value=later):
            removed = cleanup_old_files(self.store, self.tmp)

        self.assertEqual(removed, 1)
        self.assertIsNone(self.store.get(self.record["id"]))
        self.assertFalse((self.tmp / "uploads/1-cat.jpg").exists())
        self.assertFalse((self.tmp / "processed/cartoon-x.png").exists())

    def test_missing_files_are_skipped(self):
        (self.tmp / "processed/cartoon-x.png").unlink()
        later = datetime.now(timezone.utc) + timedelta(days=8)
        with patch("metadata._now", return_value=later):
            self.assertEqual(cleanup_old_files(self.store, self.tmp), 1)


if __name__ == "__main__":
    unittest.main()
