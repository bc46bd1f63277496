from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

import mealquest.db as db


class DBIsolatedTestCase(unittest.TestCase):
    """Points ``db.DB_PATH`` at a fresh temporary database for each test."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self._old_db = db.DB_PATH
        db.DB_PATH = Path(self._tmp.name) / "test.sqlite3"
        db.init_db()
        self.conn = db.get_conn()

    def tearDown(self) -> None:
        self.conn.close()
        db.DB_PATH = self._old_db
        self._tmp.cleanup()
