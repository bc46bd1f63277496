from __future__ import annotations

import json
import unittest
from pathlib import Path
from unittest.mock import patch

import mealquest.db as db
from mealquest import content
from support import DBIsolatedTestCase


class ContentLoadingTests(unittest.TestCase):
    def test_load_json_reads_files_as_utf8(self) -> None:
        with patch.object(Path, "exists", return_value=True), patch.object(
            Path,
            "read_text",
            autospec=True,
            return_value='[{"title": "ok"}]',
        ) as mock_read:
            data = content._load_json(Path("dummy.json"), [])

        self.assertEqual(data, [{"title": "ok"}])
        _, kwargs = mock_read.call_args
        self.assertEqual(kwargs.get("encoding"), "utf-8-sig")

    def test_missing_file_returns_fallback(self) -> None:
        self.assertEqual(content._load_json(Path("/nonexistent/quests.json"), []), [])

    def test_bundled_catalog_is_well_formed(self) -> None:
        catalog = content.load_catalog()
        self.assertTrue(catalog["quests"])
        self.assertTrue(catalog["items"])
        for item in catalog["items"]:
            self.assertIn(item["type"], db.ITEM_TYPES)
        for quest in catalog["quests"]:
            self.assertIn(quest["frequency"], db.FREQUENCIES)


class SeedCatalogTests(DBIsolatedTestCase):
    def test_seed_is_idempotent(self) -> None:
        first = content.seed_catalog(self.conn)
        second = content.seed_catalog(self.conn)

        self.assertGreater(len(first["quests"]), 0)
        self.assertEqual(second, {"quests": [], "items": []})

    def test_seed_skips_existing_names(self) -> None:
        seed_dir = Path(self._tmp.name) / "seed"
        seed_dir.mkdir()
        (seed_dir / "quests.json").write_text(json.dumps([{"title": "Kept", "score_reward": 1}]), encoding="utf-8")
        (seed_dir / "items.json").write_text(json.dumps([{"name": "Apple", "price": 2}]), encoding="utf-8")
        db.create_item(self.conn, name="Apple", price=9)

        result = content.seed_catalog(self.conn, seed_dir)

        self.assertEqual([q["title"] for q in result["quests"]], ["Kept"])
        self.assertEqual(result["items"], [])


if __name__ == "__main__":
    unittest.main()
