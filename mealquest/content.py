from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

from mealquest.db import create_item, create_quest

logger = logging.getLogger(__name__)

SEED_DIR = Path(__file__).resolve().parent / "seed"


def _load_json(path: Path, fallback):
    if not path.exists():
        return fallback
    return json.loads(path.read_text(encoding="utf-8-sig"))


def load_catalog(seed_dir: Path | None = None) -> dict:
    base = seed_dir or SEED_DIR
    return {
        "quests": _load_json(base / "quests.json", []),
        "items": _load_json(base / "items.json", []),
    }


def seed_catalog(conn: sqlite3.Connection, seed_dir: Path | None = None) -> dict:
    """Insert default quests and items whose title/name is not taken yet."""
    catalog = load_catalog(seed_dir)
    known_quests = {r["title"] for r in conn.execute("SELECT title FROM quest").fetchall()}
    known_items = {r["name"] for r in conn.execute("SELECT name FROM item").fetchall()}

    quests = [create_quest(conn, **entry) for entry in catalog["quests"] if entry.get("title") not in known_quests]
    items = [create_item(conn, **entry) for entry in catalog["items"] if entry.get("name") not in known_items]
    logger.info("Seeded %s quest(s) and %s item(s)", len(quests), len(items))
    return {"quests": quests, "items": items}
