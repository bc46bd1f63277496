from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from mealquest.config import get_settings
from mealquest.errors import Ineligible, NotFound

logger = logging.getLogger(__name__)

DB_PATH: Path = get_settings().db_path

ROLES = ("USER", "ADMIN")
FREQUENCIES = ("ONCE", "DAILY")
ITEM_TYPES = ("CONSUMABLE", "EQUIPMENT", "SPECIAL")

QUEST_COLUMNS = ("title", "description", "kind", "score_reward", "requirement", "frequency", "is_active", "start_date", "end_date")
ITEM_COLUMNS = ("name", "description", "price", "type", "effect", "duration", "cooldown", "magnitude", "is_active")


def get_conn() -> sqlite3.Connection:
    # Autocommit mode: writes are grouped explicitly with transaction().
    conn = sqlite3.connect(DB_PATH, isolation_level=None, check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    # Fixed width so stored timestamps compare correctly as text.
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def resolve_zone(tz_name: str) -> tzinfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", tz_name)
        return timezone.utc


def local_day(moment: datetime, tz_name: str) -> str:
    return moment.astimezone(resolve_zone(tz_name)).date().isoformat()


def previous_day(day: str) -> str:
    return (datetime.fromisoformat(day).date() - timedelta(days=1)).isoformat()


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    cols = conn.execute(f"PRAGMA table_info({table})").fetchall()
    if column not in {c[1] for c in cols}:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def init_db() -> None:
    conn = get_conn()
    try:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'USER' CHECK (role IN ('USER', 'ADMIN')),
                is_banned INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS app_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                clock_offset_seconds INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS quest (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                kind TEXT NOT NULL DEFAULT 'GENERAL',
                score_reward INTEGER NOT NULL CHECK (score_reward >= 0),
                requirement INTEGER NOT NULL DEFAULT 1 CHECK (requirement >= 1),
                frequency TEXT NOT NULL DEFAULT 'ONCE' CHECK (frequency IN ('ONCE', 'DAILY')),
                is_active INTEGER NOT NULL DEFAULT 1,
                start_date TEXT,
                end_date TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_quest (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                quest_id INTEGER NOT NULL REFERENCES quest(id) ON DELETE CASCADE,
                cycle_key TEXT NOT NULL,
                progress INTEGER NOT NULL DEFAULT 0 CHECK (progress >= 0),
                is_completed INTEGER NOT NULL DEFAULT 0,
                completed_at TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (user_id, quest_id, cycle_key)
            );

            CREATE TABLE IF NOT EXISTS score (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
                points INTEGER NOT NULL DEFAULT 0 CHECK (points >= 0),
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS score_transaction (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                score_id INTEGER NOT NULL REFERENCES score(id) ON DELETE CASCADE,
                amount INTEGER NOT NULL,
                reason TEXT NOT NULL,
                source_type TEXT NOT NULL,
                source_id INTEGER,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS item (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                price INTEGER NOT NULL CHECK (price >= 0),
                type TEXT NOT NULL CHECK (type IN ('CONSUMABLE', 'EQUIPMENT', 'SPECIAL')),
                effect TEXT,
                duration INTEGER NOT NULL DEFAULT 0 CHECK (duration >= 0),
                cooldown INTEGER NOT NULL DEFAULT 0 CHECK (cooldown >= 0),
                magnitude REAL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_item (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                item_id INTEGER NOT NULL REFERENCES item(id) ON DELETE CASCADE,
                quantity INTEGER NOT NULL DEFAULT 0 CHECK (quantity >= 0),
                last_used TEXT,
                UNIQUE (user_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS active_effect (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                item_id INTEGER NOT NULL REFERENCES item(id) ON DELETE CASCADE,
                source_user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                effect TEXT NOT NULL,
                magnitude REAL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS item_use_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                item_id INTEGER NOT NULL,
                target_user_id INTEGER,
                effect_result TEXT NOT NULL,
                used_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS item_purchase_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                item_id INTEGER NOT NULL,
                price INTEGER NOT NULL,
                purchased_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS meal (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                meal_type TEXT NOT NULL CHECK (meal_type IN ('BREAKFAST', 'LUNCH', 'DINNER', 'SNACK')),
                meal_day TEXT NOT NULL,
                food_name TEXT,
                image_url TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (user_id, meal_type, meal_day)
            );

            CREATE TABLE IF NOT EXISTS streak (
                user_id INTEGER PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
                current_streak INTEGER NOT NULL DEFAULT 0 CHECK (current_streak >= 0),
                longest_streak INTEGER NOT NULL DEFAULT 0,
                last_meal_day TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_active_effect_user ON active_effect (user_id, expires_at);
            CREATE INDEX IF NOT EXISTS idx_score_transaction_score ON score_transaction (score_id);
            """
        )
        _ensure_column(conn, "users", "is_banned", "INTEGER NOT NULL DEFAULT 0")
        conn.execute("INSERT INTO app_state (id, clock_offset_seconds) VALUES (1, 0) ON CONFLICT(id) DO NOTHING")
    finally:
        conn.close()


def current_time(conn: sqlite3.Connection) -> datetime:
    row = conn.execute("SELECT clock_offset_seconds FROM app_state WHERE id = 1").fetchone()
    offset = row["clock_offset_seconds"] if row else 0
    return utc_now() + timedelta(seconds=offset)


def advance_clock(conn: sqlite3.Connection, seconds: int) -> datetime:
    conn.execute(
        "UPDATE app_state SET clock_offset_seconds = clock_offset_seconds + ? WHERE id = 1",
        (max(0, int(seconds)),),
    )
    return current_time(conn)


def get_schedule_context() -> dict:
    tz_name = get_settings().timezone
    conn = get_conn()
    try:
        local = current_time(conn).astimezone(resolve_zone(tz_name))
    finally:
        conn.close()
    return {
        "local_date": local.date().isoformat(),
        "local_hour": local.hour,
        "local_minute": local.minute,
        "timezone": tz_name,
    }


def _bool_fields(row: sqlite3.Row | None, *fields: str) -> dict | None:
    if row is None:
        return None
    out = dict(row)
    for field in fields:
        if field in out:
            out[field] = bool(out[field])
    return out


def create_user(conn: sqlite3.Connection, name: str, role: str = "USER") -> dict:
    role = role.upper()
    if role not in ROLES:
        raise Ineligible(f"Unknown role: {role}")
    cur = conn.execute(
        "INSERT INTO users (name, role, created_at) VALUES (?, ?, ?)",
        (name.strip() or "Anonymous", role, to_iso(utc_now())),
    )
    return get_user(conn, cur.lastrowid)


def user_row(row: sqlite3.Row | None) -> dict | None:
    return _bool_fields(row, "is_banned")


def find_user(conn: sqlite3.Connection, user_id: int) -> dict | None:
    return user_row(conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone())


def get_user(conn: sqlite3.Connection, user_id: int) -> dict:
    user = find_user(conn, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


def list_users(conn: sqlite3.Connection) -> list[dict]:
    return [user_row(r) for r in conn.execute("SELECT * FROM users ORDER BY id").fetchall()]


def set_banned(conn: sqlite3.Connection, user_id: int, banned: bool) -> dict:
    user = get_user(conn, user_id)
    if banned and user["role"] == "ADMIN":
        raise Ineligible("Cannot ban an admin user")
    conn.execute("UPDATE users SET is_banned = ? WHERE id = ?", (int(banned), user_id))
    logger.info("User %s %s", user_id, "banned" if banned else "unbanned")
    return get_user(conn, user_id)


def delete_user(conn: sqlite3.Connection, user_id: int) -> None:
    """Remove a user; quests, scores, inventory, effects, meals and streak cascade."""
    get_user(conn, user_id)
    conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
    logger.info("Deleted user %s", user_id)


def quest_row(row: sqlite3.Row | None) -> dict | None:
    return _bool_fields(row, "is_active")


def find_quest(conn: sqlite3.Connection, quest_id: int) -> dict | None:
    return quest_row(conn.execute("SELECT * FROM quest WHERE id = ?", (quest_id,)).fetchone())


def get_quest(conn: sqlite3.Connection, quest_id: int) -> dict:
    quest = find_quest(conn, quest_id)
    if quest is None:
        raise NotFound("Quest not found")
    return quest


def _validate_quest_fields(fields: dict) -> dict:
    clean = {k: v for k, v in fields.items() if k in QUEST_COLUMNS}
    if "frequency" in clean:
        clean["frequency"] = str(clean["frequency"]).upper()
        if clean["frequency"] not in FREQUENCIES:
            raise Ineligible(f"Unknown quest frequency: {clean['frequency']}")
    if "kind" in clean:
        clean["kind"] = str(clean["kind"]).upper()
    for key in ("start_date", "end_date"):
        if isinstance(clean.get(key), datetime):
            clean[key] = to_iso(clean[key])
    if "is_active" in clean:
        clean["is_active"] = int(bool(clean["is_active"]))
    return clean


def create_quest(conn: sqlite3.Connection, **fields) -> dict:
    clean = _validate_quest_fields(fields)
    if not clean.get("title"):
        raise Ineligible("Quest title is required")
    stamp = to_iso(utc_now())
    clean.setdefault("score_reward", 0)
    clean.update(created_at=stamp, updated_at=stamp)
    cols = list(clean)
    cur = conn.execute(
        f"INSERT INTO quest ({','.join(cols)}) VALUES ({','.join('?' for _ in cols)})",
        tuple(clean[c] for c in cols),
    )
    return get_quest(conn, cur.lastrowid)


def update_quest(conn: sqlite3.Connection, quest_id: int, **fields) -> dict:
    get_quest(conn, quest_id)
    clean = _validate_quest_fields(fields)
    if clean:
        clean["updated_at"] = to_iso(utc_now())
        assignments = ", ".join(f"{col} = ?" for col in clean)
        conn.execute(f"UPDATE quest SET {assignments} WHERE id = ?", (*clean.values(), quest_id))
    return get_quest(conn, quest_id)


def delete_quest(conn: sqlite3.Connection, quest_id: int) -> None:
    get_quest(conn, quest_id)
    conn.execute("DELETE FROM quest WHERE id = ?", (quest_id,))
    logger.info("Deleted quest %s", quest_id)


def item_row(row: sqlite3.Row | None) -> dict | None:
    return _bool_fields(row, "is_active")


def find_item(conn: sqlite3.Connection, item_id: int) -> dict | None:
    return item_row(conn.execute("SELECT * FROM item WHERE id = ?", (item_id,)).fetchone())


def get_item(conn: sqlite3.Connection, item_id: int) -> dict:
    item = find_item(conn, item_id)
    if item is None:
        raise NotFound("Item not found")
    return item


def list_items(conn: sqlite3.Connection, active_only: bool = True) -> list[dict]:
    sql = "SELECT * FROM item"
    if active_only:
        sql += " WHERE is_active = 1"
    return [item_row(r) for r in conn.execute(sql + " ORDER BY price, id").fetchall()]


def _validate_item_fields(fields: dict) -> dict:
    clean = {k: v for k, v in fields.items() if k in ITEM_COLUMNS}
    if "type" in clean:
        clean["type"] = str(clean["type"]).upper()
        if clean["type"] not in ITEM_TYPES:
            raise Ineligible(f"Unknown item type: {clean['type']}")
    if clean.get("effect"):
        clean["effect"] = str(clean["effect"]).upper()
    if "is_active" in clean:
        clean["is_active"] = int(bool(clean["is_active"]))
    return clean


def create_item(conn: sqlite3.Connection, **fields) -> dict:
    clean = _validate_item_fields(fields)
    if not clean.get("name"):
        raise Ineligible("Item name is required")
    stamp = to_iso(utc_now())
    clean.setdefault("price", 0)
    clean.setdefault("type", "CONSUMABLE")
    clean.update(created_at=stamp, updated_at=stamp)
    cols = list(clean)
    cur = conn.execute(
        f"INSERT INTO item ({','.join(cols)}) VALUES ({','.join('?' for _ in cols)})",
        tuple(clean[c] for c in cols),
    )
    return get_item(conn, cur.lastrowid)


def update_item(conn: sqlite3.Connection, item_id: int, **fields) -> dict:
    get_item(conn, item_id)
    clean = _validate_item_fields(fields)
    if clean:
        clean["updated_at"] = to_iso(utc_now())
        assignments = ", ".join(f"{col} = ?" for col in clean)
        conn.execute(f"UPDATE item SET {assignments} WHERE id = ?", (*clean.values(), item_id))
    return get_item(conn, item_id)


def delete_item(conn: sqlite3.Connection, item_id: int) -> None:
    get_item(conn, item_id)
    conn.execute("DELETE FROM item WHERE id = ?", (item_id,))
    logger.info("Deleted item %s", item_id)
