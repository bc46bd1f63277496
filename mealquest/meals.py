from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from mealquest.db import get_user, local_day, previous_day, to_iso
from mealquest.errors import Conflict, Ineligible
from mealquest.quests import record_progress_by_kind

logger = logging.getLogger(__name__)

MEAL_TYPES = ("BREAKFAST", "LUNCH", "DINNER", "SNACK")
FULL_DAY = {"BREAKFAST", "LUNCH", "DINNER"}


def get_streak(conn: sqlite3.Connection, user_id: int) -> dict:
    row = conn.execute("SELECT * FROM streak WHERE user_id = ?", (user_id,)).fetchone()
    if row is None:
        return {"user_id": user_id, "current_streak": 0, "longest_streak": 0, "last_meal_day": None}
    return dict(row)


def set_streak(
    conn: sqlite3.Connection,
    user_id: int,
    current_streak: int | None = None,
    longest_streak: int | None = None,
    last_meal_day: str | None = None,
) -> dict:
    get_user(conn, user_id)
    existing = get_streak(conn, user_id)
    current = existing["current_streak"] if current_streak is None else max(0, current_streak)
    longest = existing["longest_streak"] if longest_streak is None else max(0, longest_streak)
    conn.execute(
        """
        INSERT INTO streak (user_id, current_streak, longest_streak, last_meal_day) VALUES (?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            current_streak = excluded.current_streak,
            longest_streak = excluded.longest_streak,
            last_meal_day = excluded.last_meal_day
        """,
        (user_id, current, max(longest, current), last_meal_day or existing["last_meal_day"]),
    )
    return get_streak(conn, user_id)


def decrement_streak(conn: sqlite3.Connection, user_id: int) -> bool:
    cur = conn.execute(
        "UPDATE streak SET current_streak = current_streak - 1 WHERE user_id = ? AND current_streak > 0",
        (user_id,),
    )
    return cur.rowcount > 0


def _advance_streak(conn: sqlite3.Connection, user_id: int, today: str) -> dict:
    streak = get_streak(conn, user_id)
    last = streak["last_meal_day"]
    current = streak["current_streak"]
    if last == today:
        return streak
    if last == previous_day(today):
        current += 1
    else:
        current = 1
    return set_streak(conn, user_id, current, max(streak["longest_streak"], current), today)


def log_meal(
    conn: sqlite3.Connection,
    user_id: int,
    meal_type: str,
    now: datetime,
    tz_name: str,
    food_name: str | None = None,
    image_url: str | None = None,
) -> dict:
    meal_type = meal_type.upper()
    if meal_type not in MEAL_TYPES:
        raise Ineligible(f"Unknown meal type: {meal_type}")
    today = local_day(now, tz_name)
    cur = conn.execute(
        """
        INSERT INTO meal (user_id, meal_type, meal_day, food_name, image_url, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id, meal_type, meal_day) DO NOTHING
        """,
        (user_id, meal_type, today, food_name, image_url, to_iso(now)),
    )
    if cur.rowcount == 0:
        raise Conflict(f"You have already logged {meal_type.lower()} today")
    meal = dict(conn.execute("SELECT * FROM meal WHERE id = ?", (cur.lastrowid,)).fetchone())

    logged = {
        r["meal_type"]
        for r in conn.execute("SELECT meal_type FROM meal WHERE user_id = ? AND meal_day = ?", (user_id, today)).fetchall()
    }
    streak = _advance_streak(conn, user_id, today) if FULL_DAY <= logged else get_streak(conn, user_id)

    quests = record_progress_by_kind(conn, user_id, "MEAL", 1, now, tz_name)
    typed = record_progress_by_kind(conn, user_id, meal_type, 1, now, tz_name)
    for key in quests:
        quests[key] += typed[key]
    return {"meal": meal, "streak": streak, "quests": quests}


def sweep_streaks(conn: sqlite3.Connection, today: str) -> int:
    """Reset current streaks of users whose last full day is before yesterday."""
    cur = conn.execute(
        "UPDATE streak SET current_streak = 0 WHERE current_streak > 0 AND (last_meal_day IS NULL OR last_meal_day < ?)",
        (previous_day(today),),
    )
    if cur.rowcount:
        logger.info("Reset %s streak(s) before %s", cur.rowcount, today)
    return cur.rowcount
