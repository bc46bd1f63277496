"""Quest progress tracking.

A user's progress on a quest lives in one ``user_quest`` row per cycle. ``ONCE``
quests have a single cycle (``"once"``); ``DAILY`` quests open a new cycle on
each local calendar day, so yesterday's completed row never blocks today.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from mealquest.db import from_iso, get_quest, local_day, quest_row, to_iso
from mealquest.errors import Conflict, Ineligible, Internal
from mealquest.ledger import QUEST_REWARD, credit

logger = logging.getLogger(__name__)

ONCE_CYCLE = "once"


def cycle_key(quest: dict, now: datetime, tz_name: str) -> str:
    if quest["frequency"] == "DAILY":
        return local_day(now, tz_name)
    return ONCE_CYCLE


def user_quest_row(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    out = dict(row)
    out["is_completed"] = bool(out["is_completed"])
    return out


def _find_user_quest(conn: sqlite3.Connection, user_id: int, quest_id: int, cycle: str) -> dict | None:
    row = conn.execute(
        "SELECT * FROM user_quest WHERE user_id = ? AND quest_id = ? AND cycle_key = ?",
        (user_id, quest_id, cycle),
    ).fetchone()
    return user_quest_row(row)


def _ensure_user_quest(conn: sqlite3.Connection, user_id: int, quest_id: int, cycle: str, now: datetime) -> dict:
    conn.execute(
        """
        INSERT INTO user_quest (user_id, quest_id, cycle_key, progress, is_completed, created_at)
        VALUES (?, ?, ?, 0, 0, ?)
        ON CONFLICT(user_id, quest_id, cycle_key) DO NOTHING
        """,
        (user_id, quest_id, cycle, to_iso(now)),
    )
    user_quest = _find_user_quest(conn, user_id, quest_id, cycle)
    if user_quest is None:
        raise Internal("Quest progress row missing after insert")
    return user_quest


def check_eligibility(conn: sqlite3.Connection, user_id: int, quest: dict, now: datetime, tz_name: str) -> str:
    """Return the cycle key the caller may progress in, or raise ``Ineligible``."""
    if not quest["is_active"]:
        raise Ineligible("Quest is not currently active")
    start = from_iso(quest["start_date"])
    if start and start > now:
        raise Ineligible("This quest has not started yet")
    end = from_iso(quest["end_date"])
    if end and end < now:
        raise Ineligible("This quest has expired")

    cycle = cycle_key(quest, now, tz_name)
    existing = _find_user_quest(conn, user_id, quest["id"], cycle)
    if existing and existing["is_completed"]:
        if quest["frequency"] == "DAILY":
            raise Ineligible("You have already completed this quest today")
        raise Ineligible("You have already completed this quest")
    return cycle


def record_progress(
    conn: sqlite3.Connection,
    user_id: int,
    quest_id: int,
    increment: int,
    now: datetime,
    tz_name: str,
) -> dict:
    if increment < 1:
        raise Ineligible("Increment must be at least 1")
    quest = get_quest(conn, quest_id)
    cycle = check_eligibility(conn, user_id, quest, now, tz_name)
    user_quest = _ensure_user_quest(conn, user_id, quest_id, cycle, now)

    new_progress = user_quest["progress"] + increment
    completed = new_progress >= quest["requirement"]
    cur = conn.execute(
        """
        UPDATE user_quest SET progress = ?, is_completed = ?, completed_at = ?
        WHERE id = ? AND is_completed = 0 AND progress = ?
        """,
        (new_progress, int(completed), to_iso(now) if completed else None, user_quest["id"], user_quest["progress"]),
    )
    if cur.rowcount == 0:
        logger.warning("Concurrent progress update on user_quest %s", user_quest["id"])
        raise Conflict("Quest progress changed concurrently; try again")

    awarded = 0
    if completed:
        if quest["score_reward"] > 0:
            credit(
                conn,
                user_id,
                quest["score_reward"],
                f"Completed quest: {quest['title']}",
                QUEST_REWARD,
                quest_id,
                now,
            )
            awarded = quest["score_reward"]
        logger.info("User %s completed quest %s (+%s points)", user_id, quest_id, awarded)

    updated = _find_user_quest(conn, user_id, quest_id, cycle)
    return {
        "progress": updated["progress"],
        "isCompleted": updated["is_completed"],
        "completedAt": updated["completed_at"],
        "scoreAwarded": awarded,
        "userQuest": updated,
    }


def complete_quest(conn: sqlite3.Connection, user_id: int, quest_id: int, now: datetime, tz_name: str) -> dict:
    quest = get_quest(conn, quest_id)
    existing = _find_user_quest(conn, user_id, quest_id, cycle_key(quest, now, tz_name))
    done = existing["progress"] if existing else 0
    result = record_progress(conn, user_id, quest_id, max(1, quest["requirement"] - done), now, tz_name)
    return {"reward": result["scoreAwarded"], "userQuest": result["userQuest"]}


def record_progress_by_kind(
    conn: sqlite3.Connection,
    user_id: int,
    kind: str,
    amount: int,
    now: datetime,
    tz_name: str,
) -> dict:
    rows = conn.execute("SELECT id FROM quest WHERE kind = ? AND is_active = 1 ORDER BY id", (kind.upper(),)).fetchall()
    updated, completed, awarded = 0, 0, 0
    for row in rows:
        try:
            result = record_progress(conn, user_id, row["id"], amount, now, tz_name)
        except Ineligible:
            continue
        updated += 1
        if result["isCompleted"]:
            completed += 1
        awarded += result["scoreAwarded"]
    return {"updatedQuests": updated, "completedQuests": completed, "scoreAwarded": awarded}


def accept_quest(conn: sqlite3.Connection, user_id: int, quest_id: int, now: datetime, tz_name: str) -> dict:
    quest = get_quest(conn, quest_id)
    cycle = check_eligibility(conn, user_id, quest, now, tz_name)
    if _find_user_quest(conn, user_id, quest_id, cycle):
        raise Ineligible("Quest already accepted")
    return _ensure_user_quest(conn, user_id, quest_id, cycle, now)


def list_quests(conn: sqlite3.Connection, user_id: int, now: datetime, tz_name: str) -> list[dict]:
    quests = [quest_row(r) for r in conn.execute("SELECT * FROM quest WHERE is_active = 1 ORDER BY id").fetchall()]
    out = []
    for quest in quests:
        user_quest = _find_user_quest(conn, user_id, quest["id"], cycle_key(quest, now, tz_name))
        out.append(
            {
                **quest,
                "is_accepted": user_quest is not None,
                "progress": user_quest["progress"] if user_quest else 0,
                "is_completed": user_quest["is_completed"] if user_quest else False,
                "completed_at": user_quest["completed_at"] if user_quest else None,
            }
        )
    return out
