"""Point balances and the append-only transaction log behind them.

Nothing here commits: callers wrap each settlement in ``db.transaction`` so a
balance change and its transaction row land together or not at all.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime

from mealquest.db import to_iso
from mealquest.errors import Ineligible, Internal

QUEST_REWARD = "QUEST_REWARD"
ITEM_PURCHASE = "ITEM_PURCHASE"


def _append_transaction(
    conn: sqlite3.Connection,
    score_id: int,
    amount: int,
    reason: str,
    source_type: str,
    source_id: int | None,
    now: datetime,
) -> dict:
    cur = conn.execute(
        """
        INSERT INTO score_transaction (score_id, amount, reason, source_type, source_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (score_id, amount, reason, source_type, source_id, to_iso(now)),
    )
    row = conn.execute("SELECT * FROM score_transaction WHERE id = ?", (cur.lastrowid,)).fetchone()
    return dict(row)


def credit(
    conn: sqlite3.Connection,
    user_id: int,
    amount: int,
    reason: str,
    source_type: str,
    source_id: int | None,
    now: datetime,
) -> dict:
    if amount <= 0:
        raise Ineligible("Credit amount must be positive")
    conn.execute(
        """
        INSERT INTO score (user_id, points, updated_at) VALUES (?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET points = points + excluded.points, updated_at = excluded.updated_at
        """,
        (user_id, amount, to_iso(now)),
    )
    score = conn.execute("SELECT * FROM score WHERE user_id = ?", (user_id,)).fetchone()
    if score is None:
        raise Internal("Score row missing after credit")
    txn = _append_transaction(conn, score["id"], amount, reason, source_type, source_id, now)
    return {"points": score["points"], "transaction": txn}


def debit(
    conn: sqlite3.Connection,
    user_id: int,
    amount: int,
    reason: str,
    source_type: str,
    source_id: int | None,
    now: datetime,
) -> dict:
    if amount <= 0:
        raise Ineligible("Debit amount must be positive")
    cur = conn.execute(
        "UPDATE score SET points = points - ?, updated_at = ? WHERE user_id = ? AND points >= ?",
        (amount, to_iso(now), user_id, amount),
    )
    if cur.rowcount == 0:
        raise Ineligible("Insufficient score points")
    score = conn.execute("SELECT * FROM score WHERE user_id = ?", (user_id,)).fetchone()
    txn = _append_transaction(conn, score["id"], -amount, reason, source_type, source_id, now)
    return {"points": score["points"], "transaction": txn}


def get_balance(conn: sqlite3.Connection, user_id: int) -> int:
    row = conn.execute("SELECT points FROM score WHERE user_id = ?", (user_id,)).fetchone()
    return row["points"] if row else 0


def list_transactions(conn: sqlite3.Connection, user_id: int, limit: int = 50) -> list[dict]:
    rows = conn.execute(
        """
        SELECT t.* FROM score_transaction t
        JOIN score s ON s.id = t.score_id
        WHERE s.user_id = ?
        ORDER BY t.id DESC
        LIMIT ?
        """,
        (user_id, limit),
    ).fetchall()
    return [dict(r) for r in rows]
