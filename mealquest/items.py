"""Marketplace purchases, item use, cooldowns and timed effects.

An effect is active while ``expires_at > now``. Nothing flips a stored flag
when it lapses: expired rows stay for history until an admin deletes them.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from datetime import datetime, timedelta

from mealquest.db import find_user, from_iso, get_item, get_user, item_row, to_iso
from mealquest.errors import Conflict, Ineligible, NotFound
from mealquest.ledger import ITEM_PURCHASE, debit, get_balance
from mealquest.meals import decrement_streak

logger = logging.getLogger(__name__)

# Effects aimed at another user rather than the one holding the item.
ADVERSARIAL_EFFECTS = {"STREAK_DECREASE"}

# Timed effects each item type can grant; any other effect on that type is inert.
TIMED_EFFECTS = {
    "CONSUMABLE": {"SCORE_MULTIPLIER", "TIME_EXTENSION"},
    "EQUIPMENT": {"STREAK_PROTECT"},
}

DEFAULT_MAGNITUDE = {
    "SCORE_MULTIPLIER": 2.0,
    "TIME_EXTENSION": 15.0,
}

EFFECT_MESSAGES = {
    "SCORE_MULTIPLIER_APPLIED": "Score multiplier active! Your points are doubled for a limited time.",
    "TIME_EXTENSION_APPLIED": "Time extension activated! You have extra time for meal submissions.",
    "STREAK_PROTECTION_APPLIED": "Shield activated! Your streak is protected from attacks.",
    "STREAK_DECREASED": "Attack successful! The target's streak dropped by 1.",
    "ATTACK_BLOCKED": "Attack failed! The target has an active shield.",
    "EQUIPMENT_APPLIED": "Equipment item equipped successfully.",
    "SPECIAL_EFFECT_APPLIED": "Special item used successfully.",
    "NO_EFFECT": "Item used, but nothing happened.",
}

_APPLIED = {"STREAK_PROTECT": "STREAK_PROTECTION_APPLIED"}


def is_attack(item: dict) -> bool:
    return item["type"] == "EQUIPMENT" and item["effect"] in ADVERSARIAL_EFFECTS


def grants_timed_effect(item: dict) -> bool:
    return item["effect"] in TIMED_EFFECTS.get(item["type"], ()) and item["duration"] > 0


def _user_item(conn: sqlite3.Connection, user_id: int, item_id: int) -> dict | None:
    row = conn.execute("SELECT * FROM user_item WHERE user_id = ? AND item_id = ?", (user_id, item_id)).fetchone()
    return dict(row) if row else None


def cooldown_ends(user_item: dict, item: dict) -> datetime | None:
    last_used = from_iso(user_item.get("last_used"))
    if last_used is None or not item["cooldown"]:
        return None
    return last_used + timedelta(seconds=item["cooldown"])


def effect_row(row: sqlite3.Row | dict, now: datetime) -> dict:
    out = dict(row)
    out["is_active"] = from_iso(out["expires_at"]) > now
    return out


def has_active_effect(conn: sqlite3.Connection, user_id: int, effect: str, now: datetime) -> bool:
    row = conn.execute(
        "SELECT 1 FROM active_effect WHERE user_id = ? AND effect = ? AND expires_at > ? LIMIT 1",
        (user_id, effect, to_iso(now)),
    ).fetchone()
    return row is not None


def _resolve_target(conn: sqlite3.Connection, user_id: int, item: dict, target_user_id: int | None) -> int:
    if not is_attack(item):
        return user_id
    if target_user_id is None:
        raise Ineligible("You must select a target user to use this item")
    if target_user_id == user_id:
        raise Ineligible("You cannot use this item on yourself")
    if find_user(conn, target_user_id) is None:
        raise NotFound("Target user not found")
    return target_user_id


def _apply_instant(conn: sqlite3.Connection, item: dict, target_id: int, now: datetime) -> str:
    effect = item["effect"]
    if is_attack(item):
        if has_active_effect(conn, target_id, "STREAK_PROTECT", now):
            return "ATTACK_BLOCKED"
        return "STREAK_DECREASED" if decrement_streak(conn, target_id) else "NO_EFFECT"
    if grants_timed_effect(item):
        return _APPLIED.get(effect, f"{effect}_APPLIED")
    if item["type"] == "EQUIPMENT":
        return "EQUIPMENT_APPLIED"
    if item["type"] == "SPECIAL":
        return "SPECIAL_EFFECT_APPLIED"
    return "NO_EFFECT"


def use_item(
    conn: sqlite3.Connection,
    user_id: int,
    item_id: int,
    target_user_id: int | None,
    now: datetime,
) -> dict:
    item = get_item(conn, item_id)
    user_item = _user_item(conn, user_id, item_id)
    if user_item is None or user_item["quantity"] <= 0:
        raise Ineligible("You don't own this item")

    ends = cooldown_ends(user_item, item)
    if ends is not None and ends > now:
        minutes = math.ceil((ends - now).total_seconds() / 60)
        raise Ineligible(f"This item is on cooldown. Try again in {minutes} minute(s)")

    target_id = _resolve_target(conn, user_id, item, target_user_id)

    # Re-check quantity and cooldown in the write so a racing use loses.
    cur = conn.execute(
        """
        UPDATE user_item SET quantity = quantity - 1, last_used = ?
        WHERE id = ? AND quantity > 0 AND (last_used IS NULL OR last_used <= ?)
        """,
        (to_iso(now), user_item["id"], to_iso(now - timedelta(seconds=item["cooldown"]))),
    )
    if cur.rowcount == 0:
        logger.warning("Concurrent use of user_item %s rejected", user_item["id"])
        raise Conflict("Item was used concurrently; try again")

    effect_result = _apply_instant(conn, item, target_id, now)

    active_effect = None
    if grants_timed_effect(item):
        effect_cur = conn.execute(
            """
            INSERT INTO active_effect (user_id, item_id, source_user_id, effect, magnitude, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                target_id,
                item_id,
                user_id,
                item["effect"],
                item["magnitude"] if item["magnitude"] is not None else DEFAULT_MAGNITUDE.get(item["effect"]),
                to_iso(now),
                to_iso(now + timedelta(seconds=item["duration"])),
            ),
        )
        active_effect = effect_row(
            conn.execute("SELECT * FROM active_effect WHERE id = ?", (effect_cur.lastrowid,)).fetchone(), now
        )

    conn.execute(
        "INSERT INTO item_use_log (user_id, item_id, target_user_id, effect_result, used_at) VALUES (?, ?, ?, ?, ?)",
        (user_id, item_id, target_id if target_id != user_id else None, effect_result, to_iso(now)),
    )
    logger.info("User %s used item %s on %s: %s", user_id, item_id, target_id, effect_result)

    updated = _user_item(conn, user_id, item_id)
    ends = cooldown_ends(updated, item)
    return {
        "quantityRemaining": updated["quantity"],
        "cooldownEnds": to_iso(ends) if ends else None,
        "effectApplied": effect_result not in ("NO_EFFECT", "ATTACK_BLOCKED"),
        "effectResult": effect_result,
        "activeEffect": active_effect,
        "message": EFFECT_MESSAGES.get(effect_result, "Item used successfully!"),
    }


def purchase_item(conn: sqlite3.Connection, user_id: int, item_id: int, now: datetime) -> dict:
    user = get_user(conn, user_id)
    item = get_item(conn, item_id)
    if not item["is_active"]:
        raise Ineligible("This item is not available")

    is_admin = user["role"] == "ADMIN"
    price = 0 if is_admin else item["price"]
    if price > 0:
        debit(conn, user_id, price, f"Purchase of {item['name']}", ITEM_PURCHASE, item_id, now)

    conn.execute(
        """
        INSERT INTO user_item (user_id, item_id, quantity) VALUES (?, ?, 1)
        ON CONFLICT(user_id, item_id) DO UPDATE SET quantity = quantity + 1
        """,
        (user_id, item_id),
    )
    conn.execute(
        "INSERT INTO item_purchase_log (user_id, item_id, price, purchased_at) VALUES (?, ?, ?, ?)",
        (user_id, item_id, price, to_iso(now)),
    )
    logger.info("User %s bought item %s for %s", user_id, item_id, price)
    return {
        "userItem": _user_item(conn, user_id, item_id),
        "newScore": get_balance(conn, user_id),
        "isAdminPurchase": is_admin,
    }


def grant_item(conn: sqlite3.Connection, user_id: int, item_id: int, quantity: int = 1) -> dict:
    get_user(conn, user_id)
    get_item(conn, item_id)
    if quantity < 1:
        raise Ineligible("Quantity must be at least 1")
    conn.execute(
        """
        INSERT INTO user_item (user_id, item_id, quantity) VALUES (?, ?, ?)
        ON CONFLICT(user_id, item_id) DO UPDATE SET quantity = quantity + excluded.quantity
        """,
        (user_id, item_id, quantity),
    )
    return _user_item(conn, user_id, item_id)


def list_inventory(conn: sqlite3.Connection, user_id: int, now: datetime, include_empty: bool = False) -> list[dict]:
    sql = """
        SELECT ui.id AS user_item_id, ui.quantity, ui.last_used, i.*
        FROM user_item ui JOIN item i ON i.id = ui.item_id
        WHERE ui.user_id = ?
    """
    if not include_empty:
        sql += " AND ui.quantity > 0"
    out = []
    for row in conn.execute(sql + " ORDER BY i.name", (user_id,)).fetchall():
        entry = item_row(row)
        ends = cooldown_ends(entry, entry)
        entry["cooldown_ends"] = to_iso(ends) if ends else None
        entry["on_cooldown"] = ends is not None and ends > now
        out.append(entry)
    return out


def delete_user_item(conn: sqlite3.Connection, user_id: int, user_item_id: int) -> None:
    cur = conn.execute("DELETE FROM user_item WHERE id = ? AND user_id = ?", (user_item_id, user_id))
    if cur.rowcount == 0:
        raise NotFound("User item not found")
    logger.info("Removed user_item %s from user %s", user_item_id, user_id)


def clear_cooldown(conn: sqlite3.Connection, user_id: int, user_item_id: int) -> dict:
    cur = conn.execute("UPDATE user_item SET last_used = NULL WHERE id = ? AND user_id = ?", (user_item_id, user_id))
    if cur.rowcount == 0:
        raise NotFound("User item not found")
    logger.info("Cleared cooldown on user_item %s for user %s", user_item_id, user_id)
    return dict(conn.execute("SELECT * FROM user_item WHERE id = ?", (user_item_id,)).fetchone())


def list_active_effects(
    conn: sqlite3.Connection,
    user_id: int,
    now: datetime,
    include_expired: bool = False,
) -> list[dict]:
    sql = """
        SELECT e.*, i.name AS item_name, i.type AS item_type
        FROM active_effect e LEFT JOIN item i ON i.id = e.item_id
        WHERE e.user_id = ?
    """
    params: tuple = (user_id,)
    if include_expired:
        sql += " ORDER BY e.expires_at DESC"
    else:
        sql += " AND e.expires_at > ? ORDER BY e.expires_at ASC"
        params = (user_id, to_iso(now))
    return [effect_row(r, now) for r in conn.execute(sql, params).fetchall()]


def delete_active_effect(conn: sqlite3.Connection, user_id: int, effect_id: int) -> None:
    cur = conn.execute("DELETE FROM active_effect WHERE id = ? AND user_id = ?", (effect_id, user_id))
    if cur.rowcount == 0:
        raise NotFound("Active effect not found")
    logger.info("Deleted active effect %s for user %s", effect_id, user_id)
