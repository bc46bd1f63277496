from __future__ import annotations

import logging
import sqlite3
from typing import Iterator, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from mealquest import db, items, ledger, meals, quests
from mealquest.config import get_settings
from mealquest.content import seed_catalog
from mealquest.db import current_time, get_conn, init_db, transaction
from mealquest.errors import Conflict, Forbidden, Ineligible, Internal, NotFound, SettlementError, Unauthorized
from mealquest.schemas import (
    ClockAdvanceIn,
    ItemCreate,
    ItemGrantIn,
    ItemRef,
    ItemUpdate,
    ItemUseIn,
    MealIn,
    QuestCreate,
    QuestKindProgressIn,
    QuestProgressIn,
    QuestRef,
    QuestUpdate,
    StreakUpdate,
    UserCreate,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Meal Quest")


@app.on_event("startup")
def startup() -> None:
    init_db()


@app.exception_handler(SettlementError)
async def settlement_error(request: Request, exc: SettlementError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(sqlite3.IntegrityError)
async def integrity_error(request: Request, exc: sqlite3.IntegrityError) -> JSONResponse:
    logger.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc)
    err = Conflict("The request conflicts with a concurrent change")
    return JSONResponse(err.to_dict(), status_code=err.status_code)


@app.exception_handler(sqlite3.Error)
async def storage_error(request: Request, exc: sqlite3.Error) -> JSONResponse:
    logger.error("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    err = Internal("Internal server error")
    return JSONResponse(err.to_dict(), status_code=err.status_code)


@app.exception_handler(OverflowError)
async def overflow_error(request: Request, exc: OverflowError) -> JSONResponse:
    logger.warning("Out-of-range value on %s %s: %s", request.method, request.url.path, exc)
    err = Ineligible("A value in the request is out of range")
    return JSONResponse(err.to_dict(), status_code=err.status_code)


def get_db() -> Iterator[sqlite3.Connection]:
    conn = get_conn()
    try:
        yield conn
    finally:
        conn.close()


def current_user(
    x_user_id: Optional[int] = Header(None),
    conn: sqlite3.Connection = Depends(get_db),
) -> dict:
    if x_user_id is None:
        raise Unauthorized("Unauthorized")
    user = db.find_user(conn, x_user_id)
    if user is None:
        raise Unauthorized("Unauthorized")
    if user["is_banned"]:
        raise Forbidden("Your account has been banned")
    return user


def require_admin(user: dict = Depends(current_user)) -> dict:
    if user["role"] != "ADMIN":
        raise Forbidden("Admin access required")
    return user


def _tz() -> str:
    return get_settings().timezone


@app.get("/api/health")
def health(conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    conn.execute("SELECT 1").fetchone()
    return JSONResponse({"status": "ok"})


@app.get("/api/users")
def users(user: dict = Depends(current_user), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    return JSONResponse({"users": [{"id": u["id"], "name": u["name"]} for u in db.list_users(conn)]})


# ---------- Quests ----------
@app.get("/api/quests")
def quest_board(user: dict = Depends(current_user), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    return JSONResponse({"quests": quests.list_quests(conn, user["id"], current_time(conn), _tz())})


@app.post("/api/quests/accept")
def quest_accept(body: QuestRef, user: dict = Depends(current_user), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    with transaction(conn):
        user_quest = quests.accept_quest(conn, user["id"], body.quest_id, current_time(conn), _tz())
    return JSONResponse({"message": "Quest accepted successfully", "userQuest": user_quest})


@app.post("/api/quests/complete")
def quest_complete(body: QuestRef, user: dict = Depends(current_user), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    with transaction(conn):
        result = quests.complete_quest(conn, user["id"], body.quest_id, current_time(conn), _tz())
    return JSONResponse({"message": "Quest completed successfully", **result})


@app.post("/api/quests/progress")
def quest_progress(body: QuestProgressIn, user: dict = Depends(current_user), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    with transaction(conn):
        result = quests.record_progress(conn, user["id"], body.quest_id, body.increment, current_time(conn), _tz())
    message = "Quest completed!" if result["isCompleted"] else "Quest progress updated"
    return JSONResponse({"message": message, **result})


@app.post("/api/quest-progress")
def quest_kind_progress(
    body: QuestKindProgressIn,
    user: dict = Depends(current_user),
    conn: sqlite3.Connection = Depends(get_db),
) -> JSONResponse:
    with transaction(conn):
        result = quests.record_progress_by_kind(conn, user["id"], body.quest_kind, body.amount, current_time(conn), _tz())
    return JSONResponse({"message": "Quest progress updated", **result})


# ---------- Score ----------
@app.get("/api/score")
def score(user: dict = Depends(current_user), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    return JSONResponse(
        {
            "points": ledger.get_balance(conn, user["id"]),
            "transactions": ledger.list_transactions(conn, user["id"]),
        }
    )


# ---------- Marketplace ----------
@app.get("/api/items")
def marketplace(user: dict = Depends(current_user), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    return JSONResponse({"items": db.list_items(conn)})


@app.get("/api/inventory")
def inventory(user: dict = Depends(current_user), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    return JSONResponse({"items": items.list_inventory(conn, user["id"], current_time(conn))})


@app.post("/api/items/purchase")
def item_purchase(body: ItemRef, user: dict = Depends(current_user), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    with transaction(conn):
        result = items.purchase_item(conn, user["id"], body.item_id, current_time(conn))
    return JSONResponse({"success": True, **result})


@app.post("/api/items/use")
def item_use(body: ItemUseIn, user: dict = Depends(current_user), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    with transaction(conn):
        result = items.use_item(conn, user["id"], body.item_id, body.target_user_id, current_time(conn))
    return JSONResponse(result)


@app.get("/api/effects/active")
def active_effects(user: dict = Depends(current_user), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    return JSONResponse({"activeEffects": items.list_active_effects(conn, user["id"], current_time(conn))})


# ---------- Meals & streaks ----------
@app.post("/api/meals", status_code=201)
def meal_log(body: MealIn, user: dict = Depends(current_user), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    with transaction(conn):
        result = meals.log_meal(
            conn,
            user["id"],
            body.meal_type,
            current_time(conn),
            _tz(),
            food_name=body.food_name,
            image_url=body.image_url,
        )
    return JSONResponse({"message": "Meal saved successfully", **result}, status_code=201)


@app.get("/api/streak")
def streak(user: dict = Depends(current_user), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    return JSONResponse({"streak": meals.get_streak(conn, user["id"])})


# ---------- Admin ----------
@app.get("/api/admin/users")
def admin_users(admin: dict = Depends(require_admin), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    return JSONResponse({"users": db.list_users(conn)})


@app.post("/api/admin/users", status_code=201)
def admin_create_user(body: UserCreate, admin: dict = Depends(require_admin), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    with transaction(conn):
        user = db.create_user(conn, body.name, body.role)
    return JSONResponse({"user": user}, status_code=201)


@app.post("/api/admin/users/{user_id}/ban")
def admin_ban_user(user_id: int, admin: dict = Depends(require_admin), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    with transaction(conn):
        user = db.set_banned(conn, user_id, True)
    logger.info("Admin %s banned user %s", admin["id"], user_id)
    return JSONResponse({"message": "User banned successfully", "user": user})


@app.post("/api/admin/users/{user_id}/unban")
def admin_unban_user(user_id: int, admin: dict = Depends(require_admin), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    with transaction(conn):
        user = db.set_banned(conn, user_id, False)
    logger.info("Admin %s unbanned user %s", admin["id"], user_id)
    return JSONResponse({"message": "User unbanned successfully", "user": user})


@app.delete("/api/admin/users/{user_id}")
def admin_delete_user(user_id: int, admin: dict = Depends(require_admin), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    if user_id == admin["id"]:
        raise Ineligible("You cannot delete your own account")
    with transaction(conn):
        db.delete_user(conn, user_id)
    logger.info("Admin %s deleted user %s", admin["id"], user_id)
    return JSONResponse({"message": "User deleted successfully"})


@app.post("/api/admin/quests", status_code=201)
def admin_create_quest(body: QuestCreate, admin: dict = Depends(require_admin), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    with transaction(conn):
        quest = db.create_quest(conn, **body.model_dump())
    return JSONResponse({"quest": quest}, status_code=201)


@app.patch("/api/admin/quests/{quest_id}")
def admin_update_quest(
    quest_id: int,
    body: QuestUpdate,
    admin: dict = Depends(require_admin),
    conn: sqlite3.Connection = Depends(get_db),
) -> JSONResponse:
    with transaction(conn):
        quest = db.update_quest(conn, quest_id, **body.model_dump(exclude_unset=True))
    return JSONResponse({"quest": quest})


@app.delete("/api/admin/quests/{quest_id}")
def admin_delete_quest(quest_id: int, admin: dict = Depends(require_admin), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    with transaction(conn):
        db.delete_quest(conn, quest_id)
    return JSONResponse({"message": "Quest deleted successfully"})


@app.post("/api/admin/items", status_code=201)
def admin_create_item(body: ItemCreate, admin: dict = Depends(require_admin), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    with transaction(conn):
        item = db.create_item(conn, **body.model_dump())
    return JSONResponse({"item": item}, status_code=201)


@app.patch("/api/admin/items/{item_id}")
def admin_update_item(
    item_id: int,
    body: ItemUpdate,
    admin: dict = Depends(require_admin),
    conn: sqlite3.Connection = Depends(get_db),
) -> JSONResponse:
    with transaction(conn):
        item = db.update_item(conn, item_id, **body.model_dump(exclude_unset=True))
    return JSONResponse({"item": item})


@app.delete("/api/admin/items/{item_id}")
def admin_delete_item(item_id: int, admin: dict = Depends(require_admin), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    with transaction(conn):
        db.delete_item(conn, item_id)
    return JSONResponse({"message": "Item deleted successfully"})


@app.post("/api/admin/seed")
def admin_seed(admin: dict = Depends(require_admin), conn: sqlite3.Connection = Depends(get_db)) -> JSONResponse:
    with transaction(conn):
        seeded = seed_catalog(conn)
    return JSONResponse({"quests": len(seeded["quests"]), "items": len(seeded["items"])})


@app.post("/api/admin/users/{user_id}/items")
def admin_grant_item(
    user_id: int,
    body: ItemGrantIn,
    admin: dict = Depends(require_admin),
    conn: sqlite3.Connection = Depends(get_db),
) -> JSONResponse:
    with transaction(conn):
        user_item = items.grant_item(conn, user_id, body.item_id, body.quantity)
    return JSONResponse({"userItem": user_item})


@app.get("/api/admin/users/{user_id}/items")
def admin_user_items(
    user_id: int,
    admin: dict = Depends(require_admin),
    conn: sqlite3.Connection = Depends(get_db),
) -> JSONResponse:
    db.get_user(conn, user_id)
    return JSONResponse({"items": items.list_inventory(conn, user_id, current_time(conn), include_empty=True)})


@app.delete("/api/admin/users/{user_id}/items/{user_item_id}")
def admin_delete_user_item(
    user_id: int,
    user_item_id: int,
    admin: dict = Depends(require_admin),
    conn: sqlite3.Connection = Depends(get_db),
) -> JSONResponse:
    with transaction(conn):
        items.delete_user_item(conn, user_id, user_item_id)
    logger.info("Admin %s removed user_item %s from user %s", admin["id"], user_item_id, user_id)
    return JSONResponse({"message": "User item deleted successfully"})


@app.post("/api/admin/users/{user_id}/items/{user_item_id}/clear-cooldown")
def admin_clear_cooldown(
    user_id: int,
    user_item_id: int,
    admin: dict = Depends(require_admin),
    conn: sqlite3.Connection = Depends(get_db),
) -> JSONResponse:
    with transaction(conn):
        user_item = items.clear_cooldown(conn, user_id, user_item_id)
    logger.info("Admin %s cleared cooldown on user_item %s", admin["id"], user_item_id)
    return JSONResponse({"message": "Item cooldown cleared successfully", "userItem": user_item})


@app.patch("/api/admin/users/{user_id}/streak")
def admin_set_streak(
    user_id: int,
    body: StreakUpdate,
    admin: dict = Depends(require_admin),
    conn: sqlite3.Connection = Depends(get_db),
) -> JSONResponse:
    with transaction(conn):
        result = meals.set_streak(conn, user_id, body.current_streak, body.longest_streak)
    return JSONResponse({"message": "Streak updated successfully", "streak": result})


@app.get("/api/admin/users/{user_id}/active-effects")
def admin_list_effects(
    user_id: int,
    admin: dict = Depends(require_admin),
    conn: sqlite3.Connection = Depends(get_db),
) -> JSONResponse:
    db.get_user(conn, user_id)
    return JSONResponse({"activeEffects": items.list_active_effects(conn, user_id, current_time(conn), include_expired=True)})


@app.delete("/api/admin/users/{user_id}/active-effects/{effect_id}")
def admin_delete_effect(
    user_id: int,
    effect_id: int,
    admin: dict = Depends(require_admin),
    conn: sqlite3.Connection = Depends(get_db),
) -> JSONResponse:
    with transaction(conn):
        items.delete_active_effect(conn, user_id, effect_id)
    logger.info("Admin %s deleted active effect %s for user %s", admin["id"], effect_id, user_id)
    return JSONResponse({"message": "Active effect deleted successfully"})


# ---------- Testing ----------
@app.post("/testing/advance-clock")
def testing_advance_clock(
    body: ClockAdvanceIn,
    admin: dict = Depends(require_admin),
    conn: sqlite3.Connection = Depends(get_db),
) -> JSONResponse:
    if not get_settings().testing_mode:
        raise NotFound("Testing mode is off")
    with transaction(conn):
        now = db.advance_clock(conn, body.seconds)
    return JSONResponse({"now": db.to_iso(now)})
