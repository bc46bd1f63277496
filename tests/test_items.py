from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import mealquest.db as db
from mealquest import items, ledger, meals
from mealquest.errors import Conflict, Ineligible, NotFound
from support import DBIsolatedTestCase

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class ItemTestCase(DBIsolatedTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = db.create_user(self.conn, "Ana")
        self.rival = db.create_user(self.conn, "Cid")


class CooldownTests(ItemTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.item = db.create_item(self.conn, name="Charm", price=5, type="SPECIAL", cooldown=3600)
        items.grant_item(self.conn, self.user["id"], self.item["id"], 3)

    def test_cooldown_blocks_until_elapsed(self) -> None:
        first = items.use_item(self.conn, self.user["id"], self.item["id"], None, T0)
        self.assertEqual(first["quantityRemaining"], 2)
        self.assertEqual(first["cooldownEnds"], db.to_iso(T0 + timedelta(seconds=3600)))

        with self.assertRaises(Ineligible):
            items.use_item(self.conn, self.user["id"], self.item["id"], None, T0 + timedelta(seconds=1000))

        later = items.use_item(self.conn, self.user["id"], self.item["id"], None, T0 + timedelta(seconds=3601))
        self.assertEqual(later["quantityRemaining"], 1)

    def test_use_allowed_exactly_when_cooldown_ends(self) -> None:
        items.use_item(self.conn, self.user["id"], self.item["id"], None, T0)
        result = items.use_item(self.conn, self.user["id"], self.item["id"], None, T0 + timedelta(seconds=3600))
        self.assertEqual(result["quantityRemaining"], 1)

    def test_rejected_use_leaves_inventory_untouched(self) -> None:
        items.use_item(self.conn, self.user["id"], self.item["id"], None, T0)
        with self.assertRaises(Ineligible):
            items.use_item(self.conn, self.user["id"], self.item["id"], None, T0 + timedelta(minutes=5))

        row = self.conn.execute("SELECT quantity, last_used FROM user_item").fetchone()
        self.assertEqual(row["quantity"], 2)
        self.assertEqual(row["last_used"], db.to_iso(T0))

    def test_clear_cooldown_allows_immediate_reuse(self) -> None:
        items.use_item(self.conn, self.user["id"], self.item["id"], None, T0)
        user_item_id = self.conn.execute("SELECT id FROM user_item").fetchone()["id"]

        items.clear_cooldown(self.conn, self.user["id"], user_item_id)

        result = items.use_item(self.conn, self.user["id"], self.item["id"], None, T0 + timedelta(seconds=1))
        self.assertEqual(result["quantityRemaining"], 1)
        with self.assertRaises(NotFound):
            items.clear_cooldown(self.conn, self.rival["id"], user_item_id)

    def test_racing_use_loses_conditional_update(self) -> None:
        def drained(conn, user_id, item, target_user_id):
            conn.execute("UPDATE user_item SET quantity = 0")
            return user_id

        with patch.object(items, "_resolve_target", side_effect=drained):
            with self.assertRaises(Conflict):
                items.use_item(self.conn, self.user["id"], self.item["id"], None, T0)

    def test_inventory_reports_cooldown(self) -> None:
        items.use_item(self.conn, self.user["id"], self.item["id"], None, T0)

        entry = items.list_inventory(self.conn, self.user["id"], T0 + timedelta(seconds=60))[0]

        self.assertTrue(entry["on_cooldown"])
        self.assertEqual(entry["quantity"], 2)
        self.assertFalse(items.list_inventory(self.conn, self.user["id"], T0 + timedelta(hours=2))[0]["on_cooldown"])


class OwnershipTests(ItemTestCase):
    def test_not_owned_and_empty_stack_are_ineligible(self) -> None:
        item = db.create_item(self.conn, name="Apple", price=1)
        with self.assertRaises(Ineligible):
            items.use_item(self.conn, self.user["id"], item["id"], None, T0)

        items.grant_item(self.conn, self.user["id"], item["id"], 1)
        items.use_item(self.conn, self.user["id"], item["id"], None, T0)
        with self.assertRaises(Ineligible):
            items.use_item(self.conn, self.user["id"], item["id"], None, T0 + timedelta(days=1))

    def test_unknown_item_is_not_found(self) -> None:
        with self.assertRaises(NotFound):
            items.use_item(self.conn, self.user["id"], 404, None, T0)


class EffectTests(ItemTestCase):
    def test_timed_effect_expires_by_time_alone(self) -> None:
        booster = db.create_item(self.conn, name="Booster", price=10, effect="score_multiplier", duration=3600)
        items.grant_item(self.conn, self.user["id"], booster["id"])

        result = items.use_item(self.conn, self.user["id"], booster["id"], None, T0)

        self.assertTrue(result["effectApplied"])
        self.assertEqual(result["effectResult"], "SCORE_MULTIPLIER_APPLIED")
        self.assertEqual(result["activeEffect"]["magnitude"], 2.0)
        self.assertEqual(result["activeEffect"]["expires_at"], db.to_iso(T0 + timedelta(hours=1)))

        self.assertEqual(len(items.list_active_effects(self.conn, self.user["id"], T0 + timedelta(minutes=59))), 1)
        later = T0 + timedelta(hours=1, seconds=1)
        self.assertEqual(items.list_active_effects(self.conn, self.user["id"], later), [])
        history = items.list_active_effects(self.conn, self.user["id"], later, include_expired=True)
        self.assertEqual(len(history), 1)
        self.assertFalse(history[0]["is_active"])
        self.assertEqual(history[0]["item_name"], "Booster")

    def test_instant_item_creates_no_effect_row(self) -> None:
        snack = db.create_item(self.conn, name="Snack", price=1, effect="HEALTH_BOOST", duration=0)
        items.grant_item(self.conn, self.user["id"], snack["id"])

        result = items.use_item(self.conn, self.user["id"], snack["id"], None, T0)

        self.assertIsNone(result["activeEffect"])
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM active_effect").fetchone()[0], 0)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM item_use_log").fetchone()[0], 1)

    def test_timed_effects_depend_on_item_type(self) -> None:
        relic = db.create_item(self.conn, name="Relic", price=1, type="SPECIAL", effect="SCORE_MULTIPLIER", duration=600)
        items.grant_item(self.conn, self.user["id"], relic["id"])

        result = items.use_item(self.conn, self.user["id"], relic["id"], None, T0)

        self.assertEqual(result["effectResult"], "SPECIAL_EFFECT_APPLIED")
        self.assertIsNone(result["activeEffect"])
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM active_effect").fetchone()[0], 0)

    def test_admin_delete_removes_row(self) -> None:
        shield = db.create_item(self.conn, name="Shield", price=1, type="EQUIPMENT", effect="STREAK_PROTECT", duration=60)
        items.grant_item(self.conn, self.user["id"], shield["id"])
        effect_id = items.use_item(self.conn, self.user["id"], shield["id"], None, T0)["activeEffect"]["id"]

        with self.assertRaises(NotFound):
            items.delete_active_effect(self.conn, self.rival["id"], effect_id)
        items.delete_active_effect(self.conn, self.user["id"], effect_id)

        self.assertEqual(items.list_active_effects(self.conn, self.user["id"], T0, include_expired=True), [])


class AdversarialItemTests(ItemTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.sword = db.create_item(self.conn, name="Sword", price=1, type="EQUIPMENT", effect="STREAK_DECREASE")
        self.shield = db.create_item(
            self.conn, name="Shield", price=1, type="EQUIPMENT", effect="STREAK_PROTECT", duration=86400
        )
        items.grant_item(self.conn, self.user["id"], self.sword["id"], 5)
        meals.set_streak(self.conn, self.rival["id"], current_streak=4, longest_streak=4, last_meal_day="2026-03-10")

    def test_attack_needs_a_valid_target(self) -> None:
        with self.assertRaises(Ineligible):
            items.use_item(self.conn, self.user["id"], self.sword["id"], None, T0)
        with self.assertRaises(Ineligible):
            items.use_item(self.conn, self.user["id"], self.sword["id"], self.user["id"], T0)
        with self.assertRaises(NotFound):
            items.use_item(self.conn, self.user["id"], self.sword["id"], 999, T0)
        self.assertEqual(self.conn.execute("SELECT quantity FROM user_item").fetchone()[0], 5)

    def test_attack_decreases_target_streak(self) -> None:
        result = items.use_item(self.conn, self.user["id"], self.sword["id"], self.rival["id"], T0)

        self.assertEqual(result["effectResult"], "STREAK_DECREASED")
        self.assertEqual(meals.get_streak(self.conn, self.rival["id"])["current_streak"], 3)
        log = self.conn.execute("SELECT target_user_id FROM item_use_log").fetchone()
        self.assertEqual(log["target_user_id"], self.rival["id"])

    def test_attack_effect_only_fires_from_equipment(self) -> None:
        potion = db.create_item(self.conn, name="Sour Potion", price=1, type="CONSUMABLE", effect="STREAK_DECREASE")
        items.grant_item(self.conn, self.user["id"], potion["id"])

        result = items.use_item(self.conn, self.user["id"], potion["id"], None, T0)

        self.assertEqual(result["effectResult"], "NO_EFFECT")
        self.assertFalse(result["effectApplied"])
        self.assertEqual(meals.get_streak(self.conn, self.rival["id"])["current_streak"], 4)

    def test_shield_blocks_attack_while_active(self) -> None:
        items.grant_item(self.conn, self.rival["id"], self.shield["id"])
        shielded = items.use_item(self.conn, self.rival["id"], self.shield["id"], None, T0)
        self.assertEqual(shielded["effectResult"], "STREAK_PROTECTION_APPLIED")

        blocked = items.use_item(self.conn, self.user["id"], self.sword["id"], self.rival["id"], T0 + timedelta(hours=1))
        self.assertEqual(blocked["effectResult"], "ATTACK_BLOCKED")
        self.assertFalse(blocked["effectApplied"])
        self.assertEqual(meals.get_streak(self.conn, self.rival["id"])["current_streak"], 4)

        hit = items.use_item(self.conn, self.user["id"], self.sword["id"], self.rival["id"], T0 + timedelta(days=2))
        self.assertEqual(hit["effectResult"], "STREAK_DECREASED")


class PurchaseTests(ItemTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.item = db.create_item(self.conn, name="Shield", price=150, type="EQUIPMENT", effect="STREAK_PROTECT")

    def test_purchase_debits_and_adds_to_inventory(self) -> None:
        ledger.credit(self.conn, self.user["id"], 200, "reward", ledger.QUEST_REWARD, None, T0)

        result = items.purchase_item(self.conn, self.user["id"], self.item["id"], T0)

        self.assertEqual(result["newScore"], 50)
        self.assertEqual(result["userItem"]["quantity"], 1)
        self.assertFalse(result["isAdminPurchase"])

    def test_insufficient_points_leaves_no_trace(self) -> None:
        ledger.credit(self.conn, self.user["id"], 100, "reward", ledger.QUEST_REWARD, None, T0)

        with self.assertRaises(Ineligible):
            with db.transaction(self.conn):
                items.purchase_item(self.conn, self.user["id"], self.item["id"], T0)

        self.assertEqual(ledger.get_balance(self.conn, self.user["id"]), 100)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM user_item").fetchone()[0], 0)

    def test_admin_purchase_is_free(self) -> None:
        admin = db.create_user(self.conn, "Root", role="ADMIN")

        result = items.purchase_item(self.conn, admin["id"], self.item["id"], T0)

        self.assertTrue(result["isAdminPurchase"])
        self.assertEqual(result["newScore"], 0)
        price = self.conn.execute("SELECT price FROM item_purchase_log").fetchone()["price"]
        self.assertEqual(price, 0)

    def test_inactive_item_cannot_be_bought(self) -> None:
        db.update_item(self.conn, self.item["id"], is_active=False)
        with self.assertRaises(Ineligible):
            items.purchase_item(self.conn, self.user["id"], self.item["id"], T0)


if __name__ == "__main__":
    unittest.main()
