import os
import sqlite3
import unittest
from unittest import mock

from pos_models import AppView, Item, User
from pos_service import BillingRepository, build_bill_item, build_transaction
from pos_session import USER_KEY, ProfileHolder
from pos_store import SQLiteStore
from pos_views import ViewCoordinator


class ProfileHolderTest(unittest.TestCase):
    def setUp(self):
        self.store = SQLiteStore(sqlite3.connect(":memory:"))

    def tearDown(self):
        self.store.close()

    def test_fresh_install_has_no_profile(self):
        profile = ProfileHolder(self.store)
        self.assertIsNone(profile.load())
        self.assertFalse(profile.is_authenticated)

    def test_login_persists_and_authenticates(self):
        profile = ProfileHolder(self.store)
        profile.login(User(phone="9876543210", pin="1111"))
        self.assertTrue(profile.is_authenticated)
        self.assertEqual(profile.phone, "9876543210")
        self.assertEqual(self.store.get(USER_KEY), '{"phone":"9876543210","pin":"1111"}')

    def test_last_login_wins(self):
        profile = ProfileHolder(self.store)
        profile.login(User(phone="1", pin="a"))
        profile.login(User(phone="2", pin="b"))
        reloaded = ProfileHolder(self.store)
        self.assertEqual(reloaded.load(), User(phone="2", pin="b"))

    def test_saved_profile_prefills_but_does_not_authenticate(self):
        ProfileHolder(self.store).login(User(phone="555", pin="0000"))
        profile = ProfileHolder(self.store)
        profile.load()
        self.assertEqual(profile.existing_user.phone, "555")
        self.assertFalse(profile.is_authenticated)

    def test_corrupt_profile_is_ignored(self):
        self.store.set(USER_KEY, "{broken")
        profile = ProfileHolder(self.store)
        with self.assertLogs("pos_session", level="WARNING"):
            self.assertIsNone(profile.load())

    def test_profile_key_follows_environment(self):
        with mock.patch.dict(os.environ, {"QUICKBILL_USER_KEY": "shop_operator"}):
            profile = ProfileHolder(self.store)
        profile.login(User(phone="555", pin="0000"))
        self.assertIsNotNone(self.store.get("shop_operator"))
        self.assertIsNone(self.store.get(USER_KEY))

    def test_logout_keeps_profile(self):
        profile = ProfileHolder(self.store)
        profile.login(User(phone="555", pin="0000"))
        profile.logout()
        self.assertFalse(profile.is_authenticated)
        self.assertIsNotNone(self.store.get(USER_KEY))


class ViewCoordinatorTest(unittest.TestCase):
    def setUp(self):
        self.store = SQLiteStore(sqlite3.connect(":memory:"))
        self.repo = BillingRepository(self.store, backup_dir=None).load()
        self.profile = ProfileHolder(self.store)
        self.views = ViewCoordinator(self.repo, self.profile)

    def tearDown(self):
        self.store.close()

    def test_auth_view_until_login(self):
        self.assertIs(self.views.active_view, AppView.AUTH)
        self.assertEqual(self.views.render(), {"view": "auth", "existingUser": None})
        self.views.switch("history")
        self.assertIs(self.views.active_view, AppView.AUTH)

    def test_auth_render_does_not_expose_pin(self):
        ProfileHolder(self.store).login(User(phone="555", pin="0000"))
        self.profile.load()
        self.assertEqual(self.views.render()["existingUser"], {"phone": "555"})

    def test_billing_is_default_after_login(self):
        self.profile.login(User(phone="555", pin="0000"))
        self.repo.add_item(Item(id="i1", name="Tea", rate=10, category="Beverage"))
        payload = self.views.render()
        self.assertEqual(payload["view"], "billing")
        self.assertEqual(payload["phone"], "555")
        self.assertEqual(payload["items"][0]["id"], "i1")
        self.assertIsNone(payload["latestTransaction"])

    def test_history_view_lists_transactions(self):
        self.profile.login(User(phone="555", pin="0000"))
        tea = Item(id="i1", name="Tea", rate=10, category="Beverage")
        txn = self.repo.save_transaction(build_transaction([build_bill_item(tea, 2)], txn_id="t1"))
        self.assertIs(self.views.switch(AppView.HISTORY), AppView.HISTORY)
        payload = self.views.render()
        self.assertEqual([t["id"] for t in payload["transactions"]], ["t1"])
        self.assertEqual(payload["latestTransaction"]["totalAmount"], txn.total_amount)
        self.assertNotIn("items", payload)

    def test_inventory_view(self):
        self.profile.login(User(phone="555", pin="0000"))
        self.views.switch(" Inventory ")
        self.assertEqual(self.views.render()["view"], "inventory")

    def test_auth_after_login_falls_back_to_billing(self):
        self.profile.login(User(phone="555", pin="0000"))
        self.views.switch("auth")
        self.assertIs(self.views.active_view, AppView.BILLING)

    def test_unknown_view_falls_back_to_billing(self):
        self.profile.login(User(phone="555", pin="0000"))
        self.views.switch(AppView.HISTORY)
        with self.assertLogs("pos_views", level="WARNING"):
            self.assertIs(self.views.switch("reports"), AppView.BILLING)
        self.assertIs(self.views.current_view, AppView.BILLING)
        self.assertEqual(self.views.render()["view"], "billing")


if __name__ == "__main__":
    unittest.main()
