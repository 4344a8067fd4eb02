import datetime as dt
import unittest

import session_storage as keys
from doc_store import LocalDocStore
from pos_errors import ConfigurationError, NotFoundError
from pos_profile import POSContext
from session_storage import MemorySessionStorage, SqliteSessionStorage


class POSContextTest(unittest.TestCase):
    def setUp(self):
        self.store = LocalDocStore(":memory:")
        self.store.put({"_id": "POSProfile::Main", "type": "POSProfile", "erpnext_id": "Main",
                        "price_list_id": "Retail", "allow_rate_change": 1, "payment_methods": ["Cash", "Card"]})
        self.store.put({"_id": "POSProfile::Outlet", "type": "POSProfile", "erpnext_id": "Outlet",
                        "price_list_id": "Clearance", "enable_customer_discount": 1})
        for n, (item, plist, rate) in enumerate([("A", "Retail", 10), ("A", "Clearance", 6), ("Item::B", "Retail", 4)]):
            self.store.put({"_id": f"ItemPriceList::{n}", "type": "ItemPriceList", "item": item,
                            "priceList": plist, "Rate": rate})
        self.storage = MemorySessionStorage({keys.STORE: "store-2"})
        self.pos = POSContext(self.store, self.storage, today=lambda: dt.date(2024, 1, 1))

    def tearDown(self):
        self.store.close()

    def test_requires_a_selected_profile(self):
        with self.assertRaises(ConfigurationError):
            self.pos.initialize_pos_data()
        self.assertFalse(self.pos.is_loaded)
        self.assertIn("No POS profile selected", self.pos.load_error)

    def test_unknown_profile_lists_available(self):
        with self.assertRaises(NotFoundError) as ctx:
            self.pos.initialize_pos_data("Nope")
        self.assertIn("Main, Outlet", ctx.exception.message)
        self.assertEqual(self.pos.load_error, ctx.exception.message)

    def test_loaded_profile_is_persisted_and_reused(self):
        profile = self.pos.initialize_pos_data("Main")
        self.assertEqual(profile["price_list_id"], "Retail")
        self.assertEqual(len(self.pos.filtered_prices), 2)
        self.assertEqual(self.storage.get(keys.POS_PROFILE_NAME), "Main")
        self.assertEqual(self.storage.get_json(keys.POS_PROFILE)["erpnext_id"], "Main")

        restarted = POSContext(self.store, self.storage)
        self.assertEqual(restarted.ensure_loaded()["erpnext_id"], "Main")

    def test_item_price_prefers_code_then_id(self):
        self.pos.initialize_pos_data("Main")
        self.assertEqual(self.pos.get_item_price("Item::A", "A")["price"], 10.0)
        self.assertEqual(self.pos.get_item_price("Item::B", "B")["price"], 4.0)
        self.assertFalse(self.pos.get_item_price("Item::C", "C")["valid"])

    def test_switch_profile_changes_price_list_and_permissions(self):
        self.pos.initialize_pos_data("Main")
        perms = self.pos.permissions()
        self.assertTrue(perms["allow_rate_change"])
        self.assertFalse(perms["allow_discount_change"])
        self.assertEqual(perms["payment_methods"], ["Cash", "Card"])
        self.pos.switch_pos_profile("Outlet")
        self.assertEqual(self.pos.get_item_price("Item::A", "A")["price"], 6.0)
        self.assertTrue(self.pos.permissions()["allow_discount_change"])

    def test_reset_clears_profile_only(self):
        self.pos.initialize_pos_data("Main")
        self.pos.reset()
        self.assertIsNone(self.storage.get(keys.POS_PROFILE_NAME))
        self.assertEqual(self.storage.get(keys.STORE), "store-2")
        self.assertFalse(self.pos.is_loaded)


class SessionStorageTest(unittest.TestCase):
    def test_clear_session_preserves_terminal_state(self):
        storage = SqliteSessionStorage(":memory:")
        try:
            storage.set(keys.STORE, "store-1")
            storage.set(keys.SESSION_ID, "abc")
            storage.set(keys.IS_LOGGED_IN, "true")
            storage.set("invoiceSeqNo::store-1::pos-1", "42")
            storage.set_json(keys.DRAFT_INVOICES, [{"_id": "d"}])
            storage.clear_session()
            self.assertIsNone(storage.get(keys.SESSION_ID))
            self.assertIsNone(storage.get(keys.IS_LOGGED_IN))
            self.assertEqual(storage.get(keys.STORE), "store-1")
            self.assertEqual(storage.get("invoiceSeqNo::store-1::pos-1"), "42")
            self.assertEqual(storage.get_json(keys.DRAFT_INVOICES), [{"_id": "d"}])
        finally:
            storage.close()

    def test_unreadable_json_falls_back_to_default(self):
        storage = MemorySessionStorage({keys.DRAFT_INVOICES: "{not json"})
        self.assertEqual(storage.get_json(keys.DRAFT_INVOICES, []), [])


if __name__ == "__main__":
    unittest.main()
