import datetime as dt
import unittest

import pricing


def entry(rate, valid_from=None, valid_to=None, **extra):
    doc = {"type": "ItemPriceList", "item": "ITEM-1", "priceList": "Retail", "Rate": rate}
    if valid_from is not None:
        doc["Valid_From"] = valid_from
    if valid_to is not None:
        doc["Valid_To"] = valid_to
    doc.update(extra)
    return doc


class PriceValidityTest(unittest.TestCase):
    def test_unbounded_entry_is_always_valid(self):
        e = entry(10)
        for day in ("1999-01-01", "2024-02-29", "2099-12-31"):
            self.assertTrue(pricing.is_price_valid(e, day))
        self.assertTrue(pricing.is_price_valid(entry(10, "", ""), "2030-05-05"))

    def test_bounds_are_inclusive(self):
        e = entry(10, "2024-01-01", "2024-01-31")
        self.assertTrue(pricing.is_price_valid(e, "2024-01-01"))
        self.assertTrue(pricing.is_price_valid(e, "2024-01-31"))
        self.assertFalse(pricing.is_price_valid(e, "2023-12-31"))
        self.assertFalse(pricing.is_price_valid(e, "2024-02-01"))

    def test_time_suffix_is_ignored(self):
        e = entry(10, "2024-03-01T00:00:00Z", "2024-03-01 23:59:59")
        self.assertTrue(pricing.is_price_valid(e, dt.date(2024, 3, 1)))
        self.assertTrue(pricing.is_price_valid(e, dt.datetime(2024, 3, 1, 18, 30)))
        self.assertFalse(pricing.is_price_valid(e, "2024-03-02"))


class BestPriceTest(unittest.TestCase):
    def test_latest_valid_from_wins(self):
        a = entry(10, "2024-01-01", _id="a")
        b = entry(12, "2024-06-01", _id="b")
        for entries in ([a, b], [b, a]):
            result = pricing.best_valid_price(entries, "2024-12-01")
            self.assertTrue(result["valid"])
            self.assertEqual(result["price"], 12.0)

    def test_entry_without_valid_from_loses_to_dated_entry(self):
        result = pricing.best_valid_price([entry(9), entry(11, "2024-01-01")], "2024-05-01")
        self.assertEqual(result["price"], 11.0)

    def test_exact_tie_uses_modified_then_id(self):
        older = entry(10, "2024-01-01", _id="z", modified="2024-01-01 09:00:00")
        newer = entry(15, "2024-01-01", _id="a", modified="2024-02-01 09:00:00")
        self.assertEqual(pricing.best_valid_price([newer, older], "2024-03-01")["price"], 15.0)
        self.assertEqual(pricing.best_valid_price([older, newer], "2024-03-01")["price"], 15.0)

        x = entry(20, "2024-01-01", _id="PL-1")
        y = entry(25, "2024-01-01", _id="PL-2")
        self.assertEqual(pricing.best_valid_price([y, x], "2024-03-01")["price"], 25.0)
        self.assertEqual(pricing.best_valid_price([x, y], "2024-03-01")["price"], 25.0)

    def test_no_entries_and_no_valid_entries(self):
        self.assertEqual(pricing.best_valid_price([], "2024-01-01"),
                         {"valid": False, "price": 0.0, "note": "No price entries found"})
        expired = pricing.best_valid_price([entry(5, "2020-01-01", "2020-12-31")], "2024-01-01")
        self.assertFalse(expired["valid"])
        self.assertEqual(expired["note"], "No valid prices for current date")

    def test_resolve_price_filters_by_item_and_list(self):
        entries = [
            entry(10, "2024-01-01"),
            entry(99, "2024-01-01", priceList="Wholesale"),
            entry(7, "2024-01-01", item="ITEM-2"),
        ]
        retail = pricing.filter_by_price_list(entries, "Retail")
        self.assertEqual(len(retail), 2)
        self.assertEqual(pricing.resolve_price("ITEM-1", retail, "2024-02-01")["price"], 10.0)
        self.assertEqual(pricing.resolve_price("ITEM-2", retail, "2024-02-01")["price"], 7.0)
        missing = pricing.resolve_price("ITEM-3", retail, "2024-02-01")
        self.assertFalse(missing["valid"])
        self.assertEqual(missing["note"], "Item not found in price list")


if __name__ == "__main__":
    unittest.main()
