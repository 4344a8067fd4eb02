import unittest
from unittest import mock

import requests

import receipt_agent
import receipts

INVOICE = {
    "_id": "POSInvoice::store-1::pos-1::1-1-000007",
    "erpnext_id": "1-1-000007",
    "posting_date": "2024-06-01",
    "posting_time": "10:15:00",
    "customer_name": "Walk-in",
    "items": [{"item_id": "Item::A", "item_name": "Apple", "qty": 2, "rate": 20, "amount": 40}],
    "taxes": [{"tax_type": "VAT", "rate": 15, "amount": 6}],
    "subtotal": 40, "tax_amount": 6, "discount_amount": 0, "total_amount": 46, "paid_amount": 46,
    "payment_method": "Cash", "cash_received": 50, "change_amount": 4, "currency": "SAR",
}


class BuildReceiptTest(unittest.TestCase):
    def test_lines_fit_width_and_show_totals(self):
        lines = receipts.build_receipt(INVOICE, width=32, header_lines=["My Shop"])
        self.assertEqual(lines[0].strip(), "My Shop")
        self.assertIn("Invoice: 1-1-000007", lines)
        self.assertTrue(all(len(l) <= 32 for l in lines))
        text = "\n".join(lines)
        self.assertIn("2 x 20.00", text)
        self.assertIn("VAT 15%", text)
        self.assertIn("46.00", text)
        self.assertIn("Change", text)
        self.assertNotIn("Discount", text)


class PrintInvoiceTest(unittest.TestCase):
    def test_posts_text_to_agent(self):
        session = mock.Mock()
        self.assertTrue(receipts.print_invoice(INVOICE, agent_url="http://127.0.0.1:5001/print", session=session))
        payload = session.post.call_args[1]["json"]
        self.assertTrue(payload["cut"])
        self.assertIn("TOTAL SAR", payload["text"])

    def test_failures_never_raise(self):
        session = mock.Mock()
        session.post.side_effect = requests.ConnectionError("agent down")
        self.assertFalse(receipts.print_invoice(INVOICE, agent_url="http://127.0.0.1:5001/print", session=session))
        self.assertFalse(receipts.print_invoice(INVOICE, agent_url=None))


class ReceiptAgentTest(unittest.TestCase):
    def setUp(self):
        self.client = receipt_agent.app.test_client()

    def test_render_payload_order(self):
        data = receipt_agent.render_payload("Hi", ["1b 61 01"], 2, True)
        self.assertEqual(data, b"\x1b\x40Hi\x1b\x61\x01\n\n\x1d\x56\x00")

    def test_print_writes_to_serial(self):
        with mock.patch.object(receipt_agent, "Serial") as serial_cls:
            resp = self.client.post("/print", json={"text": "Total 46.00\n", "cut": False, "line_feeds": 0})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.get_json()["ok"])
        port = serial_cls.return_value.__enter__.return_value
        port.write.assert_called_once_with(b"\x1b\x40Total 46.00\n")
        self.assertEqual(resp.headers["Access-Control-Allow-Origin"], "*")

    def test_bad_hex_is_rejected(self):
        with mock.patch.object(receipt_agent, "Serial") as serial_cls:
            resp = self.client.post("/print", json={"text": "x", "hex": ["zz"]})
        self.assertEqual(resp.status_code, 400)
        serial_cls.assert_not_called()

    def test_serial_error_is_reported(self):
        with mock.patch.object(receipt_agent, "Serial", side_effect=receipt_agent.SerialException("no port")):
            resp = self.client.post("/print", json={"text": "x"})
        self.assertEqual(resp.status_code, 500)
        self.assertFalse(resp.get_json()["ok"])


if __name__ == "__main__":
    unittest.main()
