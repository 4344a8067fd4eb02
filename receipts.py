"""Plain-text receipts for finalized invoices and hand-off to the print agent."""
import logging
from typing import Any, Dict, List, Optional

import requests

from pos_config import CURRENCY, RECEIPT_AGENT_URL

log = logging.getLogger(__name__)

RECEIPT_WIDTH = 42


def _pair(left: str, right: str, width: int) -> str:
    gap = max(width - len(left) - len(right), 1)
    return f"{left}{' ' * gap}{right}"


def _amount(value: Any) -> str:
    return f"{float(value or 0):,.2f}"


def build_receipt(invoice: Dict[str, Any], width: int = RECEIPT_WIDTH,
                  header_lines: Optional[List[str]] = None) -> List[str]:
    currency = invoice.get('currency') or CURRENCY
    rule = '-' * width
    lines = [h.center(width) for h in (header_lines or [])]
    lines += [
        f"Invoice: {invoice.get('erpnext_id') or invoice.get('_id')}",
        f"Date: {invoice.get('posting_date', '')} {invoice.get('posting_time', '')}".rstrip(),
        f"Customer: {invoice.get('customer_name') or invoice.get('customer_id') or ''}",
        rule,
    ]
    for item in invoice.get('items') or []:
        name = str(item.get('item_name') or item.get('item_id'))[:width]
        lines.append(name)
        qty = float(item.get('qty') or 0)
        qty_text = f"{qty:g} x {_amount(item.get('rate'))}"
        lines.append(_pair(f"  {qty_text}", _amount(item.get('amount')), width))
    lines.append(rule)
    lines.append(_pair('Subtotal', _amount(invoice.get('subtotal')), width))
    for tax in invoice.get('taxes') or []:
        label = f"{tax.get('tax_type', 'Tax')} {float(tax.get('rate') or 0):g}%"
        lines.append(_pair(label, _amount(tax.get('amount')), width))
    if float(invoice.get('discount_amount') or 0):
        lines.append(_pair('Discount', '-' + _amount(invoice.get('discount_amount')), width))
    lines.append(_pair(f"TOTAL {currency}", _amount(invoice.get('total_amount')), width))
    lines.append(_pair(f"Paid ({invoice.get('payment_method') or 'Cash'})",
                       _amount(invoice.get('paid_amount')), width))
    if float(invoice.get('cash_received') or 0):
        lines.append(_pair('Cash received', _amount(invoice.get('cash_received')), width))
        lines.append(_pair('Change', _amount(invoice.get('change_amount')), width))
    lines.append(rule)
    lines.append('Thank you for shopping with us'.center(width))
    return lines


def print_invoice(invoice: Dict[str, Any], agent_url: Optional[str] = RECEIPT_AGENT_URL,
                  session: Optional[requests.Session] = None, timeout: float = 5) -> bool:
    """Send the receipt to the local print agent. Never raises; returns whether it printed."""
    if not agent_url:
        log.info("Receipt agent not configured; skipping print for %s", invoice.get('erpnext_id'))
        return False
    text = "\n".join(build_receipt(invoice)) + "\n"
    http = session or requests
    try:
        resp = http.post(agent_url, json={'text': text, 'cut': True}, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as exc:
        log.warning("Receipt print failed for %s: %s", invoice.get('erpnext_id'), exc)
        return False
    return True
