"""Sale lifecycle for one terminal: Cart -> Draft -> Submitted.

The cart lives in memory. A held sale becomes a Draft in the terminal's
local queue (session storage, never replicated). Checkout writes exactly one
Submitted ``POSInvoice`` to the document store under the next number of the
store/terminal counter::

    POSInvoice::<store>::<terminal>::<storeNum>-<termNum>-<seq:06d>

The counter only moves after the store accepted the write, and every cart
carries a ``sale_key`` so a repeated checkout of the same sale returns the
invoice already written instead of consuming another number.
"""
import datetime as dt
import logging
import random
import uuid
from typing import Any, Callable, Dict, List, Optional

import documents
import session_storage as keys
from pos_config import CREATED_BY, CURRENCY, DEFAULT_STORE, DEFAULT_TERMINAL, SCHEMA_VERSION, TAX_RATE, TAX_TYPE
from pos_errors import ConflictError, NotFoundError, ValidationError

log = logging.getLogger(__name__)

DRAFT_MARKER = 'DRAFT'
MAX_NUMBER_ATTEMPTS = 5


def _money(value: Any) -> float:
    return round(float(value or 0), 2)


def _segment_number(name: str) -> str:
    """``store-12`` -> ``12``; names without a dash are used whole."""
    return str(name).rsplit('-', 1)[-1]


def compute_totals(lines: List[Dict[str, Any]], discount: float = 0.0, tax_rate: float = TAX_RATE) -> Dict[str, float]:
    subtotal = _money(sum(_money(float(l['rate']) * float(l['qty'])) for l in lines))
    tax_amount = _money(subtotal * tax_rate)
    discount = _money(discount)
    return {
        'subtotal': subtotal,
        'tax_amount': tax_amount,
        'discount': discount,
        'total_amount': _money(subtotal + tax_amount - discount),
    }


class Cart:
    def __init__(self):
        self.lines: List[Dict[str, Any]] = []
        self.customer: Optional[Dict[str, Any]] = None
        self.payment_method = 'Cash'
        self.discount = 0.0
        self.cash_received = 0.0
        self.draft_id: Optional[str] = None
        self.draft_created: Optional[str] = None
        self.sale_key = uuid.uuid4().hex

    def is_empty(self) -> bool:
        return not self.lines

    def line(self, item_id: str) -> Dict[str, Any]:
        for line in self.lines:
            if line['item_id'] == item_id:
                return line
        raise NotFoundError(f'Item {item_id} is not in the cart')

    def to_dict(self, tax_rate: float = TAX_RATE) -> Dict[str, Any]:
        return {
            'lines': [dict(l) for l in self.lines],
            'customer': self.customer,
            'payment_method': self.payment_method,
            'discount': self.discount,
            'cash_received': self.cash_received,
            'draft_id': self.draft_id,
            'continuing_draft': self.draft_id is not None,
            'sale_key': self.sale_key,
            'totals': compute_totals(self.lines, self.discount, tax_rate),
        }


def validate_cart(cart: Cart):
    if cart.is_empty():
        raise ValidationError('Cart is empty', rule='empty_cart')
    if not cart.customer or not cart.customer.get('_id'):
        raise ValidationError('Please select a customer', rule='missing_customer')
    for line in cart.lines:
        if float(line['rate']) < 0:
            raise ValidationError(f"Negative rate for {line['item_name']}", rule='negative_rate')
        if float(line['qty']) <= 0:
            raise ValidationError(f"Quantity for {line['item_name']} must be greater than zero",
                                  rule='invalid_quantity')
    if float(cart.discount or 0) < 0:
        raise ValidationError('Discount cannot be negative', rule='negative_discount')


class InvoiceManager:
    def __init__(self, store, storage: keys.SessionStorage, pos, sync=None,
                 tax_rate: float = TAX_RATE, clock: Optional[Callable[[], dt.datetime]] = None,
                 created_by: str = CREATED_BY):
        self.store = store
        self.storage = storage
        self.pos = pos
        self.sync = sync
        self.tax_rate = tax_rate
        self.clock = clock or dt.datetime.now
        self.created_by = created_by
        self.cart = Cart()

    # ---------- terminal / numbering ----------
    def terminal_info(self) -> Dict[str, str]:
        store = self.storage.get(keys.STORE) or DEFAULT_STORE
        terminal = self.storage.get(keys.TERMINAL) or DEFAULT_TERMINAL
        return {
            'store': store,
            'terminal': terminal,
            'store_num': _segment_number(store),
            'term_num': _segment_number(terminal),
        }

    def _counter_key(self) -> str:
        t = self.terminal_info()
        return f"{keys.INVOICE_SEQ_PREFIX}::{t['store']}::{t['terminal']}"

    def current_sequence(self) -> int:
        raw = self.storage.get(self._counter_key())
        try:
            seq = int(raw) if raw is not None else 1
        except ValueError:
            log.warning("Invalid invoice counter %r, starting from 1", raw)
            seq = 1
        return max(seq, 1)

    def _advance_sequence(self, used: int):
        if used + 1 > self.current_sequence():
            self.storage.set(self._counter_key(), str(used + 1))

    def generate_invoice_number(self, seq: Optional[int] = None) -> Dict[str, Any]:
        t = self.terminal_info()
        seq = self.current_sequence() if seq is None else seq
        display = f"{t['store_num']}-{t['term_num']}-{seq:06d}"
        return {
            'invoice_id': f"{documents.POS_INVOICE}::{t['store']}::{t['terminal']}::{display}",
            'external_id': display,
            'display_number': display,
            'sequence_no': seq,
            'is_from_draft': self.cart.draft_id is not None,
        }

    def generate_draft_id(self) -> str:
        t = self.terminal_info()
        millis = int(self.clock().timestamp() * 1000)
        suffix = f"{random.randint(0, 999):03d}"
        return (f"{documents.POS_INVOICE}::{t['store']}::{t['terminal']}::"
                f"{DRAFT_MARKER}-{t['store_num']}-{t['term_num']}-{millis}-{suffix}")

    @staticmethod
    def parse_draft_id(draft_id: Any) -> Dict[str, Any]:
        parts = documents.split_doc_id(draft_id) if isinstance(draft_id, str) else []
        marker = parts[3].split('-') if len(parts) == 4 else []
        if (len(parts) != 4 or parts[0] != documents.POS_INVOICE or len(marker) != 5
                or marker[0] != DRAFT_MARKER or not marker[3].isdigit()):
            raise ValidationError(f'Malformed draft id {draft_id!r}', rule='draft_id')
        return {
            'store': parts[1],
            'terminal': parts[2],
            'store_num': marker[1],
            'term_num': marker[2],
            'timestamp': int(marker[3]),
            'suffix': marker[4],
        }

    # ---------- cart editing ----------
    def new_cart(self) -> Cart:
        self.cart = Cart()
        return self.cart

    def add_item(self, item: Any, qty: float = 1) -> Dict[str, Any]:
        if isinstance(item, str):
            item = self.store.get(item)
        if item.get('disabled'):
            raise ValidationError(f"{item.get('item_name')} is not available for sale", rule='item_disabled')
        if float(qty) <= 0:
            raise ValidationError('Quantity must be greater than zero', rule='invalid_quantity')
        item_id = item['_id']
        for line in self.cart.lines:
            if line['item_id'] == item_id:
                line['qty'] = float(line['qty']) + float(qty)
                line['amount'] = _money(line['rate'] * line['qty'])
                return line
        price = self.pos.get_item_price(item_id, item.get('item_code'))
        if price['valid']:
            rate = float(price['price'])
        else:
            rate = float(item.get('standard_rate') or 0)
            log.info("No price list rate for %s (%s), using base rate %.2f", item_id, price['note'], rate)
        line = {
            'item_id': item_id,
            'item_code': item.get('item_code') or item_id,
            'item_name': item.get('item_name') or item_id,
            'qty': float(qty),
            'rate': rate,
            'amount': _money(rate * float(qty)),
            'uom': item.get('stock_uom') or item.get('default_uom') or 'Nos',
        }
        self.cart.lines.append(line)
        return line

    def set_quantity(self, item_id: str, qty: float) -> Dict[str, Any]:
        if float(qty) <= 0:
            raise ValidationError('Quantity must be greater than zero', rule='invalid_quantity')
        line = self.cart.line(item_id)
        line['qty'] = float(qty)
        line['amount'] = _money(line['rate'] * line['qty'])
        return line

    def set_rate(self, item_id: str, rate: float) -> Dict[str, Any]:
        if not self.pos.permissions()['allow_rate_change']:
            raise ValidationError('Rate changes are not allowed for this POS profile', rule='rate_change_not_allowed')
        if float(rate) < 0:
            raise ValidationError('Rate cannot be negative', rule='negative_rate')
        line = self.cart.line(item_id)
        line['rate'] = float(rate)
        line['amount'] = _money(line['rate'] * line['qty'])
        return line

    def remove_line(self, item_id: str):
        line = self.cart.line(item_id)
        self.cart.lines.remove(line)

    def set_customer(self, customer: Any) -> Dict[str, Any]:
        if isinstance(customer, str):
            customer = self.store.get(customer)
        self.cart.customer = customer
        return customer

    def set_payment(self, method: str):
        if not method:
            raise ValidationError('Payment method is required', rule='payment_method')
        self.cart.payment_method = method

    def set_discount(self, amount: float):
        amount = float(amount or 0)
        if amount < 0:
            raise ValidationError('Discount cannot be negative', rule='negative_discount')
        if amount > 0 and not self.pos.permissions()['allow_discount_change']:
            raise ValidationError('Discounts are not allowed for this POS profile', rule='discount_not_allowed')
        self.cart.discount = amount

    def set_cash_received(self, amount: float):
        amount = float(amount or 0)
        if amount < 0:
            raise ValidationError('Cash received cannot be negative', rule='cash_received')
        self.cart.cash_received = amount

    # ---------- documents ----------
    def _build_doc(self, status: str, doc_id: str, number: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        cart = self.cart
        now = self.clock()
        stamp = now.isoformat(timespec='seconds')
        totals = compute_totals(cart.lines, cart.discount, self.tax_rate)
        submitted = status == documents.STATUS_SUBMITTED
        paid = totals['total_amount'] if submitted else 0.0
        t = self.terminal_info()
        return {
            '_id': doc_id,
            'type': documents.POS_INVOICE,
            'status': status,
            'erpnext_id': number['external_id'] if number else None,
            'sequence_no': number['sequence_no'] if number else None,
            'store': t['store'],
            'terminal': t['terminal'],
            'customer_id': cart.customer['_id'] if cart.customer else None,
            'customer_name': (cart.customer or {}).get('customer_name'),
            'items': [dict(l) for l in cart.lines],
            'taxes': [{'tax_type': TAX_TYPE, 'rate': round(self.tax_rate * 100, 4), 'amount': totals['tax_amount']}],
            'discounts': [{'amount': totals['discount']}] if totals['discount'] else [],
            'payment_method': cart.payment_method,
            'cash_received': _money(cart.cash_received),
            'change_amount': _money(max(cart.cash_received - paid, 0)) if submitted else 0.0,
            'subtotal': totals['subtotal'],
            'tax_amount': totals['tax_amount'],
            'discount_amount': totals['discount'],
            'total_amount': totals['total_amount'],
            'paid_amount': paid,
            'currency': CURRENCY,
            'posting_date': now.date().isoformat(),
            'posting_time': now.strftime('%H:%M:%S'),
            'creation_date': cart.draft_created or stamp,
            'modified_date': stamp,
            'AuditLogId': uuid.uuid4().hex,
            'SchemaVersion': SCHEMA_VERSION,
            'CreatedBy': self.created_by,
            'sale_key': cart.sale_key,
            'draft_id': cart.draft_id,
        }

    # ---------- drafts ----------
    def _draft_queue(self) -> List[Dict[str, Any]]:
        queue = self.storage.get_json(keys.DRAFT_INVOICES, [])
        return queue if isinstance(queue, list) else []

    def save_draft(self) -> Dict[str, Any]:
        """Hold the current sale; continuing a draft updates it in place."""
        validate_cart(self.cart)
        draft_id = self.cart.draft_id or self.generate_draft_id()
        if self.cart.draft_id is None:
            self.cart.draft_id = draft_id
        doc = self._build_doc(documents.STATUS_DRAFT, draft_id, None)
        queue = [d for d in self._draft_queue() if d.get('_id') != draft_id]
        queue.append(doc)
        self.storage.set_json(keys.DRAFT_INVOICES, queue)
        log.info("Draft %s saved (%d items, total %.2f)", documents.short_name(draft_id),
                 len(doc['items']), doc['total_amount'])
        self.new_cart()
        return doc

    def list_drafts(self) -> List[Dict[str, Any]]:
        return sorted(self._draft_queue(), key=lambda d: d.get('modified_date') or '', reverse=True)

    def get_draft(self, draft_id: str) -> Dict[str, Any]:
        self.parse_draft_id(draft_id)
        for doc in self._draft_queue():
            if doc.get('_id') == draft_id:
                return doc
        raise NotFoundError(f'Draft {draft_id} not found')

    def remove_draft(self, draft_id: str) -> bool:
        queue = self._draft_queue()
        kept = [d for d in queue if d.get('_id') != draft_id]
        if len(kept) == len(queue):
            return False
        self.storage.set_json(keys.DRAFT_INVOICES, kept)
        return True

    def resume_draft(self, draft_id: str) -> Cart:
        draft = self.get_draft(draft_id)
        cart = Cart()
        for saved in draft.get('items') or []:
            line = dict(saved)
            try:
                item = self.store.get(saved['item_id'])
                line['item_name'] = item.get('item_name') or line.get('item_name')
                line['item_code'] = item.get('item_code') or line.get('item_code')
                line['uom'] = item.get('stock_uom') or item.get('default_uom') or line.get('uom')
            except NotFoundError:
                log.info("Item %s from draft no longer in catalog, keeping saved details", saved['item_id'])
            line['qty'] = float(line['qty'])
            line['rate'] = float(line['rate'])
            line['amount'] = _money(line['rate'] * line['qty'])
            cart.lines.append(line)
        customer_id = draft.get('customer_id')
        try:
            cart.customer = self.store.get(customer_id)
        except NotFoundError:
            cart.customer = {'_id': customer_id, 'customer_name': draft.get('customer_name') or customer_id}
        cart.payment_method = draft.get('payment_method') or 'Cash'
        cart.discount = float(draft.get('discount_amount') or 0)
        cart.cash_received = float(draft.get('cash_received') or 0)
        cart.draft_id = draft_id
        cart.draft_created = draft.get('creation_date')
        cart.sale_key = draft.get('sale_key') or cart.sale_key
        self.cart = cart
        log.info("Resumed draft %s", documents.short_name(draft_id))
        return cart

    # ---------- submission ----------
    def _is_same_sale(self, doc: Optional[Dict[str, Any]], cart: Cart) -> bool:
        if not doc or doc.get('status') != documents.STATUS_SUBMITTED:
            return False
        if doc.get('sale_key') and doc.get('sale_key') == cart.sale_key:
            return True
        return bool(cart.draft_id) and doc.get('draft_id') == cart.draft_id

    def _find_submitted(self, cart: Cart) -> Optional[Dict[str, Any]]:
        selectors = [{'sale_key': cart.sale_key}]
        if cart.draft_id:
            selectors.append({'draft_id': cart.draft_id})
        for sel in selectors:
            sel.update({'type': documents.POS_INVOICE, 'status': documents.STATUS_SUBMITTED})
            found = self.store.find(sel)
            if found:
                return found[0]
        return None

    def _number_taken_by_other_sale(self, number: Dict[str, Any], cart: Cart) -> bool:
        holders = self.store.find({'type': documents.POS_INVOICE, 'erpnext_id': number['external_id']})
        return any(not self._is_same_sale(d, cart) for d in holders)

    def _fetch(self, doc_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.store.get(doc_id)
        except NotFoundError:
            return None

    def _finish(self, invoice: Dict[str, Any]) -> Dict[str, Any]:
        if invoice.get('sequence_no'):
            self._advance_sequence(int(invoice['sequence_no']))
        if self.cart.draft_id:
            self.remove_draft(self.cart.draft_id)
        self.new_cart()
        if self.sync is not None:
            try:
                self.sync.push_in_background()
            except Exception as exc:
                log.warning("Could not start background push: %s", exc)
        return invoice

    def submit(self) -> Dict[str, Any]:
        """Checkout: write the Submitted invoice once and advance the counter.

        Store-write failures propagate with the cart and counter untouched.
        """
        cart = self.cart
        validate_cart(cart)
        existing = self._find_submitted(cart)
        if existing:
            log.info("Sale %s already submitted as %s", cart.sale_key, existing.get('erpnext_id'))
            return self._finish(existing)

        # a draft that was written to the store becomes the Submitted invoice under its own id
        stored_draft = self._fetch(cart.draft_id) if cart.draft_id else None
        seq = self.current_sequence()
        for _ in range(MAX_NUMBER_ATTEMPTS):
            number = self.generate_invoice_number(seq)
            if self._number_taken_by_other_sale(number, cart):
                log.warning("Invoice number %s already used, skipping ahead", number['display_number'])
                seq += 1
                continue
            doc_id = stored_draft['_id'] if stored_draft else number['invoice_id']
            doc = self._build_doc(documents.STATUS_SUBMITTED, doc_id, number)
            if stored_draft:
                doc['_rev'] = stored_draft['_rev']
            try:
                result = self.store.put(doc)
            except ConflictError:
                current = self._fetch(doc_id)
                if self._is_same_sale(current, cart):
                    return self._finish(current)
                if stored_draft:
                    if current and current.get('status') == documents.STATUS_DRAFT:
                        stored_draft = current
                    else:
                        stored_draft = None
                elif current is not None:
                    log.warning("Invoice %s belongs to another sale, skipping ahead", number['display_number'])
                    seq += 1
                continue
            doc['_rev'] = result['rev']
            log.info("Invoice %s submitted (total %.2f)", number['display_number'], doc['total_amount'])
            return self._finish(doc)
        raise ConflictError(f'Could not assign an invoice number after {MAX_NUMBER_ATTEMPTS} attempts')

    def submit_draft(self, draft_id: str) -> Dict[str, Any]:
        """Resume and check out a held sale; a draft already checked out returns its invoice."""
        self.parse_draft_id(draft_id)
        done = self.store.find({'type': documents.POS_INVOICE, 'status': documents.STATUS_SUBMITTED,
                                'draft_id': draft_id})
        if done:
            log.info("Draft %s already submitted as %s", documents.short_name(draft_id), done[0].get('erpnext_id'))
            self.remove_draft(draft_id)
            return done[0]
        self.resume_draft(draft_id)
        return self.submit()

    def cancel(self) -> Dict[str, Any]:
        """Discard the cart; a continued draft is dropped from the local queue only."""
        draft_id = self.cart.draft_id
        removed = self.remove_draft(draft_id) if draft_id else False
        self.new_cart()
        return {'cancelled': True, 'draft_removed': removed, 'draft_id': draft_id}

    def list_invoices(self, all_terminals: bool = False) -> List[Dict[str, Any]]:
        """Submitted invoices from the store plus queued drafts, newest first."""
        submitted = self.store.find({'type': documents.POS_INVOICE, 'status': documents.STATUS_SUBMITTED})
        if not all_terminals:
            t = self.terminal_info()
            prefix = f"{documents.POS_INVOICE}::{t['store']}::{t['terminal']}::"
            submitted = [d for d in submitted if d['_id'].startswith(prefix)]
        rows = submitted + self._draft_queue()
        return sorted(rows, key=lambda d: d.get('modified_date') or '', reverse=True)
