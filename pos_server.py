import logging
import threading
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify, request

import documents
import pos_config
import receipts
import session_storage as keys
from doc_store import LocalDocStore
from erp_client import ErpClient
from invoices import InvoiceManager
from pos_errors import PosError, ValidationError
from pos_profile import POSContext
from remote_store import RemoteDocStore
from sync_manager import DIRECTIONS, BackgroundSync, SyncManager

app = Flask(__name__)
app.logger.setLevel(getattr(logging, pos_config.LOG_LEVEL_NAME, logging.INFO))


class Terminal:
    """Everything one till needs, wired together once per process."""

    def __init__(self, store, storage: keys.SessionStorage, remote=None, erp: Optional[ErpClient] = None,
                 background=None, clock=None):
        self.store = store
        self.storage = storage
        self.remote = remote
        self.pos = POSContext(store, storage)
        self.sync = SyncManager(store, remote, pos=self.pos, background=background)
        self.invoices = InvoiceManager(store, storage, self.pos, sync=self.sync if remote else None, clock=clock)
        self.erp = erp or ErpClient(storage)


def _remote_from_config() -> Optional[RemoteDocStore]:
    if not pos_config.COUCHDB_URL:
        return None
    return RemoteDocStore(pos_config.COUCHDB_URL, pos_config.COUCHDB_USERNAME, pos_config.COUCHDB_PASSWORD,
                          timeout=pos_config.SYNC_TIMEOUT)


def create_terminal() -> Terminal:
    store = LocalDocStore(pos_config.POS_DB_PATH)
    storage = keys.SqliteSessionStorage(pos_config.POS_SESSION_DB)
    remote = _remote_from_config()
    background = None
    if remote is not None:
        background = BackgroundSync(lambda: LocalDocStore(pos_config.POS_DB_PATH), _remote_from_config,
                                    timeout=pos_config.SYNC_TIMEOUT)
    return Terminal(store, storage, remote=remote, background=background)


_TERMINAL: Optional[Terminal] = None
_BOOTSTRAP_LOCK = threading.Lock()


def configure_terminal(terminal: Optional[Terminal]):
    global _TERMINAL
    with _BOOTSTRAP_LOCK:
        _TERMINAL = terminal


def terminal() -> Terminal:
    global _TERMINAL
    with _BOOTSTRAP_LOCK:
        if _TERMINAL is None:
            _TERMINAL = create_terminal()
            app.logger.info("Terminal components initialised (db=%s, remote=%s)",
                            pos_config.POS_DB_PATH, 'yes' if _TERMINAL.remote else 'none')
        return _TERMINAL


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _number(data: Dict[str, Any], field: str, default: Any = None) -> Any:
    if field not in data or data[field] is None:
        return default
    try:
        return float(data[field])
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a number', rule='bad_request')


def _cart_payload(t: Terminal) -> Dict[str, Any]:
    return {'status': 'success', 'cart': t.invoices.cart.to_dict(t.invoices.tax_rate)}


def _print_in_background(invoice: Dict[str, Any]):
    worker = threading.Thread(target=receipts.print_invoice, args=(invoice,), name='receipt-print', daemon=True)
    worker.start()


@app.errorhandler(PosError)
def handle_pos_error(exc: PosError):
    payload: Dict[str, Any] = {'status': 'error', 'message': exc.message or exc.__class__.__name__}
    rule = getattr(exc, 'rule', None)
    if rule:
        payload['rule'] = rule
    if exc.http_status >= 500:
        app.logger.warning("%s: %s (%s)", exc.__class__.__name__, exc.message, exc.detail or '')
    return jsonify(payload), exc.http_status


@app.after_request
def add_no_cache_headers(response):
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    response.headers['Pragma'] = 'no-cache'
    response.headers['X-Content-Type-Options'] = 'nosniff'
    return response


# ---------- session ----------
@app.route('/api/status')
def api_status():
    t = terminal()
    info = t.invoices.terminal_info()
    return jsonify({
        'status': 'success',
        'terminal': info,
        'logged_in': t.erp.is_authenticated(),
        'shift_open': t.storage.get(keys.SHIFT_OPEN) == 'true',
        'profile': t.pos.profile_name,
        'profile_loaded': t.pos.is_loaded,
        'profile_error': t.pos.load_error,
        'db_initialized': t.sync.is_initialized,
        'sync_status': t.sync.status,
        'next_invoice': t.invoices.generate_invoice_number()['display_number'],
        'drafts': len(t.invoices.list_drafts()),
    })


@app.route('/api/login', methods=['POST'])
def api_login():
    """Authenticate against ERPNext, then bring the local database up (offline if need be)."""
    data = _json_body()
    t = terminal()
    result = t.erp.login(data.get('username', ''), data.get('password', ''))
    if not result['success']:
        return jsonify({'status': 'error', 'message': result['error']}), 401
    init = t.sync.initialize_database(sync_direction='pull')
    t.storage.set(keys.DB_INITIALIZED, 'true' if init['success'] else 'false')
    return jsonify({'status': 'success', 'user': result['user'], 'database': init})


@app.route('/api/profiles')
def api_profiles():
    t = terminal()
    profiles = t.store.find({'type': documents.POS_PROFILE})
    return jsonify({'status': 'success', 'profiles': [
        {'erpnext_id': p.get('erpnext_id'), 'name': p.get('name') or p.get('erpnext_id'),
         'price_list_id': p.get('price_list_id')}
        for p in profiles
    ]})


@app.route('/api/select', methods=['POST'])
def api_select():
    """Pick the POS profile, store and terminal, then open the shift."""
    data = _json_body()
    t = terminal()
    profile_name = (data.get('profile') or '').strip()
    store = (data.get('store') or '').strip()
    till = (data.get('terminal') or '').strip()
    if not profile_name or not store or not till:
        raise ValidationError('Profile, store and terminal are required', rule='bad_request')
    profile = t.pos.switch_pos_profile(profile_name)
    shift = t.erp.open_shift(profile_name, store, till, opening_balances=data.get('opening_balances'))
    if not shift['success']:
        app.logger.warning("Shift opening failed, continuing offline: %s", shift['error'])
        t.storage.set(keys.STORE, store)
        t.storage.set(keys.TERMINAL, till)
    return jsonify({
        'status': 'success',
        'profile': profile,
        'permissions': t.pos.permissions(),
        'shift': shift,
        'terminal': t.invoices.terminal_info(),
    })


@app.route('/api/shift/close', methods=['POST'])
def api_close_shift():
    t = terminal()
    push = t.sync.perform_sync('push') if t.remote else None
    result = t.erp.close_shift()
    return jsonify({'status': 'success' if result['success'] else 'error', 'shift': result, 'sync': push})


@app.route('/api/logout', methods=['POST'])
def api_logout():
    t = terminal()
    result = t.erp.logout()
    t.pos.reset()
    t.sync.reset()
    t.invoices.new_cart()
    return jsonify({'status': 'success', 'remote_error': result.get('remote_error')})


# ---------- catalog ----------
def _matches(doc: Dict[str, Any], term: str, fields: List[str]) -> bool:
    if not term:
        return True
    return any(term in str(doc.get(f) or '').lower() for f in fields)


@app.route('/api/items')
def api_items():
    t = terminal()
    t.pos.ensure_loaded()
    term = (request.args.get('search') or '').strip().lower()
    items = []
    for item in t.store.find({'type': documents.ITEM}):
        if item.get('disabled') or not _matches(item, term, ['item_name', 'item_code', 'item_group']):
            continue
        price = t.pos.get_item_price(item['_id'], item.get('item_code'))
        items.append({
            'item_id': item['_id'],
            'item_code': item.get('item_code'),
            'item_name': item.get('item_name'),
            'item_group': item.get('item_group'),
            'uom': item.get('stock_uom') or item.get('default_uom'),
            'rate': price['price'] if price['valid'] else item.get('standard_rate'),
            'price_note': price['note'],
        })
    return jsonify({'status': 'success', 'items': items})


@app.route('/api/customers')
def api_customers():
    t = terminal()
    term = (request.args.get('search') or '').strip().lower()
    customers = [
        {'customer_id': c['_id'], 'customer_name': c.get('customer_name'),
         'mobile_no': c.get('mobile_no'), 'email_id': c.get('email_id')}
        for c in t.store.find({'type': documents.CUSTOMER})
        if _matches(c, term, ['customer_name', 'mobile_no', 'email_id'])
    ]
    return jsonify({'status': 'success', 'customers': customers})


# ---------- cart ----------
@app.route('/api/cart')
def api_cart():
    return jsonify(_cart_payload(terminal()))


@app.route('/api/cart/items', methods=['POST'])
def api_cart_add():
    data = _json_body()
    t = terminal()
    t.pos.ensure_loaded()
    item_id = data.get('item_id')
    if not item_id:
        raise ValidationError('item_id is required', rule='bad_request')
    t.invoices.add_item(item_id, _number(data, 'qty', 1))
    return jsonify(_cart_payload(t))


@app.route('/api/cart/items/<path:item_id>', methods=['PATCH'])
def api_cart_update(item_id: str):
    data = _json_body()
    t = terminal()
    qty = _number(data, 'qty')
    rate = _number(data, 'rate')
    if qty is not None:
        t.invoices.set_quantity(item_id, qty)
    if rate is not None:
        t.invoices.set_rate(item_id, rate)
    return jsonify(_cart_payload(t))


@app.route('/api/cart/items/<path:item_id>', methods=['DELETE'])
def api_cart_remove(item_id: str):
    t = terminal()
    t.invoices.remove_line(item_id)
    return jsonify(_cart_payload(t))


@app.route('/api/cart/customer', methods=['POST'])
def api_cart_customer():
    data = _json_body()
    t = terminal()
    if not data.get('customer_id'):
        raise ValidationError('customer_id is required', rule='bad_request')
    t.invoices.set_customer(data['customer_id'])
    return jsonify(_cart_payload(t))


@app.route('/api/cart/payment', methods=['POST'])
def api_cart_payment():
    data = _json_body()
    t = terminal()
    if data.get('payment_method'):
        t.invoices.set_payment(data['payment_method'])
    discount = _number(data, 'discount')
    if discount is not None:
        t.invoices.set_discount(discount)
    cash = _number(data, 'cash_received')
    if cash is not None:
        t.invoices.set_cash_received(cash)
    return jsonify(_cart_payload(t))


@app.route('/api/cart/cancel', methods=['POST'])
def api_cart_cancel():
    t = terminal()
    result = t.invoices.cancel()
    return jsonify({'status': 'success', **result})


# ---------- drafts ----------
@app.route('/api/drafts', methods=['POST'])
def api_save_draft():
    draft = terminal().invoices.save_draft()
    return jsonify({'status': 'success', 'draft': draft})


@app.route('/api/drafts')
def api_list_drafts():
    return jsonify({'status': 'success', 'drafts': terminal().invoices.list_drafts()})


@app.route('/api/drafts/<path:draft_id>/resume', methods=['POST'])
def api_resume_draft(draft_id: str):
    t = terminal()
    t.invoices.resume_draft(draft_id)
    return jsonify(_cart_payload(t))


@app.route('/api/drafts/<path:draft_id>', methods=['DELETE'])
def api_delete_draft(draft_id: str):
    t = terminal()
    t.invoices.parse_draft_id(draft_id)
    if not t.invoices.remove_draft(draft_id):
        return jsonify({'status': 'error', 'message': 'Draft not found'}), 404
    return jsonify({'status': 'success'})


# ---------- checkout ----------
@app.route('/api/submit', methods=['POST'])
def api_submit():
    data = _json_body()
    t = terminal()
    invoice = t.invoices.submit()
    if data.get('print', True):
        _print_in_background(invoice)
    return jsonify({
        'status': 'success',
        'invoice': invoice,
        'receipt': receipts.build_receipt(invoice),
    })


@app.route('/api/invoices')
def api_invoices():
    all_terminals = request.args.get('all') in ('1', 'true', 'yes')
    return jsonify({'status': 'success', 'invoices': terminal().invoices.list_invoices(all_terminals)})


# ---------- sync ----------
@app.route('/api/sync', methods=['POST'])
def api_sync():
    data = _json_body()
    direction = data.get('direction') or 'both'
    if direction not in DIRECTIONS:
        raise ValidationError(f'Unknown sync direction {direction!r}', rule='bad_request')
    t = terminal()
    result = t.sync.perform_sync(direction)
    code = 200 if result.get('success') else 503
    return jsonify({'status': 'success' if result.get('success') else 'error',
                    'message': result.get('error'), 'sync': result}), code


@app.route('/api/sync/status')
def api_sync_status():
    t = terminal()
    return jsonify({'status': 'success', 'sync_status': t.sync.status,
                    'last_result': t.sync.last_result, 'local': t.store.info()})


@app.route('/api/db/init', methods=['POST'])
def api_db_init():
    data = _json_body()
    t = terminal()
    init = t.sync.initialize_database(skip_sync=bool(data.get('skip_sync')),
                                      sync_direction=data.get('direction') or 'pull',
                                      profile_name=data.get('profile'))
    t.storage.set(keys.DB_INITIALIZED, 'true' if init['success'] else 'false')
    return jsonify({'status': 'success' if init['success'] else 'error', 'database': init})


if __name__ == '__main__':
    pos_config.configure_logging()
    app.run(host=pos_config.SERVER_HOST, port=pos_config.SERVER_PORT, debug=pos_config.SERVER_DEBUG)
