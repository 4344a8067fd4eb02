"""Login, logout and shift calls against the ERPNext ``pos_retail`` API.

Only authentication and shift bookkeeping go through ERPNext directly; all
sales data travels through the document store.
"""
import datetime as dt
import logging
from typing import Any, Dict, List, Optional

import requests

import session_storage as keys
from pos_config import ERP_COMPANY, ERP_METHOD_PREFIX, ERP_TIMEOUT, ERPNEXT_URL
from pos_errors import AuthorizationError, ConfigurationError, ConnectivityError, NotFoundError, PosError, RemoteStoreError

log = logging.getLogger(__name__)

NETWORK_ERROR_MESSAGE = 'Unable to connect to server. Please check your internet connection.'


def handle_api_error(status: Optional[int], message: Optional[str] = None) -> str:
    """User-facing text for a failed ERPNext call."""
    if status == 401:
        return 'Session expired. Please login again.'
    if status == 403:
        return 'Access denied. You do not have permission to perform this action.'
    if status == 404:
        return 'Resource not found.'
    if status == 500:
        return 'Server error. Please try again later.'
    return message or 'An unexpected error occurred.'


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        j = resp.json()
        if not isinstance(j, dict):
            return resp.text
        return j.get('message') or j.get('exc') or j.get('_server_messages') or resp.reason or ''
    except ValueError:
        return resp.text or resp.reason or ''


def _erp_timestamp(value: Optional[dt.datetime] = None) -> str:
    return (value or dt.datetime.now()).strftime('%Y-%m-%d %H:%M:%S')


class ErpClient:
    def __init__(self, storage: keys.SessionStorage, base_url: Optional[str] = ERPNEXT_URL,
                 session: Optional[requests.Session] = None, timeout: float = ERP_TIMEOUT,
                 method_prefix: str = ERP_METHOD_PREFIX, company: Optional[str] = ERP_COMPANY):
        self.storage = storage
        self.base_url = (base_url or '').rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout
        self.method_prefix = method_prefix
        self.company = company

    def _headers(self, auth: bool) -> Dict[str, str]:
        headers = {'Accept': 'application/json', 'Content-Type': 'application/json'}
        sid = self.storage.get(keys.SESSION_ID) if auth else None
        if sid:
            headers['Cookie'] = f'sid={sid}'
        return headers

    def _call(self, method: str, payload: Optional[Dict[str, Any]] = None,
              auth: bool = True, http_method: str = 'POST') -> Dict[str, Any]:
        if not self.base_url:
            raise ConfigurationError('ERPNEXT_URL is not configured')
        url = f'{self.base_url}/api/method/{method}'
        try:
            resp = self.session.request(http_method, url, json=payload, headers=self._headers(auth),
                                        timeout=self.timeout)
        except requests.RequestException as exc:
            log.warning("ERP call %s failed: %s", method, exc)
            raise ConnectivityError(NETWORK_ERROR_MESSAGE, detail=str(exc)) from exc
        if resp.status_code >= 400:
            detail = str(_error_message_from_response(resp))[:400]
            message = handle_api_error(resp.status_code, detail)
            log.warning("ERP call %s returned %s: %s", method, resp.status_code, detail)
            if resp.status_code in (401, 403):
                raise AuthorizationError(message, detail=detail)
            if resp.status_code == 404:
                raise NotFoundError(message, detail=detail)
            raise RemoteStoreError(message, status=resp.status_code, detail=detail)
        try:
            return resp.json()
        except ValueError:
            return {}

    def _method(self, name: str) -> str:
        return f'{self.method_prefix}.{name}'

    # ---------- auth ----------
    def login(self, username: str, password: str) -> Dict[str, Any]:
        username = (username or '').strip()
        password = (password or '').strip()
        if not username or not password:
            return {'success': False, 'error': 'Username and password are required'}
        try:
            data = self._call(self._method('custom_login'), {'usr': username, 'pwd': password}, auth=False)
        except PosError as exc:
            return {'success': False, 'error': exc.message}
        message = data.get('message') if isinstance(data.get('message'), dict) else {}
        user = message.get('user') or {}
        if message.get('status') not in (None, 'success') or not user:
            return {'success': False, 'error': message.get('message') or 'Invalid username or password'}
        self.storage.set(keys.IS_LOGGED_IN, 'true')
        self.storage.set(keys.USERNAME, username)
        self.storage.set_json(keys.USER_INFO, user)
        if user.get('session_id'):
            self.storage.set(keys.SESSION_ID, user['session_id'])
        log.info("User %s logged in", user.get('name') or username)
        return {'success': True, 'user': user}

    def is_authenticated(self) -> bool:
        return bool(self.storage.get(keys.SESSION_ID)) and self.storage.get(keys.IS_LOGGED_IN) == 'true'

    def current_user(self) -> Optional[Dict[str, Any]]:
        return self.storage.get_json(keys.USER_INFO)

    def logout(self) -> Dict[str, Any]:
        """Close any open shift, end the remote session and clear local session keys.

        Store, terminal, queued drafts and the invoice counter survive.
        """
        if self.storage.get(keys.SHIFT_OPEN) == 'true':
            self.close_shift()
        remote_error = None
        if self.storage.get(keys.SESSION_ID):
            try:
                self._call('logout')
            except PosError as exc:
                remote_error = exc.message
                log.info("Remote logout failed, clearing local session anyway: %s", exc.message)
        self.storage.clear_session()
        return {'success': True, 'remote_error': remote_error}

    # ---------- shifts ----------
    def open_shift(self, pos_profile: str, store: str, terminal: str,
                   opening_balances: Optional[List[Dict[str, Any]]] = None,
                   company: Optional[str] = None) -> Dict[str, Any]:
        """Create the POS opening entry and remember the shift locally."""
        user = self.current_user() or {}
        started = _erp_timestamp()
        entry = {
            'pos_profile': pos_profile,
            'custom_pos_store': store,
            'custom_pos_terminal': terminal,
            'period_start_date': started,
            'user': user.get('name') or self.storage.get(keys.USERNAME),
            'company': company or self.company,
            'balance_details': opening_balances or [{'mode_of_payment': 'Cash', 'opening_amount': 0}],
        }
        try:
            data = self._call(self._method('create_pos_entry'), entry)
        except PosError as exc:
            return {'success': False, 'error': exc.message}
        created = data.get('message') if isinstance(data.get('message'), dict) else {}
        pos_entry = dict(entry, **created)
        self.storage.set(keys.STORE, store)
        self.storage.set(keys.TERMINAL, terminal)
        self.storage.set(keys.SHIFT_OPEN, 'true')
        self.storage.set(keys.SHIFT_START, started)
        self.storage.set_json(keys.POS_ENTRY, pos_entry)
        if pos_entry.get('name'):
            self.storage.set(keys.POS_ENTRY_NAME, pos_entry['name'])
        log.info("Shift opened on %s/%s (%s)", store, terminal, pos_entry.get('name') or 'unnamed entry')
        return {'success': True, 'pos_entry': pos_entry}

    def close_shift(self, company: Optional[str] = None) -> Dict[str, Any]:
        """Post the closing entry; a failure is reported but the shift is closed locally."""
        pos_entry = self.storage.get_json(keys.POS_ENTRY) or {}
        user = self.current_user() or {}
        result: Dict[str, Any] = {'success': True}
        if not pos_entry or not user:
            log.warning("Missing POS entry or user info, skipping POS Closing Entry")
        else:
            closing = {
                'doctype': 'POS Closing Entry',
                'pos_profile': pos_entry.get('pos_profile') or self.storage.get(keys.POS_PROFILE_NAME),
                'user': user.get('full_name') or user.get('name'),
                'company': company or pos_entry.get('company') or self.company,
                'period_start_date': self.storage.get(keys.SHIFT_START) or pos_entry.get('period_start_date'),
                'period_end_date': _erp_timestamp(),
                'pos_opening_entry': pos_entry.get('name') or self.storage.get(keys.POS_ENTRY_NAME),
            }
            try:
                data = self._call(self._method('create_pos_closing_entry'), closing)
                result['closing_entry'] = data.get('message')
            except PosError as exc:
                log.warning("POS Closing Entry error: %s", exc.message)
                result = {'success': False, 'error': exc.message}
        for key in (keys.SHIFT_OPEN, keys.SHIFT_START, keys.POS_ENTRY, keys.POS_ENTRY_NAME):
            self.storage.remove(key)
        return result
