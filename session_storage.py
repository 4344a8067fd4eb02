"""Durable flat key/value storage for terminal session state.

Holds the selected POS profile, the invoice sequence counter, the local
draft queue and shift flags across restarts. Values are strings; JSON
helpers are provided for structured values.
"""
import json
import logging
import sqlite3
import threading
from typing import Any, Dict, Iterable, Optional

log = logging.getLogger(__name__)

# Keys
POS_PROFILE = 'pos_current_profile'
POS_PROFILE_NAME = 'pos_current_profile_name'
DRAFT_INVOICES = 'draftInvoices'
INVOICE_SEQ_PREFIX = 'invoiceSeqNo'
STORE = 'store'
TERMINAL = 'terminal'
SHIFT_OPEN = 'shiftOpen'
SHIFT_START = 'shiftStartTime'
DB_INITIALIZED = 'dbInitialized'
IS_LOGGED_IN = 'isLoggedIn'
USERNAME = 'username'
USER_INFO = 'userInfo'
SESSION_ID = 'sessionId'
POS_ENTRY = 'posEntry'
POS_ENTRY_NAME = 'posEntryName'

# Cleared on logout; store, terminal, the draft queue and sequence counters persist.
SESSION_KEYS = (
    IS_LOGGED_IN, USERNAME, USER_INFO, SESSION_ID, SHIFT_OPEN, SHIFT_START,
    DB_INITIALIZED, POS_ENTRY, POS_ENTRY_NAME, POS_PROFILE, POS_PROFILE_NAME,
)


class SessionStorage:
    """Interface: string keys to string values."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> Iterable[str]:
        raise NotImplementedError

    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            log.warning("Ignoring unreadable session value for %s", key)
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value, separators=(',', ':'), default=str))

    def clear_session(self) -> None:
        for key in SESSION_KEYS:
            self.remove(key)


class MemorySessionStorage(SessionStorage):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key):
        return self._data.get(key)

    def set(self, key, value):
        self._data[key] = str(value)

    def remove(self, key):
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)


class SqliteSessionStorage(SessionStorage):
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS session_kv (
          key   TEXT PRIMARY KEY,
          value TEXT NOT NULL
        )
        """)
        self.conn.commit()

    def get(self, key):
        with self._lock:
            row = self.conn.execute("SELECT value FROM session_kv WHERE key=?", (key,)).fetchone()
        return row[0] if row else None

    def set(self, key, value):
        with self._lock:
            self.conn.execute("""
                INSERT INTO session_kv (key, value) VALUES (?,?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value
            """, (key, str(value)))
            self.conn.commit()

    def remove(self, key):
        with self._lock:
            self.conn.execute("DELETE FROM session_kv WHERE key=?", (key,))
            self.conn.commit()

    def keys(self):
        with self._lock:
            return [r[0] for r in self.conn.execute("SELECT key FROM session_kv ORDER BY key")]

    def close(self):
        self.conn.close()
