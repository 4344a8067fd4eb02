"""Environment-driven settings for the terminal.

Values come from the process environment, optionally seeded from a `.env`
file next to the working directory.
"""
import logging
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_string(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env_string(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = _env_string(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


# Local storage
POS_DB_PATH = _env_string("POS_DB_PATH", "pos_docs.db")
POS_SESSION_DB = _env_string("POS_SESSION_DB", "pos_session.db")

# Remote document store (CouchDB-compatible)
COUCHDB_URL = _env_string("COUCHDB_URL")
COUCHDB_USERNAME = _env_string("COUCHDB_USERNAME")
COUCHDB_PASSWORD = _env_string("COUCHDB_PASSWORD")
SYNC_TIMEOUT = _env_float("POS_SYNC_TIMEOUT", 15.0)
SYNC_BATCH_SIZE = _env_int("POS_SYNC_BATCH_SIZE", 100)

# Invoicing
TAX_RATE = _env_float("POS_TAX_RATE", 0.15)
TAX_TYPE = _env_string("POS_TAX_TYPE", "VAT")
DEFAULT_STORE = _env_string("POS_DEFAULT_STORE", "store-1")
DEFAULT_TERMINAL = _env_string("POS_DEFAULT_TERMINAL", "pos-1")
CREATED_BY = _env_string("POS_CREATED_BY", "POS_USER")
SCHEMA_VERSION = "1.0"
CURRENCY = _env_string("POS_CURRENCY", "SAR")

# ERPNext (authentication + shifts)
ERPNEXT_URL = _env_string("ERPNEXT_URL")
ERP_METHOD_PREFIX = _env_string("ERP_METHOD_PREFIX", "pos_retail.api")
ERP_TIMEOUT = _env_float("ERP_TIMEOUT", 15.0)
ERP_COMPANY = _env_string("ERP_COMPANY")

# Receipt helper
RECEIPT_AGENT_URL = _env_string("RECEIPT_AGENT_URL")
if not RECEIPT_AGENT_URL:
    _agent_host = _env_string("RECEIPT_AGENT_HOST")
    _agent_port = _env_string("RECEIPT_AGENT_PORT")
    if _agent_host and _agent_port:
        RECEIPT_AGENT_URL = f"http://{_agent_host}:{_agent_port}/print"

# Terminal HTTP API
SERVER_HOST = _env_string("POS_SERVER_HOST", "127.0.0.1")
SERVER_PORT = _env_int("POS_SERVER_PORT", 5000)
SERVER_DEBUG = _env_flag("POS_SERVER_DEBUG")

# Background worker
SYNC_MODE = (_env_string("SYNC_MODE", "both") or "both").lower()
SYNC_INTERVAL = _env_float("SYNC_INTERVAL", 60.0)

LOG_LEVEL_NAME = (_env_string("POS_LOG_LEVEL", "INFO") or "INFO").upper()
LOG_FORMAT = "[%(name)s] %(asctime)s %(levelname)s %(message)s"


def configure_logging(level_name: Optional[str] = None) -> None:
    """Configure root logging for an entrypoint."""
    level = getattr(logging, (level_name or LOG_LEVEL_NAME), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
