#!/usr/bin/env python3
"""
POS Sync Worker

Replicates the till's local document store with the central database on a
fixed interval, independently of the HTTP API.

Env vars:
  POS_DB_PATH      local store path (default: pos_docs.db)
  COUCHDB_URL      remote database URL (required)
  SYNC_MODE        'pull' | 'push' | 'both' (default: 'both')
  SYNC_INTERVAL    seconds between cycles (default: 60)

Run:
  python sync_worker.py
"""
import logging
import time
from typing import Optional

import pos_config
from doc_store import LocalDocStore
from remote_store import RemoteDocStore
from sync_manager import DIRECTIONS, SyncManager

log = logging.getLogger('sync_worker')


def build_manager() -> Optional[SyncManager]:
    if not pos_config.COUCHDB_URL:
        log.error("COUCHDB_URL is not set; nothing to sync with")
        return None
    local = LocalDocStore(pos_config.POS_DB_PATH)
    remote = RemoteDocStore(pos_config.COUCHDB_URL, pos_config.COUCHDB_USERNAME, pos_config.COUCHDB_PASSWORD,
                            timeout=pos_config.SYNC_TIMEOUT)
    return SyncManager(local, remote)


def run_cycle(manager: SyncManager, mode: str) -> bool:
    result = manager.perform_sync(mode)
    if result.get('success'):
        log.info("sync %s ok: read=%s written=%s", mode, result.get('docs_read', 0), result.get('docs_written', 0))
        return True
    log.warning("sync %s failed: %s", mode, result.get('error'))
    return False


def main(max_cycles: Optional[int] = None):
    pos_config.configure_logging()
    mode = pos_config.SYNC_MODE if pos_config.SYNC_MODE in DIRECTIONS else 'both'
    manager = build_manager()
    if manager is None:
        return 2
    log.info("starting worker in mode=%s, interval=%ss, db=%s", mode, pos_config.SYNC_INTERVAL, pos_config.POS_DB_PATH)
    cycles = 0
    try:
        while max_cycles is None or cycles < max_cycles:
            run_cycle(manager, mode)
            cycles += 1
            if max_cycles is None or cycles < max_cycles:
                time.sleep(pos_config.SYNC_INTERVAL)
    except KeyboardInterrupt:
        log.info("exiting on Ctrl+C")
    finally:
        manager.local.close()
        manager.remote.close()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
