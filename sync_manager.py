"""Replication between the till's local store and the central database.

Sync is opportunistic: every entry point reports a result dict instead of
raising, so a dead network never blocks login, startup or a sale. Only one
sync may run at a time for a given (local, remote) pair, across threads by a
lock and across processes sharing the database file by a lease row.
"""
import logging
import os
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

import documents
from pos_config import SYNC_BATCH_SIZE, SYNC_TIMEOUT
from pos_errors import ConnectivityError, PosError
from remote_store import classify_sync_error

log = logging.getLogger(__name__)

IDLE, SYNCING, SYNCED, ERROR = 'idle', 'syncing', 'synced', 'error'
DIRECTIONS = ('pull', 'push', 'both')

ProgressCallback = Callable[[str, str, Optional[Dict[str, Any]]], None]

SYNC_IN_PROGRESS = 'Sync already in progress'
# lease lifetime beyond pull + push timeouts, covers a crashed holder
LEASE_GRACE = 30.0

_PAIR_LOCKS: Dict[Tuple[str, str], threading.Lock] = {}
_PAIR_LOCKS_GUARD = threading.Lock()

_ERROR_HINTS = {
    'auth': 'Authentication error - check credentials',
    'not-found': 'Database not found - check URL',
    'policy': 'Request rejected by server policy',
    'network': 'Network error - check connection',
    'unknown': 'Unknown sync error',
}


def _pair_lock(local, remote) -> threading.Lock:
    key = (str(local.name), str(remote.name))
    with _PAIR_LOCKS_GUARD:
        lock = _PAIR_LOCKS.get(key)
        if lock is None:
            lock = _PAIR_LOCKS[key] = threading.Lock()
        return lock


def log_sync_error(exc: BaseException) -> str:
    kind = classify_sync_error(exc)
    detail = getattr(exc, 'detail', None)
    log.warning("Sync failed [%s] %s: %s%s", kind, _ERROR_HINTS[kind], exc,
                f" ({detail})" if detail else "")
    return kind


def replicate(source, target, checkpoints, timeout: float = SYNC_TIMEOUT,
              batch_size: int = SYNC_BATCH_SIZE) -> Dict[str, Any]:
    """One-way replication of everything changed on ``source`` since the last checkpoint.

    ``checkpoints`` is the local store; it remembers how far each
    source->target pair got so the next run only reads new changes.
    """
    rep_id = f"{source.name}->{target.name}"
    since = checkpoints.get_checkpoint(rep_id) or 0
    deadline = time.monotonic() + timeout
    docs_read = docs_written = 0
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ConnectivityError(f"Replication {rep_id} timed out after {timeout:.0f}s")
        batch = source.changes(since=since, limit=batch_size, timeout=remaining)
        results = batch.get('results') or []
        docs = [r['doc'] for r in results if r.get('doc')]
        docs_read += len(docs)
        if docs:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConnectivityError(f"Replication {rep_id} timed out after {timeout:.0f}s")
            docs_written += target.bulk_docs(docs, new_edits=False, timeout=remaining)
        since = batch.get('last_seq', since)
        checkpoints.set_checkpoint(rep_id, since)
        if len(results) < batch_size:
            break
    log.debug("Replicated %s: read=%d written=%d", rep_id, docs_read, docs_written)
    return {'docs_read': docs_read, 'docs_written': docs_written, 'last_seq': since}


class SyncStrategy:
    name = 'base'

    def perform_sync(self, direction: str = 'both') -> Dict[str, Any]:
        raise NotImplementedError


class DirectSync(SyncStrategy):
    """Replicate on the calling thread with the caller's store handles."""
    name = 'direct'

    def __init__(self, local, remote, timeout: float = SYNC_TIMEOUT, batch_size: int = SYNC_BATCH_SIZE):
        self.local = local
        self.remote = remote
        self.timeout = timeout
        self.batch_size = batch_size

    def perform_sync(self, direction: str = 'both') -> Dict[str, Any]:
        if direction not in DIRECTIONS:
            return {'success': False, 'error': f'Unknown sync direction {direction!r}'}
        if self.remote is None:
            return {'success': False, 'error': 'Remote database not configured'}
        lock = _pair_lock(self.local, self.remote)
        if not lock.acquire(blocking=False):
            return {'success': False, 'error': SYNC_IN_PROGRESS}
        lease_key = f"sync:{self.remote.name}"
        holder = f"{os.getpid()}:{threading.get_ident()}:{uuid.uuid4().hex[:8]}"
        leased = False
        try:
            # other processes on the same database file (sync worker, server)
            leased = self.local.acquire_lease(lease_key, holder, self.timeout * 2 + LEASE_GRACE)
            if not leased:
                return {'success': False, 'error': SYNC_IN_PROGRESS}
            docs_read = docs_written = 0
            if direction in ('pull', 'both'):
                log.info("Pulling data from remote database...")
                pulled = replicate(self.remote, self.local, self.local, self.timeout, self.batch_size)
                docs_read = pulled['docs_read']
                log.info("Pull completed: %d docs received", docs_read)
            if direction in ('push', 'both'):
                log.info("Pushing data to remote database...")
                pushed = replicate(self.local, self.remote, self.local, self.timeout, self.batch_size)
                docs_written = pushed['docs_written']
                log.info("Push completed: %d docs sent", docs_written)
            return {'success': True, 'docs_read': docs_read, 'docs_written': docs_written, 'error': None}
        except Exception as exc:
            kind = log_sync_error(exc)
            message = exc.message if isinstance(exc, PosError) and exc.message else str(exc)
            return {'success': False, 'error': message or 'Sync failed', 'error_kind': kind}
        finally:
            if leased:
                try:
                    self.local.release_lease(lease_key, holder)
                except PosError as exc:
                    log.warning("Could not release sync lease %s, it expires on its own: %s",
                                lease_key, exc.message)
            lock.release()


class BackgroundSync(SyncStrategy):
    """Replicate on a separate worker thread with freshly opened store handles.

    Used when the direct path fails: a broken connection or session on the
    caller's handles does not carry over to this path.
    """
    name = 'background'

    def __init__(self, local_factory: Callable[[], Any], remote_factory: Callable[[], Any],
                 timeout: float = SYNC_TIMEOUT, batch_size: int = SYNC_BATCH_SIZE, grace: float = 5.0):
        self.local_factory = local_factory
        self.remote_factory = remote_factory
        self.timeout = timeout
        self.batch_size = batch_size
        self.grace = grace

    def _worker(self, direction: str, out: Dict[str, Any]):
        local = remote = None
        try:
            local = self.local_factory()
            remote = self.remote_factory()
            out.update(DirectSync(local, remote, self.timeout, self.batch_size).perform_sync(direction))
        except Exception as exc:
            log_sync_error(exc)
            out.update({'success': False, 'error': str(exc) or 'Background sync failed'})
        finally:
            for handle in (remote, local):
                close = getattr(handle, 'close', None)
                if close:
                    try:
                        close()
                    except Exception as exc:
                        log.debug("Closing background sync handle failed: %s", exc)

    def perform_sync(self, direction: str = 'both') -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        worker = threading.Thread(target=self._worker, args=(direction, out),
                                  name='background-sync', daemon=True)
        worker.start()
        # pull then push may each use the full timeout
        worker.join(self.timeout * 2 + self.grace)
        if worker.is_alive():
            return {'success': False, 'error': 'Background sync timed out'}
        return dict(out) or {'success': False, 'error': 'Background sync produced no result'}


class FallbackSyncChain(SyncStrategy):
    """Try each strategy in order until one succeeds."""
    name = 'chain'

    def __init__(self, strategies: List[SyncStrategy]):
        self.strategies = [s for s in strategies if s is not None]

    def perform_sync(self, direction: str = 'both') -> Dict[str, Any]:
        result: Dict[str, Any] = {'success': False, 'error': 'No sync strategy available'}
        errors: List[str] = []
        for strategy in self.strategies:
            result = dict(strategy.perform_sync(direction))
            result['method'] = strategy.name
            if result.get('success') or result.get('error') == SYNC_IN_PROGRESS:
                return result
            errors.append(f"{strategy.name}: {result.get('error')}")
            log.info("%s sync failed, %s", strategy.name,
                     'trying next strategy' if strategy is not self.strategies[-1] else 'giving up')
        if len(errors) > 1:
            result['error'] = 'All sync strategies failed (' + '; '.join(errors) + ')'
        return result


class SyncManager:
    """Connectivity probing, sync, indexing and startup for one terminal."""

    def __init__(self, local, remote=None, pos=None, background: Optional[SyncStrategy] = None,
                 timeout: float = SYNC_TIMEOUT, batch_size: int = SYNC_BATCH_SIZE):
        self.local = local
        self.remote = remote
        self.pos = pos
        self.direct = DirectSync(local, remote, timeout, batch_size)
        self.chain = FallbackSyncChain([self.direct, background])
        self.status = IDLE
        self.is_initialized = False
        self.last_result: Optional[Dict[str, Any]] = None

    def test_connection(self) -> bool:
        try:
            local_info = self.local.info()
            log.info("Local DB connected: %s", local_info.get('db_name'))
            if self.remote is None:
                log.warning("Remote DB not configured")
                return False
            remote_info = self.remote.info()
            log.info("Remote DB connected: %s", remote_info.get('db_name'))
            return True
        except Exception as exc:
            log_sync_error(exc)
            return False

    def _run(self, strategy: SyncStrategy, direction: str) -> Dict[str, Any]:
        previous = self.status
        self.status = SYNCING
        result = strategy.perform_sync(direction)
        if result.get('error') == SYNC_IN_PROGRESS:
            # the running sync reports its own outcome
            if self.status == SYNCING:
                self.status = previous
            return result
        self.status = SYNCED if result.get('success') else ERROR
        self.last_result = result
        return result

    def perform_sync(self, direction: str = 'both') -> Dict[str, Any]:
        return self._run(self.direct, direction)

    def push_in_background(self) -> threading.Thread:
        """Fire-and-forget push after a local commit; the outcome is only logged."""
        def _task():
            result = self.perform_sync('push')
            if result.get('success'):
                log.info("Background push completed (%s docs)", result.get('docs_written', 0))
            else:
                log.info("Background push failed, will retry on next sync: %s", result.get('error'))

        worker = threading.Thread(target=_task, name='post-commit-push', daemon=True)
        worker.start()
        return worker

    def create_indexes(self):
        results = self.local.ensure_required_indexes()
        log.info("Database indexes ready: %s", ', '.join(r['name'] for r in results))
        return results

    def load_database_documents(self) -> Dict[str, Any]:
        """Log a census of the local store. Never raises."""
        try:
            docs = self.local.all_docs()
        except Exception as exc:
            log.warning("Error loading database documents: %s", exc)
            return {}
        by_type: Dict[str, int] = {}
        for doc in docs:
            kind = doc.get('type') or 'unknown'
            by_type[kind] = by_type.get(kind, 0) + 1
        drafts = [d for d in docs if d.get('type') == documents.POS_INVOICE
                  and d.get('status') == documents.STATUS_DRAFT]
        log.info("Total documents in local DB: %d", len(docs))
        log.info("Document types summary: %s", by_type)
        if drafts:
            log.info("Draft invoices in store: %d", len(drafts))
        return {'total': len(docs), 'by_type': by_type, 'drafts': len(drafts)}

    def initialize_pos_data(self, profile_name: Optional[str] = None) -> Dict[str, Any]:
        if self.pos is None:
            return {'success': False, 'error': 'POS context not configured'}
        try:
            profile = self.pos.initialize_pos_data(profile_name)
        except PosError as exc:
            log.error("POS data loading error: %s", exc.message)
            return {'success': False, 'error': exc.message}
        return {'success': True, 'profile_name': profile.get('erpnext_id')}

    def initialize_database(self, skip_sync: bool = False, sync_direction: str = 'pull',
                            on_progress: Optional[ProgressCallback] = None,
                            profile_name: Optional[str] = None) -> Dict[str, Any]:
        """Idempotent startup: connection, sync, indexes, census, POS data.

        Succeeds whenever the local store is usable, even offline.
        """
        def emit(step, state, details=None):
            if not on_progress:
                return
            try:
                on_progress(step, state, details)
            except Exception as exc:
                log.debug("Progress callback failed for %s: %s", step, exc)

        emit('connection', 'starting')
        online = self.test_connection()
        if online:
            emit('connection', 'success')
        else:
            log.warning("Database connection failed, working offline")
            self.status = ERROR
            emit('connection', 'error', {'error': 'Database connection failed', 'offline': True})

        sync_error = None
        if not skip_sync:
            if not online:
                sync_error = 'Remote database unreachable, working offline'
                emit('sync', 'error', {'error': sync_error, 'skipped': True})
            else:
                emit('sync', 'starting')
                result = self._run(self.chain, sync_direction)
                if result.get('success'):
                    emit('sync', 'success', {'docs': result.get('docs_read'), 'method': result.get('method')})
                else:
                    sync_error = result.get('error') or 'Sync failed'
                    emit('sync', 'error', {'error': sync_error})

        emit('indexes', 'starting')
        try:
            self.create_indexes()
        except Exception as exc:
            log.error("Database initialization failed while creating indexes: %s", exc)
            emit('indexes', 'error', {'error': str(exc)})
            return {
                'success': False,
                'error': f'Local database unusable: {exc}',
                'sync_status': ERROR,
                'offline': not online,
                'pos_data_loaded': False,
                'pos_profile_name': None,
            }
        emit('indexes', 'success')

        emit('documents', 'starting')
        census = self.load_database_documents()
        emit('documents', 'success', census)

        emit('pos-data', 'starting')
        pos_result = self.initialize_pos_data(profile_name)
        emit('pos-data', 'success' if pos_result['success'] else 'error', pos_result)

        self.is_initialized = True
        result = {
            'success': True,
            'sync_status': self.status,
            'offline': not online,
            'pos_data_loaded': pos_result['success'],
            'pos_profile_name': pos_result.get('profile_name'),
            'error': sync_error or pos_result.get('error'),
        }
        log.info("Database initialization completed: %s", result)
        return result

    def reset(self):
        self.is_initialized = False
        self.status = IDLE
