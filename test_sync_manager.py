import os
import tempfile
import threading
import time
import unittest

import sync_manager
from doc_store import LocalDocStore
from pos_errors import AuthorizationError, ConnectivityError
from session_storage import MemorySessionStorage
from pos_profile import POSContext
from sync_manager import BackgroundSync, DirectSync, FallbackSyncChain, SyncManager, SyncStrategy


def item(doc_id, name):
    return {"_id": doc_id, "type": "Item", "item_name": name}


class UnreachableRemote:
    name = "http://unreachable/db"

    def info(self):
        raise ConnectivityError("Remote info: remote unreachable")

    def changes(self, since=0, limit=None, timeout=None):
        raise ConnectivityError("Changes feed: remote unreachable")

    def bulk_docs(self, docs, new_edits=False, timeout=None):
        raise ConnectivityError("Bulk docs: remote unreachable")


class BlockingRemote(LocalDocStore):
    """Remote whose changes feed waits until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def changes(self, since=0, limit=None, timeout=None):
        self.entered.set()
        self.release.wait(5)
        return super().changes(since, limit, timeout)


class SlowRemote(LocalDocStore):
    """Remote whose changes feed answers after a delay."""

    def __init__(self, *args, delay=0.3, **kwargs):
        super().__init__(*args, **kwargs)
        self.delay = delay
        self.calls = 0

    def changes(self, since=0, limit=None, timeout=None):
        self.calls += 1
        time.sleep(self.delay)
        return super().changes(since, limit, timeout)


class FixedStrategy(SyncStrategy):
    def __init__(self, name, result):
        self.name = name
        self.result = result
        self.calls = 0

    def perform_sync(self, direction="both"):
        self.calls += 1
        return dict(self.result)


class ReplicationTest(unittest.TestCase):
    def setUp(self):
        self.local = LocalDocStore(":memory:", name="local")
        self.remote = LocalDocStore(":memory:", name="remote")

    def tearDown(self):
        self.local.close()
        self.remote.close()

    def test_pull_then_push_converges(self):
        self.remote.put(item("Item::A", "Apple"))
        self.remote.put(item("Item::B", "Banana"))
        self.local.put(item("Item::C", "Cherry"))
        result = DirectSync(self.local, self.remote).perform_sync("both")
        self.assertTrue(result["success"], result)
        self.assertEqual(result["docs_read"], 2)
        # pulled docs already carry the remote revision, only Cherry is new there
        self.assertEqual(result["docs_written"], 1)
        local_ids = {d["_id"]: d["_rev"] for d in self.local.all_docs()}
        remote_ids = {d["_id"]: d["_rev"] for d in self.remote.all_docs()}
        self.assertEqual(local_ids, remote_ids)

    def test_checkpoint_limits_second_run_to_new_changes(self):
        self.remote.put(item("Item::A", "Apple"))
        first = sync_manager.replicate(self.remote, self.local, self.local, timeout=5, batch_size=1)
        self.assertEqual(first["docs_read"], 1)
        again = sync_manager.replicate(self.remote, self.local, self.local, timeout=5)
        self.assertEqual(again["docs_read"], 0)
        self.remote.put(item("Item::B", "Banana"))
        third = sync_manager.replicate(self.remote, self.local, self.local, timeout=5)
        self.assertEqual(third["docs_read"], 1)
        self.assertEqual(third["docs_written"], 1)

    def test_replicated_edits_keep_winner(self):
        rev = self.remote.put(item("Item::A", "Apple"))["rev"]
        DirectSync(self.local, self.remote).perform_sync("pull")
        self.remote.put(dict(item("Item::A", "Red Apple"), _rev=rev))
        DirectSync(self.local, self.remote).perform_sync("both")
        self.assertEqual(self.local.get("Item::A")["item_name"], "Red Apple")
        self.assertEqual(self.local.get("Item::A")["_rev"], self.remote.get("Item::A")["_rev"])

    def test_offline_remote_reports_network_error(self):
        result = DirectSync(self.local, UnreachableRemote()).perform_sync("pull")
        self.assertFalse(result["success"])
        self.assertEqual(result["error_kind"], "network")

    def test_overlapping_sync_is_refused(self):
        remote = BlockingRemote(":memory:", name="blocking")
        direct = DirectSync(self.local, remote)
        out = {}
        worker = threading.Thread(target=lambda: out.update(direct.perform_sync("pull")))
        worker.start()
        try:
            self.assertTrue(remote.entered.wait(5))
            second = DirectSync(self.local, remote).perform_sync("pull")
            self.assertEqual(second, {"success": False, "error": "Sync already in progress"})
        finally:
            remote.release.set()
            worker.join(5)
            remote.close()
        self.assertTrue(out["success"])

    def test_sync_held_by_another_process_is_refused(self):
        self.remote.put(item("Item::A", "Apple"))
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "pos.db")
            ours = LocalDocStore(path, name="till")
            theirs = LocalDocStore(path, name="till-worker")
            try:
                self.assertTrue(theirs.acquire_lease("sync:remote", "worker", 60))
                result = DirectSync(ours, self.remote).perform_sync("pull")
                self.assertEqual(result, {"success": False, "error": "Sync already in progress"})
                self.assertEqual(ours.all_docs(), [])
                theirs.release_lease("sync:remote", "worker")
                self.assertTrue(DirectSync(ours, self.remote).perform_sync("pull")["success"])
                self.assertEqual(ours.get("Item::A")["item_name"], "Apple")
            finally:
                ours.close()
                theirs.close()

    def test_slow_remote_times_out_without_retry(self):
        remote = SlowRemote(":memory:", name="slow", delay=0.3)
        remote.put(item("Item::A", "Apple"))
        remote.put(item("Item::B", "Banana"))
        try:
            result = DirectSync(self.local, remote, timeout=0.1, batch_size=1).perform_sync("pull")
        finally:
            remote.close()
        self.assertFalse(result["success"])
        self.assertIn("timed out", result["error"])
        self.assertEqual(result["error_kind"], "network")
        self.assertEqual(remote.calls, 1)
        self.assertEqual(self.local.all_docs(), [])
        self.assertIsNone(self.local.get_checkpoint("slow->local"))
        # the lease was handed back
        self.assertTrue(self.local.acquire_lease("sync:slow", "next", 60))

    def test_unknown_direction(self):
        self.assertFalse(DirectSync(self.local, self.remote).perform_sync("sideways")["success"])


class StrategyChainTest(unittest.TestCase):
    def test_second_strategy_only_on_failure(self):
        ok = FixedStrategy("direct", {"success": True, "docs_read": 1})
        backup = FixedStrategy("background", {"success": True})
        result = FallbackSyncChain([ok, backup]).perform_sync("pull")
        self.assertEqual(result["method"], "direct")
        self.assertEqual(backup.calls, 0)

        failing = FixedStrategy("direct", {"success": False, "error": "boom"})
        result = FallbackSyncChain([failing, backup]).perform_sync("pull")
        self.assertTrue(result["success"])
        self.assertEqual(result["method"], "background")
        self.assertEqual(backup.calls, 1)

    def test_all_failures_are_reported(self):
        a = FixedStrategy("direct", {"success": False, "error": "timeout"})
        b = FixedStrategy("background", {"success": False, "error": "denied"})
        result = FallbackSyncChain([a, b]).perform_sync("both")
        self.assertFalse(result["success"])
        self.assertIn("direct: timeout", result["error"])
        self.assertIn("background: denied", result["error"])

    def test_background_sync_uses_fresh_handles(self):
        remote = LocalDocStore(":memory:", name="bg-remote")
        remote.put(item("Item::A", "Apple"))
        opened = []

        class Handle:
            """Wrap a shared store so closing the handle leaves it open."""

            def __init__(self, store):
                self._store = store
                self.name = store.name
                opened.append(self)

            def __getattr__(self, attr):
                return getattr(self._store, attr)

            def close(self):
                pass

        local = LocalDocStore(":memory:", name="bg-local")
        try:
            strategy = BackgroundSync(lambda: Handle(local), lambda: Handle(remote), timeout=5)
            result = strategy.perform_sync("pull")
            self.assertTrue(result["success"], result)
            self.assertEqual(len(opened), 2)
            self.assertEqual(local.get("Item::A")["item_name"], "Apple")
        finally:
            local.close()
            remote.close()

    def test_background_sync_gives_up_after_timeout(self):
        remote = BlockingRemote(":memory:", name="bg-blocking")
        remote.put(item("Item::A", "Apple"))
        local = LocalDocStore(":memory:", name="bg-timeout-local")
        strategy = BackgroundSync(lambda: local, lambda: remote, timeout=0.1, grace=0.1)
        try:
            result = strategy.perform_sync("pull")
            self.assertEqual(result, {"success": False, "error": "Background sync timed out"})
        finally:
            remote.release.set()
        # the worker stops at its own deadline and frees the pair
        lock = sync_manager._pair_lock(local, remote)
        self.assertTrue(lock.acquire(timeout=5))
        lock.release()

    def test_chain_stops_when_a_sync_is_already_running(self):
        busy = FixedStrategy("direct", {"success": False, "error": "Sync already in progress"})
        fallback = FixedStrategy("background", {"success": True})
        result = FallbackSyncChain([busy, fallback]).perform_sync("pull")
        self.assertEqual(result["error"], "Sync already in progress")
        self.assertEqual(fallback.calls, 0)

    def test_background_factory_error_is_reported(self):
        def broken():
            raise AuthorizationError("Remote info: access denied (401)")

        result = BackgroundSync(lambda: LocalDocStore(":memory:"), broken, timeout=1).perform_sync("pull")
        self.assertFalse(result["success"])


class InitializeDatabaseTest(unittest.TestCase):
    def setUp(self):
        self.local = LocalDocStore(":memory:", name="local")
        self.storage = MemorySessionStorage()
        self.pos = POSContext(self.local, self.storage)

    def tearDown(self):
        self.local.close()

    def _progress(self):
        steps = []
        return steps, lambda step, state, details=None: steps.append((step, state))

    def test_offline_startup_still_succeeds(self):
        self.local.put({"_id": "POSProfile::P1", "type": "POSProfile", "erpnext_id": "P1",
                        "price_list_id": "Retail"})
        manager = SyncManager(self.local, UnreachableRemote(), pos=self.pos)
        steps, callback = self._progress()
        result = manager.initialize_database(on_progress=callback, profile_name="P1")
        self.assertTrue(result["success"])
        self.assertTrue(result["offline"])
        self.assertTrue(result["pos_data_loaded"])
        self.assertEqual(result["pos_profile_name"], "P1")
        self.assertIn(("connection", "error"), steps)
        self.assertIn(("sync", "error"), steps)
        self.assertIn(("indexes", "success"), steps)
        self.assertEqual(steps[-1], ("pos-data", "success"))
        self.assertTrue(manager.is_initialized)

    def test_online_startup_pulls_remote_documents(self):
        remote = LocalDocStore(":memory:", name="remote")
        remote.put(item("Item::A", "Apple"))
        manager = SyncManager(self.local, remote, pos=self.pos)
        steps, callback = self._progress()
        result = manager.initialize_database(on_progress=callback)
        self.assertTrue(result["success"])
        self.assertFalse(result["offline"])
        self.assertEqual(result["sync_status"], "synced")
        self.assertFalse(result["pos_data_loaded"])
        self.assertEqual(self.local.get("Item::A")["item_name"], "Apple")
        self.assertEqual([s for s, state in steps if state == "starting"],
                         ["connection", "sync", "indexes", "documents", "pos-data"])
        # running again is harmless
        self.assertTrue(manager.initialize_database(skip_sync=True)["success"])
        remote.close()

    def test_push_in_background_only_logs(self):
        remote = LocalDocStore(":memory:", name="remote")
        self.local.put(item("Item::Z", "Zucchini"))
        manager = SyncManager(self.local, remote)
        worker = manager.push_in_background()
        worker.join(5)
        self.assertEqual(remote.get("Item::Z")["item_name"], "Zucchini")
        self.assertEqual(manager.status, "synced")
        remote.close()

        offline = SyncManager(self.local, UnreachableRemote())
        offline.push_in_background().join(5)
        self.assertEqual(offline.status, "error")

    def test_refused_push_leaves_running_sync_state(self):
        remote = BlockingRemote(":memory:", name="busy-remote")
        manager = SyncManager(self.local, remote)
        worker = threading.Thread(target=manager.perform_sync, args=("pull",))
        worker.start()
        try:
            self.assertTrue(remote.entered.wait(5))
            manager.push_in_background().join(5)
            self.assertEqual(manager.status, "syncing")
            self.assertIsNone(manager.last_result)
        finally:
            remote.release.set()
            worker.join(5)
            remote.close()
        self.assertEqual(manager.status, "synced")
        self.assertTrue(manager.last_result["success"])


if __name__ == "__main__":
    unittest.main()
