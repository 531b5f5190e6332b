import json
import os
import tempfile
import unittest

import pos_service as ps
from remote_store import RemoteConnectionError
from sync_engine import (
    ActorNotFound,
    EVENT_COMPLETE,
    EVENT_ERROR,
    EVENT_PROGRESS,
    EVENT_STATUS,
    EventStream,
    PULL_SCOPE_PRODUCTS,
    RunGuard,
    SyncBusyError,
    SyncConfigurationError,
    SyncDirection,
    SyncOrchestrator,
    progress_percent,
    targets_for,
)


def parse_frames(frames):
    events = []
    for frame in frames:
        event_line, data_line = frame.strip().split("\n")
        events.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return events


class WrappedRemote:
    """Remote stand-in that fails on chosen collections and records close()."""

    def __init__(self, inner, failures=None):
        self.inner = inner
        self.failures = failures or {}
        self.closed = False

    def collection(self, name):
        if name in self.failures:
            raise self.failures[name]
        return self.inner.collection(name)

    def close(self):
        self.closed = True
        self.inner.close()


class SyncTestBase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.local_path = os.path.join(self.tmp.name, "local.db")
        self.remote_path = os.path.join(self.tmp.name, "remote.db")
        self.local = ps.connect(self.local_path)
        ps.init_db(self.local)
        ps.create_account(self.local, "admin", "secret", "S1", "admin")
        self.remote = ps.connect(self.remote_path)
        ps.init_db(self.remote)

    def tearDown(self):
        self.local.close()
        self.remote.close()
        self.tmp.cleanup()

    def orchestrator(self, collections=None, **kw):
        kw.setdefault("remote_uri", self.remote_path)
        kw.setdefault("actor_lookup", lambda u, s: ps.find_account(self.local, u, s))
        return SyncOrchestrator(self.local, collections or ps.COLLECTIONS, **kw)

    def run_sync(self, direction, scope=None, **kw):
        frames = []
        sync_run = self.orchestrator(**kw).run(direction, "admin", "S1", EventStream(frames.append), scope=scope)
        return sync_run, parse_frames(frames)

    def per_collection(self, events, name):
        return [data["type"] for event, data in events
                if event in (EVENT_PROGRESS, EVENT_ERROR) and data.get("collectionName") == name]


class PushTest(SyncTestBase):
    def test_push_new_product_is_upserted_on_item_and_store(self):
        self.local.collection("products").insert_one({"_id": "L1", "item": "Widget", "store": "S1", "qty": 5})
        sync_run, events = self.run_sync(SyncDirection.PUSH)

        remote_products = self.remote.collection("products").find({"item": "Widget", "store": "S1"})
        self.assertEqual(len(remote_products), 1)
        self.assertEqual(remote_products[0]["qty"], 5)
        success = [d for e, d in events if d.get("type") == "collectionSuccess" and d["collectionName"] == "products"]
        self.assertEqual(success[0]["upsertedCount"], 1)
        self.assertEqual(success[0]["modifiedCount"], 0)
        self.assertEqual(sync_run.status, "success")

    def test_event_order_per_collection_and_complete_last(self):
        self.local.collection("products").insert_one({"item": "Widget", "store": "S1", "qty": 5})
        _, events = self.run_sync(SyncDirection.PUSH)

        self.assertEqual(events[0][0], EVENT_STATUS)
        self.assertEqual(events[0][1]["status"], "connected")
        self.assertEqual(events[-1][0], EVENT_COMPLETE)
        self.assertEqual([e for e, _ in events].count(EVENT_COMPLETE), 1)
        for target in targets_for(SyncDirection.PUSH):
            types = self.per_collection(events, target.local_collection)
            self.assertEqual(types[:2], ["collectionStart", "collectionFetch"], target)
            self.assertEqual(len(types), 3, target)
            self.assertIn(types[2], ("collectionSuccess", "collectionSkipped"))
        # credits are empty locally
        self.assertEqual(self.per_collection(events, "credits")[2], "collectionSkipped")
        complete = events[-1][1]
        self.assertEqual(complete["status"], "success")
        self.assertEqual(complete["successfulSyncs"], 5)
        self.assertEqual(complete["totalCollections"], 5)
        self.assertEqual(complete["progress"], 100)

    def test_progress_is_monotonic(self):
        _, events = self.run_sync(SyncDirection.PUSH)
        progress = [d["progress"] for e, d in events if "progress" in d]
        self.assertEqual(progress, sorted(progress))
        self.assertEqual(progress[0], 0)
        self.assertEqual(progress[-1], 100)

    def test_second_push_is_idempotent(self):
        self.local.collection("products").insert_one({"item": "Widget", "store": "S1", "qty": 5})
        self.local.collection("transactions").insert_one(
            {"store": "S1", "currency": "USD", "totalUSD": 20, "createdAt": ps.iso_now()})
        ps.get_currency_rate(self.local)
        self.run_sync(SyncDirection.PUSH)
        sync_run, _ = self.run_sync(SyncDirection.PUSH)

        for result in sync_run.results:
            self.assertEqual(result.upserted, 0, result.target.kind)
            self.assertEqual(result.modified, 0, result.target.kind)
        self.assertEqual(self.remote.collection("products").count(), 1)
        self.assertEqual(self.remote.collection("transactions").count(), 1)

    def test_products_with_different_ids_merge_on_natural_key(self):
        self.local.collection("products").insert_one({"_id": "L1", "item": "Widget", "store": "S1", "qty": 5})
        self.remote.collection("products").insert_one({"_id": "R1", "item": "Widget", "store": "S1", "qty": 3})
        sync_run, _ = self.run_sync(SyncDirection.PUSH)

        docs = self.remote.collection("products").find({"item": "Widget"})
        self.assertEqual(len(docs), 1)
        self.assertEqual(docs[0]["_id"], "R1")
        self.assertEqual(docs[0]["qty"], 5)
        self.assertEqual(sync_run.results[0].modified, 1)
        self.assertEqual(sync_run.results[0].upserted, 0)

    def test_push_never_deletes_destination_records(self):
        self.remote.collection("transactions").insert_one(
            {"_id": "remote-only", "store": "S2", "currency": "LRD", "totalLRD": 500})
        self.local.collection("transactions").insert_one({"store": "S1", "currency": "USD"})
        self.run_sync(SyncDirection.PUSH)

        kept = self.remote.collection("transactions").find_one({"_id": "remote-only"})
        self.assertEqual(kept, {"_id": "remote-only", "store": "S2", "currency": "LRD", "totalLRD": 500})
        self.assertEqual(self.remote.collection("transactions").count(), 2)

    def test_unresolved_model_fails_only_that_collection(self):
        collections = {k: v for k, v in ps.COLLECTIONS.items() if k != "User"}
        sync_run, events = self.run_sync(SyncDirection.PUSH, collections=collections)

        complete = events[-1][1]
        self.assertEqual(complete["successfulSyncs"], 4)
        self.assertEqual(complete["totalCollections"], 5)
        self.assertEqual(complete["failedCollections"], ["users"])
        self.assertEqual(complete["status"], "error")
        names = [d.get("collectionName") for e, d in events if e in (EVENT_PROGRESS, EVENT_ERROR)]
        error_at = next(i for i, (e, d) in enumerate(events) if e == EVENT_ERROR)
        self.assertEqual(events[error_at][1]["collectionName"], "users")
        self.assertEqual(events[error_at][1]["severity"], "critical")
        before = [events[i][1].get("collectionName") for i in range(error_at)]
        after = [events[i][1].get("collectionName") for i in range(error_at + 1, len(events))]
        self.assertIn("transactions", before)
        self.assertNotIn("currencyrates", before)
        self.assertIn("currencyrates", after)
        self.assertEqual(self.per_collection(events, "users"),
                         ["collectionStart", "collectionFetch", "collectionError"])
        self.assertIn("credits", names)

    def test_failing_collection_does_not_stop_the_run(self):
        self.local.collection("credits").insert_one({"customerName": "Tab", "store": "S1"})
        remote = WrappedRemote(ps.connect(self.remote_path), {"transactions": RuntimeError("disk full")})
        sync_run, events = self.run_sync(SyncDirection.PUSH, opener=lambda *a, **k: remote)

        self.assertEqual([r.target.kind for r in sync_run.failed], ["Transaction"])
        self.assertEqual(sync_run.successful, 4)
        self.assertEqual(self.per_collection(events, "credits")[-1], "collectionSuccess")
        self.assertEqual(self.remote.collection("credits").count(), 1)
        self.assertTrue(remote.closed)

    def test_rejected_records_are_reported_with_source_index(self):
        self.remote.collection("users").insert_one(
            {"_id": "other", "username": "admin", "password": "x", "userType": "admin", "store": "S1"})
        sync_run, events = self.run_sync(SyncDirection.PUSH)

        errors = [d for e, d in events if e == EVENT_ERROR and d.get("type") == "collectionError"]
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0]["collectionName"], "users")
        self.assertEqual(errors[0]["severity"], "error")
        self.assertEqual(errors[0]["writeErrors"][0]["index"], 0)
        self.assertEqual(errors[0]["writeErrors"][0]["code"], "duplicate_key")
        self.assertEqual(sync_run.status, "error")

    def test_lost_remote_aborts_run_and_still_completes(self):
        remote = WrappedRemote(ps.connect(self.remote_path),
                               {"transactions": RemoteConnectionError("socket closed", unreachable=True)})
        sync_run, events = self.run_sync(SyncDirection.PUSH, opener=lambda *a, **k: remote)

        self.assertTrue(sync_run.aborted)
        critical = [d for e, d in events if e == EVENT_ERROR and d.get("type") == "critical"]
        self.assertEqual(len(critical), 1)
        self.assertEqual(events[-1][0], EVENT_COMPLETE)
        self.assertTrue(events[-1][1]["aborted"])
        self.assertEqual(self.per_collection(events, "users"), [])
        self.assertTrue(remote.closed)

    def test_unexpected_error_is_fatal_with_stack_in_development(self):
        remote = WrappedRemote(ps.connect(self.remote_path))
        orchestrator = self.orchestrator(opener=lambda *a, **k: remote, include_traceback=True)
        sync_run = orchestrator.start(SyncDirection.PUSH, "admin", "S1")

        def explode(*args, **kwargs):
            raise KeyError("targets")

        orchestrator._sync_target = explode
        frames = []
        orchestrator.stream(sync_run, EventStream(frames.append))
        events = parse_frames(frames)

        fatal = [d for e, d in events if e == EVENT_ERROR and d.get("type") == "fatal"]
        self.assertEqual(len(fatal), 1)
        self.assertIn("KeyError", fatal[0]["stack"])
        self.assertEqual(events[-1][0], EVENT_COMPLETE)
        self.assertEqual(events[-1][1]["status"], "error")
        self.assertTrue(remote.closed)

    def test_closed_stream_drops_events_but_run_finishes(self):
        self.local.collection("products").insert_one({"item": "Widget", "store": "S1"})
        written = []

        def writer(frame):
            if len(written) >= 3:
                raise BrokenPipeError("client went away")
            written.append(frame)

        remote = WrappedRemote(ps.connect(self.remote_path))
        events = EventStream(writer)
        sync_run = self.orchestrator(opener=lambda *a, **k: remote).run(SyncDirection.PUSH, "admin", "S1", events)

        self.assertEqual(len(written), 3)
        self.assertTrue(events.closed)
        self.assertFalse(events.emit(EVENT_STATUS, {"type": "info"}))
        self.assertEqual(sync_run.status, "success")
        self.assertEqual(self.remote.collection("products").count(), 1)
        self.assertTrue(remote.closed)


class PullTest(SyncTestBase):
    def test_incremental_pull_uses_newest_local_created_at(self):
        self.local.collection("transactions").insert_one(
            {"_id": "t2", "store": "S1", "currency": "USD", "createdAt": "2024-01-02T00:00:00.000Z"})
        remote_tx = self.remote.collection("transactions")
        for tx_id, stamp in (("t1", "2024-01-01"), ("t2", "2024-01-02"), ("t3", "2024-01-03")):
            remote_tx.insert_one({"_id": tx_id, "store": "S1", "currency": "USD",
                                  "createdAt": stamp + "T00:00:00.000Z"})

        sync_run, events = self.run_sync(SyncDirection.PULL)
        fetch = [d for e, d in events if d.get("type") == "collectionFetch" and d["collectionName"] == "transactions"]
        self.assertEqual(fetch[0]["count"], 1)
        self.assertEqual(fetch[0]["since"], "2024-01-02T00:00:00.000Z")
        self.assertEqual(self.local.collection("transactions").count(), 2)
        self.assertEqual([t.local_collection for t in sync_run.targets], ["transactions", "credits"])

        _, events = self.run_sync(SyncDirection.PULL)
        fetch = [d for e, d in events if d.get("type") == "collectionFetch" and d["collectionName"] == "transactions"]
        self.assertEqual(fetch[0]["count"], 0)
        self.assertEqual(self.per_collection(events, "transactions")[-1], "collectionSkipped")

    def test_skew_widens_pull_window(self):
        self.local.collection("transactions").insert_one(
            {"_id": "t2", "store": "S1", "currency": "USD", "createdAt": "2024-01-02T00:00:00.000Z"})
        self.remote.collection("transactions").insert_one(
            {"_id": "late", "store": "S1", "currency": "USD", "createdAt": "2024-01-01T23:59:30.000Z"})

        _, events = self.run_sync(SyncDirection.PULL, pull_skew_seconds=60)
        fetch = [d for e, d in events if d.get("type") == "collectionFetch" and d["collectionName"] == "transactions"]
        self.assertEqual(fetch[0]["since"], "2024-01-01T23:59:00.000Z")
        self.assertEqual(fetch[0]["count"], 1)
        self.assertIsNotNone(self.local.collection("transactions").find_one({"_id": "late"}))

    def test_pull_compares_created_at_as_instants(self):
        self.local.collection("transactions").insert_one(
            {"_id": "t1", "store": "S1", "currency": "USD", "createdAt": "2024-01-02T00:00:00Z"})
        remote_tx = self.remote.collection("transactions")
        remote_tx.insert_one({"_id": "t1", "store": "S1", "currency": "USD", "createdAt": "2024-01-02T00:00:00Z"})
        remote_tx.insert_one({"_id": "t2", "store": "S1", "currency": "USD", "createdAt": "2024-01-02T00:00:00.500Z"})
        # same instant as t1, written with an offset
        remote_tx.insert_one({"_id": "t3", "store": "S1", "currency": "USD", "createdAt": "2024-01-02T01:00:00+01:00"})

        _, events = self.run_sync(SyncDirection.PULL)
        fetch = [d for e, d in events if d.get("type") == "collectionFetch" and d["collectionName"] == "transactions"]
        self.assertEqual(fetch[0]["since"], "2024-01-02T00:00:00.000Z")
        self.assertEqual(fetch[0]["count"], 1)
        self.assertIsNotNone(self.local.collection("transactions").find_one({"_id": "t2"}))
        self.assertIsNone(self.local.collection("transactions").find_one({"_id": "t3"}))

        _, events = self.run_sync(SyncDirection.PULL)
        fetch = [d for e, d in events if d.get("type") == "collectionFetch" and d["collectionName"] == "transactions"]
        self.assertEqual(fetch[0]["since"], "2024-01-02T00:00:00.500Z")
        self.assertEqual(fetch[0]["count"], 0)

    def test_pull_never_deletes_local_records(self):
        local_only = {"_id": "local-only", "customerName": "Tab", "store": "S1", "status": "pending",
                      "createdAt": "2024-03-01T00:00:00.000Z"}
        self.local.collection("credits").insert_one(local_only)
        self.local.collection("transactions").insert_one(
            {"_id": "till-1", "store": "S1", "currency": "LRD", "createdAt": "2024-01-01T00:00:00.000Z"})
        self.remote.collection("credits").insert_one(
            {"_id": "c-remote", "customerName": "Other", "store": "S1", "createdAt": "2024-04-01T00:00:00.000Z"})
        self.remote.collection("transactions").insert_one(
            {"_id": "hq-1", "store": "S1", "currency": "USD", "createdAt": "2024-02-01T00:00:00.000Z"})

        sync_run, _ = self.run_sync(SyncDirection.PULL)
        self.assertEqual(sync_run.status, "success")
        self.assertEqual(self.local.collection("credits").find_one({"_id": "local-only"}), local_only)
        self.assertIsNotNone(self.local.collection("transactions").find_one({"_id": "till-1"}))
        self.assertEqual(self.local.collection("credits").count(), 2)
        self.assertEqual(self.local.collection("transactions").count(), 2)

    def test_products_scope_pulls_full_inventory(self):
        self.local.collection("products").insert_one(
            {"_id": "L1", "item": "Widget", "store": "S1", "qty": 1, "createdAt": "2030-01-01T00:00:00.000Z"})
        self.remote.collection("products").insert_one(
            {"_id": "R1", "item": "Widget", "store": "S1", "qty": 9, "createdAt": "2020-01-01T00:00:00.000Z"})

        sync_run, events = self.run_sync(SyncDirection.PULL, scope=PULL_SCOPE_PRODUCTS)
        self.assertEqual([t.kind for t in sync_run.targets], ["Product"])
        self.assertEqual(events[-1][1]["totalCollections"], 1)
        doc = self.local.collection("products").find_one({"item": "Widget", "store": "S1"})
        self.assertEqual(doc["_id"], "L1")
        self.assertEqual(doc["qty"], 9)


class StartTest(SyncTestBase):
    def test_unknown_actor(self):
        with self.assertRaises(ActorNotFound) as ctx:
            self.orchestrator().start(SyncDirection.PUSH, "ghost", "S1")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_missing_remote_configuration(self):
        with self.assertRaises(SyncConfigurationError) as ctx:
            self.orchestrator(remote_uri=None).start(SyncDirection.PUSH, "admin", "S1")
        self.assertEqual(str(ctx.exception), "Remote database configuration is missing.")

    def test_unreachable_remote_fails_before_streaming(self):
        missing = os.path.join(self.tmp.name, "nowhere", "remote.db")
        with self.assertRaises(RemoteConnectionError) as ctx:
            self.orchestrator(remote_uri=missing).start(SyncDirection.PUSH, "admin", "S1")
        self.assertTrue(ctx.exception.unreachable)

    def test_guard_allows_one_run_per_direction(self):
        guard = RunGuard()
        orchestrator = self.orchestrator(guard=guard)
        first = orchestrator.start(SyncDirection.PUSH, "admin", "S1")
        with self.assertRaises(SyncBusyError):
            orchestrator.start(SyncDirection.PUSH, "admin", "S1")
        pull = orchestrator.start(SyncDirection.PULL, "admin", "S1")
        orchestrator.abandon(pull)
        orchestrator.stream(first, EventStream(lambda frame: None))
        orchestrator.abandon(orchestrator.start(SyncDirection.PUSH, "admin", "S1"))

    def test_guard_released_when_connect_fails(self):
        guard = RunGuard()
        missing = os.path.join(self.tmp.name, "missing.db")
        orchestrator = self.orchestrator(guard=guard, remote_uri=missing)
        for _ in range(2):
            with self.assertRaises(RemoteConnectionError):
                orchestrator.start(SyncDirection.PUSH, "admin", "S1")


class HelpersTest(unittest.TestCase):
    def test_progress_percent_rounds_half_up(self):
        self.assertEqual(progress_percent(0, 5), 0)
        self.assertEqual(progress_percent(1, 3), 33)
        self.assertEqual(progress_percent(2, 3), 67)
        self.assertEqual(progress_percent(1, 8), 13)
        self.assertEqual(progress_percent(5, 5), 100)
        self.assertEqual(progress_percent(0, 0), 100)

    def test_pull_scope_selection(self):
        self.assertEqual([t.kind for t in targets_for(SyncDirection.PULL, "products")], ["Product"])
        self.assertEqual([t.kind for t in targets_for(SyncDirection.PULL, "anything")], ["Transaction", "Credit"])
        self.assertEqual([t.kind for t in targets_for(SyncDirection.PULL, None)], ["Transaction", "Credit"])
        self.assertEqual(len(targets_for(SyncDirection.PUSH)), 5)

    def test_queue_stream_frames_end_after_close(self):
        events = EventStream()
        events.emit(EVENT_STATUS, {"type": "info"})
        events.close()
        events.close()
        self.assertFalse(events.emit(EVENT_STATUS, {"type": "late"}))
        frames = list(events.frames())
        self.assertEqual(len(frames), 1)
        self.assertTrue(frames[0].startswith("event: syncStatus\n"))


if __name__ == "__main__":
    unittest.main()
