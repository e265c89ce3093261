import asyncio
import unittest

from connectivity import ConnectivityMonitor, ManualConnectivitySignal
from ledger import PaymentLedger
from offline_cache import LocalCache, connect, init_db
from outbox import CREATE, UPDATE, Outbox
from payment_records import is_local_id
from pos_errors import RemoteRejection, TransientConnectivityError
from remote_store import InMemoryDocumentStore
from sync_engine import STATUS_END, STATUS_START, SyncEngine

SALE = {
    "customerName": "Ana",
    "lineItems": [
        {"itemId": "P1", "name": "Bilao", "unitPrice": 50, "quantity": 2},
        {"itemId": "P2", "name": "Puto", "unitPrice": 30, "quantity": 1},
    ],
}


class GatedStore(InMemoryDocumentStore):
    """Holds every create until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def create(self, collection, payload):
        self.entered.set()
        await self.gate.wait()
        return await super().create(collection, payload)


class PickyStore(InMemoryDocumentStore):
    """Rejects sales for one customer and can fail the first few creates."""

    def __init__(self, reject_customer=None, transient_failures=0):
        super().__init__()
        self.reject_customer = reject_customer
        self.transient_failures = transient_failures
        self.create_calls = 0

    async def create(self, collection, payload):
        self.create_calls += 1
        if self.transient_failures:
            self.transient_failures -= 1
            raise TransientConnectivityError("connection reset")
        if payload.get("customerName") == self.reject_customer:
            raise RemoteRejection("customer is blocked", status_code=417)
        return await super().create(collection, payload)


class SyncEngineTestCase(unittest.IsolatedAsyncioTestCase):
    remote_factory = InMemoryDocumentStore
    max_attempts = 3

    async def asyncSetUp(self):
        self.conn = connect(":memory:")
        init_db(self.conn)
        self.signal = ManualConnectivitySignal(online=False)
        self.remote = self.remote_factory()
        self.engine = self._engine()
        self.ledger = PaymentLedger(self.engine, "payments")
        self.statuses = []
        self.engine.subscribe_status(self.statuses.append)

    def _engine(self):
        return SyncEngine(
            LocalCache(self.conn), Outbox(self.conn), self.remote, ConnectivityMonitor(self.signal),
            collections=("payments",), max_attempts=self.max_attempts, retry_delay=0,
        )

    async def asyncTearDown(self):
        await asyncio.wait_for(self.engine.wait_idle(), timeout=2)
        self.conn.close()

    async def reconnect(self):
        self.signal.set_online(True)
        self.assertTrue(self.engine.monitor.poll())
        await asyncio.wait_for(self.engine.wait_idle(), timeout=2)

    def remote_docs(self):
        return list(self.remote.collections.get("payments", {}).values())


class OfflineScenarioTest(SyncEngineTestCase):
    async def test_offline_sale_syncs_on_reconnect(self):
        rec = await self.ledger.create_sale(SALE)
        cached = self.engine.cache.get_all("payments")
        self.assertEqual(len(cached), 1)
        self.assertEqual(cached[0]["price"], 130.0)
        self.assertEqual([e.action for e in self.engine.outbox.entries()], [CREATE])

        await self.reconnect()

        cached = self.engine.cache.get_all("payments")
        self.assertEqual([d["id"] for d in cached], ["DOC-00001"])
        self.assertFalse(any(is_local_id(d["id"]) for d in cached))
        self.assertEqual(self.engine.outbox.count(), 0)
        self.assertEqual(len(self.remote_docs()), 1)
        self.assertEqual(self.remote_docs()[0]["clientRef"], rec.id)
        self.assertEqual(self.remote_docs()[0]["price"], 130.0)
        self.assertEqual(self.engine.cache.lookup_remote_id("payments", rec.id), "DOC-00001")
        self.assertEqual(self.engine.resolve_id("payments", rec.id), "DOC-00001")
        self.assertEqual(self.statuses, [STATUS_START, STATUS_END])

    async def test_two_offline_edits_stay_one_create(self):
        rec = await self.ledger.create_sale(SALE)
        items = [dict(SALE["lineItems"][0], quantity=5)]
        await self.ledger.update_sale(rec.id, {"lineItems": items})

        entries = self.engine.outbox.entries()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].action, CREATE)
        self.assertEqual(entries[0].payload["lineItems"][0]["quantity"], 5)
        self.assertEqual(entries[0].payload["price"], 250.0)

        await self.reconnect()
        docs = self.remote_docs()
        self.assertEqual(len(docs), 1)
        self.assertEqual(docs[0]["lineItems"][0]["quantity"], 5)

    async def test_offline_reads_come_from_cache(self):
        await self.ledger.create_sale(SALE)
        records = await self.ledger.current_records()
        self.assertEqual(len(records), 1)
        self.assertTrue(records[0].is_local)

    async def test_edit_of_unsynced_sale_while_online_is_queued_then_drained(self):
        rec = await self.ledger.create_sale(SALE)
        self.signal.set_online(True)
        items = [dict(SALE["lineItems"][0], quantity=4)]
        updated = await self.ledger.update_sale(rec.id, {"lineItems": items})
        self.assertTrue(updated.is_local)
        await asyncio.wait_for(self.engine.wait_idle(), timeout=2)
        docs = self.remote_docs()
        self.assertEqual(len(docs), 1)
        self.assertEqual(docs[0]["price"], 200.0)
        self.assertEqual(self.engine.outbox.count(), 0)

    async def test_refresh_pulls_remote_changes_and_tombstones_missing(self):
        self.engine.cache.put("payments", {"id": "DOC-OLD", "schemaVersion": 2, "price": 1})
        self.remote.collections["payments"] = {"DOC-9": {"id": "DOC-9", "schemaVersion": 2, "price": 9}}
        self.signal.set_online(True)
        report = await self.engine.drain()
        self.assertEqual(self.engine.cache.ids("payments"), ["DOC-9"])
        self.assertEqual((report.refreshed, report.tombstoned), (1, 1))

    async def test_refresh_keeps_pending_local_state(self):
        self.remote.collections["payments"] = {"DOC-9": {"id": "DOC-9", "schemaVersion": 2, "price": 9}}
        self.engine.cache.put("payments", {"id": "DOC-9", "schemaVersion": 2, "price": 12})
        self.engine.outbox.enqueue(UPDATE, "payments", "DOC-9", {"price": 12})

        async def refuse(collection, record_id, partial):
            raise TransientConnectivityError("still flaky")

        self.remote.update = refuse
        self.signal.set_online(True)
        report = await self.engine.drain()
        self.assertEqual(report.failed, 1)
        self.assertEqual(self.engine.cache.get("payments", "DOC-9")["price"], 12)


class CoalescingTest(SyncEngineTestCase):
    remote_factory = GatedStore

    async def test_second_signal_during_drain_becomes_one_follow_up(self):
        active = []
        overlaps = []

        def track(status):
            if status == STATUS_START:
                overlaps.append(len(active))
                active.append(1)
            else:
                active.pop()

        self.engine.subscribe_status(track)
        await self.ledger.create_sale(SALE)

        self.signal.set_online(True)
        self.engine.monitor.poll()
        await asyncio.wait_for(self.remote.entered.wait(), timeout=1)

        self.signal.set_online(False)
        self.engine.monitor.poll()
        self.signal.set_online(True)
        self.assertTrue(self.engine.monitor.poll())
        self.engine.request_drain()
        self.assertTrue(self.engine.is_syncing)

        self.remote.gate.set()
        await asyncio.wait_for(self.engine.wait_idle(), timeout=2)

        self.assertEqual(self.engine.drains_completed, 2)
        self.assertEqual(self.statuses, [STATUS_START, STATUS_END, STATUS_START, STATUS_END])
        self.assertEqual(overlaps, [0, 0])
        self.assertEqual(len(self.remote_docs()), 1)
        self.assertFalse(self.engine.is_syncing)


class ReplayTest(SyncEngineTestCase):
    async def test_crash_after_remote_create_does_not_duplicate(self):
        rec = await self.ledger.create_sale(SALE)
        entry = self.engine.outbox.entries()[0]
        # Previous process pushed the create, then died before confirming it.
        await self.remote.create("payments", {k: v for k, v in entry.payload.items() if k != "id"})
        self.engine.outbox.mark_in_flight(entry)

        self.signal.set_online(True)
        restarted = self._engine()
        task = restarted.start()
        self.assertIsNotNone(task)
        await asyncio.wait_for(restarted.wait_idle(), timeout=2)

        self.assertEqual(len(self.remote_docs()), 1)
        self.assertEqual(restarted.outbox.count(), 0)
        self.assertEqual(restarted.cache.ids("payments"), ["DOC-00001"])
        self.assertEqual(restarted.cache.lookup_remote_id("payments", rec.id), "DOC-00001")

    async def test_known_remote_id_skips_the_create_call(self):
        rec = await self.ledger.create_sale(SALE)
        remote_id = await self.remote.create("payments", {"clientRef": rec.id, "price": 130.0})
        self.engine.cache.remember_remote_id("payments", rec.id, remote_id)

        calls = []
        original = self.remote.create

        async def counting_create(collection, payload):
            calls.append(payload)
            return await original(collection, payload)

        self.remote.create = counting_create
        await self.reconnect()
        self.assertEqual(calls, [])
        self.assertEqual(self.engine.outbox.count(), 0)
        self.assertEqual(self.engine.cache.ids("payments"), [remote_id])


class FailureIsolationTest(SyncEngineTestCase):
    remote_factory = staticmethod(lambda: PickyStore(reject_customer="Blocked"))

    async def test_rejected_entry_stays_queued_and_others_drain(self):
        bad = await self.ledger.create_sale(dict(SALE, customerName="Blocked"))
        good = await self.ledger.create_sale(SALE)

        await self.reconnect()
        report = self.engine.last_report
        self.assertEqual((report.applied, report.failed), (1, 1))
        entries = self.engine.outbox.entries()
        self.assertEqual([e.record_id for e in entries], [bad.id])
        self.assertEqual(entries[0].attempts, 1)
        self.assertIn("customer is blocked", entries[0].last_error)
        self.assertEqual(self.remote_docs()[0]["clientRef"], good.id)
        cached_ids = self.engine.cache.ids("payments")
        self.assertIn(bad.id, cached_ids)
        self.assertNotIn(good.id, cached_ids)
        self.assertEqual(self.engine.status_snapshot()["pending"], 1)
        self.assertIn("customer is blocked", self.engine.status_snapshot()["last_error"])

    async def test_later_entries_for_a_failed_record_are_skipped(self):
        outbox = self.engine.outbox
        first = outbox.enqueue(UPDATE, "payments", "DOC-404", {"price": 1})
        outbox.mark_in_flight(first)
        outbox.enqueue(UPDATE, "payments", "DOC-404", {"price": 2})
        outbox.recover_in_flight()
        self.signal.set_online(True)

        report = await self.engine.drain()
        self.assertEqual((report.failed, report.skipped), (1, 1))
        self.assertEqual(outbox.count(), 2)

    async def test_online_rejection_reaches_the_caller(self):
        self.signal.set_online(True)
        with self.assertRaises(RemoteRejection):
            await self.ledger.create_sale(dict(SALE, customerName="Blocked"))
        self.assertEqual(self.engine.outbox.count(), 0)
        self.assertEqual(self.engine.cache.get_all("payments"), [])


class TransientTest(SyncEngineTestCase):
    remote_factory = staticmethod(lambda: PickyStore(transient_failures=2))

    async def test_transient_errors_are_retried_within_the_cycle(self):
        await self.ledger.create_sale(SALE)
        await self.reconnect()
        self.assertEqual(self.remote.create_calls, 3)
        self.assertEqual(self.engine.outbox.count(), 0)

    async def test_online_write_falls_back_to_queue(self):
        self.signal.set_online(True)
        self.remote.transient_failures = 1
        rec = await self.ledger.create_sale(SALE)
        self.assertTrue(rec.is_local)
        self.assertEqual(self.engine.outbox.count(), 1)

        # Still online, so no reconnect edge: the fallback schedules its own drain.
        await asyncio.wait_for(self.engine.wait_idle(), timeout=2)
        self.assertEqual(self.engine.outbox.count(), 0)
        [doc] = self.remote_docs()
        self.assertEqual(doc["clientRef"], rec.client_ref)
        self.assertEqual(self.engine.resolve_id("payments", rec.id), doc["id"])
        self.assertEqual(await self.ledger.order_number(rec.id), 1)

    async def test_current_records_falls_back_to_cache_wholesale(self):
        rec = await self.ledger.create_sale(SALE)
        self.signal.set_online(True)
        self.remote.reachable = False
        records = await self.engine.current_records("payments")
        self.assertEqual([d["id"] for d in records], [rec.id])


class GiveUpTest(SyncEngineTestCase):
    remote_factory = staticmethod(lambda: PickyStore(transient_failures=5))
    max_attempts = 2

    async def test_entry_kept_after_exhausting_retries(self):
        await self.ledger.create_sale(SALE)
        await self.reconnect()
        entries = self.engine.outbox.entries()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].attempts, 1)
        self.assertIn("connection reset", entries[0].last_error)
        self.assertEqual(self.remote.create_calls, 2)

    async def test_queued_sale_stays_listed_while_online(self):
        self.signal.set_online(True)
        self.remote.transient_failures = 0
        first = await self.ledger.create_sale(dict(SALE, createdAt=1000))
        self.remote.transient_failures = 5
        queued = await self.ledger.create_sale(dict(SALE, createdAt=2000))
        self.assertTrue(queued.is_local)
        self.assertEqual([r.id for r in await self.ledger.current_records()], [first.id, queued.id])
        self.assertEqual(await self.ledger.order_number(queued.id), 2)

        await asyncio.wait_for(self.engine.wait_idle(), timeout=2)
        self.assertEqual(self.engine.outbox.count(), 1)
        self.assertEqual([r.id for r in await self.ledger.current_records()], [first.id, queued.id])
        self.assertEqual(await self.ledger.order_number(queued.id), 2)


class StatusTest(SyncEngineTestCase):
    async def test_broken_subscriber_does_not_abort_the_drain(self):
        def broken(status):
            raise ValueError("boom")

        seen_syncing = []
        self.engine.subscribe_status(broken)
        self.engine.subscribe_status(lambda status: seen_syncing.append((status, self.engine.is_syncing)))
        await self.ledger.create_sale(SALE)

        with self.assertLogs("sync_engine", level="ERROR") as logs:
            await self.reconnect()
        self.assertTrue(any("status handler" in line for line in logs.output))
        self.assertEqual(self.engine.outbox.count(), 0)
        self.assertEqual(seen_syncing, [(STATUS_START, True), (STATUS_END, False)])

    async def test_status_snapshot(self):
        await self.ledger.create_sale(SALE)
        snap = self.engine.status_snapshot()
        self.assertEqual((snap["online"], snap["syncing"], snap["pending"], snap["drains"]), (False, False, 1, 0))
        await self.reconnect()
        snap = self.engine.status_snapshot()
        self.assertEqual((snap["online"], snap["pending"], snap["drains"]), (True, 0, 1))
        self.assertEqual(snap["last_report"]["applied"], 1)

    async def test_update_rejects_missing_id_and_unknown_action(self):
        with self.assertRaises(ValueError):
            await self.engine.write(UPDATE, "payments", {"price": 1})
        with self.assertRaises(ValueError):
            await self.engine.write("delete", "payments", {}, record_id="DOC-1")


if __name__ == "__main__":
    unittest.main()
