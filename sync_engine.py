"""
Sync engine: the only component that talks to the remote document store.

Writes go straight to the remote while online and are mirrored into the
local cache; while offline they land in the cache and the outbox and are
replayed by a drain once connectivity returns.

All cache/outbox mutation happens under one asyncio lock. Remote calls run
outside the lock, so ledger writes are not blocked behind a slow push. A
drain requested while one is running is folded into a single follow-up
drain.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import pos_settings
from connectivity import ConnectivityMonitor
from offline_cache import LocalCache, atomic
from outbox import ACTIONS, CREATE, Outbox, OutboxEntry
from payment_records import is_local_id, merge_documents, new_local_id
from pos_errors import (
    PosError,
    RemoteRejection,
    StatusSubscriberError,
    TransientConnectivityError,
)
from remote_store import RemoteDocumentStore

logger = logging.getLogger(__name__)

STATUS_START = 'start'
STATUS_END = 'end'

StatusHandler = Callable[[str], None]


@dataclass
class DrainReport:
    applied: int = 0
    failed: int = 0
    skipped: int = 0
    refreshed: int = 0
    tombstoned: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'applied': self.applied,
            'failed': self.failed,
            'skipped': self.skipped,
            'refreshed': self.refreshed,
            'tombstoned': self.tombstoned,
            'errors': list(self.errors),
        }


class SyncEngine:

    def __init__(self, cache: LocalCache, outbox: Outbox, remote: RemoteDocumentStore,
                 monitor: ConnectivityMonitor, collections: Iterable[str] = (),
                 max_attempts: Optional[int] = None, retry_delay: Optional[float] = None):
        self.cache = cache
        self.outbox = outbox
        self.remote = remote
        self.monitor = monitor
        self.collections: Set[str] = set(collections) or {pos_settings.PAYMENTS_COLLECTION}
        self.max_attempts = max_attempts if max_attempts is not None else pos_settings.SYNC_MAX_ATTEMPTS
        self.retry_delay = retry_delay if retry_delay is not None else pos_settings.SYNC_RETRY_DELAY
        self._lock = asyncio.Lock()
        self._subscribers: List[StatusHandler] = []
        self._syncing = False
        self._drain_task: Optional[asyncio.Task] = None
        self._drain_again = False
        self._retry_task: Optional[asyncio.Task] = None
        self._record_locks: Dict[tuple, asyncio.Lock] = {}
        self.drains_completed = 0
        self.last_error: Optional[str] = None
        self.last_report: Optional[DrainReport] = None
        monitor.on_online(self.request_drain)

    # ---------- status ----------
    def is_online(self) -> bool:
        return self.monitor.is_online()

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def subscribe_status(self, handler: StatusHandler):
        self._subscribers.append(handler)

    def _emit(self, status: str):
        for handler in list(self._subscribers):
            try:
                handler(status)
            except Exception as exc:
                err = StatusSubscriberError(handler, status, exc)
                logger.exception("%s", err)

    def status_snapshot(self) -> Dict[str, Any]:
        return {
            'online': self.is_online(),
            'syncing': self._syncing,
            'pending': self.outbox.count(),
            'drains': self.drains_completed,
            'last_error': self.last_error,
            'last_report': self.last_report.as_dict() if self.last_report else None,
        }

    # ---------- lifecycle ----------
    def start(self) -> Optional[asyncio.Task]:
        """Recover from an interrupted drain and push anything left over."""
        self.outbox.recover_in_flight()
        if self.is_online() and self.outbox.count():
            return self.request_drain()
        return None

    def request_drain(self) -> asyncio.Task:
        if self._drain_task and not self._drain_task.done():
            self._drain_again = True
            logger.info("Drain already running; follow-up drain requested")
            return self._drain_task
        self._drain_task = asyncio.get_running_loop().create_task(self._drain_loop())
        return self._drain_task

    def _schedule_drain(self, delay: float) -> asyncio.Task:
        """Drain after `delay` seconds if still online; at most one is pending."""
        if self._retry_task and not self._retry_task.done():
            return self._retry_task
        self._retry_task = asyncio.get_running_loop().create_task(self._drain_later(delay))
        return self._retry_task

    async def _drain_later(self, delay: float):
        await asyncio.sleep(delay)
        if self.is_online() and self.outbox.count():
            await self.request_drain()

    async def wait_idle(self):
        while True:
            busy = [t for t in (self._retry_task, self._drain_task) if t and not t.done()]
            if not busy:
                return
            await asyncio.shield(busy[0])

    def record_lock(self, collection: str, record_id: str) -> asyncio.Lock:
        """Lock serializing read-check-write sequences on one record."""
        key = (collection, self.resolve_id(collection, record_id))
        lock = self._record_locks.get(key)
        if lock is None:
            lock = self._record_locks[key] = asyncio.Lock()
        return lock

    async def _drain_loop(self):
        while True:
            self._drain_again = False
            try:
                await self.drain()
            except PosError as exc:
                self.last_error = str(exc)
                logger.exception("Drain cycle aborted: %s", exc)
            if not self._drain_again:
                return

    # ---------- reads ----------
    async def current_records(self, collection: str) -> List[Dict[str, Any]]:
        """Every live record, from the remote while online, else from the cache.

        A failed remote list is answered wholly from the cache. A successful
        one is extended with the complete set of local records still waiting
        to be created remotely, so nothing the till has rung up goes missing.
        """
        self.collections.add(collection)
        if self.is_online():
            try:
                remote_docs = await self.remote.list_all(collection)
            except TransientConnectivityError as exc:
                logger.warning("Remote read of %s failed; serving local cache: %s", collection, exc)
            else:
                return remote_docs + self._unsynced_locals(collection, remote_docs)
        return self.cache.get_all(collection)

    def _unsynced_locals(self, collection: str, remote_docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        seen_ids = {d.get('id') for d in remote_docs}
        seen_refs = {d.get('clientRef') for d in remote_docs if d.get('clientRef')}
        extra = []
        for rid in sorted(self.outbox.pending_ids(collection)):
            if not is_local_id(rid) or rid in seen_ids:
                continue
            doc = self.cache.get(collection, rid)
            # Created remotely but not yet adopted by the running drain.
            if doc is None or doc.get('clientRef') in seen_refs:
                continue
            extra.append(doc)
        return extra

    async def get_record(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        record_id = self.resolve_id(collection, record_id)
        if is_local_id(record_id):
            return self.cache.get(collection, record_id)
        for doc in await self.current_records(collection):
            if doc.get('id') == record_id:
                return doc
        return None

    def resolve_id(self, collection: str, record_id: str) -> str:
        """Map a local id that has already been synced to its remote id."""
        if is_local_id(record_id):
            return self.cache.lookup_remote_id(collection, record_id) or record_id
        return record_id

    # ---------- writes ----------
    def _must_queue(self, collection: str, record_id: Optional[str]) -> bool:
        if record_id is None:
            return False
        return is_local_id(record_id) or record_id in self.outbox.pending_ids(collection)

    async def write(self, action: str, collection: str, payload: Dict[str, Any],
                    record_id: Optional[str] = None) -> Dict[str, Any]:
        """Apply a create or update and return the document as now stored locally."""
        if action not in ACTIONS:
            raise ValueError(f"unsupported write action: {action}")
        if action != CREATE and not record_id:
            raise ValueError("update requires a record id")
        self.collections.add(collection)
        if record_id:
            record_id = self.resolve_id(collection, record_id)

        if self.is_online():
            if not self._must_queue(collection, record_id):
                if action == CREATE and not payload.get('clientRef'):
                    # Same key on the queued retry if the remote stored it before timing out.
                    payload = merge_documents(payload, {'clientRef': uuid.uuid4().hex})
                try:
                    return await self._write_online(action, collection, payload, record_id)
                except TransientConnectivityError as exc:
                    logger.warning("Remote unreachable during %s on %s; queueing locally: %s",
                                   action, collection, exc)
                    doc = await self._write_offline(action, collection, payload, record_id)
                    # No reconnect edge will follow while the signal stays online.
                    self._schedule_drain(self.retry_delay)
                    return doc
            else:
                doc = await self._write_offline(action, collection, payload, record_id)
                self.request_drain()
                return doc
        return await self._write_offline(action, collection, payload, record_id)

    async def _write_online(self, action: str, collection: str, payload: Dict[str, Any],
                            record_id: Optional[str]) -> Dict[str, Any]:
        if action == CREATE:
            body = {k: v for k, v in payload.items() if k != 'id'}
            remote_id = await self.remote.create(collection, body)
            doc = merge_documents(body, {'id': remote_id})
        else:
            await self.remote.update(collection, record_id, payload)
            doc = merge_documents(self.cache.get(collection, record_id), payload)
            doc['id'] = record_id
        async with self._lock:
            self.cache.put(collection, doc)
        logger.info("Wrote %s %s/%s to remote", action, collection, doc['id'])
        return doc

    async def _write_offline(self, action: str, collection: str, payload: Dict[str, Any],
                             record_id: Optional[str]) -> Dict[str, Any]:
        async with self._lock:
            if action == CREATE:
                rid = record_id or payload.get('id') or new_local_id()
                doc = merge_documents(payload, {'id': rid})
                if not doc.get('clientRef'):
                    doc['clientRef'] = rid
                queued = doc
            else:
                rid = record_id
                doc = merge_documents(self.cache.get(collection, rid), payload)
                doc['id'] = rid
                queued = payload
            with atomic(self.cache.conn):
                self.cache.put(collection, doc)
                self.outbox.enqueue(action, collection, rid, queued)
        logger.info("Queued %s %s/%s for sync", action, collection, rid)
        return doc

    # ---------- drain ----------
    async def drain(self) -> DrainReport:
        """Replay the outbox in order, then refresh the cache from the remote."""
        report = DrainReport()
        self._syncing = True
        self._emit(STATUS_START)
        logger.info("Drain started (pending=%d)", self.outbox.count())
        try:
            blocked = set()
            for entry in self.outbox.drain():
                key = (entry.collection, entry.record_id)
                if key in blocked:
                    report.skipped += 1
                    continue
                if not await self._replay(entry, report):
                    blocked.add(key)
                    if not self.is_online():
                        logger.warning("Connectivity lost mid-drain; leaving remaining entries queued")
                        break
            if self.is_online():
                for collection in sorted(self.collections):
                    await self._refresh(collection, report)
            self.last_error = report.errors[-1] if report.errors else None
        finally:
            self._syncing = False
            self.drains_completed += 1
            self.last_report = report
            logger.info("Drain finished (applied=%d failed=%d skipped=%d refreshed=%d pending=%d)",
                        report.applied, report.failed, report.skipped, report.refreshed, self.outbox.count())
            self._emit(STATUS_END)
        return report

    async def _replay(self, entry: OutboxEntry, report: DrainReport) -> bool:
        async with self._lock:
            self.outbox.mark_in_flight(entry)
        attempt = 0
        while True:
            attempt += 1
            try:
                if entry.action == CREATE:
                    remote_id = await self._replay_create(entry)
                else:
                    remote_id = entry.record_id
                    await self.remote.update(entry.collection, entry.record_id, entry.payload)
                break
            except TransientConnectivityError as exc:
                if attempt < self.max_attempts and self.is_online():
                    logger.info("Retrying %s %s/%s after transient error (%d/%d): %s", entry.action,
                                entry.collection, entry.record_id, attempt, self.max_attempts, exc)
                    await asyncio.sleep(self.retry_delay)
                    continue
                await self._give_back(entry, report, exc)
                return False
            except RemoteRejection as exc:
                await self._give_back(entry, report, exc)
                return False

        async with self._lock:
            with atomic(self.cache.conn):
                if entry.action == CREATE:
                    self._adopt_remote_id(entry, remote_id)
                self.outbox.complete(entry)
        report.applied += 1
        logger.info("Synced %s %s/%s -> %s", entry.action, entry.collection, entry.record_id, remote_id)
        return True

    async def _give_back(self, entry: OutboxEntry, report: DrainReport, exc: Exception):
        async with self._lock:
            self.outbox.fail(entry, str(exc))
        report.failed += 1
        report.errors.append(f"{entry.collection}/{entry.record_id}: {exc}")
        logger.warning("Failed to sync %s %s/%s (attempts=%d): %s", entry.action, entry.collection,
                       entry.record_id, entry.attempts, exc)

    async def _replay_create(self, entry: OutboxEntry) -> str:
        local_id = entry.record_id
        known = self.cache.lookup_remote_id(entry.collection, local_id)
        if known:
            logger.info("Create for %s/%s already confirmed as %s", entry.collection, local_id, known)
            return known
        body = {k: v for k, v in entry.payload.items() if k != 'id'}
        if not body.get('clientRef'):
            body['clientRef'] = local_id
        return await self.remote.create(entry.collection, body)

    def _adopt_remote_id(self, entry: OutboxEntry, remote_id: str):
        """Re-key a synced local record under its remote id and tombstone the local copy."""
        collection, local_id = entry.collection, entry.record_id
        if remote_id == local_id:
            return
        self.cache.remember_remote_id(collection, local_id, remote_id)
        current = self.cache.get(collection, local_id)
        rebound = self.outbox.rebind(collection, local_id, remote_id)
        base = current if (rebound and current) else entry.payload
        self.cache.put(collection, merge_documents(base, {'id': remote_id}))
        self.cache.mark_deleted(collection, local_id)

    async def _refresh(self, collection: str, report: DrainReport):
        try:
            remote_docs = await self.remote.list_all(collection)
        except (TransientConnectivityError, RemoteRejection) as exc:
            report.errors.append(f"refresh {collection}: {exc}")
            logger.warning("Cache refresh of %s skipped: %s", collection, exc)
            return
        async with self._lock:
            with atomic(self.cache.conn):
                pending = self.outbox.pending_ids(collection)
                seen = set()
                for doc in remote_docs:
                    rid = doc.get('id')
                    if not rid:
                        continue
                    seen.add(rid)
                    if rid in pending:
                        if self.cache.get(collection, rid) is None:
                            self.cache.put(collection, merge_documents(doc, self.outbox.pending_payload(collection, rid)))
                        continue
                    self.cache.put(collection, doc)
                    report.refreshed += 1
                for cached_id in self.cache.ids(collection):
                    if cached_id in seen or cached_id in pending:
                        continue
                    self.cache.mark_deleted(collection, cached_id)
                    report.tombstoned += 1
