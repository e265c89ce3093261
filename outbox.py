"""
Durable outbox of pending remote writes.

One pending entry per (collection, record id): a second local edit to a
record that has not been pushed yet folds into the existing entry instead of
appending. An entry that is already being pushed (in flight) is left alone
and the new edit queues behind it.
"""
import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Set

from offline_cache import atomic, iso_now
from payment_records import merge_documents
from pos_errors import LocalStorageFailure

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
ACTIONS = (CREATE, UPDATE)


@dataclass
class OutboxEntry:
    seq: int
    collection: str
    record_id: str
    action: str
    payload: Dict[str, Any]
    enqueued_at: str
    attempts: int = 0
    last_error: Optional[str] = None
    in_flight: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'OutboxEntry':
        return cls(
            seq=row['seq'],
            collection=row['collection'],
            record_id=row['record_id'],
            action=row['action'],
            payload=json.loads(row['payload_json']),
            enqueued_at=row['enqueued_at'],
            attempts=row['attempts'],
            last_error=row['last_error'],
            in_flight=bool(row['in_flight']),
        )


def _dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


class Outbox:

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _query(self, sql: str, params=()) -> List[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise LocalStorageFailure(str(exc)) from exc

    def enqueue(self, action: str, collection: str, record_id: str, payload: Dict[str, Any]) -> OutboxEntry:
        """Queue a remote write, folding into a pending entry for the same record.

        A pending create stays a create: the remote id does not exist yet, so
        the merged payload must be replayed as a single create.
        """
        if action not in ACTIONS:
            raise ValueError(f"unsupported outbox action: {action}")
        with atomic(self.conn):
            row = self.conn.execute("""
                SELECT * FROM outbox
                WHERE collection=? AND record_id=? AND in_flight=0
                ORDER BY seq DESC LIMIT 1
            """, (collection, record_id)).fetchone()
            if row:
                merged = merge_documents(json.loads(row['payload_json']), payload)
                new_action = CREATE if CREATE in (row['action'], action) else UPDATE
                self.conn.execute(
                    "UPDATE outbox SET action=?, payload_json=? WHERE seq=?",
                    (new_action, _dumps(merged), row['seq']),
                )
                seq = row['seq']
            else:
                cur = self.conn.execute("""
                    INSERT INTO outbox (collection, record_id, action, payload_json, enqueued_at)
                    VALUES (?,?,?,?,?)
                """, (collection, record_id, action, _dumps(payload), iso_now()))
                seq = cur.lastrowid
            entry = self.get(seq)
        logger.debug("Queued %s %s/%s (seq=%s)", entry.action, collection, record_id, seq)
        return entry

    def get(self, seq: int) -> Optional[OutboxEntry]:
        rows = self._query("SELECT * FROM outbox WHERE seq=?", (seq,))
        return OutboxEntry.from_row(rows[0]) if rows else None

    def entries(self, collection: Optional[str] = None) -> List[OutboxEntry]:
        if collection is None:
            rows = self._query("SELECT * FROM outbox ORDER BY seq ASC")
        else:
            rows = self._query("SELECT * FROM outbox WHERE collection=? ORDER BY seq ASC", (collection,))
        return [OutboxEntry.from_row(r) for r in rows]

    def drain(self, collection: Optional[str] = None) -> Iterator[OutboxEntry]:
        """Yield pending entries oldest first, one at a time.

        Each step re-reads the table, so entries queued while an earlier one
        was being pushed are still seen in this pass. Nothing is removed here;
        callers confirm with complete() or give the entry back with fail().
        """
        last_seq = 0
        while True:
            if collection is None:
                rows = self._query(
                    "SELECT * FROM outbox WHERE seq>? AND in_flight=0 ORDER BY seq ASC LIMIT 1",
                    (last_seq,),
                )
            else:
                rows = self._query(
                    "SELECT * FROM outbox WHERE seq>? AND in_flight=0 AND collection=? ORDER BY seq ASC LIMIT 1",
                    (last_seq, collection),
                )
            if not rows:
                return
            entry = OutboxEntry.from_row(rows[0])
            last_seq = entry.seq
            yield entry

    def mark_in_flight(self, entry: OutboxEntry):
        with atomic(self.conn):
            self.conn.execute("UPDATE outbox SET in_flight=1 WHERE seq=?", (entry.seq,))
        entry.in_flight = True

    def complete(self, entry: OutboxEntry):
        with atomic(self.conn):
            self.conn.execute("DELETE FROM outbox WHERE seq=?", (entry.seq,))

    def fail(self, entry: OutboxEntry, error: str):
        with atomic(self.conn):
            self.conn.execute(
                "UPDATE outbox SET attempts=attempts+1, last_error=?, in_flight=0 WHERE seq=?",
                (error, entry.seq),
            )
        entry.attempts += 1
        entry.last_error = error
        entry.in_flight = False

    def recover_in_flight(self) -> int:
        """Release entries left in flight by a process that died mid-push."""
        with atomic(self.conn):
            cur = self.conn.execute("UPDATE outbox SET in_flight=0 WHERE in_flight=1")
        if cur.rowcount:
            logger.warning("Recovered %d outbox entr%s left in flight", cur.rowcount, 'y' if cur.rowcount == 1 else 'ies')
        return cur.rowcount

    def rebind(self, collection: str, local_id: str, remote_id: str) -> int:
        """Point pending entries for a just-synced local id at its remote id.

        They become updates: the create that introduced the record has been
        confirmed, so replaying another create would duplicate it.
        """
        rebound = 0
        with atomic(self.conn):
            rows = self.conn.execute(
                "SELECT seq, payload_json FROM outbox WHERE collection=? AND record_id=? AND in_flight=0",
                (collection, local_id),
            ).fetchall()
            for row in rows:
                payload = json.loads(row['payload_json'])
                if 'id' in payload:
                    payload['id'] = remote_id
                self.conn.execute(
                    "UPDATE outbox SET record_id=?, action=?, payload_json=? WHERE seq=?",
                    (remote_id, UPDATE, _dumps(payload), row['seq']),
                )
                rebound += 1
        return rebound

    def pending_ids(self, collection: str) -> Set[str]:
        rows = self._query("SELECT DISTINCT record_id FROM outbox WHERE collection=?", (collection,))
        return {r['record_id'] for r in rows}

    def pending_payload(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Merged payload of every queued entry for one record, oldest first."""
        rows = self._query(
            "SELECT payload_json FROM outbox WHERE collection=? AND record_id=? ORDER BY seq ASC",
            (collection, record_id),
        )
        if not rows:
            return None
        merged: Dict[str, Any] = {}
        for row in rows:
            merged = merge_documents(merged, json.loads(row['payload_json']))
        return merged

    def count(self, collection: Optional[str] = None) -> int:
        if collection is None:
            rows = self._query("SELECT COUNT(*) AS c FROM outbox")
        else:
            rows = self._query("SELECT COUNT(*) AS c FROM outbox WHERE collection=?", (collection,))
        return int(rows[0]['c']) if rows else 0
