"""
Local durable cache of records, keyed by (collection, id).

This is the source of truth while the remote store is unreachable, so every
write is committed before the call returns and any sqlite error is raised as
LocalStorageFailure instead of being swallowed.
"""
import datetime as dt
import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import pos_settings
from pos_errors import LocalStorageFailure

logger = logging.getLogger(__name__)


def iso_now() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def connect(db_path: Optional[str] = None) -> sqlite3.Connection:
    """Open the local database. The connection is shared with the sync loop thread."""
    try:
        conn = sqlite3.connect(db_path or pos_settings.POS_DB_PATH, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.isolation_level = None
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
    except sqlite3.Error as exc:
        raise LocalStorageFailure(f"cannot open local database: {exc}") from exc
    return conn


def init_db(conn: sqlite3.Connection, schema_path: Optional[str] = None):
    path = schema_path or pos_settings.SCHEMA_PATH
    try:
        with open(path, "r", encoding="utf-8") as f:
            conn.executescript(f.read())
        conn.commit()
    except (OSError, sqlite3.Error) as exc:
        raise LocalStorageFailure(f"cannot initialize schema from {path}: {exc}") from exc


@contextmanager
def atomic(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a group of writes as one transaction; nested calls join the outer one."""
    if conn.in_transaction:
        yield conn
        return
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as exc:
        raise LocalStorageFailure(f"cannot start local transaction: {exc}") from exc
    try:
        yield conn
        conn.commit()
    except sqlite3.Error as exc:
        conn.rollback()
        raise LocalStorageFailure(str(exc)) from exc
    except BaseException:
        conn.rollback()
        raise


def _dumps(doc: Dict[str, Any]) -> str:
    return json.dumps(doc, separators=(",", ":"), sort_keys=True)


class LocalCache:
    """Per-collection document store with tombstones."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def put(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        record_id = record.get("id")
        if not record_id:
            raise ValueError("cannot cache a record without an id")
        with atomic(self.conn):
            self.conn.execute("""
                INSERT INTO cache_records (collection, record_id, doc_json, deleted, updated_utc)
                VALUES (?,?,?,0,?)
                ON CONFLICT(collection, record_id) DO UPDATE SET
                    doc_json=excluded.doc_json,
                    deleted=0,
                    updated_utc=excluded.updated_utc
            """, (collection, str(record_id), _dumps(record), iso_now()))
        return record

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        try:
            row = self.conn.execute(
                "SELECT doc_json FROM cache_records WHERE collection=? AND record_id=? AND deleted=0",
                (collection, record_id),
            ).fetchone()
        except sqlite3.Error as exc:
            raise LocalStorageFailure(str(exc)) from exc
        return json.loads(row["doc_json"]) if row else None

    def get_all(self, collection: str) -> List[Dict[str, Any]]:
        try:
            rows = self.conn.execute(
                "SELECT doc_json FROM cache_records WHERE collection=? AND deleted=0 ORDER BY rowid",
                (collection,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise LocalStorageFailure(str(exc)) from exc
        return [json.loads(r["doc_json"]) for r in rows]

    def ids(self, collection: str) -> List[str]:
        try:
            rows = self.conn.execute(
                "SELECT record_id FROM cache_records WHERE collection=? AND deleted=0 ORDER BY rowid",
                (collection,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise LocalStorageFailure(str(exc)) from exc
        return [r["record_id"] for r in rows]

    def mark_deleted(self, collection: str, record_id: str) -> bool:
        """Tombstone a record; the row stays so in-flight readers are not surprised."""
        with atomic(self.conn):
            cur = self.conn.execute(
                "UPDATE cache_records SET deleted=1, updated_utc=? WHERE collection=? AND record_id=? AND deleted=0",
                (iso_now(), collection, record_id),
            )
        return cur.rowcount > 0

    def purge_tombstones(self, collection: str, older_than: str) -> int:
        """Physically drop tombstones last touched before `older_than` (ISO UTC)."""
        with atomic(self.conn):
            cur = self.conn.execute(
                "DELETE FROM cache_records WHERE collection=? AND deleted=1 AND updated_utc < ?",
                (collection, older_than),
            )
        if cur.rowcount:
            logger.info("Purged %d tombstoned %s record(s)", cur.rowcount, collection)
        return cur.rowcount

    def remember_remote_id(self, collection: str, local_id: str, remote_id: str):
        with atomic(self.conn):
            self.conn.execute("""
                INSERT INTO synced_ids (collection, local_id, remote_id, synced_utc) VALUES (?,?,?,?)
                ON CONFLICT(collection, local_id) DO UPDATE SET remote_id=excluded.remote_id
            """, (collection, local_id, remote_id, iso_now()))

    def lookup_remote_id(self, collection: str, local_id: str) -> Optional[str]:
        try:
            row = self.conn.execute(
                "SELECT remote_id FROM synced_ids WHERE collection=? AND local_id=?",
                (collection, local_id),
            ).fetchone()
        except sqlite3.Error as exc:
            raise LocalStorageFailure(str(exc)) from exc
        return row["remote_id"] if row else None
