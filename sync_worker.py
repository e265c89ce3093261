#!/usr/bin/env python3
"""
POS Sync Worker

Modes:
  - watch: poll connectivity and drain the outbox on every reconnection
  - drain: push the outbox once (if online), refresh the cache and exit

Env vars:
  POS_DB_PATH            SQLite DB path (default: pos.db)
  REMOTE_BASE            remote store base URL (unset: in-memory store)
  CONNECTIVITY_INTERVAL  seconds between connectivity probes (default: 5)
  POS_LOG_LEVEL          logging level (default: INFO)

Run:
  python sync_worker.py watch
  python sync_worker.py drain --db pos.db
"""
import argparse
import asyncio
import json
import logging
import sys

import pos_settings
from connectivity import ConnectivityMonitor, build_signal
from offline_cache import LocalCache, connect, init_db
from outbox import Outbox
from pos_errors import PosError
from remote_store import build_remote_store
from sync_engine import STATUS_END, SyncEngine

logger = logging.getLogger('sync_worker')


def build_engine(db_path: str) -> SyncEngine:
    conn = connect(db_path)
    init_db(conn)
    return SyncEngine(LocalCache(conn), Outbox(conn), build_remote_store(),
                      ConnectivityMonitor(build_signal()))


def _log_drain_end(engine: SyncEngine):
    def handler(status: str):
        if status == STATUS_END:
            snap = engine.status_snapshot()
            logger.info("drain done: pending=%d last_error=%s", snap['pending'], snap['last_error'])
    return handler


async def run_once(engine: SyncEngine) -> int:
    engine.outbox.recover_in_flight()
    await asyncio.to_thread(engine.monitor.signal.refresh)
    reconnected = engine.monitor.poll()
    if not engine.is_online():
        logger.warning("remote store offline; %d entr%s left queued", engine.outbox.count(),
                       'y' if engine.outbox.count() == 1 else 'ies')
        return 1
    if reconnected:
        await engine.wait_idle()
        report = engine.last_report
    else:
        report = await engine.drain()
    print(json.dumps(report.as_dict(), indent=2))
    return 0 if not report.failed else 2


async def run_watch(engine: SyncEngine, interval: float):
    engine.subscribe_status(_log_drain_end(engine))
    engine.start()
    logger.info("watching connectivity every %ss (pending=%d)", interval, engine.outbox.count())
    await engine.monitor.watch(interval)


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description='Offline POS outbox sync worker')
    ap.add_argument('mode', nargs='?', choices=('watch', 'drain'), default='watch')
    ap.add_argument('--db', default=pos_settings.POS_DB_PATH)
    ap.add_argument('--interval', type=float, default=pos_settings.CONNECTIVITY_INTERVAL)
    args = ap.parse_args(argv)

    logging.basicConfig(level=pos_settings.LOG_LEVEL, format='[sync] %(asctime)s %(levelname)s %(message)s')
    logger.info("starting worker in mode=%s, db=%s", args.mode, args.db)
    try:
        engine = build_engine(args.db)
        if args.mode == 'drain':
            return asyncio.run(run_once(engine))
        asyncio.run(run_watch(engine, args.interval))
    except KeyboardInterrupt:
        logger.info("exiting on Ctrl+C")
    except PosError as exc:
        logger.error("sync worker stopped: %s", exc)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
