#!/usr/bin/env python3
"""
Migration: rewrite cached legacy payment documents to the current schema.

Legacy documents carry paid/voided flags, `products`, `salesType` and a
`delivery` object (sometimes a JSON string). They are rewritten in place with
schemaVersion 2. Legacy rows flagged `deleted` are tombstoned instead.
Queued outbox payloads are left alone; they are upgraded when read.

Run from the project root: python -m scripts.migrate_legacy_payments --db pos.db
"""
import argparse
import json

import pos_settings
from offline_cache import LocalCache, atomic, connect, init_db
from payment_records import SCHEMA_VERSION, upgrade_document


def migrate(conn, collection: str, dry_run: bool = False):
    cache = LocalCache(conn)
    upgraded = tombstoned = 0
    with atomic(conn):
        for doc in cache.get_all(collection):
            if int(doc.get('schemaVersion') or 1) >= SCHEMA_VERSION:
                continue
            if doc.get('deleted'):
                tombstoned += 1
                if not dry_run:
                    cache.mark_deleted(collection, doc['id'])
                continue
            upgraded += 1
            if not dry_run:
                cache.put(collection, upgrade_document(doc))
    return upgraded, tombstoned


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--db", default=pos_settings.POS_DB_PATH)
    ap.add_argument("--collection", default=pos_settings.PAYMENTS_COLLECTION)
    ap.add_argument("--dry-run", action="store_true")
    args = ap.parse_args()

    conn = connect(args.db)
    init_db(conn)
    upgraded, tombstoned = migrate(conn, args.collection, dry_run=args.dry_run)
    if upgraded or tombstoned:
        verb = "Would migrate" if args.dry_run else "Migrated"
        print(json.dumps({'collection': args.collection, 'upgraded': upgraded, 'tombstoned': tombstoned}))
        print(f"{verb} {upgraded} legacy record(s), tombstoned {tombstoned}")
    else:
        print("Cached payments already up-to-date or migration already applied")
    conn.close()


if __name__ == "__main__":
    main()
