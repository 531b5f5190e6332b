#!/usr/bin/env python3
"""
Maintenance: (re)create the natural-key unique indexes on a store file.

Reports duplicate keys that block an index (e.g. two products with the same
item+store) so they can be merged by hand; --drop-stale removes ux_* indexes
that are no longer declared.

Run: py scripts\\update_indexes.py --db pos.db
"""
import argparse
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pos_service as ps  # noqa: E402

ap = argparse.ArgumentParser()
ap.add_argument("--db", default=ps.DB_PATH)
ap.add_argument("--drop-stale", action="store_true", help="Drop ux_* indexes that are not declared")
args = ap.parse_args()

if not os.path.isfile(args.db):
    print(f"Store not found: {args.db}", file=sys.stderr)
    sys.exit(2)

store = ps.connect(args.db, must_exist=True)
blocked = 0
try:
    report = store.ensure_indexes(drop_stale=args.drop_stale)
    for kind, spec in ps.COLLECTIONS.items():
        entry = report.get(spec.name, {})
        for fields in entry.get("created", []):
            print(f"✓ {spec.name}: unique ({fields})")
        for idx in entry.get("dropped", []):
            print(f"- {spec.name}: dropped stale index {idx}")
        for fields in entry.get("failed", []):
            blocked += 1
            print(f"✗ {spec.name}: unique ({fields}) blocked by duplicates:")
            for dup in store.collection(spec.name).duplicates(fields.split(",")):
                print(f"    {dup['key']} x{dup['count']}")
finally:
    store.close()

sys.exit(1 if blocked else 0)
