#!/usr/bin/env python3
"""
POS Sync Worker

Runs a push or pull against the remote replica from the command line, using
the same orchestrator as the /api/sync/* routes, and prints every event frame
to stdout.

Modes:
  - push: local -> remote for every synced collection
  - pull: remote -> local; --scope products pulls inventory only, anything
          else pulls transactions and credits

Env vars:
  POS_DB_PATH      local store path (default: pos.db)
  REMOTE_DB_URI    sqlite:///path or http(s)://peer (required)
  REMOTE_REPLICA_KEY / REPLICA_SHARED_KEY   key sent to an http(s) peer
  SYNC_INTERVAL    seconds between loops when --interval is not given (0 = run once)

Run:
  python sync_worker.py push --username admin --store "RMC Liberia"
  python sync_worker.py pull --username admin --store "RMC Liberia" --scope products --interval 300

Exit codes: 0 success, 1 run finished with errors, 2 run could not start.
"""
import argparse
import logging
import os
import sys
import time

from dotenv import load_dotenv

import pos_service as ps
from remote_store import RemoteConnectionError, RemoteTimeouts
from sync_engine import EventStream, SyncDirection, SyncError, SyncOrchestrator

load_dotenv()

log = logging.getLogger('sync_worker')

EXIT_OK = 0
EXIT_RUN_ERRORS = 1
EXIT_START_FAILED = 2


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or '').strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning('Invalid %s=%r; using %s', name, raw, default)
        return default


def _timeouts() -> RemoteTimeouts:
    return RemoteTimeouts(
        server_selection=_env_float('REMOTE_SERVER_SELECTION_TIMEOUT', 10.0),
        connect=_env_float('REMOTE_CONNECT_TIMEOUT', 10.0),
        socket=_env_float('REMOTE_SOCKET_TIMEOUT', 45.0),
    )


def _stdout_writer(frame: str) -> None:
    sys.stdout.write(frame)
    sys.stdout.flush()


def run_once(args, db_path: str, remote_uri: str, remote_key=None, write=_stdout_writer) -> int:
    local = ps.connect(db_path)
    try:
        orchestrator = SyncOrchestrator(
            local,
            ps.COLLECTIONS,
            remote_uri=remote_uri,
            timeouts=_timeouts(),
            remote_key=remote_key,
            actor_lookup=lambda username, store_name: ps.find_account(local, username, store_name),
            include_traceback=(os.environ.get('POS_ENV', '').strip().lower() == 'development'),
            pull_skew_seconds=_env_float('SYNC_PULL_SKEW_SECONDS', 0.0),
        )
        try:
            sync_run = orchestrator.start(SyncDirection(args.mode), args.username, args.store, args.scope)
        except (SyncError, RemoteConnectionError) as e:
            log.error('Sync %s could not start: %s', args.mode, e)
            return EXIT_START_FAILED
        orchestrator.stream(sync_run, EventStream(write))
        return EXIT_OK if sync_run.status == 'success' else EXIT_RUN_ERRORS
    finally:
        local.close()


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description='Sync the local POS store with the remote replica')
    ap.add_argument('mode', choices=[d.value for d in SyncDirection])
    ap.add_argument('--username', required=True, help='Local account that triggers the sync')
    ap.add_argument('--store', required=True, help='Store the account belongs to')
    ap.add_argument('--scope', default=None, help="Pull scope: 'products' or anything else for transactions+credits")
    ap.add_argument('--db', default=os.environ.get('POS_DB_PATH', 'pos.db'), help='Local store path')
    ap.add_argument('--remote', default=os.environ.get('REMOTE_DB_URI'), help='Remote replica URI')
    ap.add_argument('--interval', type=float, default=_env_float('SYNC_INTERVAL', 0.0),
                    help='Repeat every N seconds (0 = run once)')
    return ap


def main(argv=None) -> int:
    logging.basicConfig(
        level=getattr(logging, (os.environ.get('POS_LOG_LEVEL') or 'INFO').strip().upper(), logging.INFO),
        format='[sync] %(asctime)s %(levelname)s %(message)s',
    )
    args = build_parser().parse_args(argv)
    remote_key = (os.environ.get('REMOTE_REPLICA_KEY') or os.environ.get('REPLICA_SHARED_KEY') or '').strip() or None
    log.info('starting worker mode=%s interval=%ss db=%s', args.mode, args.interval, args.db)
    code = EXIT_OK
    try:
        while True:
            code = run_once(args, args.db, args.remote, remote_key)
            if args.interval <= 0:
                break
            time.sleep(args.interval)
    except KeyboardInterrupt:
        log.info('exiting on Ctrl+C')
    return code


if __name__ == '__main__':
    sys.exit(main())
