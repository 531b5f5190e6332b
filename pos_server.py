from flask import Flask, Response, jsonify, request
from dotenv import load_dotenv
import hmac
import logging
import os
import threading
from typing import Any, Dict, Optional

import pos_service as ps
from remote_store import REPLICA_KEY_HEADER, RemoteConnectionError, RemoteTimeouts, describe_uri, remote_session
from sync_engine import (
    EventStream,
    PULL_SCOPE_PRODUCTS,
    PULL_SCOPE_TRANSACTIONS,
    RunGuard,
    SyncDirection,
    SyncError,
    SyncOrchestrator,
    normalize_scope,
    targets_for,
)

# Load environment variables
load_dotenv()

def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw

app = Flask(__name__)

_LOG_LEVEL_NAME = (os.getenv('POS_LOG_LEVEL') or 'INFO').strip().upper()
app.logger.setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))
logging.getLogger('werkzeug').setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))
for _name in ('sync_engine', 'remote_store', 'docstore'):
    logging.getLogger(_name).setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))


def _env_float(name: str, default: float) -> float:
    raw = _env_string(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        app.logger.warning("Invalid %s=%r; using %s", name, raw, default)
        return default


POS_DB_PATH = _env_string('POS_DB_PATH', 'pos.db')
POS_ENV = (_env_string('POS_ENV', 'production') or 'production').lower()

# Remote replica (sqlite:///path or http(s)://peer)
REMOTE_DB_URI = _env_string('REMOTE_DB_URI')
REMOTE_TIMEOUTS = RemoteTimeouts(
    server_selection=_env_float('REMOTE_SERVER_SELECTION_TIMEOUT', 10.0),
    connect=_env_float('REMOTE_CONNECT_TIMEOUT', 10.0),
    socket=_env_float('REMOTE_SOCKET_TIMEOUT', 45.0),
)
# Key this server accepts on /api/replica/*; unset disables the replica API.
REPLICA_SHARED_KEY = _env_string('REPLICA_SHARED_KEY')
# Key sent to an http(s) remote (defaults to our own shared key).
REMOTE_REPLICA_KEY = _env_string('REMOTE_REPLICA_KEY', REPLICA_SHARED_KEY)

SYNC_PULL_SKEW_SECONDS = _env_float('SYNC_PULL_SKEW_SECONDS', 0.0)
SYNC_EXCLUSIVE_RUNS = _env_string('SYNC_EXCLUSIVE_RUNS', '0') == '1'
_RUN_GUARD = RunGuard()


def _db_connect():
    return ps.connect(POS_DB_PATH)


def _close_store(store) -> None:
    if store is not None:
        store.close()


def _build_orchestrator(local) -> SyncOrchestrator:
    return SyncOrchestrator(
        local,
        ps.COLLECTIONS,
        remote_uri=REMOTE_DB_URI,
        timeouts=REMOTE_TIMEOUTS,
        remote_key=REMOTE_REPLICA_KEY,
        actor_lookup=lambda username, store_name: ps.find_account(local, username, store_name),
        include_traceback=(POS_ENV == 'development'),
        pull_skew_seconds=SYNC_PULL_SKEW_SECONDS,
        guard=_RUN_GUARD if SYNC_EXCLUSIVE_RUNS else None,
    )


def _event_stream_response(events: EventStream) -> Response:
    def generate():
        try:
            for frame in events.frames():
                yield frame
        finally:
            # Client disconnected or run finished; later emits become no-ops.
            events.close()

    resp = Response(generate(), mimetype='text/event-stream')
    resp.headers['X-Accel-Buffering'] = 'no'
    return resp


def _sync_params() -> Dict[str, str]:
    data = request.get_json(silent=True) or {}
    def pick(key):
        value = request.args.get(key)
        if value is None and isinstance(data, dict):
            value = data.get(key)
        return (value or '').strip() if isinstance(value, str) else ''
    return {'username': pick('username'), 'store': pick('store'), 'type': pick('type')}


def _start_sync_stream(direction: SyncDirection, scope: Optional[str] = None):
    params = _sync_params()
    if not params['username'] or not params['store']:
        return jsonify({'error': 'Username and store are required.'}), 400

    local = None
    try:
        local = _db_connect()
        orchestrator = _build_orchestrator(local)
        sync_run = orchestrator.start(direction, params['username'], params['store'], scope)
    except SyncError as e:
        _close_store(local)
        app.logger.warning("Sync %s refused for %s@%s: %s", direction.value, params['username'], params['store'], e)
        return jsonify({'error': str(e)}), e.status_code
    except RemoteConnectionError as e:
        _close_store(local)
        app.logger.error("Remote replica connection failed (%s): %s", direction.value, e)
        return jsonify({
            'error': 'Failed to connect to the remote database or initialize sync. ' + str(e)
        }), 503 if e.unreachable else 500
    except Exception as e:
        _close_store(local)
        app.logger.exception("Unexpected error starting sync %s", direction.value)
        return jsonify({'error': 'An unexpected error occurred: ' + str(e)}), 500

    events = EventStream()

    def _run():
        try:
            orchestrator.stream(sync_run, events)
        finally:
            local.close()

    worker = threading.Thread(target=_run, name=f'sync-{direction.value}', daemon=True)
    try:
        worker.start()
    except RuntimeError as e:
        orchestrator.abandon(sync_run)
        events.close()
        local.close()
        app.logger.error("Could not start sync worker: %s", e)
        return jsonify({'error': 'Could not start sync worker: ' + str(e)}), 500
    return _event_stream_response(events)


@app.after_request
def add_no_cache_headers(response):
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    response.headers['Pragma'] = 'no-cache'
    if 'Expires' in response.headers:
        del response.headers['Expires']
    response.headers['X-Content-Type-Options'] = 'nosniff'
    return response


@app.route('/api/health')
def api_health():
    return jsonify({'status': 'ok'})


@app.route('/api/sync/push-to-online', methods=['GET', 'POST'])
def api_sync_push():
    """Stream a push of every synced collection from the local store to the remote.
    Params (query or JSON body): username, store
    """
    return _start_sync_stream(SyncDirection.PUSH)


@app.route('/api/sync/pull-from-online')
def api_sync_pull():
    """Stream a pull from the remote store.
    Query params: username, store, type=products (inventory only) | anything else (transactions + credits)
    """
    params = _sync_params()
    return _start_sync_stream(SyncDirection.PULL, normalize_scope(params['type']))


@app.route('/api/sync/status')
def api_sync_status():
    """Report remote configuration, sync targets and local collection counts.
    Query param check=1 also opens (and closes) a remote connection.
    """
    remote: Dict[str, Any] = {
        'configured': bool(REMOTE_DB_URI),
        'uri': describe_uri(REMOTE_DB_URI),
        'reachable': None,
    }
    if REMOTE_DB_URI and request.args.get('check') == '1':
        try:
            with remote_session(REMOTE_DB_URI, REMOTE_TIMEOUTS, key=REMOTE_REPLICA_KEY) as conn:
                conn.ping()
            remote['reachable'] = True
        except RemoteConnectionError as e:
            remote['reachable'] = False
            remote['error'] = str(e)
    counts = {}
    try:
        conn = _db_connect()
    except Exception as e:
        app.logger.exception("Failed to open local store")
        return jsonify({'status': 'error', 'message': str(e)}), 500
    try:
        for spec in ps.COLLECTIONS.values():
            counts[spec.name] = conn.collection(spec.name).count()
    finally:
        conn.close()
    return jsonify({
        'status': 'success',
        'remote': remote,
        'targets': {
            'push': [t.local_collection for t in targets_for(SyncDirection.PUSH)],
            'pull': {
                PULL_SCOPE_PRODUCTS: [t.local_collection for t in targets_for(SyncDirection.PULL, PULL_SCOPE_PRODUCTS)],
                PULL_SCOPE_TRANSACTIONS: [t.local_collection for t in targets_for(SyncDirection.PULL, PULL_SCOPE_TRANSACTIONS)],
            },
        },
        'counts': counts,
        'db_path': POS_DB_PATH,
    })


# ---------- replica API (this server acting as another deployment's remote) ----------
def _valid_replica_key(provided: Optional[str]) -> bool:
    expected = (REPLICA_SHARED_KEY or '').strip()
    if not expected or provided is None:
        return False
    try:
        return hmac.compare_digest(expected, provided.strip())
    except TypeError:
        return False


def _replica_denied():
    if not REPLICA_SHARED_KEY:
        return jsonify({'status': 'error', 'message': 'Replica API is disabled'}), 404
    if not _valid_replica_key(request.headers.get(REPLICA_KEY_HEADER)):
        app.logger.warning("Rejected replica request from %s", request.remote_addr)
        return jsonify({'status': 'error', 'message': 'Unauthorized'}), 401
    return None


def _replica_collections():
    return {spec.name for spec in ps.COLLECTIONS.values()}


@app.route('/api/replica/ping')
def api_replica_ping():
    denied = _replica_denied()
    if denied:
        return denied
    return jsonify({'status': 'success', 'collections': sorted(_replica_collections())})


@app.route('/api/replica/<collection>/find', methods=['POST'])
def api_replica_find(collection: str):
    denied = _replica_denied()
    if denied:
        return denied
    if collection not in _replica_collections():
        return jsonify({'status': 'error', 'message': f'Unknown collection {collection}'}), 404
    data = request.get_json(silent=True) or {}
    try:
        sort = [(str(field), int(direction)) for field, direction in (data.get('sort') or [])]
        limit = data.get('limit')
        conn = _db_connect()
        try:
            docs = conn.collection(collection).find(
                data.get('filter') or {},
                sort=sort,
                projection=data.get('projection') or None,
                limit=int(limit) if limit else None,
            )
        finally:
            conn.close()
    except (TypeError, ValueError) as e:
        return jsonify({'status': 'error', 'message': f'Invalid query: {e}'}), 400
    return jsonify({'status': 'success', 'documents': docs})


@app.route('/api/replica/<collection>/bulk-write', methods=['POST'])
def api_replica_bulk_write(collection: str):
    denied = _replica_denied()
    if denied:
        return denied
    if collection not in _replica_collections():
        return jsonify({'status': 'error', 'message': f'Unknown collection {collection}'}), 404
    data = request.get_json(silent=True) or {}
    operations = data.get('operations')
    if not isinstance(operations, list):
        return jsonify({'status': 'error', 'message': 'operations must be a list'}), 400
    conn = _db_connect()
    try:
        result = conn.collection(collection).bulk_upsert(operations)
    finally:
        conn.close()
    app.logger.info("Replica bulk write on %s: %r", collection, result)
    return jsonify({'status': 'success', 'result': result.to_dict()})


# ---------- currency rate ----------
@app.route('/api/currency-rate')
def api_get_currency_rate():
    """Current LRD per USD rate (created with the default when missing)."""
    conn = _db_connect()
    try:
        return jsonify(ps.get_currency_rate(conn))
    except Exception as e:
        app.logger.exception("Error fetching currency rate")
        return jsonify({'error': 'Failed to fetch currency rate: ' + str(e)}), 500
    finally:
        conn.close()


@app.route('/api/currency-rate', methods=['PUT', 'POST'])
def api_update_currency_rate():
    """Body: { lrdToUsd }"""
    data = request.get_json(silent=True) or {}
    conn = _db_connect()
    try:
        return jsonify(ps.set_currency_rate(conn, data.get('lrdToUsd')))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        app.logger.exception("Error updating currency rate")
        return jsonify({'error': 'Failed to update currency rate: ' + str(e)}), 500
    finally:
        conn.close()

