"""
Replica synchronization between the local POS store and the shared remote.

A run moves a fixed, ordered set of collections in one direction:

  push  local -> remote   products, transactions, users, currencyrates, credits
  pull  remote -> local   products only (scope "products"), else transactions + credits

Every record is upserted on its target's key (``_id``, or item+store for
products); nothing is ever deleted. Progress goes out as server-sent events
through an EventStream while the run is in flight:

  syncStatus    connection lifecycle
  syncProgress  collectionStart -> collectionFetch -> collectionSuccess | collectionSkipped
  syncError     collectionError (per collection), critical / fatal (run level)
  syncComplete  always the last frame, progress 100

A failing collection is reported and the run moves on to the next one.
"""
import datetime as dt
import json
import logging
import queue
import threading
import traceback
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

from docstore import CollectionSpec, UpsertOp
from remote_store import RemoteConnectionError, RemoteTimeouts, close_remote, describe_uri, open_remote

logger = logging.getLogger(__name__)

EVENT_STATUS = 'syncStatus'
EVENT_PROGRESS = 'syncProgress'
EVENT_ERROR = 'syncError'
EVENT_COMPLETE = 'syncComplete'

PULL_SCOPE_PRODUCTS = 'products'
PULL_SCOPE_TRANSACTIONS = 'transactions_and_credits'

_MAX_REPORTED_WRITE_ERRORS = 50


class SyncDirection(str, Enum):
    PUSH = 'push'
    PULL = 'pull'


# ---------- errors ----------
class SyncError(Exception):
    status_code = 500


class ActorNotFound(SyncError):
    status_code = 404


class SyncConfigurationError(SyncError):
    status_code = 500


class SyncBusyError(SyncError):
    status_code = 409


class FatalRunError(SyncError):
    pass


class CollectionError(SyncError):
    def __init__(self, target: 'SyncTarget', message: str, critical: bool = False,
                 result: Optional['ReconcileResult'] = None, code: Optional[str] = None):
        super().__init__(message)
        self.target = target
        self.critical = critical
        self.result = result
        self.code = code or ('critical' if critical else 'write_errors')


# ---------- targets ----------
class IdKey:
    """Upsert on the record's own ``_id`` (ids are shared between replicas)."""

    fields = ('_id',)

    def filter_for(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        if doc.get('_id') in (None, ''):
            raise ValueError('record has no _id')
        return {'_id': doc['_id']}

    def __repr__(self):
        return 'IdKey()'


class NaturalKey:
    """Upsert on business fields; used where each replica mints its own ids."""

    def __init__(self, fields: Sequence[str]):
        self.fields = tuple(fields)

    def filter_for(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        missing = [f for f in self.fields if doc.get(f) in (None, '')]
        if missing:
            raise ValueError(f"record is missing key field(s) {', '.join(missing)}")
        return {f: doc[f] for f in self.fields}

    def __repr__(self):
        return f'NaturalKey({self.fields!r})'


class SyncTarget(NamedTuple):
    kind: str
    local_collection: str
    remote_collection: str
    upsert_key: Any = IdKey()
    full_pull: bool = False


SYNC_TARGETS: Tuple[SyncTarget, ...] = (
    SyncTarget('Product', 'products', 'products', NaturalKey(('item', 'store')), full_pull=True),
    SyncTarget('Transaction', 'transactions', 'transactions'),
    SyncTarget('User', 'users', 'users'),
    SyncTarget('CurrencyRate', 'currencyrates', 'currencyrates'),
    SyncTarget('Credit', 'credits', 'credits'),
)

PULL_KINDS = {
    PULL_SCOPE_PRODUCTS: ('Product',),
    PULL_SCOPE_TRANSACTIONS: ('Transaction', 'Credit'),
}


def normalize_scope(scope: Optional[str]) -> str:
    return PULL_SCOPE_PRODUCTS if (scope or '').strip().lower() == PULL_SCOPE_PRODUCTS else PULL_SCOPE_TRANSACTIONS


def targets_for(direction: SyncDirection, scope: Optional[str] = None,
                targets: Sequence[SyncTarget] = SYNC_TARGETS) -> Tuple[SyncTarget, ...]:
    if SyncDirection(direction) == SyncDirection.PUSH:
        return tuple(targets)
    kinds = PULL_KINDS[normalize_scope(scope)]
    return tuple(t for t in targets if t.kind in kinds)


def progress_percent(done: int, total: int) -> int:
    """round(done / total * 100), halves rounded up."""
    if total <= 0:
        return 100
    return (done * 200 + total) // (2 * total)


def normalize_timestamp(value: Any, shift_seconds: float = 0.0) -> Any:
    """ISO-8601 text -> UTC with milliseconds and a Z suffix, optionally shifted."""
    if not isinstance(value, str):
        return value
    try:
        parsed = dt.datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logger.debug('Watermark %r is not ISO-8601; left as is', value)
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    shifted = parsed.astimezone(dt.timezone.utc) + dt.timedelta(seconds=shift_seconds or 0)
    return shifted.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


# ---------- results ----------
class ReconcileResult:
    def __init__(self, target: SyncTarget, fetched: int = 0, upserted: int = 0, modified: int = 0,
                 matched: int = 0, errors: Optional[List[Dict[str, Any]]] = None, watermark: Any = None):
        self.target = target
        self.fetched = fetched
        self.upserted = upserted
        self.modified = modified
        self.matched = matched
        self.errors = errors if errors is not None else []
        self.watermark = watermark
        self.failed = False
        self.error: Optional[str] = None

    def mark_failed(self, message: str) -> None:
        self.failed = True
        self.error = message

    def to_dict(self) -> Dict[str, Any]:
        out = {
            'collectionName': self.target.local_collection,
            'fetchedCount': self.fetched,
            'upsertedCount': self.upserted,
            'modifiedCount': self.modified,
            'matchedCount': self.matched,
            'status': 'error' if self.failed else ('skipped' if not self.fetched else 'success'),
        }
        if self.errors:
            out['writeErrors'] = self.errors[:_MAX_REPORTED_WRITE_ERRORS]
        if self.error:
            out['error'] = self.error
        return out


class SyncRun:
    """State of one streamed operation; discarded when the stream closes."""

    def __init__(self, direction: SyncDirection, actor: Dict[str, str], targets: Sequence[SyncTarget],
                 remote: Any = None, scope: Optional[str] = None):
        self.direction = SyncDirection(direction)
        self.actor = actor
        self.targets = tuple(targets)
        self.remote = remote
        self.scope = scope
        self.started_at = dt.datetime.now(dt.timezone.utc)
        self.results: List[ReconcileResult] = []
        self.status = 'pending'
        self.aborted = False
        self.fatal: Optional[FatalRunError] = None

    @property
    def failed(self) -> List[ReconcileResult]:
        return [r for r in self.results if r.failed]

    @property
    def successful(self) -> int:
        return len(self.results) - len(self.failed)


# ---------- event stream ----------
def format_sse(event: str, payload: Dict[str, Any]) -> str:
    return f'event: {event}\ndata: {json.dumps(payload, default=str)}\n\n'


_EOF = object()


class EventStream:
    """Server-sent event channel for one run.

    Without ``write`` frames are queued for a response generator to drain via
    frames(); with ``write`` each frame is written immediately. All writes go
    through emit(), which checks the single ``closed`` flag under a lock and
    drops the frame (returns False) once the stream is closed.
    """

    def __init__(self, write: Optional[Callable[[str], Any]] = None):
        self._write = write
        self._queue: Optional[queue.Queue] = queue.Queue() if write is None else None
        self._lock = threading.Lock()
        self._closed = False
        self.sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: str, payload: Dict[str, Any]) -> bool:
        frame = format_sse(event, payload)
        with self._lock:
            if self._closed:
                logger.debug('Event stream closed; dropped %s %s', event, payload.get('type', ''))
                return False
            if self._queue is not None:
                self._queue.put(frame)
            else:
                try:
                    self._write(frame)
                except (OSError, ValueError) as exc:
                    self._closed = True
                    logger.info('Event stream writer failed (%s); dropping further events', exc)
                    return False
            self.sent += 1
            return True

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._queue is not None:
                self._queue.put(_EOF)

    def frames(self):
        if self._queue is None:
            raise RuntimeError('EventStream was created with a direct writer')
        while True:
            item = self._queue.get()
            if item is _EOF:
                return
            yield item


# ---------- reconciler ----------
class CollectionReconciler:
    def __init__(self, collections: Dict[str, CollectionSpec], pull_skew_seconds: float = 0.0):
        self.collections = dict(collections)
        self.pull_skew_seconds = float(pull_skew_seconds or 0)

    def resolve(self, target: SyncTarget) -> CollectionSpec:
        spec = self.collections.get(target.kind)
        if spec is None:
            raise CollectionError(
                target, f'Model {target.kind} is not configured for {target.local_collection}', critical=True)
        return spec

    def watermark(self, target: SyncTarget, local) -> Any:
        """Newest local createdAt for the target, less the skew tolerance."""
        newest = local.collection(target.local_collection).find_one(
            {'createdAt': {'$ne': None}}, sort=[('createdAt', -1)], projection=['createdAt'])
        if not newest:
            return None
        return normalize_timestamp(newest.get('createdAt'), -self.pull_skew_seconds)

    def build_op(self, target: SyncTarget, doc: Dict[str, Any]) -> UpsertOp:
        key = target.upsert_key.filter_for(doc)
        body = {k: v for k, v in doc.items() if k != '_id'}
        return UpsertOp(key, body)

    def reconcile(self, target: SyncTarget, direction: SyncDirection, local, remote,
                  on_fetch: Optional[Callable[['ReconcileResult'], None]] = None) -> ReconcileResult:
        self.resolve(target)
        watermark = None
        if SyncDirection(direction) == SyncDirection.PUSH:
            source = local.collection(target.local_collection)
            destination = remote.collection(target.remote_collection)
            query: Dict[str, Any] = {}
        else:
            source = remote.collection(target.remote_collection)
            destination = local.collection(target.local_collection)
            if not target.full_pull:
                watermark = self.watermark(target, local)
            query = {'createdAt': {'$gt': watermark}} if watermark is not None else {}

        docs = source.find(query)
        result = ReconcileResult(target, fetched=len(docs), watermark=watermark)
        if on_fetch:
            on_fetch(result)
        if not docs:
            return result

        ops: List[UpsertOp] = []
        op_index: List[int] = []
        for index, doc in enumerate(docs):
            try:
                ops.append(self.build_op(target, doc))
                op_index.append(index)
            except ValueError as exc:
                result.errors.append({'index': index, 'code': 'bad_record', 'message': str(exc)})
        if ops:
            written = destination.bulk_upsert(ops)
            result.upserted = written.upserted
            result.modified = written.modified
            result.matched = written.matched
            for err in written.errors:
                err = dict(err)
                if isinstance(err.get('index'), int) and err['index'] < len(op_index):
                    err['index'] = op_index[err['index']]
                result.errors.append(err)
        if result.errors:
            result.errors.sort(key=lambda e: e.get('index', 0))
            raise CollectionError(
                target,
                f'{len(result.errors)} of {len(docs)} record(s) rejected by '
                f'{target.remote_collection if direction == SyncDirection.PUSH else target.local_collection}',
                result=result,
            )
        return result


# ---------- orchestration ----------
class RunGuard:
    """Optional advisory lock: at most one run per direction in this process."""

    def __init__(self):
        self._locks = {d: threading.Lock() for d in SyncDirection}

    def acquire(self, direction: SyncDirection) -> bool:
        return self._locks[SyncDirection(direction)].acquire(blocking=False)

    def release(self, direction: SyncDirection) -> None:
        try:
            self._locks[SyncDirection(direction)].release()
        except RuntimeError:
            pass


class SyncOrchestrator:
    def __init__(self, local, collections: Dict[str, CollectionSpec], remote_uri: Optional[str] = None,
                 timeouts: RemoteTimeouts = RemoteTimeouts(), remote_key: Optional[str] = None,
                 targets: Sequence[SyncTarget] = SYNC_TARGETS,
                 actor_lookup: Optional[Callable[[str, str], Optional[Dict[str, Any]]]] = None,
                 include_traceback: bool = False, pull_skew_seconds: float = 0.0,
                 guard: Optional[RunGuard] = None, opener: Callable = open_remote):
        self.local = local
        self.collections = dict(collections)
        self.remote_uri = remote_uri
        self.timeouts = timeouts
        self.remote_key = remote_key
        self.targets = tuple(targets)
        self.actor_lookup = actor_lookup or self._default_actor_lookup
        self.include_traceback = include_traceback
        self.guard = guard
        self.opener = opener
        self.reconciler = CollectionReconciler(self.collections, pull_skew_seconds)

    def _default_actor_lookup(self, username: str, store_name: str) -> Optional[Dict[str, Any]]:
        return self.local.collection('users').find_one({'username': username, 'store': store_name})

    def _remote_specs(self) -> Dict[str, CollectionSpec]:
        specs = {}
        for target in self.targets:
            spec = self.collections.get(target.kind)
            if spec is not None:
                specs[target.kind] = spec._replace(name=target.remote_collection)
        return specs

    def start(self, direction: SyncDirection, username: str, store_name: str,
              scope: Optional[str] = None) -> SyncRun:
        """Authorize the actor and connect to the remote; nothing is streamed yet."""
        direction = SyncDirection(direction)
        username = (username or '').strip()
        store_name = (store_name or '').strip()
        if not self.actor_lookup(username, store_name):
            raise ActorNotFound(f'User {username!r} not found in store {store_name!r}.')
        if not self.remote_uri:
            logger.error('REMOTE_DB_URI is not set; cannot %s', direction.value)
            raise SyncConfigurationError('Remote database configuration is missing.')
        if self.guard and not self.guard.acquire(direction):
            raise SyncBusyError(f'A {direction.value} sync is already running.')
        try:
            remote = self.opener(self.remote_uri, self.timeouts, key=self.remote_key,
                                 specs=self._remote_specs())
        except Exception:
            if self.guard:
                self.guard.release(direction)
            raise
        scope = normalize_scope(scope) if direction == SyncDirection.PULL else None
        run = SyncRun(direction, {'username': username, 'store': store_name},
                      targets_for(direction, scope, self.targets), remote=remote, scope=scope)
        logger.info('Sync %s started by %s@%s (%d collection(s))',
                    direction.value, username, store_name, len(run.targets))
        return run

    def abandon(self, run: SyncRun) -> None:
        """Release a started run that will never be streamed."""
        close_remote(run.remote)
        if self.guard:
            self.guard.release(run.direction)

    def run(self, direction: SyncDirection, username: str, store_name: str, events: EventStream,
            scope: Optional[str] = None) -> SyncRun:
        return self.stream(self.start(direction, username, store_name, scope), events)

    def stream(self, sync_run: SyncRun, events: EventStream) -> SyncRun:
        total = len(sync_run.targets)
        direction = sync_run.direction.value
        try:
            events.emit(EVENT_STATUS, {
                'type': 'info',
                'status': 'connected',
                'direction': direction,
                'message': f'Connected to remote replica {describe_uri(self.remote_uri)}. '
                           f'Initializing {direction}...',
            })
            for number, target in enumerate(sync_run.targets, start=1):
                self._sync_target(sync_run, target, number, total, events)
            sync_run.status = 'error' if sync_run.failed else 'success'
        except RemoteConnectionError as exc:
            sync_run.aborted = True
            sync_run.status = 'error'
            logger.error('Sync %s lost the remote replica: %s', direction, exc)
            events.emit(EVENT_ERROR, self._error_payload(exc, {
                'type': 'critical',
                'status': 'error',
                'direction': direction,
                'message': f'Remote replica connection failed during {direction}: {exc}',
            }))
        except Exception as exc:
            sync_run.aborted = True
            sync_run.status = 'error'
            sync_run.fatal = FatalRunError(str(exc))
            logger.exception('Unexpected error during sync %s', direction)
            events.emit(EVENT_ERROR, self._error_payload(exc, {
                'type': 'fatal',
                'status': 'error',
                'direction': direction,
                'message': f'An unexpected critical error occurred: {exc}',
            }))
        finally:
            try:
                events.emit(EVENT_COMPLETE, self._complete_payload(sync_run, total))
            finally:
                close_remote(sync_run.remote)
                if self.guard:
                    self.guard.release(sync_run.direction)
                events.close()
        logger.info('Sync %s finished: %s (%d/%d collections ok)',
                    direction, sync_run.status, sync_run.successful, total)
        return sync_run

    def _error_payload(self, exc: BaseException, payload: Dict[str, Any]) -> Dict[str, Any]:
        code = getattr(exc, 'code', None)
        if code is not None:
            payload['code'] = code
        if self.include_traceback:
            payload['stack'] = ''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return payload

    def _sync_target(self, sync_run: SyncRun, target: SyncTarget, number: int, total: int,
                     events: EventStream) -> None:
        direction = sync_run.direction
        name = target.local_collection if direction == SyncDirection.PUSH else target.remote_collection
        before = progress_percent(number - 1, total)
        after = progress_percent(number, total)
        base = {
            'collectionName': name,
            'direction': direction.value,
            'currentCollectionNum': number,
            'totalCollections': total,
        }
        events.emit(EVENT_PROGRESS, dict(
            base, type='collectionStart', progress=before,
            message=f'Starting {direction.value} for {name} ({number}/{total})...'))

        fetched: List[ReconcileResult] = []

        def on_fetch(result: ReconcileResult) -> None:
            fetched.append(result)
            side = 'local' if direction == SyncDirection.PUSH else 'remote'
            payload = dict(base, type='collectionFetch', count=result.fetched, progress=before,
                           message=f"Fetched {result.fetched} documents from {side} '{name}'.")
            if result.watermark is not None:
                payload['since'] = result.watermark
            events.emit(EVENT_PROGRESS, payload)

        try:
            result = self.reconciler.reconcile(target, direction, self.local, sync_run.remote, on_fetch=on_fetch)
        except Exception as exc:
            result = exc.result if isinstance(exc, CollectionError) and exc.result else ReconcileResult(target)
            result.mark_failed(str(exc))
            sync_run.results.append(result)
            if not fetched:
                events.emit(EVENT_PROGRESS, dict(
                    base, type='collectionFetch', count=0, resolved=False, progress=before,
                    message=f"Nothing fetched for '{name}'."))
            if isinstance(exc, CollectionError) and exc.critical:
                logger.error('[sync-%s] %s', direction.value, exc)
            else:
                logger.error("[sync-%s] Error syncing collection '%s': %s", direction.value, name, exc)
            payload = dict(
                base, type='collectionError', collection=name, message=str(exc), progress=after,
                severity='critical' if isinstance(exc, CollectionError) and exc.critical else 'error',
                upsertedCount=result.upserted, modifiedCount=result.modified,
            )
            if result.errors:
                payload['writeErrors'] = result.errors[:_MAX_REPORTED_WRITE_ERRORS]
            events.emit(EVENT_ERROR, self._error_payload(exc, payload))
            if isinstance(exc, RemoteConnectionError):
                raise
            return

        sync_run.results.append(result)
        if result.fetched:
            logger.info("[sync-%s] '%s': %d upserted, %d modified", direction.value, name,
                        result.upserted, result.modified)
            events.emit(EVENT_PROGRESS, dict(
                base, type='collectionSuccess', progress=after,
                upsertedCount=result.upserted, modifiedCount=result.modified, matchedCount=result.matched,
                message=f"Synced '{name}': {result.upserted} upserted, {result.modified} modified."))
        else:
            events.emit(EVENT_PROGRESS, dict(
                base, type='collectionSkipped', progress=after,
                message=f"No documents to sync for '{name}'. Skipped."))

    def _complete_payload(self, sync_run: SyncRun, total: int) -> Dict[str, Any]:
        failed = sync_run.failed
        direction = sync_run.direction.value
        payload: Dict[str, Any] = {
            'direction': direction,
            'successfulSyncs': sync_run.successful,
            'totalCollections': total,
            'failedCollections': [r.target.local_collection for r in failed],
            'results': [r.to_dict() for r in sync_run.results],
            'progress': 100,
        }
        if failed or sync_run.aborted or sync_run.status != 'success':
            payload['status'] = 'error'
            payload['errors'] = [
                {'collection': r.target.local_collection, 'message': r.error} for r in failed
            ]
            if sync_run.fatal is not None:
                payload['errors'].append({'collection': None, 'message': str(sync_run.fatal)})
            payload['message'] = (
                f'Sync {direction} completed with {len(failed)} collection error(s). '
                f'{sync_run.successful} of {total} collections synced.'
            )
            if sync_run.aborted:
                payload['aborted'] = True
                payload['message'] = (
                    f'Sync {direction} aborted after {len(sync_run.results)} of {total} collections. '
                    f'{sync_run.successful} synced.'
                )
        else:
            payload['status'] = 'success'
            payload['message'] = f'Sync {direction} completed successfully. All {total} collections synced.'
        return payload
