"""
Remote replica connections, one per sync run.

REMOTE_DB_URI selects the transport:
  sqlite:///remote.db      relative path to an existing store file
  sqlite:////srv/pos.db    absolute path (a bare path works too)
  https://pos-hq.example   a peer POS server exposing /api/replica/*

open_remote() fails fast with RemoteConnectionError; ``unreachable`` tells the
HTTP layer to answer 503 rather than 500. close_remote() never raises.
"""
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple
from urllib.parse import urlparse

import requests

from docstore import BulkWriteResult, CollectionSpec, DocumentStore, UpsertOp

logger = logging.getLogger(__name__)

REPLICA_KEY_HEADER = 'X-Replica-Key'
REPLICA_API_PREFIX = '/api/replica'


class RemoteTimeouts(NamedTuple):
    server_selection: float = 10.0
    connect: float = 10.0
    socket: float = 45.0


class RemoteConnectionError(Exception):
    def __init__(self, message: str, unreachable: bool = False):
        super().__init__(message)
        self.unreachable = unreachable


class RemoteStoreError(Exception):
    """The remote answered, but refused or failed one collection request."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
        self.code = status


def describe_uri(uri: Optional[str]) -> str:
    """URI without credentials, safe for logs and status payloads."""
    if not uri:
        return ''
    parsed = urlparse(uri)
    if parsed.scheme in ('http', 'https'):
        host = parsed.hostname or ''
        if parsed.port:
            host = f'{host}:{parsed.port}'
        return f'{parsed.scheme}://{host}{parsed.path or ""}'
    return f'sqlite:{_sqlite_path(uri)}'


def _sqlite_path(uri: str) -> str:
    if uri.startswith('sqlite:///'):
        return uri[len('sqlite:///'):] or ':memory:'
    if uri.startswith('file:'):
        return urlparse(uri).path
    return uri


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        msg = data.get('message') or data.get('error')
        if msg:
            return f'HTTP {resp.status_code}: {msg}'
    text = (resp.text or '').strip()
    if len(text) > 400:
        text = text[:400] + '…'
    return f'HTTP {resp.status_code}: {text or resp.reason}'


class RemoteCollection:
    def __init__(self, client: 'ReplicaClient', name: str):
        self._client = client
        self.name = name

    def find(self, filter: Optional[Dict[str, Any]] = None,
             sort: Optional[Sequence[Tuple[str, int]]] = None,
             projection: Optional[Iterable[str]] = None,
             limit: Optional[int] = None) -> List[Dict[str, Any]]:
        body = {
            'filter': filter or {},
            'sort': [[field, direction] for field, direction in (sort or [])],
            'projection': list(projection) if projection else None,
            'limit': limit,
        }
        data = self._client.request('POST', f'/{self.name}/find', body)
        return list(data.get('documents') or [])

    def find_one(self, filter: Optional[Dict[str, Any]] = None,
                 sort: Optional[Sequence[Tuple[str, int]]] = None,
                 projection: Optional[Iterable[str]] = None) -> Optional[Dict[str, Any]]:
        docs = self.find(filter, sort=sort, projection=projection, limit=1)
        return docs[0] if docs else None

    def bulk_upsert(self, operations: Sequence[UpsertOp]) -> BulkWriteResult:
        body = {'operations': [{'filter': op.filter, 'set': op.set} for op in operations]}
        data = self._client.request('POST', f'/{self.name}/bulk-write', body)
        return BulkWriteResult.from_dict(data.get('result') or {})


class ReplicaClient:
    """Talks to a peer server's replica API with (connect, read) timeouts."""

    def __init__(self, base_url: str, key: Optional[str] = None,
                 timeouts: RemoteTimeouts = RemoteTimeouts(),
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeouts = timeouts
        self._session = session or requests.Session()
        self._session.headers.update({'Accept': 'application/json'})
        if key:
            self._session.headers[REPLICA_KEY_HEADER] = key
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
                timeout: Optional[Tuple[float, float]] = None) -> Dict[str, Any]:
        if self._closed:
            raise RemoteConnectionError('Remote connection already closed')
        url = self.base_url + REPLICA_API_PREFIX + path
        try:
            resp = self._session.request(
                method, url, json=payload,
                timeout=timeout or (self.timeouts.connect, self.timeouts.socket),
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise RemoteConnectionError(
                f'Remote replica unreachable at {describe_uri(self.base_url)}: {exc}', unreachable=True) from exc
        except requests.RequestException as exc:
            raise RemoteConnectionError(f'Remote replica request failed: {exc}') from exc
        if resp.status_code in (401, 403):
            raise RemoteConnectionError(
                f'Remote replica rejected credentials ({_error_message_from_response(resp)})')
        if resp.status_code >= 400:
            raise RemoteStoreError(_error_message_from_response(resp), status=resp.status_code)
        try:
            data = resp.json()
        except ValueError as exc:
            raise RemoteStoreError(f'Remote replica returned a non-JSON body for {path}',
                                   status=resp.status_code) from exc
        return data if isinstance(data, dict) else {}

    def ping(self) -> None:
        # Server selection: bounded tighter than regular reads.
        self.request('GET', '/ping', timeout=(self.timeouts.connect, self.timeouts.server_selection))

    def collection(self, name: str) -> RemoteCollection:
        return RemoteCollection(self, name)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._session.close()


def open_remote(uri: str, timeouts: RemoteTimeouts = RemoteTimeouts(), key: Optional[str] = None,
                specs: Optional[Dict[str, CollectionSpec]] = None):
    """Open and verify a connection to the remote replica.

    Returns a DocumentStore (sqlite URIs) or ReplicaClient (http/https); both
    expose collection(), ping() and close().
    """
    parsed = urlparse(uri or '')
    scheme = parsed.scheme.lower()
    if scheme in ('http', 'https'):
        client = ReplicaClient(uri, key=key, timeouts=timeouts)
        try:
            client.ping()
        except RemoteStoreError as exc:
            client.close()
            raise RemoteConnectionError(f'Remote replica ping failed: {exc}') from exc
        except Exception:
            client.close()
            raise
        logger.info('Connected to remote replica %s', describe_uri(uri))
        return client

    if scheme in ('', 'sqlite', 'file') or len(scheme) == 1:  # len 1: Windows drive letter
        path = _sqlite_path(uri)
        try:
            store = DocumentStore.connect(path, specs, must_exist=True, timeout=timeouts.connect)
        except FileNotFoundError as exc:
            raise RemoteConnectionError(f'Remote store unreachable: {exc}', unreachable=True) from exc
        except sqlite3.OperationalError as exc:
            raise RemoteConnectionError(f'Remote store unreachable: {exc}', unreachable=True) from exc
        except sqlite3.DatabaseError as exc:
            raise RemoteConnectionError(f'Remote store could not be opened: {exc}') from exc
        try:
            store.ping()
        except sqlite3.DatabaseError as exc:
            store.close()
            raise RemoteConnectionError(f'Remote store could not be opened: {exc}') from exc
        logger.info('Connected to remote replica %s', describe_uri(uri))
        return store

    raise RemoteConnectionError(f'Unsupported remote URI scheme: {scheme}')


def close_remote(conn) -> None:
    if conn is None:
        return
    try:
        conn.close()
    except Exception as exc:
        logger.error('Error closing remote replica connection: %s', exc)
    else:
        logger.info('Closed remote replica connection')


@contextmanager
def remote_session(uri: str, timeouts: RemoteTimeouts = RemoteTimeouts(), key: Optional[str] = None,
                   specs: Optional[Dict[str, CollectionSpec]] = None):
    conn = open_remote(uri, timeouts, key=key, specs=specs)
    try:
        yield conn
    finally:
        close_remote(conn)
