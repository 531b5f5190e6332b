"""
SQLite-backed document store shared by the local and remote POS replicas.

Each collection is a table of JSON documents keyed by ``_id``:

    CREATE TABLE products (_id TEXT PRIMARY KEY, doc_json TEXT NOT NULL)

Natural-key uniqueness (one product per item+store, one account per
username+store) is enforced with unique expression indexes over
json_extract, so both replicas reject duplicates the same way.

Filters are small dicts: {"store": "S1", "createdAt": {"$gt": "2024-..."}}.
"""
import json
import logging
import os
import re
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
_FIELD_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$')
_OPERATORS = {
    '$eq': '=',
    '$ne': '!=',
    '$gt': '>',
    '$gte': '>=',
    '$lt': '<',
    '$lte': '<=',
}
_INDEX_PREFIX = 'ux_'


_RANGE_OPERATORS = ('$gt', '$gte', '$lt', '$lte')
DEFAULT_TIMESTAMP_FIELDS = ('createdAt', 'updatedAt')


class CollectionSpec(NamedTuple):
    name: str
    required: Tuple[str, ...] = ()
    unique: Tuple[Tuple[str, ...], ...] = ()
    # ISO-8601 fields ranged and sorted by instant (julianday), not by text
    timestamps: Tuple[str, ...] = DEFAULT_TIMESTAMP_FIELDS


class UpsertOp(NamedTuple):
    filter: Dict[str, Any]
    set: Dict[str, Any]


class DocumentValidationError(ValueError):
    code = 'validation'


class DuplicateKeyError(Exception):
    code = 'duplicate_key'


class BulkWriteResult:
    """Counts for one unordered batch; errors hold one entry per rejected operation."""

    def __init__(self, matched: int = 0, modified: int = 0, upserted: int = 0,
                 errors: Optional[List[Dict[str, Any]]] = None):
        self.matched = matched
        self.modified = modified
        self.upserted = upserted
        self.errors = errors if errors is not None else []

    def to_dict(self) -> Dict[str, Any]:
        return {
            'matchedCount': self.matched,
            'modifiedCount': self.modified,
            'upsertedCount': self.upserted,
            'writeErrors': list(self.errors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BulkWriteResult':
        return cls(
            matched=int(data.get('matchedCount') or 0),
            modified=int(data.get('modifiedCount') or 0),
            upserted=int(data.get('upsertedCount') or 0),
            errors=list(data.get('writeErrors') or []),
        )

    def __repr__(self):
        return 'BulkWriteResult(matched=%d, modified=%d, upserted=%d, errors=%d)' % (
            self.matched, self.modified, self.upserted, len(self.errors))


def _check_name(name: str) -> str:
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise ValueError(f'Invalid collection name: {name!r}')
    return name


def _field_expr(field: str) -> str:
    if field == '_id':
        return '_id'
    if not isinstance(field, str) or not _FIELD_RE.match(field):
        raise ValueError(f'Invalid field name: {field!r}')
    return f"json_extract(doc_json, '$.{field}')"


def _bind(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        raise ValueError('Filter values must be scalars')
    return value


def _compile_filter(filter_doc: Optional[Dict[str, Any]],
                    timestamps: Sequence[str] = ()) -> Tuple[str, List[Any]]:
    if not filter_doc:
        return '', []
    clauses = []
    params: List[Any] = []
    for field, cond in filter_doc.items():
        expr = _field_expr(field)
        if isinstance(cond, dict):
            for op, value in cond.items():
                sql_op = _OPERATORS.get(op)
                if not sql_op:
                    raise ValueError(f'Unsupported filter operator: {op}')
                if value is None:
                    clauses.append(f'{expr} IS NOT NULL' if op == '$ne' else f'{expr} IS NULL')
                    continue
                if field in timestamps and op in _RANGE_OPERATORS:
                    # "...00Z", "...00.500Z" and "+00:00" compare as instants
                    clauses.append(f'julianday({expr}) {sql_op} julianday(?)')
                else:
                    clauses.append(f'{expr} {sql_op} ?')
                params.append(_bind(value))
        elif cond is None:
            clauses.append(f'{expr} IS NULL')
        else:
            clauses.append(f'{expr} = ?')
            params.append(_bind(cond))
    return ' WHERE ' + ' AND '.join(clauses), params


def _compile_sort(sort: Optional[Sequence[Tuple[str, int]]], timestamps: Sequence[str] = ()) -> str:
    if not sort:
        return ''
    parts = []
    for field, direction in sort:
        expr = _field_expr(field)
        if field in timestamps:
            expr = f'julianday({expr})'
        parts.append(f"{expr} {'DESC' if int(direction) < 0 else 'ASC'}")
    return ' ORDER BY ' + ', '.join(parts)


def _project(doc: Dict[str, Any], projection: Iterable[str]) -> Dict[str, Any]:
    out = {'_id': doc.get('_id')}
    for field in projection:
        if field in doc:
            out[field] = doc[field]
    return out


def _dump(doc: Dict[str, Any]) -> str:
    return json.dumps(doc, separators=(',', ':'), sort_keys=True)


class Collection:
    def __init__(self, store: 'DocumentStore', spec: CollectionSpec):
        self._store = store
        self.spec = spec
        self.name = spec.name

    @property
    def _conn(self) -> sqlite3.Connection:
        return self._store.conn

    def _row_to_doc(self, row: sqlite3.Row) -> Dict[str, Any]:
        doc = json.loads(row['doc_json'])
        doc['_id'] = row['_id']
        return doc

    def _validate(self, doc: Dict[str, Any]) -> None:
        missing = [f for f in self.spec.required if doc.get(f) in (None, '')]
        if missing:
            raise DocumentValidationError(
                f"{self.name}: missing required field(s) {', '.join(missing)}")

    def find(self, filter: Optional[Dict[str, Any]] = None,
             sort: Optional[Sequence[Tuple[str, int]]] = None,
             projection: Optional[Iterable[str]] = None,
             limit: Optional[int] = None) -> List[Dict[str, Any]]:
        where, params = _compile_filter(filter, self.spec.timestamps)
        sql = f'SELECT _id, doc_json FROM "{self.name}"' + where + _compile_sort(sort, self.spec.timestamps)
        if limit:
            sql += ' LIMIT ?'
            params.append(int(limit))
        with self._store.lock:
            rows = self._conn.execute(sql, params).fetchall()
        docs = [self._row_to_doc(r) for r in rows]
        if projection:
            fields = list(projection)
            docs = [_project(d, fields) for d in docs]
        return docs

    def find_one(self, filter: Optional[Dict[str, Any]] = None,
                 sort: Optional[Sequence[Tuple[str, int]]] = None,
                 projection: Optional[Iterable[str]] = None) -> Optional[Dict[str, Any]]:
        docs = self.find(filter, sort=sort, projection=projection, limit=1)
        return docs[0] if docs else None

    def count(self, filter: Optional[Dict[str, Any]] = None) -> int:
        where, params = _compile_filter(filter, self.spec.timestamps)
        with self._store.lock:
            row = self._conn.execute(f'SELECT COUNT(*) AS c FROM "{self.name}"' + where, params).fetchone()
        return int(row['c']) if row else 0

    def insert_one(self, doc: Dict[str, Any]) -> str:
        body = dict(doc)
        doc_id = body.pop('_id', None) or uuid.uuid4().hex
        self._validate(body)
        with self._store.lock:
            try:
                self._conn.execute(
                    f'INSERT INTO "{self.name}" (_id, doc_json) VALUES (?, ?)',
                    (str(doc_id), _dump(body)),
                )
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise DuplicateKeyError(f'{self.name}: {exc}') from exc
            self._conn.commit()
        return str(doc_id)

    def update_one(self, filter: Dict[str, Any], set_fields: Dict[str, Any], upsert: bool = False) -> str:
        """Apply $set-style update to the first match. Returns 'upserted', 'modified', 'matched' or 'none'."""
        with self._store.lock:
            try:
                outcome = self._apply(filter, set_fields, upsert)
            except Exception:
                self._conn.rollback()
                raise
            self._conn.commit()
        return outcome

    def _apply(self, filter: Dict[str, Any], set_fields: Dict[str, Any], upsert: bool) -> str:
        if not isinstance(filter, dict) or not filter:
            raise DocumentValidationError(f'{self.name}: upsert filter must be a non-empty object')
        if not isinstance(set_fields, dict):
            raise DocumentValidationError(f'{self.name}: update must be an object')
        updates = dict(set_fields)
        existing = self.find_one(filter)
        if existing is not None:
            doc_id = existing.pop('_id')
            new_id = updates.pop('_id', doc_id)
            if str(new_id) != doc_id:
                raise DocumentValidationError(f"{self.name}: '_id' is immutable")
            merged = dict(existing)
            merged.update(updates)
            if merged == existing:
                return 'matched'
            self._validate(merged)
            try:
                self._conn.execute(
                    f'UPDATE "{self.name}" SET doc_json=? WHERE _id=?',
                    (_dump(merged), doc_id),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateKeyError(f'{self.name}: {exc}') from exc
            return 'modified'
        if not upsert:
            return 'none'
        seed = {k: v for k, v in filter.items() if not isinstance(v, dict)}
        seed.update(updates)
        doc_id = seed.pop('_id', None) or uuid.uuid4().hex
        self._validate(seed)
        try:
            self._conn.execute(
                f'INSERT INTO "{self.name}" (_id, doc_json) VALUES (?, ?)',
                (str(doc_id), _dump(seed)),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateKeyError(f'{self.name}: {exc}') from exc
        return 'upserted'

    def bulk_upsert(self, operations: Sequence[UpsertOp]) -> BulkWriteResult:
        """Run every operation independently; a rejected one is recorded and the rest continue."""
        result = BulkWriteResult()
        with self._store.lock:
            try:
                for index, op in enumerate(operations):
                    try:
                        if isinstance(op, dict):
                            op = UpsertOp(op.get('filter'), op.get('set'))
                        elif not isinstance(op, UpsertOp):
                            raise TypeError(f'operation must be an object with filter and set, got {type(op).__name__}')
                        outcome = self._apply(op.filter, op.set, upsert=True)
                    except (DuplicateKeyError, DocumentValidationError) as exc:
                        result.errors.append({'index': index, 'code': exc.code, 'message': str(exc)})
                        continue
                    except (ValueError, TypeError) as exc:
                        result.errors.append({'index': index, 'code': 'bad_operation', 'message': str(exc)})
                        continue
                    if outcome == 'upserted':
                        result.upserted += 1
                    else:
                        result.matched += 1
                        if outcome == 'modified':
                            result.modified += 1
            except Exception:
                self._conn.rollback()
                raise
            self._conn.commit()
        if result.errors:
            logger.warning('%s: bulk upsert rejected %d of %d operation(s)',
                           self.name, len(result.errors), len(operations))
        return result

    def duplicates(self, fields: Sequence[str]) -> List[Dict[str, Any]]:
        """Return natural-key groups that occur more than once (these block a unique index)."""
        exprs = [_field_expr(f) for f in fields]
        cols = ', '.join(f'{e} AS k{i}' for i, e in enumerate(exprs))
        sql = (f'SELECT {cols}, COUNT(*) AS c FROM "{self.name}" '
               f"GROUP BY {', '.join(exprs)} HAVING COUNT(*) > 1")
        with self._store.lock:
            rows = self._conn.execute(sql).fetchall()
        return [
            {'key': {f: r[f'k{i}'] for i, f in enumerate(fields)}, 'count': int(r['c'])}
            for r in rows
        ]


class DocumentStore:
    """One SQLite file holding a set of document collections.

    The connection is opened with check_same_thread=False so a sync run can
    hand it to its worker thread; every statement goes through ``lock``.
    """

    def __init__(self, conn: sqlite3.Connection, specs: Optional[Dict[str, CollectionSpec]] = None,
                 path: Optional[str] = None):
        self.conn = conn
        self.path = path
        self.lock = threading.RLock()
        self._specs = {spec.name: spec for spec in (specs or {}).values()}
        self._ready: set = set()
        self._closed = False

    @classmethod
    def connect(cls, path: str, specs: Optional[Dict[str, CollectionSpec]] = None,
                must_exist: bool = False, timeout: float = 30) -> 'DocumentStore':
        if must_exist:
            if path == ':memory:' or not os.path.isfile(path):
                raise FileNotFoundError(f'Document store not found: {path}')
            uri = Path(path).resolve().as_uri() + '?mode=rw'
            conn = sqlite3.connect(uri, uri=True, timeout=timeout, check_same_thread=False)
        else:
            if path != ':memory:':
                parent = os.path.dirname(os.path.abspath(path))
                os.makedirs(parent, exist_ok=True)
            conn = sqlite3.connect(path, timeout=timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if path != ':memory:':
            try:
                conn.execute('PRAGMA journal_mode=WAL;')
                conn.execute('PRAGMA synchronous=NORMAL;')
            except sqlite3.DatabaseError:
                conn.close()
                raise
        return cls(conn, specs, path=path)

    @property
    def closed(self) -> bool:
        return self._closed

    def spec(self, name: str) -> CollectionSpec:
        return self._specs.get(name) or CollectionSpec(_check_name(name))

    def collection(self, name: str) -> Collection:
        spec = self.spec(_check_name(name))
        if name not in self._ready:
            self._ensure_collection(spec)
        return Collection(self, spec)

    def _ensure_collection(self, spec: CollectionSpec) -> None:
        with self.lock:
            self.conn.execute(
                f'CREATE TABLE IF NOT EXISTS "{spec.name}" ('
                '_id TEXT PRIMARY KEY, doc_json TEXT NOT NULL)'
            )
            for fields in spec.unique:
                try:
                    self._create_unique_index(spec.name, fields)
                except sqlite3.IntegrityError as exc:
                    logger.warning('Unique index on %s(%s) not created: %s',
                                   spec.name, ', '.join(fields), exc)
            self.conn.commit()
            self._ready.add(spec.name)

    def _create_unique_index(self, name: str, fields: Sequence[str]) -> str:
        index_name = _INDEX_PREFIX + name + '_' + '_'.join(f.replace('.', '_') for f in fields)
        exprs = ', '.join(_field_expr(f) for f in fields)
        self.conn.execute(f'CREATE UNIQUE INDEX IF NOT EXISTS "{index_name}" ON "{name}" ({exprs})')
        return index_name

    def ensure_indexes(self, drop_stale: bool = False) -> Dict[str, Dict[str, List[str]]]:
        """(Re)create every declared unique index; optionally drop undeclared ux_* indexes.

        Returns {collection: {'created': [...], 'dropped': [...], 'failed': [...]}}.
        """
        report: Dict[str, Dict[str, List[str]]] = {}
        with self.lock:
            for spec in self._specs.values():
                entry = {'created': [], 'dropped': [], 'failed': []}
                self.conn.execute(
                    f'CREATE TABLE IF NOT EXISTS "{spec.name}" ('
                    '_id TEXT PRIMARY KEY, doc_json TEXT NOT NULL)'
                )
                wanted = set()
                for fields in spec.unique:
                    try:
                        wanted.add(self._create_unique_index(spec.name, fields))
                        entry['created'].append(','.join(fields))
                    except sqlite3.IntegrityError:
                        entry['failed'].append(','.join(fields))
                if drop_stale:
                    for row in self.conn.execute(f'PRAGMA index_list("{spec.name}")').fetchall():
                        idx = row['name']
                        if idx.startswith(_INDEX_PREFIX) and idx not in wanted:
                            self.conn.execute(f'DROP INDEX IF EXISTS "{idx}"')
                            entry['dropped'].append(idx)
                report[spec.name] = entry
                self._ready.add(spec.name)
            self.conn.commit()
        return report

    def ping(self) -> None:
        with self.lock:
            self.conn.execute('SELECT 1').fetchone()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.conn.close()
        except sqlite3.Error as exc:
            logger.warning('Error closing document store %s: %s', self.path, exc)
