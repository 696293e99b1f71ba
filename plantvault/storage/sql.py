"""
Relational storage backend (SQLAlchemy).

Documents are kept in a single ``documents`` table keyed by
(collection, id) with the record serialized as JSON. The fields the auth
flows look records up by (email, token hash, expiry, ledger sequence, ...)
are also copied into typed, indexed columns, and filters, ordering and
limits on those columns run in the database. Whatever cannot be pushed
down is evaluated on the decoded documents with Query.apply, so every
backend keeps the same matching semantics.

Writers are serialized by the database itself, not only inside one
process: SQLite transactions start with BEGIN IMMEDIATE and other
databases lock a sentinel row FOR UPDATE. Two processes sharing one
database therefore never interleave a read-modify-write sequence.
"""

import json
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import (
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..errors import StorageConflictError, StorageError
from .base import Filter, Query, Storage

logger = logging.getLogger(__name__)

WRITE_LOCK_OPTION = 'plantvault_write_lock'
LOCK_COLLECTION = '_locks'
LOCK_ID = 'writers'
SQLITE_BUSY_TIMEOUT = 30

metadata = MetaData()

documents = Table(
    'documents', metadata,
    Column('collection', String(64), primary_key=True),
    Column('id', String(64), primary_key=True),
    Column('body', Text, nullable=False),
    Column('email', String(320)),
    Column('subject_id', String(320)),
    Column('user_id', String(64)),
    Column('type', String(32)),
    Column('token_hash', String(128)),
    Column('jti', String(64)),
    Column('created_at', Float),
    Column('expires_at', Float),
    Column('sequence', Integer),
    UniqueConstraint('collection', 'sequence', name='uq_documents_sequence'),
    Index('ix_documents_email', 'collection', 'email'),
    Index('ix_documents_subject', 'collection', 'subject_id'),
    Index('ix_documents_user', 'collection', 'user_id'),
    Index('ix_documents_token_hash', 'collection', 'token_hash'),
    Index('ix_documents_jti', 'collection', 'jti'),
    Index('ix_documents_created', 'collection', 'created_at'),
    Index('ix_documents_expires', 'collection', 'expires_at'),
)

# Top-level document fields mirrored into columns, with the Python types
# a value must have to be mirrored
TEXT_FIELDS = ('email', 'subject_id', 'user_id', 'type', 'token_hash', 'jti')
NUMBER_FIELDS = ('created_at', 'expires_at')
INTEGER_FIELDS = ('sequence',)
PROMOTED_FIELDS = TEXT_FIELDS + NUMBER_FIELDS + INTEGER_FIELDS

EQUALITY_OPS = ('==', 'in')
RANGE_OPS = ('<', '<=', '>', '>=')


def _fits(field_name: str, value: Any) -> bool:
    """Whether a value can live in (or be compared against) a field's column."""
    if value is None or isinstance(value, bool):
        return False
    if field_name in TEXT_FIELDS or field_name == 'id':
        return isinstance(value, str)
    if field_name in INTEGER_FIELDS:
        return isinstance(value, int)
    return isinstance(value, (int, float))


def promoted_values(record: Dict[str, Any]) -> Dict[str, Any]:
    """Column values for a document; anything of the wrong type is NULL."""
    return {
        name: record.get(name) if _fits(name, record.get(name)) else None
        for name in PROMOTED_FIELDS
    }


def _pushable(flt: Filter) -> bool:
    if flt.field == 'id' or flt.field in TEXT_FIELDS:
        ops = EQUALITY_OPS
    elif flt.field in NUMBER_FIELDS or flt.field in INTEGER_FIELDS:
        ops = EQUALITY_OPS + RANGE_OPS
    else:
        return False
    if flt.op not in ops:
        return False
    if flt.op == 'in':
        return (isinstance(flt.value, (list, tuple, set, frozenset))
                and all(_fits(flt.field, v) for v in flt.value))
    return _fits(flt.field, flt.value)


def _condition(flt: Filter):
    column = documents.c[flt.field]
    if flt.op == '==':
        return column == flt.value
    if flt.op == 'in':
        return column.in_(list(flt.value))
    if flt.op == '<':
        return column < flt.value
    if flt.op == '<=':
        return column <= flt.value
    if flt.op == '>':
        return column > flt.value
    return column >= flt.value


class SqlStorage(Storage):
    """
    Document store on top of any SQLAlchemy-supported database.

    Example usage:
        storage = SqlStorage("sqlite:///plantvault.db")
        storage.initialize()
        storage.upsert("users", user_id, {"email": "a@b.com"})
    """

    def __init__(self, url: str):
        self._url = url
        self._is_sqlite = make_url(url).get_backend_name() == 'sqlite'
        engine_args: Dict[str, Any] = {'pool_pre_ping': True}
        if self._is_sqlite:
            engine_args['connect_args'] = {'timeout': SQLITE_BUSY_TIMEOUT, 'check_same_thread': False}
        self.engine = create_engine(url, **engine_args)
        if self._is_sqlite:
            self._install_sqlite_locking()
        self._lock = threading.RLock()
        self._local = threading.local()

    def _install_sqlite_locking(self) -> None:
        """
        Take over transaction control from pysqlite so writers can open
        their transaction with BEGIN IMMEDIATE (the database write lock).
        """

        @event.listens_for(self.engine, 'connect')
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(self.engine, 'begin')
        def _on_begin(conn):
            if conn.get_execution_options().get(WRITE_LOCK_OPTION):
                conn.exec_driver_sql('BEGIN IMMEDIATE')
            else:
                conn.exec_driver_sql('BEGIN')

    def initialize(self) -> None:
        """Create the documents table and the writer lock row if needed."""
        try:
            with self._lock, self.engine.begin() as conn:
                metadata.create_all(conn)
                exists = conn.execute(
                    select(documents.c.id).where(self._key(LOCK_COLLECTION, LOCK_ID))
                ).first()
                if exists is None:
                    conn.execute(insert(documents).values(collection=LOCK_COLLECTION, id=LOCK_ID, body='{}'))
        except SQLAlchemyError as exc:
            raise StorageError(f"Could not create the SQL schema: {exc}") from exc
        logger.info("SQL store ready (%s)", self.engine.url.render_as_string(hide_password=True))

    def close(self) -> None:
        self.engine.dispose()

    # ========================================================================
    # Connections and transactions
    # ========================================================================

    @contextmanager
    def _begin(self, write: bool):
        """A connection inside a database transaction that commits on exit."""
        try:
            with self.engine.connect() as conn:
                if write:
                    conn.execution_options(**{WRITE_LOCK_OPTION: True})
                with conn.begin():
                    if write and not self._is_sqlite:
                        conn.execute(
                            select(documents.c.id)
                            .where(documents.c.collection == LOCK_COLLECTION, documents.c.id == LOCK_ID)
                            .with_for_update()
                        )
                    yield conn
        except IntegrityError as exc:
            raise StorageConflictError(f"SQL constraint violated: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"SQL backend failure: {exc}") from exc

    @contextmanager
    def _connection(self, write: bool = False):
        """
        Yield the connection of the surrounding transaction, or a fresh
        one that commits when the block exits.
        """
        active = getattr(self._local, 'conn', None)
        if active is not None:
            yield active
            return
        if write:
            with self._lock, self._begin(write=True) as conn:
                yield conn
        else:
            with self._begin(write=False) as conn:
                yield conn

    @contextmanager
    def transaction(self) -> Iterator[Storage]:
        with self._lock:
            if getattr(self._local, 'conn', None) is not None:
                # Nested: join the outer transaction
                yield self
                return
            with self._begin(write=True) as conn:
                self._local.conn = conn
                try:
                    yield self
                finally:
                    self._local.conn = None

    # ========================================================================
    # Queries
    # ========================================================================

    @staticmethod
    def _decode(body: str) -> Dict[str, Any]:
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt document body: {exc}") from exc

    @staticmethod
    def _key(collection: str, doc_id: str):
        return (documents.c.collection == collection) & (documents.c.id == doc_id)

    @staticmethod
    def _split(collection: str, query: Optional[Query]) -> Tuple[list, List[Filter]]:
        """SQL conditions for the pushable filters, plus the filters left over."""
        conditions = [documents.c.collection == collection]
        remaining: List[Filter] = []
        for flt in (query.filters if query is not None else []):
            if _pushable(flt):
                conditions.append(_condition(flt))
            else:
                remaining.append(flt)
        return conditions, remaining

    def _statements(self, collection: str, query: Optional[Query]) -> list:
        """
        SELECTs whose combined rows contain every document the query can
        return. Query.apply still runs on the result.

        The limit only reaches SQL when every filter did and the ordering
        is on a single numeric column. Rows without a usable column value
        (missing, null or another type) are then fetched separately, since
        Query.apply may place them ahead of the numeric rows.
        """
        conditions, remaining = self._split(collection, query)
        base = select(documents.c.body).where(*conditions)
        if query is None or remaining or query.max_results is None or query.max_results < 0:
            return [base]
        if not query.ordering:
            return [base.limit(query.max_results)]
        if len(query.ordering) > 1 or query.ordering[0][0] not in NUMBER_FIELDS + INTEGER_FIELDS:
            return [base]

        name, direction = query.ordering[0]
        column = documents.c[name]
        ordered = column.desc() if direction == 'desc' else column.asc()
        return [
            base.where(column.is_(None)),
            base.where(column.is_not(None)).order_by(ordered).limit(query.max_results),
        ]

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._connection() as conn:
            row = conn.execute(select(documents.c.body).where(self._key(collection, doc_id))).first()
        return self._decode(row[0]) if row else None

    def find(self, collection: str, query: Optional[Query] = None) -> List[Dict[str, Any]]:
        with self._connection() as conn:
            rows = [row for stmt in self._statements(collection, query)
                    for row in conn.execute(stmt).fetchall()]
        docs = [self._decode(row[0]) for row in rows]
        return query.apply(docs) if query is not None else docs

    def count(self, collection: str, query: Optional[Query] = None) -> int:
        conditions, remaining = self._split(collection, query)
        if remaining or (query is not None and query.max_results is not None):
            return len(self.find(collection, query))
        with self._connection() as conn:
            return conn.execute(select(func.count()).select_from(documents).where(*conditions)).scalar_one()

    # ========================================================================
    # Writes
    # ========================================================================

    def upsert(self, collection: str, doc_id: str, data: Dict[str, Any],
               merge: bool = True) -> Dict[str, Any]:
        with self._connection(write=True) as conn:
            row = conn.execute(select(documents.c.body).where(self._key(collection, doc_id))).first()
            existing = self._decode(row[0]) if row else None
            record = self._merge(existing, doc_id, data, merge)
            values = dict(promoted_values(record), body=json.dumps(record))

            if row:
                conn.execute(update(documents).where(self._key(collection, doc_id)).values(**values))
            else:
                conn.execute(insert(documents).values(collection=collection, id=doc_id, **values))
        return record

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._connection(write=True) as conn:
            result = conn.execute(delete(documents).where(self._key(collection, doc_id)))
        return result.rowcount > 0

    def delete_where(self, collection: str, query: Query) -> int:
        conditions, remaining = self._split(collection, Query(filters=list(query.filters)))
        with self._connection(write=True) as conn:
            if not remaining:
                return conn.execute(delete(documents).where(*conditions)).rowcount

            matcher = Query(filters=remaining)
            rows = conn.execute(select(documents.c.body).where(*conditions)).fetchall()
            doomed = [doc['id'] for doc in matcher.apply([self._decode(row[0]) for row in rows])]
            if not doomed:
                return 0
            result = conn.execute(
                delete(documents).where(documents.c.collection == collection, documents.c.id.in_(doomed))
            )
        return result.rowcount

    def __repr__(self) -> str:
        return f"SqlStorage(url='{self.engine.url.render_as_string(hide_password=True)}')"
