"""
SQLite Text Store for PageSearch

Provides a persisted full-text index for the pages of one source document:
- Primary table ``fs`` holding id and JSON metadata
- FTS4 index table ``fts`` holding id and body text
- Transactional, idempotent writes with an explicit conflict policy
- Snippeted phrase search
- Compressed SQL dumps beside the store file

Every public operation runs under one instance-wide lock, so readers and
writers are fully serialized. One TextStore should own a given file; opening
the same file from two processes is unsupported.

Usage:
    from database.store import TextStore

    with TextStore('data/example.pagename.db') as store:
        store.save_many(records)
        results = store.find('some thing')
        store.dump_sql()
"""

import base64
import gzip
import hashlib
import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, List

from .errors import (
    ConfigError,
    DumpError,
    DuplicateRecordError,
    QueryError,
    SchemaError,
    StoreClosedError,
    StoreError,
    TransactionError,
)
from .models import ConflictPolicy, Record

logger = logging.getLogger(__name__)


# =============================================================================
# Schema
# =============================================================================

SCHEMA = (
    ('fs', '''
        CREATE TABLE IF NOT EXISTS fs (
            id TEXT NOT NULL PRIMARY KEY,
            meta TEXT
        )
    '''),
    ('fts', '''
        CREATE VIRTUAL TABLE IF NOT EXISTS fts USING fts4 (id, data)
    '''),
)

SNIPPET_START = '<b>'
SNIPPET_END = '</b>'
SNIPPET_ELLIPSIS = '...'
# Negative: up to 30 tokens in total, spread over several fragments
SNIPPET_TOKENS = -30

FIND_SQL = '''
    SELECT id, snippet(fts, ?, ?, ?, -1, ?) AS snippet
    FROM fts
    WHERE data MATCH ?
'''

FIND_WITH_METADATA_SQL = '''
    SELECT fts.id AS id, snippet(fts, ?, ?, ?, -1, ?) AS snippet, fs.meta AS meta
    FROM fts
    LEFT JOIN fs ON fs.id = fts.id
    WHERE fts.data MATCH ?
'''

STORE_SUFFIX = '.pagename.db'
DUMP_SUFFIX = '.sql.gz'

# Leaves room for the suffixes within a 255 byte filename
MAX_ENCODED_NAME = 200


def store_path_for_url(data_dir, url: str) -> Path:
    """
    Derive the store file for a source URL.

    The URL is urlsafe-base64 encoded so the name is reversible. URLs too
    long to fit in a filename fall back to their SHA-256 digest.
    """
    encoded = base64.urlsafe_b64encode(url.encode('utf-8')).decode('ascii')
    if len(encoded) > MAX_ENCODED_NAME:
        encoded = hashlib.sha256(url.encode('utf-8')).hexdigest()
    return Path(data_dir) / f'{encoded}{STORE_SUFFIX}'


class TextStore:
    """
    Full-text store for one source document.

    Writes use "insert, skip if present" semantics by default; see
    ConflictPolicy for the alternatives.
    """

    def __init__(self, name, backup_on_open: bool = False):
        """
        Open (creating if absent) the store at ``name`` and ensure its schema.

        Args:
            name: Path of the SQLite file
            backup_on_open: Dump the store after the schema check if it
                already holds records

        Raises:
            ConfigError: If the name is empty or the file cannot be opened
            SchemaError: If initialization fails
        """
        if not isinstance(name, (str, os.PathLike)) or not os.fspath(name):
            raise ConfigError('database must have name')

        self.name = os.fspath(name)
        self._lock = threading.Lock()
        self._closed = False

        try:
            # The lock, not the creating thread, owns the connection
            self._conn = sqlite3.connect(
                self.name,
                check_same_thread=False,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise ConfigError(f'could not open {self.name}: {e}', name=self.name) from e
        self._conn.row_factory = sqlite3.Row

        try:
            self.initialize_db(create_backup=backup_on_open)
        except StoreError as e:
            self.close()
            raise SchemaError(f'could not initialize: {e}', name=self.name) from e

        logger.debug('Opened store %s', self.name)

    def __repr__(self):
        state = 'closed' if self._closed else 'open'
        return f'<TextStore {self.name!r} ({state})>'

    def __enter__(self) -> 'TextStore':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def dump_path(self) -> str:
        return self.name + DUMP_SUFFIX

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize_db(self, create_backup: bool = False) -> None:
        """
        Create the primary and index tables if they do not exist yet.

        Safe to call on an initialized store. When ``create_backup`` is set
        and the store already holds records, a dump is written afterwards.

        Raises:
            SchemaError: If a table cannot be created
        """
        with self._lock:
            self._check_open()
            for table, sql in SCHEMA:
                try:
                    self._conn.execute(sql)
                except sqlite3.Error as e:
                    raise SchemaError(f'creating table {table}: {e}', table=table) from e

            if not create_backup:
                return
            has_records = self._count() > 0

        if has_records:
            self.dump_sql()

    def close(self) -> None:
        """Release the connection. Later operations raise StoreClosedError."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()
        logger.debug('Closed store %s', self.name)

    def count(self) -> int:
        """Number of records in the primary table."""
        with self._lock:
            self._check_open()
            return self._count()

    # =========================================================================
    # Write path
    # =========================================================================

    def save(self, record: Record, policy: ConflictPolicy = ConflictPolicy.IGNORE) -> bool:
        """
        Save one record to both tables in a single transaction.

        Args:
            record: Record to store
            policy: What to do if the id is already stored

        Returns:
            True if the record was written, False if it was skipped

        Raises:
            TransactionError: If any statement or the commit fails
        """
        with self._lock:
            self._check_open()
            with self._transaction('save'):
                return self._write(record, policy, 'save')

    def save_many(
        self,
        records: Iterable[Record],
        policy: ConflictPolicy = ConflictPolicy.IGNORE
    ) -> int:
        """
        Save a batch of records in one transaction.

        A failure on any record rolls back the whole batch.

        Returns:
            Number of records written (skipped ids are not counted)

        Raises:
            TransactionError: If any statement or the commit fails
        """
        written = 0
        with self._lock:
            self._check_open()
            with self._transaction('save_many'):
                for record in records:
                    if self._write(record, policy, 'save_many'):
                        written += 1

        logger.debug('Saved %d records to %s', written, self.name)
        return written

    # =========================================================================
    # Read path
    # =========================================================================

    def find(self, phrase: str, include_metadata: bool = False) -> List[Record]:
        """
        Full-text search over record bodies.

        Each result carries a snippet in place of the body: a bounded excerpt
        with matches wrapped in <b></b> and separate windows joined by "...".

        Args:
            phrase: FTS4 match expression
            include_metadata: Also load metadata from the primary table

        Returns:
            Matching records in engine order; empty list when nothing matches

        Raises:
            QueryError: If the engine rejects or fails the query
        """
        with self._lock:
            self._check_open()
            if not phrase or not phrase.strip():
                return []

            sql = FIND_WITH_METADATA_SQL if include_metadata else FIND_SQL
            params = (SNIPPET_START, SNIPPET_END, SNIPPET_ELLIPSIS, SNIPPET_TOKENS, phrase)
            try:
                rows = self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise QueryError(f'find {phrase!r}: {e}', phrase=phrase) from e

        results = []
        for row in rows:
            metadata = self._load_metadata(row['meta']) if include_metadata else {}
            results.append(Record(id=row['id'], metadata=metadata, body=row['snippet']))
        return results

    # =========================================================================
    # Export
    # =========================================================================

    def dump_sql(self) -> str:
        """
        Write the schema and contents as gzip-compressed SQL to ``<name>.sql.gz``.

        The dump is written to a temporary file and renamed over any previous
        dump, so the target path never holds a partial dump.

        Returns:
            Path of the dump file

        Raises:
            DumpError: If the dump cannot be written
        """
        target = self.dump_path
        tmp_path = target + '.tmp'

        with self._lock:
            self._check_open()
            try:
                with gzip.open(tmp_path, 'wt', encoding='utf-8') as f:
                    for line in self._conn.iterdump():
                        f.write(f'{line}\n')
                os.replace(tmp_path, target)
            except (OSError, sqlite3.Error) as e:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise DumpError(f'dump {self.name}: {e}', path=target) from e

        logger.info('Dumped %s to %s', self.name, target)
        return target

    # =========================================================================
    # Helpers
    # =========================================================================

    def _check_open(self):
        if self._closed:
            raise StoreClosedError(f'store {self.name} is closed', name=self.name)

    def _count(self) -> int:
        try:
            return self._conn.execute('SELECT COUNT(*) FROM fs').fetchone()[0]
        except sqlite3.Error as e:
            raise QueryError(f'count: {e}') from e

    @contextmanager
    def _transaction(self, operation: str):
        """Run the body in BEGIN/COMMIT, rolling back on any exception."""
        try:
            self._conn.execute('BEGIN')
        except sqlite3.Error as e:
            raise TransactionError(
                f'begin {operation}: {e}', operation=operation, phase='begin'
            ) from e

        try:
            yield
        except BaseException:
            self._rollback(operation)
            raise

        try:
            self._conn.execute('COMMIT')
        except sqlite3.Error as e:
            self._rollback(operation)
            raise TransactionError(
                f'commit {operation}: {e}', operation=operation, phase='commit'
            ) from e

    def _rollback(self, operation: str):
        # SQLite may already have ended the transaction on some errors
        if self._conn.in_transaction:
            self._conn.execute('ROLLBACK')
            logger.debug('Rolled back %s on %s', operation, self.name)

    def _exec(self, operation: str, sql: str, params=()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except (sqlite3.InterfaceError, sqlite3.ProgrammingError) as e:
            raise TransactionError(
                f'stmt {operation}: {e}', operation=operation, phase='prepare'
            ) from e
        except sqlite3.Error as e:
            raise TransactionError(
                f'exec {operation}: {e}', operation=operation, phase='exec'
            ) from e

    def _write(self, record: Record, policy: ConflictPolicy, operation: str) -> bool:
        """Write one record inside the current transaction, index row first."""
        exists = self._exec(
            operation, 'SELECT 1 FROM fs WHERE id = ?', (record.id,)
        ).fetchone() is not None

        if exists:
            if policy is ConflictPolicy.IGNORE:
                return False
            if policy is ConflictPolicy.ERROR:
                raise DuplicateRecordError(
                    f'{operation}: record {record.id!r} already exists',
                    operation=operation, phase='exec', id=record.id
                )
            self._exec(operation, 'DELETE FROM fts WHERE id = ?', (record.id,))

        meta = self._dump_metadata(record)
        self._exec(
            operation,
            'INSERT INTO fts (id, data) VALUES (?, ?)',
            (record.id, record.body)
        )
        if exists:
            self._exec(operation, 'UPDATE fs SET meta = ? WHERE id = ?', (meta, record.id))
        else:
            self._exec(operation, 'INSERT INTO fs (id, meta) VALUES (?, ?)', (record.id, meta))
        return True

    @staticmethod
    def _dump_metadata(record: Record) -> str:
        try:
            return json.dumps(record.metadata or {})
        except (TypeError, ValueError) as e:
            logger.warning('Metadata of %r not serializable, storing empty: %s', record.id, e)
            return '{}'

    @staticmethod
    def _load_metadata(raw) -> dict:
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return {}
        return data if isinstance(data, dict) else {}
