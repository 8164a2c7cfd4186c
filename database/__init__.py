"""
Database Layer for PageSearch

SQLite-based page storage with FTS4 full-text search.

Features:
- Idempotent transactional ingestion
- Snippeted phrase search
- Compressed SQL dumps

Usage:
    from database import TextStore, Record

    store = TextStore('data/example.pagename.db')
    store.save(Record(id='p1', metadata={'url': 'hi'}, body='some thing'))
    results = store.find('some thing')
"""

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
from .store import TextStore, store_path_for_url

__all__ = [
    'TextStore',
    'Record',
    'ConflictPolicy',
    'store_path_for_url',
    'StoreError',
    'ConfigError',
    'SchemaError',
    'TransactionError',
    'DuplicateRecordError',
    'QueryError',
    'DumpError',
    'StoreClosedError',
]
