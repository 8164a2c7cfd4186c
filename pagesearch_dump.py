#!/usr/bin/env python3
"""
PageSearch Dump & Restore

Maintenance commands for store dumps (``<store>.sql.gz``):

Usage:
    # Dump one store, by file or by source URL
    python pagesearch_dump.py dump --db data/<name>.pagename.db
    python pagesearch_dump.py dump --url https://example.com/pages.json

    # Dump every store in the data directory
    python pagesearch_dump.py dump --all

    # List dumps
    python pagesearch_dump.py list

    # Verify a dump
    python pagesearch_dump.py verify data/<name>.pagename.db.sql.gz

    # Rebuild a store from a dump
    python pagesearch_dump.py restore data/<name>.pagename.db.sql.gz --into restored.db --policy ignore

Stores should not be dumped or restored while the server holds them open
from another process.
"""

import argparse
import gzip
import json
import sqlite3
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Tuple

from core.config import load_settings
from database import ConflictPolicy, Record, StoreError, TextStore, store_path_for_url
from database.store import DUMP_SUFFIX, STORE_SUFFIX

# Row inserts as written by sqlite3.Connection.iterdump(). FTS4 keeps the
# indexed text in its fts_content shadow table (docid, c0id, c1data), which
# is dumped as an ordinary table.
PRIMARY_INSERT = 'INSERT INTO "fs" VALUES('
INDEX_INSERT = 'INSERT INTO "fts_content" VALUES('


# =============================================================================
# Configuration
# =============================================================================

class DumpConfig:
    """Dump locations."""

    def __init__(self, data_dir: str = None):
        self.data_dir = Path(data_dir) if data_dir else load_settings().data_dir

    def stores(self) -> List[Path]:
        return sorted(self.data_dir.glob(f'*{STORE_SUFFIX}'))

    def dumps(self) -> List[Path]:
        return sorted(self.data_dir.glob(f'*{DUMP_SUFFIX}'))


# =============================================================================
# Dump Operations
# =============================================================================

def dump_store(db_path: Path) -> Tuple[bool, str]:
    """
    Dump one existing store.

    Returns:
        Tuple of (success, dump path or error message)
    """
    db_path = Path(db_path)
    if not db_path.exists():
        return False, f"Store not found: {db_path}"

    try:
        with TextStore(db_path) as store:
            return True, store.dump_sql()
    except StoreError as e:
        return False, f"Dump failed: {e}"


def dump_all(config: DumpConfig) -> Tuple[int, int]:
    """
    Dump every store in the data directory.

    Returns:
        Tuple of (dumped, failed)
    """
    dumped = failed = 0
    for db_path in config.stores():
        success, result = dump_store(db_path)
        if success:
            dumped += 1
            print(f"  [+] {db_path.name}")
        else:
            failed += 1
            print(f"  [!] {db_path.name}: {result}")
    return dumped, failed


def list_dumps(config: DumpConfig) -> List[Dict]:
    """List all dumps in the data directory."""
    dumps = []
    for dump_file in config.dumps():
        stat = dump_file.stat()
        dumps.append({
            'name': dump_file.name,
            'path': str(dump_file),
            'size_kb': round(stat.st_size / 1024, 2),
            'created': datetime.fromtimestamp(stat.st_mtime).isoformat(),
        })
    return dumps


def iter_dump_statements(dump_path) -> Iterator[str]:
    """
    Yield the complete SQL statements of a gzip dump.

    Statements may span lines when text values contain newlines.

    Raises:
        ValueError: If the dump ends in the middle of a statement
    """
    buffer = ''
    with gzip.open(dump_path, 'rt', encoding='utf-8') as f:
        for line in f:
            buffer += line
            if sqlite3.complete_statement(buffer):
                yield buffer.strip()
                buffer = ''

    if buffer.strip():
        raise ValueError('dump ends with an incomplete statement')


def verify_dump(dump_path) -> Tuple[bool, Dict]:
    """
    Verify dump integrity.

    Returns:
        Tuple of (is_valid, details)
    """
    dump_file = Path(dump_path)
    if not dump_file.exists():
        return False, {'error': 'Dump file not found'}

    result = {
        'path': str(dump_file),
        'size_kb': round(dump_file.stat().st_size / 1024, 2),
        'statements': 0,
        'primary_rows': 0,
        'index_rows': 0,
        'errors': []
    }

    begin_seen = False
    last = None
    try:
        for statement in iter_dump_statements(dump_file):
            begin_seen = begin_seen or statement == 'BEGIN TRANSACTION;'
            last = statement
            result['statements'] += 1
            if statement.startswith(PRIMARY_INSERT):
                result['primary_rows'] += 1
            elif statement.startswith(INDEX_INSERT):
                result['index_rows'] += 1
    except (OSError, EOFError, UnicodeDecodeError, ValueError) as e:
        return False, {'error': f'Unreadable dump: {e}'}

    if not begin_seen:
        result['errors'].append('Missing BEGIN TRANSACTION')
    if last != 'COMMIT;':
        result['errors'].append('Missing COMMIT')
    if result['primary_rows'] != result['index_rows']:
        result['errors'].append(
            f"Row mismatch: {result['primary_rows']} primary, {result['index_rows']} index"
        )

    result['valid'] = not result['errors']
    return result['valid'], result


def load_dump_records(dump_path) -> List[Record]:
    """
    Recover the records held in a dump.

    Only the row inserts of the primary table and of the index content table
    are replayed, into plain tables of a scratch database. Saving the
    recovered records rebuilds the index.
    """
    scratch = sqlite3.connect(':memory:')
    try:
        scratch.execute('CREATE TABLE fs (id TEXT, meta TEXT)')
        scratch.execute('CREATE TABLE fts_content (docid INTEGER, c0id TEXT, c1data TEXT)')
        for statement in iter_dump_statements(dump_path):
            if statement.startswith((PRIMARY_INSERT, INDEX_INSERT)):
                scratch.execute(statement)

        rows = scratch.execute('''
            SELECT c.c0id, c.c1data, fs.meta
            FROM fts_content c
            LEFT JOIN fs ON fs.id = c.c0id
            ORDER BY c.docid
        ''').fetchall()
    finally:
        scratch.close()

    records = []
    for record_id, body, meta in rows:
        try:
            metadata = json.loads(meta) if meta else {}
        except json.JSONDecodeError:
            metadata = {}
        records.append(Record(id=record_id, metadata=metadata or {}, body=body or ''))
    return records


def restore_dump(
    dump_path,
    target_path,
    policy: ConflictPolicy = ConflictPolicy.IGNORE
) -> Tuple[bool, str]:
    """
    Rebuild a store from a dump.

    Records go through TextStore.save_many, so ids already in the target are
    handled by ``policy``.

    Returns:
        Tuple of (success, message)
    """
    dump_file = Path(dump_path)
    if not dump_file.exists():
        return False, f"Dump not found: {dump_path}"

    try:
        records = load_dump_records(dump_file)
    except (OSError, EOFError, UnicodeDecodeError, ValueError, sqlite3.Error) as e:
        return False, f"Unreadable dump: {e}"

    try:
        with TextStore(target_path) as store:
            written = store.save_many(records, policy=policy)
    except StoreError as e:
        return False, f"Restore failed: {e}"

    skipped = len(records) - written
    return True, f"Restored {written} records into {target_path} ({skipped} skipped)"


# =============================================================================
# CLI
# =============================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="PageSearch Dump & Restore",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--data-dir', help='Store directory (default: PAGESEARCH_DATA_DIR)')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    dump_parser = subparsers.add_parser('dump', help='Dump stores')
    target = dump_parser.add_mutually_exclusive_group(required=True)
    target.add_argument('--db', help='Store file to dump')
    target.add_argument('--url', help='Source URL whose store to dump')
    target.add_argument('--all', action='store_true', help='Dump every store')

    subparsers.add_parser('list', help='List dumps')

    verify_parser = subparsers.add_parser('verify', help='Verify a dump')
    verify_parser.add_argument('dump', help='Dump file to verify')

    restore_parser = subparsers.add_parser('restore', help='Rebuild a store from a dump')
    restore_parser.add_argument('dump', help='Dump file to restore')
    restore_parser.add_argument('--into', required=True, help='Target store file')
    restore_parser.add_argument(
        '--policy',
        choices=[p.value for p in ConflictPolicy],
        default=ConflictPolicy.IGNORE.value,
        help='What to do with ids already in the target'
    )

    args = parser.parse_args(argv)
    config = DumpConfig(args.data_dir)

    if args.command == 'dump':
        if args.all:
            dumped, failed = dump_all(config)
            print(f"\n  Dumped {dumped} store(s), {failed} failed.")
            return 0 if failed == 0 else 1

        db_path = Path(args.db) if args.db else store_path_for_url(config.data_dir, args.url)
        success, result = dump_store(db_path)
        print(f"  {result}")
        return 0 if success else 1

    elif args.command == 'list':
        dumps = list_dumps(config)
        if not dumps:
            print("No dumps found.")
        for d in dumps:
            print(f"  {d['name']}")
            print(f"    Size: {d['size_kb']} KB")
            print(f"    Created: {d['created']}")
        return 0

    elif args.command == 'verify':
        is_valid, details = verify_dump(args.dump)
        if is_valid:
            print(f"  Status: VALID")
            print(f"  Statements: {details['statements']}")
            print(f"  Records: {details['primary_rows']}")
        else:
            print(f"  Status: INVALID")
            for error in details.get('errors') or [details.get('error', 'Unknown')]:
                print(f"  Error: {error}")
        return 0 if is_valid else 1

    elif args.command == 'restore':
        success, message = restore_dump(args.dump, args.into, ConflictPolicy(args.policy))
        print(f"  {message}")
        return 0 if success else 1

    parser.print_help()
    return 1


if __name__ == '__main__':
    sys.exit(main())
