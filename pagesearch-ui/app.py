#!/usr/bin/env python3
"""
PageSearch Web Server

Features:
- POST /search: full-text search over a remote JSON page list, indexing it
  into a local store on first use
- POST /dump: write a compressed SQL dump of the store behind a URL
- Health and readiness endpoints
- CORS on every response, request logging, JSON errors

Usage:
    python app.py

    Or with gunicorn:
    gunicorn -c gunicorn.conf.py "app:create_app()"
"""

from flask import Flask, current_app, request, jsonify
from flask_cors import CORS
from pathlib import Path
from collections import OrderedDict
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional
import atexit
import json
import os
import sys
import tempfile
import threading
import time
import weakref

# Add parent directory to path for imports
sys.path.append(str(Path(__file__).parent.parent))

from core.config import DEFAULT_MAX_OPEN_STORES, Settings, load_settings
from core.downloader import UpstreamFetchError, download_file
from database import Record, TextStore, store_path_for_url
from database.errors import StoreClosedError, StoreError
from logging_config import setup_logging, setup_request_logging, get_logger, log_performance, AuditLogger
from error_handlers import setup_error_handlers, PageSearchError, ValidationError, NotFoundError
from health import health_bp

logger = get_logger('pagesearch.app')
audit = AuditLogger()

CORS_ALLOW_HEADERS = [
    'Content-Type', 'Content-Length', 'Accept-Encoding',
    'X-CSRF-Token', 'Authorization', 'X-Max',
]


class PageFormatError(ValidationError):
    """Downloaded document is not a list of pages."""
    error_type = 'page_format_error'
    message = 'incorrect format for pages'


# =============================================================================
# Store Registry
# =============================================================================

class StoreRegistry:
    """
    Keeps open TextStores per store file, shared by all requests.

    Requests for the same source share the instance, and first-time ingestion
    of a source runs once even when requests for it arrive together. At most
    ``max_open`` stores stay open; the least recently used one is closed when
    another is admitted and is reopened from disk on its next request.
    """

    def __init__(self, data_dir, max_open: int = DEFAULT_MAX_OPEN_STORES):
        if max_open < 1:
            raise ValueError('max_open must be at least 1')
        self.data_dir = Path(data_dir)
        self.max_open = max_open
        self._stores: 'OrderedDict[Path, TextStore]' = OrderedDict()
        # path -> [lock, number of requests holding or waiting for it]
        self._ingest_locks: Dict[Path, list] = {}
        self._lock = threading.Lock()

    def path_for(self, url: str) -> Path:
        return store_path_for_url(self.data_dir, url)

    def lookup(self, path: Path) -> Optional[TextStore]:
        """Return the store for ``path`` if this process already has it open."""
        with self._lock:
            return self._touch(path)

    def get(self, path: Path) -> Optional[TextStore]:
        """
        Return the open store for ``path``, opening it if the file exists.

        Callers hold the ingest lock for ``path``, so a file still being
        ingested is never opened twice.
        """
        with self._lock:
            store = self._touch(path)
            if store is not None or not path.exists():
                return store
            store = TextStore(path)
            evicted = self._admit(path, store)
        self._close_evicted(evicted)
        return store

    def register(self, path: Path, store: TextStore) -> None:
        with self._lock:
            evicted = self._admit(path, store)
        self._close_evicted(evicted)

    @contextmanager
    def ingest_lock(self, path: Path):
        """Hold the ingestion lock for ``path``; the entry is dropped once unused."""
        with self._lock:
            entry = self._ingest_locks.setdefault(path, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._ingest_locks[path]

    def discard(self, path: Path) -> None:
        """Close the store for ``path`` and delete its file."""
        with self._lock:
            store = self._stores.pop(path, None)
        if store is not None:
            store.close()
        if path.exists():
            path.unlink()
        logger.warning(f'Discarded store {path.name}')

    def close_all(self) -> None:
        with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            store.close()

    def __len__(self):
        with self._lock:
            return len(self._stores)

    def _touch(self, path: Path) -> Optional[TextStore]:
        store = self._stores.get(path)
        if store is None:
            return None
        if store.closed:
            del self._stores[path]
            return None
        self._stores.move_to_end(path)
        return store

    def _admit(self, path: Path, store: TextStore) -> List[TextStore]:
        self._stores[path] = store
        self._stores.move_to_end(path)
        evicted = []
        while len(self._stores) > self.max_open:
            _, oldest = self._stores.popitem(last=False)
            evicted.append(oldest)
        return evicted

    def _close_evicted(self, stores: List[TextStore]) -> None:
        for store in stores:
            logger.debug(f'Closing idle store {Path(store.name).name}')
            store.close()


# Every registry built by create_app, closed once at interpreter exit
_registries = weakref.WeakSet()


@atexit.register
def _close_registries():
    for registry in list(_registries):
        registry.close_all()


# =============================================================================
# Ingestion
# =============================================================================

def parse_pages(raw: bytes) -> List[Record]:
    """Decode a JSON array of pages."""
    try:
        data = json.loads(raw)
        if not isinstance(data, list):
            raise ValueError('expected a JSON array of pages')
        return [Record.from_dict(item) for item in data]
    except (ValueError, RecursionError) as e:
        # RecursionError: nesting deeper than the JSON decoder can follow
        logger.debug(f'Rejected page document: {e}')
        raise PageFormatError() from e


def fetch_pages(url: str, max_size: int, timeout: int) -> List[Record]:
    """Download ``url`` to a temporary file and parse it as pages."""
    fd, tmp_name = tempfile.mkstemp(prefix='pagesearch')
    os.close(fd)
    try:
        result = download_file(tmp_name, url, max_size, timeout=timeout)
        if result.truncated:
            raise UpstreamFetchError(f'file must be less than {max_size} bytes', url=url)
        with open(tmp_name, 'rb') as f:
            raw = f.read()
    finally:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)

    return parse_pages(raw)


@log_performance('pagesearch.ingest')
def ingest_source(registry: StoreRegistry, settings: Settings, url: str, path: Path) -> TextStore:
    """Fetch a source document and index it into a new store."""
    started = time.time()
    pages = fetch_pages(url, settings.max_download_bytes, settings.download_timeout)

    logger.debug(f'opening {path.name} for {url}')
    store = None
    try:
        store = TextStore(path)
        store.save_many(pages)
    except StoreError:
        # Leave no half-built store behind for the next request to trust
        if store is not None:
            store.close()
        registry.discard(path)
        raise

    # Other requests only see the store once it is fully written
    registry.register(path, store)
    audit.log_ingest(url, len(pages), store=path.name, duration_seconds=round(time.time() - started, 3))
    return store


def resolve_store(registry: StoreRegistry, settings: Settings, url: str, path: Path) -> TextStore:
    """Return the open store for ``url``, ingesting the source first if needed."""
    store = registry.lookup(path)
    if store is not None:
        logger.debug(f'opening {path.name} for {url}')
        return store

    with registry.ingest_lock(path):
        store = registry.get(path)
        if store is None:
            store = ingest_source(registry, settings, url, path)
    return store


def search_pages(
    registry: StoreRegistry,
    settings: Settings,
    url: str,
    phrase: str,
    include_metadata: bool = False
) -> List[Record]:
    """Search the store for ``url``, ingesting the source first if needed."""
    path = registry.path_for(url)
    try:
        pages = resolve_store(registry, settings, url, path).find(
            phrase, include_metadata=include_metadata
        )
    except StoreClosedError:
        # Evicted between lookup and find; the registry reopens it
        pages = resolve_store(registry, settings, url, path).find(
            phrase, include_metadata=include_metadata
        )

    audit.log_search(phrase, len(pages), store=path.name)
    return pages


def log_existing_stores(data_dir: Path) -> None:
    for entry in sorted(data_dir.iterdir()):
        modified = datetime.fromtimestamp(entry.stat().st_mtime).isoformat()
        logger.info(f'{entry.name} {modified}')


# =============================================================================
# Application
# =============================================================================

def create_app(settings: Optional[Settings] = None) -> Flask:
    """Build the Flask application."""
    settings = settings or load_settings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)

    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = 1024 * 1024
    app.config['PAGESEARCH_SETTINGS'] = settings

    registry = StoreRegistry(settings.data_dir, max_open=settings.max_open_stores)
    app.extensions['pagesearch_registry'] = registry
    _registries.add(registry)

    CORS(
        app,
        origins='*',
        send_wildcard=True,
        max_age=86400,
        methods=['GET', 'POST', 'OPTIONS'],
        allow_headers=CORS_ALLOW_HEADERS,
    )

    setup_logging(app, level=settings.log_level, json_format=settings.log_json)
    setup_request_logging(app)
    setup_error_handlers(app)
    app.register_blueprint(health_bp)

    log_existing_stores(settings.data_dir)

    app.add_url_rule('/search', view_func=search, methods=['POST'])
    app.add_url_rule('/dump', view_func=dump, methods=['POST'])
    return app


def search():
    """
    Search a remote page list.

    Body: {"search": "<phrase>", "url": "<page list URL>", "metadata": false}

    Always answers 200 with {"success", "message", "pages"}; failures are
    reported through ``success`` and ``message``.
    """
    started = time.time()
    registry = current_app.extensions['pagesearch_registry']
    settings = current_app.config['PAGESEARCH_SETTINGS']

    pages: List[Record] = []
    error = None
    try:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            raise ValidationError('request body must be a JSON object')
        url = payload.get('url')
        phrase = payload.get('search')
        if not isinstance(url, str) or not url:
            raise ValidationError('missing "url"', field='url')
        if not isinstance(phrase, str):
            raise ValidationError('missing "search"', field='search')

        pages = search_pages(
            registry, settings, url, phrase,
            include_metadata=bool(payload.get('metadata', False))
        )
    except (PageSearchError, UpstreamFetchError, StoreError) as e:
        logger.warning(f'search failed: {e}', extra={'error_type': type(e).__name__})
        error = e
        pages = []

    if error is None:
        message = f'found {len(pages)} pages in {time.time() - started:.3f}s'
    else:
        message = str(error)

    return jsonify({
        'success': error is None,
        'message': message,
        'pages': [page.to_dict() for page in pages]
    })


def dump():
    """
    Write a compressed SQL dump of the store behind a URL.

    Body: {"url": "<page list URL>"}
    """
    registry = current_app.extensions['pagesearch_registry']

    payload = request.get_json(silent=True) or {}
    url = payload.get('url') if isinstance(payload, dict) else None
    if not isinstance(url, str) or not url:
        raise ValidationError('missing "url"', field='url')

    path = registry.path_for(url)
    with registry.ingest_lock(path):
        store = registry.get(path)
        if store is None:
            raise NotFoundError(f'no store for {url}', url=url)
        try:
            dump_path = Path(store.dump_sql())
        except StoreClosedError:
            # Evicted after get; reopen from disk
            dump_path = Path(registry.get(path).dump_sql())
    audit.log_dump(path.name, str(dump_path))

    return jsonify({
        'success': True,
        'message': f'dumped {path.name}',
        'dump': dump_path.name
    })


if __name__ == '__main__':
    settings = load_settings()
    app = create_app(settings)
    logger.info(f'Running at http://{settings.host}:{settings.port}')
    app.run(host=settings.host, port=settings.port, threaded=True)
