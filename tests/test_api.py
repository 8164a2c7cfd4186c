"""
Tests for the PageSearch HTTP API.

The downloader is patched; everything else (registry, stores, handlers)
runs for real against a temporary data directory.
"""

import json
import re
import sys
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))
sys.path.insert(0, str(ROOT / 'pagesearch-ui'))

from core.config import Settings
from core.downloader import FetchResult, FetchStatus, UpstreamFetchError
from database import Record, TextStore, TransactionError, store_path_for_url
from tests.fixtures.sample_data import BASIC_PAGES

import app as app_module

URL = 'https://example.com/pages.json'
MAX_BYTES = 1000


def fake_download(payload, status=FetchStatus.UNDER_CAP, delay=0):
    """Build a download_file replacement that writes ``payload``."""
    data = payload if isinstance(payload, bytes) else json.dumps(payload).encode('utf-8')

    def _download(target_path, url, max_size, timeout=None):
        if delay:
            time.sleep(delay)
        Path(target_path).write_bytes(data)
        return FetchResult(status=status, bytes_written=len(data))

    return _download


@pytest.fixture
def settings(tmp_path):
    return Settings(data_dir=tmp_path / 'data', max_download_bytes=MAX_BYTES, log_level='WARNING')


@pytest.fixture
def application(settings):
    application = app_module.create_app(settings)
    application.config['TESTING'] = True
    yield application
    application.extensions['pagesearch_registry'].close_all()


@pytest.fixture
def client(application):
    return application.test_client()


@pytest.fixture
def download():
    with patch('app.download_file', side_effect=fake_download(BASIC_PAGES)) as mock:
        yield mock


def search(client, phrase='some thing', url=URL, **extra):
    body = {'search': phrase, 'url': url}
    body.update(extra)
    response = client.post('/search', json=body)
    assert response.status_code == 200
    return response.get_json()


# =============================================================================
# Search
# =============================================================================

class TestSearch:
    """POST /search"""

    def test_first_search_ingests_source(self, client, download, settings):
        """Test that the first search downloads, indexes and answers."""
        result = search(client)

        assert result['success'] is True
        assert re.match(r'^found 1 pages in \d+\.\d{3}s$', result['message'])
        assert [p['id'] for p in result['pages']] == ['test4']
        assert '<b>some</b>' in result['pages'][0]['data']
        assert result['pages'][0]['meta'] == {}
        assert store_path_for_url(settings.data_dir, URL).exists()
        download.assert_called_once()

    def test_second_search_reuses_store(self, client, download):
        """Test that a later search reuses the open store."""
        search(client)
        result = search(client, phrase='another')

        assert result['success'] is True
        assert len(result['pages']) == 4
        download.assert_called_once()

    def test_existing_store_used_without_download(self, client, download, settings):
        """Test that a store already on disk is searched without fetching."""
        path = store_path_for_url(settings.data_dir, URL)
        with TextStore(path) as store:
            store.save(Record('disk', body='already indexed'))

        result = search(client, phrase='indexed')

        assert [p['id'] for p in result['pages']] == ['disk']
        download.assert_not_called()

    def test_metadata_opt_in(self, client, download):
        """Test metadata is returned only when requested."""
        result = search(client, metadata=True)

        assert result['pages'][0]['meta'] == {'url': 'hi'}

    def test_no_matches(self, client, download):
        """Test an empty result is still a success."""
        result = search(client, phrase='zebra')

        assert result['success'] is True
        assert result['pages'] == []
        assert result['message'].startswith('found 0 pages')

    def test_concurrent_first_requests_ingest_once(self, application):
        """Test concurrent first requests share one ingestion."""
        results = []

        def worker():
            results.append(search(application.test_client()))

        with patch('app.download_file', side_effect=fake_download(BASIC_PAGES, delay=0.05)) as mock:
            threads = [threading.Thread(target=worker) for _ in range(5)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        assert mock.call_count == 1
        assert len(results) == 5
        assert all(r['success'] for r in results)


class TestSearchFailures:
    """Failures are reported in the body with status 200."""

    def test_truncated_source(self, client, settings):
        """Test an oversized source is rejected without a store."""
        with patch('app.download_file', side_effect=fake_download(BASIC_PAGES, FetchStatus.TRUNCATED)):
            result = search(client)

        assert result['success'] is False
        assert result['message'] == f'file must be less than {MAX_BYTES} bytes'
        assert result['pages'] == []
        assert not store_path_for_url(settings.data_dir, URL).exists()

    @pytest.mark.parametrize('payload', [
        b'not json',
        {'id': 'not-a-list'},
        [{'data': 'page without id'}],
    ])
    def test_malformed_source(self, client, settings, payload):
        """Test malformed page lists are reported as a format error."""
        with patch('app.download_file', side_effect=fake_download(payload)):
            result = search(client)

        assert result['success'] is False
        assert result['message'] == 'incorrect format for pages'
        assert not store_path_for_url(settings.data_dir, URL).exists()

    def test_deeply_nested_source(self, client, settings):
        """Nesting too deep for the JSON decoder is a format error, not a 500."""
        with patch('app.download_file', side_effect=fake_download(b'[' * 200000)):
            response = client.post('/search', json={'search': 'thing', 'url': URL})

        assert response.status_code == 200
        result = response.get_json()
        assert result['success'] is False
        assert result['message'] == 'incorrect format for pages'
        assert not store_path_for_url(settings.data_dir, URL).exists()

    def test_upstream_error(self, client):
        """Test upstream fetch errors are reported in the body."""
        error = UpstreamFetchError('Download failed: 404 Not Found', url=URL)
        with patch('app.download_file', side_effect=error):
            result = search(client)

        assert result['success'] is False
        assert '404 Not Found' in result['message']

    def test_failed_ingest_removes_store(self, client, download, settings):
        """Test a failed ingestion removes the store and can be retried."""
        error = TransactionError('exec save_many: boom', operation='save_many', phase='exec')
        with patch.object(TextStore, 'save_many', side_effect=error):
            result = search(client)

        assert result['success'] is False
        assert 'boom' in result['message']
        assert not store_path_for_url(settings.data_dir, URL).exists()
        assert client.application.extensions['pagesearch_registry']._ingest_locks == {}

        # The next request starts over
        result = search(client)
        assert result['success'] is True
        assert download.call_count == 2

    def test_missing_url(self, client, download):
        """Test a request without a url is refused."""
        result = search(client, url='')

        assert result['success'] is False
        assert result['message'] == 'missing "url"'
        download.assert_not_called()

    def test_missing_search(self, client, download):
        """Test a request without a search phrase is refused."""
        response = client.post('/search', json={'url': URL})

        assert response.status_code == 200
        assert response.get_json()['success'] is False

    def test_body_not_json(self, client, download):
        """Test a non-JSON body is refused."""
        response = client.post('/search', data='plain text', content_type='text/plain')

        assert response.status_code == 200
        assert response.get_json()['success'] is False


# =============================================================================
# Store registry
# =============================================================================

OTHER_URL = 'https://example.com/other.json'


class TestStoreRegistry:
    """Open store cap, ingest lock cleanup and shutdown hook."""

    @pytest.fixture
    def small_settings(self, settings):
        settings.max_open_stores = 1
        return settings

    @pytest.fixture
    def registry(self, tmp_path):
        registry = app_module.StoreRegistry(tmp_path, max_open=2)
        yield registry
        registry.close_all()

    def test_invalid_cap_rejected(self, tmp_path):
        """Test that a cap below one is refused."""
        with pytest.raises(ValueError):
            app_module.StoreRegistry(tmp_path, max_open=0)

    def test_oldest_store_closed_beyond_cap(self, registry, tmp_path):
        """Test that admitting past the cap closes the least recently used store."""
        stores = {}
        for name in ('a', 'b', 'c'):
            path = tmp_path / f'{name}.pagename.db'
            stores[name] = TextStore(path)
            registry.register(path, stores[name])

        assert len(registry) == 2
        assert stores['a'].closed
        assert not stores['b'].closed
        assert not stores['c'].closed
        assert registry.lookup(tmp_path / 'a.pagename.db') is None

    def test_lookup_refreshes_recency(self, registry, tmp_path):
        """Test that a looked-up store outlives one admitted after it."""
        paths = [tmp_path / f'{name}.pagename.db' for name in ('a', 'b', 'c')]
        first, second = TextStore(paths[0]), TextStore(paths[1])
        registry.register(paths[0], first)
        registry.register(paths[1], second)

        registry.lookup(paths[0])
        registry.register(paths[2], TextStore(paths[2]))

        assert not first.closed
        assert second.closed

    def test_evicted_store_reopened_from_disk(self, small_settings):
        """Test that a source pushed out of the cap is searched again without a download."""
        application = app_module.create_app(small_settings)
        client = application.test_client()
        registry = application.extensions['pagesearch_registry']
        try:
            with patch('app.download_file', side_effect=fake_download(BASIC_PAGES)) as mock:
                search(client)
                search(client, url=OTHER_URL)
                assert len(registry) == 1

                result = search(client)
        finally:
            registry.close_all()

        assert result['success'] is True
        assert [p['id'] for p in result['pages']] == ['test4']
        assert mock.call_count == 2

    def test_closed_store_reopened(self, client, download):
        """Test that a store closed under the registry is reopened on the next search."""
        search(client)
        registry = client.application.extensions['pagesearch_registry']
        registry.lookup(registry.path_for(URL)).close()

        result = search(client)

        assert result['success'] is True
        assert len(result['pages']) == 1
        download.assert_called_once()

    def test_store_closed_between_lookup_and_find(self, client, download):
        """Test that a search retries once when its store is closed mid-request."""
        search(client)
        registry = client.application.extensions['pagesearch_registry']
        stale = registry.lookup(registry.path_for(URL))
        stale.close()

        with patch.object(registry, 'lookup', side_effect=[stale, None]):
            result = search(client)

        assert result['success'] is True
        assert len(result['pages']) == 1
        download.assert_called_once()

    def test_ingest_locks_dropped_after_use(self, client, download):
        """Test that no ingest lock entry outlives its requests."""
        registry = client.application.extensions['pagesearch_registry']

        search(client)
        search(client, url=OTHER_URL)
        client.post('/dump', json={'url': URL})

        assert registry._ingest_locks == {}

    def test_ingest_lock_held_while_waiting(self, registry, tmp_path):
        """Test that the lock entry survives while another request waits on it."""
        path = tmp_path / 'a.pagename.db'
        entered = threading.Event()

        def waiter():
            with registry.ingest_lock(path):
                entered.set()

        with registry.ingest_lock(path):
            thread = threading.Thread(target=waiter)
            thread.start()
            time.sleep(0.05)
            assert not entered.is_set()
            assert registry._ingest_locks[path][1] == 2

        thread.join()
        assert entered.is_set()
        assert registry._ingest_locks == {}

    def test_shutdown_hook_registered_once(self, settings):
        """Test that building an app adds its registry without a new atexit hook."""
        with patch('app.atexit.register') as register:
            application = app_module.create_app(settings)

        registry = application.extensions['pagesearch_registry']
        try:
            register.assert_not_called()
            assert registry in app_module._registries
        finally:
            registry.close_all()


# =============================================================================
# Dump
# =============================================================================

class TestDump:
    """POST /dump"""

    def test_dump_existing_store(self, client, download, settings):
        """Test dumping a store that exists."""
        search(client)

        response = client.post('/dump', json={'url': URL})

        assert response.status_code == 200
        data = response.get_json()
        assert data['success'] is True
        assert data['dump'].endswith('.pagename.db.sql.gz')
        assert (settings.data_dir / data['dump']).exists()

    def test_dump_unknown_source(self, client):
        """Test dumping an unknown source returns 404."""
        response = client.post('/dump', json={'url': 'https://example.com/unknown.json'})

        assert response.status_code == 404
        assert response.get_json()['success'] is False

    def test_dump_missing_url(self, client):
        """Test dumping without a url returns 400."""
        response = client.post('/dump', json={})

        assert response.status_code == 400
        assert response.get_json()['error'] == 'validation_error'


# =============================================================================
# Cross-cutting
# =============================================================================

class TestHttp:
    """CORS, request ids, health and error responses."""

    def test_cors_on_response(self, client, download):
        """Test CORS header on a normal response."""
        response = client.post(
            '/search',
            json={'search': 'thing', 'url': URL},
            headers={'Origin': 'https://other.example'}
        )

        assert response.headers['Access-Control-Allow-Origin'] == '*'

    def test_cors_preflight(self, client):
        """Test CORS preflight response."""
        response = client.options('/search', headers={
            'Origin': 'https://other.example',
            'Access-Control-Request-Method': 'POST',
        })

        assert response.headers['Access-Control-Allow-Origin'] == '*'
        assert response.headers['Access-Control-Max-Age'] == '86400'

    def test_request_id_echoed(self, client):
        """Test the request id header is echoed."""
        response = client.get('/health', headers={'X-Request-ID': 'abc-123'})

        assert response.headers['X-Request-ID'] == 'abc-123'

    def test_health(self, client):
        """Test health endpoint."""
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'ok'

    def test_ready(self, client):
        """Test readiness checks."""
        response = client.get('/ready')

        assert response.status_code == 200
        data = response.get_json()
        assert data['status'] == 'ready'
        assert data['checks'] == {'data_dir': 'ok', 'fts': 'ok'}

    def test_unknown_route(self, client):
        """Test JSON 404 for unknown routes."""
        response = client.get('/nope')

        assert response.status_code == 404
        assert response.get_json()['error'] == 'not_found'

    def test_wrong_method(self, client):
        """Test JSON 405 for the wrong method."""
        response = client.get('/search')

        assert response.status_code == 405
        assert response.get_json()['error'] == 'method_not_allowed'
