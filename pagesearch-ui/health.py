"""
PageSearch Health Check System

Health and readiness endpoints with:
- Data directory checks
- SQLite full-text engine availability
- Resource usage monitoring

Endpoints:
- /health - liveness probe (is the process alive?)
- /ready - readiness probe (can it serve traffic?)
- /health/detailed - Full diagnostic report
- /metrics - Key numbers for monitoring
"""

from flask import Blueprint, current_app, jsonify
import os
import sqlite3
import sys
import time
import psutil

from database.store import STORE_SUFFIX

health_bp = Blueprint('health', __name__)

# Track startup time
STARTUP_TIME = time.time()


def check_data_dir():
    """Check that the store directory exists and is writable."""
    settings = current_app.config['PAGESEARCH_SETTINGS']
    data_dir = settings.data_dir
    if not data_dir.is_dir():
        return {'status': 'error', 'error': f'{data_dir} is not a directory'}
    if not os.access(data_dir, os.W_OK):
        return {'status': 'error', 'error': f'{data_dir} is not writable'}

    stores = sum(1 for _ in data_dir.glob(f'*{STORE_SUFFIX}'))
    return {'status': 'ok', 'path': str(data_dir), 'stores': stores}


def check_fts():
    """Check that the linked SQLite has the FTS4 module."""
    conn = sqlite3.connect(':memory:')
    try:
        conn.execute('CREATE VIRTUAL TABLE probe USING fts4 (data)')
        return {'status': 'ok', 'sqlite_version': sqlite3.sqlite_version}
    except sqlite3.Error as e:
        return {'status': 'error', 'error': str(e), 'sqlite_version': sqlite3.sqlite_version}
    finally:
        conn.close()


def check_dependencies():
    """Check if required dependencies are available."""
    deps = {}
    for module in ['flask', 'flask_cors', 'requests', 'dotenv']:
        try:
            __import__(module)
            deps[module] = {'status': 'ok'}
        except ImportError:
            deps[module] = {'status': 'missing'}
    return deps


def get_system_resources():
    """Get current system resource usage."""
    process = psutil.Process()

    return {
        'memory': {
            'rss_mb': round(process.memory_info().rss / 1024 / 1024, 2),
            'percent': round(process.memory_percent(), 2)
        },
        'cpu': {
            'percent': round(process.cpu_percent(interval=0.1), 2),
            'num_threads': process.num_threads()
        },
        'system': {
            'memory_available_mb': round(psutil.virtual_memory().available / 1024 / 1024, 2),
            'disk_free_gb': round(psutil.disk_usage('/').free / 1024 / 1024 / 1024, 2)
        }
    }


# =============================================================================
# Health Endpoints
# =============================================================================

@health_bp.route('/health')
def liveness():
    """Liveness probe: 200 while the process can respond."""
    return jsonify({
        'status': 'ok',
        'uptime_seconds': int(time.time() - STARTUP_TIME)
    })


@health_bp.route('/ready')
def readiness():
    """
    Readiness probe.

    Ready when the data directory is writable and SQLite can build
    full-text tables.
    """
    data_check = check_data_dir()
    fts_check = check_fts()

    is_ready = data_check['status'] == 'ok' and fts_check['status'] == 'ok'

    response = {
        'status': 'ready' if is_ready else 'not_ready',
        'checks': {
            'data_dir': data_check['status'],
            'fts': fts_check['status']
        }
    }
    return jsonify(response), 200 if is_ready else 503


@health_bp.route('/health/detailed')
def detailed_health():
    """Full status of all components, for debugging."""
    registry = current_app.extensions['pagesearch_registry']
    return jsonify({
        'status': 'ok',
        'uptime_seconds': int(time.time() - STARTUP_TIME),
        'python_version': sys.version,
        'open_stores': len(registry),
        'checks': {
            'data_dir': check_data_dir(),
            'fts': check_fts(),
            'dependencies': check_dependencies()
        },
        'resources': get_system_resources()
    })


@health_bp.route('/metrics')
def metrics():
    """Key metrics in a flat form for monitoring systems."""
    registry = current_app.extensions['pagesearch_registry']
    data_check = check_data_dir()
    resources = get_system_resources()

    return jsonify({
        'pagesearch_uptime_seconds': int(time.time() - STARTUP_TIME),
        'pagesearch_stores_total': data_check.get('stores', 0),
        'pagesearch_stores_open': len(registry),
        'process_memory_mb': resources['memory']['rss_mb'],
        'process_cpu_percent': resources['cpu']['percent'],
        'system_memory_available_mb': resources['system']['memory_available_mb']
    })
