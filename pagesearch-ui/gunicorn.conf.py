"""
PageSearch Gunicorn Configuration

WSGI server configuration for the search service.

Stores are SQLite files owned by one TextStore per process, and opening the
same file from several processes is unsupported. The server therefore runs
a single worker process and scales with threads.

Usage:
    gunicorn -c gunicorn.conf.py "app:create_app()"
"""

import logging
import os

# =============================================================================
# Server Socket
# =============================================================================

bind = os.getenv('GUNICORN_BIND', '0.0.0.0:8185')

# Number of pending connections
backlog = 2048

# =============================================================================
# Workers
# =============================================================================

# One process owns every store file
workers = 1

worker_class = 'gthread'

threads = int(os.getenv('GUNICORN_THREADS', 8))

# Restarting would drop the open stores; off unless asked for
max_requests = int(os.getenv('GUNICORN_MAX_REQUESTS', 0))

# =============================================================================
# Timeouts
# =============================================================================

# First request for a source downloads and indexes it
timeout = int(os.getenv('GUNICORN_TIMEOUT', 120))

graceful_timeout = int(os.getenv('GUNICORN_GRACEFUL_TIMEOUT', 30))

keepalive = int(os.getenv('GUNICORN_KEEPALIVE', 5))

# =============================================================================
# Process Naming
# =============================================================================

proc_name = 'pagesearch'

# =============================================================================
# Logging
# =============================================================================

# Request logging is done by the app
accesslog = os.getenv('GUNICORN_ACCESS_LOG', None)

errorlog = os.getenv('GUNICORN_ERROR_LOG', '-')  # '-' = stderr

loglevel = os.getenv('GUNICORN_LOG_LEVEL', 'info')

capture_output = True

# =============================================================================
# Security
# =============================================================================

limit_request_line = 4094

limit_request_fields = 100

limit_request_field_size = 8190

# =============================================================================
# Server Mechanics
# =============================================================================

daemon = False

pidfile = os.getenv('GUNICORN_PID_FILE', None)

# =============================================================================
# Hooks
# =============================================================================

logger = logging.getLogger('pagesearch.gunicorn')


def on_starting(server):
    """Called just before the master process is initialized."""
    logger.info(f"Starting Gunicorn with {workers} worker, {threads} threads")


def worker_int(worker):
    """Called when a worker receives SIGINT or SIGQUIT."""
    logger.info(f"Worker {worker.pid} interrupted")


def worker_abort(worker):
    """Called when a worker receives SIGABRT."""
    logger.error(f"Worker {worker.pid} aborted")


def worker_exit(server, worker):
    """Called just after a worker has been exited."""
    logger.info(f"Worker {worker.pid} exited")


def on_exit(server):
    """Called just before exiting Gunicorn."""
    logger.info("Gunicorn shutting down")
