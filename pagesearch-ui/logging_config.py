"""
PageSearch Structured Logging Configuration

Provides:
- JSON structured logging for production
- Colorized console output for development
- Request logging middleware
- Audit records for ingestion, search and dumps

Usage:
    from logging_config import setup_logging, get_logger

    # At app startup
    setup_logging(app, level='INFO', json_format=True)

    # In modules
    logger = get_logger(__name__)
    logger.info('Message', extra={'store': name})
"""

import logging
import json
import sys
import traceback
from datetime import datetime, timezone
from functools import wraps
from flask import request, g, has_request_context
import time
import uuid

# Attributes every LogRecord carries; anything else came in through ``extra``
RESERVED_ATTRS = frozenset((
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'taskName', 'message',
))


# =============================================================================
# Custom Formatters
# =============================================================================

class JSONFormatter(logging.Formatter):
    """JSON structured log formatter for production."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in RESERVED_ATTRS and not key.startswith('_'):
                log_entry[key] = value

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': traceback.format_exception(*record.exc_info)
            }

        return json.dumps(log_entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Colorized console formatter for development."""

    COLORS = {
        'DEBUG': '\033[37m',    # White
        'INFO': '\033[36m',     # Cyan
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[31m', # Red
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        reset = self.RESET

        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')

        parts = [
            f'{timestamp}',
            f'{color}[{record.levelname}]{reset}',
            f'{record.name} {record.funcName}:{record.lineno}',
            record.getMessage()
        ]

        if getattr(record, 'request_id', None):
            parts.insert(2, f'[{record.request_id[:8]}]')

        if hasattr(record, 'duration_ms'):
            parts.append(f'({record.duration_ms}ms)')

        message = ' '.join(parts)

        if record.exc_info:
            message += '\n' + ''.join(traceback.format_exception(*record.exc_info))

        return message


# =============================================================================
# Logger Setup
# =============================================================================

def setup_logging(app, level='INFO', json_format=False):
    """
    Configure logging for the Flask application.

    Args:
        app: Flask application instance
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format instead of colored console output

    Raises:
        ValueError: If the level name is unknown
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f'Unknown log level: {level}')

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(JSONFormatter() if json_format else ColoredFormatter())
    root_logger.addHandler(console_handler)

    # Flask's logger propagates to the root handler
    app.logger.handlers = []
    app.logger.setLevel(numeric_level)

    app.logger.info('Logging configured', extra={
        'format': 'json' if json_format else 'colored',
        'level': level.upper()
    })

    return root_logger


def get_logger(name):
    """Get a logger with the given name."""
    return logging.getLogger(name)


# =============================================================================
# Request Logging Middleware
# =============================================================================

def setup_request_logging(app):
    """
    Set up request logging middleware.

    Logs request completion with remote address, method, path, status code
    and duration, and echoes the request id in ``X-Request-ID``.
    """
    logger = get_logger('pagesearch.requests')

    @app.before_request
    def before_request():
        g.request_id = request.headers.get('X-Request-ID', str(uuid.uuid4()))
        g.start_time = time.time()

    @app.after_request
    def after_request(response):
        duration_ms = int((time.time() - g.get('start_time', time.time())) * 1000)

        if response.status_code >= 500:
            log_method = logger.error
        elif response.status_code >= 400:
            log_method = logger.warning
        else:
            log_method = logger.info

        log_method(
            f'{request.remote_addr} {request.method} {request.full_path.rstrip("?")} -> {response.status_code}',
            extra={
                'request_id': g.get('request_id', 'unknown'),
                'method': request.method,
                'path': request.path,
                'status_code': response.status_code,
                'duration_ms': duration_ms,
            }
        )

        response.headers['X-Request-ID'] = g.get('request_id', 'unknown')
        return response


# =============================================================================
# Performance Logging Decorator
# =============================================================================

def log_performance(logger_name=None):
    """
    Decorator to log function performance.

    Usage:
        @log_performance('pagesearch.ingest')
        def ingest(url):
            ...
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            logger = get_logger(logger_name or func.__module__)
            request_id = g.get('request_id') if has_request_context() else None
            start_time = time.time()

            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f'{func.__name__} failed: {e}',
                    extra={
                        'function': func.__name__,
                        'duration_ms': int((time.time() - start_time) * 1000),
                        'error_type': type(e).__name__,
                        'request_id': request_id
                    }
                )
                raise

            logger.debug(
                f'{func.__name__} completed',
                extra={
                    'function': func.__name__,
                    'duration_ms': int((time.time() - start_time) * 1000),
                    'request_id': request_id
                }
            )
            return result

        return wrapper
    return decorator


# =============================================================================
# Audit Logging
# =============================================================================

class AuditLogger:
    """
    Audit logger for tracking store-changing and search operations.

    Usage:
        audit = AuditLogger()
        audit.log_ingest(url='https://example.com/pages.json', count=100)
    """

    def __init__(self):
        self.logger = get_logger('pagesearch.audit')

    def log_ingest(self, url, count, store=None, duration_seconds=None):
        """Log a source document ingestion."""
        self.logger.info(
            'Source ingested',
            extra={
                'audit_type': 'ingest',
                'url': url,
                'page_count': count,
                'store': store,
                'duration_seconds': duration_seconds
            }
        )

    def log_search(self, query, results_count, store=None):
        """Log a search operation."""
        self.logger.info(
            'Search performed',
            extra={
                'audit_type': 'search',
                'query': query[:100] if query else None,
                'results_count': results_count,
                'store': store
            }
        )

    def log_dump(self, store, dump_path):
        """Log a dump operation."""
        self.logger.info(
            'Dump written',
            extra={
                'audit_type': 'dump',
                'store': store,
                'dump_path': dump_path
            }
        )
