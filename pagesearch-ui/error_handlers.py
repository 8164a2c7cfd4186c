"""
PageSearch Error Handling

Provides:
- API exception classes
- Flask error handlers returning JSON

Usage:
    from error_handlers import setup_error_handlers, ValidationError

    # In app.py
    setup_error_handlers(app)

    # In routes
    if not url:
        raise ValidationError('Missing url', field='url')
"""

from flask import jsonify, request, current_app
from werkzeug.exceptions import HTTPException
import traceback
import logging

from database.errors import StoreError

logger = logging.getLogger('pagesearch.errors')


# =============================================================================
# Custom Exceptions
# =============================================================================

class PageSearchError(Exception):
    """Base exception for API errors."""

    status_code = 500
    error_type = 'internal_error'
    message = 'An unexpected error occurred'

    def __init__(self, message=None, **kwargs):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = kwargs

    def to_dict(self):
        return {
            'success': False,
            'error': self.error_type,
            'message': self.message,
            'details': self.details
        }


class ValidationError(PageSearchError):
    """Invalid input data."""
    status_code = 400
    error_type = 'validation_error'
    message = 'Invalid input'


class NotFoundError(PageSearchError):
    """Resource not found."""
    status_code = 404
    error_type = 'not_found'
    message = 'Resource not found'


# =============================================================================
# Error Handlers
# =============================================================================

def setup_error_handlers(app):
    """Register error handlers with Flask app."""

    @app.errorhandler(PageSearchError)
    def handle_pagesearch_error(error):
        logger.warning(
            f'{error.error_type}: {error.message}',
            extra={
                'error_type': error.error_type,
                'details': error.details,
                'path': request.path
            }
        )

        response = jsonify(error.to_dict())
        response.status_code = error.status_code
        return response

    @app.errorhandler(StoreError)
    def handle_store_error(error):
        logger.error(
            f'{type(error).__name__}: {error.message}',
            extra={'error_type': type(error).__name__, 'path': request.path}
        )
        return jsonify({
            'success': False,
            'error': 'store_error',
            'message': error.message
        }), 500

    @app.errorhandler(400)
    def handle_bad_request(error):
        return jsonify({
            'success': False,
            'error': 'bad_request',
            'message': str(error.description) if hasattr(error, 'description') else 'Bad request'
        }), 400

    @app.errorhandler(404)
    def handle_not_found(error):
        return jsonify({
            'success': False,
            'error': 'not_found',
            'message': f'Resource not found: {request.path}'
        }), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        return jsonify({
            'success': False,
            'error': 'method_not_allowed',
            'message': f'Method {request.method} not allowed for {request.path}'
        }), 405

    @app.errorhandler(413)
    def handle_request_too_large(error):
        return jsonify({
            'success': False,
            'error': 'payload_too_large',
            'message': 'Request payload is too large'
        }), 413

    @app.errorhandler(500)
    def handle_internal_error(error):
        logger.exception(
            f'Internal server error: {str(error)}',
            extra={'path': request.path}
        )

        # Don't expose internal error details in production
        message = str(error) if current_app.debug else 'An internal error occurred'
        return jsonify({
            'success': False,
            'error': 'internal_error',
            'message': message
        }), 500

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        # Codes without a dedicated handler keep their own status
        if isinstance(error, HTTPException):
            return jsonify({
                'success': False,
                'error': error.name.lower().replace(' ', '_'),
                'message': error.description
            }), error.code

        logger.exception(
            f'Unexpected error: {type(error).__name__}: {str(error)}',
            extra={
                'error_type': type(error).__name__,
                'path': request.path
            }
        )

        if current_app.debug:
            return jsonify({
                'success': False,
                'error': 'unexpected_error',
                'message': str(error),
                'type': type(error).__name__,
                'traceback': traceback.format_exc()
            }), 500

        return jsonify({
            'success': False,
            'error': 'unexpected_error',
            'message': 'An unexpected error occurred'
        }), 500
