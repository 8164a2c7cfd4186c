"""
Store Exceptions for PageSearch

Every failure raised by the storage layer derives from StoreError and
carries a human readable message plus keyword context in ``details``.

Usage:
    from database.errors import StoreError, TransactionError

    try:
        store.save_many(records)
    except TransactionError as e:
        print(e.operation, e.phase, e)
"""


class StoreError(Exception):
    """Base exception for storage errors."""

    message = 'Store operation failed'

    def __init__(self, message=None, **kwargs):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = kwargs

    def to_dict(self):
        return {
            'error': type(self).__name__,
            'message': self.message,
            'details': {k: str(v) for k, v in self.details.items()}
        }


class ConfigError(StoreError):
    """Missing or unusable store name."""
    message = 'Store must have a name'


class SchemaError(StoreError):
    """Table creation failed."""
    message = 'Could not initialize store schema'


class TransactionError(StoreError):
    """A write transaction failed during begin, prepare, exec or commit."""
    message = 'Write transaction failed'

    def __init__(self, message=None, operation=None, phase=None, **kwargs):
        super().__init__(message, operation=operation, phase=phase, **kwargs)
        self.operation = operation
        self.phase = phase


class DuplicateRecordError(TransactionError):
    """Record id already present under the ERROR conflict policy."""
    message = 'Record already exists'


class QueryError(StoreError):
    """Full-text query failed."""
    message = 'Search query failed'


class DumpError(StoreError):
    """Dump file could not be created or written."""
    message = 'Could not write dump'


class StoreClosedError(StoreError):
    """Operation attempted on a closed store."""
    message = 'Store is closed'
