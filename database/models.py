"""
Data model for stored pages.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class ConflictPolicy(Enum):
    """What a write does with an id that is already stored."""
    IGNORE = 'ignore'
    REPLACE = 'replace'
    ERROR = 'error'


@dataclass
class Record:
    """A single searchable page: identifier, opaque metadata and body text."""
    id: str
    metadata: Dict[str, str] = field(default_factory=dict)
    body: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'meta': self.metadata,
            'data': self.body,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Record':
        """
        Build a record from its wire form ``{"id", "meta", "data"}``.

        ``metadata`` is accepted in place of ``meta``. Metadata values are
        coerced to strings.

        Raises:
            ValueError: If the payload is not a page object
        """
        if not isinstance(data, dict):
            raise ValueError(f'page must be an object, got {type(data).__name__}')

        record_id = data.get('id')
        if not isinstance(record_id, str) or not record_id.strip():
            raise ValueError('page is missing a string "id"')

        body = data.get('data', '')
        if body is None:
            body = ''
        if not isinstance(body, str):
            raise ValueError(f'page {record_id!r} has non-string "data"')

        meta = data.get('meta', data.get('metadata')) or {}
        if not isinstance(meta, dict):
            raise ValueError(f'page {record_id!r} has non-object "meta"')

        return cls(
            id=record_id,
            metadata={str(k): str(v) for k, v in meta.items()},
            body=body,
        )
