"""
Column types that behave the same on PostgreSQL and on the SQLite test database.

``JSONType`` backs ``VideoJob.timestamps`` and ``JobEvent.event_data``. On PostgreSQL it is
JSONB, so step markers come back as the same ints and objects the uploader sent, key order
aside, and event metadata can be filtered with JSON operators. SQLite stores the same values
as JSON text, which keeps the test database round-tripping identical Python lists.
"""

import uuid
from typing import Any

from sqlalchemy import JSON, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.types import CHAR, TypeDecorator


class GUID(TypeDecorator):
    """UUID column: native ``uuid`` on PostgreSQL, ``CHAR(36)`` elsewhere."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name == "postgresql":
            return value
        if not isinstance(value, uuid.UUID):
            value = uuid.UUID(str(value))
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class JSONType(TypeDecorator):
    """JSON column: ``JSONB`` on PostgreSQL, generic ``JSON`` elsewhere."""

    impl = Text
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect) -> Any:
        return value

    def process_result_value(self, value, dialect) -> Any:
        return value
