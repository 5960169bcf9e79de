"""
Database compatibility layer.

JSON columns that behave the same on SQLite (dev/tests) and PostgreSQL (prod):
- JSONDict: JSONB/JSON object column, NULL reads back as {}
- JSONList: JSONB/JSON array column, NULL reads back as []

Rows imported from other systems may carry NULL in these columns; the
domain models always expect a container.
"""

from sqlalchemy import JSON, TypeDecorator
from sqlalchemy.dialects import postgresql


class _JSONContainer(TypeDecorator):
    impl = JSON
    cache_ok = True
    empty: type = dict

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(postgresql.JSONB)
        return dialect.type_descriptor(JSON)

    def process_bind_param(self, value, dialect):
        return self.empty() if value is None else value

    def process_result_value(self, value, dialect):
        return self.empty() if value is None else value


class JSONDict(_JSONContainer):
    empty = dict


class JSONList(_JSONContainer):
    empty = list
