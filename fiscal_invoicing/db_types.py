"""Database-agnostic type definitions for SQLAlchemy models.

Models run on PostgreSQL in production and on SQLite in tests, so the
Postgres-only JSONB and UUID dialect types are not used directly.
"""
from sqlalchemy import JSON, Uuid

# JSONB is PostgreSQL-specific, JSON works with both SQLite and PostgreSQL
JSONType = JSON

# Native UUID on PostgreSQL, CHAR(32) elsewhere
UUIDType = Uuid(as_uuid=True)
