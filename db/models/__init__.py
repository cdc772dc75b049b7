"""
Model package exports.

Import all SQLAlchemy models here so metadata registration and Alembic
autogeneration work without extra imports.
"""

from db.models.kv_entry import KeyValueEntry

__all__ = [
    "KeyValueEntry",
]
