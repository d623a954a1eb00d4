"""Database layer - engine, base classes and types."""

from fiscal_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from fiscal_kernel.db.engine import (
    create_tables,
    enable_sqlite_savepoints,
    get_engine,
    get_session,
    session_scope,
)

__all__ = [
    "get_engine",
    "get_session",
    "session_scope",
    "create_tables",
    "enable_sqlite_savepoints",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
]
