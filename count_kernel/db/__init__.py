"""Database layer - engine, base classes, and transactional scope."""

from count_kernel.db.base import Base, UUIDString
from count_kernel.db.engine import build_engine, create_tables, session_scope

__all__ = [
    "Base",
    "UUIDString",
    "build_engine",
    "create_tables",
    "session_scope",
]
