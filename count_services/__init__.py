"""
Count Services - stateful orchestration over the count kernel and engines.

SessionLifecycle owns the active session and is the only writer of the
SessionStore.
"""

from count_services.lifecycle import SessionLifecycle, build_session_lifecycle
from count_services.session_store import (
    InMemorySessionStore,
    SessionStore,
    SqlSessionStore,
)

__all__ = [
    "InMemorySessionStore",
    "SessionLifecycle",
    "SessionStore",
    "SqlSessionStore",
    "build_session_lifecycle",
]
