"""
count_services.session_store -- Durable single-slot session persistence.

Responsibility:
    Loads, saves and clears the one active ``CountSession``.  The SQL store
    writes the full serialized record in its own transaction on every save,
    so after an interruption the last fully-applied snapshot is what loads.

Architecture position:
    Services -- imperative shell.  Uses count_kernel.db for transactions and
    count_kernel.domain.serialization for the record layout.

Invariants enforced:
    - At most one record per store key.
    - A save writes the complete snapshot or nothing (transaction scope).
    - Absence of a record, an unreadable database, or a malformed record
      all load as "no active session"; loading never raises.

Failure modes:
    - A write failure (SQLAlchemyError) switches the store to in-memory
      operation for the rest of the process lifetime.  The failure is
      logged once at ERROR and exposed via ``degraded`` / ``failure``;
      later writes are not retried.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from count_kernel.db.engine import build_engine, create_tables, session_scope
from count_kernel.domain.clock import Clock, SystemClock
from count_kernel.domain.serialization import session_from_record, session_to_record
from count_kernel.domain.values import CountSession
from count_kernel.exceptions import SessionRecordError
from count_kernel.logging_config import get_logger
from count_kernel.models.session_record import ActiveSessionRecord

logger = get_logger("services.session_store")


@runtime_checkable
class SessionStore(Protocol):
    """Persistence of exactly one active session."""

    @property
    def degraded(self) -> bool:
        ...

    def load(self) -> CountSession | None:
        ...

    def save(self, session: CountSession) -> None:
        ...

    def clear(self) -> None:
        ...


class InMemorySessionStore:
    """Process-local store; also what a degraded SQL store behaves like."""

    def __init__(self, session: CountSession | None = None) -> None:
        self._session = session
        self.save_count = 0

    @property
    def degraded(self) -> bool:
        return False

    def load(self) -> CountSession | None:
        return self._session

    def save(self, session: CountSession) -> None:
        self._session = session
        self.save_count += 1

    def clear(self) -> None:
        self._session = None


class SqlSessionStore:
    """
    SQLAlchemy-backed session store.

    Contract:
        One row in ``active_count_sessions`` per ``store_key`` holds the
        JSON record of the active session.

    Guarantees:
        - ``load()`` never raises.
        - ``save()`` / ``clear()`` never raise on storage faults; they
          degrade instead.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        store_key: str,
        clock: Clock | None = None,
    ) -> None:
        self._factory = session_factory
        self._store_key = store_key
        self._clock = clock or SystemClock()
        self._memory: CountSession | None = None
        self._degraded = False
        self.failure: Exception | None = None

    @classmethod
    def from_url(
        cls,
        database_url: str,
        store_key: str,
        clock: Clock | None = None,
    ) -> SqlSessionStore:
        """Build an engine for ``database_url``, create tables, return a store."""
        engine = build_engine(database_url)
        store = cls(sessionmaker(bind=engine, expire_on_commit=False), store_key, clock)
        try:
            create_tables(engine)
        except SQLAlchemyError as exc:
            store._degrade(exc, operation="create_tables")
        return store

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def store_key(self) -> str:
        return self._store_key

    def load(self) -> CountSession | None:
        if self._degraded:
            return self._memory

        try:
            with session_scope(self._factory) as db:
                row = db.execute(
                    select(ActiveSessionRecord).where(
                        ActiveSessionRecord.store_key == self._store_key
                    )
                ).scalar_one_or_none()
                payload = row.payload if row is not None else None
        except SQLAlchemyError:
            logger.error(
                "session_load_failed",
                extra={"store_key": self._store_key},
                exc_info=True,
            )
            return None

        if payload is None:
            logger.debug("session_store_empty", extra={"store_key": self._store_key})
            return None

        try:
            session = session_from_record(payload)
        except SessionRecordError:
            logger.warning(
                "session_record_discarded",
                extra={"store_key": self._store_key},
                exc_info=True,
            )
            return None

        self._memory = session
        logger.info(
            "session_loaded",
            extra={
                "store_key": self._store_key,
                "loaded_session_id": session.session_id,
                "version": session.version,
                "stage": session.stage.value,
            },
        )
        return session

    def save(self, session: CountSession) -> None:
        self._memory = session
        if self._degraded:
            logger.debug("session_save_in_memory", extra={"version": session.version})
            return

        record = session_to_record(session)
        saved_at = self._clock.now()
        try:
            with session_scope(self._factory) as db:
                row = db.execute(
                    select(ActiveSessionRecord).where(
                        ActiveSessionRecord.store_key == self._store_key
                    )
                ).scalar_one_or_none()
                if row is None:
                    db.add(
                        ActiveSessionRecord(
                            store_key=self._store_key,
                            session_id=session.session_id,
                            session_version=session.version,
                            payload=record,
                            saved_at=saved_at,
                        )
                    )
                else:
                    row.session_id = session.session_id
                    row.session_version = session.version
                    row.payload = record
                    row.saved_at = saved_at
        except SQLAlchemyError as exc:
            self._degrade(exc, operation="save")
            return

        logger.debug(
            "session_saved",
            extra={"store_key": self._store_key, "version": session.version},
        )

    def clear(self) -> None:
        self._memory = None
        if self._degraded:
            return
        try:
            with session_scope(self._factory) as db:
                db.execute(
                    delete(ActiveSessionRecord).where(
                        ActiveSessionRecord.store_key == self._store_key
                    )
                )
        except SQLAlchemyError as exc:
            self._degrade(exc, operation="clear")
            return
        logger.info("session_store_cleared", extra={"store_key": self._store_key})

    def _degrade(self, exc: Exception, operation: str) -> None:
        self._degraded = True
        self.failure = exc
        logger.error(
            "persistence_degraded",
            extra={"store_key": self._store_key, "operation": operation},
            exc_info=exc,
        )
