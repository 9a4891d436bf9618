"""
Module: count_kernel.models.session_record
Responsibility: ORM persistence for the single active count session.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - store_key is unique: at most one row per store key, i.e. at most one
      active session per device/store.
    - payload holds the full session record as produced by
      ``count_kernel.domain.serialization.session_to_record``; no partial
      records are ever written.
"""

from datetime import datetime

from sqlalchemy import JSON, BigInteger, DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from count_kernel.db.base import Base


class ActiveSessionRecord(Base):
    """
    Durable slot holding the currently active session.

    Contract:
        Saving replaces the payload in place; clearing deletes the row.
        Absence of a row means "no active session".
    """

    __tablename__ = "active_count_sessions"

    __table_args__ = (
        UniqueConstraint("store_key", name="uq_active_session_store_key"),
    )

    store_key: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    session_id: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    # Aggregate version of the snapshot in payload
    session_version: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )

    payload: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )

    saved_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ActiveSessionRecord {self.store_key}: {self.session_id} v{self.session_version}>"
