"""ORM models. Importing this package registers every table on Base.metadata."""

from count_kernel.models.session_record import ActiveSessionRecord

__all__ = ["ActiveSessionRecord"]
