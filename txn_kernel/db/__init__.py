"""Database layer - engine construction, session scope, base classes, column types."""

from txn_kernel.db.base import Base, DecimalString, TimestampMixin, UTCDateTime, UUIDString
from txn_kernel.db.engine import (
    build_engine,
    create_tables,
    drop_tables,
    make_session_factory,
    session_scope,
)

__all__ = [
    "build_engine",
    "create_tables",
    "drop_tables",
    "make_session_factory",
    "session_scope",
    "Base",
    "DecimalString",
    "TimestampMixin",
    "UTCDateTime",
    "UUIDString",
]
