"""
Declarative base and portable column types for pipeline tables.

Architecture: txn_kernel/db.  Imported by txn_batch.models; imports nothing
from the pipeline packages.

Invariants enforced:
    - Every table has a UUID primary key ``id`` stored as String(36), so
      the same schema runs on SQLite and PostgreSQL.
    - Money is stored as its exact decimal text; no backend float ever
      holds an amount.
    - Datetimes are timezone-aware UTC on the way in and on the way out.
      SQLite drops the offset on storage; values read back without one are
      UTC by construction.
    - Constraint and index names follow one naming convention, so
      migrations and error messages are stable across backends.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import DateTime, MetaData, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_N_name)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class UUIDString(TypeDecorator):
    """UUID stored as its 36-character string form."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


class DecimalString(TypeDecorator):
    """Decimal stored as its canonical text, read back as Decimal.

    SQLite has no decimal storage class and keeps NUMERIC as a float,
    which rounds amounts beyond 15 significant digits.
    """

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(value))

    def process_result_value(self, value, dialect):
        return None if value is None else Decimal(value)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime normalised to UTC.

    Raises:
        ValueError: On binding a naive datetime.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    type_annotation_map: ClassVar[dict] = {
        datetime: UTCDateTime(),
        UUID: UUIDString(),
        Decimal: DecimalString(),
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TimestampMixin:
    """``created_at`` / ``updated_at`` row timestamps.

    Services set ``created_at`` from the injected Clock; the server default
    only covers rows written outside the pipeline.
    """

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now(), nullable=False,
    )
