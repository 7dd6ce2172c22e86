"""
txn_ingestion.domain.types -- Pure frozen dataclasses for row ingestion.

ZERO I/O.  Row-level failures are values (``RowError``), never exceptions:
a malformed row is data, not exceptional control flow.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID


# =============================================================================
# Errors as values
# =============================================================================


@dataclass(frozen=True)
class FieldError:
    """A single reason a row was rejected, optionally tied to one field."""

    code: str  # Machine-readable, e.g. "INVALID_AMOUNT"
    message: str
    field: str | None = None


@dataclass(frozen=True)
class RowError:
    """All reasons one source row was rejected, coalesced into one error."""

    row_number: int  # 1-based data row position
    reasons: tuple[FieldError, ...]

    @property
    def reason(self) -> str:
        """Single-line human-readable summary of all reasons."""
        parts = []
        for r in self.reasons:
            parts.append(f"{r.field}: {r.message}" if r.field else r.message)
        return "; ".join(parts)

    @classmethod
    def single(cls, row_number: int, code: str, message: str, field: str | None = None) -> RowError:
        return cls(row_number=row_number, reasons=(FieldError(code=code, message=message, field=field),))


# =============================================================================
# Decoded rows
# =============================================================================


@dataclass(frozen=True)
class RawRecord:
    """One decoded source row: header -> cell value (str for CSV, native for XLSX)."""

    row_number: int
    values: dict[str, Any]


@dataclass(frozen=True)
class DecodedRow:
    """Result of decoding one raw row: exactly one of ``record`` / ``error`` is set."""

    row_number: int
    record: RawRecord | None = None
    error: RowError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def of(cls, record: RawRecord) -> DecodedRow:
        return cls(row_number=record.row_number, record=record)

    @classmethod
    def failed(cls, error: RowError) -> DecodedRow:
        return cls(row_number=error.row_number, error=error)


# =============================================================================
# Transformed output
# =============================================================================


@dataclass(frozen=True)
class Transaction:
    """Canonical, normalised transaction parsed from one source row.

    Created only by ``TransactionTransformer``; immutable once persisted.
    """

    import_job_id: UUID
    row_number: int
    transaction_date: date
    amount: Decimal  # Quantized to 0.01; negative = outflow
    description: str
    category: str
    currency: str  # ISO 4217


@dataclass(frozen=True)
class TransformResult:
    """Result of transforming one raw record."""

    transaction: Transaction | None = None
    error: RowError | None = None

    @property
    def success(self) -> bool:
        return self.error is None
