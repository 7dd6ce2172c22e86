"""Pure ingestion domain: row types and the transaction transformer."""

from txn_ingestion.domain.transformer import TransactionTransformer
from txn_ingestion.domain.types import (
    DecodedRow,
    FieldError,
    RawRecord,
    RowError,
    Transaction,
    TransformResult,
)

__all__ = [
    "DecodedRow",
    "FieldError",
    "RawRecord",
    "RowError",
    "Transaction",
    "TransactionTransformer",
    "TransformResult",
]
