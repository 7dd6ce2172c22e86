"""
TransactionTransformer: pure mapping from a decoded raw record to a
canonical ``Transaction``.

Contract:
    ``transform(job_id, record)`` returns a ``TransformResult`` holding either
    a Transaction or a single RowError listing every offending field.  Pure,
    deterministic, ZERO I/O; the same record always yields the same result.

Column resolution:
    Source headers are matched case-insensitively against the configured
    aliases (``TransformDef.column_aliases``).  For each canonical column the
    first alias present in the header wins.  The amount comes from an
    ``amount`` column, or from ``credit - debit`` when the file splits them.
"""

from __future__ import annotations

import re
from decimal import Decimal
from functools import lru_cache
from typing import Any, Iterable
from uuid import UUID

from txn_config.schema import TransformDef
from txn_ingestion.domain.types import (
    FieldError,
    RawRecord,
    RowError,
    Transaction,
    TransformResult,
)
from txn_ingestion.domain.validators import (
    is_blank,
    normalize_category,
    normalize_currency,
    normalize_description,
    parse_amount,
    parse_date,
)

_WHITESPACE = re.compile(r"\s+")

# distinct header layouts remembered per transformer
COLUMN_CACHE_SIZE = 64


def normalize_header(header: Any) -> str:
    """Normalise a header cell for alias matching."""
    if header is None:
        return ""
    return _WHITESPACE.sub(" ", str(header)).strip().lower()


class TransactionTransformer:
    """Maps raw records to Transactions using a ``TransformDef``."""

    def __init__(self, rules: TransformDef | None = None) -> None:
        self._rules = rules or TransformDef()
        self._resolve_cached = lru_cache(maxsize=COLUMN_CACHE_SIZE)(self._resolve)

    @property
    def rules(self) -> TransformDef:
        return self._rules

    def resolve_columns(self, headers: Iterable[str]) -> dict[str, str]:
        """Return canonical column -> source header for the given headers."""
        return dict(self._resolve_cached(tuple(headers)))

    def _resolve(self, key: tuple[str, ...]) -> dict[str, str]:
        by_normalized: dict[str, str] = {}
        for header in key:
            by_normalized.setdefault(normalize_header(header), header)

        resolved: dict[str, str] = {}
        claimed: set[str] = set()
        for canonical, aliases in self._rules.column_aliases.items():
            for alias in aliases:
                header = by_normalized.get(alias)
                if header is not None and header not in claimed:
                    resolved[canonical] = header
                    claimed.add(header)
                    break

        return resolved

    def transform(self, job_id: UUID, record: RawRecord) -> TransformResult:
        """Transform one record; all field errors are coalesced into one RowError."""
        columns = self._resolve_cached(tuple(record.values))
        rules = self._rules
        errors: list[FieldError] = []

        def cell(canonical: str) -> Any:
            header = columns.get(canonical)
            return record.values.get(header) if header is not None else None

        date_result = parse_date(cell("date"), rules.date_formats)
        if not date_result.success:
            errors.append(date_result.error)

        amount, amount_errors = self._resolve_amount(columns, cell)
        errors.extend(amount_errors)

        description_result = normalize_description(
            cell("description"), rules.description_max_length,
        )
        if not description_result.success:
            errors.append(description_result.error)

        category_result = normalize_category(
            cell("category"), rules.default_category, rules.allowed_categories,
        )
        if not category_result.success:
            errors.append(category_result.error)

        currency_result = normalize_currency(cell("currency"), rules.default_currency)
        if not currency_result.success:
            errors.append(currency_result.error)

        if errors:
            return TransformResult(
                error=RowError(row_number=record.row_number, reasons=tuple(errors)),
            )

        return TransformResult(
            transaction=Transaction(
                import_job_id=job_id,
                row_number=record.row_number,
                transaction_date=date_result.value,
                amount=amount,
                description=description_result.value,
                category=category_result.value,
                currency=currency_result.value,
            ),
        )

    @staticmethod
    def _resolve_amount(columns: dict[str, str], cell) -> tuple[Decimal | None, list[FieldError]]:
        amount_cell = cell("amount")
        has_split = "debit" in columns or "credit" in columns

        if "amount" in columns and not (is_blank(amount_cell) and has_split):
            result = parse_amount(amount_cell, "amount")
            if not result.success:
                return None, [result.error]
            return result.value, []

        if not has_split:
            return None, [FieldError(
                code="MISSING_VALUE", message="value is required", field="amount",
            )]

        debit_cell, credit_cell = cell("debit"), cell("credit")
        if is_blank(debit_cell) and is_blank(credit_cell):
            return None, [FieldError(
                code="MISSING_VALUE",
                message="debit or credit is required",
                field="amount",
            )]

        errors: list[FieldError] = []
        total = Decimal("0.00")
        for name, value, sign in (("debit", debit_cell, -1), ("credit", credit_cell, 1)):
            if is_blank(value):
                continue
            result = parse_amount(value, name)
            if not result.success:
                errors.append(result.error)
            else:
                total += sign * abs(result.value)
        if errors:
            return None, errors
        return total, []
