"""
Field coercion and validation for transaction rows.

Each function takes one raw cell value (a string from CSV, or a native
value from XLSX) and returns a ``CoercionResult``.  Pure, ZERO I/O.
Composed by ``TransactionTransformer``, which coalesces the errors of one
row into a single ``RowError``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any, Iterable

from txn_ingestion.domain.types import FieldError

CENT = Decimal("0.01")
# 18 significant digits with two after the point
_MAX_INTEGER_DIGITS = 16
_MIN_DATE = date(1900, 1, 1)
_MAX_DATE = date(2100, 12, 31)

_CURRENCY_SYMBOLS = "$€£¥₹"
_CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")
_GROUPED_THOUSANDS = re.compile(r"^\d{1,3}(,\d{3})+$")
_DECIMAL_COMMA = re.compile(r"^\d+,\d{1,2}$")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class CoercionResult:
    """Result of coercing one cell to a typed value."""

    success: bool
    value: Any = None
    error: FieldError | None = None


def _ok(value: Any) -> CoercionResult:
    return CoercionResult(success=True, value=value)


def _fail(code: str, message: str, field: str) -> CoercionResult:
    return CoercionResult(success=False, error=FieldError(code=code, message=message, field=field))


def is_blank(value: Any) -> bool:
    """True for None and whitespace-only strings."""
    return value is None or (isinstance(value, str) and not value.strip())


# -----------------------------------------------------------------------------
# Amounts
# -----------------------------------------------------------------------------


def parse_amount(value: Any, field: str = "amount") -> CoercionResult:
    """
    Coerce a cell to a Decimal quantized to cents.

    Accepts ``1,234.56``, ``$12``, ``-5``, ``5-``, ``(12.50)`` and the decimal
    comma form ``12,50``.  Native floats are rounded half-even to cents;
    strings with more than two decimal places are rejected.
    """
    if is_blank(value):
        return _fail("MISSING_VALUE", "value is required", field)
    if isinstance(value, bool):
        return _fail("INVALID_AMOUNT", f"not a number: {value!r}", field)

    if isinstance(value, float):
        return _finish(Decimal(str(value)), value, field, round_to_cent=True)

    if isinstance(value, (int, Decimal)):
        amount = Decimal(value)
    else:
        text = str(value).strip()
        negative = False
        if text.startswith("(") and text.endswith(")"):
            negative = True
            text = text[1:-1].strip()
        if text.endswith("-"):
            negative = not negative
            text = text[:-1].strip()
        if text and text[0] in "+-":
            if text[0] == "-":
                negative = not negative
            text = text[1:].strip()
        text = text.strip(_CURRENCY_SYMBOLS).strip()
        text = text.replace(" ", "").replace("_", "")

        if "," in text:
            if "." in text or _GROUPED_THOUSANDS.match(text):
                text = text.replace(",", "")
            elif _DECIMAL_COMMA.match(text):
                text = text.replace(",", ".")
            else:
                return _fail("INVALID_AMOUNT", f"not a number: {value!r}", field)

        try:
            amount = Decimal(text)
        except InvalidOperation:
            return _fail("INVALID_AMOUNT", f"not a number: {value!r}", field)
        if negative:
            amount = -amount

    return _finish(amount, value, field, round_to_cent=False)


def _finish(amount: Decimal, raw: Any, field: str, round_to_cent: bool) -> CoercionResult:
    if not amount.is_finite():
        return _fail("INVALID_AMOUNT", f"not a finite number: {raw!r}", field)
    if amount.adjusted() >= _MAX_INTEGER_DIGITS:
        return _fail(
            "AMOUNT_PRECISION_EXCEEDED",
            f"exceeds {_MAX_INTEGER_DIGITS} integer digits",
            field,
        )
    if not round_to_cent and amount != amount.quantize(CENT):
        return _fail("AMOUNT_SCALE_EXCEEDED", f"more than 2 decimal places: {raw!r}", field)
    return _ok(amount.quantize(CENT, rounding=ROUND_HALF_EVEN))


# -----------------------------------------------------------------------------
# Dates
# -----------------------------------------------------------------------------


def parse_date(value: Any, formats: Iterable[str], field: str = "date") -> CoercionResult:
    """
    Coerce a cell to a ``date`` using the first matching format.

    Native ``date``/``datetime`` cells (XLSX) are accepted as-is.  The result
    must fall within 1900-01-01..2100-12-31.
    """
    if is_blank(value):
        return _fail("MISSING_VALUE", "value is required", field)

    parsed: date | None = None
    if isinstance(value, datetime):
        parsed = value.date()
    elif isinstance(value, date):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        for fmt in formats:
            try:
                parsed = datetime.strptime(text, fmt).date()
                break
            except ValueError:
                continue

    if parsed is None:
        return _fail("INVALID_DATE", f"unrecognised date: {value!r}", field)
    if parsed < _MIN_DATE or parsed > _MAX_DATE:
        return _fail(
            "DATE_OUT_OF_RANGE",
            f"{parsed.isoformat()} is outside {_MIN_DATE} to {_MAX_DATE}",
            field,
        )
    return _ok(parsed)


# -----------------------------------------------------------------------------
# Text fields
# -----------------------------------------------------------------------------


def normalize_description(value: Any, max_length: int, field: str = "description") -> CoercionResult:
    """Collapse whitespace; required and at most ``max_length`` characters."""
    if is_blank(value):
        return _fail("MISSING_VALUE", "value is required", field)
    text = _WHITESPACE.sub(" ", str(value)).strip()
    if len(text) > max_length:
        return _fail("TOO_LONG", f"longer than {max_length} characters", field)
    return _ok(text)


def normalize_category(
    value: Any,
    default: str,
    allowed: frozenset[str],
    field: str = "category",
) -> CoercionResult:
    """Lower-case the category; blank falls back to ``default``."""
    if is_blank(value):
        return _ok(default)
    category = _WHITESPACE.sub(" ", str(value)).strip().lower()
    if allowed and category not in allowed:
        return _fail("UNKNOWN_CATEGORY", f"{category!r} is not an allowed category", field)
    return _ok(category)


def normalize_currency(value: Any, default: str, field: str = "currency") -> CoercionResult:
    """Upper-case a 3-letter ISO 4217 code; blank falls back to ``default``."""
    if is_blank(value):
        return _ok(default)
    code = str(value).strip().upper()
    if not _CURRENCY_CODE.match(code):
        return _fail("INVALID_CURRENCY", f"not an ISO 4217 code: {value!r}", field)
    return _ok(code)
