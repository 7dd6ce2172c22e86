"""
RowCodec protocol and shared tabular decoding (row numbering, header,
blank-row policy).

Contract:
    ``RowCodec.iter_rows(stream)`` lazily yields one ``DecodedRow`` per data
    row of a binary stream.  Finite (bounded by the file), not restartable:
    the caller re-opens the source to start over.
    ``RowCodec.decode_row(row_number, cells, header)`` decodes one raw row
    into a RawRecord or a RowError and never raises on malformed input.

Row policy (identical for every format):
    - The first non-blank row after ``skip_rows`` is the header.
    - Data rows are numbered 1, 2, 3, ... contiguously.
    - A blank row between data rows is a ``BLANK_ROW`` row error and consumes
      a row number.  Blank rows after the last data row are not rows.
    - A row that cannot be read at all (bad quoting, bad bytes) is a row
      error; decoding resumes with the next row.
    - A header row that cannot be read raises ``SourceDecodeError``.

Architecture: txn_ingestion/codecs.  File-format I/O only, no DB.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, BinaryIO, Iterator, Protocol, runtime_checkable

from txn_ingestion.domain.types import DecodedRow, RawRecord, RowError
from txn_kernel.exceptions import SourceDecodeError


@runtime_checkable
class RowCodec(Protocol):
    """Protocol for decoding a tabular byte stream into raw records."""

    @property
    def source_format(self) -> str: ...

    def iter_rows(self, stream: BinaryIO) -> Iterator[DecodedRow]:
        """Yield one DecodedRow per data row.  Streams; never raises on bad rows."""
        ...

    def decode_row(self, row_number: int, cells: list[Any], header: tuple[str, ...]) -> DecodedRow:
        """Decode one row's cells against the header."""
        ...


@dataclass(frozen=True)
class RowReadFailure:
    """A physical row that could not be split into cells."""

    code: str
    message: str


def is_blank_cell(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def is_blank_row(cells: list[Any]) -> bool:
    return all(is_blank_cell(c) for c in cells)


def build_header(cells: list[Any]) -> tuple[str, ...]:
    """Header names from the first row: trimmed, blanks named, duplicates suffixed."""
    last = 0
    for i, value in enumerate(cells):
        if not is_blank_cell(value):
            last = i + 1
    headers: list[str] = []
    for c in range(max(last, 1)):
        value = cells[c] if c < len(cells) else None
        key = " ".join(str(value).split()) if not is_blank_cell(value) else f"Column_{c + 1}"
        base = key
        cnt = 0
        while key in headers:
            cnt += 1
            key = f"{base}_{cnt}"
        headers.append(key)
    return tuple(headers)


class TabularRowCodec:
    """Shared iteration for formats that produce rows of cells.

    Subclasses implement ``_iter_cells`` yielding a list of cell values per
    physical row, or a ``RowReadFailure`` for a row that could not be read.
    """

    source_format = ""

    def __init__(self, options: dict[str, Any] | None = None) -> None:
        self._options = dict(options or {})

    def _iter_cells(self, stream: BinaryIO) -> Iterator[list[Any] | RowReadFailure]:
        raise NotImplementedError

    def iter_rows(self, stream: BinaryIO) -> Iterator[DecodedRow]:
        header: tuple[str, ...] | None = None
        row_number = 0
        pending_blank = 0

        for item in self._iter_cells(stream):
            failed = isinstance(item, RowReadFailure)
            if header is None:
                if failed:
                    raise SourceDecodeError(
                        self.source_format, f"header row cannot be read: {item.message}",
                    )
                if not is_blank_row(item):
                    header = build_header(item)
                continue

            if not failed and is_blank_row(item):
                pending_blank += 1
                continue

            for _ in range(pending_blank):
                row_number += 1
                yield DecodedRow.failed(
                    RowError.single(row_number, "BLANK_ROW", "row is empty"),
                )
            pending_blank = 0

            row_number += 1
            if failed:
                yield DecodedRow.failed(
                    RowError.single(row_number, item.code, item.message),
                )
            else:
                yield self.decode_row(row_number, item, header)

    def decode_row(self, row_number: int, cells: list[Any], header: tuple[str, ...]) -> DecodedRow:
        extra = cells[len(header):]
        if len(cells) < len(header) or not is_blank_row(extra):
            return DecodedRow.failed(RowError.single(
                row_number,
                "COLUMN_COUNT_MISMATCH",
                f"expected {len(header)} column(s), found {len(cells)}",
            ))

        values = {name: self._normalize_cell(cells[i]) for i, name in enumerate(header)}
        return DecodedRow.of(RawRecord(row_number=row_number, values=values))

    @staticmethod
    def _normalize_cell(value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value
