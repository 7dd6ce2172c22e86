"""
XLSX row codec (openpyxl, read-only streaming mode).

source options:
  sheet: 0-based sheet index (int) or sheet name (str). Default: active sheet.
  skip_rows: number of rows to skip at top of sheet before the header. Default: 0.

Cell values keep their native types (dates, numbers) so the transformer can
use them without reparsing; strings are stripped and integral floats become
ints.  A workbook that cannot be opened, or a missing sheet, raises
``SourceDecodeError``: the container is unreadable, so no row can be decoded.
"""

from __future__ import annotations

import io
import zipfile
from typing import Any, BinaryIO, Iterator

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from txn_ingestion.codecs.base import RowReadFailure, TabularRowCodec
from txn_kernel.exceptions import SourceDecodeError


def _cell_value(value: Any) -> Any:
    """Normalize an openpyxl cell value."""
    if value is None:
        return ""
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        return value
    if isinstance(value, str):
        return value.strip()
    return value


def _seekable(stream: BinaryIO) -> BinaryIO:
    # Zip containers need random access
    if hasattr(stream, "seekable") and stream.seekable():
        return stream
    return io.BytesIO(stream.read())


class XlsxRowCodec(TabularRowCodec):
    """Decode XLSX workbooks into raw records, one per data row of one sheet."""

    source_format = "xlsx"

    def _iter_cells(self, stream: BinaryIO) -> Iterator[list[Any] | RowReadFailure]:
        try:
            wb = openpyxl.load_workbook(_seekable(stream), read_only=True, data_only=True)
        except (zipfile.BadZipFile, InvalidFileException, KeyError, OSError, ValueError) as exc:
            raise SourceDecodeError("xlsx", f"workbook cannot be opened: {exc}") from exc

        try:
            sheet = self._get_sheet(wb)
            skip_rows = int(self._options.get("skip_rows") or 0)
            for values in sheet.iter_rows(min_row=1 + skip_rows, values_only=True):
                yield [_cell_value(v) for v in values]
        finally:
            wb.close()

    def _get_sheet(self, wb: Any) -> Any:
        sheet_ref = self._options.get("sheet")
        try:
            if sheet_ref is None:
                return wb.active
            if isinstance(sheet_ref, int):
                return wb.worksheets[sheet_ref]
            return wb[sheet_ref]
        except (IndexError, KeyError):
            raise SourceDecodeError("xlsx", f"sheet not found: {sheet_ref!r}") from None
