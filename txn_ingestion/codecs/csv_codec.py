"""
CSV row codec.

Configurable: delimiter, encoding, skip_rows.  Handles BOM via utf-8-sig
when encoding is utf-8.  Streams the binary source line by line; a physical
line ends at CR, LF or CRLF.  Each line is decoded strictly on its own, so
one bad byte sequence rejects the row it belongs to, not the file.  Quoted
fields spanning lines are supported.
"""

from __future__ import annotations

import codecs
import csv
import re
from itertools import islice
from typing import Any, BinaryIO, Iterator

from txn_ingestion.codecs.base import RowReadFailure, TabularRowCodec
from txn_kernel.exceptions import SourceDecodeError

READ_CHUNK_BYTES = 64 * 1024

_LINE_END = re.compile(rb"\r\n|\r|\n")


def _get_encoding(options: dict[str, Any]) -> str:
    enc = options.get("encoding") or "utf-8"
    if enc.lower() in ("utf-8", "utf8"):
        return "utf-8-sig"  # Strip BOM if present
    return enc


def _physical_lines(stream: BinaryIO, chunk_size: int = READ_CHUNK_BYTES) -> Iterator[bytes]:
    """Split a byte stream into lines, keeping each line's terminator."""
    pending = b""
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        pending += chunk
        start = 0
        for match in _LINE_END.finditer(pending):
            if match.end() == len(pending) and match.group() == b"\r":
                break  # the LF of a CRLF may be in the next chunk
            yield pending[start:match.end()]
            start = match.end()
        pending = pending[start:]
    if pending:
        yield pending


class _DecodedLines:
    """Decoded physical lines for csv.reader.

    ``undecodable`` is set when a line fed since the last ``take_undecodable``
    was not valid in the configured encoding.  csv.reader pulls lines only
    as it needs them, so the flag belongs to the row it just returned.
    """

    def __init__(self, lines: Iterator[bytes], encoding: str) -> None:
        self._lines = lines
        self._encoding = encoding
        self.undecodable = False

    def __iter__(self) -> _DecodedLines:
        return self

    def __next__(self) -> str:
        raw = next(self._lines)
        try:
            return raw.decode(self._encoding)
        except UnicodeDecodeError:
            self.undecodable = True
            return raw.decode(self._encoding, errors="replace")

    def take_undecodable(self) -> bool:
        flagged, self.undecodable = self.undecodable, False
        return flagged


class CsvRowCodec(TabularRowCodec):
    """Decode CSV bytes into raw records, one per data row."""

    source_format = "csv"

    def _iter_cells(self, stream: BinaryIO) -> Iterator[list[Any] | RowReadFailure]:
        encoding = _get_encoding(self._options)
        delimiter = self._options.get("delimiter") or ","
        skip_rows = int(self._options.get("skip_rows") or 0)
        try:
            codecs.lookup(encoding)
        except LookupError:
            raise SourceDecodeError("csv", f"unknown encoding: {encoding}") from None

        lines = _DecodedLines(islice(_physical_lines(stream), skip_rows, None), encoding)
        reader = csv.reader(lines, delimiter=delimiter)
        while True:
            try:
                row = next(reader)
            except StopIteration:
                return
            except csv.Error as exc:
                lines.take_undecodable()
                yield RowReadFailure(code="MALFORMED_ROW", message=f"unparseable CSV row: {exc}")
                continue
            if lines.take_undecodable():
                yield RowReadFailure(
                    code="ENCODING_ERROR",
                    message=f"row contains bytes that are not valid {encoding}",
                )
                continue
            yield row
