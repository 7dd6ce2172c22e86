"""Row codecs: decode uploaded files into raw records (file I/O only, no DB)."""

from __future__ import annotations

from pathlib import PurePath
from typing import Any

from txn_ingestion.codecs.base import RowCodec, RowReadFailure, TabularRowCodec
from txn_ingestion.codecs.csv_codec import CsvRowCodec
from txn_ingestion.codecs.xlsx_codec import XlsxRowCodec
from txn_kernel.exceptions import UnsupportedFormatError

_CODECS: dict[str, type[TabularRowCodec]] = {
    "csv": CsvRowCodec,
    "xlsx": XlsxRowCodec,
}

_EXTENSIONS: dict[str, str] = {
    ".csv": "csv",
    ".xlsx": "xlsx",
    ".xlsm": "xlsx",
}

SUPPORTED_FORMATS: tuple[str, ...] = tuple(_CODECS)


def detect_format(filename: str) -> str:
    """Return the source format for a filename, by extension (case-insensitive)."""
    fmt = _EXTENSIONS.get(PurePath(filename or "").suffix.lower())
    if fmt is None:
        raise UnsupportedFormatError(filename, tuple(sorted(_EXTENSIONS)))
    return fmt


def codec_for(source_format: str, options: dict[str, Any] | None = None) -> RowCodec:
    """Build the codec for a source format with its decoding options."""
    codec_cls = _CODECS.get(source_format)
    if codec_cls is None:
        raise UnsupportedFormatError(source_format, SUPPORTED_FORMATS)
    return codec_cls(options)


__all__ = [
    "RowCodec",
    "RowReadFailure",
    "TabularRowCodec",
    "CsvRowCodec",
    "XlsxRowCodec",
    "SUPPORTED_FORMATS",
    "codec_for",
    "detect_format",
]
