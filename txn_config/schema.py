"""
Configuration schema (``txn_config.schema``).

Frozen dataclasses describing the import pipeline configuration.  Parsed
from YAML by ``txn_config.loader``; obtained at runtime only through
``txn_config.get_active_config()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

DEFAULT_DATE_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d.%m.%Y",
    "%m/%d/%Y",
    "%d/%m/%Y",
)

# Canonical field -> accepted header spellings (compared lower-cased, trimmed)
DEFAULT_COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "date": ("date", "transaction date", "trans date", "posted date", "post date", "booking date", "value date"),
    "amount": ("amount", "value", "transaction amount", "sum"),
    "debit": ("debit", "debit amount", "withdrawal", "money out", "paid out"),
    "credit": ("credit", "credit amount", "deposit", "money in", "paid in"),
    "description": ("description", "memo", "details", "narrative", "payee", "reference"),
    "category": ("category", "type", "class"),
    "currency": ("currency", "ccy", "currency code"),
}


@dataclass(frozen=True)
class CsvOptionsDef:
    """CSV decoding options."""

    delimiter: str = ","
    encoding: str = "utf-8"
    skip_rows: int = 0


@dataclass(frozen=True)
class XlsxOptionsDef:
    """XLSX decoding options.  ``sheet`` is a 0-based index, a name, or None (active)."""

    sheet: int | str | None = None
    skip_rows: int = 0


@dataclass(frozen=True)
class TransformDef:
    """Normalisation and validation rules for the transaction transformer."""

    date_formats: tuple[str, ...] = DEFAULT_DATE_FORMATS
    default_currency: str = "USD"
    default_category: str = "uncategorized"
    allowed_categories: frozenset[str] = frozenset()  # empty = any
    description_max_length: int = 500
    column_aliases: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_COLUMN_ALIASES),
    )


@dataclass(frozen=True)
class PipelineConfig:
    """Complete import pipeline configuration."""

    batch_size: int = 500
    max_workers: int = 4
    persist_max_attempts: int = 3
    persist_backoff_seconds: float = 0.1
    persist_backoff_multiplier: float = 2.0
    error_summary_cap: int = 100
    lease_timeout_seconds: float = 300.0
    sweep_interval_seconds: float = 60.0
    database_url: str | None = None
    storage_root: str | None = None
    csv: CsvOptionsDef = field(default_factory=CsvOptionsDef)
    xlsx: XlsxOptionsDef = field(default_factory=XlsxOptionsDef)
    transform: TransformDef = field(default_factory=TransformDef)

    def codec_options(self) -> dict[str, dict[str, Any]]:
        """Per-format option dicts consumed by ``txn_ingestion.codecs.codec_for``."""
        return {
            "csv": {
                "delimiter": self.csv.delimiter,
                "encoding": self.csv.encoding,
                "skip_rows": self.csv.skip_rows,
            },
            "xlsx": {
                "sheet": self.xlsx.sheet,
                "skip_rows": self.xlsx.skip_rows,
            },
        }
