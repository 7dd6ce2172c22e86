"""
Configuration Loader (``txn_config.loader``).

Loads a YAML file and parses it into typed ``txn_config.schema`` dataclass
instances.  Runtime callers go through ``txn_config.get_active_config()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Out-of-range or mistyped values  -> ``ValueError`` with the offending key.
* Unknown top-level keys  -> ``KeyError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict
from pathlib import Path
from typing import Any

import yaml

from txn_config.schema import (
    DEFAULT_COLUMN_ALIASES,
    DEFAULT_DATE_FORMATS,
    CsvOptionsDef,
    PipelineConfig,
    TransformDef,
    XlsxOptionsDef,
)

_TOP_LEVEL_KEYS = frozenset({
    "batch_size", "max_workers", "persist_max_attempts", "persist_backoff_seconds",
    "persist_backoff_multiplier", "error_summary_cap", "lease_timeout_seconds",
    "sweep_interval_seconds", "database_url", "storage_root", "csv", "xlsx", "transform",
})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _positive_int(data: dict[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{key} must be a positive integer, got {value!r}")
    return value


def _non_negative_float(data: dict[str, Any], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ValueError(f"{key} must be a non-negative number, got {value!r}")
    return float(value)


def parse_csv_options(data: dict[str, Any]) -> CsvOptionsDef:
    """Parse a CsvOptionsDef from a dict."""
    delimiter = data.get("delimiter", ",")
    if not isinstance(delimiter, str) or len(delimiter) != 1:
        raise ValueError(f"csv.delimiter must be a single character, got {delimiter!r}")
    return CsvOptionsDef(
        delimiter=delimiter,
        encoding=str(data.get("encoding", "utf-8")),
        skip_rows=int(data.get("skip_rows", 0)),
    )


def parse_xlsx_options(data: dict[str, Any]) -> XlsxOptionsDef:
    """Parse an XlsxOptionsDef from a dict."""
    sheet = data.get("sheet")
    if sheet is not None and not isinstance(sheet, (int, str)):
        raise ValueError(f"xlsx.sheet must be an index or a name, got {sheet!r}")
    return XlsxOptionsDef(
        sheet=sheet,
        skip_rows=int(data.get("skip_rows", 0)),
    )


def parse_transform(data: dict[str, Any]) -> TransformDef:
    """
    Parse a TransformDef from a dict.

    ``column_aliases`` entries extend (not replace) the built-in spellings.
    """
    aliases = {k: tuple(v) for k, v in DEFAULT_COLUMN_ALIASES.items()}
    for canonical, extra in (data.get("column_aliases") or {}).items():
        if canonical not in aliases:
            raise KeyError(f"Unknown canonical column in column_aliases: {canonical!r}")
        spellings = [extra] if isinstance(extra, str) else list(extra)
        aliases[canonical] = aliases[canonical] + tuple(
            s.strip().lower() for s in spellings
        )

    currency = str(data.get("default_currency", "USD")).strip().upper()
    if len(currency) != 3 or not currency.isalpha():
        raise ValueError(f"transform.default_currency must be an ISO 4217 code, got {currency!r}")

    return TransformDef(
        date_formats=tuple(data.get("date_formats") or DEFAULT_DATE_FORMATS),
        default_currency=currency,
        default_category=str(data.get("default_category", "uncategorized")).strip().lower(),
        allowed_categories=frozenset(
            str(c).strip().lower() for c in (data.get("allowed_categories") or ())
        ),
        description_max_length=_positive_int(data, "description_max_length", 500),
        column_aliases=aliases,
    )


def parse_pipeline_config(data: dict[str, Any]) -> PipelineConfig:
    """
    Parse a ``PipelineConfig`` from a dict.

    Raises:
        KeyError: unknown top-level key.
        ValueError: invalid value.
    """
    unknown = set(data) - _TOP_LEVEL_KEYS
    if unknown:
        raise KeyError(f"Unknown configuration keys: {sorted(unknown)}")

    return PipelineConfig(
        batch_size=_positive_int(data, "batch_size", 500),
        max_workers=_positive_int(data, "max_workers", 4),
        persist_max_attempts=_positive_int(data, "persist_max_attempts", 3),
        persist_backoff_seconds=_non_negative_float(data, "persist_backoff_seconds", 0.1),
        persist_backoff_multiplier=_non_negative_float(data, "persist_backoff_multiplier", 2.0),
        error_summary_cap=_positive_int(data, "error_summary_cap", 100),
        lease_timeout_seconds=_non_negative_float(data, "lease_timeout_seconds", 300.0),
        sweep_interval_seconds=_non_negative_float(data, "sweep_interval_seconds", 60.0),
        database_url=data.get("database_url"),
        storage_root=data.get("storage_root"),
        csv=parse_csv_options(data.get("csv") or {}),
        xlsx=parse_xlsx_options(data.get("xlsx") or {}),
        transform=parse_transform(data.get("transform") or {}),
    )


def compute_checksum(config: PipelineConfig) -> str:
    """Deterministic SHA-256 of a parsed configuration, for change detection."""
    canonical = json.dumps(asdict(config), sort_keys=True, default=sorted)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
