"""
txn_config -- single public entrypoint for import pipeline configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Services receive a ``PipelineConfig`` by
    injection and never read YAML files or environment variables themselves.

Resolution order:
    1. the explicit ``path`` argument,
    2. the ``TXN_IMPORT_CONFIG`` environment variable,
    3. the bundled ``defaults.yaml``.

Failure modes:
    - ``FileNotFoundError`` -- the resolved path does not exist.
    - ``ValueError`` / ``KeyError`` -- schema validation failures.

Audit relevance:
    Every successful call emits a ``pipeline_config_loaded`` log entry with
    the source path and configuration checksum.
"""

from __future__ import annotations

import os
from pathlib import Path

from txn_config.loader import compute_checksum, load_yaml_file, parse_pipeline_config
from txn_config.schema import (
    CsvOptionsDef,
    PipelineConfig,
    TransformDef,
    XlsxOptionsDef,
)
from txn_kernel.logging_config import get_logger

_logger = get_logger("config")

CONFIG_ENV_VAR = "TXN_IMPORT_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_config(path: Path | str | None = None) -> PipelineConfig:
    """The ONLY public configuration entrypoint."""
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH
    path = Path(path)

    config = parse_pipeline_config(load_yaml_file(path))
    _logger.info(
        "pipeline_config_loaded",
        extra={
            "config_path": str(path),
            "checksum": compute_checksum(config),
            "batch_size": config.batch_size,
            "max_workers": config.max_workers,
        },
    )
    return config


__all__ = [
    "CONFIG_ENV_VAR",
    "CsvOptionsDef",
    "PipelineConfig",
    "TransformDef",
    "XlsxOptionsDef",
    "get_active_config",
]
