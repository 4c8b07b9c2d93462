"""Centralized helpers for resolving the migration tool's data directory."""
from __future__ import annotations

import logging
import os
from pathlib import Path

LOGGER = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parent
DATA_ROOT = APP_ROOT / "data"


def resolve_data_root() -> Path:
    """Return the configured data root, honouring ``ORDER_TABLE_DATA_DIR``."""
    override = os.getenv("ORDER_TABLE_DATA_DIR")
    if override and override.strip():
        return Path(override.strip()).expanduser()
    return DATA_ROOT


def ensure_data_root() -> Path:
    """Return the canonical data root, creating it as needed."""
    data_root = resolve_data_root()
    if not data_root.exists():
        LOGGER.info("Creating data directory %s", data_root)
    data_root.mkdir(parents=True, exist_ok=True)
    return data_root
