"""Centralized path constants for clinic-scan."""

from __future__ import annotations

import os
from pathlib import Path

# Project/package roots
PROJECT_ROOT = Path(__file__).resolve().parents[2]
PACKAGE_ROOT = Path(__file__).resolve().parents[1]

# Shipped scanner defaults live beside the scanner package
SCANNER_CONFIG_PATH = PACKAGE_ROOT / "scanner" / "config.txt"

# User-specific state (allows running from read-only install directories)
_USER_STATE_ENV = os.environ.get("CLINIC_SCAN_STATE_DIR")
USER_STATE_DIR = Path(_USER_STATE_ENV).expanduser() if _USER_STATE_ENV else (Path.home() / ".clinic_scan")
USER_CONFIG_OVERRIDES_DIR = USER_STATE_DIR / "config_overrides"


__all__ = [
    "PROJECT_ROOT",
    "PACKAGE_ROOT",
    "SCANNER_CONFIG_PATH",
    "USER_STATE_DIR",
    "USER_CONFIG_OVERRIDES_DIR",
]
