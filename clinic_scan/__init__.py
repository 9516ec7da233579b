"""Camera-driven QR scanning engine for the clinic operations app."""

from __future__ import annotations

from importlib import metadata
from typing import Optional, Sequence

try:
    __version__ = metadata.version("clinic-scan")
except metadata.PackageNotFoundError:  # pragma: no cover - local dev
    __version__ = "0.0.0"


def run(argv: Optional[Sequence[str]] = None) -> int:
    """Convenience wrapper around the ``clinic-scan`` command."""
    from .cli.scan import main

    return main(argv)


__all__ = ["__version__", "run"]
