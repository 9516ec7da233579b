"""Uniform contract shared by the decoding backends."""

from __future__ import annotations

from typing import Callable, Optional, Protocol

import cv2

from clinic_scan.scanner.state import BackendKind

DecodedCallback = Callable[[str], None]
MissCallback = Callable[[], None]
FailureCallback = Callable[[Exception], None]


class DetectorBackend(Protocol):
    """Push-shaped decoder: results arrive through the callbacks given to ``start``.

    ``stop`` must be idempotent and release everything the backend owns.
    """

    kind: BackendKind

    async def start(
        self,
        on_decoded: DecodedCallback,
        on_benign_miss: MissCallback,
        *,
        on_failure: Optional[FailureCallback] = None,
    ) -> None:
        ...

    async def stop(self) -> None:
        ...


def probe_native_capability() -> bool:
    """True when OpenCV ships a usable QR detector."""
    try:
        cv2.QRCodeDetector()
    except Exception:
        return False
    return True


__all__ = [
    "DecodedCallback",
    "DetectorBackend",
    "FailureCallback",
    "MissCallback",
    "probe_native_capability",
]
