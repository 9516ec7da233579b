"""Decoding backends and the injectable environment the controller selects from."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from clinic_scan.scanner.camera import CaptureFactory

from .base import (
    DecodedCallback,
    DetectorBackend,
    FailureCallback,
    MissCallback,
    probe_native_capability,
)
from .fallback import FallbackEngineDetector, RegionDecoder, load_zbar_decoder
from .native import NativeFrameDetector, PolledNativeBackend


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(slots=True)
class DetectorEnvironment:
    """Platform hooks a controller uses; tests swap in fakes."""

    probe_native: Callable[[], bool] = probe_native_capability
    native_factory: Callable[[], NativeFrameDetector] = NativeFrameDetector
    fallback_factory: Callable[..., DetectorBackend] = FallbackEngineDetector
    capture_factory: Optional[CaptureFactory] = None
    clock: Callable[[], float] = monotonic_ms


__all__ = [
    "DecodedCallback",
    "DetectorBackend",
    "DetectorEnvironment",
    "FailureCallback",
    "FallbackEngineDetector",
    "MissCallback",
    "NativeFrameDetector",
    "PolledNativeBackend",
    "RegionDecoder",
    "load_zbar_decoder",
    "monotonic_ms",
    "probe_native_capability",
]
