"""Events a scan session delivers to its caller."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Union

from .state import AcquisitionReason, ParsedCode


@dataclass(slots=True, frozen=True)
class Ready:
    """Camera attached; detection is about to start."""


@dataclass(slots=True, frozen=True)
class AcquisitionFailed:
    reason: AcquisitionReason


@dataclass(slots=True, frozen=True)
class ScanResult:
    code: ParsedCode


@dataclass(slots=True, frozen=True)
class BenignMiss:
    """Nothing was found in the inspected frame (UI hinting only)."""


@dataclass(slots=True, frozen=True)
class FatalBackendFailure:
    reason: str


ScanEvent = Union[Ready, AcquisitionFailed, ScanResult, BenignMiss, FatalBackendFailure]
EventHandler = Callable[[ScanEvent], None]


__all__ = [
    "AcquisitionFailed",
    "BenignMiss",
    "EventHandler",
    "FatalBackendFailure",
    "Ready",
    "ScanEvent",
    "ScanResult",
]
