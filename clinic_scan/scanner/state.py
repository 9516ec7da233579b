"""Data models shared across the scanning pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SessionState(Enum):
    """Lifecycle state of a :class:`ScanSessionController`."""

    IDLE = "idle"
    ACQUIRING = "acquiring"
    DETECTING = "detecting"
    CLOSING = "closing"
    ERROR = "error"


class BackendKind(Enum):
    """Which decoding backend a session committed to."""

    NATIVE = "native"
    FALLBACK = "fallback"
    UNDETERMINED = "undetermined"


class FacingMode(Enum):
    """Camera preference requested when a session opens."""

    ENVIRONMENT = "environment-facing"
    ANY = "any"

    @classmethod
    def parse(cls, raw: object, default: "FacingMode") -> "FacingMode":
        text = str(raw or "").strip().lower()
        for member in cls:
            if member.value == text or member.name.lower() == text:
                return member
        return default


class AcquisitionReason(Enum):
    """Why a camera could not be obtained."""

    PERMISSION_DENIED = "permission-denied"
    NO_DEVICE = "no-device"
    UNKNOWN = "unknown"


class CodeKind(Enum):
    """Classification of a decoded payload."""

    PRESCRIPTION = "prescription"
    APPOINTMENT = "appointment"
    PATIENT = "patient"
    UNRECOGNIZED = "unrecognized"


@dataclass(slots=True, frozen=True)
class ParsedCode:
    """Typed, classified result handed to the caller."""

    kind: CodeKind
    value: str

    @property
    def recognized(self) -> bool:
        return self.kind is not CodeKind.UNRECOGNIZED


@dataclass(slots=True, frozen=True)
class DecodedEvent:
    """Raw text produced by a backend at a point in time (milliseconds)."""

    raw_text: str
    timestamp_ms: float


@dataclass(slots=True, frozen=True)
class ScanRegion:
    """Centre box of the frame the fallback engine decodes."""

    width: int
    height: int

    def crop_bounds(self, frame_width: int, frame_height: int) -> tuple[int, int, int, int]:
        """Return ``(x0, y0, x1, y1)`` clamped to the frame."""
        width = min(self.width, frame_width)
        height = min(self.height, frame_height)
        x0 = (frame_width - width) // 2
        y0 = (frame_height - height) // 2
        return x0, y0, x0 + width, y0 + height


@dataclass(slots=True, frozen=True)
class ScanSession:
    """Point-in-time view of a controller's session."""

    generation: int
    state: SessionState
    backend_kind: BackendKind
    last_result: Optional[DecodedEvent]


__all__ = [
    "AcquisitionReason",
    "BackendKind",
    "CodeKind",
    "DecodedEvent",
    "FacingMode",
    "ParsedCode",
    "ScanRegion",
    "ScanSession",
    "SessionState",
]
