"""Exception taxonomy for the scanning pipeline."""

from __future__ import annotations

from typing import Optional

from .state import AcquisitionReason


class ScannerError(Exception):
    """Base class for scanner failures."""


class ScannerBusy(ScannerError):
    """Raised when ``open()`` is called on a controller that is not idle."""


class AcquisitionError(ScannerError):
    """The camera could not be obtained."""

    def __init__(self, reason: AcquisitionReason, detail: Optional[str] = None) -> None:
        self.reason = reason
        self.detail = detail
        message = reason.value if not detail else f"{reason.value}: {detail}"
        super().__init__(message)


class AttachError(ScannerError):
    """The capture stream never produced a frame for the sink."""


class AttachAborted(AttachError):
    """The readiness wait was cancelled by ``close()``."""


class DeviceLost(ScannerError):
    """The capture device disappeared mid-session."""


class DetectError(ScannerError):
    """A single native detection attempt failed."""


class BackendUnavailable(ScannerError):
    """A detector backend cannot be constructed on this platform."""


class StartError(ScannerError):
    """A push-based engine failed to start."""


__all__ = [
    "AcquisitionError",
    "AttachAborted",
    "AttachError",
    "BackendUnavailable",
    "DetectError",
    "DeviceLost",
    "ScannerBusy",
    "ScannerError",
    "StartError",
]
