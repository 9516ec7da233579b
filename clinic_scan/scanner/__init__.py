"""QR scanning engine: camera acquisition, detection and payload routing."""

from .backends import DetectorEnvironment
from .config import ScannerConfig, load_config, persist_config_async
from .controller import ScanSessionController
from .errors import AcquisitionError, ScannerBusy, ScannerError
from .events import (
    AcquisitionFailed,
    BenignMiss,
    EventHandler,
    FatalBackendFailure,
    Ready,
    ScanEvent,
    ScanResult,
)
from .router import PayloadRouter
from .session import SessionHandle, open_session
from .state import (
    AcquisitionReason,
    BackendKind,
    CodeKind,
    FacingMode,
    ParsedCode,
    ScanSession,
    SessionState,
)

__all__ = [
    "AcquisitionError",
    "AcquisitionFailed",
    "AcquisitionReason",
    "BackendKind",
    "BenignMiss",
    "CodeKind",
    "DetectorEnvironment",
    "EventHandler",
    "FacingMode",
    "FatalBackendFailure",
    "ParsedCode",
    "PayloadRouter",
    "Ready",
    "ScanEvent",
    "ScanResult",
    "ScanSession",
    "ScanSessionController",
    "ScannerBusy",
    "ScannerConfig",
    "ScannerError",
    "SessionHandle",
    "SessionState",
    "load_config",
    "open_session",
    "persist_config_async",
]
