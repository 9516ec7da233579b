"""Typed configuration for the scanner."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from clinic_scan.core.logging_utils import LoggerLike, ensure_structured_logger
from clinic_scan.core.preferences import ModulePreferences
from clinic_scan.scanner.defaults import (
    DEFAULT_CAPTURE_RESOLUTION,
    DEFAULT_DEBOUNCE_WINDOW_MS,
    DEFAULT_DEVICES,
    DEFAULT_FACING,
    DEFAULT_FALLBACK_FPS,
    DEFAULT_FALLBACK_REGION,
    DEFAULT_LOG_LEVEL,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_PREFER_NATIVE,
    DEFAULT_READY_TIMEOUT_MS,
    DEFAULT_REPORT_BENIGN_MISS,
)
from clinic_scan.scanner.router import (
    DEFAULT_PREFIX_RULES,
    PrefixRule,
    format_prefix_table,
    parse_prefix_table,
)
from clinic_scan.scanner.state import FacingMode, ScanRegion

Resolution = Tuple[int, int]
DeviceRef = Union[int, str]


@dataclass(slots=True)
class CameraSettings:
    preference: FacingMode = FacingMode(DEFAULT_FACING)
    environment_device: Optional[DeviceRef] = None
    user_device: Optional[DeviceRef] = None
    devices: Tuple[DeviceRef, ...] = DEFAULT_DEVICES
    resolution: Resolution = DEFAULT_CAPTURE_RESOLUTION
    ready_timeout_ms: int = DEFAULT_READY_TIMEOUT_MS

    @property
    def ready_timeout(self) -> Optional[float]:
        return self.ready_timeout_ms / 1000.0 if self.ready_timeout_ms > 0 else None


@dataclass(slots=True)
class DetectSettings:
    prefer_native: bool = DEFAULT_PREFER_NATIVE
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    debounce_window_ms: int = DEFAULT_DEBOUNCE_WINDOW_MS


@dataclass(slots=True)
class FallbackSettings:
    fps: float = DEFAULT_FALLBACK_FPS
    region: ScanRegion = ScanRegion(*DEFAULT_FALLBACK_REGION)


@dataclass(slots=True)
class LoggingSettings:
    level: str = DEFAULT_LOG_LEVEL
    file: Optional[Path] = None


@dataclass(slots=True)
class ScannerConfig:
    camera: CameraSettings = field(default_factory=CameraSettings)
    detect: DetectSettings = field(default_factory=DetectSettings)
    fallback: FallbackSettings = field(default_factory=FallbackSettings)
    prefix_rules: Tuple[PrefixRule, ...] = DEFAULT_PREFIX_RULES
    report_benign_miss: bool = DEFAULT_REPORT_BENIGN_MISS
    logging: LoggingSettings = field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Public API


def load_config(
    preferences: ModulePreferences,
    overrides: Optional[Dict[str, Any]] = None,
    *,
    logger: LoggerLike = None,
) -> ScannerConfig:
    """Build a typed config from ModulePreferences + optional overrides."""

    log = ensure_structured_logger(logger, fallback_name=__name__)
    merged = preferences.snapshot()
    if overrides:
        for key, value in overrides.items():
            if value is not None:
                merged[key] = value

    camera = CameraSettings(
        preference=FacingMode.parse(merged.get("camera.preference"), FacingMode(DEFAULT_FACING)),
        environment_device=_coerce_device(merged.get("camera.environment_device")),
        user_device=_coerce_device(merged.get("camera.user_device")),
        devices=_coerce_devices(merged.get("camera.devices"), DEFAULT_DEVICES),
        resolution=_coerce_resolution(
            merged.get("camera.resolution"), DEFAULT_CAPTURE_RESOLUTION, logger=log
        ),
        ready_timeout_ms=max(0, _coerce_int(merged.get("camera.ready_timeout_ms"), DEFAULT_READY_TIMEOUT_MS)),
    )

    detect = DetectSettings(
        prefer_native=_coerce_bool(merged.get("detect.prefer_native"), DEFAULT_PREFER_NATIVE),
        poll_interval_ms=max(0, _coerce_int(merged.get("detect.poll_interval_ms"), DEFAULT_POLL_INTERVAL_MS)),
        debounce_window_ms=max(0, _coerce_int(merged.get("debounce.window_ms"), DEFAULT_DEBOUNCE_WINDOW_MS)),
    )

    fps = _coerce_float(merged.get("fallback.fps"), DEFAULT_FALLBACK_FPS)
    if fps <= 0:
        log.debug("Non-positive fallback fps %r, using default %s", fps, DEFAULT_FALLBACK_FPS)
        fps = DEFAULT_FALLBACK_FPS
    fallback = FallbackSettings(
        fps=fps,
        region=ScanRegion(
            *_coerce_resolution(merged.get("fallback.region"), DEFAULT_FALLBACK_REGION, logger=log)
        ),
    )

    rules: Tuple[PrefixRule, ...] = DEFAULT_PREFIX_RULES
    raw_rules = merged.get("router.prefixes")
    if raw_rules:
        parsed = parse_prefix_table(str(raw_rules), logger=log)
        if parsed:
            rules = tuple(parsed)
        else:
            log.warning("router.prefixes has no usable rules, using defaults")

    logging_settings = LoggingSettings(
        level=str(merged.get("logging.level") or DEFAULT_LOG_LEVEL).strip().upper(),
        file=_coerce_path(merged.get("logging.file")),
    )

    return ScannerConfig(
        camera=camera,
        detect=detect,
        fallback=fallback,
        prefix_rules=rules,
        report_benign_miss=_coerce_bool(merged.get("events.report_benign_miss"), DEFAULT_REPORT_BENIGN_MISS),
        logging=logging_settings,
    )


async def persist_config_async(preferences: ModulePreferences, config: ScannerConfig) -> bool:
    """Write the typed config back through ModulePreferences."""

    return await preferences.write_async(flatten_config(config))


def flatten_config(config: ScannerConfig) -> Dict[str, Any]:
    camera = config.camera
    return {
        "camera.preference": camera.preference.value,
        "camera.environment_device": "" if camera.environment_device is None else camera.environment_device,
        "camera.user_device": "" if camera.user_device is None else camera.user_device,
        "camera.devices": ",".join(str(device) for device in camera.devices),
        "camera.resolution": f"{camera.resolution[0]}x{camera.resolution[1]}",
        "camera.ready_timeout_ms": camera.ready_timeout_ms,
        "detect.prefer_native": config.detect.prefer_native,
        "detect.poll_interval_ms": config.detect.poll_interval_ms,
        "debounce.window_ms": config.detect.debounce_window_ms,
        "fallback.fps": config.fallback.fps,
        "fallback.region": f"{config.fallback.region.width}x{config.fallback.region.height}",
        "router.prefixes": format_prefix_table(config.prefix_rules),
        "events.report_benign_miss": config.report_benign_miss,
        "logging.level": config.logging.level,
        "logging.file": "" if config.logging.file is None else str(config.logging.file),
    }


# ---------------------------------------------------------------------------
# Internal helpers


def _coerce_bool(raw: Any, default: bool) -> bool:
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _coerce_int(raw: Any, default: int) -> int:
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _coerce_float(raw: Any, default: float) -> float:
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _coerce_path(raw: Any) -> Optional[Path]:
    if raw is None:
        return None
    text = str(raw).strip()
    return Path(text).expanduser() if text else None


def _coerce_device(raw: Any) -> Optional[DeviceRef]:
    if raw is None:
        return None
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    if not text:
        return None
    return int(text) if text.isdigit() else text


def _coerce_devices(raw: Any, default: Tuple[DeviceRef, ...]) -> Tuple[DeviceRef, ...]:
    if raw is None or raw == "":
        return default
    if isinstance(raw, (list, tuple)):
        items = list(raw)
    else:
        items = str(raw).split(",")
    devices = tuple(d for d in (_coerce_device(item) for item in items) if d is not None)
    return devices or default


def _coerce_resolution(raw: Any, default: Resolution, *, logger) -> Resolution:
    if raw is None or raw == "":
        return default
    try:
        if isinstance(raw, (list, tuple)) and len(raw) == 2:
            width, height = int(raw[0]), int(raw[1])
        else:
            text = str(raw).lower()
            sep = "x" if "x" in text else ","
            width_text, height_text = text.split(sep, 1)
            width, height = int(width_text.strip()), int(height_text.strip())
    except (TypeError, ValueError):
        logger.debug("Failed to parse resolution from %r, using default %s", raw, default)
        return default
    if width <= 0 or height <= 0:
        return default
    return width, height


__all__ = [
    "CameraSettings",
    "DetectSettings",
    "DeviceRef",
    "FallbackSettings",
    "LoggingSettings",
    "ScannerConfig",
    "flatten_config",
    "load_config",
    "persist_config_async",
]
