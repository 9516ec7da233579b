"""zbar-backed scanning engine that runs its own capture loop."""

from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import threading
import time
from typing import Any, Callable, List, Optional, Sequence

import cv2
import numpy as np

from clinic_scan.core.logging_utils import LoggerLike, ensure_structured_logger
from clinic_scan.scanner.camera import (
    CaptureFactory,
    acquire_first,
    open_video_capture,
    release_capture,
    resolve_failure_reason,
)
from clinic_scan.scanner.config import CameraSettings, DeviceRef, FallbackSettings
from clinic_scan.scanner.errors import BackendUnavailable, DeviceLost, StartError
from clinic_scan.scanner.state import AcquisitionReason, BackendKind

from .base import DecodedCallback, FailureCallback, MissCallback

RegionDecoder = Callable[[np.ndarray], Sequence[str]]


def load_zbar_decoder() -> RegionDecoder:
    """Return a QR-only pyzbar decoder; raises BackendUnavailable without libzbar."""
    try:
        from pyzbar.pyzbar import ZBarSymbol, decode
    except (ImportError, OSError) as exc:
        raise BackendUnavailable(f"zbar decoder unavailable: {exc}") from exc

    def _decode(gray: np.ndarray) -> List[str]:
        return [
            result.data.decode("utf-8", errors="replace")
            for result in decode(gray, symbols=[ZBarSymbol.QRCODE])
        ]

    return _decode


class FallbackEngineDetector:
    """Push engine: grabs frames itself, decodes the centre region at ``fps``.

    The engine needs exclusive use of a camera, so the caller must release
    any capture it holds before calling :meth:`start`.
    """

    kind = BackendKind.FALLBACK

    def __init__(
        self,
        settings: FallbackSettings,
        camera_settings: CameraSettings,
        *,
        capture_factory: Optional[CaptureFactory] = None,
        decoder: Optional[RegionDecoder] = None,
        logger: LoggerLike = None,
    ) -> None:
        self._settings = settings
        self._camera_settings = camera_settings
        self._capture_factory = capture_factory or open_video_capture
        self._decoder = decoder or load_zbar_decoder()
        self._logger = ensure_structured_logger(logger, fallback_name=__name__)
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event = threading.Event()
        self._cap: Any = None
        self._device: Optional[DeviceRef] = None
        self._started = False
        self._stopped = False

    @property
    def device(self) -> Optional[DeviceRef]:
        return self._device

    def candidate_devices(self) -> List[DeviceRef]:
        """Environment device, then user device, then the first enumerated one."""
        settings = self._camera_settings
        ordered: List[DeviceRef] = []
        for device in (
            settings.environment_device,
            settings.user_device,
            settings.devices[0] if settings.devices else None,
        ):
            if device is not None and device not in ordered:
                ordered.append(device)
        return ordered

    async def start(
        self,
        on_decoded: DecodedCallback,
        on_benign_miss: MissCallback,
        *,
        on_failure: Optional[FailureCallback] = None,
    ) -> None:
        if self._stopped:
            raise StartError("fallback engine already stopped")
        if self._started:
            return

        self._loop = asyncio.get_running_loop()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="scanfallback"
        )
        failures: List[AcquisitionReason] = []
        candidates = self.candidate_devices()
        found = await self._loop.run_in_executor(
            self._executor,
            acquire_first,
            candidates,
            self._capture_factory,
            self._camera_settings.resolution,
            self._logger,
            failures,
        )
        if found is None:
            self._shutdown_executor()
            reason = resolve_failure_reason(failures) if failures else AcquisitionReason.NO_DEVICE
            raise StartError(f"no camera for fallback engine ({reason.value})")

        self._device, self._cap = found
        self._started = True
        scan = self._loop.run_in_executor(
            self._executor, self._scan_loop, self._cap, on_decoded, on_benign_miss, on_failure
        )
        scan.add_done_callback(self._scan_finished)
        self._logger.info(
            "Fallback engine scanning camera %s at %.1f fps (%dx%d region)",
            self._device,
            self._settings.fps,
            self._settings.region.width,
            self._settings.region.height,
        )

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()

        cap, self._cap = self._cap, None
        if cap is not None and self._executor is not None:
            loop = asyncio.get_running_loop()
            # Runs after the scan loop exits on the same worker thread.
            await loop.run_in_executor(self._executor, release_capture, cap, self._logger)
        self._shutdown_executor()
        if self._started:
            self._logger.info("Fallback engine released camera %s", self._device)

    # ------------------------------------------------------------------ worker

    def decode_frame(self, frame: np.ndarray) -> Sequence[str]:
        height, width = frame.shape[:2]
        x0, y0, x1, y1 = self._settings.region.crop_bounds(width, height)
        roi = frame[y0:y1, x0:x1]
        if roi.ndim == 3:
            roi = cv2.cvtColor(roi, cv2.COLOR_BGR2GRAY)
        return self._decoder(roi)

    def _scan_loop(
        self,
        cap: Any,
        on_decoded: DecodedCallback,
        on_benign_miss: MissCallback,
        on_failure: Optional[FailureCallback],
    ) -> None:
        period = 1.0 / self._settings.fps
        faults = 0
        while not self._stop_event.is_set():
            started = time.monotonic()
            success, frame = cap.read()
            if self._stop_event.is_set():
                break
            if not success or frame is None:
                self._logger.warning("Fallback camera %s stopped delivering frames", self._device)
                if on_failure is not None:
                    self._notify(on_failure, DeviceLost(f"camera {self._device} lost"))
                break

            try:
                texts = self.decode_frame(frame)
            except Exception:
                faults += 1
                log = self._logger.warning if faults == 1 else self._logger.debug
                log("Frame decode failed (%d in a row)", faults, exc_info=True)
            else:
                faults = 0
                if texts:
                    self._notify(on_decoded, texts[0])
                else:
                    self._notify(on_benign_miss)

            remaining = period - (time.monotonic() - started)
            if remaining > 0:
                self._stop_event.wait(remaining)

    def _scan_finished(self, future: asyncio.Future[None]) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self._logger.error("Fallback scan loop crashed", exc_info=exc)

    def _notify(self, callback: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or self._stop_event.is_set():
            return
        with contextlib.suppress(RuntimeError):  # loop already closed
            loop.call_soon_threadsafe(callback, *args)

    def _shutdown_executor(self) -> None:
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)


__all__ = ["FallbackEngineDetector", "RegionDecoder", "load_zbar_decoder"]
