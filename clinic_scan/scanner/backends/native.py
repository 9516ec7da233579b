"""OpenCV single-shot QR detection polled against the live frame sink."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import cv2
import numpy as np

from clinic_scan.core.asyncio_utils import cancel_and_wait, create_logged_task
from clinic_scan.core.logging_utils import LoggerLike, ensure_structured_logger
from clinic_scan.scanner.camera import FrameSink
from clinic_scan.scanner.errors import BackendUnavailable, DetectError
from clinic_scan.scanner.state import BackendKind

from .base import DecodedCallback, FailureCallback, MissCallback


class NativeFrameDetector:
    """Wraps ``cv2.QRCodeDetector``; one call inspects one frame."""

    kind = BackendKind.NATIVE

    def __init__(self, detector_factory: Optional[Callable[[], Any]] = None) -> None:
        factory = detector_factory or cv2.QRCodeDetector
        try:
            self._detector = factory()
        except Exception as exc:
            raise BackendUnavailable(f"QR detector unavailable: {exc}") from exc

    def detect_once(self, frame: np.ndarray) -> Optional[str]:
        try:
            text, _points, _straight = self._detector.detectAndDecode(frame)
        except cv2.error as exc:
            raise DetectError(str(exc)) from exc
        # A located but undecodable code also comes back as ""
        return text or None


class PolledNativeBackend:
    """Re-runs :class:`NativeFrameDetector` on each new frame while ``is_live``.

    Detection runs in a worker thread so a slow frame never blocks the loop.
    """

    kind = BackendKind.NATIVE

    def __init__(
        self,
        detector: NativeFrameDetector,
        sink: FrameSink,
        *,
        interval: float,
        is_live: Callable[[], bool] = lambda: True,
        logger: LoggerLike = None,
    ) -> None:
        self._detector = detector
        self._sink = sink
        self._interval = max(0.0, interval)
        self._is_live = is_live
        self._logger = ensure_structured_logger(logger, fallback_name=__name__)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(
        self,
        on_decoded: DecodedCallback,
        on_benign_miss: MissCallback,
        *,
        on_failure: Optional[FailureCallback] = None,
    ) -> None:
        if self._task is not None:
            return
        self._task = create_logged_task(
            self._poll(on_decoded, on_benign_miss, on_failure),
            logger=self._logger,
            context="native-detect",
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if task is asyncio.current_task():
            task.cancel()
            return
        await cancel_and_wait(task)

    async def _poll(
        self,
        on_decoded: DecodedCallback,
        on_benign_miss: MissCallback,
        on_failure: Optional[FailureCallback],
    ) -> None:
        last_frame_number = 0
        faults = 0
        while self._is_live():
            error = self._sink.error
            if error is not None:
                self._logger.warning("Frame source failed: %s", error)
                if on_failure is not None:
                    on_failure(error)
                return

            frame = self._sink.current()
            if frame is not None and frame.frame_number != last_frame_number:
                last_frame_number = frame.frame_number
                try:
                    text = await asyncio.to_thread(self._detector.detect_once, frame.data)
                except DetectError as exc:
                    faults += 1
                    # Only the first fault of a run logs at WARNING
                    log = self._logger.warning if faults == 1 else self._logger.debug
                    log("Detection failed (%d in a row): %s", faults, exc)
                else:
                    faults = 0
                    if not self._is_live():
                        return
                    if text is not None:
                        on_decoded(text)
                    else:
                        on_benign_miss()

            await asyncio.sleep(self._interval)


__all__ = ["NativeFrameDetector", "PolledNativeBackend"]
