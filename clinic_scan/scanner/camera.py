"""Camera acquisition and the frame sink it feeds, using OpenCV capture."""

from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import os
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from clinic_scan.core.logging_utils import LoggerLike, ensure_structured_logger
from clinic_scan.scanner.config import CameraSettings, DeviceRef
from clinic_scan.scanner.errors import AcquisitionError, AttachAborted, AttachError, DeviceLost
from clinic_scan.scanner.state import AcquisitionReason, FacingMode

# Returns an opened capture, ``None``/an unopened capture when the device is
# absent, or raises AcquisitionError for a classified failure.
CaptureFactory = Callable[[DeviceRef], Any]


@dataclass(slots=True)
class Frame:
    data: np.ndarray
    frame_number: int
    timestamp: float  # monotonic seconds


class FrameSink:
    """Holds the most recent frame of an attached camera.

    Nothing is buffered: detection always inspects the current frame only.
    ``wait_ready`` is the readiness gate used by :meth:`CameraHandle.attach`
    and can be aborted from ``close()``.
    """

    def __init__(self) -> None:
        self._frame: Optional[Frame] = None
        self._frame_count = 0
        self._wake = asyncio.Event()
        self._aborted = False
        self._error: Optional[Exception] = None

    @property
    def ready(self) -> bool:
        return self._frame is not None

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def error(self) -> Optional[Exception]:
        return self._error

    def current(self) -> Optional[Frame]:
        return self._frame

    def offer(self, data: np.ndarray) -> None:
        if self._aborted:
            return
        self._frame_count += 1
        self._frame = Frame(data=data, frame_number=self._frame_count, timestamp=time.monotonic())
        self._wake.set()

    def fail(self, error: Exception) -> None:
        if self._aborted:
            return
        self._error = error
        self._wake.set()

    def abort(self) -> None:
        self._aborted = True
        self._wake.set()

    def detach(self) -> None:
        self.abort()
        self._frame = None

    async def wait_ready(self, timeout: Optional[float] = None) -> None:
        if self._aborted:
            raise AttachAborted("sink detached")
        if self._frame is None and self._error is None:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout)
            except asyncio.TimeoutError:
                raise AttachError(f"no frame within {timeout:.1f}s") from None
        if self._aborted:
            raise AttachAborted("sink detached")
        if self._frame is None:
            raise AttachError(str(self._error or "capture stopped")) from self._error


# ---------------------------------------------------------------------------
# Device access


def _device_node(device: DeviceRef) -> Optional[str]:
    if isinstance(device, int):
        return f"/dev/video{device}" if sys.platform == "linux" else None
    return device if device.startswith("/dev/") else None


def open_video_capture(device: DeviceRef) -> Optional[cv2.VideoCapture]:
    """Open ``device`` with OpenCV, preferring V4L2 on Linux."""

    node = _device_node(device)
    if node is not None:
        if not os.path.exists(node):
            return None
        if not os.access(node, os.R_OK | os.W_OK):
            raise AcquisitionError(AcquisitionReason.PERMISSION_DENIED, node)

    backends: List[Optional[int]] = []
    v4l2 = getattr(cv2, "CAP_V4L2", None) if sys.platform == "linux" else None
    if v4l2 is not None:
        backends.append(v4l2)
    backends.append(None)  # OpenCV default

    for backend in backends:
        cap = cv2.VideoCapture(device, backend) if backend is not None else cv2.VideoCapture(device)
        if cap.isOpened():
            return cap
        cap.release()

    if node is not None:
        # The node exists but nothing could open it: usually busy or unsupported.
        raise AcquisitionError(AcquisitionReason.UNKNOWN, f"{node} could not be opened")
    return None


def resolve_failure_reason(failures: Iterable[AcquisitionReason]) -> AcquisitionReason:
    reasons = set(failures)
    if AcquisitionReason.PERMISSION_DENIED in reasons:
        return AcquisitionReason.PERMISSION_DENIED
    if AcquisitionReason.UNKNOWN in reasons:
        return AcquisitionReason.UNKNOWN
    return AcquisitionReason.NO_DEVICE


def release_capture(cap: Any, log) -> None:
    try:
        cap.release()
    except Exception:
        log.debug("Capture release failed", exc_info=True)


def _configure_capture(cap: Any, resolution: Tuple[int, int], log) -> None:
    width, height = resolution
    try:
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
    except Exception:
        log.debug("Unable to request %dx%d", width, height, exc_info=True)


def try_open_capture(
    device: DeviceRef,
    factory: CaptureFactory,
    resolution: Tuple[int, int],
    log,
) -> Any:
    """Open one device or raise AcquisitionError. Runs in an executor thread."""

    try:
        cap = factory(device)
    except AcquisitionError:
        raise
    except Exception as exc:
        raise AcquisitionError(AcquisitionReason.UNKNOWN, f"{device}: {exc}") from exc

    if cap is None:
        raise AcquisitionError(AcquisitionReason.NO_DEVICE, str(device))
    if not cap.isOpened():
        release_capture(cap, log)
        raise AcquisitionError(AcquisitionReason.NO_DEVICE, str(device))

    _configure_capture(cap, resolution, log)
    return cap


def acquire_first(
    devices: Sequence[DeviceRef],
    factory: CaptureFactory,
    resolution: Tuple[int, int],
    log,
    failures: List[AcquisitionReason],
) -> Optional[Tuple[DeviceRef, Any]]:
    """Return the first device that opens; record the reason of each miss."""

    for device in devices:
        try:
            cap = try_open_capture(device, factory, resolution, log)
        except AcquisitionError as exc:
            log.debug("Device %s unavailable (%s)", device, exc)
            failures.append(exc.reason)
            continue
        return device, cap
    return None


# ---------------------------------------------------------------------------
# CameraHandle


class CameraHandle:
    """Exclusive owner of one capture device and the sink it feeds.

    All capture calls (open, read, release) run on a single worker thread so
    a release can never race a read in flight.
    """

    def __init__(
        self,
        device: DeviceRef,
        capture: Any,
        *,
        executor: Optional[concurrent.futures.ThreadPoolExecutor] = None,
        logger: LoggerLike = None,
    ) -> None:
        self.device = device
        self._logger = ensure_structured_logger(logger, fallback_name=__name__)
        self._cap = capture
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="scancam"
        )
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sink: Optional[FrameSink] = None
        self._running = False
        self._closed = False
        self._producer_future: Optional[concurrent.futures.Future] = None

    @property
    def is_open(self) -> bool:
        return self._cap is not None and not self._closed

    @property
    def sink(self) -> Optional[FrameSink]:
        return self._sink

    async def attach(self, sink: FrameSink, *, timeout: Optional[float] = None) -> None:
        """Start feeding ``sink`` and wait until it holds a frame."""

        if not self.is_open:
            raise AttachError(f"camera {self.device} is closed")
        if self._sink is not None:
            raise AttachError(f"camera {self.device} already has a sink")
        self._loop = asyncio.get_running_loop()
        self._sink = sink
        self._running = True
        self._producer_future = self._executor.submit(self._producer_loop, sink)
        await sink.wait_ready(timeout)
        self._logger.debug("Camera %s delivering frames", self.device)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._running = False

        sink, self._sink = self._sink, None
        if sink is not None:
            sink.detach()

        cap, self._cap = self._cap, None
        executor, self._executor = self._executor, None
        if cap is not None:
            loop = asyncio.get_running_loop()
            # Queued behind the producer loop on the single worker thread.
            await loop.run_in_executor(executor, release_capture, cap, self._logger)
        if executor is not None:
            executor.shutdown(wait=False)
        self._logger.info("Released camera %s", self.device)

    # ------------------------------------------------------------------ producer

    def _producer_loop(self, sink: FrameSink) -> None:
        cap = self._cap
        while self._running and cap is not None:
            success, frame = cap.read()
            if not self._running:
                break
            if not success or frame is None:
                self._running = False
                self._notify(sink.fail, DeviceLost(f"camera {self.device} lost or failed to read"))
                break
            self._notify(sink.offer, frame)

    def _notify(self, callback: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None:
            return
        with contextlib.suppress(RuntimeError):  # loop already closed
            loop.call_soon_threadsafe(callback, *args)


async def open_camera(
    preference: FacingMode,
    settings: CameraSettings,
    *,
    capture_factory: Optional[CaptureFactory] = None,
    logger: LoggerLike = None,
) -> CameraHandle:
    """Acquire a camera, preferring the environment-facing device.

    Falls back to every candidate in ``settings.devices`` before raising
    :class:`AcquisitionError`.
    """

    log = ensure_structured_logger(logger, fallback_name=__name__)
    factory = capture_factory or open_video_capture
    loop = asyncio.get_running_loop()
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="scancam")

    attempts: List[Tuple[FacingMode, Tuple[DeviceRef, ...]]] = []
    if preference is FacingMode.ENVIRONMENT:
        if settings.environment_device is not None:
            attempts.append((FacingMode.ENVIRONMENT, (settings.environment_device,)))
        else:
            log.debug("No environment-facing device configured; trying any camera")
    attempts.append((FacingMode.ANY, tuple(settings.devices)))

    failures: List[AcquisitionReason] = []
    try:
        for mode, devices in attempts:
            found = await loop.run_in_executor(
                executor, acquire_first, devices, factory, settings.resolution, log, failures
            )
            if found is not None:
                device, cap = found
                log.info("Acquired camera %s (%s)", device, mode.value)
                return CameraHandle(device, cap, executor=executor, logger=log)
            log.debug("No camera available for %s", mode.value)
    except BaseException:
        executor.shutdown(wait=False)
        raise

    executor.shutdown(wait=False)
    reason = resolve_failure_reason(failures)
    raise AcquisitionError(reason, f"tried {sum(len(d) for _, d in attempts)} device(s)")


__all__ = [
    "CameraHandle",
    "CaptureFactory",
    "Frame",
    "FrameSink",
    "acquire_first",
    "open_camera",
    "open_video_capture",
    "release_capture",
    "resolve_failure_reason",
    "try_open_capture",
]
