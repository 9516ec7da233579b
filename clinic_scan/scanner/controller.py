"""Scan session lifecycle: acquire, detect, debounce, route, release."""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Dict, Optional, Set

from clinic_scan.core.asyncio_utils import create_logged_task
from clinic_scan.core.logging_utils import LoggerLike, ensure_structured_logger

from .backends import DetectorBackend, DetectorEnvironment, PolledNativeBackend
from .camera import CameraHandle, FrameSink, open_camera
from .config import ScannerConfig
from .debounce import DebounceGate
from .errors import AcquisitionError, AttachAborted, AttachError, DeviceLost, ScannerBusy, StartError
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
from .state import AcquisitionReason, BackendKind, DecodedEvent, ScanSession, SessionState

_TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
    SessionState.IDLE: {SessionState.ACQUIRING, SessionState.CLOSING},
    SessionState.ACQUIRING: {SessionState.DETECTING, SessionState.ERROR, SessionState.CLOSING},
    SessionState.DETECTING: {SessionState.ERROR, SessionState.CLOSING},
    SessionState.ERROR: {SessionState.IDLE, SessionState.CLOSING},
    SessionState.CLOSING: {SessionState.IDLE},
}


class ScanSessionController:
    """Owns one camera session at a time and turns frames into typed events.

    Every ``open()`` and ``close()`` bumps ``generation``. Work resumed after
    an await compares the generation it started under with the live one and
    quietly unwinds on mismatch, so a superseded session can never emit
    events or keep a device open.
    """

    def __init__(
        self,
        config: Optional[ScannerConfig] = None,
        *,
        environment: Optional[DetectorEnvironment] = None,
        router: Optional[PayloadRouter] = None,
        logger: LoggerLike = None,
    ) -> None:
        self.config = config or ScannerConfig()
        self.environment = environment or DetectorEnvironment()
        self.router = router or PayloadRouter(self.config.prefix_rules)
        self.logger = ensure_structured_logger(logger, component="ScanSession", fallback_name=__name__)
        # Shared across sessions so reopening right after a scan cannot
        # report the same code twice.
        self.debounce = DebounceGate(self.config.detect.debounce_window_ms)

        self._generation = 0
        self._open_count = 0
        self._state = SessionState.IDLE
        self._backend_kind = BackendKind.UNDETERMINED
        self._last_result: Optional[DecodedEvent] = None
        self._on_event: Optional[EventHandler] = None
        self._camera: Optional[CameraHandle] = None
        self._sink: Optional[FrameSink] = None
        self._backend: Optional[DetectorBackend] = None
        self._open_task: Optional[asyncio.Task] = None
        self._close_lock = asyncio.Lock()
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ views

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def backend_kind(self) -> BackendKind:
        return self._backend_kind

    @property
    def camera(self) -> Optional[CameraHandle]:
        return self._camera

    @property
    def session(self) -> ScanSession:
        return ScanSession(
            generation=self._generation,
            state=self._state,
            backend_kind=self._backend_kind,
            last_result=self._last_result,
        )

    # ------------------------------------------------------------------ lifecycle

    async def open(self, on_event: EventHandler) -> None:
        """Start a session; returns once it is detecting or has failed.

        Failures are reported through ``on_event`` rather than raised.
        """
        if self._state is not SessionState.IDLE:
            raise ScannerBusy(f"scan session is {self._state.value}")

        self._generation += 1
        self._open_count += 1
        generation = self._generation
        self._on_event = on_event
        self._backend_kind = BackendKind.UNDETERMINED
        self._last_result = None
        self._sink = FrameSink()
        self._set_state(SessionState.ACQUIRING)

        task = asyncio.get_running_loop().create_task(self._run_open(generation))
        task.set_name(f"scan-open-{generation}")
        self._open_task = task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            await self.close()
            raise

    async def close(self) -> None:
        """Tear the session down from any state. Safe to call repeatedly."""
        self._generation += 1
        opened = self._open_count
        if self._state is not SessionState.IDLE:
            self._set_state(SessionState.CLOSING)
        sink = self._sink
        if sink is not None:
            sink.abort()

        async with self._close_lock:
            if opened != self._open_count:
                # Torn down already; a newer session owns the controller now.
                return

            task, self._open_task = self._open_task, None
            if task is not None and task is not asyncio.current_task() and not task.done():
                await asyncio.wait({task})

            backend, self._backend = self._backend, None
            if backend is not None:
                try:
                    await backend.stop()
                except Exception:
                    self.logger.debug("Backend stop failed", exc_info=True)

            await self._release_camera()
            self._sink = None
            self._backend_kind = BackendKind.UNDETERMINED
            if self._state is not SessionState.IDLE:
                self._set_state(SessionState.IDLE)
                self.logger.info("Scan session closed")

    # ------------------------------------------------------------------ open pipeline

    async def _run_open(self, generation: int) -> None:
        try:
            await self._open_pipeline(generation)
        except Exception:
            self.logger.exception("Unexpected failure while opening scan session")
            if self._is_current(generation):
                self._set_state(SessionState.ERROR)
                self._emit(generation, FatalBackendFailure("internal-error"))
                await self._teardown_resources()
                if self._is_current(generation):
                    self._set_state(SessionState.IDLE)

    async def _open_pipeline(self, generation: int) -> None:
        settings = self.config.camera
        sink = self._sink
        try:
            camera = await open_camera(
                settings.preference,
                settings,
                capture_factory=self.environment.capture_factory,
                logger=self.logger.getChild("camera"),
            )
        except AcquisitionError as exc:
            if not self._is_current(generation):
                self.logger.debug("Acquisition failure for stale session %d dropped", generation)
                return
            self.logger.warning("Camera acquisition failed: %s", exc)
            self._fail_acquisition(generation, exc.reason)
            return

        if not self._is_current(generation) or sink is None:
            self.logger.debug("Session %d superseded during acquisition; releasing camera", generation)
            await camera.close()
            return
        self._camera = camera

        try:
            await camera.attach(sink, timeout=settings.ready_timeout)
        except AttachAborted:
            self.logger.debug("Readiness wait aborted for session %d", generation)
            return
        except AttachError as exc:
            if not self._is_current(generation):
                return
            self.logger.warning("Camera never became ready: %s", exc)
            await self._release_camera()
            self._fail_acquisition(generation, AcquisitionReason.UNKNOWN)
            return
        if not self._is_current(generation):
            return

        backend = await self._select_backend(generation, sink)
        if not self._is_current(generation):
            return
        if backend is None:
            await self._fatal(generation, "no-backend")
            return

        try:
            await backend.start(
                partial(self._handle_decoded, generation),
                partial(self._handle_benign_miss, generation),
                on_failure=partial(self._handle_backend_failure, generation),
            )
        except StartError as exc:
            self.logger.error("Detector backend failed to start: %s", exc)
            await self._stop_quietly(backend)
            if self._is_current(generation):
                await self._fatal(generation, str(exc))
            return

        if not self._is_current(generation):
            await self._stop_quietly(backend)
            return
        self._backend = backend
        self._backend_kind = backend.kind
        self._set_state(SessionState.DETECTING)
        self.logger.info("Scanning with %s backend", backend.kind.value)
        self._emit(generation, Ready())

    async def _select_backend(self, generation: int, sink: FrameSink) -> Optional[DetectorBackend]:
        detect = self.config.detect
        native_ok = False
        if detect.prefer_native:
            try:
                native_ok = bool(self.environment.probe_native())
            except Exception:
                self.logger.debug("Native capability probe raised", exc_info=True)
        else:
            self.logger.info("Native detection disabled by configuration")

        if native_ok:
            try:
                detector = self.environment.native_factory()
            except Exception as exc:
                self.logger.warning("Native detector unavailable (%s); using fallback engine", exc)
            else:
                return PolledNativeBackend(
                    detector,
                    sink,
                    interval=detect.poll_interval_ms / 1000.0,
                    is_live=partial(self._is_detecting, generation),
                    logger=self.logger.getChild("native"),
                )

        # The fallback engine opens the device itself.
        await self._release_camera()
        if not self._is_current(generation):
            return None
        try:
            return self.environment.fallback_factory(
                self.config.fallback,
                self.config.camera,
                capture_factory=self.environment.capture_factory,
                logger=self.logger.getChild("fallback"),
            )
        except Exception as exc:
            self.logger.error("Fallback engine unavailable: %s", exc)
            return None

    # ------------------------------------------------------------------ backend callbacks

    def _handle_decoded(self, generation: int, text: str) -> None:
        if not self._is_detecting(generation):
            self.logger.debug("Dropping decode from stale session %d", generation)
            return
        trimmed = text.strip()
        if not trimmed:
            return
        now_ms = self.environment.clock()
        if not self.debounce.accept(trimmed, now_ms):
            self.logger.debug("Debounced repeat read %r", trimmed)
            return
        self._last_result = DecodedEvent(trimmed, now_ms)
        code = self.router.route(trimmed)
        self.logger.info("Scanned %s code %r", code.kind.value, code.value)
        self._emit(generation, ScanResult(code))

    def _handle_benign_miss(self, generation: int) -> None:
        if self.config.report_benign_miss and self._is_detecting(generation):
            self._emit(generation, BenignMiss())

    def _handle_backend_failure(self, generation: int, error: Exception) -> None:
        if not self._is_detecting(generation):
            return
        reason = "device-lost" if isinstance(error, DeviceLost) else (str(error) or type(error).__name__)
        self.logger.error("Detector backend failed: %s", reason)
        self._set_state(SessionState.ERROR)
        self._emit(generation, FatalBackendFailure(reason))
        create_logged_task(
            self.close(),
            logger=self.logger,
            context="scan-close-after-failure",
            pending=self._pending,
        )

    # ------------------------------------------------------------------ helpers

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _is_detecting(self, generation: int) -> bool:
        return generation == self._generation and self._state is SessionState.DETECTING

    def _set_state(self, new_state: SessionState) -> bool:
        current = self._state
        if new_state is current:
            return True
        if new_state not in _TRANSITIONS[current]:
            self.logger.warning(
                "Ignoring invalid transition %s -> %s", current.value, new_state.value
            )
            return False
        self._state = new_state
        self.logger.debug("State %s -> %s", current.value, new_state.value)
        return True

    def _fail_acquisition(self, generation: int, reason: AcquisitionReason) -> None:
        self._set_state(SessionState.ERROR)
        self._emit(generation, AcquisitionFailed(reason))
        self._sink = None
        self._set_state(SessionState.IDLE)

    async def _fatal(self, generation: int, reason: str) -> None:
        self._set_state(SessionState.ERROR)
        self._emit(generation, FatalBackendFailure(reason))
        await self._teardown_resources()
        if self._is_current(generation):
            self._sink = None
            self._set_state(SessionState.IDLE)

    async def _teardown_resources(self) -> None:
        backend, self._backend = self._backend, None
        if backend is not None:
            await self._stop_quietly(backend)
        await self._release_camera()

    async def _stop_quietly(self, backend: DetectorBackend) -> None:
        try:
            await backend.stop()
        except Exception:
            self.logger.debug("Backend stop failed", exc_info=True)

    async def _release_camera(self) -> None:
        camera, self._camera = self._camera, None
        if camera is None:
            return
        try:
            await camera.close()
        except Exception:
            self.logger.debug("Camera release failed", exc_info=True)

    def _emit(self, generation: int, event: ScanEvent) -> None:
        if generation != self._generation:
            self.logger.debug("Dropping %s from stale session %d", type(event).__name__, generation)
            return
        handler = self._on_event
        if handler is None:
            return
        try:
            handler(event)
        except Exception:
            self.logger.exception("Event handler raised for %s", type(event).__name__)


__all__ = ["ScanSessionController"]
