"""Caller-facing handle over a running scan session."""

from __future__ import annotations

import asyncio
from typing import Optional

from clinic_scan.core.asyncio_utils import create_logged_task
from clinic_scan.core.logging_utils import LoggerLike

from .backends import DetectorEnvironment
from .config import ScannerConfig
from .controller import ScanSessionController
from .events import AcquisitionFailed, EventHandler, FatalBackendFailure, Ready, ScanEvent
from .state import ScanSession, SessionState


class SessionHandle:
    """Returned by :func:`open_session`; closing it releases the camera.

    Usable as an async context manager::

        async with open_session(print) as handle:
            if await handle.wait_ready():
                ...
    """

    def __init__(self, controller: ScanSessionController, on_event: Optional[EventHandler] = None) -> None:
        self.controller = controller
        self._on_event = on_event
        self._ready: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._open_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SessionState:
        return self.controller.state

    @property
    def generation(self) -> int:
        return self.controller.generation

    @property
    def session(self) -> ScanSession:
        return self.controller.session

    def start(self) -> None:
        if self._open_task is not None:
            return
        self._open_task = create_logged_task(
            self.controller.open(self._dispatch),
            logger=self.controller.logger,
            context="scan-session-open",
        )
        self._open_task.add_done_callback(lambda _task: self._resolve_ready(False))

    async def wait_ready(self) -> bool:
        """True once detection runs; False if the session failed or was closed first."""
        return await asyncio.shield(self._ready)

    async def close(self) -> None:
        await self.controller.close()
        task = self._open_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            await asyncio.wait({task})
        self._resolve_ready(False)

    async def __aenter__(self) -> "SessionHandle":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _resolve_ready(self, value: bool) -> None:
        if not self._ready.done():
            self._ready.set_result(value)

    def _dispatch(self, event: ScanEvent) -> None:
        if isinstance(event, Ready):
            self._resolve_ready(True)
        elif isinstance(event, (AcquisitionFailed, FatalBackendFailure)):
            self._resolve_ready(False)
        if self._on_event is not None:
            self._on_event(event)


def open_session(
    on_event: Optional[EventHandler] = None,
    *,
    config: Optional[ScannerConfig] = None,
    environment: Optional[DetectorEnvironment] = None,
    logger: LoggerLike = None,
) -> SessionHandle:
    """Begin scanning in the background; must be called from a running loop."""
    controller = ScanSessionController(config, environment=environment, logger=logger)
    handle = SessionHandle(controller, on_event)
    handle.start()
    return handle


__all__ = ["SessionHandle", "open_session"]
