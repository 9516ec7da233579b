"""Unit tests for ScanSessionController lifecycle and event delivery."""

import asyncio
import threading

import pytest

from clinic_scan.scanner.backends import FallbackEngineDetector
from clinic_scan.scanner.config import CameraSettings, DetectSettings, FallbackSettings, ScannerConfig
from clinic_scan.scanner.controller import ScanSessionController
from clinic_scan.scanner.errors import AcquisitionError, BackendUnavailable, DeviceLost, ScannerBusy
from clinic_scan.scanner.events import (
    AcquisitionFailed,
    BenignMiss,
    FatalBackendFailure,
    Ready,
    ScanResult,
)
from clinic_scan.scanner.state import (
    AcquisitionReason,
    BackendKind,
    CodeKind,
    ParsedCode,
    SessionState,
)
from tests.infrastructure.helpers import wait_until
from tests.infrastructure.mocks.camera_mocks import (
    FakeCaptureFactory,
    FakeClock,
    FakeFallbackFactory,
    ScriptedDetector,
    make_environment,
)


def _results(events):
    return [event.code for event in events if isinstance(event, ScanResult)]


def _without_misses(events):
    return [event for event in events if not isinstance(event, BenignMiss)]


@pytest.fixture
def events():
    return []


def _controller(capture_factory, config=None, **env_kwargs):
    config = config or ScannerConfig(detect=DetectSettings(poll_interval_ms=1))
    return ScanSessionController(config, environment=make_environment(capture_factory, **env_kwargs))


class TestOpenNative:
    @pytest.mark.asyncio
    async def test_ready_then_scan_result(self, capture_factory, events):
        detector = ScriptedDetector(["PRE-12345"])
        controller = _controller(capture_factory, detector=detector)

        await controller.open(events.append)
        try:
            assert controller.state is SessionState.DETECTING
            assert controller.backend_kind is BackendKind.NATIVE
            assert events[0] == Ready()

            await wait_until(lambda: _results(events))
            assert _results(events) == [ParsedCode(CodeKind.PRESCRIPTION, "PRE-12345")]
            assert controller.session.last_result.raw_text == "PRE-12345"
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_repeated_reads_are_debounced(self, capture_factory, events):
        detector = ScriptedDetector(default="PAT:PAT-9|EXTRA")
        controller = _controller(capture_factory, detector=detector, clock=FakeClock(0))

        await controller.open(events.append)
        try:
            await wait_until(lambda: detector.calls >= 5)
            assert _results(events) == [ParsedCode(CodeKind.PATIENT, "PAT-9")]
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_read_accepted_again_after_window(self, capture_factory, events):
        clock = FakeClock(0)
        detector = ScriptedDetector(default="PRE-1")
        controller = _controller(capture_factory, detector=detector, clock=clock)

        await controller.open(events.append)
        try:
            await wait_until(lambda: len(_results(events)) == 1)
            clock.advance(1500)
            await wait_until(lambda: len(_results(events)) == 2)
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_unrecognized_codes_still_delivered(self, capture_factory, events):
        controller = _controller(capture_factory, detector=ScriptedDetector(["  hello  "]))

        await controller.open(events.append)
        try:
            await wait_until(lambda: _results(events))
            assert _results(events) == [ParsedCode(CodeKind.UNRECOGNIZED, "hello")]
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_blank_decodes_ignored(self, capture_factory, events):
        detector = ScriptedDetector(["   ", "APT-3"])
        controller = _controller(capture_factory, detector=detector)

        await controller.open(events.append)
        try:
            await wait_until(lambda: _results(events))
            assert _results(events) == [ParsedCode(CodeKind.APPOINTMENT, "APT-3")]
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_benign_misses_reported(self, capture_factory, events):
        controller = _controller(capture_factory, detector=ScriptedDetector())

        await controller.open(events.append)
        try:
            await wait_until(lambda: any(isinstance(event, BenignMiss) for event in events))
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_benign_misses_can_be_silenced(self, capture_factory, events):
        config = ScannerConfig(detect=DetectSettings(poll_interval_ms=1), report_benign_miss=False)
        detector = ScriptedDetector()
        controller = _controller(capture_factory, config, detector=detector)

        await controller.open(events.append)
        try:
            await wait_until(lambda: detector.calls >= 3)
            assert events == [Ready()]
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_handler_exception_does_not_stop_session(self, capture_factory, caplog):
        seen = []

        def handler(event):
            seen.append(event)
            raise RuntimeError("ui bug")

        controller = _controller(capture_factory, detector=ScriptedDetector(["PRE-1"]))
        await controller.open(handler)
        try:
            await wait_until(lambda: _results(seen))
            assert controller.state is SessionState.DETECTING
            assert "Event handler raised" in caplog.text
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_open_twice_is_busy(self, capture_factory, events):
        controller = _controller(capture_factory)
        await controller.open(events.append)
        try:
            with pytest.raises(ScannerBusy):
                await controller.open(events.append)
        finally:
            await controller.close()


class TestAcquisitionFailure:
    @pytest.mark.asyncio
    async def test_no_device(self, events):
        factory = FakeCaptureFactory({})
        controller = _controller(factory)

        await controller.open(events.append)

        assert events == [AcquisitionFailed(AcquisitionReason.NO_DEVICE)]
        assert controller.state is SessionState.IDLE
        assert controller.generation == 1

    @pytest.mark.asyncio
    async def test_permission_denied(self, events):
        factory = FakeCaptureFactory({0: AcquisitionError(AcquisitionReason.PERMISSION_DENIED)})
        controller = _controller(factory)

        await controller.open(events.append)

        assert events == [AcquisitionFailed(AcquisitionReason.PERMISSION_DENIED)]

    @pytest.mark.asyncio
    async def test_camera_that_never_delivers(self, events):
        factory = FakeCaptureFactory({0: {"fail_after": 0}})
        controller = _controller(factory)

        await controller.open(events.append)

        assert events == [AcquisitionFailed(AcquisitionReason.UNKNOWN)]
        assert controller.state is SessionState.IDLE
        assert factory.open_captures == []

    @pytest.mark.asyncio
    async def test_readiness_timeout(self, events):
        factory = FakeCaptureFactory({0: {"read_delay": 0.3}})
        config = ScannerConfig(camera=CameraSettings(ready_timeout_ms=20))
        controller = _controller(factory, config)

        await controller.open(events.append)

        assert events == [AcquisitionFailed(AcquisitionReason.UNKNOWN)]
        assert factory.open_captures == []

    @pytest.mark.asyncio
    async def test_can_reopen_after_failure(self, events):
        factory = FakeCaptureFactory({})
        controller = _controller(factory)
        await controller.open(events.append)

        factory.devices[0] = {}
        await controller.open(events.append)
        try:
            assert controller.state is SessionState.DETECTING
            assert Ready() in events[1:]
        finally:
            await controller.close()


class TestBackendSelection:
    @pytest.mark.asyncio
    async def test_fallback_when_native_unavailable(self, capture_factory, events):
        open_at_start = []
        fallback = FakeFallbackFactory(on_start=lambda engine: open_at_start.append(len(capture_factory.open_captures)))
        controller = _controller(capture_factory, native=False, fallback=fallback)

        await controller.open(events.append)
        try:
            assert open_at_start == [0]
            assert controller.backend_kind is BackendKind.FALLBACK
            assert events == [Ready()]

            fallback.engine.push("APPT-20250101-ABC|DOC:X|DATE:Y")
            assert _results(events) == [ParsedCode(CodeKind.APPOINTMENT, "APPT-20250101-ABC")]
        finally:
            await controller.close()

        assert fallback.engine.stopped

    @pytest.mark.asyncio
    async def test_fallback_reads_are_debounced(self, capture_factory, events):
        clock = FakeClock(1000)
        fallback = FakeFallbackFactory()
        controller = _controller(capture_factory, native=False, fallback=fallback, clock=clock)

        await controller.open(events.append)
        try:
            fallback.engine.push("PRE-1")
            clock.advance(1499)
            fallback.engine.push("PRE-1")
            clock.advance(1)
            fallback.engine.push("PRE-1")

            expected = ParsedCode(CodeKind.PRESCRIPTION, "PRE-1")
            assert _results(events) == [expected, expected]
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_real_fallback_engine_owns_its_camera(self, events):
        factory = FakeCaptureFactory({0: {"fail_after": 30}})
        open_at_build = []

        def engine_factory(settings, camera_settings, *, capture_factory=None, logger=None):
            open_at_build.append(len(capture_factory.open_captures))
            return FallbackEngineDetector(
                FallbackSettings(fps=200.0, region=settings.region),
                camera_settings,
                capture_factory=capture_factory,
                decoder=lambda roi: ["PAT:PAT-9|X"],
                logger=logger,
            )

        controller = _controller(factory, native=False, fallback=engine_factory)

        await controller.open(events.append)
        try:
            assert open_at_build == [0]
            assert controller.backend_kind is BackendKind.FALLBACK
            assert len(factory.captures) == 2
            assert factory.captures[0].released

            await wait_until(lambda: controller.state is SessionState.IDLE)
        finally:
            await controller.close()

        assert _without_misses(events) == [
            Ready(),
            ScanResult(ParsedCode(CodeKind.PATIENT, "PAT-9")),
            FatalBackendFailure("device-lost"),
        ]
        assert factory.open_captures == []

        assert fallback.engine.stopped

    @pytest.mark.asyncio
    async def test_native_construction_failure_degrades(self, capture_factory, events):
        fallback = FakeFallbackFactory()
        controller = _controller(
            capture_factory, native_error=BackendUnavailable("no detector"), fallback=fallback
        )

        await controller.open(events.append)
        try:
            assert controller.backend_kind is BackendKind.FALLBACK
            assert fallback.engine.started
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_probe_exception_means_unavailable(self, capture_factory, events):
        fallback = FakeFallbackFactory()
        environment = make_environment(capture_factory, fallback=fallback)

        def exploding_probe():
            raise RuntimeError("probe crashed")

        environment.probe_native = exploding_probe
        controller = ScanSessionController(ScannerConfig(), environment=environment)

        await controller.open(events.append)
        try:
            assert controller.backend_kind is BackendKind.FALLBACK
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_prefer_native_disabled(self, capture_factory, events):
        config = ScannerConfig(detect=DetectSettings(prefer_native=False))
        controller = _controller(capture_factory, config)

        await controller.open(events.append)
        try:
            assert controller.backend_kind is BackendKind.FALLBACK
        finally:
            await controller.close()

    @pytest.mark.asyncio
    async def test_no_usable_backend(self, capture_factory, events):
        fallback = FakeFallbackFactory(error=BackendUnavailable("no zbar"))
        controller = _controller(capture_factory, native=False, fallback=fallback)

        await controller.open(events.append)

        assert events == [FatalBackendFailure("no-backend")]
        assert controller.state is SessionState.IDLE
        assert capture_factory.open_captures == []

    @pytest.mark.asyncio
    async def test_fallback_start_failure(self, capture_factory, events):
        fallback = FakeFallbackFactory(start_error="no camera for fallback engine (no-device)")
        controller = _controller(capture_factory, native=False, fallback=fallback)

        await controller.open(events.append)

        assert events == [FatalBackendFailure("no camera for fallback engine (no-device)")]
        assert controller.state is SessionState.IDLE
        assert fallback.engine.stopped


class TestClose:
    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, capture_factory, events):
        controller = _controller(capture_factory)
        await controller.open(events.append)

        await controller.close()
        await controller.close()

        assert controller.state is SessionState.IDLE
        assert capture_factory.captures[0].release_count == 1

    @pytest.mark.asyncio
    async def test_close_on_idle_controller(self):
        controller = _controller(FakeCaptureFactory())
        await controller.close()
        assert controller.state is SessionState.IDLE
        assert controller.generation == 1

    @pytest.mark.asyncio
    async def test_concurrent_close(self, capture_factory, events):
        controller = _controller(capture_factory)
        await controller.open(events.append)

        await asyncio.gather(controller.close(), controller.close(), controller.close())

        assert controller.state is SessionState.IDLE
        assert capture_factory.open_captures == []

    @pytest.mark.asyncio
    async def test_open_close_cycles_leave_no_device_open(self, capture_factory, events):
        controller = _controller(capture_factory)
        for _ in range(5):
            await controller.open(events.append)
            await controller.close()

        assert len(capture_factory.captures) == 5
        assert capture_factory.open_captures == []
        assert controller.generation == 10

    @pytest.mark.asyncio
    async def test_close_during_acquisition_suppresses_everything(self, events):
        gate = threading.Event()
        factory = FakeCaptureFactory({0: {}}, gate=gate)
        controller = _controller(factory)

        opening = asyncio.create_task(controller.open(events.append))
        await wait_until(lambda: controller.state is SessionState.ACQUIRING)
        closing = asyncio.create_task(controller.close())
        await asyncio.sleep(0.01)
        assert not closing.done()

        gate.set()
        await closing
        await opening

        assert events == []
        assert controller.state is SessionState.IDLE
        assert factory.open_captures == []

    @pytest.mark.asyncio
    async def test_close_during_readiness_wait(self, events):
        factory = FakeCaptureFactory({0: {"read_delay": 0.2}})
        controller = _controller(factory)

        opening = asyncio.create_task(controller.open(events.append))
        await wait_until(lambda: controller.camera is not None)
        await controller.close()
        await opening

        assert events == []
        assert factory.open_captures == []

    @pytest.mark.asyncio
    async def test_no_events_after_close(self, capture_factory, events):
        fallback = FakeFallbackFactory()
        controller = _controller(capture_factory, native=False, fallback=fallback)
        await controller.open(events.append)
        engine = fallback.engine

        await controller.close()
        engine.push("PRE-1")
        engine.miss()

        assert events == [Ready()]

    @pytest.mark.asyncio
    async def test_cancelled_open_releases_camera(self, events):
        factory = FakeCaptureFactory({0: {"read_delay": 0.2}})
        controller = _controller(factory)

        opening = asyncio.create_task(controller.open(events.append))
        await wait_until(lambda: controller.camera is not None)
        opening.cancel()
        with pytest.raises(asyncio.CancelledError):
            await opening

        assert controller.state is SessionState.IDLE
        assert factory.open_captures == []


class TestBackendFailure:
    @pytest.mark.asyncio
    async def test_device_lost_while_detecting(self, events):
        factory = FakeCaptureFactory({0: {"fail_after": 5}})
        controller = _controller(factory)

        await controller.open(events.append)
        await wait_until(lambda: FatalBackendFailure("device-lost") in events)
        await wait_until(lambda: controller.state is SessionState.IDLE)

        assert factory.open_captures == []
        assert _without_misses(events) == [Ready(), FatalBackendFailure("device-lost")]

    @pytest.mark.asyncio
    async def test_fallback_engine_failure(self, capture_factory, events):
        fallback = FakeFallbackFactory()
        controller = _controller(capture_factory, native=False, fallback=fallback)
        await controller.open(events.append)

        fallback.engine.fail(DeviceLost("unplugged"))

        assert controller.state is SessionState.ERROR
        await wait_until(lambda: controller.state is SessionState.IDLE)
        assert fallback.engine.stopped
        assert events == [Ready(), FatalBackendFailure("device-lost")]


class TestSessionSnapshot:
    @pytest.mark.asyncio
    async def test_snapshot_tracks_session(self, capture_factory, events):
        controller = _controller(capture_factory)
        assert controller.session.state is SessionState.IDLE
        assert controller.session.backend_kind is BackendKind.UNDETERMINED

        await controller.open(events.append)
        snapshot = controller.session
        await controller.close()

        assert snapshot.generation == 1
        assert snapshot.state is SessionState.DETECTING
        assert snapshot.backend_kind is BackendKind.NATIVE
        assert controller.session.backend_kind is BackendKind.UNDETERMINED
