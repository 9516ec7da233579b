"""Unit tests for the clinic-scan command line."""

import argparse
import logging
import sys

import pytest

from clinic_scan.cli import scan
from clinic_scan.cli.common import device_ref
from clinic_scan.core.paths import SCANNER_CONFIG_PATH
from clinic_scan.core.preferences import ModulePreferences
from clinic_scan.scanner.events import AcquisitionFailed, BenignMiss, FatalBackendFailure, Ready, ScanResult
from clinic_scan.scanner.state import AcquisitionReason, CodeKind, ParsedCode
from tests.infrastructure.mocks.camera_mocks import FakeCaptureFactory, ScriptedDetector, make_environment


@pytest.fixture
def restore_logging(monkeypatch):
    """main() reconfigures root logging and the excepthook; put both back."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.txt"
    path.write_text(SCANNER_CONFIG_PATH.read_text(encoding="utf-8"), encoding="utf-8")
    return path


class TestParser:
    def test_defaults(self):
        args = scan.build_parser().parse_args([])
        assert args.backend == "auto"
        assert args.device is None
        assert not args.once
        assert args.log_level is None

    def test_device_argument(self):
        args = scan.build_parser().parse_args(["--device", "/dev/video3", "--backend", "fallback", "--once"])
        assert args.device == "/dev/video3"
        assert args.backend == "fallback"
        assert args.once

    def test_device_ref(self):
        assert device_ref("2") == 2
        assert device_ref(" /dev/video1 ") == "/dev/video1"
        with pytest.raises(argparse.ArgumentTypeError):
            device_ref("  ")


class TestFormatEvent:
    def test_lines(self):
        assert scan.format_event(Ready()) == "ready"
        assert scan.format_event(ScanResult(ParsedCode(CodeKind.PATIENT, "PAT-9"))) == "patient\tPAT-9"
        assert scan.format_event(AcquisitionFailed(AcquisitionReason.NO_DEVICE)) == "acquisition-failed\tno-device"
        assert scan.format_event(FatalBackendFailure("device-lost")) == "backend-failed\tdevice-lost"
        assert scan.format_event(BenignMiss()) is None


class TestBuildEnvironment:
    def test_fallback_forces_probe_off(self):
        assert scan.build_environment("fallback").probe_native() is False

    def test_native_disables_fallback(self):
        environment = scan.build_environment("native")
        with pytest.raises(Exception):
            environment.fallback_factory(None, None)


class TestMain:
    def test_once_exits_after_recognised_code(self, monkeypatch, capsys, config_file, restore_logging):
        environment = make_environment(FakeCaptureFactory({0: {}}), detector=ScriptedDetector(["hello", "PRE-9"]))
        monkeypatch.setattr(scan, "build_environment", lambda backend: environment)

        code = scan.main(["--config", str(config_file), "--once", "--log-level", "warning"])

        out = capsys.readouterr().out.splitlines()
        assert code == scan.EXIT_OK
        assert out[0] == "ready"
        assert "unrecognized\thello" in out
        assert out[-1] == "prescription\tPRE-9"

    def test_acquisition_failure_exit_code(self, monkeypatch, capsys, config_file, restore_logging):
        environment = make_environment(FakeCaptureFactory({}))
        monkeypatch.setattr(scan, "build_environment", lambda backend: environment)

        code = scan.main(["--config", str(config_file)])

        assert code == scan.EXIT_FAILURE
        assert capsys.readouterr().out.strip() == "acquisition-failed\tno-device"

    def test_save_device(self, monkeypatch, config_file, restore_logging):
        environment = make_environment(FakeCaptureFactory({}))
        monkeypatch.setattr(scan, "build_environment", lambda backend: environment)

        scan.main(["--config", str(config_file), "--device", "4", "--save-device"])

        saved = ModulePreferences(config_file)
        assert saved.get("camera.environment_device") == "4"
        assert saved.get("debounce.window_ms") == "1500"
        assert environment.capture_factory.calls[0] == 4
