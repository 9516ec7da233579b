"""Shared pytest configuration and fixtures for the clinic-scan test suite."""

import sys
from pathlib import Path

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "hardware: mark test as requiring a physical camera"
    )


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--run-hardware",
        action="store_true",
        default=False,
        help="Run tests that require a physical camera",
    )


def pytest_collection_modifyitems(config, items):
    """Skip hardware tests unless --run-hardware is specified."""
    if config.getoption("--run-hardware"):
        return

    skip_hardware = pytest.mark.skip(reason="Need --run-hardware option to run")
    for item in items:
        if "hardware" in item.keywords:
            item.add_marker(skip_hardware)


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def capture_factory():
    """A capture factory exposing a single working camera at index 0."""
    from tests.infrastructure.mocks.camera_mocks import FakeCaptureFactory
    return FakeCaptureFactory({0: {}})


@pytest.fixture
def fake_clock():
    from tests.infrastructure.mocks.camera_mocks import FakeClock
    return FakeClock()


@pytest.fixture
def fast_config():
    """Scanner config with a 1 ms native poll so tests settle quickly."""
    from clinic_scan.scanner.config import DetectSettings, ScannerConfig
    return ScannerConfig(detect=DetectSettings(poll_interval_ms=1))
