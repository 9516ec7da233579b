"""``clinic-scan``: scan codes from a local camera and print them."""

from __future__ import annotations

import argparse
import asyncio
from typing import Optional, Sequence

from clinic_scan.core.logging_config import configure_logging
from clinic_scan.core.logging_utils import get_module_logger
from clinic_scan.core.paths import SCANNER_CONFIG_PATH
from clinic_scan.core.preferences import ModulePreferences
from clinic_scan.scanner import (
    AcquisitionFailed,
    BenignMiss,
    DetectorEnvironment,
    FatalBackendFailure,
    Ready,
    ScanEvent,
    ScanResult,
    load_config,
    open_session,
    persist_config_async,
)
from clinic_scan.scanner.errors import BackendUnavailable

from .common import (
    LOG_LEVELS,
    add_common_cli_arguments,
    device_ref,
    install_exception_handlers,
    install_signal_handlers,
)

EXIT_OK = 0
EXIT_FAILURE = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clinic-scan",
        description="Scan prescription, patient and appointment QR codes from a camera.",
    )
    add_common_cli_arguments(parser)
    parser.add_argument(
        "--device",
        type=device_ref,
        default=None,
        help="Camera index or path to treat as the environment-facing camera",
    )
    parser.add_argument(
        "--backend",
        choices=("auto", "native", "fallback"),
        default="auto",
        help="Force a decoding backend (default: native when available)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Exit after the first recognised code",
    )
    parser.add_argument(
        "--save-device",
        action="store_true",
        help="Persist --device as camera.environment_device",
    )
    return parser


def format_event(event: ScanEvent) -> Optional[str]:
    if isinstance(event, ScanResult):
        return f"{event.code.kind.value}\t{event.code.value}"
    if isinstance(event, Ready):
        return "ready"
    if isinstance(event, AcquisitionFailed):
        return f"acquisition-failed\t{event.reason.value}"
    if isinstance(event, FatalBackendFailure):
        return f"backend-failed\t{event.reason}"
    return None


def _fallback_disabled(*_args, **_kwargs):
    raise BackendUnavailable("fallback engine disabled by --backend native")


def build_environment(backend: str) -> DetectorEnvironment:
    environment = DetectorEnvironment()
    if backend == "native":
        environment.fallback_factory = _fallback_disabled
    elif backend == "fallback":
        environment.probe_native = lambda: False
    return environment


async def run_scanner(args: argparse.Namespace) -> int:
    preferences = ModulePreferences(args.config or SCANNER_CONFIG_PATH)
    overrides = {}
    if args.device is not None:
        overrides["camera.environment_device"] = args.device
    config = load_config(preferences, overrides)

    level = LOG_LEVELS[args.log_level] if args.log_level else config.logging.level
    log_file = args.log_file or config.logging.file
    try:
        configure_logging(level, force=True, log_file=log_file)
        bad_level = None
    except ValueError:
        configure_logging("INFO", force=True, log_file=log_file)
        bad_level = level
    logger = get_module_logger("cli", component="CLI")
    if bad_level is not None:
        logger.warning("Unknown log level %r in config; using INFO", bad_level)
    loop = asyncio.get_running_loop()
    install_exception_handlers(logger.logger, loop)

    if args.save_device:
        if args.device is None:
            logger.warning("--save-device given without --device; nothing saved")
        elif await persist_config_async(preferences, config):
            logger.info("Saved camera %s as the environment-facing device", args.device)
        else:
            logger.error("Could not save camera.environment_device to %s", preferences.config_path)

    finished = asyncio.Event()
    failed = False

    def on_event(event: ScanEvent) -> None:
        nonlocal failed
        if isinstance(event, BenignMiss):
            return
        line = format_event(event)
        if line is not None:
            print(line, flush=True)
        if isinstance(event, (AcquisitionFailed, FatalBackendFailure)):
            failed = True
            finished.set()
        elif isinstance(event, ScanResult) and args.once and event.code.recognized:
            finished.set()

    install_signal_handlers(finished.set, loop)
    handle = open_session(on_event, config=config, environment=build_environment(args.backend), logger=logger)
    try:
        await finished.wait()
    finally:
        await handle.close()

    return EXIT_FAILURE if failed else EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    try:
        return asyncio.run(run_scanner(args))
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
