"""Application entry point for the stackwatch orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv

import settings
from adapters.command_services import CommandStackServices
from adapters.fs_watcher import FileChangeWatcher
from adapters.status_formatting import format_transition
from core.config import FingerprintConfig, StageCommands
from core.errors import FingerprintFailure
from core.fingerprint import compute_fingerprint
from core.machine import OrchestrationMachine, build_stacks_machine
from core.models import EventType, MachineState, TransitionRecord

NAME = "STACKWATCH"
FONT = "tarty-1"

DEFAULT_REDACT = ["AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN"]


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", True):
        return []
    values = []
    for name in redact_cfg.get("patterns", DEFAULT_REDACT):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging(console: bool = True) -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", True):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    # The status panel owns the terminal, so console output is only used headless.
    if console and config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/stackwatch.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.CONFIG_DIR, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _fingerprint_config() -> FingerprintConfig:
    return FingerprintConfig(
        manifest_name=settings.MANIFEST_NAME,
        artifact_type=settings.ARTIFACT_TYPE,
    )


def _build_machine() -> OrchestrationMachine:
    services = CommandStackServices(
        root=settings.ROOT,
        commands=StageCommands(
            build=settings.BUILD_COMMAND,
            synth=settings.SYNTH_COMMAND,
            deploy=settings.DEPLOY_COMMAND,
        ),
        output_dir=settings.OUTPUT_DIR,
        fingerprint_config=_fingerprint_config(),
        env=settings.COMMAND_ENV,
    )
    return build_stacks_machine(services, settings.OUTPUT_DIR, _fingerprint_config())


def _log_transitions(machine: OrchestrationMachine) -> None:
    logger = logging.getLogger("stackwatch.transitions")

    def listener(record: TransitionRecord) -> None:
        if record.halted:
            logger.error(format_transition(record))
        else:
            logger.info(format_transition(record))

    machine.subscribe(listener)


def _enable_auto_deploy(machine: OrchestrationMachine) -> None:
    def listener(record: TransitionRecord) -> None:
        if record.target == MachineState.DEPLOYABLE and not record.halted:
            machine.send(EventType.TRIGGER_DEPLOY)

    machine.subscribe(listener)


async def _run_headless(machine: OrchestrationMachine, watcher: FileChangeWatcher) -> None:
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()

    stop_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises.
            pass

    watcher.start()
    runner = asyncio.create_task(machine.run())
    waiter = asyncio.create_task(stop_requested.wait())
    try:
        await asyncio.wait({runner, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if runner.done():
            # The dispatch loop only returns after stop(); anything else is a crash.
            runner.result()
            raise RuntimeError("Machine stopped without a shutdown request")
        logger.info("Shutdown requested")
    finally:
        waiter.cancel()
        watcher.stop()
        if not runner.done():
            if machine.in_flight is not None:
                logger.info("Waiting for %s to finish before exit", machine.in_flight)
            await machine.stop()
            await runner


def _run(headless: bool) -> int:
    _print_banner()
    _configure_logging(console=headless)
    logger = logging.getLogger(__name__)

    logger.info("Starting stackwatch in %s", settings.ROOT)

    try:
        machine = _build_machine()
    except FingerprintFailure as exc:
        logger.error("Cannot establish the deployed baseline: %s", exc)
        print(
            f"No usable synth output in {settings.OUTPUT_DIR}: {exc}\n"
            "Run an initial synth/deploy before starting the watcher.",
            file=sys.stderr,
        )
        return 1

    _log_transitions(machine)
    if headless or settings.AUTO_DEPLOY:
        _enable_auto_deploy(machine)
        logger.info("Auto deploy enabled")

    watcher = FileChangeWatcher(
        settings.ROOT,
        settings.WATCH_IGNORE,
        on_change=lambda: machine.send(EventType.FILE_CHANGE),
        debounce=settings.WATCH_DEBOUNCE,
    )

    if headless:
        try:
            asyncio.run(_run_headless(machine, watcher))
        except Exception:
            logger.exception("Orchestration loop failed")
            return 1
        return 0

    from frontend.app import run_status_panel

    run_status_panel(machine, watcher, settings.ROOT, settings.OUTPUT_DIR)
    return 0


def _fingerprint() -> int:
    try:
        digest = compute_fingerprint(
            settings.OUTPUT_DIR,
            manifest_name=settings.MANIFEST_NAME,
            artifact_type=settings.ARTIFACT_TYPE,
        )
    except FingerprintFailure as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(digest)
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="stackwatch")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Watch, build, synth and deploy")
    run_parser.add_argument(
        "--headless",
        action="store_true",
        help="Log to the console instead of the status panel and deploy automatically.",
    )
    subparsers.add_parser(
        "fingerprint",
        help="Print the fingerprint of the current synth output.",
    )

    args = parser.parse_args(argv)
    if args.command == "fingerprint":
        sys.exit(_fingerprint())
    sys.exit(_run(headless=getattr(args, "headless", False)))


if __name__ == "__main__":
    main()
