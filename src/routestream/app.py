"""Application entry point for the routestream listener and emitter."""

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

from routestream import settings
from routestream.adapters.sqlite_storage import SQLiteBucketStore
from routestream.adapters.ws_emitter import EmitterService
from routestream.adapters.ws_listener import ListenerService
from routestream.core.crypto import CryptoIntegrityLayer
from routestream.core.errors import ReconnectExhausted
from routestream.core.generator import load_reference_data
from routestream.core.processor import BatchProcessor
from routestream.core.stats import ProcessingStats

NAME = "ROUTESTREAM"
FONT = "tarty-1"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
MASK = "***"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _SecretFilter(logging.Filter):
    """Masks secret values in the rendered message before any handler sees it."""

    def __init__(self, secrets: list[str]) -> None:
        super().__init__()
        # Longest first so a secret containing another is masked whole.
        self._secrets = sorted({secret for secret in secrets if secret}, key=len, reverse=True)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        for secret in self._secrets:
            message = message.replace(secret, MASK)
        record.msg, record.args = message, None
        return True


def _secret_values(redact_cfg: dict) -> list[str]:
    if not redact_cfg.get("enabled", True):
        return []
    names = redact_cfg.get("patterns", ["ENCRYPTION_KEY"])
    return [os.environ[name] for name in names if os.environ.get(name)]


def _log_file_path(service: str, file_cfg: dict) -> str:
    path = file_cfg.get("path", "logs/{service}.log").format(service=service)
    if not os.path.isabs(path):
        path = os.path.join(settings.PROJECT_ROOT, path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    return path


def _build_handlers(service: str, config: dict) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if config.get("console", True):
        handlers.append(logging.StreamHandler())

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        # Rotation is the only log retention.
        handlers.append(
            RotatingFileHandler(
                _log_file_path(service, file_cfg),
                maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
                backupCount=int(file_cfg.get("backup_count", 5)),
                encoding="utf-8",
            )
        )
    return handlers


def _configure_logging(service: str) -> None:
    """Console plus optional rotating file, per service, with secrets masked."""

    config = settings.LOGGING or {}
    if not config.get("enabled", True):
        return
    handlers = _build_handlers(service, config)
    if not handlers:
        return

    level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    secret_filter = _SecretFilter(_secret_values(config.get("redact", {})))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(secret_filter)
    logging.basicConfig(level=level, handlers=handlers)


def _install_stop_signals(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises.
            pass


async def _run_listener() -> int:
    logger = logging.getLogger(__name__)

    store = SQLiteBucketStore(settings.LISTENER.db_path, timeout=settings.LISTENER.persist_timeout)
    store.init_db()
    logger.info("Bucket store ready at %s", settings.LISTENER.db_path)

    processor = BatchProcessor(
        crypto=CryptoIntegrityLayer(settings.CRYPTO.secret_key),
        store=store,
        stats=ProcessingStats(),
        persist_timeout=settings.LISTENER.persist_timeout,
    )
    service = ListenerService(processor, store, settings.LISTENER)

    stop_event = asyncio.Event()
    _install_stop_signals(stop_event)
    await service.start()
    await stop_event.wait()

    if not await service.shutdown():
        return 1
    return 0


async def _run_emitter() -> int:
    logger = logging.getLogger(__name__)

    data = load_reference_data(settings.REFERENCE_DATA_PATH)
    service = EmitterService(
        config=settings.EMITTER,
        crypto=CryptoIntegrityLayer(settings.CRYPTO.secret_key),
        data=data,
    )

    stop_event = asyncio.Event()
    _install_stop_signals(stop_event)
    run_task = asyncio.ensure_future(service.run())
    stop_task = asyncio.ensure_future(stop_event.wait())
    await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    if stop_task.done():
        logger.info("Received shutdown signal, shutting down gracefully")
        await service.stop()
    stop_task.cancel()

    try:
        await run_task
    except ReconnectExhausted as exc:
        logger.critical("%s; restart the emitter once the listener is reachable", exc)
        return 1
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="routestream")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("listener", help="Start the ingestion listener")
    subparsers.add_parser("emitter", help="Start the batch emitter")

    args = parser.parse_args(argv)
    if args.command not in {"listener", "emitter"}:
        parser.print_help()
        return

    _print_banner()
    _configure_logging(args.command)
    logging.getLogger(__name__).info("Starting %s", args.command)

    runner = _run_listener if args.command == "listener" else _run_emitter
    sys.exit(asyncio.run(runner()))


if __name__ == "__main__":
    main()
