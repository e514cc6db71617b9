"""Command line entrypoint running the sync worker until signalled."""

from __future__ import annotations

import argparse
import asyncio
import signal
from collections.abc import Sequence

from librarysync import __version__
from librarysync.config import load_config
from librarysync.db import init_db
from librarysync.errors import ConfigurationError
from librarysync.logging import configure_logging, get_logger
from librarysync.logging_events import log_event
from librarysync.orchestrator.bootstrap import bootstrap_runtime
from librarysync.orchestrator.scheduler import Scheduler

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="librarysync-worker",
        description="Synchronise user libraries from the Spotify Web API.",
    )
    parser.add_argument("--log-level", default=None, help="override LIBRARYSYNC_LOG_LEVEL")
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single scheduler iteration and exit",
    )
    parser.add_argument("--version", action="version", version=__version__)
    return parser.parse_args(argv)


def _install_signal_handlers(scheduler: Scheduler) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, scheduler.request_stop)
        except (NotImplementedError, RuntimeError):
            signal.signal(signum, lambda *_: scheduler.request_stop())


async def _serve(scheduler: Scheduler, *, once: bool) -> None:
    if once:
        await scheduler.run_once()
        return
    _install_signal_handlers(scheduler)
    await scheduler.run()


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        config = load_config(require_vault=True)
    except ConfigurationError as exc:
        configure_logging("ERROR")
        logger.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR

    configure_logging(args.log_level or config.logging.level, config.logging.log_file)
    init_db()
    runtime = bootstrap_runtime(config)
    log_event(
        logger,
        "worker.start",
        component="worker_entrypoint",
        version=__version__,
        max_concurrency=config.catalog.max_concurrency,
        once=bool(args.once),
    )
    asyncio.run(_serve(runtime.scheduler, once=args.once))
    log_event(logger, "worker.stop", component="worker_entrypoint")
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
