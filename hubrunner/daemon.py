"""Daemon entry point wiring configuration, hub client and supervisor."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import suppress

from .apps import AppDiscovery
from .config import HostConfig, ensure_app_directory, resolve_config
from .hub import HubClient, WebSocketHubClient
from .storage import JsonStorageRepository
from .supervisor import ConnectionSupervisor, SupervisorTimings

LOG = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
STOP_TIMEOUT = 1.0


def build_supervisor(
    config: HostConfig,
    *,
    hub: HubClient | None = None,
    timings: SupervisorTimings | None = None,
) -> ConnectionSupervisor:
    """Create a supervisor whose discovery uses the config's app and storage folders."""

    storage = JsonStorageRepository(config.storage_folder)

    def _discovery(cfg: HostConfig) -> AppDiscovery:
        return AppDiscovery(cfg.app_folder, storage=storage)

    return ConnectionSupervisor(hub or WebSocketHubClient(), discovery_factory=_discovery, timings=timings)


async def run_daemon(stopping: asyncio.Event) -> None:
    """Resolve configuration and supervise the hub until ``stopping`` is set."""

    LOG.info("Starting hubrunner...")
    config = resolve_config()
    if config is None:
        LOG.error("No config specified, file or environment variables! Exiting...")
        return

    ensure_app_directory(config)
    supervisor = build_supervisor(config)
    try:
        await supervisor.run(config, stopping)
    finally:
        await supervisor.stop(STOP_TIMEOUT)
        LOG.info("End hubrunner..")


async def _main_async() -> None:
    stopping = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stopping.set)
    await run_daemon(stopping)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="hubrunner", description=__doc__)
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Minimum level of log records to emit.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Run the daemon until interrupted."""

    args = parse_args(argv)
    logging.basicConfig(level=args.log_level, format=LOG_FORMAT)
    with suppress(KeyboardInterrupt):
        asyncio.run(_main_async())


if __name__ == "__main__":
    main()
