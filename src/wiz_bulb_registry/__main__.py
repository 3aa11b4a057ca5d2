"""Entrypoint for the WiZ bulb registry service."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Iterable, Optional

from .api import ApiService
from .config import Config, load_config
from .health import RefreshHealth
from .logging import configure_logging, get_logger
from .refresh import RefreshService
from .registry import Registry


async def _run_async(config: Config) -> None:
    logger = get_logger("wiz")
    stop_event = asyncio.Event()
    health = RefreshHealth(
        failure_threshold=config.refresh_failure_threshold,
        cooldown_seconds=config.refresh_failure_cooldown,
    )
    registry = await Registry.from_url(config.store_url, config)

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    refresh = RefreshService(config, registry, health=health)
    api = ApiService(config, registry, health=health)
    try:
        await refresh.start()
        await api.start()
        logger.info(
            "Registry services started",
            extra={
                "api_port": config.api_port,
                "bulbs": len(await registry.ids()),
                "refresh_enabled": config.refresh_enabled,
            },
        )
        await stop_event.wait()
    finally:
        await api.stop()
        await refresh.stop()
        await registry.close()
        logger.info("Registry shutdown complete")


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint used by setuptools."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("wiz")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
