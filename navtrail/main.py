"""
Navigation tracker service.

Wires the session store, the navigation engine, the retention sweeper and the
extension gateway together and runs them on one event loop until SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from typing import Any

from .config import TrackerConfig
from .engine import NavigationTracker
from .errors import TransientIOError
from .persist import JsonFileStorage
from .retention import RetentionSweeper
from .server.commands import CommandRegistry, create_default_registry
from .server.gateway import TrackerGateway
from .store import SessionStore

logger = logging.getLogger("navtrail")

__all__ = ["TrackerServer", "main"]


class TrackerServer:
    """Owns every long-lived component of the tracker."""

    def __init__(self, config: TrackerConfig, *, registry: CommandRegistry | None = None) -> None:
        self.config = config
        self.store = SessionStore(JsonFileStorage(config.state_file), dedup_scope=config.dedup_scope)
        self.registry = registry or create_default_registry()
        self.gateway = TrackerGateway(
            host=config.host,
            port=config.port,
            port_span=config.port_span,
            expected_extension_id=config.expected_extension_id,
            rpc_timeout=config.rpc_timeout,
            on_event=self.handle_event,
            on_command=self.handle_command,
        )
        self.tracker = NavigationTracker(self.store, self.gateway, debounce_s=config.debounce_s)
        self.sweeper = RetentionSweeper(self.store, interval_s=config.sweep_interval_s)

    async def handle_event(self, name: str, params: dict[str, Any]) -> Any:
        return await self.tracker.handle_event(name, params)

    async def handle_command(self, name: str, params: dict[str, Any]) -> dict[str, Any]:
        return await self.registry.dispatch(name, self.store, params)

    async def start(self) -> None:
        await self.store.load()
        self.store.start()
        await self.gateway.start()
        self.sweeper.start()
        logger.info(
            "tracker_started data_dir=%s port=%s dedup=%s",
            self.config.data_dir,
            self.gateway.port,
            self.store.snapshot().settings.dedup_scope,
        )

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.gateway.stop()
        await self.store.close()
        logger.info("tracker_stopped commits=%d", self.store.commits)

    async def serve(self, stop_event: asyncio.Event | None = None) -> None:
        stop = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, stop.set)
        await self.start()
        try:
            await stop.wait()
        finally:
            await self.stop()


def main() -> None:
    """Main entry point for the tracker service."""
    config = TrackerConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    server = TrackerServer(config)
    try:
        asyncio.run(server.serve())
    except TransientIOError as exc:
        logger.error("state_unreadable path=%s reason=%s", config.state_file, exc.reason)
        sys.exit(1)
    except RuntimeError as exc:
        logger.error("tracker_failed error=%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
