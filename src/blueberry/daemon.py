"""Blueberry daemon: wires config, storage, hub connection, registry and automations.

Startup sequence:
1. Load config from ``blueberry.toml`` plus environment overrides
2. Configure structured logging
3. Create the event bus, scheduler and key-value store
4. Create the connection manager, registry and irrigation scheduler
5. Start the registry and automations (they react to connection events)
6. Connect the shared hub connection in the background

Shutdown reverses the order.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import httpx

from blueberry.config import BlueberryConfig, load_config
from blueberry.core.events import EventBus
from blueberry.core.logging import configure_logging
from blueberry.core.scheduler import Scheduler
from blueberry.hub.errors import HubError
from blueberry.hub.manager import ConnectionManager
from blueberry.hub.socket import WsConnect
from blueberry.irrigation import IrrigationScheduler
from blueberry.registry import Registry
from blueberry.storage import JsonStore

logger = logging.getLogger(__name__)


class BlueberryDaemon:
    """Owns every long-lived component of one Blueberry process."""

    def __init__(
        self,
        config_dir: Path | str | None = None,
        *,
        config: BlueberryConfig | None = None,
        ws_connect: WsConnect | None = None,
        http_client: httpx.AsyncClient | None = None,
        configure_logs: bool = True,
    ) -> None:
        self.config_dir = config_dir
        self.config = config
        self._ws_connect = ws_connect
        self._http_client = http_client
        self._configure_logs = configure_logs
        self.events: EventBus | None = None
        self.scheduler: Scheduler | None = None
        self.store: JsonStore | None = None
        self.manager: ConnectionManager | None = None
        self.registry: Registry | None = None
        self.irrigation: IrrigationScheduler | None = None
        self._connect_task: asyncio.Task[None] | None = None

    def build(self) -> None:
        """Create components without starting anything (steps 1-4)."""
        if self.config is None:
            self.config = load_config(self.config_dir)
        config = self.config

        if self._configure_logs:
            log_root = Path(config.logging.log_root) if config.logging.log_root else None
            configure_logging(
                level=config.logging.level,
                fmt=config.logging.format,
                log_root=log_root,
                instance_name=config.name,
            )
        logger.info("Loaded config for %s (hub %s)", config.name, config.hub.url)

        self.events = EventBus()
        self.scheduler = Scheduler()
        self.store = JsonStore(config.storage_path, self.events)
        self.manager = ConnectionManager(
            config.hub,
            self.store,
            self.events,
            self.scheduler,
            ws_connect=self._ws_connect,
            http_client=self._http_client,
        )
        self.registry = Registry(
            self.manager,
            self.events,
            self.scheduler,
            debounce_seconds=config.hub.debounce_seconds,
        )
        self.irrigation = IrrigationScheduler(
            config.irrigation,
            self.registry,
            self.manager,
            self.store,
            self.events,
            self.scheduler,
        )

    async def start(self) -> None:
        """Execute the full startup sequence."""
        if self.manager is None:
            self.build()
        assert self.registry is not None and self.irrigation is not None

        # 5. Consumers subscribe before the first CONNECTED event can fire
        self.registry.start()
        self.irrigation.start()

        # 6. Connecting retries until the hub answers, so it must not block startup
        self._connect_task = asyncio.get_running_loop().create_task(self._connect())

    async def _connect(self) -> None:
        assert self.manager is not None
        try:
            connection = await self.manager.global_connect()
        except HubError as exc:
            logger.error("Could not connect to the hub: %s", exc)
            return
        if connection is None:
            logger.warning("Hub account is not linked yet; run 'blueberry link' to connect")

    async def shutdown(self) -> None:
        """Graceful shutdown in reverse startup order."""
        logger.info("Shutting down %s", self.config.name if self.config else "blueberry")

        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
            await asyncio.gather(self._connect_task, return_exceptions=True)

        if self.irrigation is not None:
            await self.irrigation.stop()
        if self.registry is not None:
            await self.registry.stop()
        if self.manager is not None:
            await self.manager.close()
        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.events is not None:
            await self.events.close()

        logger.info("Blueberry shutdown complete")
