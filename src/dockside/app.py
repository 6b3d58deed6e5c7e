"""Main orchestrator: wires engine client, broker, session manager, event relay and HTTP."""

from __future__ import annotations

import asyncio
import contextlib
import signal

from aiohttp import web

from dockside.config import Settings, get_settings
from dockside.engine.client import DockerEngineClient
from dockside.engine_events import EngineEventStream
from dockside.event_bus import EventBroker
from dockside.exec.manager import ExecSessionManager
from dockside.files import ContainerFiles
from dockside.http_server import start_http_server
from dockside.logger import logger, set_level
from dockside.retry import RetryPolicy

# How often tracked exec sessions are reconciled against the engine.
CLEANUP_INTERVAL = 300.0


class DocksideApp:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        set_level(s.logging.level)

        self.engine = DockerEngineClient(s.engine, RetryPolicy.from_config(s.retry))
        self.broker = EventBroker(buffer_size=s.events.buffer_size, buffer_ttl=s.events.buffer_ttl)
        self.manager = ExecSessionManager(
            self.engine,
            self.broker,
            shell_candidates=s.exec.shell_candidates,
            probe_timeout=s.exec.probe_timeout,
            probe_marker=s.exec.probe_marker,
        )
        self.files = ContainerFiles(self.manager)
        self.engine_events = EngineEventStream(self.engine, self.broker)

        self._http_runner: web.AppRunner | None = None
        self._cleanup_task: asyncio.Task[None] | None = None
        self._stopped = asyncio.Event()
        self._shutting_down = False

    async def open(self) -> None:
        """Start background work that does not need the HTTP server (CLI use)."""
        self.broker.start()

    async def close(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
        if self._http_runner is not None:
            await self._http_runner.cleanup()
            self._http_runner = None
        await self.engine_events.close()
        await self.manager.close()
        await self.broker.close()
        await self.engine.close()

    async def __aenter__(self) -> DocksideApp:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(CLEANUP_INTERVAL)
            try:
                await self.manager.cleanup_sessions()
            except Exception as exc:
                logger.warning("Session cleanup failed", err=str(exc))

    async def _shutdown(self, sig_name: str) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)
        self._stopped.set()

    async def run(self) -> None:
        """Serve until SIGTERM/SIGINT."""
        await self.open()
        if not await self.engine.wait_until_ready():
            logger.warning("Starting without a reachable engine", host=self.settings.engine.host)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(self._shutdown(s.name)),
            )

        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        if self.settings.events.engine_events:
            self.engine_events.start()
        server = self.settings.server
        self._http_runner = await start_http_server(self, server.host, server.port)
        try:
            await self._stopped.wait()
        finally:
            await self.close()
            logger.info("Dockside stopped")
