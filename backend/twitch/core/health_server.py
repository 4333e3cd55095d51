"""Liveness and status endpoints for the container runtime."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from shared.database import DatabaseManager
    from twitch.core.monitoring import MonitoringRegistry
    from twitch.services.event_subscriptions import EventSubscriptionService

logger = logging.getLogger("Bot.Health")

HEARTBEAT_INTERVAL = 300


class HealthCheckServer:
    """``/health`` is always 200 and flips ``ready`` once EventSub is connected.
    ``/status`` adds session, registry and database details."""

    def __init__(
        self,
        eventsub: EventSubscriptionService | None = None,
        registry: MonitoringRegistry | None = None,
        database: DatabaseManager | None = None,
        host: str = "0.0.0.0",
        port: int | None = None,
    ):
        self.eventsub = eventsub
        self.registry = registry
        self.database = database
        self.host = host
        self.port = port if port is not None else int(os.getenv("PORT", "4344"))
        self._started_at = time.monotonic()
        self._runner: web.AppRunner | None = None
        self._heartbeat_task: asyncio.Task | None = None

        self.app = web.Application()
        self.app.add_routes(
            [web.get("/health", self.handle_health), web.get("/status", self.handle_status)]
        )

    @property
    def uptime(self) -> int:
        return int(time.monotonic() - self._started_at)

    def _session_state(self) -> str:
        return self.eventsub.state.value if self.eventsub is not None else "starting"

    async def handle_health(self, request: web.Request) -> web.Response:
        ready = self._session_state() == "connected"
        return web.json_response({"status": "healthy" if ready else "starting", "ready": ready})

    async def handle_status(self, request: web.Request) -> web.Response:
        registry = self.registry
        return web.json_response(
            {
                "service": "tallybot-twitch",
                "uptime_seconds": self.uptime,
                "eventsub_state": self._session_state(),
                "session_id": self.eventsub.session_id if self.eventsub else None,
                "monitored_broadcasters": len(registry) if registry else 0,
                "broadcasters_using_bot": len(registry.get_broadcasters_using_bot()) if registry else 0,
                "database_ok": await self.database.check_health() if self.database else None,
            }
        )

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(HEARTBEAT_INTERVAL)
            using_bot = len(self.registry.get_broadcasters_using_bot()) if self.registry else 0
            logger.info(
                f"Heartbeat: uptime={self.uptime}s eventsub={self._session_state()} "
                f"bot_channels={using_bot}"
            )

    async def start(self) -> None:
        runner = web.AppRunner(self.app)
        await runner.setup()
        try:
            await web.TCPSite(runner, self.host, self.port).start()
        except OSError:
            await runner.cleanup()
            logger.exception(f"Health server could not bind {self.host}:{self.port}")
            raise
        self._runner = runner
        self._heartbeat_task = asyncio.create_task(self._heartbeat(), name="health-heartbeat")
        logger.info(f"Health server listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        runner, self._runner = self._runner, None
        if runner is None:
            return
        try:
            await runner.cleanup()
        except Exception as e:
            logger.warning(f"Error stopping health server: {type(e).__name__}: {e}")
        else:
            logger.info("Health server stopped")
