import asyncio
import logging
import signal

import twitchio
from dotenv import load_dotenv

from shared.database import DatabaseManager, PoolConfig
from shared.eligibility_cache import MemoryBotEligibilityCache, RedisBotEligibilityCache
from shared.repositories import (
    BotCredentialRepository,
    ChatCommandConfigRepository,
    CounterRepository,
    UserRepository,
)
from twitch.core.config import TWITCH_DIR, BotSettings, get_settings
from twitch.core.database import setup_database_schema
from twitch.core.eventsub_transport import EventSubWebsocket
from twitch.core.health_server import HealthCheckServer
from twitch.core.logging import setup_logging
from twitch.core.monitoring import MonitoringRegistry
from twitch.services.command_processor import CommandProcessor
from twitch.services.connection_manager import ConnectionManager
from twitch.services.eligibility import BotEligibilityResolver
from twitch.services.event_subscriptions import EventSubscriptionService
from twitch.services.helix import HelixClient
from twitch.services.milestones import MilestoneNotifier
from twitch.services.notifications import LoggingOverlayNotifier, WebhookNotificationChannel

LOGGER: logging.Logger = logging.getLogger("Bot")


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows: KeyboardInterrupt still ends asyncio.run()
            pass


async def run(settings: BotSettings) -> None:
    db = DatabaseManager(settings.database_url, PoolConfig(ssl=settings.database_ssl))
    await db.connect()

    try:
        async with db.pool.acquire() as connection:
            await setup_database_schema(connection)

        users = UserRepository(db.pool)
        counters = CounterRepository(db.pool)
        command_configs = ChatCommandConfigRepository(db.pool)
        bot_credentials = BotCredentialRepository(db.pool, settings.bot_username)

        if settings.redis_host:
            eligibility_cache = RedisBotEligibilityCache(
                settings.redis_host, settings.redis_key_namespace
            )
        else:
            LOGGER.info("REDIS_HOST not set, caching bot eligibility in process")
            eligibility_cache = MemoryBotEligibilityCache(settings.redis_key_namespace)

        helix = HelixClient(settings.client_id, settings.client_secret)
        webhooks = WebhookNotificationChannel()
        registry = MonitoringRegistry()
        resolver = BotEligibilityResolver(helix, eligibility_cache, settings.bot_username)

        async with twitchio.Client(
            client_id=settings.client_id, client_secret=settings.client_secret
        ) as chat_client:
            connections = ConnectionManager(
                chat_client, users, bot_credentials, registry, resolver, helix
            )
            milestones = MilestoneNotifier(
                webhooks, LoggingOverlayNotifier(), connections.send_message
            )
            processor = CommandProcessor(counters, command_configs, users, milestones)
            eventsub = EventSubscriptionService(
                EventSubWebsocket(settings.eventsub_ws_url),
                helix,
                users,
                counters,
                processor,
                connections,
                webhooks,
                subscribe_chat=settings.subscribe_chat,
            )
            health = HealthCheckServer(eventsub, registry, db)

            stop = asyncio.Event()
            _install_signal_handlers(stop)

            try:
                await health.start()
                await connections.connect_all_users(stop)
                await eventsub.start()
                LOGGER.info("Bot running, waiting for EventSub notifications")
                await stop.wait()
            finally:
                LOGGER.info("Shutting down...")
                await eventsub.stop()
                await health.stop()
                await webhooks.close()
                await helix.close()
                if isinstance(eligibility_cache, RedisBotEligibilityCache):
                    await eligibility_cache.close()
    finally:
        await db.disconnect()


def main() -> None:
    load_dotenv(dotenv_path=TWITCH_DIR / ".env")
    settings = get_settings()
    setup_logging(settings.log_level)

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        LOGGER.warning("Shutting down due to KeyboardInterrupt...")


if __name__ == "__main__":
    main()
