import asyncio
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from webhook_relay.core.config import Settings, settings as default_settings
from webhook_relay.core.database import DatabaseManager, create_engine, create_session_factory
from webhook_relay.core.logging import get_logger, setup_logging
from webhook_relay.core.webhook_client import WebhookSender
from webhook_relay.services.queue_processor import QueueProcessor, create_queue_processor

logger = get_logger(__name__)

SHUTDOWN_DRAIN_TIMEOUT_SECONDS = 30.0


@asynccontextmanager
async def relay_lifespan(
    app_settings: Optional[Settings] = None,
    webhook_sender: Optional[WebhookSender] = None,
    create_tables: bool = True,
) -> AsyncIterator[QueueProcessor]:
    """Handle relay startup and shutdown around a running queue processor."""
    app_settings = app_settings or default_settings
    engine = create_engine(app_settings)
    db_manager = DatabaseManager(engine)

    # Startup
    try:
        if create_tables:
            await db_manager.create_tables()
        processor = create_queue_processor(
            create_session_factory(engine),
            webhook_sender=webhook_sender,
            app_settings=app_settings,
        )
        await processor.start()
        logger.info("Webhook relay startup completed", environment=app_settings.ENVIRONMENT)
    except Exception as e:
        logger.error("Webhook relay startup failed", error=str(e))
        await db_manager.close_connections()
        raise

    try:
        yield processor
    finally:
        # Shutdown
        await processor.stop(drain=True, timeout=SHUTDOWN_DRAIN_TIMEOUT_SECONDS)
        await db_manager.close_connections()
        logger.info("Webhook relay shutdown completed")


async def run_worker(app_settings: Optional[Settings] = None) -> None:
    """Run the relay until SIGINT or SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    async with relay_lifespan(app_settings):
        await stop_event.wait()


def main() -> None:
    setup_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
