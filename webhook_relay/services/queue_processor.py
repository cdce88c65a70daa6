import time
import uuid
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from webhook_relay.core.config import Settings, settings as default_settings
from webhook_relay.core.database import utcnow
from webhook_relay.core.exceptions import ConfigurationError
from webhook_relay.core.logging import get_logger
from webhook_relay.core.periodic import PeriodicTask
from webhook_relay.core.retry_policy import RetryScheduler
from webhook_relay.core.webhook_client import HttpWebhookSender, WebhookSender
from webhook_relay.schemas.dead_letter import DeadLetterStats
from webhook_relay.schemas.delivery import (
    BlockchainEvent,
    DeliveryResult,
    ProcessorStats,
    WebhookDelivery,
)
from webhook_relay.schemas.webhook import WebhookConfig

from .dead_letter_queue import DeadLetterQueue
from .delivery_queue import DeliveryQueue, DeliveryQueueOptions
from .metrics_collector import MetricsCollector
from .queue_persistence import QueuePersistence
from .webhook_config_cache import WebhookConfigCache

BACKLOG_WARNING_INTERVAL_SECONDS = 60.0


class QueueProcessor:
    """
    Delivery pipeline: resolve the webhook config, call the sender, and let
    the delivery queue record the outcome.

    Configs injected with ``set_webhook_config`` take precedence over the
    cache.
    """

    def __init__(
        self,
        delivery_queue: DeliveryQueue,
        webhook_sender: WebhookSender,
        config_cache: WebhookConfigCache,
        dead_letter_queue: Optional[DeadLetterQueue] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        backlog_threshold: int = 100,
        backlog_check_interval: float = 10.0,
        default_max_attempts: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.delivery_queue = delivery_queue
        self.webhook_sender = webhook_sender
        self.config_cache = config_cache
        self.dead_letter_queue = dead_letter_queue
        self.metrics_collector = metrics_collector
        self.backlog_threshold = backlog_threshold
        self.backlog_check_interval = backlog_check_interval
        self.default_max_attempts = default_max_attempts
        self.clock = clock
        self.logger = get_logger(self.__class__.__name__)

        self._webhook_configs: Dict[str, WebhookConfig] = {}
        self._running = False
        self._backlog_monitor: Optional[PeriodicTask] = None
        self._last_backlog_warning: Optional[float] = None

        self._total_processed = 0
        self._successful = 0
        self._failed = 0
        self._backlog_warnings = 0

    # Configuration

    def set_webhook_config(self, webhook_id: str, config: WebhookConfig) -> None:
        self._webhook_configs[webhook_id] = config

    def remove_webhook_config(self, webhook_id: str) -> None:
        self._webhook_configs.pop(webhook_id, None)

    async def refresh_webhook_configs(self) -> bool:
        refreshed = await self.config_cache.refresh_configs()
        if refreshed:
            self.logger.info("Webhook configurations refreshed successfully")
        return refreshed

    async def _resolve_config(self, webhook_id: str) -> Optional[WebhookConfig]:
        config = self._webhook_configs.get(webhook_id)
        if config is not None:
            return config
        return await self.config_cache.get_webhook_config(webhook_id)

    async def _max_attempts_for(self, webhook_id: str) -> int:
        config = await self._resolve_config(webhook_id)
        return config.retry_attempts if config is not None else self.default_max_attempts

    # Lifecycle

    async def start(self) -> None:
        if self._running:
            self.logger.warning("Queue processor is already running")
            return

        self.logger.info(
            "Starting queue processor",
            max_concurrent=self.delivery_queue.options.max_concurrent_deliveries,
            backlog_threshold=self.backlog_threshold,
        )

        try:
            await self.config_cache.load_webhook_configs()
        except Exception as e:
            self.logger.error("Failed to load webhook configurations during startup", error=str(e))
            raise ConfigurationError("Cannot start queue processor without webhook configurations") from e

        self.delivery_queue.start_processing(self.handle_delivery)

        self._backlog_monitor = PeriodicTask(
            "queue-backlog-monitor",
            self.backlog_check_interval,
            self.check_backlog,
        )
        self._backlog_monitor.start()

        if self.dead_letter_queue is not None:
            self.dead_letter_queue.start_cleanup()
        if self.metrics_collector is not None:
            self.metrics_collector.start()

        self._running = True
        self.logger.info("Queue processor started")

    async def stop(self, drain: bool = False, timeout: Optional[float] = None) -> None:
        """
        Stop the background loops.

        With ``drain`` the call also waits (up to ``timeout`` seconds) for
        deliveries already dispatched to finish.
        """
        if not self._running:
            self.logger.warning("Queue processor is not running")
            return

        self.logger.info("Stopping queue processor")
        self._running = False
        self.delivery_queue.stop_processing()
        if self._backlog_monitor is not None:
            self._backlog_monitor.stop()
            self._backlog_monitor = None

        if drain:
            await self.delivery_queue.drain(timeout)

        if self.dead_letter_queue is not None:
            self.dead_letter_queue.stop_cleanup()
        if self.metrics_collector is not None:
            await self.metrics_collector.stop()

        self.logger.info("Queue processor stopped")

    def is_running(self) -> bool:
        return self._running

    # Delivery pipeline

    async def enqueue_event(
        self,
        subscription_id: str,
        webhook_id: str,
        event: BlockchainEvent,
        payload: Any,
        max_attempts: Optional[int] = None,
    ) -> WebhookDelivery:
        """Create a pending delivery of ``payload`` to ``webhook_id`` and queue it."""
        if max_attempts is None:
            max_attempts = await self._max_attempts_for(webhook_id)

        delivery = WebhookDelivery(
            id=str(uuid.uuid4()),
            subscription_id=subscription_id,
            webhook_id=webhook_id,
            event=event,
            payload=payload,
            max_attempts=max_attempts,
            created_at=utcnow(),
        )
        await self.delivery_queue.enqueue(delivery)
        return delivery

    async def handle_delivery(self, delivery: WebhookDelivery) -> None:
        """
        Deliver one claimed delivery.

        Raises on any failure so the delivery queue can apply the retry
        policy; a missing config raises ConfigurationError.
        """
        started = time.monotonic()
        log = self.logger.with_context(delivery_id=delivery.id, webhook_id=delivery.webhook_id)
        log.debug("Processing webhook delivery", attempt=delivery.attempts + 1, max_attempts=delivery.max_attempts)

        try:
            config = await self._resolve_config(delivery.webhook_id)
            if config is None:
                raise ConfigurationError(f"Webhook configuration not found for ID: {delivery.webhook_id}")
            result = await self.webhook_sender.send_webhook(config, delivery)
        except Exception as e:
            self._failed += 1
            log.error(
                "Webhook delivery failed",
                attempt=delivery.attempts + 1,
                max_attempts=delivery.max_attempts,
                error=str(e),
                error_type=type(e).__name__,
                processing_ms=int((time.monotonic() - started) * 1000),
            )
            if self.metrics_collector is not None:
                self.metrics_collector.increment_counter(
                    "webhook_delivery_failure_total",
                    {"webhook_id": delivery.webhook_id, "error_type": type(e).__name__},
                )
            raise
        else:
            self._successful += 1
            if isinstance(result, DeliveryResult):
                await self._record_response(delivery, result)
            log.info("Webhook delivery successful", processing_ms=int((time.monotonic() - started) * 1000))
            if self.metrics_collector is not None:
                self.metrics_collector.increment_counter(
                    "webhook_delivery_success_total",
                    {"webhook_id": delivery.webhook_id},
                )
        finally:
            self._total_processed += 1

    async def _record_response(self, delivery: WebhookDelivery, result: DeliveryResult) -> None:
        # Bookkeeping only: the send already succeeded and must not be retried
        try:
            await self.delivery_queue.record_response(delivery.id, result)
        except Exception as e:
            self.logger.error("Failed to record delivery response", delivery_id=delivery.id, error=str(e))

        if self.metrics_collector is not None and result.response_time_ms is not None:
            self.metrics_collector.record_histogram(
                "webhook_response_time_ms",
                result.response_time_ms,
                {"webhook_id": delivery.webhook_id},
            )

    async def check_backlog(self) -> None:
        queue_size = await self.delivery_queue.get_queue_size()
        processing = self.delivery_queue.get_processing_count()

        if queue_size > self.backlog_threshold:
            now = self.clock()
            if self._last_backlog_warning is None or now - self._last_backlog_warning >= BACKLOG_WARNING_INTERVAL_SECONDS:
                self._last_backlog_warning = now
                self._backlog_warnings += 1
                self.logger.warning(
                    "Queue backlog threshold exceeded",
                    queue_size=queue_size,
                    threshold=self.backlog_threshold,
                    processing=processing,
                )
                if self.metrics_collector is not None:
                    self.metrics_collector.increment_counter("queue_backlog_warnings_total")

        if self.metrics_collector is not None:
            self.metrics_collector.record_gauge("queue_size", queue_size)
            self.metrics_collector.record_gauge("queue_processing_count", processing)

    # Dead letter queue

    async def get_dead_letter_stats(self) -> Optional[DeadLetterStats]:
        if self.dead_letter_queue is None:
            return None
        return await self.dead_letter_queue.get_stats()

    async def retry_from_dead_letter(self, entry_id: str) -> bool:
        """
        Move a dead letter entry back into the live queue with its attempts reset.

        The retry budget comes from the webhook's current config. The entry is
        only removed once the delivery is queued, so a failed enqueue leaves
        the archive untouched.
        """
        if self.dead_letter_queue is None:
            self.logger.warning("Cannot retry from dead letter queue - not configured")
            return False

        entry = await self.dead_letter_queue.get_entry(entry_id)
        if entry is None:
            self.logger.warning("Dead letter entry not found", entry_id=entry_id)
            return False

        delivery = entry.to_delivery(await self._max_attempts_for(entry.webhook_id))
        await self.delivery_queue.enqueue(delivery)
        await self.dead_letter_queue.remove_failed_delivery(entry_id)
        self.logger.info(
            "Delivery requeued from dead letter queue",
            delivery_id=delivery.id,
            max_attempts=delivery.max_attempts,
        )
        return True

    # Introspection

    async def get_stats(self) -> ProcessorStats:
        return ProcessorStats(
            is_running=self._running,
            total_processed=self._total_processed,
            successful_deliveries=self._successful,
            failed_deliveries=self._failed,
            current_queue_size=await self.delivery_queue.get_queue_size(),
            processing_count=self.delivery_queue.get_processing_count(),
            max_concurrent_deliveries=self.delivery_queue.options.max_concurrent_deliveries,
            queue_backlog_warnings=self._backlog_warnings,
        )

    def get_retry_scheduler(self) -> RetryScheduler:
        return self.delivery_queue.get_retry_scheduler()

    def set_retry_scheduler(self, retry_scheduler: RetryScheduler) -> None:
        self.delivery_queue.set_retry_scheduler(retry_scheduler)


def create_queue_processor(
    session_factory: async_sessionmaker,
    webhook_sender: Optional[WebhookSender] = None,
    app_settings: Optional[Settings] = None,
) -> QueueProcessor:
    """Wire the delivery subsystem from settings."""
    app_settings = app_settings or default_settings

    metrics_collector = MetricsCollector(
        session_factory,
        flush_interval=app_settings.METRICS_FLUSH_INTERVAL_SECONDS,
        histogram_window=app_settings.METRICS_HISTOGRAM_WINDOW,
    )
    dead_letter_queue = DeadLetterQueue(
        session_factory,
        retention_days=app_settings.DEAD_LETTER_RETENTION_DAYS,
        cleanup_interval=app_settings.DEAD_LETTER_CLEANUP_INTERVAL_SECONDS,
    )
    delivery_queue = DeliveryQueue(
        QueuePersistence(session_factory),
        DeliveryQueueOptions.from_settings(app_settings),
        dead_letter_queue=dead_letter_queue,
        metrics_collector=metrics_collector,
    )
    config_cache = WebhookConfigCache(
        session_factory,
        ttl_seconds=app_settings.WEBHOOK_CONFIG_CACHE_TTL_SECONDS,
        default_timeout_ms=app_settings.WEBHOOK_DEFAULT_TIMEOUT_MS,
        default_retry_attempts=app_settings.DEFAULT_MAX_ATTEMPTS,
    )

    return QueueProcessor(
        delivery_queue,
        webhook_sender or HttpWebhookSender(),
        config_cache,
        dead_letter_queue=dead_letter_queue,
        metrics_collector=metrics_collector,
        backlog_threshold=app_settings.QUEUE_BACKLOG_THRESHOLD,
        backlog_check_interval=app_settings.QUEUE_BACKLOG_CHECK_INTERVAL_SECONDS,
        default_max_attempts=app_settings.DEFAULT_MAX_ATTEMPTS,
    )
