import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Set

from webhook_relay.core.config import Settings, settings as default_settings
from webhook_relay.core.database import utcnow
from webhook_relay.core.exceptions import PermanentDeliveryFailure
from webhook_relay.core.logging import get_logger
from webhook_relay.core.periodic import PeriodicTask
from webhook_relay.core.retry_policy import RetryScheduler
from webhook_relay.schemas.delivery import (
    DeliveryResult,
    DeliveryStatus,
    QueueStats,
    WebhookDelivery,
)

from .queue_persistence import QueuePersistence

if TYPE_CHECKING:
    from .dead_letter_queue import DeadLetterQueue
    from .metrics_collector import MetricsCollector

DeliveryHandler = Callable[[WebhookDelivery], Awaitable[Any]]


@dataclass
class DeliveryQueueOptions:
    max_concurrent_deliveries: int = 10
    processing_interval: float = 1.0       # seconds
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 300000
    cleanup_interval: float = 3600.0       # seconds
    cleanup_age_hours: int = 24
    stuck_threshold_ms: int = 300000

    @classmethod
    def from_settings(cls, app_settings: Optional[Settings] = None) -> "DeliveryQueueOptions":
        app_settings = app_settings or default_settings
        return cls(
            max_concurrent_deliveries=app_settings.QUEUE_MAX_CONCURRENT_DELIVERIES,
            processing_interval=app_settings.QUEUE_PROCESSING_INTERVAL_SECONDS,
            retry_base_delay_ms=app_settings.RETRY_BASE_DELAY_MS,
            retry_max_delay_ms=app_settings.RETRY_MAX_DELAY_MS,
            cleanup_interval=app_settings.QUEUE_CLEANUP_INTERVAL_SECONDS,
            cleanup_age_hours=app_settings.QUEUE_CLEANUP_AGE_HOURS,
            stuck_threshold_ms=app_settings.QUEUE_STUCK_THRESHOLD_MS,
        )


class DeliveryQueue:
    """
    In-process facade over the persistence store.

    Bounds concurrent work with a process-local ``processing_count`` and runs
    two background loops: dispatch (claim due deliveries and fire them off as
    independent tasks) and maintenance (purge old completed rows, reset
    deliveries orphaned in processing).

    ``processing_count`` is a per-process soft cap. Across processes the only
    guarantee is that a row is claimed by at most one worker at a time.
    """

    def __init__(
        self,
        persistence: QueuePersistence,
        options: Optional[DeliveryQueueOptions] = None,
        retry_scheduler: Optional[RetryScheduler] = None,
        dead_letter_queue: Optional["DeadLetterQueue"] = None,
        metrics_collector: Optional["MetricsCollector"] = None,
    ):
        self.persistence = persistence
        self.options = options or DeliveryQueueOptions()
        self.retry_scheduler = retry_scheduler or RetryScheduler.from_delays(
            self.options.retry_base_delay_ms,
            self.options.retry_max_delay_ms,
        )
        self.dead_letter_queue = dead_letter_queue
        self.metrics_collector = metrics_collector
        self.logger = get_logger(self.__class__.__name__)

        self.processing_count = 0
        self._dispatch_task: Optional[PeriodicTask] = None
        self._maintenance_task: Optional[PeriodicTask] = None
        self._in_flight: Set[asyncio.Task] = set()

    # Foreground operations

    async def enqueue(self, delivery: WebhookDelivery) -> None:
        delivery = delivery.model_copy(update={
            "status": DeliveryStatus.PENDING,
            "attempts": 0,
            "next_retry": None,
        })
        await self.persistence.save_delivery(delivery)
        self.logger.debug("Delivery enqueued", delivery_id=delivery.id, webhook_id=delivery.webhook_id)

    async def dequeue(self) -> Optional[WebhookDelivery]:
        """Claim the next due delivery, or ``None`` at the concurrency cap."""
        if self.processing_count >= self.options.max_concurrent_deliveries:
            return None

        delivery = await self.persistence.get_next_delivery()
        if delivery is not None:
            self.processing_count += 1
        return delivery

    async def mark_complete(self, delivery_id: str) -> bool:
        applied = await self.persistence.update_delivery_status(delivery_id, DeliveryStatus.COMPLETED)
        self._release()
        return applied

    async def mark_failed(self, delivery_id: str, error: str) -> bool:
        applied = await self.persistence.update_delivery_status(delivery_id, DeliveryStatus.FAILED, error)
        self._release()
        return applied

    async def schedule_retry(self, delivery_id: str, next_retry: datetime, attempts: int) -> bool:
        applied = await self.persistence.update_retry_schedule(delivery_id, next_retry, attempts)
        self._release()
        return applied

    async def record_response(self, delivery_id: str, result: DeliveryResult) -> None:
        await self.persistence.update_delivery_response(
            delivery_id,
            result.status_code,
            result.response_time_ms,
        )

    def _release(self, count: int = 1) -> None:
        # Floored: maintenance may already have released this slot
        self.processing_count = max(0, self.processing_count - count)

    # Background processing

    @property
    def is_processing(self) -> bool:
        return self._dispatch_task is not None and self._dispatch_task.is_running

    def start_processing(self, handler: DeliveryHandler) -> None:
        if self.is_processing:
            return

        self._dispatch_task = PeriodicTask(
            "delivery-dispatch",
            self.options.processing_interval,
            lambda: self.process_queue(handler),
        )
        self._maintenance_task = PeriodicTask(
            "delivery-maintenance",
            self.options.cleanup_interval,
            self.perform_maintenance,
        )
        self._dispatch_task.start()
        self._maintenance_task.start()
        self.logger.info(
            "Delivery processing started",
            max_concurrent=self.options.max_concurrent_deliveries,
            interval=self.options.processing_interval,
        )

    def stop_processing(self) -> None:
        """Cancel both loops. Deliveries already dispatched run to completion."""
        if self._dispatch_task is None and self._maintenance_task is None:
            return

        for task in (self._dispatch_task, self._maintenance_task):
            if task is not None:
                task.stop()
        self._dispatch_task = None
        self._maintenance_task = None
        self.logger.info("Delivery processing stopped", in_flight=len(self._in_flight))

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for dispatched deliveries to finish.

        Returns False if ``timeout`` elapsed with deliveries still running.
        """
        pending = set(self._in_flight)
        if not pending:
            return True
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            self.logger.warning("Drain timed out", still_running=len(still_running))
            return False
        return True

    async def process_queue(self, handler: DeliveryHandler) -> int:
        """Claim and dispatch until nothing is due or the cap is reached."""
        dispatched = 0
        while self.processing_count < self.options.max_concurrent_deliveries:
            delivery = await self.dequeue()
            if delivery is None:
                break

            task = asyncio.create_task(
                self._run_delivery(delivery, handler),
                name=f"delivery-{delivery.id}",
            )
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            dispatched += 1
        return dispatched

    async def _run_delivery(self, delivery: WebhookDelivery, handler: DeliveryHandler) -> None:
        try:
            await self.process_delivery(delivery, handler)
        except Exception as e:
            # Outcome could not be recorded; the row stays in processing
            # until maintenance resets it.
            self.logger.error(
                "Failed to process delivery",
                delivery_id=delivery.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._release()

    async def process_delivery(self, delivery: WebhookDelivery, handler: DeliveryHandler) -> None:
        """
        Run ``handler`` for a claimed delivery and record the outcome.

        Success marks the delivery completed. On failure the attempt count is
        incremented; while the claimed delivery is still retry-eligible the
        retry is scheduled with backoff, otherwise it is marked failed and
        archived to the dead letter store when one is configured. The
        eligibility check sees the count from before this attempt, so
        ``max_attempts`` counts retries after the first failure and the
        handler can run ``max_attempts + 1`` times in total.

        Outcomes only apply while the row is still in processing; a delivery
        finished elsewhere after maintenance released it is left as is.
        """
        started = time.monotonic()
        try:
            await handler(delivery)
        except Exception as e:
            await self._handle_failure(delivery, e)
            self._observe(delivery, "failed", started)
        else:
            await self.mark_complete(delivery.id)
            self._observe(delivery, "completed", started)
            self.logger.debug("Delivery completed", delivery_id=delivery.id, attempts=delivery.attempts)

    async def _handle_failure(self, delivery: WebhookDelivery, error: Exception) -> None:
        attempts = delivery.attempts + 1
        error_message = str(error) or type(error).__name__

        if self.retry_scheduler.should_retry(delivery):
            next_retry = self.retry_scheduler.calculate_next_retry(attempts)
            await self.schedule_retry(delivery.id, next_retry, attempts)
            self.logger.warning(
                "Delivery failed, retry scheduled",
                delivery_id=delivery.id,
                attempts=attempts,
                next_retry=next_retry.isoformat(),
                error=error_message,
            )
            return

        failure = PermanentDeliveryFailure(delivery.id, delivery.attempts, error_message)
        if not await self.mark_failed(delivery.id, error_message):
            return
        self.logger.error(
            "Delivery permanently failed",
            delivery_id=delivery.id,
            webhook_id=delivery.webhook_id,
            attempts=delivery.attempts,
            error=error_message,
        )

        if self.dead_letter_queue is None:
            return
        try:
            await self.dead_letter_queue.add_failed_delivery(delivery, failure.reason, failure.last_error)
        except Exception as archive_error:
            self.logger.error(
                "Failed to archive delivery to dead letter queue",
                delivery_id=delivery.id,
                error=str(archive_error),
            )

    def _observe(self, delivery: WebhookDelivery, outcome: str, started: float) -> None:
        if self.metrics_collector is None:
            return
        labels = {"webhook_id": delivery.webhook_id, "status": outcome}
        self.metrics_collector.increment_counter("webhook_deliveries_total", labels)
        self.metrics_collector.record_histogram(
            "webhook_delivery_duration_ms",
            (time.monotonic() - started) * 1000,
            {"webhook_id": delivery.webhook_id},
        )

    async def perform_maintenance(self) -> None:
        cutoff = utcnow() - timedelta(hours=self.options.cleanup_age_hours)
        cleaned = await self.persistence.cleanup_completed_deliveries(cutoff)
        if cleaned:
            self.logger.info("Cleaned up old deliveries", count=cleaned)

        reset = await self.persistence.reset_stuck_deliveries(self.options.stuck_threshold_ms)
        if reset:
            self.logger.warning("Reset stuck deliveries", count=reset)
            self._release(reset)

    # Introspection

    async def get_stats(self) -> QueueStats:
        metrics = await self.persistence.get_queue_metrics()
        return QueueStats(
            pending_count=metrics.pending_count,
            persisted_processing_count=metrics.processing_count,
            completed_count=metrics.completed_count,
            failed_count=metrics.failed_count,
            processing_count=self.processing_count,
            max_concurrent_deliveries=self.options.max_concurrent_deliveries,
        )

    async def get_queue_size(self) -> int:
        metrics = await self.persistence.get_queue_metrics()
        return metrics.pending_count

    def get_processing_count(self) -> int:
        return self.processing_count

    def get_retry_scheduler(self) -> RetryScheduler:
        return self.retry_scheduler

    def set_retry_scheduler(self, retry_scheduler: RetryScheduler) -> None:
        self.retry_scheduler = retry_scheduler
