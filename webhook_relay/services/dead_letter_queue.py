from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_relay.core.database import utcnow
from webhook_relay.core.periodic import PeriodicTask
from webhook_relay.models.dead_letter_entry import DeadLetterRecord
from webhook_relay.repositories.dead_letter_repository import DeadLetterRepository
from webhook_relay.schemas.dead_letter import (
    DeadLetterEntry,
    DeadLetterFilter,
    DeadLetterStats,
    FailureReasonCount,
)
from webhook_relay.schemas.delivery import WebhookDelivery

from .base_service import BaseService


class DeadLetterQueue(BaseService[DeadLetterRepository]):
    """
    Archive of deliveries that exhausted their retries.

    Lives in its own table so the live queue can be pruned aggressively
    without losing the failure history.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        repository_factory: Callable[[AsyncSession], DeadLetterRepository] = DeadLetterRepository,
        retention_days: int = 30,
        cleanup_interval: float = 86400.0,
    ):
        super().__init__(session_factory, repository_factory)
        self.retention_days = retention_days
        self.cleanup_interval = cleanup_interval
        self._cleanup_task: Optional[PeriodicTask] = None

    async def add_failed_delivery(
        self,
        delivery: WebhookDelivery,
        reason: str,
        last_error: Optional[str] = None,
    ) -> None:
        """Archive ``delivery``; an existing entry for the same id is replaced."""
        record = DeadLetterRecord.from_delivery(delivery, reason, last_error)
        async with self.repository("add_failed_delivery") as repo:
            await repo.merge(record)
        self.logger.warning(
            "Delivery moved to dead letter queue",
            delivery_id=delivery.id,
            webhook_id=delivery.webhook_id,
            reason=reason,
            attempts=delivery.attempts,
        )

    async def get_failed_deliveries(
        self,
        entry_filter: Optional[DeadLetterFilter] = None,
    ) -> List[DeadLetterEntry]:
        entry_filter = entry_filter or DeadLetterFilter()
        async with self.repository("get_failed_deliveries") as repo:
            records = await repo.list_entries(entry_filter)
            return [record.to_schema() for record in records]

    async def get_entry(self, entry_id: str) -> Optional[DeadLetterEntry]:
        async with self.repository("get_entry") as repo:
            record = await repo.get_by_id(entry_id)
            return record.to_schema() if record is not None else None

    async def remove_failed_delivery(self, entry_id: str) -> bool:
        async with self.repository("remove_failed_delivery") as repo:
            removed = await repo.delete(entry_id)
        if removed:
            self.logger.debug("Entry removed from dead letter queue", entry_id=entry_id)
        return removed

    async def cleanup(self, older_than: datetime) -> int:
        async with self.repository("cleanup") as repo:
            deleted = await repo.delete_before(older_than)
        if deleted:
            self.logger.info("Dead letter queue cleanup completed", deleted_entries=deleted)
        return deleted

    async def get_stats(self, top_n: int = 10) -> DeadLetterStats:
        now = utcnow()
        async with self.repository("get_stats") as repo:
            total = await repo.count_since()
            last_24h = await repo.count_since(now - timedelta(hours=24))
            last_7d = await repo.count_since(now - timedelta(days=7))
            reasons = await repo.top_failure_reasons(top_n)

        return DeadLetterStats(
            total_entries=total,
            entries_last_24h=last_24h,
            entries_last_7d=last_7d,
            top_failure_reasons=[
                FailureReasonCount(reason=reason, count=count) for reason, count in reasons
            ],
        )

    async def cleanup_expired(self) -> int:
        return await self.cleanup(utcnow() - timedelta(days=self.retention_days))

    def start_cleanup(self) -> None:
        if self._cleanup_task is not None and self._cleanup_task.is_running:
            return
        self._cleanup_task = PeriodicTask("dead-letter-cleanup", self.cleanup_interval, self.cleanup_expired)
        self._cleanup_task.start()
        self.logger.info(
            "Dead letter queue cleanup started",
            retention_days=self.retention_days,
            interval=self.cleanup_interval,
        )

    def stop_cleanup(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.stop()
        self._cleanup_task = None
        self.logger.info("Dead letter queue cleanup stopped")
