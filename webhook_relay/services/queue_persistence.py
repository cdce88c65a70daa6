from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_relay.core.database import utcnow
from webhook_relay.models.delivery import Delivery
from webhook_relay.repositories.delivery_repository import DeliveryRepository
from webhook_relay.schemas.delivery import DeliveryStatus, QueueMetrics, WebhookDelivery

from .base_service import BaseService

RepositoryFactory = Callable[[AsyncSession], DeliveryRepository]


class QueuePersistence(BaseService[DeliveryRepository]):
    """
    Durable store for deliveries.

    Every method runs in its own session and transaction, so a crash can
    only ever leave a delivery in a state that was fully committed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        repository_factory: RepositoryFactory = DeliveryRepository,
    ):
        super().__init__(session_factory, repository_factory)

    async def save_delivery(self, delivery: WebhookDelivery) -> None:
        row = Delivery.from_schema(delivery)
        row.status = DeliveryStatus.PENDING.value
        row.attempts = 0
        row.next_retry = None
        async with self.repository("save_delivery") as repo:
            await repo.merge(row)

    async def get_next_delivery(self) -> Optional[WebhookDelivery]:
        async with self.repository("get_next_delivery") as repo:
            row = await repo.claim_next(utcnow())
            return row.to_schema() if row is not None else None

    async def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        async with self.repository("get_delivery") as repo:
            row = await repo.get_by_id(delivery_id)
            return row.to_schema() if row is not None else None

    async def update_delivery_status(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        error: Optional[str] = None,
    ) -> bool:
        """
        Record the outcome of a claimed delivery.

        Returns False when the row is no longer in processing, e.g. after
        maintenance reset it and another worker finished it.
        """
        async with self.repository("update_delivery_status") as repo:
            matched = await repo.update_status(delivery_id, DeliveryStatus(status), utcnow(), error)
        if not matched:
            self.logger.warning("Status update matched no delivery", delivery_id=delivery_id, status=str(status))
        return bool(matched)

    async def update_retry_schedule(self, delivery_id: str, next_retry: datetime, attempts: int) -> bool:
        async with self.repository("update_retry_schedule") as repo:
            matched = await repo.update_retry_schedule(delivery_id, next_retry, attempts, utcnow())
        if not matched:
            self.logger.warning("Retry schedule matched no delivery", delivery_id=delivery_id, attempts=attempts)
        return bool(matched)

    async def update_delivery_response(
        self,
        delivery_id: str,
        response_status: Optional[int],
        response_time: Optional[int],
    ) -> None:
        async with self.repository("update_delivery_response") as repo:
            await repo.update_response(delivery_id, response_status, response_time)

    async def get_queue_metrics(self) -> QueueMetrics:
        async with self.repository("get_queue_metrics") as repo:
            counts = await repo.count_by_status()
        return QueueMetrics(
            pending_count=counts.get(DeliveryStatus.PENDING.value, 0),
            processing_count=counts.get(DeliveryStatus.PROCESSING.value, 0),
            completed_count=counts.get(DeliveryStatus.COMPLETED.value, 0),
            failed_count=counts.get(DeliveryStatus.FAILED.value, 0),
        )

    async def cleanup_completed_deliveries(self, older_than: datetime) -> int:
        async with self.repository("cleanup_completed_deliveries") as repo:
            return await repo.delete_completed_before(older_than)

    async def get_stuck_deliveries(self, threshold_ms: int = 300000) -> List[WebhookDelivery]:
        """Deliveries left in processing longer than ``threshold_ms``."""
        cutoff = utcnow() - timedelta(milliseconds=threshold_ms)
        async with self.repository("get_stuck_deliveries") as repo:
            rows = await repo.get_stuck(cutoff)
            return [row.to_schema() for row in rows]

    async def reset_stuck_deliveries(self, threshold_ms: int = 300000) -> int:
        """
        Return orphaned processing deliveries to the claim pool.

        A row still in processing after ``threshold_ms`` is presumed to belong
        to a worker that died before recording an outcome.
        """
        cutoff = utcnow() - timedelta(milliseconds=threshold_ms)
        async with self.repository("reset_stuck_deliveries") as repo:
            return await repo.reset_stuck(cutoff)
