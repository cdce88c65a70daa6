from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import Select, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_relay.models.delivery import Delivery
from webhook_relay.schemas.delivery import DeliveryStatus

from .base_repository import BaseRepository

# Outcome writes only apply to a row this worker still holds.
_CLAIMED = Delivery.status == DeliveryStatus.PROCESSING.value


def claim_query(now: datetime) -> Select:
    """
    Oldest due pending delivery, row-locked.

    Rows locked by another transaction are skipped, not waited on.
    """
    return (
        select(Delivery)
        .where(
            Delivery.status == DeliveryStatus.PENDING.value,
            or_(Delivery.next_retry.is_(None), Delivery.next_retry <= now),
        )
        .order_by(Delivery.created_at.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
    )


class DeliveryRepository(BaseRepository[Delivery]):
    """Repository for Delivery operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(Delivery, session)

    async def claim_next(self, now: datetime) -> Optional[Delivery]:
        """Lock the next eligible row and flip it to processing."""
        result = await self.session.execute(claim_query(now))
        delivery = result.scalars().first()
        if delivery is None:
            return None

        delivery.status = DeliveryStatus.PROCESSING.value
        delivery.last_attempt = now
        await self.session.flush()
        return delivery

    async def update_status(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        now: datetime,
        error: Optional[str] = None,
    ) -> int:
        values = {"status": status.value, "last_attempt": now}
        if status == DeliveryStatus.COMPLETED:
            values["completed_at"] = now
        if error is not None:
            values["error_message"] = error
        return await self.update_values(delivery_id, values, _CLAIMED)

    async def update_retry_schedule(
        self,
        delivery_id: str,
        next_retry: datetime,
        attempts: int,
        now: datetime,
    ) -> int:
        return await self.update_values(delivery_id, {
            "status": DeliveryStatus.PENDING.value,
            "next_retry": next_retry,
            "attempts": attempts,
            "last_attempt": now,
        }, _CLAIMED)

    async def update_response(
        self,
        delivery_id: str,
        response_status: Optional[int],
        response_time: Optional[int],
    ) -> int:
        return await self.update_values(delivery_id, {
            "response_status": response_status,
            "response_time": response_time,
        })

    async def count_by_status(self) -> Dict[str, int]:
        query = select(Delivery.status, func.count(Delivery.id)).group_by(Delivery.status)
        result = await self.session.execute(query)
        return {status: int(count) for status, count in result.all()}

    async def delete_completed_before(self, older_than: datetime) -> int:
        query = delete(Delivery).where(
            Delivery.status == DeliveryStatus.COMPLETED.value,
            Delivery.completed_at < older_than,
        )
        result = await self.session.execute(query)
        return result.rowcount or 0

    async def get_stuck(self, cutoff: datetime) -> List[Delivery]:
        query = select(Delivery).where(
            Delivery.status == DeliveryStatus.PROCESSING.value,
            Delivery.last_attempt < cutoff,
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def reset_stuck(self, cutoff: datetime) -> int:
        query = (
            update(Delivery)
            .where(
                Delivery.status == DeliveryStatus.PROCESSING.value,
                Delivery.last_attempt < cutoff,
            )
            .values(status=DeliveryStatus.PENDING.value, next_retry=None)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(query)
        return result.rowcount or 0
