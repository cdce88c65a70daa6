from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from webhook_relay.models.metric import MetricRecord

from .base_repository import BaseRepository


class MetricRepository(BaseRepository[MetricRecord]):
    """Repository for MetricRecord operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(MetricRecord, session)

    async def add_many(self, records: Iterable[MetricRecord]) -> int:
        records = list(records)
        self.session.add_all(records)
        await self.session.flush()
        return len(records)
