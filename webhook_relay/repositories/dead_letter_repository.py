from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import delete, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_relay.models.dead_letter_entry import DeadLetterRecord
from webhook_relay.schemas.dead_letter import DeadLetterFilter

from .base_repository import BaseRepository


class DeadLetterRepository(BaseRepository[DeadLetterRecord]):
    """Repository for DeadLetterRecord operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(DeadLetterRecord, session)

    async def list_entries(self, entry_filter: DeadLetterFilter) -> List[DeadLetterRecord]:
        """Entries matching ``entry_filter``, newest first."""
        query = select(DeadLetterRecord)
        if entry_filter.webhook_id:
            query = query.where(DeadLetterRecord.webhook_id == entry_filter.webhook_id)
        if entry_filter.subscription_id:
            query = query.where(DeadLetterRecord.subscription_id == entry_filter.subscription_id)
        if entry_filter.since:
            query = query.where(DeadLetterRecord.failed_at >= entry_filter.since)

        query = (
            query.order_by(DeadLetterRecord.failed_at.desc())
            .offset(entry_filter.offset)
            .limit(entry_filter.limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_since(self, since: Optional[datetime] = None) -> int:
        query = select(func.count(DeadLetterRecord.id))
        if since is not None:
            query = query.where(DeadLetterRecord.failed_at > since)
        result = await self.session.execute(query)
        return result.scalar() or 0

    async def top_failure_reasons(self, limit: int = 10) -> List[Tuple[str, int]]:
        count = func.count(DeadLetterRecord.id).label("count")
        query = (
            select(DeadLetterRecord.failure_reason, count)
            .group_by(DeadLetterRecord.failure_reason)
            .order_by(desc(count))
            .limit(limit)
        )
        result = await self.session.execute(query)
        return [(reason, int(n)) for reason, n in result.all()]

    async def delete_before(self, older_than: datetime) -> int:
        query = delete(DeadLetterRecord).where(DeadLetterRecord.failed_at < older_than)
        result = await self.session.execute(query)
        return result.rowcount or 0
