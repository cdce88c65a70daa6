from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_relay.models.webhook import Webhook

from .base_repository import BaseRepository


class WebhookRepository(BaseRepository[Webhook]):
    """Read access to webhook configurations."""

    def __init__(self, session: AsyncSession):
        super().__init__(Webhook, session)

    async def get_active_by_id(self, webhook_id: str) -> Optional[Webhook]:
        query = select(Webhook).where(Webhook.id == webhook_id, Webhook.active.is_(True))
        result = await self.session.execute(query)
        return result.scalars().first()

    async def get_all_active(self) -> List[Webhook]:
        query = select(Webhook).where(Webhook.active.is_(True))
        result = await self.session.execute(query)
        return list(result.scalars().all())
