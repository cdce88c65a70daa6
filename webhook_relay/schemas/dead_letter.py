from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from .delivery import BlockchainEvent, DeliveryStatus, WebhookDelivery


class DeadLetterEntry(BaseModel):
    """Archived delivery that exhausted its retries."""

    id: str
    subscription_id: str
    webhook_id: str
    event: BlockchainEvent
    payload: Any = None
    failure_reason: str
    failed_at: datetime
    attempts: int = 0
    last_error: Optional[str] = None

    def to_delivery(self, max_attempts: int) -> WebhookDelivery:
        """Fresh pending delivery that replays this entry under its original id."""
        return WebhookDelivery(
            id=self.id,
            subscription_id=self.subscription_id,
            webhook_id=self.webhook_id,
            event=self.event,
            payload=self.payload,
            status=DeliveryStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
        )


class DeadLetterFilter(BaseModel):
    webhook_id: Optional[str] = None
    subscription_id: Optional[str] = None
    since: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class FailureReasonCount(BaseModel):
    reason: str
    count: int


class DeadLetterStats(BaseModel):
    total_entries: int = 0
    entries_last_24h: int = 0
    entries_last_7d: int = 0
    top_failure_reasons: List[FailureReasonCount] = Field(default_factory=list)
