from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped

from webhook_relay.core.database import JSONType, utcnow
from webhook_relay.schemas.dead_letter import DeadLetterEntry
from webhook_relay.schemas.delivery import BlockchainEvent, WebhookDelivery

from .base import BaseModel


class DeadLetterRecord(BaseModel):
    """Archive row for a delivery that exhausted its retries, keyed by delivery id."""

    __tablename__ = "dead_letter_queue"
    __table_args__ = (
        Index("idx_dead_letter_failed_at", "failed_at"),
        Index("idx_dead_letter_webhook", "webhook_id"),
    )

    id: Mapped[str] = Column(String(100), primary_key=True)
    subscription_id: Mapped[str] = Column(String(100), nullable=False)
    webhook_id: Mapped[str] = Column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = Column(JSONType, nullable=False)
    payload: Mapped[Any] = Column(JSONType, nullable=False)
    failure_reason: Mapped[str] = Column(String(255), nullable=False)
    failed_at: Mapped[datetime] = Column(DateTime, nullable=False, default=utcnow)
    attempts: Mapped[int] = Column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<DeadLetterRecord(id={self.id}, webhook_id={self.webhook_id}, reason='{self.failure_reason}')>"

    @classmethod
    def from_delivery(
        cls,
        delivery: WebhookDelivery,
        failure_reason: str,
        last_error: Optional[str],
    ) -> "DeadLetterRecord":
        return cls(
            id=delivery.id,
            subscription_id=delivery.subscription_id,
            webhook_id=delivery.webhook_id,
            event_data=delivery.event.model_dump(mode="json", by_alias=True),
            payload=delivery.payload,
            failure_reason=failure_reason,
            failed_at=utcnow(),
            attempts=delivery.attempts,
            last_error=last_error,
        )

    def to_schema(self) -> DeadLetterEntry:
        return DeadLetterEntry(
            id=self.id,
            subscription_id=self.subscription_id,
            webhook_id=self.webhook_id,
            event=BlockchainEvent.model_validate(self.event_data),
            payload=self.payload,
            failure_reason=self.failure_reason,
            failed_at=self.failed_at,
            attempts=self.attempts,
            last_error=self.last_error,
        )
