from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped

from webhook_relay.core.database import JSONType, utcnow
from webhook_relay.schemas.delivery import BlockchainEvent, DeliveryStatus, WebhookDelivery

from .base import BaseModel


class Delivery(BaseModel):
    """Persisted webhook delivery and its attempt history."""

    __tablename__ = "deliveries"
    __table_args__ = (
        Index("idx_deliveries_status", "status"),
        Index("idx_deliveries_next_retry", "next_retry"),
        Index("idx_deliveries_created_at", "created_at"),
        Index("idx_deliveries_webhook", "webhook_id"),
    )

    id: Mapped[str] = Column(String(100), primary_key=True)
    subscription_id: Mapped[str] = Column(String(100), nullable=False)
    webhook_id: Mapped[str] = Column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = Column(JSONType, nullable=False)
    payload: Mapped[Any] = Column(JSONType, nullable=False)
    status: Mapped[str] = Column(String(20), nullable=False, default=DeliveryStatus.PENDING.value)
    attempts: Mapped[int] = Column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = Column(Integer, nullable=False, default=3)
    next_retry: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)
    last_attempt: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)
    response_status: Mapped[Optional[int]] = Column(Integer, nullable=True)
    response_time: Mapped[Optional[int]] = Column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = Column(Text, nullable=True)
    created_at: Mapped[datetime] = Column(DateTime, nullable=False, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<Delivery(id={self.id}, webhook_id={self.webhook_id}, status={self.status}, attempts={self.attempts})>"

    @classmethod
    def from_schema(cls, delivery: WebhookDelivery) -> "Delivery":
        return cls(
            id=delivery.id,
            subscription_id=delivery.subscription_id,
            webhook_id=delivery.webhook_id,
            event_data=delivery.event.model_dump(mode="json", by_alias=True),
            payload=delivery.payload,
            status=delivery.status.value,
            attempts=delivery.attempts,
            max_attempts=delivery.max_attempts,
            next_retry=delivery.next_retry,
            last_attempt=delivery.last_attempt,
            response_status=delivery.response_status,
            response_time=delivery.response_time,
            error_message=delivery.error_message,
            created_at=delivery.created_at or utcnow(),
            completed_at=delivery.completed_at,
        )

    def to_schema(self) -> WebhookDelivery:
        return WebhookDelivery(
            id=self.id,
            subscription_id=self.subscription_id,
            webhook_id=self.webhook_id,
            event=BlockchainEvent.model_validate(self.event_data),
            payload=self.payload,
            status=DeliveryStatus(self.status),
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            next_retry=self.next_retry,
            last_attempt=self.last_attempt,
            response_status=self.response_status,
            response_time=self.response_time,
            error_message=self.error_message,
            created_at=self.created_at,
            completed_at=self.completed_at,
        )
