from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped

from webhook_relay.core.database import JSONType, utcnow

from .base import BaseModel


class Webhook(BaseModel):
    """
    Endpoint configuration, owned by the configuration store.

    ``format`` and ``headers`` are stored loosely and validated when read.
    """

    __tablename__ = "webhooks"
    __table_args__ = (
        Index("idx_webhooks_active", "active"),
    )

    id: Mapped[str] = Column(String(100), primary_key=True)
    subscription_id: Mapped[Optional[str]] = Column(String(100), nullable=True)
    url: Mapped[str] = Column(String(500), nullable=False)
    format: Mapped[str] = Column(String(50), nullable=False, default="generic")
    headers: Mapped[Any] = Column(JSONType, nullable=True, default=dict)
    timeout: Mapped[Optional[int]] = Column(Integer, nullable=True, default=30000)
    retry_attempts: Mapped[Optional[int]] = Column(Integer, nullable=True, default=3)
    active: Mapped[bool] = Column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<Webhook(id={self.id}, url='{self.url}', format={self.format}, active={self.active})>"
