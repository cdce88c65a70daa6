from datetime import datetime
from decimal import Decimal
from typing import Dict

from sqlalchemy import Column, DateTime, Index, Numeric, String
from sqlalchemy.orm import Mapped

from webhook_relay.core.database import JSONType, utcnow

from .base import BaseModel


class MetricRecord(BaseModel):
    """Point-in-time metric value written on each collector flush."""

    __tablename__ = "metrics"
    __table_args__ = (
        Index("idx_metrics_name_timestamp", "metric_name", "timestamp"),
    )

    id: Mapped[str] = Column(String(100), primary_key=True)
    metric_name: Mapped[str] = Column(String(100), nullable=False)
    metric_value: Mapped[Decimal] = Column(Numeric, nullable=False)
    labels: Mapped[Dict[str, str]] = Column(JSONType, nullable=False, default=dict)
    timestamp: Mapped[datetime] = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<MetricRecord(metric_name={self.metric_name}, value={self.metric_value})>"
