import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (DeliveryStatus.COMPLETED, DeliveryStatus.FAILED)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str)


class BlockchainEvent(BaseModel):
    """Snapshot of the on-chain event a delivery was created for."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    contract_address: str = Field(..., alias="contractAddress")
    event_name: str = Field(..., alias="eventName")
    block_number: int = Field(..., ge=0, alias="blockNumber")
    transaction_hash: str = Field(..., alias="transactionHash")
    log_index: int = Field(..., ge=0, alias="logIndex")
    args: Dict[str, str] = Field(default_factory=dict)
    timestamp: datetime

    @field_validator("args", mode="before")
    @classmethod
    def coerce_args(cls, v):
        """Keep argument order, coerce every value to its string form."""
        if v is None:
            return {}
        return {str(key): _stringify(value) for key, value in dict(v).items()}


class WebhookDelivery(BaseModel):
    """One attempt-tracked unit of work: send ``payload`` to ``webhook_id``."""

    id: str
    subscription_id: str
    webhook_id: str
    event: BlockchainEvent
    payload: Any = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    next_retry: Optional[datetime] = None
    last_attempt: Optional[datetime] = None
    response_status: Optional[int] = None
    response_time: Optional[int] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class DeliveryResult(BaseModel):
    """What a sender reports back after a successful POST."""

    status_code: Optional[int] = None
    response_time_ms: Optional[int] = None


class QueueMetrics(BaseModel):
    pending_count: int = 0
    processing_count: int = 0
    completed_count: int = 0
    failed_count: int = 0


class QueueStats(BaseModel):
    """Persisted status counts merged with this process's live state."""

    pending_count: int = 0
    persisted_processing_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    processing_count: int = 0
    max_concurrent_deliveries: int = 0


class ProcessorStats(BaseModel):
    is_running: bool = False
    total_processed: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    current_queue_size: int = 0
    processing_count: int = 0
    max_concurrent_deliveries: int = 0
    queue_backlog_warnings: int = 0
