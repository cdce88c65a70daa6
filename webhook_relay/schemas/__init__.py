from .delivery import (
    BlockchainEvent,
    DeliveryResult,
    DeliveryStatus,
    ProcessorStats,
    QueueMetrics,
    QueueStats,
    WebhookDelivery,
)
from .webhook import WebhookConfig, WebhookFormat
from .dead_letter import (
    DeadLetterEntry,
    DeadLetterFilter,
    DeadLetterStats,
    FailureReasonCount,
)

__all__ = [
    "BlockchainEvent",
    "DeliveryResult",
    "DeliveryStatus",
    "ProcessorStats",
    "QueueMetrics",
    "QueueStats",
    "WebhookDelivery",
    "WebhookConfig",
    "WebhookFormat",
    "DeadLetterEntry",
    "DeadLetterFilter",
    "DeadLetterStats",
    "FailureReasonCount",
]
