from .base_service import BaseService
from .queue_persistence import QueuePersistence
from .dead_letter_queue import DeadLetterQueue
from .metrics_collector import MetricsCollector
from .delivery_queue import DeliveryQueue, DeliveryQueueOptions
from .webhook_config_cache import WebhookConfigCache
from .queue_processor import QueueProcessor, create_queue_processor

__all__ = [
    "BaseService",
    "QueuePersistence",
    "DeadLetterQueue",
    "MetricsCollector",
    "DeliveryQueue",
    "DeliveryQueueOptions",
    "WebhookConfigCache",
    "QueueProcessor",
    "create_queue_processor",
]
