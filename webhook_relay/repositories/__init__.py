from .base_repository import BaseRepository
from .delivery_repository import DeliveryRepository
from .dead_letter_repository import DeadLetterRepository
from .webhook_repository import WebhookRepository
from .metric_repository import MetricRepository

__all__ = [
    "BaseRepository",
    "DeliveryRepository",
    "DeadLetterRepository",
    "WebhookRepository",
    "MetricRepository",
]
