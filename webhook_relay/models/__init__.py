from .delivery import Delivery
from .dead_letter_entry import DeadLetterRecord
from .webhook import Webhook
from .metric import MetricRecord

__all__ = [
    "Delivery",
    "DeadLetterRecord",
    "Webhook",
    "MetricRecord",
]
