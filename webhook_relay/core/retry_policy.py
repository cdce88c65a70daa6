import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from webhook_relay.core.database import utcnow
from webhook_relay.schemas.delivery import DeliveryStatus, WebhookDelivery


@dataclass
class RetryPolicy:
    base_delay_ms: int = 1000
    max_delay_ms: int = 300000
    backoff_multiplier: float = 2.0
    max_jitter: float = 0.5


DEFAULT_POLICY = RetryPolicy()


class RetryScheduler:
    """
    Exponential backoff with multiplicative jitter.

    The delay for attempt ``n`` is ``min(base * 2**n, cap)`` scaled by a
    random factor in ``[1.0, 1 + max_jitter)``.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        random_source: Callable[[], float] = random.random,
    ):
        self.policy = policy or DEFAULT_POLICY
        self.random_source = random_source

    @classmethod
    def from_delays(cls, base_delay_ms: int, max_delay_ms: int) -> "RetryScheduler":
        return cls(RetryPolicy(base_delay_ms=base_delay_ms, max_delay_ms=max_delay_ms))

    def should_retry(self, delivery: WebhookDelivery) -> bool:
        return (
            delivery.status != DeliveryStatus.COMPLETED
            and delivery.attempts < delivery.max_attempts
        )

    def get_backoff_delay(self, attempts: int) -> int:
        """Delay in milliseconds before retry number ``attempts``."""
        policy = self.policy
        # Float power overflows for very large exponents
        exponent = min(max(0, attempts), 64)
        delay = min(
            policy.base_delay_ms * (policy.backoff_multiplier ** exponent),
            policy.max_delay_ms,
        )
        jitter = 1.0 + self.random_source() * policy.max_jitter
        return int(delay * jitter)

    def calculate_next_retry(self, attempts: int) -> datetime:
        return utcnow() + timedelta(milliseconds=self.get_backoff_delay(attempts))
