from typing import Optional


class WebhookRelayError(Exception):
    """Base class for delivery subsystem errors."""
    pass


class TransientDeliveryFailure(WebhookRelayError):
    """A delivery attempt failed in a way that may succeed on retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PermanentDeliveryFailure(WebhookRelayError):
    """A delivery used up all of its attempts."""

    reason = "Max retry attempts exceeded"

    def __init__(self, delivery_id: str, attempts: int, last_error: str):
        super().__init__(
            f"Delivery {delivery_id} failed after {attempts} attempts: {last_error}"
        )
        self.delivery_id = delivery_id
        self.attempts = attempts
        self.last_error = last_error


class ConfigurationError(WebhookRelayError):
    """Webhook configuration is missing or invalid."""
    pass


class InfrastructureError(WebhookRelayError):
    """Database or connection failure on a foreground call."""
    pass


class MalformedDataWarning(WebhookRelayError):
    """Stored data could not be parsed; callers substitute a safe default."""
    pass
