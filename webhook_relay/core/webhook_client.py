import json
import time
from typing import Any, Optional, Protocol

import httpx

from webhook_relay.core.config import settings
from webhook_relay.core.exceptions import TransientDeliveryFailure
from webhook_relay.core.logging import get_logger
from webhook_relay.schemas.delivery import DeliveryResult, WebhookDelivery
from webhook_relay.schemas.webhook import WebhookConfig

logger = get_logger(__name__)


class WebhookSender(Protocol):
    """
    Performs one delivery attempt.

    Raising counts as a failed attempt; returning normally counts as success.
    A returned DeliveryResult is recorded on the delivery.
    """

    async def send_webhook(self, config: WebhookConfig, delivery: WebhookDelivery) -> Any:
        ...


class HttpWebhookSender:
    """Posts a delivery's payload as JSON to the configured endpoint."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, user_agent: Optional[str] = None):
        """
        Initialize webhook sender.

        Args:
            client: Shared client to send with; a short-lived client is
                created per request when omitted
            user_agent: User-Agent header value
        """
        self.client = client
        self.user_agent = user_agent or f"{settings.APP_NAME}/{settings.VERSION}"

    async def send_webhook(self, config: WebhookConfig, delivery: WebhookDelivery) -> DeliveryResult:
        """
        Send a single delivery attempt.

        Returns:
            Status code and response time of the successful request

        Raises:
            TransientDeliveryFailure: on a non-2xx response or transport error
        """
        payload_json = json.dumps(delivery.payload, separators=(",", ":"), default=str)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            "X-Webhook-Delivery-ID": delivery.id,
            "X-Webhook-Attempt": str(delivery.attempts + 1),
        }
        headers.update(config.headers)
        timeout = config.timeout / 1000

        logger.info(
            "Sending webhook",
            url=config.url,
            delivery_id=delivery.id,
            webhook_id=config.id,
            attempt=delivery.attempts + 1,
            payload_size=len(payload_json),
        )

        started = time.monotonic()
        try:
            if self.client is not None:
                response = await self.client.post(config.url, content=payload_json, headers=headers, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(config.url, content=payload_json, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("Webhook timeout", url=config.url, delivery_id=delivery.id, timeout_ms=config.timeout)
            raise TransientDeliveryFailure(f"Request timed out after {config.timeout}ms") from e
        except httpx.HTTPError as e:
            logger.error("Webhook HTTP error", url=config.url, delivery_id=delivery.id, error=str(e))
            raise TransientDeliveryFailure(f"Request failed: {e}") from e

        response_time_ms = int((time.monotonic() - started) * 1000)

        if not response.is_success:
            logger.warning(
                "Webhook delivery failed",
                url=config.url,
                delivery_id=delivery.id,
                status_code=response.status_code,
                response_text=response.text[:500],
            )
            raise TransientDeliveryFailure(
                f"HTTP {response.status_code} from {config.url}",
                status_code=response.status_code,
            )

        logger.info(
            "Webhook delivered successfully",
            url=config.url,
            delivery_id=delivery.id,
            status_code=response.status_code,
            response_time_ms=response_time_ms,
        )
        return DeliveryResult(status_code=response.status_code, response_time_ms=response_time_ms)
