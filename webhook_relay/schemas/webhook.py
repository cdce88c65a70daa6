import json
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field

from webhook_relay.core.exceptions import MalformedDataWarning


class WebhookFormat(str, Enum):
    ZAPIER = "zapier"
    MAKE = "make"
    N8N = "n8n"
    GENERIC = "generic"


class WebhookConfig(BaseModel):
    """Read-mostly endpoint configuration."""

    id: str
    url: str
    format: WebhookFormat = WebhookFormat.GENERIC
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: int = Field(default=30000, gt=0, description="Request timeout in milliseconds")
    retry_attempts: int = Field(default=3, ge=1)


def parse_headers(raw: Any) -> Dict[str, str]:
    """
    Parse a stored headers value into a ``str -> str`` map.

    Raises:
        MalformedDataWarning: if the value is not a JSON object of strings
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise MalformedDataWarning(f"Headers are not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise MalformedDataWarning(f"Headers must be an object, got {type(raw).__name__}")
    headers = {}
    for key, value in raw.items():
        if not isinstance(value, (str, int, float)) or isinstance(value, bool):
            raise MalformedDataWarning(f"Header {key!r} has a non-scalar value")
        headers[str(key)] = str(value)
    return headers


def parse_format(raw: Any) -> WebhookFormat:
    """
    Raises:
        MalformedDataWarning: if ``raw`` is not a known format
    """
    try:
        return WebhookFormat(raw)
    except ValueError as e:
        raise MalformedDataWarning(f"Unknown webhook format: {raw!r}") from e
