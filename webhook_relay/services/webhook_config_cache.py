import time
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from webhook_relay.core.exceptions import MalformedDataWarning
from webhook_relay.models.webhook import Webhook
from webhook_relay.repositories.webhook_repository import WebhookRepository
from webhook_relay.schemas.webhook import (
    WebhookConfig,
    WebhookFormat,
    parse_format,
    parse_headers,
)

from .base_service import BaseService


class WebhookConfigCache(BaseService[WebhookRepository]):
    """
    Read-through TTL cache over the active rows of the webhooks table.

    Each entry expires ``ttl_seconds`` after it was loaded. A failed bulk
    refresh leaves the current entries in place.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        repository_factory: Callable[[AsyncSession], WebhookRepository] = WebhookRepository,
        ttl_seconds: float = 300.0,
        default_timeout_ms: int = 30000,
        default_retry_attempts: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(session_factory, repository_factory)
        self.ttl_seconds = ttl_seconds
        self.default_timeout_ms = default_timeout_ms
        self.default_retry_attempts = default_retry_attempts
        self.clock = clock

        # webhook id -> (config, expires at)
        self._cache: Dict[str, Tuple[WebhookConfig, float]] = {}
        self._hits = 0
        self._misses = 0
        self._loads = 0

    async def get_webhook_config(self, webhook_id: str) -> Optional[WebhookConfig]:
        cached = self._get_cached(webhook_id)
        if cached is not None:
            self._hits += 1
            return cached

        self._misses += 1
        async with self.repository("get_webhook_config") as repo:
            row = await repo.get_active_by_id(webhook_id)
            config = self._to_config(row) if row is not None else None

        if config is None:
            self.logger.warning("Webhook config not found", webhook_id=webhook_id)
            return None

        self._set_cached(config)
        return config

    async def load_webhook_configs(self) -> int:
        """Replace the cache with every active config. Returns the count loaded."""
        async with self.repository("load_webhook_configs") as repo:
            rows = await repo.get_all_active()
            configs = [self._to_config(row) for row in rows]

        expires_at = self.clock() + self.ttl_seconds
        self._cache = {config.id: (config, expires_at) for config in configs}
        self._loads += 1
        self.logger.info("Loaded webhook configurations", count=len(configs))
        return len(configs)

    async def refresh_configs(self) -> bool:
        try:
            await self.load_webhook_configs()
            return True
        except Exception as e:
            self.logger.error(
                "Failed to refresh webhook configurations, keeping cached entries",
                error=str(e),
                cached=len(self._cache),
            )
            return False

    def get_cache_stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._cache),
            "entries": list(self._cache.keys()),
            "hits": self._hits,
            "misses": self._misses,
            "loads": self._loads,
        }

    def clear_cache(self) -> None:
        self._cache.clear()
        self.logger.info("Webhook config cache cleared")

    def _get_cached(self, webhook_id: str) -> Optional[WebhookConfig]:
        entry = self._cache.get(webhook_id)
        if entry is None:
            return None

        config, expires_at = entry
        if self.clock() < expires_at:
            return config

        del self._cache[webhook_id]
        return None

    def _set_cached(self, config: WebhookConfig) -> None:
        self._cache[config.id] = (config, self.clock() + self.ttl_seconds)

    def _to_config(self, row: Webhook) -> WebhookConfig:
        try:
            headers = parse_headers(row.headers)
        except MalformedDataWarning as e:
            self.logger.warning("Failed to parse webhook headers", webhook_id=row.id, error=str(e))
            headers = {}

        if row.format:
            try:
                webhook_format = parse_format(row.format)
            except MalformedDataWarning as e:
                self.logger.warning(
                    "Invalid webhook format, defaulting to generic",
                    webhook_id=row.id,
                    error=str(e),
                )
                webhook_format = WebhookFormat.GENERIC
        else:
            webhook_format = WebhookFormat.GENERIC

        return WebhookConfig(
            id=row.id,
            url=row.url,
            format=webhook_format,
            headers=headers,
            timeout=row.timeout if row.timeout and row.timeout > 0 else self.default_timeout_ms,
            retry_attempts=(
                row.retry_attempts if row.retry_attempts and row.retry_attempts > 0
                else self.default_retry_attempts
            ),
        )
