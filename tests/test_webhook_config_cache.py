"""
Unit tests for WebhookConfigCache.
"""
import pytest
from sqlalchemy.exc import OperationalError

from webhook_relay.core.exceptions import InfrastructureError
from webhook_relay.models.webhook import Webhook
from webhook_relay.schemas.webhook import WebhookFormat
from webhook_relay.services.webhook_config_cache import WebhookConfigCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestWebhookConfigCache:
    """Test cases for WebhookConfigCache."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, session_factory, mock_webhook_repo, clock):
        return WebhookConfigCache(
            session_factory,
            lambda session: mock_webhook_repo,
            ttl_seconds=300,
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_miss_loads_and_maps_row(self, cache, mock_webhook_repo, sample_webhook_row):
        mock_webhook_repo.get_active_by_id.return_value = sample_webhook_row

        config = await cache.get_webhook_config("webhook-1")

        assert config.id == "webhook-1"
        assert config.url == "https://hooks.example.com/relay"
        assert config.format == WebhookFormat.ZAPIER
        assert config.headers == {"Authorization": "Bearer token"}
        assert config.timeout == 5000
        assert config.retry_attempts == 5
        mock_webhook_repo.get_active_by_id.assert_awaited_once_with("webhook-1")

    @pytest.mark.asyncio
    async def test_one_query_per_ttl_window(self, cache, mock_webhook_repo, sample_webhook_row, clock):
        mock_webhook_repo.get_active_by_id.return_value = sample_webhook_row

        for _ in range(5):
            await cache.get_webhook_config("webhook-1")
            clock.advance(59)

        assert mock_webhook_repo.get_active_by_id.await_count == 1

        clock.advance(10)
        await cache.get_webhook_config("webhook-1")

        assert mock_webhook_repo.get_active_by_id.await_count == 2
        stats = cache.get_cache_stats()
        assert stats["hits"] == 4
        assert stats["misses"] == 2

    @pytest.mark.asyncio
    async def test_unknown_webhook_returns_none(self, cache, mock_webhook_repo):
        assert await cache.get_webhook_config("missing") is None
        assert cache.get_cache_stats()["size"] == 0

    @pytest.mark.asyncio
    async def test_malformed_headers_default_to_empty(self, cache, mock_webhook_repo):
        mock_webhook_repo.get_active_by_id.return_value = Webhook(
            id="webhook-2", url="https://example.com", format="generic", headers="{not json", active=True,
        )

        config = await cache.get_webhook_config("webhook-2")

        assert config.headers == {}

    @pytest.mark.asyncio
    async def test_headers_stored_as_json_string(self, cache, mock_webhook_repo):
        mock_webhook_repo.get_active_by_id.return_value = Webhook(
            id="webhook-2", url="https://example.com", format="make", headers='{"X-Key": "abc"}', active=True,
        )

        config = await cache.get_webhook_config("webhook-2")

        assert config.headers == {"X-Key": "abc"}
        assert config.format == WebhookFormat.MAKE

    @pytest.mark.asyncio
    async def test_unknown_format_defaults_to_generic(self, cache, mock_webhook_repo):
        mock_webhook_repo.get_active_by_id.return_value = Webhook(
            id="webhook-3", url="https://example.com", format="ifttt", headers=None, active=True,
        )

        config = await cache.get_webhook_config("webhook-3")

        assert config.format == WebhookFormat.GENERIC
        assert config.headers == {}

    @pytest.mark.asyncio
    async def test_missing_timeout_and_attempts_use_defaults(self, cache, mock_webhook_repo):
        mock_webhook_repo.get_active_by_id.return_value = Webhook(
            id="webhook-4", url="https://example.com", format="n8n", timeout=None, retry_attempts=0, active=True,
        )

        config = await cache.get_webhook_config("webhook-4")

        assert config.timeout == 30000
        assert config.retry_attempts == 3

    @pytest.mark.asyncio
    async def test_load_replaces_cache_wholesale(self, cache, mock_webhook_repo, sample_webhook_row):
        mock_webhook_repo.get_active_by_id.return_value = Webhook(id="stale", url="https://old.example.com", active=True)
        await cache.get_webhook_config("stale")
        mock_webhook_repo.get_all_active.return_value = [sample_webhook_row]

        loaded = await cache.load_webhook_configs()

        assert loaded == 1
        assert cache.get_cache_stats()["entries"] == ["webhook-1"]
        assert cache.get_cache_stats()["loads"] == 1

    @pytest.mark.asyncio
    async def test_refresh_failure_keeps_existing_entries(self, cache, mock_webhook_repo, sample_webhook_row):
        mock_webhook_repo.get_all_active.return_value = [sample_webhook_row]
        await cache.load_webhook_configs()
        before = await cache.get_webhook_config("webhook-1")
        mock_webhook_repo.get_all_active.side_effect = OperationalError("SELECT", {}, Exception("down"))

        refreshed = await cache.refresh_configs()

        assert refreshed is False
        assert await cache.get_webhook_config("webhook-1") == before
        mock_webhook_repo.get_active_by_id.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh_success(self, cache, mock_webhook_repo, sample_webhook_row):
        mock_webhook_repo.get_all_active.return_value = [sample_webhook_row]

        assert await cache.refresh_configs() is True

    @pytest.mark.asyncio
    async def test_lookup_database_error_propagates(self, cache, mock_webhook_repo):
        mock_webhook_repo.get_active_by_id.side_effect = OperationalError("SELECT", {}, Exception("down"))

        with pytest.raises(InfrastructureError):
            await cache.get_webhook_config("webhook-1")

    @pytest.mark.asyncio
    async def test_clear_cache(self, cache, mock_webhook_repo, sample_webhook_row):
        mock_webhook_repo.get_all_active.return_value = [sample_webhook_row]
        await cache.load_webhook_configs()

        cache.clear_cache()

        assert cache.get_cache_stats()["size"] == 0
