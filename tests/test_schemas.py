"""
Unit tests for schemas, settings and small core helpers.
"""
import asyncio
import pytest
from pydantic import ValidationError

from webhook_relay.core.config import Settings
from webhook_relay.core.exceptions import MalformedDataWarning
from webhook_relay.core.periodic import PeriodicTask
from webhook_relay.models.dead_letter_entry import DeadLetterRecord
from webhook_relay.models.delivery import Delivery
from webhook_relay.schemas.delivery import BlockchainEvent, DeliveryStatus
from webhook_relay.schemas.webhook import WebhookFormat, parse_format, parse_headers


class TestBlockchainEvent:
    """Test cases for the event snapshot."""

    def test_args_are_stringified_in_order(self, sample_event):
        assert list(sample_event.args) == ["from", "to", "value"]
        assert sample_event.args["value"] == "1000000000000000000000000"

    def test_nested_and_boolean_args(self, sample_event):
        event = BlockchainEvent.model_validate({
            **sample_event.model_dump(by_alias=True),
            "args": {"approved": True, "ids": [1, 2]},
        })
        assert event.args == {"approved": "true", "ids": "[1,2]"}

    def test_accepts_camel_case_keys(self, sample_event):
        data = sample_event.model_dump(mode="json", by_alias=True)

        assert "contractAddress" in data
        assert BlockchainEvent.model_validate(data) == sample_event

    def test_is_immutable(self, sample_event):
        with pytest.raises(ValidationError):
            sample_event.block_number = 1


class TestDeliveryRow:
    """Test cases for the delivery row mapping."""

    def test_row_preserves_event_and_payload(self, sample_delivery):
        row = Delivery.from_schema(sample_delivery)
        restored = row.to_schema()

        assert row.status == DeliveryStatus.PROCESSING.value
        assert restored.event == sample_delivery.event
        assert restored.payload == sample_delivery.payload
        assert restored.max_attempts == 3

    def test_terminal_statuses(self, sample_delivery):
        assert not sample_delivery.is_terminal
        assert sample_delivery.model_copy(update={"status": DeliveryStatus.FAILED}).is_terminal

    def test_dead_letter_entry_replays_as_fresh_delivery(self, sample_delivery):
        failed = sample_delivery.model_copy(update={"attempts": 3, "status": DeliveryStatus.FAILED})
        entry = DeadLetterRecord.from_delivery(failed, "Max retry attempts exceeded", "HTTP 500").to_schema()

        delivery = entry.to_delivery(max_attempts=6)

        assert delivery.id == failed.id
        assert delivery.status == DeliveryStatus.PENDING
        assert delivery.attempts == 0
        assert delivery.max_attempts == 6
        assert delivery.event == failed.event
        assert delivery.payload == failed.payload


class TestWebhookParsing:
    """Test cases for stored webhook values."""

    def test_parse_headers(self):
        assert parse_headers(None) == {}
        assert parse_headers("") == {}
        assert parse_headers({"X-Retry": 3}) == {"X-Retry": "3"}
        assert parse_headers('{"A": "b"}') == {"A": "b"}

    @pytest.mark.parametrize("raw", ["{oops", "[1, 2]", {"A": {"nested": True}}, {"A": True}])
    def test_parse_headers_rejects_malformed(self, raw):
        with pytest.raises(MalformedDataWarning):
            parse_headers(raw)

    def test_parse_format(self):
        assert parse_format("n8n") == WebhookFormat.N8N
        with pytest.raises(MalformedDataWarning):
            parse_format("slack")


class TestSettings:
    """Test cases for Settings validators."""

    def test_log_level_is_normalized(self):
        assert Settings(LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"

    def test_unknown_environment_rejected(self):
        with pytest.raises(ValidationError):
            Settings(ENVIRONMENT="qa")

    def test_async_database_url(self):
        app_settings = Settings(DATABASE_URL="postgresql://u:p@db:5432/relay")
        assert app_settings.async_database_url == "postgresql+asyncpg://u:p@db:5432/relay"


class TestPeriodicTask:
    """Test cases for PeriodicTask."""

    @pytest.mark.asyncio
    async def test_runs_until_stopped(self):
        calls = []

        async def tick():
            calls.append(1)

        task = PeriodicTask("test-tick", 0.01, tick)
        task.start()
        await asyncio.sleep(0.1)
        task.stop()
        seen = len(calls)
        await asyncio.sleep(0.05)

        assert seen >= 2
        assert len(calls) == seen
        assert not task.is_running

    @pytest.mark.asyncio
    async def test_run_once_logs_callback_errors(self):
        async def boom():
            raise RuntimeError("boom")

        task = PeriodicTask("test-boom", 60, boom)

        await task.run_once()
