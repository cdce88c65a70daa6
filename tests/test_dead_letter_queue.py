"""
Unit tests for DeadLetterQueue.
"""
import asyncio
import pytest
from datetime import timedelta
from sqlalchemy.exc import OperationalError

from webhook_relay.core.database import utcnow
from webhook_relay.core.exceptions import InfrastructureError
from webhook_relay.models.dead_letter_entry import DeadLetterRecord
from webhook_relay.schemas.dead_letter import DeadLetterFilter
from webhook_relay.schemas.delivery import DeliveryStatus
from webhook_relay.services.dead_letter_queue import DeadLetterQueue


class TestDeadLetterQueue:
    """Test cases for DeadLetterQueue."""

    @pytest.fixture
    def dlq(self, session_factory, mock_dead_letter_repo):
        return DeadLetterQueue(
            session_factory,
            lambda session: mock_dead_letter_repo,
            retention_days=30,
            cleanup_interval=0.01,
        )

    @pytest.fixture
    def archived_record(self, sample_delivery):
        delivery = sample_delivery.model_copy(update={"attempts": 3, "status": DeliveryStatus.FAILED})
        return DeadLetterRecord.from_delivery(delivery, "Max retry attempts exceeded", "HTTP 500")

    @pytest.mark.asyncio
    async def test_add_failed_delivery(self, dlq, mock_dead_letter_repo, mock_session, sample_delivery):
        await dlq.add_failed_delivery(sample_delivery, "Max retry attempts exceeded", "HTTP 502")

        record = mock_dead_letter_repo.merge.call_args[0][0]
        assert isinstance(record, DeadLetterRecord)
        assert record.id == sample_delivery.id
        assert record.webhook_id == "webhook-1"
        assert record.failure_reason == "Max retry attempts exceeded"
        assert record.last_error == "HTTP 502"
        assert record.payload == sample_delivery.payload
        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_failed_deliveries_default_filter(self, dlq, mock_dead_letter_repo, archived_record):
        mock_dead_letter_repo.list_entries.return_value = [archived_record]

        entries = await dlq.get_failed_deliveries()

        assert [entry.id for entry in entries] == ["delivery-1"]
        assert entries[0].attempts == 3
        used_filter = mock_dead_letter_repo.list_entries.call_args[0][0]
        assert used_filter == DeadLetterFilter()

    @pytest.mark.asyncio
    async def test_get_entry(self, dlq, mock_dead_letter_repo, archived_record, sample_event):
        mock_dead_letter_repo.get_by_id.return_value = archived_record

        entry = await dlq.get_entry("delivery-1")

        assert entry.event == sample_event
        assert entry.last_error == "HTTP 500"

    @pytest.mark.asyncio
    async def test_remove_failed_delivery(self, dlq, mock_dead_letter_repo):
        mock_dead_letter_repo.delete.return_value = False

        assert await dlq.remove_failed_delivery("missing") is False
        mock_dead_letter_repo.delete.assert_awaited_once_with("missing")

    @pytest.mark.asyncio
    async def test_get_entry_leaves_archive_intact(self, dlq, mock_dead_letter_repo, archived_record):
        mock_dead_letter_repo.get_by_id.return_value = archived_record

        await dlq.get_entry("delivery-1")

        mock_dead_letter_repo.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_entry_unknown(self, dlq):
        assert await dlq.get_entry("missing") is None

    @pytest.mark.asyncio
    async def test_get_stats(self, dlq, mock_dead_letter_repo):
        mock_dead_letter_repo.count_since.side_effect = [40, 3, 11]
        mock_dead_letter_repo.top_failure_reasons.return_value = [
            ("Max retry attempts exceeded", 38),
            ("Webhook configuration not found", 2),
        ]

        stats = await dlq.get_stats()

        assert stats.total_entries == 40
        assert stats.entries_last_24h == 3
        assert stats.entries_last_7d == 11
        assert stats.top_failure_reasons[0].reason == "Max retry attempts exceeded"
        assert stats.top_failure_reasons[0].count == 38
        mock_dead_letter_repo.top_failure_reasons.assert_awaited_once_with(10)

        windows = [call.args[0] if call.args else None for call in mock_dead_letter_repo.count_since.call_args_list]
        assert windows[0] is None
        assert windows[1] - windows[2] == timedelta(days=6)

    @pytest.mark.asyncio
    async def test_cleanup(self, dlq, mock_dead_letter_repo):
        mock_dead_letter_repo.delete_before.return_value = 6
        cutoff = utcnow() - timedelta(days=30)

        assert await dlq.cleanup(cutoff) == 6
        mock_dead_letter_repo.delete_before.assert_awaited_once_with(cutoff)

    @pytest.mark.asyncio
    async def test_cleanup_expired_uses_retention(self, dlq, mock_dead_letter_repo):
        await dlq.cleanup_expired()

        cutoff = mock_dead_letter_repo.delete_before.call_args[0][0]
        assert cutoff <= utcnow() - timedelta(days=30)
        assert cutoff > utcnow() - timedelta(days=30, minutes=1)

    @pytest.mark.asyncio
    async def test_periodic_cleanup_start_stop(self, dlq, mock_dead_letter_repo):
        dlq.start_cleanup()
        dlq.start_cleanup()
        try:
            await asyncio.sleep(0.1)
        finally:
            dlq.stop_cleanup()

        assert mock_dead_letter_repo.delete_before.await_count >= 1
        dlq.stop_cleanup()

    @pytest.mark.asyncio
    async def test_periodic_cleanup_survives_errors(self, dlq, mock_dead_letter_repo):
        mock_dead_letter_repo.delete_before.side_effect = OperationalError("DELETE", {}, Exception("down"))

        dlq.start_cleanup()
        try:
            await asyncio.sleep(0.1)
            assert dlq._cleanup_task.is_running
        finally:
            dlq.stop_cleanup()

        assert mock_dead_letter_repo.delete_before.await_count >= 2

    @pytest.mark.asyncio
    async def test_database_error_propagates(self, dlq, mock_dead_letter_repo, sample_delivery):
        mock_dead_letter_repo.merge.side_effect = OperationalError("INSERT", {}, Exception("down"))

        with pytest.raises(InfrastructureError):
            await dlq.add_failed_delivery(sample_delivery, "Max retry attempts exceeded", "HTTP 500")
