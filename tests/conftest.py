"""
Pytest configuration and fixtures for webhook relay tests.
"""
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime, timedelta

from webhook_relay.core.database import utcnow
from webhook_relay.models.delivery import Delivery
from webhook_relay.models.webhook import Webhook
from webhook_relay.schemas.delivery import BlockchainEvent, DeliveryStatus, WebhookDelivery
from webhook_relay.schemas.webhook import WebhookConfig, WebhookFormat


@pytest_asyncio.fixture
async def mock_session():
    """Mock database session."""
    session = AsyncMock(spec=AsyncSession)
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.flush = AsyncMock()
    session.add_all = MagicMock()
    return session


@pytest.fixture
def session_factory(mock_session):
    """Session factory whose sessions are all ``mock_session``."""
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = mock_session
    factory.return_value.__aexit__.return_value = False
    return factory


@pytest.fixture
def make_result():
    """Build the object returned by ``session.execute``."""
    def _make(scalars=None, rows=None, scalar=None, rowcount=None):
        result = MagicMock()
        scalars = scalars or []
        result.scalars.return_value.first.return_value = scalars[0] if scalars else None
        result.scalars.return_value.all.return_value = scalars
        result.all.return_value = rows or []
        result.scalar.return_value = scalar
        result.rowcount = rowcount
        return result
    return _make


# Mock repository fixtures
@pytest.fixture
def mock_delivery_repo():
    """Mock delivery repository."""
    repo = AsyncMock()
    repo.merge = AsyncMock()
    repo.get_by_id = AsyncMock(return_value=None)
    repo.claim_next = AsyncMock(return_value=None)
    repo.update_status = AsyncMock(return_value=1)
    repo.update_retry_schedule = AsyncMock(return_value=1)
    repo.update_response = AsyncMock(return_value=1)
    repo.count_by_status = AsyncMock(return_value={})
    repo.delete_completed_before = AsyncMock(return_value=0)
    repo.get_stuck = AsyncMock(return_value=[])
    repo.reset_stuck = AsyncMock(return_value=0)
    return repo


@pytest.fixture
def mock_dead_letter_repo():
    """Mock dead letter repository."""
    repo = AsyncMock()
    repo.merge = AsyncMock()
    repo.get_by_id = AsyncMock(return_value=None)
    repo.delete = AsyncMock(return_value=True)
    repo.list_entries = AsyncMock(return_value=[])
    repo.count_since = AsyncMock(return_value=0)
    repo.top_failure_reasons = AsyncMock(return_value=[])
    repo.delete_before = AsyncMock(return_value=0)
    return repo


@pytest.fixture
def mock_webhook_repo():
    """Mock webhook repository."""
    repo = AsyncMock()
    repo.get_active_by_id = AsyncMock(return_value=None)
    repo.get_all_active = AsyncMock(return_value=[])
    return repo


@pytest.fixture
def mock_metric_repo():
    """Mock metric repository."""
    repo = AsyncMock()
    repo.add_many = AsyncMock(side_effect=lambda records: len(list(records)))
    return repo


@pytest.fixture
def sample_event():
    """Sample Transfer event."""
    return BlockchainEvent(
        contract_address="0x1234567890abcdef1234567890abcdef12345678",
        event_name="Transfer",
        block_number=18500000,
        transaction_hash="0xabc123",
        log_index=3,
        args={"from": "0xaaa", "to": "0xbbb", "value": 10 ** 24},
        timestamp=datetime(2024, 1, 15, 12, 0, 0),
    )


@pytest.fixture
def sample_delivery(sample_event):
    """Sample delivery as returned by a claim."""
    return WebhookDelivery(
        id="delivery-1",
        subscription_id="sub-1",
        webhook_id="webhook-1",
        event=sample_event,
        payload={"event": "Transfer", "value": "1000000000000000000000000"},
        status=DeliveryStatus.PROCESSING,
        attempts=0,
        max_attempts=3,
        created_at=utcnow() - timedelta(minutes=1),
    )


@pytest.fixture
def sample_delivery_row(sample_delivery):
    """Persisted row for ``sample_delivery``."""
    return Delivery.from_schema(sample_delivery)


@pytest.fixture
def sample_webhook_config():
    """Sample webhook configuration."""
    return WebhookConfig(
        id="webhook-1",
        url="https://hooks.example.com/relay",
        format=WebhookFormat.ZAPIER,
        headers={"Authorization": "Bearer token"},
        timeout=5000,
        retry_attempts=5,
    )


@pytest.fixture
def sample_webhook_row():
    """Sample active webhook row."""
    return Webhook(
        id="webhook-1",
        url="https://hooks.example.com/relay",
        format="zapier",
        headers={"Authorization": "Bearer token"},
        timeout=5000,
        retry_attempts=5,
        active=True,
    )
