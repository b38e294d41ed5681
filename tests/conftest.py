"""
Pytest configuration and fixtures for LabelBay tests.

Models run against a throwaway SQLite file per test (aiosqlite driver).
"""
import os
from decimal import Decimal

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./labelbay_test_default.db"
os.environ["SECRET_KEY"] = "test-secret-key-for-unit-tests-only"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RECONCILE_SCHEDULER_ENABLED"] = "false"
os.environ["PAGERDUTY_ENABLED"] = "false"
os.environ["SHIPPO_API_KEY"] = ""
os.environ["EASYPOST_API_KEY"] = ""
os.environ["PAYPAL_CLIENT_ID"] = ""
os.environ["STRIPE_SECRET_KEY"] = ""

import asyncio
import uuid
from typing import List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from labelbay.core.database import Base
from labelbay.core.locks import KeyedLockManager
from labelbay.core.retry import RetryConfig
from labelbay.modules.shipping.providers.base import (
    BaseRateProvider,
    LabelResult,
    Parcel,
    ProviderRate,
    ShipmentAddress,
    ShipmentRequestData,
)
import labelbay.models  # noqa: F401  registers tables on Base.metadata


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh database with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'labelbay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def locks() -> KeyedLockManager:
    return KeyedLockManager()


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_retries=2, base_delay=0.001, max_delay=0.01, jitter_factor=0.0)


@pytest.fixture
def ledger(session_factory, locks, fast_retry):
    from labelbay.services.ledger import Ledger
    return Ledger(session_factory, retry_config=fast_retry, locks=locks)


@pytest.fixture
def user_id() -> str:
    return f"user-{uuid.uuid4()}"


@pytest.fixture
def sample_address_data() -> dict:
    return {
        "name": "Jane Sender",
        "address_line1": "215 Clayton St",
        "city": "San Francisco",
        "state": "CA",
        "postal_code": "94117",
        "country": "US",
        "phone": "415-555-0100",
    }


@pytest.fixture
def rate_request_payload() -> dict:
    return {
        "address_from": {
            "name": "Jane Sender",
            "street1": "215 Clayton St",
            "city": "San Francisco",
            "state": "CA",
            "zip": "94117",
        },
        "address_to": {
            "name": "John Receiver",
            "street1": "1092 Indian Summer Ct",
            "city": "San Jose",
            "state": "CA",
            "zip": "95122",
        },
        "parcel": {"package_type": "parcel", "weight": "2", "mass_unit": "lb"},
    }


@pytest.fixture
def shipment_request() -> ShipmentRequestData:
    return ShipmentRequestData(
        address_from=ShipmentAddress(street1="215 Clayton St", city="San Francisco", state="CA", zip="94117"),
        address_to=ShipmentAddress(street1="1092 Indian Summer Ct", city="San Jose", state="CA", zip="95122"),
        parcel=Parcel(length=Decimal("12"), width=Decimal("8"), height=Decimal("6"), weight=Decimal("2")),
    )


def make_rate(provider: str, amount: str, carrier: str = "USPS", service: str = "ground") -> ProviderRate:
    return ProviderRate(
        provider=provider,
        carrier=carrier,
        service_code=f"{carrier.lower()}_{service}",
        service_name=f"{carrier} {service.title()}",
        amount=Decimal(amount),
        provider_rate_id=f"{provider}-rate-{uuid.uuid4().hex[:8]}",
        estimated_days=3,
    )


class FakeProvider(BaseRateProvider):
    """In-memory provider: fixed rates, optional delay or error."""

    def __init__(
        self,
        name: str,
        rates: Optional[List[ProviderRate]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        super().__init__(api_key="test-key")
        self.name = name
        self._rates = rates or []
        self._error = error
        self._delay = delay
        self.label_calls: List[str] = []

    async def get_rates(self, request):
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error:
            raise self._error
        return list(self._rates)

    async def purchase_label(self, provider_rate_id):
        self.label_calls.append(provider_rate_id)
        return LabelResult(
            tracking_number="9400111899223197428490",
            label_url="https://labels.example.com/label.pdf",
            provider_transaction_id="txn_123",
            raw_status="SUCCESS",
        )


@pytest.fixture
def fake_provider_cls():
    return FakeProvider


@pytest.fixture
def rate_factory():
    return make_rate
