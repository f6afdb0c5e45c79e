"""Shared test fixtures."""

import json
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from Crypto.PublicKey import RSA
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from grouppay.engine.workflow import PaymentWorkflow
from grouppay.models.enums import ReasonCode
from grouppay.models.order import LineItem, PaymentOrder
from grouppay.models.records import Base, GatewayRecord
from grouppay.providers.base import GatewayInfo
from grouppay.providers.mock_bank import MockBankGateway

GATEWAY_METADATA = {
    "ClientName": "Test Treasury",
    "ClientId": "client-1",
    "ClientSecret": "secret-1",
    "ApiKey": "api-key-1",
    "CustomerNumber": "9876543",
    "BranchCode": "101",
    "OrganizationCode": "ORG01",
}


class FrozenClock:
    """Deterministic clock for the workflow."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(scope="session")
def rsa_key():
    return RSA.generate(2048)


@pytest.fixture
def private_key_pem(rsa_key) -> str:
    return rsa_key.export_key(format="PEM", pkcs=8).decode("ascii")


@pytest.fixture
def gateway_info(private_key_pem) -> GatewayInfo:
    return GatewayInfo(
        gateway_id="tourism-test",
        account_number="0101123456789",
        private_key_pem=private_key_pem,
        meta_data=json.dumps(GATEWAY_METADATA),
        name="Tourism Bank (test)",
    )


@pytest.fixture
def make_order():
    """Factory for orders with valid 26-character IBANs."""

    def _make(order_id: str = "ORD-1", rows: int = 3, amount: int = 1_000_000, **kwargs) -> PaymentOrder:
        items = [
            LineItem(
                row_number=row,
                destination_iban=f"IR{row:024d}",
                amount=amount,
                recipient_name=f"Recipient {row}",
                reason_code=ReasonCode.SALARY_DEPOSIT,
            )
            for row in range(1, rows + 1)
        ]
        return PaymentOrder(order_id=order_id, line_items=items, gateway_id="tourism-test", **kwargs)

    return _make


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 3, 20, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def mock_bank() -> MockBankGateway:
    return MockBankGateway(latency_ms=0)


@pytest.fixture
def workflow(mock_bank, clock) -> PaymentWorkflow:
    return PaymentWorkflow(
        mock_bank,
        max_execution_attempts=3,
        refresh_threshold=timedelta(minutes=5),
        retry_delay_seconds=5.0,
        retryable_status_codes={408, 500, 502, 503, 504},
        read_retry_attempts=2,
        read_retry_base_delay=0,
        clock=clock,
    )


@pytest_asyncio.fixture
async def db_session():
    """Create a fresh in-memory database for each test."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def seeded_session(db_session: AsyncSession, gateway_info: GatewayInfo):
    """Database session with the test gateway configured."""
    db_session.add(
        GatewayRecord(
            id=gateway_info.gateway_id,
            name=gateway_info.name,
            account_number=gateway_info.account_number,
            private_key_pem=gateway_info.private_key_pem,
            meta_data=gateway_info.meta_data,
        )
    )
    await db_session.commit()

    yield db_session
