"""
Shared test fixtures

Every test gets a fresh file-backed SQLite database with one seeded
tenant, professional and service, a controllable clock and mocked
payment and WhatsApp providers.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.db.tables import metadata, professionals, services, tenants
from app.models.schemas import CustomerInfo, PaymentStatus, SlotInfo
from app.services.notifier import Notifier
from app.services.payment_gateway import PaymentGateway, PaymentIntent
from tests.helpers import PROFESSIONAL_ID, SERVICE_ID, SLOT_AT, START, TENANT_ID, FakeClock


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def seeded(session_factory):
    async with session_factory() as session:
        await session.execute(
            insert(tenants).values(id=TENANT_ID, name="Barbearia Teste", slug="teste")
        )
        await session.execute(
            insert(professionals).values(
                id=PROFESSIONAL_ID,
                tenant_id=TENANT_ID,
                name="Carlos",
                phone="11911112222",
                active=True,
                schedule=None,
            )
        )
        await session.execute(
            insert(services).values(
                id=SERVICE_ID,
                tenant_id=TENANT_ID,
                name="Corte",
                price=Decimal("100.00"),
                duration_minutes=30,
                active=True,
            )
        )
        await session.commit()


@pytest.fixture
async def db(session_factory, seeded):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    mock = AsyncMock(spec=PaymentGateway)
    mock.create_intent.return_value = PaymentIntent(intent_id="INT1", qr_payload="00020126PIXCODE")
    mock.get_status.return_value = PaymentStatus.PENDING
    mock.refund.return_value = None
    return mock


@pytest.fixture
def notifier():
    mock = AsyncMock(spec=Notifier)
    mock.user_reachable.return_value = True
    mock.send.return_value = None
    return mock


@pytest.fixture
def slot():
    return SlotInfo(
        tenant_id=TENANT_ID,
        professional_id=PROFESSIONAL_ID,
        service_id=SERVICE_ID,
        appointment_datetime=SLOT_AT,
    )


@pytest.fixture
def customer():
    return CustomerInfo(name="Joao Silva", phone="11987654321")

