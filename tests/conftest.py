"""Shared test fixtures and configuration."""

import os
import pytest
from typing import Optional

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from payment_integrity.database import (
    Base,
    create_async_engine,
    get_async_session_factory,
)
from payment_integrity.gateway import SimulatorGateway
from payment_integrity.integrity import (
    EnforcementConfig,
    EnforcementLevel,
    PaymentState,
    TransitionValidator,
)
from payment_integrity.locks import KeyedLocks
from payment_integrity.services import PaymentEvent, PaymentService, SessionStateService

PAYER = "254712345678"


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create a database session for testing."""
    session_factory = get_async_session_factory(db_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def enforcement():
    return EnforcementConfig(level=EnforcementLevel.STRICT, actor="test", reason="test setup")


@pytest.fixture
def validator(enforcement):
    return TransitionValidator(enforcement)


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def simulator():
    return SimulatorGateway()


@pytest.fixture
def session_service(db_session, validator, locks):
    return SessionStateService(db_session, validator, locks)


@pytest.fixture
def payment_service(db_session, validator, locks, simulator):
    return PaymentService(db_session, validator, locks=locks, gateway=simulator)


@pytest.fixture
def auth_headers():
    """Return headers with authentication."""
    return {"Authorization": "Bearer test_api_key_12345"}


@pytest.fixture
def book_session(session_service, payment_service, simulator):
    """Factory: book and approve a session, initiate payment, optionally confirm it.

    Returns ``(session_record, payment_record)``.
    """
    async def _book(
        price: int = 250000,
        client_id: str = "client-1",
        provider_id: str = "provider-1",
        confirm: bool = True,
        transaction_ref: Optional[str] = None,
    ):
        record = await session_service.create_session(client_id, provider_id, price)
        await session_service.approve(record.id)
        result = await payment_service.initiate_payment(record.id, PAYER)
        payment = result.payment
        if confirm:
            simulator.complete(payment.external_request_ref, 0, transaction_ref)
            callback = simulator.parse_callback(simulator.build_callback(payment.external_request_ref))
            result = await payment_service.apply_payment_event(PaymentEvent.from_callback(callback))
            payment = result.payment
        return record, payment

    return _book


@pytest.fixture
def confirmed_event():
    """Factory for a successful payment callback event."""
    def _event(request_ref: str, transaction_ref: str, amount: int = 250000) -> PaymentEvent:
        return PaymentEvent(
            external_request_ref=request_ref,
            status=PaymentState.CONFIRMED,
            external_transaction_ref=transaction_ref,
            result_code=0,
            result_description="The service request is processed successfully.",
            amount=amount,
            payer_identifier=PAYER,
        )

    return _event
