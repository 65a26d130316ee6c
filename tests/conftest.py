"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory, plus a file database for concurrent sessions)
- A scriptable fake payment gateway and a recording event publisher
- Test data factories (users, orders, wallets, driver earnings)
"""
# Secrets must exist before app is imported: the settings validator refuses an empty key with DEBUG=False
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("GATEWAY_SECRET_KEY", "sk_test_gateway_secret")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-api-key")
# The app-level webhook limiter lives for the whole session
os.environ.setdefault("WEBHOOK_RATE_LIMIT_MAX_REQUESTS", "100000")

import hmac
import itertools
import json
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional
from unittest.mock import patch

import pytest
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

import app.db.models  # noqa: F401  registers every table on Base.metadata
from app.core.auth import create_access_token
from app.core.config import settings
from app.core.exceptions import GatewayReferenceNotFoundError
from app.db.database import Base, get_db
from app.db.models.client_wallet import ClientWallet
from app.db.models.driver_earnings import DriverEarnings
from app.db.models.financial_transaction import TransactionStatus, TransactionType
from app.db.models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from app.db.models.user import User, UserRole
from app.domain.services.event_publisher import RecordingEventPublisher, get_event_publisher
from app.domain.services.gateway.base import (
    BankDetails,
    BasePaymentGateway,
    ChargeInitialization,
    ChargeVerification,
    TransferInitiation,
    TransferVerification,
)
from app.domain.services.gateway.paystack_provider import sign_payload
from app.domain.services.gateway.provider_factory import get_payment_gateway
from app.domain.services.ledger_service import LedgerService
from app.domain.services.money import to_minor_units
from app.domain.services.pricing import PricingBreakdown
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_GATEWAY_SECRET = "sk_test_webhook_secret"
TEST_ADMIN_API_KEY = "test-admin-api-key"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    """Session maker bound to the test engine, for tests that need a second session"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def concurrent_session_factory(tmp_path):
    """
    Session maker over a file database where every session owns its own
    connection, so settlement paths can run side by side. Each transaction
    takes the write lock at BEGIN; waiters block on the busy timeout.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrent.db'}",
        connect_args={"timeout": 30},
        poolclass=NullPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Fake payment gateway
# ============================================================================

class FakeGateway(BasePaymentGateway):
    """
    In-memory gateway. Charges and transfers are scripted per reference;
    ``errors`` maps an operation name to the exception it should raise.
    """

    def __init__(self) -> None:
        self.charges: dict[str, ChargeVerification] = {}
        self.transfers: dict[str, TransferVerification] = {}
        self.errors: dict[str, Exception] = {}
        self.initialized: list[dict[str, Any]] = []
        self.transfer_requests: list[dict[str, Any]] = []
        self.recipients: list[BankDetails] = []
        self.verify_calls: list[str] = []
        self.transfer_status = "pending"
        self._codes = itertools.count(1)

    @property
    def provider_name(self) -> str:
        return "testgateway"

    def _maybe_raise(self, operation: str) -> None:
        error = self.errors.get(operation)
        if error is not None:
            raise error

    def set_charge(
        self,
        reference: str,
        status: str = "success",
        amount=None,
        *,
        amount_minor: Optional[int] = None,
        fees_minor: int = 0,
        metadata: Optional[dict] = None,
        gateway_response: Optional[str] = None,
    ) -> ChargeVerification:
        if amount_minor is None:
            amount_minor = to_minor_units(amount or 0)
        verification = ChargeVerification(
            reference=reference,
            status=status,
            amount_minor=amount_minor,
            fees_minor=fees_minor,
            gateway_response=gateway_response or ("Approved" if status == "success" else "Declined"),
            paid_at=datetime.utcnow() if status == "success" else None,
            channel="card",
            metadata=metadata or {},
            raw={"reference": reference, "status": status, "amount": amount_minor, "fees": fees_minor},
        )
        self.charges[reference] = verification
        return verification

    def set_transfer(self, reference: str, status: str, **raw: Any) -> None:
        self.transfers[reference] = TransferVerification(
            reference=reference,
            status=status,
            raw={"reference": reference, "status": status, **raw},
        )

    async def initialize_charge(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        callback_url: str,
        metadata: Optional[dict[str, Any]] = None,
        currency: str = "NGN",
    ) -> ChargeInitialization:
        self._maybe_raise("initialize_charge")
        self.initialized.append(
            {
                "email": email,
                "amount_minor": amount_minor,
                "reference": reference,
                "callback_url": callback_url,
                "metadata": metadata or {},
                "currency": currency,
            }
        )
        return ChargeInitialization(
            authorization_url=f"https://checkout.test/{reference}",
            access_code=f"ac_{next(self._codes)}",
            reference=reference,
        )

    async def verify_charge(self, reference: str) -> ChargeVerification:
        self.verify_calls.append(reference)
        self._maybe_raise("verify_charge")
        if reference not in self.charges:
            raise GatewayReferenceNotFoundError("verify_charge", reference)
        return self.charges[reference]

    async def create_transfer_recipient(self, bank_details: BankDetails, currency: str = "NGN") -> str:
        self._maybe_raise("create_transfer_recipient")
        self.recipients.append(bank_details)
        return f"RCP_{bank_details.account_number[-4:]}_{len(self.recipients)}"

    async def initiate_transfer(
        self,
        recipient_code: str,
        amount_minor: int,
        reference: str,
        reason: str,
    ) -> TransferInitiation:
        self._maybe_raise("initiate_transfer")
        self.transfer_requests.append(
            {
                "recipient_code": recipient_code,
                "amount_minor": amount_minor,
                "reference": reference,
                "reason": reason,
            }
        )
        transfer_code = f"TRF_{next(self._codes)}"
        return TransferInitiation(
            transfer_code=transfer_code,
            status=self.transfer_status,
            raw={"reference": reference, "transfer_code": transfer_code, "status": self.transfer_status},
        )

    async def verify_transfer(self, reference: str) -> TransferVerification:
        self._maybe_raise("verify_transfer")
        if reference not in self.transfers:
            raise GatewayReferenceNotFoundError("verify_transfer", reference)
        return self.transfers[reference]

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(sign_payload(raw_body, TEST_GATEWAY_SECRET), signature)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def publisher() -> RecordingEventPublisher:
    return RecordingEventPublisher()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, fake_gateway: FakeGateway, publisher: RecordingEventPublisher):
    """Create test client with database, gateway and publisher overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_event_publisher] = lambda: publisher

    # Unhandled errors become the 500 JSON body instead of propagating into the test
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def signed_webhook(payload: dict, secret: str = TEST_GATEWAY_SECRET) -> tuple[bytes, dict[str, str]]:
    """Raw body and headers for a gateway webhook signed the way the gateway signs it"""
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        settings.GATEWAY_SIGNATURE_HEADER: sign_payload(body, secret),
    }
    return body, headers


# ============================================================================
# Test Data Factories
# ============================================================================

_email_counter = itertools.count(1)


@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    async def _create_user(
        role: UserRole = UserRole.CLIENT,
        name: str = "Test User",
        email: str | None = None,
        phone_number: str | None = "+2348012345678",
        is_active: bool = True,
    ) -> User:
        user = User(
            email=email or f"{role.value}{next(_email_counter)}@example.com",
            name=name,
            phone_number=phone_number,
            role=role,
            is_active=is_active,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Factory for draft orders priced with the real pricing contract"""
    async def _create_order(
        client_id: int,
        delivery_total: Decimal = Decimal("5000"),
        processing_fee: Decimal = Decimal("0"),
        status: OrderStatus = OrderStatus.DRAFT,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        driver_id: int | None = None,
    ) -> Order:
        breakdown = PricingBreakdown.from_delivery_total(delivery_total, processing_fee)
        order = Order(
            client_id=client_id,
            driver_id=driver_id,
            status=status,
            payment_status=payment_status,
            currency=settings.CURRENCY,
            total_amount=breakdown.total,
            driver_share=breakdown.driver_share,
            platform_share=breakdown.platform_share,
            processing_fee=breakdown.processing_fee,
            pricing_breakdown=breakdown.to_dict(),
        )
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _create_order


@pytest.fixture
def paid_order_factory(db_session: AsyncSession, order_factory):
    """
    Factory for an order whose card payment already completed: completed
    payment transaction plus pending driver-earning / platform-revenue liabilities.
    """
    async def _create_paid_order(
        client_id: int,
        delivery_total: Decimal = Decimal("5000"),
        driver_id: int | None = None,
        status: OrderStatus = OrderStatus.SUBMITTED,
        paid_at: datetime | None = None,
    ) -> Order:
        order = await order_factory(client_id, delivery_total)
        ledger = LedgerService(db_session)
        reference = f"{order.order_ref}-1700000000000-ab12"
        payment = await ledger.create_transaction(
            TransactionType.CLIENT_PAYMENT,
            order.total_amount,
            status=TransactionStatus.COMPLETED,
            reference=reference,
            provider="testgateway",
            client_id=client_id,
            order_id=order.id,
        )
        earning = await ledger.create_transaction(
            TransactionType.DRIVER_EARNING,
            order.driver_share,
            client_id=client_id,
            order_id=order.id,
        )
        platform = await ledger.create_transaction(
            TransactionType.PLATFORM_REVENUE,
            order.platform_share,
            client_id=client_id,
            order_id=order.id,
        )
        paid_at = paid_at or datetime.utcnow()
        order.status = status
        order.driver_id = driver_id
        order.payment_method = PaymentMethod.CARD
        order.payment_status = PaymentStatus.PAID
        order.payment_reference = reference
        order.payment_amount = order.total_amount
        order.payment_initiated_at = paid_at
        order.payment_paid_at = paid_at
        order.submitted_at = paid_at
        order.payment_transaction_id = payment.id
        order.driver_earning_transaction_id = earning.id
        order.platform_revenue_transaction_id = platform.id
        if status == OrderStatus.DELIVERED:
            order.delivered_at = datetime.utcnow()
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _create_paid_order


@pytest.fixture
def wallet_factory(db_session: AsyncSession):
    """Factory for creating funded client wallets"""
    async def _create_wallet(client_id: int, balance: Decimal = Decimal("0")) -> ClientWallet:
        wallet = ClientWallet(
            client_id=client_id,
            currency=settings.CURRENCY,
            balance=balance,
            total_deposited=balance,
            transaction_count=1 if balance else 0,
            recent_transactions=[],
        )
        db_session.add(wallet)
        await db_session.commit()
        await db_session.refresh(wallet)
        return wallet

    return _create_wallet


@pytest.fixture
def earnings_factory(db_session: AsyncSession):
    """Factory for driver earnings with a withdrawable balance"""
    async def _create_earnings(driver_id: int, available_balance: Decimal = Decimal("0")) -> DriverEarnings:
        earnings = DriverEarnings(
            driver_id=driver_id,
            currency=settings.CURRENCY,
            available_balance=available_balance,
            earnings_available=available_balance,
            total_earned=available_balance,
            recent_earnings=[],
            recent_payouts=[],
            current_page=1,
            current_page_count=0,
        )
        db_session.add(earnings)
        await db_session.commit()
        await db_session.refresh(earnings)
        return earnings

    return _create_earnings


async def reload(db_session: AsyncSession, model, ident):
    """Fresh copy of a row; services roll back and expire what the test holds"""
    result = await db_session.execute(
        select(model).where(model.id == ident).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def auth_headers(user_id: int, role: UserRole) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, role.value)}"}


def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": TEST_ADMIN_API_KEY}


# ============================================================================
# Sample Test Data
# ============================================================================

@pytest.fixture
async def sample_client(user_factory) -> User:
    return await user_factory(role=UserRole.CLIENT, name="Ada Obi")


@pytest.fixture
async def sample_driver(user_factory) -> User:
    return await user_factory(role=UserRole.DRIVER, name="Emeka Driver")


@pytest.fixture
def bank_details() -> BankDetails:
    return BankDetails(account_number="0123456789", bank_code="058", account_name="Emeka Driver")


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


class FakeRedis:
    """In-memory stand-in for redis.asyncio with the calls this app makes"""

    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []

    async def ping(self) -> bool:
        return True

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1

    async def aclose(self) -> None:
        self.published.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replaces get_redis with FakeRedis for every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.event_publisher.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Secrets
# ============================================================================

_TEST_JWT_SECRET = "test-jwt-secret-key-for-testing-only-do-not-use-in-production"


@pytest.fixture(autouse=True)
def set_test_secrets():
    """Pin the secrets whatever the environment provides"""
    with patch.object(settings, "JWT_SECRET_KEY", _TEST_JWT_SECRET), \
         patch.object(settings, "JWT_ALGORITHM", "HS256"), \
         patch.object(settings, "JWT_ACCESS_TOKEN_EXPIRE_MINUTES", 480), \
         patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY):
        yield
