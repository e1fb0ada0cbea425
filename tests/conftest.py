"""
Pytest configuration and fixtures.
"""
import os

# Environment for modules that read settings at import time
os.environ.setdefault("GATEWAY_KEY_ID", "rzp_test_settlement")
os.environ.setdefault("GATEWAY_KEY_SECRET", "test_key_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("APP_ENV", "test")

import uuid  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Any, AsyncGenerator, List, Optional  # noqa: E402

import jwt  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from payment_settlement.config import Settings  # noqa: E402
from payment_settlement.core.context import Caller, NetworkContext  # noqa: E402
from payment_settlement.core.errors import PaymentError  # noqa: E402
from payment_settlement.core.intent_manager import IntentManager  # noqa: E402
from payment_settlement.core.settlement import SettlementStateMachine  # noqa: E402
from payment_settlement.core.verification import (  # noqa: E402
    VerificationEngine,
    compute_signature,
)
from payment_settlement.database.connection import enable_sqlite_savepoints  # noqa: E402
from payment_settlement.database.models import (  # noqa: E402
    Base,
    Order,
    OutboxEvent,
    SecurityAuditLog,
)
from payment_settlement.integrations.gateway_client import GatewayOrder  # noqa: E402
from payment_settlement.integrations.loyalty import RedemptionResult  # noqa: E402


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeGateway:
    """Records create_order calls and hands out sequential gateway order ids."""

    def __init__(self, key_id: str = "rzp_test_settlement") -> None:
        self.key_id = key_id
        self.calls: List[dict] = []
        self.error: Optional[PaymentError] = None

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: Optional[str],
        notes: Optional[dict] = None,
    ) -> GatewayOrder:
        self.calls.append(
            {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes}
        )
        if self.error is not None:
            raise self.error
        return GatewayOrder(
            id=f"order_Test{len(self.calls):04d}",
            amount=amount,
            currency=currency,
            status="created",
            receipt=receipt,
        )


class FakeLoyalty:
    """Records redemption calls."""

    def __init__(self) -> None:
        self.calls: List[dict] = []
        self.succeed = True

    async def redeem(
        self,
        user_id: uuid.UUID,
        points: int,
        order_id: uuid.UUID,
        gift_id: Optional[str] = None,
    ) -> RedemptionResult:
        self.calls.append(
            {"user_id": user_id, "points": points, "order_id": order_id, "gift_id": gift_id}
        )
        if self.succeed:
            return RedemptionResult(success=True)
        return RedemptionResult(success=False, error="insufficient points")


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        gateway_key_id="rzp_test_settlement",
        gateway_key_secret="test_key_secret",
        gateway_retry_base_delay=0,
        database_url="sqlite+aiosqlite:///:memory:",
        jwt_secret="test-jwt-secret",
        admin_notification_recipients="ops@example.com,finance@example.com",
        loyalty_ledger_url="http://loyalty.test/redeem",
        app_name="payment-settlement-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory SQLite engine with SAVEPOINT support."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    # One shared connection: sessions must not hold transactions at the same time
    enable_sqlite_savepoints(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def loyalty() -> FakeLoyalty:
    return FakeLoyalty()


@pytest.fixture
def network() -> NetworkContext:
    return NetworkContext(ip_address="203.0.113.7", user_agent="pytest-browser/1.0")


@pytest.fixture
def caller() -> Caller:
    return Caller(user_id=uuid.uuid4(), email="buyer@example.com")


@pytest.fixture
def intent_manager(
    test_settings: Settings, gateway: FakeGateway, clock: FakeClock
) -> IntentManager:
    return IntentManager(settings=test_settings, gateway_client=gateway, clock=clock)


@pytest.fixture
def settlement(
    test_settings: Settings, loyalty: FakeLoyalty, clock: FakeClock
) -> SettlementStateMachine:
    return SettlementStateMachine(settings=test_settings, loyalty_client=loyalty, clock=clock)


@pytest.fixture
def verification_engine(
    test_settings: Settings, settlement: SettlementStateMachine, clock: FakeClock
) -> VerificationEngine:
    return VerificationEngine(settings=test_settings, settlement=settlement, clock=clock)


@pytest.fixture
def sign(test_settings: Settings) -> Any:
    """Sign a callback the way the gateway does."""

    def _sign(gateway_order_id: str, gateway_payment_id: str) -> str:
        return compute_signature(test_settings.signing_secret, gateway_order_id, gateway_payment_id)

    return _sign


@pytest.fixture
def make_order(db: AsyncSession) -> Any:
    """Seed an order for a buyer."""

    async def _make(
        user_id: uuid.UUID,
        final_amount: Decimal = Decimal("500.00"),
        **fields: Any,
    ) -> Order:
        order_id = uuid.uuid4()
        order = Order(
            id=order_id,
            user_id=user_id,
            order_number=f"ORD-{order_id.hex[:8].upper()}",
            final_amount=final_amount,
            **fields,
        )
        db.add(order)
        await db.commit()
        return order

    return _make


@pytest.fixture
def reload(db: AsyncSession) -> Any:
    """Re-read a row from the database, bypassing the identity map."""

    async def _reload(model: Any, row_id: Any) -> Any:
        stmt = select(model).where(model.id == row_id).execution_options(populate_existing=True)
        return (await db.execute(stmt)).scalar_one()

    return _reload


@pytest.fixture
def audit_events(db: AsyncSession) -> Any:
    """Audit entries in insertion order."""

    async def _events(event_type: Optional[str] = None) -> List[SecurityAuditLog]:
        stmt = select(SecurityAuditLog).order_by(SecurityAuditLog.id)
        if event_type is not None:
            stmt = stmt.where(SecurityAuditLog.event_type == event_type)
        return list((await db.execute(stmt)).scalars().all())

    return _events


@pytest.fixture
def outbox_events(db: AsyncSession) -> Any:
    async def _events(event_type: Optional[str] = None) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .order_by(OutboxEvent.id)
            .execution_options(populate_existing=True)
        )
        if event_type is not None:
            stmt = stmt.where(OutboxEvent.event_type == event_type)
        return list((await db.execute(stmt)).scalars().all())

    return _events


@pytest.fixture
def token_for() -> Any:
    """Issue an access token for a caller."""

    def _token(caller: Caller, secret: str = "test-jwt-secret", **claims: Any) -> str:
        payload = {
            "sub": str(caller.user_id),
            "email": caller.email,
            "exp": datetime.now(timezone.utc) + timedelta(hours=1),
            **claims,
        }
        return jwt.encode(payload, secret, algorithm="HS256")

    return _token


@pytest.fixture
def auth_headers(caller: Caller, token_for: Any) -> dict:
    return {"Authorization": f"Bearer {token_for(caller)}"}


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    intent_manager: IntentManager,
    verification_engine: VerificationEngine,
    clock: FakeClock,
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client bound to the test database and fakes."""
    from payment_settlement.api import routes
    from payment_settlement.api.main import app
    from payment_settlement.core.abuse_tracker import AbuseTracker, LoginGuard, RateLimitPolicy
    from payment_settlement.database.connection import get_db
    from payment_settlement.monitoring.health import HealthCheck

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[routes.get_intent_manager] = lambda: intent_manager
    app.dependency_overrides[routes.get_verification_engine] = lambda: verification_engine
    app.dependency_overrides[routes.get_login_guard] = lambda: LoginGuard(
        settings=test_settings, clock=clock
    )
    app.dependency_overrides[routes.get_form_tracker] = lambda: AbuseTracker(
        RateLimitPolicy.form_submission(test_settings), clock=clock
    )
    app.dependency_overrides[routes.get_health_check] = lambda: HealthCheck(
        settings=test_settings, session_factory=session_factory
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
