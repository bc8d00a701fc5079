"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- A scripted messaging gateway standing in for Telegram
- Ride services wired over the in-memory store
- Test data factories
"""
from datetime import timedelta
from typing import Any, AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.circuit_breaker import CircuitBreaker
from app.db.database import Base, get_db
from app.db.memory_store import InMemoryRideStore
from app.db.ride_store import SqlAlchemyRideStore
from app.db.models.ride import RideRecord  # noqa: F401 - רישום הטבלה ב-metadata
from app.domain.models import utcnow
from app.domain.services.command_service import RideCommandService
from app.domain.services.participation_service import ParticipationTracker
from app.domain.services.propagation_service import MessagePropagationEngine
from app.domain.services.ride_service import RideStateMachine
from app.state_machine.session_store import InMemorySessionStore, reset_session_store
from app.state_machine.wizard import ConversationWizard
from app.api.webhooks.telegram import get_messaging_gateway, get_route_parser
from app.main import app
from tests.factories import CREATOR_ID, FakeClock, FakeGateway, StubRouteParser


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


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
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# Fake External Services
# ============================================================================

@pytest.fixture(autouse=True)
def reset_shared_state():
    """Reset process-wide singletons between tests"""
    CircuitBreaker.reset_all()
    MessagePropagationEngine.reset_locks()
    reset_session_store()
    yield
    CircuitBreaker.reset_all()
    MessagePropagationEngine.reset_locks()
    reset_session_store()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def route_parser() -> StubRouteParser:
    return StubRouteParser()


# ============================================================================
# Ride Services
# ============================================================================

@pytest.fixture
def ride_store() -> InMemoryRideStore:
    return InMemoryRideStore()


@pytest.fixture
def sql_ride_store(db_session: AsyncSession) -> SqlAlchemyRideStore:
    return SqlAlchemyRideStore(db_session)


@pytest.fixture
def rides(ride_store: InMemoryRideStore) -> RideStateMachine:
    return RideStateMachine(ride_store)


@pytest.fixture
def tracker(rides: RideStateMachine) -> ParticipationTracker:
    return ParticipationTracker(rides)


@pytest.fixture
def engine(rides: RideStateMachine, gateway: FakeGateway) -> MessagePropagationEngine:
    return MessagePropagationEngine(rides, gateway, max_concurrency=3)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore(ttl_seconds=600)


@pytest.fixture
def wizard(
    session_store: InMemorySessionStore,
    rides: RideStateMachine,
    engine: MessagePropagationEngine,
    route_parser: StubRouteParser,
) -> ConversationWizard:
    return ConversationWizard(session_store, rides, engine, route_parser)


@pytest.fixture
def command_service(
    rides: RideStateMachine,
    tracker: ParticipationTracker,
    engine: MessagePropagationEngine,
    wizard: ConversationWizard,
    route_parser: StubRouteParser,
) -> RideCommandService:
    return RideCommandService(rides, tracker, engine, wizard, route_parser)


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def future_date():
    """Ride date a week from now (UTC, seconds dropped)"""
    return (utcnow() + timedelta(days=7)).replace(second=0, microsecond=0)


@pytest.fixture
def ride_factory(rides: RideStateMachine, future_date):
    """Factory for creating rides through the state machine"""
    async def _create_ride(
        title: str = "Evening Ride",
        creator_id: int = CREATOR_ID,
        **fields: Any,
    ):
        data = {"title": title, "date": future_date, **fields}
        return await rides.create(data, creator_id)

    return _create_ride


# ============================================================================
# HTTP Client
# ============================================================================

@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, gateway: FakeGateway, route_parser: StubRouteParser):
    """Create test client with database, gateway and route parser overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_messaging_gateway] = lambda: gateway
    app.dependency_overrides[get_route_parser] = lambda: route_parser

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
