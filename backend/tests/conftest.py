"""
Centralized Test Configuration.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from backend.app.main import app
from backend.app.db.session import get_db, Base
from backend.app.core.redis_client import get_redis
from backend.app.core.jwt import create_access_token
from backend.app.core.dependencies import (
    get_document_generator,
    get_notifier,
    get_payment_gateway,
    get_publisher,
    get_sessionmaker,
)
from backend.app.core.exceptions import ExternalServiceError, ValidationFailedError
from backend.app.models.auction import Auction
from backend.app.models.auction_enums import AuctionStatus
from backend.app.models.auction_item import AuctionItem
from backend.app.models.enums import UserRole
from backend.app.models.user import User
from backend.app.services.collaborators import DocumentGenerator, Notifier, Publisher
from backend.app.services.payment_gateway import PaymentGateway
import backend.app.core.redis_client as redis_client_module
import backend.app.core.token_revocation as token_revocation_module

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

# Bound to the per-test engine by db_engine, inside each test's event loop
TestingSessionLocal = async_sessionmaker(class_=AsyncSession, expire_on_commit=False)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self.lists = {}
        self.published = []
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self._closed:
            return False
        self.store[key] = value
        return True

    async def setex(self, key, ttl, value):
        return await self.set(key, value, ex=ttl)

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def exists(self, key):
        if self._closed:
            return 0
        return 1 if key in self.store else 0

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 0

    async def rpush(self, key, value):
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    async def flushdb(self):
        if not self._closed:
            self.store = {}
            self.lists = {}
            self.published = []

    async def aclose(self):
        self._closed = True
        self.store = {}


# Recording collaborators
class RecordingPublisher(Publisher):
    def __init__(self):
        self.events = []
        self.fail = False

    async def publish(self, channel, event, payload):
        if self.fail:
            raise ConnectionError("realtime transport down")
        self.events.append((channel, event, payload))

    def on(self, channel):
        return [(event, payload) for ch, event, payload in self.events if ch == channel]


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []
        self.fail = False

    async def notify(self, user_id, kind, payload):
        if self.fail:
            raise ConnectionError("mail relay down")
        self.sent.append((user_id, kind, payload))

    def kinds_for(self, user_id):
        return [kind for uid, kind, _ in self.sent if uid == user_id]


class RecordingDocuments(DocumentGenerator):
    def __init__(self):
        self.rendered = []
        self.fail = False

    async def render(self, kind, snapshot):
        if self.fail:
            raise RuntimeError("renderer unavailable")
        self.rendered.append((kind, snapshot))
        return json.dumps(snapshot).encode("utf-8")


class FakeGateway(PaymentGateway):
    """Accepts the signature "valid"; payment intents and links live in memory."""

    def __init__(self):
        self.intents = {}
        self.lookups = []
        self.links = []

    def verify_event(self, payload, signature):
        if signature != "valid":
            raise ValidationFailedError("Webhook signature verification failed")
        return json.loads(payload)

    async def retrieve_payment_intent(self, payment_intent_id):
        self.lookups.append(payment_intent_id)
        if payment_intent_id not in self.intents:
            raise ExternalServiceError("stripe", f"no such payment intent {payment_intent_id}")
        return self.intents[payment_intent_id]

    async def create_payment_intent(self, amount, currency, metadata, description):
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents[intent_id] = {
            "id": intent_id,
            "status": "requires_payment_method",
            "amount": int(amount * 100),
            "currency": currency.lower(),
            "client_secret": f"{intent_id}_secret",
            "metadata": dict(metadata),
        }
        return self.intents[intent_id]

    async def create_payment_link(self, amount, currency, metadata, name, return_url):
        link_id = f"plink_test_{len(self.links) + 1}"
        self.links.append({"id": link_id, "amount": amount, "metadata": dict(metadata), "name": name})
        return {"id": link_id, "url": f"https://pay.test/{link_id}"}


# Redis Fixture (Session Scope)
@pytest.fixture(scope="session")
def redis_client_session():
    return MockRedis()


@pytest.fixture(scope="session", autouse=True)
def apply_overrides(redis_client_session):
    """Apply overrides once for the session."""

    # Patch the global redis client used by token checks
    original_client = redis_client_module.redis_client
    original_revocation_client = token_revocation_module.redis_client
    redis_client_module.redis_client = redis_client_session
    token_revocation_module.redis_client = redis_client_session

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    async def override_get_redis():
        return redis_client_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_sessionmaker] = lambda: TestingSessionLocal
    yield

    # Restore and clear
    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client
    token_revocation_module.redis_client = original_revocation_client


@pytest.fixture
async def db_engine():
    """In-memory engine created on the running test loop and disposed with it."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal.configure(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture(autouse=True)
async def setup_database(db_engine, redis_client_session):
    """Create tables before each test function and drop after."""
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await redis_client_session.flushdb()

    yield

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def documents():
    return RecordingDocuments()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture(autouse=True)
def collaborator_overrides(publisher, notifier, documents, gateway):
    """Route the app's collaborators to this test's recording fakes."""
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_document_generator] = lambda: documents
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield
    for dependency in (get_publisher, get_notifier, get_document_generator, get_payment_gateway):
        app.dependency_overrides.pop(dependency, None)


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session(setup_database):
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def session_factory(setup_database):
    return TestingSessionLocal


# Data factories
@pytest.fixture
def make_user():
    counter = {"n": 0}

    async def _make_user(role=UserRole.BIDDER, is_active=True):
        counter["n"] += 1
        name = f"{role.value.lower()}{counter['n']}"
        user = User(email=f"{name}@test.com", username=name, role=role, is_active=is_active)
        async with TestingSessionLocal() as session:
            session.add(user)
            await session.commit()
        return user

    return _make_user


@pytest.fixture
def make_auction():
    async def _make_auction(
        status=AuctionStatus.LIVE,
        start_at=None,
        end_at=None,
        name="Spring Sale",
    ):
        now = datetime.now(timezone.utc)
        auction = Auction(
            name=name,
            start_at=start_at or now - timedelta(hours=1),
            end_at=end_at or now + timedelta(hours=1),
            status=status,
        )
        async with TestingSessionLocal() as session:
            session.add(auction)
            await session.commit()
        return auction

    return _make_auction


@pytest.fixture
def make_item():
    async def _make_item(
        auction,
        seller=None,
        base_price="100",
        reserve_price=None,
        premium="0",
        tax="0",
        name="Lot",
    ):
        item = AuctionItem(
            auction_id=auction.id,
            seller_id=seller.id if seller else None,
            name=name,
            base_price=Decimal(base_price),
            reserve_price=Decimal(reserve_price) if reserve_price is not None else None,
            buyers_premium_percent=Decimal(premium),
            tax_percent=Decimal(tax),
        )
        async with TestingSessionLocal() as session:
            session.add(item)
            await session.commit()
        return item

    return _make_item


@pytest.fixture
def auth_headers():
    def _auth_headers(user):
        token = create_access_token(
            {"sub": user.username, "user_id": user.id, "role": user.role.value}
        )
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers
