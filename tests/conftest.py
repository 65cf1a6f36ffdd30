import itertools
import os
import tempfile

# Settings are read once at import time, so point them at a scratch database first
_TMP_DIR = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'app.db')}"
os.environ["RUN_MIGRATIONS_ON_STARTUP"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["LOG_LEVEL"] = "WARNING"

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from storefront.auth import create_access_token
from storefront.domain.errors import BroadcastFailure
from storefront.domain.models import Product, User, UserRole
from storefront.infrastructure.db import build_engine, build_session_factory, get_db, init_models
from storefront.infrastructure.realtime import EventBroadcaster, InMemorySessionRegistry


class RecordingSession:
    """Stands in for a connected client and keeps every envelope it was sent."""

    _ids = itertools.count(1)

    def __init__(self, user_id, role=UserRole.USER.value, fail=False):
        self.session_id = f"recording-{next(self._ids)}"
        self.user_id = user_id
        self.role = role
        self.fail = fail
        self.messages = []

    def deliver(self, message):
        if self.fail:
            raise BroadcastFailure(f"session {self.session_id} is gone")
        self.messages.append(message)

    @property
    def events(self):
        return [m["event"] for m in self.messages]

    def of(self, event):
        return [m["data"] for m in self.messages if m["event"] == event]


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'storefront.db'}")
    init_models(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def users(db):
    admin = User(name="Admin User", email="admin@supply-chain.com", role=UserRole.ADMIN.value)
    customer = User(name="John Doe", email="user@supply-chain.com", role=UserRole.USER.value)
    other = User(name="Jane Roe", email="jane@supply-chain.com", role=UserRole.USER.value)
    db.add_all([admin, customer, other])
    db.commit()
    return {"admin": admin, "customer": customer, "other": other}


@pytest.fixture
def make_product(db):
    counter = itertools.count(1)

    def _make(name=None, price="10.00", stock=10, min_stock=2, category="General"):
        n = next(counter)
        product = Product(
            sku=f"TEST-{n:03d}",
            name=name or f"Product {n}",
            description=f"Test product {n}",
            category=category,
            price=Decimal(price),
            stock_quantity=stock,
            min_stock=min_stock,
            location="Warehouse A",
        )
        db.add(product)
        db.commit()
        return product

    return _make


@pytest.fixture
def broadcaster():
    return EventBroadcaster(InMemorySessionRegistry())


@pytest.fixture
def listen(broadcaster):
    """Register a recording session for a user on the test broadcaster."""

    def _listen(user, fail=False):
        session = RecordingSession(user.id, user.role, fail=fail)
        broadcaster.registry.add(session)
        return session

    return _listen


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


@pytest.fixture
def client(db, broadcaster):
    from storefront.api.deps import get_broadcaster
    from storefront.main import app

    def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_broadcaster] = lambda: broadcaster
    yield TestClient(app)
    app.dependency_overrides.clear()
