import os

# app.database builds its engine at import time.
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.database import Base  # noqa: E402
from app.models import ApiEndpoint, Conversation, Tenant  # noqa: E402


class FakeRedis:
    """In-memory stand-in for the async Redis calls the services make."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.expirations: dict[str, int] = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.expirations[key] = ex
        return True

    async def delete(self, key):
        existed = key in self.store
        self.store.pop(key, None)
        self.expirations.pop(key, None)
        return int(existed)


class BrokenRedis:
    async def get(self, key):
        raise ConnectionError("redis down")

    async def set(self, key, value, ex=None, nx=False):
        raise ConnectionError("redis down")

    async def delete(self, key):
        raise ConnectionError("redis down")


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def broken_redis():
    return BrokenRedis()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant(db):
    now = datetime.now(timezone.utc)
    tenant = Tenant(
        id="org-1",
        name="Acme",
        status="active",
        api_base_url="https://api.acme.test",
        access_token="valid-token",
        refresh_token="refresh-1",
        token_type="Bearer",
        token_expires_at=now + timedelta(hours=1),
        token_refresh_url="https://auth.acme.test/token",
        oauth_client_id="client",
        oauth_client_secret="secret",
        tenant_metadata={},
        created_at=now,
        updated_at=now,
    )
    db.add(tenant)
    db.commit()
    return tenant


@pytest.fixture
def orders_endpoint(db, tenant):
    endpoint = ApiEndpoint(
        tenant_id=tenant.id,
        endpoint_id="list_orders",
        method="GET",
        path="/users/{userId}/orders",
        summary="List a user's orders",
        parameters=[
            {"name": "userId", "in": "path", "required": True},
            {"name": "status", "in": "query", "required": False},
        ],
    )
    db.add(endpoint)
    db.commit()
    return endpoint


@pytest.fixture
def conversation(db):
    now = datetime.now(timezone.utc)
    conversation = Conversation(
        tenant_id="org-1",
        visitor_id="ada@example.com",
        active_conversation_id="chat-1",
        screen_name="acme",
        history=[],
        visitor_details={"email": "ada@example.com"},
        request_info={},
        clarification_attempts=0,
        resolved_parameters={},
        pending_result_consumed=False,
        created_at=now,
        last_activity_at=now,
    )
    db.add(conversation)
    db.commit()
    return conversation


@pytest.fixture
def make_event():
    """Build a message-event payload for org-1 / ada@example.com."""

    def build(text="show my orders", request_id="req-1", **overrides):
        payload = {
            "handler": "message",
            "request": {"id": request_id},
            "org_id": "org-1",
            "screen_name": "acme",
            "visitor": {"email": "ada@example.com", "active_conversation_id": "chat-1"},
            "message": {"type": "text", "text": text},
        }
        payload.update(overrides)
        return payload

    return build
