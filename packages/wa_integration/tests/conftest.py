"""
Pytest fixtures for the WhatsApp integration tests.

Databases are in-memory SQLite, Redis is fakeredis and the gateway is the stub,
so no service needs to be running.
"""

import os

from cryptography.fernet import Fernet

# Settings are cached on first use; configure the environment before any import reads them
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["GATEWAY_MODE"] = "stub"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["WEBHOOK_ALLOWED_ORIGINS"] = "localhost,10.0.0.0/8"
os.environ["WEBHOOK_SHARED_SECRET"] = "deployment-secret"
os.environ["WEBHOOK_SIGNING_SECRET"] = "signing-secret"
os.environ.pop("LLM_API_KEY", None)

from datetime import datetime, timedelta, timezone  # noqa: E402
from uuid import UUID  # noqa: E402

import fakeredis  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from wacore.settings import get_settings  # noqa: E402

from wa_integration.gateway.stub import StubGateway  # noqa: E402
from wa_integration.persistence.models import WhatsAppAccount, WhatsAppBase  # noqa: E402
from wa_integration.persistence.secrets import encrypt_secret  # noqa: E402
from wa_integration.policy.llm import CompletionResult  # noqa: E402


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def encryption_key(settings):
    return settings.ENCRYPTION_KEY


@pytest.fixture
def db_engine():
    """In-memory SQLite engine shared across threads (TestClient runs in a thread)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    WhatsAppBase.metadata.create_all(engine)
    yield engine
    WhatsAppBase.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(db_engine):
    """Database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def redis_client():
    """Fake Redis with decoded responses, like the production client."""
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def sample_tenant_id():
    """Sample tenant UUID."""
    return UUID("12345678-1234-1234-1234-123456789012")


@pytest.fixture
def other_tenant_id():
    return UUID("87654321-4321-4321-4321-210987654321")


@pytest.fixture
def sample_phone():
    """Sample counterpart address."""
    return "5511888888888"


@pytest.fixture
def fixed_now():
    """Monday, 15 January 2024, 12:00 UTC."""
    return datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable UTC clock for components that take a `clock` callable."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock(fixed_now):
    return FakeClock(fixed_now)


class FakeLLM:
    """Records completion calls and returns a canned reply, or raises `error`."""

    def __init__(self, text: str = "Claro, tenemos stock.", total_tokens: int = 42):
        self.text = text
        self.total_tokens = total_tokens
        self.error: Exception | None = None
        self.calls: list[dict] = []

    async def complete(self, model, messages, temperature=0.7, max_tokens=150):
        self.calls.append({"model": model, "messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        if self.error:
            raise self.error
        return CompletionResult(text=self.text, total_tokens=self.total_tokens, model=model)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def make_account(db, gateway, encryption_key, sample_tenant_id):
    """
    Factory for persisted accounts, optionally registered on the stub gateway.

    Usage: make_account("acme_1", status="connected", phone="5511999999999")
    """

    def _make(
        account_key: str = "acme_0001",
        status: str = "disconnected",
        secret: str | None = "account-secret",
        phone: str | None = None,
        gateway_state: str | None = "close",
        tenant_id: UUID | None = None,
    ) -> WhatsAppAccount:
        account = WhatsAppAccount(
            tenant_id=tenant_id or sample_tenant_id,
            account_key=account_key,
            display_name=f"Account {account_key}",
            secret_encrypted=encrypt_secret(secret, encryption_key) if secret else None,
            status=status,
            phone_identity=phone,
            orphan_strikes=0,
            needs_attention=False,
        )
        db.add(account)
        db.commit()

        if gateway_state is not None:
            owner_jid = f"{phone}@s.whatsapp.net" if phone else None
            gateway.add_account(account_key, state=gateway_state, owner_jid=owner_jid, secret=secret)
        return account

    return _make
