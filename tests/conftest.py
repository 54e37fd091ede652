"""Pytest configuration and fixtures for the KYC service tests."""
import json
import os
from datetime import datetime, timedelta, timezone
from itertools import count

# Settings are read at import time
os.environ["SECRET_KEY"] = "test-jwt-secret"
os.environ["KYC_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["RATE_LIMIT_PER_MINUTE"] = "10000"
os.environ["KYC_PROVIDER_APP_TOKEN"] = ""

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.db import Base
from app.modules.auth.models import User, UserRole
from app.modules.admin import models as admin_models  # noqa: F401
from app.modules.compliance.gateway import ProviderGateway, ProviderSession, ProviderStatus
from app.modules.compliance.models import KycProvider
from app.modules.compliance.policy import Actor
from app.modules.compliance.service import KycService
from app.modules.compliance.signature import SignatureVerifier
from app.modules.compliance.store import KycRecordStore

WEBHOOK_SECRET = "test-webhook-secret"


class StubGateway(ProviderGateway):
    """Provider double: hands out r1, r2, ... and reports whatever status is set."""

    provider = KycProvider.SUMSUB

    def __init__(self):
        self._refs = count(1)
        self.vendor_status = "pending"
        self.reject_reason = None
        self.started = []
        self.fetched = []

    async def start_session(self, user_id, redirect_url):
        reference_id = f"r{next(self._refs)}"
        self.started.append((user_id, redirect_url, reference_id))
        return ProviderSession(
            reference_id=reference_id,
            redirect_url=f"https://provider.example.com/session/{reference_id}",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    async def fetch_status(self, reference_id):
        self.fetched.append(reference_id)
        return ProviderStatus(
            reference_id=reference_id,
            vendor_status=self.vendor_status,
            reject_reason=self.reject_reason,
            metadata={"reviewStatus": self.vendor_status},
        )


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(engine):
    session_factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def user(db):
    user = User(email="alice@example.com", full_name="Alice", role=UserRole.USER, is_active=True)
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def other_user(db):
    user = User(email="bob@example.com", full_name="Bob", role=UserRole.USER, is_active=True)
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def admin(db):
    user = User(email="admin@example.com", full_name="Admin", role=UserRole.ADMIN, is_active=True)
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
def user_actor(user):
    return Actor(id=user.id, role=UserRole.USER)


@pytest.fixture
def admin_actor(admin):
    return Actor(id=admin.id, role=UserRole.ADMIN)


@pytest.fixture
def verifier():
    return SignatureVerifier(WEBHOOK_SECRET)


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def kyc(db, gateway, verifier):
    return KycService(
        store=KycRecordStore(db),
        gateways={KycProvider.SUMSUB: gateway},
        verifier=verifier,
        max_retries=3,
        gateway_timeout=1.0,
        redirect_schemes=["https"],
        redirect_hosts=[],
    )


@pytest.fixture
def sign(verifier):
    """Serialize a payload once and sign those exact bytes."""
    def _sign(payload: dict):
        raw = json.dumps(payload).encode("utf-8")
        return raw, verifier.sign(raw)
    return _sign
