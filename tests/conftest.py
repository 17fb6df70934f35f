"""
Shared Test Fixtures
====================

- SQLite file database per test (``BEGIN IMMEDIATE`` engine, so concurrent
  transactions serialize like row locks do on PostgreSQL)
- RevenueCat REST stub (``tests.helpers``) behind ``httpx.MockTransport``
- ASGI client with the premium dependencies pointed at both
"""

import os

# Settings are read at import time
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = ""
os.environ["REDIS_URL"] = ""
os.environ["JWT_SECRET"] = "test-jwt-secret-with-at-least-32-characters"
os.environ["REVENUECAT_API_KEY"] = "rc-test-api-key"
os.environ["REVENUECAT_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["REVENUECAT_ENTITLEMENT_ID"] = "premium"
os.environ["REVENUECAT_ENFORCE_REAL_MODE"] = "true"

from datetime import datetime
from typing import Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.db import Base, build_engine, create_session_factory
from app.dependencies import get_db_session_factory, get_revenuecat_client
from app.main import app
from app.models import DeletedAccount, User
from app.services.identity_resolver import (
    IdentityResolver,
    SqlDeletedAccountRegistry,
    SqlUserDirectory,
)
from app.services.premium_reconciler import PremiumReconciler
from app.services.premium_service import ClientSnapshotStore, PremiumService
from app.services.revenuecat import RevenueCatClient

from tests.helpers import RevenueCatStub

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'premium.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def rc_stub() -> RevenueCatStub:
    return RevenueCatStub()


@pytest.fixture
def rc_client(rc_stub) -> RevenueCatClient:
    return RevenueCatClient(
        api_key="rc-test-api-key",
        base_url="https://api.revenuecat.test/v1/",
        timeout=5.0,
        transport=httpx.MockTransport(rc_stub.handler),
    )


@pytest.fixture
def reconciler(session_factory) -> PremiumReconciler:
    return PremiumReconciler(session_factory, enforce_real_mode=True, max_attempts=3)


@pytest.fixture
def resolver(session_factory) -> IdentityResolver:
    return IdentityResolver(
        SqlUserDirectory(session_factory),
        deleted_accounts=SqlDeletedAccountRegistry(session_factory),
    )


@pytest.fixture
def premium_service(session_factory, reconciler, rc_client, resolver) -> PremiumService:
    return PremiumService(
        reconciler,
        rc_client,
        SqlUserDirectory(session_factory),
        resolver,
        ClientSnapshotStore(session_factory, max_bytes=1024),
    )


@pytest_asyncio.fixture
async def add_user(session_factory):
    async def _add(user_id: str, email: str, full_name: Optional[str] = None) -> User:
        user = User(user_id=user_id, email=email, full_name=full_name)
        async with session_factory() as session:
            async with session.begin():
                session.add(user)
        return user

    return _add


@pytest_asyncio.fixture
async def add_deleted_account(session_factory):
    async def _add(
        record_id: str,
        uid: str,
        email: str,
        deleted_at: datetime,
        old_app_user_id: Optional[str] = None,
    ) -> DeletedAccount:
        record = DeletedAccount(
            record_id=record_id,
            uid=uid,
            email=email,
            deleted_at=deleted_at,
            old_app_user_id=old_app_user_id,
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(record)
        return record

    return _add


@pytest_asyncio.fixture
async def client(session_factory, rc_client):
    app.dependency_overrides[get_db_session_factory] = lambda: session_factory
    app.dependency_overrides[get_revenuecat_client] = lambda: rc_client

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
