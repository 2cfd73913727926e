import os
import re

# Must be set before payvat is imported
os.environ["DB_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "testing"
os.environ["OCR_BACKEND"] = "disabled"
os.environ["AUTH_JWT_SECRET"] = "test-secret-for-payvat"
os.environ["LOG_FORMAT"] = "text"
os.environ.pop("UPLOAD_STORAGE_DIR", None)

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from payvat import models
from payvat.api import app
from payvat.auth import create_access_token, get_password_hash
from payvat.db import get_session, get_session_factory
from payvat.notifications import email_service
from payvat.payments import gateway
from payvat.revenue import RevenueClient, get_revenue_client
from payvat.security import security

INVOICE_TEXT = (
    "INVOICE INV-2024-001\n"
    "Acme Supplies Ltd\n"
    "Net amount: €100.00\n"
    "VAT @ 23%: €23.00\n"
    "Total: €123.00\n"
)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def reset_process_state():
    security.reset()
    gateway.reset()
    email_service.outbox.clear()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def revenue_client():
    return RevenueClient(failure_rate=0.0, latency_seconds=0.0)


@pytest_asyncio.fixture
async def client(session_factory, revenue_client):
    async def _session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_revenue_client] = lambda: revenue_client

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client


def token_from(response) -> str:
    """Auth token from the Set-Cookie header of a response."""
    match = re.search(r"auth_token=([^;]+)", response.headers.get("set-cookie", ""))
    assert match, "response did not set the auth cookie"
    return match.group(1).strip('"')


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


async def register(client, email="owner@acme.ie", vat_number="IE1234567A", headers=None) -> str:
    """Register a user and return their token; the client's cookie jar is left empty."""
    response = await client.post(
        "/api/auth/register",
        json={
            "email": email,
            "password": "correct-horse-battery",
            "business_name": "Acme Supplies Ltd",
            "vat_number": vat_number,
        },
        headers=headers,
    )
    assert response.status_code == 201, response.text
    client.cookies.clear()
    return token_from(response)


async def create_user(session, *, email, vat_number, role=models.Role.USER) -> models.User:
    user = models.User(
        email=email,
        password=get_password_hash("correct-horse-battery"),
        role=role.value,
        business_name="Test Business",
        vat_number=vat_number,
    )
    session.add(user)
    await session.commit()
    return user


@pytest_asyncio.fixture
async def admin_token(session):
    admin = await create_user(session, email="admin@payvat.ie", vat_number="IE7654321B", role=models.Role.ADMIN)
    return create_access_token(admin)
