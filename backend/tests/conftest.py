from __future__ import annotations

import os
import uuid
from decimal import Decimal

# keep the app import side-effect free for tests
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from app.core.security import create_access_token
from app.db.session import get_db

# Ensure Base + models are registered before create_all
from app.db.base import Base
import app.models  # noqa: F401
from app.models.product import Product
from app.models.user import ROLE_ADMIN, ROLE_MARKETER, STATUS_ACTIVE, User
from app.services.notifications import ConversionNotifier


# ---------------------------------------------------------
# Database config
# ---------------------------------------------------------
@pytest.fixture()
def database_url_async(tmp_path) -> str:
    """
    DATABASE_URL_ASYNC when set (e.g. a throwaway Postgres in CI),
    otherwise a fresh SQLite file per test.
    """
    url = os.getenv("DATABASE_URL_ASYNC")
    if url:
        return url
    return f"sqlite+aiosqlite:///{tmp_path / 'affiliate_test.db'}"


# ---------------------------------------------------------
# Engine + schema lifecycle
# ---------------------------------------------------------
@pytest_asyncio.fixture()
async def engine(database_url_async: str):
    engine = create_async_engine(
        database_url_async,
        future=True,
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture()
def sessionmaker(engine):
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )


# ---------------------------------------------------------
# DB session for setup / service calls / assertions
# ---------------------------------------------------------
@pytest_asyncio.fixture()
async def db(sessionmaker):
    async with sessionmaker() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------
# Notifier (the lifespan does not run under ASGITransport)
# ---------------------------------------------------------
@pytest_asyncio.fixture()
async def notifier():
    n = ConversionNotifier(maxsize=100)
    n.start()
    yield n
    await n.close()


# ---------------------------------------------------------
# FastAPI app + dependency override
# ---------------------------------------------------------
@pytest.fixture()
def app(sessionmaker, notifier):
    from app.main import app as fastapi_app

    async def _override_get_db():
        async with sessionmaker() as session:
            yield session

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    fastapi_app.state.notifier = notifier
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


# ---------------------------------------------------------
# HTTP client
# ---------------------------------------------------------
@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
    ) as ac:
        yield ac


# ---------------------------------------------------------
# Factories (committed, so the app's sessions can see them)
# ---------------------------------------------------------
@pytest.fixture()
def make_user(db):
    async def _make(role: str = ROLE_MARKETER, status: str = STATUS_ACTIVE, email: str | None = None) -> User:
        user = User(
            email=email or f"{role}-{uuid.uuid4().hex[:8]}@example.com",
            role=role,
            status=status,
        )
        db.add(user)
        await db.commit()
        return user

    return _make


@pytest_asyncio.fixture()
async def marketer(make_user) -> User:
    return await make_user(ROLE_MARKETER)


@pytest_asyncio.fixture()
async def admin(make_user) -> User:
    return await make_user(ROLE_ADMIN)


@pytest.fixture()
def make_product(db):
    async def _make(
        commission_type: str = "percentage",
        commission_rate: str | None = "0.05",
        commission_flat_amount: str | None = None,
        min_initial_spend: str = "0",
        tiered_rates: list | None = None,
        status: str = "active",
    ) -> Product:
        product = Product(
            name=f"Product {uuid.uuid4().hex[:6]}",
            category="savings",
            status=status,
            commission_type=commission_type,
            commission_rate=Decimal(commission_rate) if commission_rate is not None else None,
            commission_flat_amount=Decimal(commission_flat_amount) if commission_flat_amount is not None else None,
            min_initial_spend=Decimal(min_initial_spend),
            tiered_rates=tiered_rates or [],
        )
        db.add(product)
        await db.commit()
        return product

    return _make


@pytest_asyncio.fixture()
async def product(make_product) -> Product:
    return await make_product()


@pytest.fixture()
def auth_headers():
    def _headers(user: User) -> dict[str, str]:
        token = create_access_token(str(user.id), role=user.role)
        return {"Authorization": f"Bearer {token}"}

    return _headers
