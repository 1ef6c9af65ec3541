"""Shared fixtures: in-memory async database and a scripted assistant."""
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from app.database import create_engine
from app.models import conversation, user  # noqa: F401 - register tables
from app.services import user_service
from tests.fakes import FakeAssistantClient


@pytest_asyncio.fixture
async def engine():
    engine = create_engine("sqlite+aiosqlite://")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest_asyncio.fixture
async def alice(session):
    return await user_service.create_user(
        session,
        user_id="u1",
        fullname="Alice Example",
        email="alice@example.com",
        birthdate="1984-02-29",
    )


@pytest.fixture
def assistant():
    return FakeAssistantClient()
