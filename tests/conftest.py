from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import storefront_rewards.models  # noqa: F401
from storefront_rewards.app import create_app
from storefront_rewards.db.base import Base
from storefront_rewards.db.session import get_session
from storefront_rewards.models.user import User
from storefront_rewards.observability.rewards import get_rewards_store
from storefront_rewards.services.rewards import load_reward_catalog


CATALOG_PATH = Path(__file__).resolve().parents[1] / "config" / "rewards.toml"


@pytest.fixture(scope="session")
def reward_catalog():
    return load_reward_catalog(CATALOG_PATH)


@pytest.fixture(autouse=True)
def reset_rewards_store():
    get_rewards_store().reset()
    yield
    get_rewards_store().reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database so separate sessions use separate connections."""

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rewards.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory, reward_catalog):
    app = create_app(catalog=reward_catalog)

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def create_user():
    async def _create(session: AsyncSession, email: str, display_name: str | None = None) -> User:
        """Persist a user and return it detached so later rollbacks do not expire it."""

        user = User(email=email, display_name=display_name)
        session.add(user)
        await session.commit()
        session.expunge(user)
        return user

    return _create
