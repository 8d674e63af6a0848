import os
from collections.abc import AsyncGenerator, Awaitable, Callable

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import numpy as np
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from scenario_engine.db.session import enable_sqlite_foreign_keys, get_session, get_session_factory
from scenario_engine.main import app
from scenario_engine.models import Entity, EntityType
from scenario_engine.utils.vectors import encode_vector

GROUP_INDUSTRIES = ("fintech", "healthcare", "logistics")
GROUP_SIZES = (33, 33, 34)


def grouped_vectors(
    sizes: tuple[int, ...] = GROUP_SIZES,
    *,
    dim: int = 16,
    noise: float = 0.02,
    seed: int = 7,
) -> list[tuple[int, np.ndarray]]:
    """Tight groups around orthogonal axes, returned as (group, vector) pairs."""

    rng = np.random.default_rng(seed)
    vectors: list[tuple[int, np.ndarray]] = []
    for group, size in enumerate(sizes):
        axis = np.zeros(dim)
        axis[group] = 1.0
        for _ in range(size):
            vectors.append((group, axis + rng.normal(0.0, noise, size=dim)))
    return vectors


@pytest_asyncio.fixture()
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(test_engine.sync_engine, "connect", enable_sqlite_foreign_keys)
    async with test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    try:
        yield test_engine
    finally:
        await test_engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as async_session:
        yield async_session


@pytest_asyncio.fixture()
async def seed_entities(session: AsyncSession) -> Callable[..., Awaitable[list[Entity]]]:
    async def _seed(
        entity_type: str = EntityType.PROBLEM,
        sizes: tuple[int, ...] = GROUP_SIZES,
        **kwargs,
    ) -> list[Entity]:
        entities = []
        for index, (group, vector) in enumerate(grouped_vectors(sizes, **kwargs)):
            blob, dim = encode_vector(vector)
            entities.append(
                Entity(
                    entity_type=entity_type,
                    title=f"{entity_type.title()} {group}-{index:03d}",
                    industry=GROUP_INDUSTRIES[group % len(GROUP_INDUSTRIES)],
                    embedding_vector=blob,
                    embedding_dim=dim,
                )
            )
        session.add_all(entities)
        await session.commit()
        return entities

    return _seed


@pytest_asyncio.fixture()
async def client(
    session: AsyncSession,
    session_factory: async_sessionmaker,
) -> AsyncGenerator[AsyncClient, None]:
    async def _override_session():
        yield session

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()
