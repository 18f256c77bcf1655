
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from settings import get_settings

settings = get_settings()

# Each store owns its own file, schema and declarative base.
CoinBase = declarative_base()
GameBase = declarative_base()
MarketBase = declarative_base()


def _enable_wal(dbapi_connection, _connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def make_engine(url: str) -> AsyncEngine:
    engine = create_async_engine(url, echo=False)
    if url.startswith("sqlite"):
        event.listen(engine.sync_engine, "connect", _enable_wal)
    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


coin_engine = make_engine(settings.coin_database_url)
game_engine = make_engine(settings.game_database_url)
market_engine = make_engine(settings.marketplace_database_url)

CoinSessionLocal = make_session_factory(coin_engine)
GameSessionLocal = make_session_factory(game_engine)
MarketSessionLocal = make_session_factory(market_engine)


async def get_coin_session() -> AsyncGenerator[AsyncSession, None]:
    async with CoinSessionLocal() as session:
        yield session


async def get_game_session() -> AsyncGenerator[AsyncSession, None]:
    async with GameSessionLocal() as session:
        yield session


async def get_market_session() -> AsyncGenerator[AsyncSession, None]:
    async with MarketSessionLocal() as session:
        yield session


def get_market_session_factory() -> async_sessionmaker[AsyncSession]:
    return MarketSessionLocal


async def create_schema(engine: AsyncEngine, base) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(base.metadata.create_all)


async def init_db():
    import models  # noqa: F401
    from core.marketplace import seed_default_listings

    await create_schema(coin_engine, CoinBase)
    await create_schema(game_engine, GameBase)
    await create_schema(market_engine, MarketBase)
    async with MarketSessionLocal() as session:
        await seed_default_listings(session)
