import logging
import uuid

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from topup_backend.common.model import MappedBase

logger = logging.getLogger(__name__)


def create_async_engine_and_session(url: str, *, echo: bool = False) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    Create a database engine and session factory

    :param url: SQLAlchemy async database URL
    :param echo: whether to echo SQL statements
    :return:
    """
    try:
        engine = create_async_engine(url, echo=echo, future=True, pool_pre_ping=True)
    except Exception as e:
        logger.error(f'❌ Database connection failed: {e}')
        raise
    db_session = async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)
    return engine, db_session


async def create_tables(engine: AsyncEngine) -> None:
    """Create database tables"""
    # Model registration
    import topup_backend.app.billing.model  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(MappedBase.metadata.create_all)


def uuid4_str() -> str:
    """Database primary key as a UUID string"""
    return str(uuid.uuid4())


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
    session: AsyncSession | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Join the caller's transaction when ``session`` is given, otherwise open a
    session of our own and commit it on success.
    """
    if session is not None:
        yield session
        return
    async with session_factory() as own_session:
        yield own_session
        await own_session.commit()
