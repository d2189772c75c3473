from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from devplane.config.settings import settings

DATABASE_URL = settings.database.POSTGRES_URL

engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)
async_session_maker = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield one session per request; services and ingestors commit explicitly."""
    async with async_session_maker() as session:
        yield session
