from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from circdesk.config import settings

class Base(DeclarativeBase):
    pass

def make_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, echo=False, pool_pre_ping=True, pool_recycle=1800)

def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

engine = make_engine(settings.DATABASE_URL)

SessionLocal = make_session_factory(engine)

async def init_db(bind: AsyncEngine = engine):
    from circdesk import models
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
