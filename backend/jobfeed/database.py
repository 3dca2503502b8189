from pathlib import Path
from typing import Optional, Tuple
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from jobfeed.config import get_settings

settings = get_settings()


def to_async_url(url: str) -> str:
    """Map a sync database URL onto its async driver."""
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def ensure_sqlite_directory(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


def create_session_factory(url: Optional[str] = None) -> Tuple[AsyncEngine, async_sessionmaker]:
    """Standalone engine and session factory, for runs outside the API event loop."""
    async_url = to_async_url(url or settings.database_url)
    ensure_sqlite_directory(async_url)
    new_engine = create_async_engine(async_url, echo=False)
    return new_engine, async_sessionmaker(new_engine, class_=AsyncSession, expire_on_commit=False)


engine = create_async_engine(to_async_url(settings.database_url), echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db():
    async with async_session() as session:
        yield session


def get_session_factory() -> async_sessionmaker:
    """Session factory for services that manage their own transactions."""
    return async_session


async def init_db(target: Optional[AsyncEngine] = None):
    # Register models on the metadata before create_all
    import jobfeed.models  # noqa: F401

    target = target or engine
    ensure_sqlite_directory(str(target.url))
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
