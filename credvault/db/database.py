from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from credvault.db.models import Base


def build_engine(url: str) -> AsyncEngine:
    """
    Motor async del record store. En producción `postgresql+asyncpg://`,
    en desarrollo y tests `sqlite+aiosqlite://`.
    """
    kwargs = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        # Timeout de espera de locks de escritura de SQLite
        kwargs["connect_args"] = {"timeout": 15}
    return create_async_engine(url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def init_schema(engine: AsyncEngine) -> None:
    """Crea las colecciones si no existen (sin tooling de migraciones)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
